from __future__ import annotations

from typing import Any, Protocol

from features.types import AreaFeature
from fog.errors import InputValidationError
from geo.validation import validate_geometry


class RevealedAreaStore(Protocol):
    """
    Authoritative source of revealed areas.

    - InMemoryRevealedAreaStore: process-local list (tests, ephemeral sessions)
    - DuckDBRevealedAreaStore: persisted table, one row per revealed area

    `list()` may return records the engine cannot use (legacy/malformed rows); the
    engine sanitizes everything it reads and never treats its own index or cache as
    authoritative.
    """

    def list(self) -> list[Any]: ...

    def append(self, feature: AreaFeature) -> str: ...


def ensure_storable(feature: Any) -> None:
    """
    Raise `InputValidationError` for anything that is not a usable polygonal area.
    """
    if not isinstance(feature, AreaFeature):
        raise InputValidationError(
            f"expected an AreaFeature, got {type(feature).__name__}", stage="store"
        )
    v = validate_geometry(feature)
    if not v.is_valid:
        raise InputValidationError(
            f"revealed area {feature.id or '<unnamed>'} is invalid: {'; '.join(v.errors)}",
            stage="store",
        )
