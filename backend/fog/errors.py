"""Fog engine exception taxonomy.

Every engine-domain exception inherits from ``FogEngineError`` and carries
structured context (stage, code, retryable) so the orchestrator can turn it
into warnings/errors on a ``FogComputationResult`` instead of propagating.

Categories
----------
- ``InputValidationError``   malformed geometry or bounds, rejected locally.
- ``GeometryOperationError`` geometry backend threw or returned degenerate output.
- ``ResourceExhaustedError`` spatial index memory pressure.
- ``StoreAccessError``       revealed-area store could not be read or written.
- ``CircuitOpenError``       a circuit breaker rejected the call.
- ``FogCalculationError``    the precise fog pipeline failed as a whole.
- ``ConfigValidationError``  settings out of range (startup only).
"""

from __future__ import annotations


class FogEngineError(Exception):
    """Base exception for all fog-engine errors.

    Attributes:
        message: Human-readable error description.
        stage: Engine stage where the error occurred (e.g. ``"union"``, ``"store"``).
        code: Machine-readable error code (e.g. ``"GEOMETRY_UNION_FAILED"``).
        retryable: Whether a later attempt may succeed without operator action.
    """

    default_stage: str = ""
    default_code: str = ""
    default_retryable: bool = False
    category_name: str = "engine"

    def __init__(
        self,
        message: str = "",
        *,
        stage: str = "",
        code: str = "",
        retryable: bool | None = None,
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(message)

    @property
    def category(self) -> str:
        return self.category_name

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured error payload with stable keys."""
        return {
            "category": self.category,
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
        }

    def describe(self) -> str:
        return f"[{self.code or self.category}] {self.message}"


class InputValidationError(FogEngineError):
    """Malformed geometry or viewport bounds. Never retryable."""

    default_stage = "input"
    default_code = "INPUT_INVALID"
    category_name = "validation"


class GeometryOperationError(FogEngineError):
    """Geometry backend failure (union/difference/buffer)."""

    default_stage = "geometry"
    default_code = "GEOMETRY_OPERATION_FAILED"
    default_retryable = True
    category_name = "backend"


class ResourceExhaustedError(FogEngineError):
    """Spatial index memory pressure."""

    default_stage = "spatial_index"
    default_code = "INDEX_MEMORY_EXHAUSTED"
    default_retryable = True
    category_name = "resource"


class StoreAccessError(FogEngineError):
    """The revealed-area store could not be accessed."""

    default_stage = "store"
    default_code = "STORE_ACCESS_FAILED"
    default_retryable = True
    category_name = "store"


class CircuitOpenError(FogEngineError):
    """A circuit breaker rejected the call without running it."""

    default_stage = "circuit_breaker"
    default_code = "CIRCUIT_OPEN"
    default_retryable = True
    category_name = "backend"

    def __init__(self, breaker_name: str, message: str = "") -> None:
        self.breaker_name = breaker_name
        super().__init__(message or f"circuit '{breaker_name}' is open")


class FogCalculationError(FogEngineError):
    """The precise fog pipeline failed; callers fall back to a coarser tier."""

    default_stage = "fog_calculation"
    default_code = "FOG_CALCULATION_FAILED"
    default_retryable = True
    category_name = "backend"


class ConfigValidationError(FogEngineError):
    """Raised when configuration values are out of valid range.

    Attributes:
        key: The configuration key that failed validation.
        value: The invalid value.
    """

    default_stage = "config"
    default_code = "CONFIG_VALIDATION_FAILED"
    category_name = "validation"

    def __init__(self, key: str, value: object, message: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid configuration {key}={value!r}: {message}")
