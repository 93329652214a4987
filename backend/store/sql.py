from __future__ import annotations

CREATE_REVEALED_AREAS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS revealed_areas (
  id TEXT PRIMARY KEY,
  created_ms BIGINT,
  min_lon DOUBLE,
  min_lat DOUBLE,
  max_lon DOUBLE,
  max_lat DOUBLE,
  geojson TEXT
);
"""

INSERT_REVEALED_AREA_SQL = """
INSERT INTO revealed_areas
  (id, created_ms, min_lon, min_lat, max_lon, max_lat, geojson)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""

LIST_REVEALED_AREAS_SQL = """
SELECT id, geojson
FROM revealed_areas
ORDER BY created_ms, id
"""

# Envelope overlap; rows without a bbox are always returned and filtered by the engine.
LIST_IN_BOUNDS_SQL = """
SELECT id, geojson
FROM revealed_areas
WHERE min_lon IS NULL
   OR NOT (max_lon < ? OR min_lon > ? OR max_lat < ? OR min_lat > ?)
ORDER BY created_ms DESC, id
LIMIT ?
"""

COUNT_REVEALED_AREAS_SQL = "SELECT count(*) FROM revealed_areas"
