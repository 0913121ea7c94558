"""
Shared pytest fixtures.

Provides configuration without .env loading, local GeoParquet files shaped
like Overture releases, and in-memory stand-ins for the catalog, the spatial
index and the query backend so pipeline tests never touch the network.
"""

from typing import Optional
from unittest.mock import MagicMock

import pyarrow as pa
import pyarrow.parquet as pq
import pytest
import shapely
from shapely.geometry import Point

from ovfeatures.catalog import StacClient
from ovfeatures.config import Config
from ovfeatures.domain.enums import BackendKind
from ovfeatures.domain.models import StacCatalog
from ovfeatures.pipeline.backend import BackendContext, QueryBackend
from ovfeatures.spatial_index import SpatialIndex

RELEASE = "2025-07-23.0"

BBOX_TYPE = pa.struct([
    ("xmin", pa.float64()),
    ("xmax", pa.float64()),
    ("ymin", pa.float64()),
    ("ymax", pa.float64()),
])

FEATURE_SCHEMA = pa.schema([
    ("id", pa.string()),
    ("geometry", pa.binary()),
    ("bbox", BBOX_TYPE),
    ("name", pa.string()),
])


def point_row(feature_id: str, x: float, y: float, name: Optional[str] = None,
              geometry: Optional[bytes] = None) -> dict:
    """A feature row for a point, with a tiny bbox around it."""
    return {
        "id": feature_id,
        "geometry": geometry if geometry is not None else shapely.to_wkb(Point(x, y)),
        "bbox": {"xmin": x - 0.001, "xmax": x + 0.001, "ymin": y - 0.001, "ymax": y + 0.001},
        "name": name or feature_id,
    }


def write_features(path, rows: list[dict], row_group_size: Optional[int] = None):
    """Write feature rows as a GeoParquet-shaped file and return its path as str."""
    table = pa.Table.from_pylist(rows, schema=FEATURE_SCHEMA)
    pq.write_table(table, path, row_group_size=row_group_size)
    return str(path)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def settings(monkeypatch):
    """Config with defaults only, independent of the developer's environment."""
    for name in ("OVERTURE_S3_BASE_URL", "OVERTURE_STAC_BASE_URL", "OVERTURE_BUCKET",
                 "OVERTURE_S3_REGION", "OVERTURE_HTTP_TIMEOUT", "OVFEATURES_BACKEND",
                 "DUCKDB_MEMORY_LIMIT", "OVFEATURES_CONCURRENCY", "OVFEATURES_BATCH_SIZE"):
        monkeypatch.delenv(name, raising=False)
    config = Config(load_env=False)
    config.processing.batch_size = 2
    return config


# =============================================================================
# Catalog Fixtures
# =============================================================================

@pytest.fixture
def catalog_dict():
    """Root STAC catalog document with a three-shard registry manifest."""
    return {
        "type": "Catalog",
        "id": "overture-releases",
        "latest": RELEASE,
        "links": [
            {"rel": "self", "href": "./catalog.json"},
            {"rel": "child", "href": "./2025-06-25.0/catalog.json"},
            {"rel": "child", "href": f"./{RELEASE}/catalog.json"},
            {"rel": "child", "href": "./2025-05-21.0/catalog.json"},
        ],
        "registry": {
            "path": "registry",
            "manifest": [
                ["a.parquet", "3fffffff-ffff-ffff-ffff-ffffffffffff"],
                ["b.parquet", "7fffffff-ffff-ffff-ffff-ffffffffffff"],
                ["c.parquet", "bfffffff-ffff-ffff-ffff-ffffffffffff"],
            ],
        },
    }


@pytest.fixture
def fake_catalog(catalog_dict):
    """StacClient stand-in serving ``catalog_dict`` without network access."""
    catalog = MagicMock(spec=StacClient)
    catalog.get_catalog.return_value = StacCatalog.model_validate(catalog_dict)
    catalog.get_latest_release.return_value = RELEASE
    return catalog


@pytest.fixture
def fake_index():
    """SpatialIndex stand-in; set ``files_for_bbox.return_value`` per test."""
    index = MagicMock(spec=SpatialIndex)
    index.files_for_bbox.return_value = []
    return index


# =============================================================================
# Backend Fixtures
# =============================================================================

class FakeBackend(QueryBackend):
    """
    In-memory backend keyed by URL.

    Records every file opened and closed. Applies bbox and limit only when
    constructed as a pushdown backend, like the real engines.
    """

    def __init__(self, settings, files: Optional[dict] = None, kind: BackendKind = BackendKind.FULL_STREAM,
                 failing: Optional[dict] = None):
        super().__init__(settings)
        self.kind = kind
        self.files = files or {}
        self.failing = failing or {}
        self.opened: list[str] = []
        self.closed: list[str] = []
        self.id_calls: list[tuple] = []
        self.bbox_limits: list[Optional[int]] = []
        self.was_closed = False

    def open_by_id(self, url, gers_id, columns=None, id_column="id"):
        self.id_calls.append((url, gers_id, columns))
        for row in self.files.get(url, []):
            if row.get(id_column) == gers_id:
                if columns:
                    return {c: row.get(c) for c in columns}
                return dict(row)
        return None

    def open_by_bbox(self, url, bbox, limit=None):
        self.opened.append(url)
        self.bbox_limits.append(limit)
        return self._rows(url, bbox, limit)

    def _rows(self, url, bbox, limit):
        try:
            if url in self.failing:
                raise self.failing[url]
            emitted = 0
            for row in self.files.get(url, []):
                if self.pushes_down:
                    if limit is not None and emitted >= limit:
                        return
                    b = row["bbox"]
                    if not (b["xmin"] < bbox.xmax and b["xmax"] > bbox.xmin
                            and b["ymin"] < bbox.ymax and b["ymax"] > bbox.ymin):
                        continue
                emitted += 1
                yield dict(row)
        finally:
            self.closed.append(url)

    def schema(self, url):
        rows = self.files.get(url, [])
        return set(rows[0]) if rows else set()

    def close(self):
        self.was_closed = True


@pytest.fixture
def make_backend(settings):
    """Factory for FakeBackend instances bound to the test settings."""
    def _make(files=None, kind=BackendKind.FULL_STREAM, failing=None):
        return FakeBackend(settings, files=files, kind=kind, failing=failing)
    return _make


@pytest.fixture
def make_context(settings):
    """Factory wrapping a backend in a BackendContext."""
    def _make(backend):
        return BackendContext(settings, backend=backend)
    return _make
