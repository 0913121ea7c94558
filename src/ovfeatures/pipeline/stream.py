"""
FeatureStream - GERS and Bounding-Box Feature Retrieval

Ties the catalog, the GERS registry, the spatial index and the query backend
together:

- get_by_id: registry lookup, then a single-row read of the feature's file
- stream_by_bbox: candidate files from the spatial index, streamed file by
  file in index order with a shared result limit

Both paths fail fast. Features already yielded by a bbox stream stay valid
when a later file fails; nothing further is produced.
"""

import logging
import time
from collections.abc import Iterator
from contextlib import closing
from typing import Any, Optional, Union

from ..catalog import StacClient
from ..config.settings import Config
from ..domain.enums import OvertureType, StreamState
from ..domain.models import BoundingBox, Feature, RegistryResult
from ..errors import DecodeError, InvalidArgumentError
from ..gers import RegistryLookup, normalize_gers_id
from ..spatial_index import SpatialIndex, coerce_type, rectangles_overlap
from ..wkb import wkb_to_geojson
from .backend import BackendContext, QueryBackend

logger = logging.getLogger(__name__)

GEOMETRY_COLUMN = "geometry"
BBOX_COLUMN = "bbox"

BboxLike = Union[BoundingBox, tuple, list]


def _coerce_bbox(bbox: BboxLike) -> BoundingBox:
    if isinstance(bbox, BoundingBox):
        return bbox.validate_query()
    return BoundingBox.from_tuple(bbox).validate_query()


def _coerce_limit(limit: Optional[int]) -> Optional[int]:
    if limit is None:
        return None
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise InvalidArgumentError(f"Limit must be a non-negative integer, got {limit!r}")
    return limit


def row_properties(row: dict[str, Any]) -> dict[str, Any]:
    """All columns except geometry and bbox."""
    return {k: v for k, v in row.items() if k not in (GEOMETRY_COLUMN, BBOX_COLUMN)}


def row_to_feature(row: dict[str, Any], fallback_bbox: Optional[BoundingBox] = None) -> Optional[Feature]:
    """Build a Feature from a parquet row; None when the geometry is missing or undecodable."""
    geometry = wkb_to_geojson(row.get(GEOMETRY_COLUMN))
    if geometry is None:
        return None

    bbox = BoundingBox.from_struct(row.get(BBOX_COLUMN)) or fallback_bbox
    return Feature(
        id=row.get("id"),
        geometry=geometry,
        properties=row_properties(row),
        bbox=bbox.as_tuple() if bbox else None,
    )


class QuerySession:
    """
    One bbox query: an iterator of Features with observable progress.

    Single-use and not resumable. Closing it (or dropping out of a ``for``
    loop that owns it) releases the file currently being read.
    """

    def __init__(self, stream: "FeatureStream", overture_type: Union[OvertureType, str],
                 bbox: BboxLike, limit: Optional[int]):
        self.state = StreamState.VALIDATING_INPUT
        try:
            self.type = coerce_type(overture_type)
            self.bbox = _coerce_bbox(bbox)
            self.limit = _coerce_limit(limit)
        except InvalidArgumentError:
            self.state = StreamState.FAILED
            raise

        self.stream = stream
        self.remaining = self.limit
        self.release: Optional[str] = None
        self.files: list[str] = []
        self.files_opened = 0
        self.features_yielded = 0
        # Validated; nothing has been fetched yet
        self.state = StreamState.INIT
        self._iterator = self._run()

    def __iter__(self) -> "QuerySession":
        return self

    def __next__(self) -> Feature:
        return next(self._iterator)

    def close(self) -> None:
        # an unstarted generator skips its own cleanup on close
        if self.state == StreamState.INIT:
            self.state = StreamState.DONE
        self._iterator.close()

    def __enter__(self) -> "QuerySession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _run(self) -> Iterator[Feature]:
        start_time = time.time()
        try:
            if self.remaining == 0:
                self.state = StreamState.DONE
                return

            self.state = StreamState.RESOLVING_RELEASE
            self.release = self.stream.catalog.get_latest_release()

            self.state = StreamState.INDEXING_FILES
            self.files = self.stream.spatial_index.files_for_bbox(self.type, self.bbox, self.release)
            if not self.files:
                logger.info(f"No {self.type} files intersect bbox {self.bbox.as_tuple()}")
                self.state = StreamState.DONE
                return

            self.state = StreamState.STREAMING
            backend = self.stream.context.backend
            for url in self.files:
                yield from self._stream_file(backend, url)
                if self.remaining == 0:
                    break

            self.state = StreamState.DONE
            elapsed = time.time() - start_time
            logger.info(f"Streamed {self.features_yielded:,} {self.type} feature(s) "
                        f"from {self.files_opened} file(s) in {elapsed:.1f}s")
        except GeneratorExit:
            self.state = StreamState.DONE
            raise
        except Exception:
            self.state = StreamState.FAILED
            raise

    def _stream_file(self, backend: QueryBackend, url: str) -> Iterator[Feature]:
        self.files_opened += 1
        logger.debug(f"Reading {url} (remaining: {self.remaining})")

        # Rows of this file already handled by an earlier, limited pass
        consumed = 0
        while True:
            request = None
            if backend.pushes_down and self.remaining is not None:
                request = consumed + self.remaining

            returned = 0
            with closing(backend.open_by_bbox(url, self.bbox, limit=request)) as rows:
                for row in rows:
                    returned += 1
                    if returned <= consumed:
                        continue
                    consumed += 1

                    if not backend.pushes_down:
                        row_bbox = BoundingBox.from_struct(row.get(BBOX_COLUMN))
                        if row_bbox is None or not rectangles_overlap(self.bbox, row_bbox):
                            continue

                    feature = row_to_feature(row)
                    if feature is None:
                        logger.debug(f"Skipping row {row.get('id')} in {url}: no decodable geometry")
                        continue

                    self.features_yielded += 1
                    if self.remaining is not None:
                        self.remaining -= 1
                    yield feature

                    if self.remaining == 0:
                        return

            if request is None or returned < request:
                return
            # The engine stopped at the limit, but skipped rows left us short
            logger.debug(f"Re-reading {url} past {consumed} row(s) to fill the limit")


class FeatureStream:
    """
    Entry point for GERS ID lookups and bbox streaming.

    Args:
        catalog: STAC client for release discovery and the registry manifest
        context: Backend context; share one between streams to share a handle
        settings: Configuration (defaults to the context's settings)
        spatial_index: Spatial index reader (built from settings by default)
    """

    def __init__(self,
                 catalog: Optional[StacClient] = None,
                 context: Optional[BackendContext] = None,
                 settings: Optional[Config] = None,
                 spatial_index: Optional[SpatialIndex] = None):
        self.settings = settings or (context.settings if context else Config())
        self.context = context or BackendContext(self.settings)
        self.catalog = catalog or StacClient(self.settings)
        self.spatial_index = spatial_index or SpatialIndex(self.settings)
        self.registry = RegistryLookup(self.catalog, self.context, self.settings)

    def query_metadata_by_id(self, gers_id: str) -> Optional[RegistryResult]:
        """Registry metadata (file path, bbox, version, lifecycle dates) for a GERS ID."""
        return self.registry.query(gers_id)

    def get_by_id(self, gers_id: str, registry_result: Optional[RegistryResult] = None) -> Optional[Feature]:
        """
        Fetch a single feature by GERS ID.

        Args:
            gers_id: UUID-shaped GERS ID, any case
            registry_result: Previously fetched registry metadata, skips the lookup

        Returns:
            Feature, or None if the ID is unknown or absent from the current release

        Raises:
            InvalidArgumentError: malformed ID (before any network call)
            DecodeError: the feature exists but its geometry cannot be decoded
        """
        gers_id = normalize_gers_id(gers_id)

        result = registry_result or self.registry.query(gers_id)
        if result is None:
            return None

        url = self.registry.feature_url(result)
        logger.debug(f"Fetching feature {gers_id} from {url}")
        row = self.context.backend.open_by_id(url, gers_id)
        if row is None:
            return None

        feature = row_to_feature(row, fallback_bbox=result.bbox)
        if feature is None:
            raise DecodeError(gers_id)

        feature.id = gers_id
        return feature

    def stream_by_bbox(self, overture_type: Union[OvertureType, str], bbox: BboxLike,
                       limit: Optional[int] = None) -> QuerySession:
        """
        Lazily stream features of a type within a bounding box.

        Arguments are validated here, before any I/O; the network is touched
        only once the returned session is iterated.

        Example:
            bbox = (-122.5, 37.7, -122.3, 37.9)
            for feature in stream.stream_by_bbox("place", bbox, limit=100):
                print(feature.properties["names"])

        Raises:
            InvalidArgumentError: unknown type, malformed bbox or negative limit
        """
        return QuerySession(self, overture_type, bbox, limit)

    def read_by_bbox_all(self, overture_type: Union[OvertureType, str], bbox: BboxLike,
                         limit: Optional[int] = None) -> list[Feature]:
        """Collect stream_by_bbox into a list."""
        with self.stream_by_bbox(overture_type, bbox, limit=limit) as session:
            return list(session)

    def get_files_in_bbox(self, overture_type: Union[OvertureType, str], bbox: BboxLike,
                          release: Optional[str] = None) -> list[str]:
        """Candidate data file URLs for a bbox query (debugging aid)."""
        type_name = coerce_type(overture_type)
        query_bbox = _coerce_bbox(bbox)
        return self.spatial_index.files_for_bbox(type_name, query_bbox,
                                                 release or self.catalog.get_latest_release())

    def close(self) -> None:
        """Close this stream's backend context."""
        self.context.close()
