"""
GERS (Global Entity Reference System) lookup.

The registry is a set of parquet shards sorted by GERS ID. The root STAC
catalog carries a manifest of (shard filename, largest ID in shard) pairs, so
the shard holding an ID is found by binary search without touching the
network.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Optional, Sequence, Union

from .catalog import StacClient
from .config.settings import Config
from .domain.models import BoundingBox, ManifestEntry, RegistryResult
from .errors import InvalidArgumentError, SchemaError

if TYPE_CHECKING:
    from .pipeline.backend import BackendContext

logger = logging.getLogger(__name__)

# 8-4-4-4-12 hexadecimal groups
UUID_REGEX = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

REGISTRY_COLUMNS = ["id", "path", "bbox", "version", "first_seen", "last_seen", "last_changed"]

ManifestLike = Sequence[Union[ManifestEntry, tuple[str, str], list]]


def is_valid_gers_id(value) -> bool:
    """Whether ``value`` is a UUID-shaped GERS ID (case-insensitive)."""
    return isinstance(value, str) and UUID_REGEX.match(value) is not None


def normalize_gers_id(value) -> str:
    """
    Validate and lowercase a GERS ID.

    Only valid UUIDs ever reach a query, which also keeps them safe to embed.

    Raises:
        InvalidArgumentError: ``value`` is not UUID-shaped
    """
    if not is_valid_gers_id(value):
        raise InvalidArgumentError(f"Invalid GERS ID format: {value!r}. Expected UUID format.")
    return value.lower()


def _max_key(entry) -> str:
    return entry.max_key if isinstance(entry, ManifestEntry) else entry[1]


def _shard_file(entry) -> str:
    return entry.shard_file if isinstance(entry, ManifestEntry) else entry[0]


def locate_shard(manifest: ManifestLike, key: str) -> Optional[str]:
    """
    Binary search a manifest sorted by max key for the shard holding ``key``.

    Shard i covers keys with ``max_key[i-1] < key <= max_key[i]``; shard 0
    covers everything up to ``max_key[0]``.

    Args:
        manifest: (filename, max_id) pairs or ManifestEntry objects, ascending
        key: lowercase GERS ID

    Returns:
        Shard filename, or None when ``key`` is beyond the last shard
    """
    left, right = 0, len(manifest) - 1

    while left <= right:
        mid = (left + right) // 2
        if key <= _max_key(manifest[mid]):
            if mid == 0 or _max_key(manifest[mid - 1]) < key:
                return _shard_file(manifest[mid])
            right = mid - 1
        else:
            left = mid + 1

    return None


class RegistryLookup:
    """Resolves GERS IDs to registry metadata for the latest release."""

    def __init__(self, catalog: StacClient, context: "BackendContext", settings: Optional[Config] = None):
        self.catalog = catalog
        self.context = context
        self.settings = settings or context.settings

    def registry_url(self, shard_file: str) -> str:
        return f"{self.settings.overture.s3_base_url}/registry/{shard_file}"

    def feature_url(self, result: RegistryResult) -> str:
        """HTTPS URL of the data file named by a registry result."""
        bucket_prefix = f"{self.settings.overture.bucket}/"
        key = result.filepath
        if key.startswith(bucket_prefix):
            key = key[len(bucket_prefix):]
        return f"{self.settings.overture.s3_base_url}/{key}"

    def query(self, gers_id: str) -> Optional[RegistryResult]:
        """
        Query the registry for a GERS ID.

        Returns:
            RegistryResult, or None when the ID is unknown or retired from the
            current release

        Raises:
            InvalidArgumentError: malformed ID (before any network call)
            UpstreamUnavailableError: catalog or registry shard unreachable
            SchemaError: catalog has no usable registry manifest
        """
        gers_id = normalize_gers_id(gers_id)

        catalog = self.catalog.get_catalog()
        release = catalog.latest

        if catalog.registry is None:
            raise SchemaError("Registry configuration not found in STAC catalog")

        manifest = catalog.registry.manifest
        if not manifest:
            raise SchemaError("Registry manifest is empty in STAC catalog")

        shard_file = locate_shard(manifest, gers_id)
        if shard_file is None:
            logger.debug(f"GERS ID {gers_id} is beyond the last registry shard")
            return None

        url = self.registry_url(shard_file)
        logger.debug(f"Registry shard for {gers_id}: {url}")
        row = self.context.backend.open_by_id(url, gers_id, columns=REGISTRY_COLUMNS)

        if row is None:
            return None

        path = row.get("path")
        if path is None:
            # Present in the registry but not in the current release
            logger.debug(f"GERS ID {gers_id} has no path in release {release}")
            return None

        release_path = f"{self.settings.overture.bucket}/release/{release}"
        filepath = f"{release_path}{path}" if path.startswith("/") else f"{release_path}/{path}"

        return RegistryResult(
            filepath=filepath,
            bbox=BoundingBox.from_struct(row.get("bbox")),
            version=row.get("version"),
            first_seen=_as_text(row.get("first_seen")),
            last_seen=_as_text(row.get("last_seen")),
            last_changed=_as_text(row.get("last_changed")),
        )


def _as_text(value) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
