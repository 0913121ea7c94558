"""
STAC (SpatioTemporal Asset Catalog) client for Overture Maps.

Handles discovery of available releases and of the GERS registry manifest.
No hardcoded releases: the latest release always comes from the live catalog.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Optional

import requests
from pydantic import ValidationError

from .config.settings import Config
from .domain.models import StacCatalog
from .errors import SchemaError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

_CHILD_RELEASE = re.compile(r"\./([^/]+)/catalog\.json")


class StacClient:
    """
    Fetches and caches the root STAC catalog.

    The catalog is cached in memory for the lifetime of the client without
    expiry; use ``get_catalog(force_refresh=True)`` or ``clear_cache()`` to
    pick up a new release.
    """

    def __init__(self, settings: Optional[Config] = None, session: Optional[requests.Session] = None):
        self.settings = settings or Config()
        self.session = session or requests.Session()
        self._cached: Optional[StacCatalog] = None
        self._lock = threading.Lock()

    def get_catalog(self, force_refresh: bool = False) -> StacCatalog:
        """
        Fetch the STAC catalog, using the in-memory copy when available.

        Raises:
            UpstreamUnavailableError: network failure, timeout or non-2xx status
            SchemaError: the response is not a valid catalog document
        """
        with self._lock:
            if self._cached is not None and not force_refresh:
                return self._cached

            url = self.settings.overture.catalog_url
            timeout = self.settings.http.timeout_s
            logger.debug(f"Fetching STAC catalog: {url}")

            try:
                response = self.session.get(url, timeout=timeout)
            except requests.Timeout as e:
                raise UpstreamUnavailableError(
                    f"STAC catalog fetch timed out after {timeout:g}s", url=url
                ) from e
            except requests.RequestException as e:
                raise UpstreamUnavailableError(f"Failed to fetch STAC catalog ({e})", url=url) from e

            if not response.ok:
                raise UpstreamUnavailableError(
                    f"Failed to fetch STAC catalog: {response.reason}",
                    url=url, status=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as e:
                raise SchemaError(f"STAC catalog is not valid JSON: {e}") from e

            if not isinstance(data, dict):
                raise SchemaError("Invalid STAC catalog structure")

            try:
                catalog = StacCatalog.model_validate(data)
            except ValidationError as e:
                raise SchemaError(f"Invalid STAC catalog structure: {e}") from e

            logger.info(f"STAC catalog loaded, latest release: {catalog.latest}")
            self._cached = catalog
            return catalog

    def get_latest_release(self) -> str:
        """Latest release version string (e.g. "2025-07-23.0")."""
        return self.get_catalog().latest

    def get_available_releases(self) -> tuple[list[str], str]:
        """
        List releases advertised by the catalog.

        Returns:
            Tuple of (all releases newest first, latest release)
        """
        catalog = self.get_catalog()
        releases = []
        for link in catalog.links:
            if link.rel != "child":
                continue
            match = _CHILD_RELEASE.search(link.href)
            if match:
                releases.append(match.group(1))
        releases.sort(reverse=True)
        return releases, catalog.latest

    def get_release_base_url(self, release: Optional[str] = None) -> str:
        """S3 base URL of a release's data (defaults to latest)."""
        version = release or self.get_latest_release()
        return f"s3://{self.settings.overture.bucket}/release/{version}"

    def get_collections_url(self, release: Optional[str] = None) -> str:
        """HTTPS URL of a release's collections.parquet spatial index."""
        version = release or self.get_latest_release()
        return f"{self.settings.overture.stac_base_url}/{version}/collections.parquet"

    def clear_cache(self) -> None:
        with self._lock:
            self._cached = None


_default_client: Optional[StacClient] = None
_default_lock = threading.Lock()


def get_default_client() -> StacClient:
    """Process-wide client shared by the module-level helpers."""
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = StacClient()
        return _default_client


def get_catalog(force_refresh: bool = False) -> StacCatalog:
    return get_default_client().get_catalog(force_refresh=force_refresh)


def get_latest_release() -> str:
    return get_default_client().get_latest_release()


def get_available_releases() -> tuple[list[str], str]:
    return get_default_client().get_available_releases()


def get_release_base_url(release: Optional[str] = None) -> str:
    return get_default_client().get_release_base_url(release)


def get_collections_url(release: Optional[str] = None) -> str:
    return get_default_client().get_collections_url(release)


def clear_cache() -> None:
    """Drop the cached catalog of the shared client."""
    if _default_client is not None:
        _default_client.clear_cache()
