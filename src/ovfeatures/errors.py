"""
Exception hierarchy for Overture feature retrieval.

"Nothing found" is never an error: lookups return ``None`` and streams end
empty. The exceptions below mean the answer could not be determined.
"""

from __future__ import annotations

from typing import Optional


class OvertureError(Exception):
    """Base exception for feature retrieval operations."""
    pass


class InvalidArgumentError(OvertureError, ValueError):
    """Malformed identifier, bounding box or limit. Raised before any I/O."""
    pass


class UpstreamUnavailableError(OvertureError):
    """Catalog, index or data file could not be reached."""
    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        self.url = url
        self.status = status
        detail = message
        if status is not None:
            detail = f"{detail} (HTTP {status})"
        if url:
            detail = f"{detail}: {url}"
        super().__init__(detail)


class SchemaError(OvertureError):
    """Catalog, index or parquet file is missing expected fields."""
    pass


class DecodeError(OvertureError):
    """Geometry of a feature could not be decoded."""
    def __init__(self, feature_id: Optional[str], message: str = "Feature has no valid geometry"):
        self.feature_id = feature_id
        super().__init__(f"{message} (id: {feature_id})" if feature_id else message)


class BackendInitError(OvertureError):
    """No query backend could be initialized."""
    pass
