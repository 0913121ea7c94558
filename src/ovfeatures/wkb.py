"""WKB (Well-Known Binary) to GeoJSON geometry conversion."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import shapely
import shapely.wkb as swkb

logger = logging.getLogger(__name__)


def wkb_to_geojson(wkb_bytes) -> Optional[dict[str, Any]]:
    """
    Convert WKB bytes to a GeoJSON geometry mapping.

    Never raises: anything that cannot be parsed yields ``None`` so callers
    can decide whether a missing geometry is fatal.

    Args:
        wkb_bytes: bytes, bytearray or memoryview holding a WKB geometry

    Returns:
        GeoJSON geometry dict (coordinates as lists), or None
    """
    if wkb_bytes is None:
        return None

    try:
        if isinstance(wkb_bytes, (bytearray, memoryview)):
            wkb_bytes = bytes(wkb_bytes)
        if not isinstance(wkb_bytes, bytes) or not wkb_bytes:
            logger.debug(f"Unexpected geometry value: {type(wkb_bytes).__name__}")
            return None

        geometry = swkb.loads(wkb_bytes)
        if geometry is None:
            return None
        return json.loads(shapely.to_geojson(geometry))
    except Exception as e:
        logger.debug(f"Failed to parse WKB geometry: {e}")
        return None
