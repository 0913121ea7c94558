"""
Exporter - Feature Serialization

Writes streamed features as GeoJSON, newline-delimited GeoJSON or GeoParquet.
The GeoJSON writers emit features as they arrive; GeoParquet has to collect
them into a GeoDataFrame first.
"""

import json
import logging
import sys
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import IO, Optional

import geopandas as gpd

from .domain.enums import OutputFormat
from .domain.models import Feature

logger = logging.getLogger(__name__)


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


def feature_to_json(feature: Feature) -> str:
    return json.dumps(feature.to_geojson(), default=_json_default, ensure_ascii=False)


def infer_format(path: Path) -> OutputFormat:
    """Infer the output format from a file extension (GeoJSON by default)."""
    suffix = path.suffix.lower()
    if suffix in ['.geojsonl', '.geojsons', '.geojsonseq', '.ndjson', '.jsonl']:
        return OutputFormat.GEOJSONSEQ
    if suffix in ['.parquet', '.geoparquet']:
        return OutputFormat.GEOPARQUET
    return OutputFormat.GEOJSON


class Exporter:
    """
    Feature writer for one output target.

    Args:
        out_path: Output file; None writes text formats to stdout
        fmt: Explicit format (inferred from out_path when omitted)
    """

    def __init__(self, out_path: Optional[Path] = None, fmt: Optional[OutputFormat] = None):
        self.out_path = out_path
        self.fmt = fmt or (infer_format(out_path) if out_path else OutputFormat.GEOJSON)

        if self.fmt == OutputFormat.GEOPARQUET and out_path is None:
            raise ValueError("GeoParquet output requires an output path")

    def write(self, features: Iterable[Feature]) -> int:
        """
        Write all features and return how many were written.
        """
        if self.fmt == OutputFormat.GEOPARQUET:
            count = self._write_geoparquet(features)
        elif self.out_path is None:
            count = self._write_text(features, sys.stdout)
        else:
            self.out_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.out_path, 'w', encoding='utf-8') as fh:
                count = self._write_text(features, fh)

        target = self.out_path or "stdout"
        logger.info(f"Wrote {count:,} feature(s) as {self.fmt.value} to {target}")
        return count

    def _write_text(self, features: Iterable[Feature], fh: IO[str]) -> int:
        if self.fmt == OutputFormat.GEOJSONSEQ:
            return write_geojsonseq(features, fh)
        return write_geojson(features, fh)

    def _write_geoparquet(self, features: Iterable[Feature]) -> int:
        records = [feature.to_geojson() for feature in features]
        if records:
            gdf = gpd.GeoDataFrame.from_features(records, crs="EPSG:4326")
        else:
            gdf = gpd.GeoDataFrame({"geometry": []}, geometry="geometry", crs="EPSG:4326")

        self.out_path.parent.mkdir(parents=True, exist_ok=True)
        gdf.to_parquet(self.out_path)
        return len(records)


def write_geojson(features: Iterable[Feature], fh: IO[str]) -> int:
    """Stream a FeatureCollection document to ``fh``."""
    count = 0
    fh.write('{"type": "FeatureCollection", "features": [')
    for feature in features:
        if count:
            fh.write(',')
        fh.write('\n')
        fh.write(feature_to_json(feature))
        count += 1
    fh.write('\n]}\n')
    return count


def write_geojsonseq(features: Iterable[Feature], fh: IO[str]) -> int:
    """Write one GeoJSON Feature per line to ``fh``."""
    count = 0
    for feature in features:
        fh.write(feature_to_json(feature))
        fh.write('\n')
        count += 1
    return count
