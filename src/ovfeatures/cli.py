import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv

# Load environment variables BEFORE building configuration
load_dotenv()

from .catalog import StacClient
from .config.settings import BACKEND_CHOICES, Config, ConfigurationError
from .domain.enums import OutputFormat, OvertureType
from .domain.models import BoundingBox
from .errors import OvertureError
from .export import Exporter, feature_to_json
from .pipeline.backend import BackendContext
from .pipeline.stream import FeatureStream
from .utils import setup_logging

app = typer.Typer(help="Overture Maps feature retrieval: GERS ID lookup and bbox streaming")


def parse_bbox(value: str) -> BoundingBox:
    """Parse 'xmin,ymin,xmax,ymax' into a BoundingBox."""
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 4:
        raise typer.BadParameter("Expected four comma-separated numbers: xmin,ymin,xmax,ymax")
    try:
        return BoundingBox.from_tuple(parts)
    except OvertureError as e:
        raise typer.BadParameter(str(e))


def build_stream(backend: Optional[str] = None) -> FeatureStream:
    """Create a FeatureStream from environment configuration."""
    settings = Config()
    if backend:
        if backend not in BACKEND_CHOICES:
            raise ConfigurationError(f"Backend must be one of: {', '.join(BACKEND_CHOICES)}")
        settings.processing.backend = backend
    context = BackendContext(settings)
    return FeatureStream(catalog=StacClient(settings), context=context, settings=settings)


def _fail(message: str) -> None:
    typer.echo(f"ERROR: {message}", err=True)
    raise typer.Exit(1)


BackendOption = Annotated[Optional[str], typer.Option("--backend", help="Force a backend: auto | duckdb | arrow")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable detailed logging output")]
LogFileOption = Annotated[Optional[Path], typer.Option("--log-file", help="Also write logs to this file")]


@app.command("get")
def get_feature(
    gers_id: Annotated[str, typer.Argument(help="GERS ID (UUID) of the feature")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help="Output file (stdout if omitted)")] = None,
    backend: BackendOption = None,
    verbose: VerboseOption = False,
    log_file: LogFileOption = None,
):
    """Fetch a single feature by GERS ID and print it as GeoJSON."""
    setup_logging(verbose, log_file)
    stream = None
    try:
        stream = build_stream(backend)
        feature = stream.get_by_id(gers_id)
        if feature is None:
            typer.echo(f"No feature found for GERS ID {gers_id}", err=True)
            raise typer.Exit(2)

        text = feature_to_json(feature)
        if output:
            output.write_text(text + "\n", encoding="utf-8")
            logging.info(f"Wrote feature {feature.id} to {output}")
        else:
            typer.echo(text)
    except (OvertureError, ConfigurationError) as e:
        _fail(str(e))
    finally:
        if stream:
            stream.close()


@app.command("registry")
def registry_lookup(
    gers_id: Annotated[str, typer.Argument(help="GERS ID (UUID) to look up")],
    backend: BackendOption = None,
    verbose: VerboseOption = False,
):
    """Show registry metadata (file path, bbox, version, lifecycle dates) for a GERS ID."""
    setup_logging(verbose)
    stream = None
    try:
        stream = build_stream(backend)
        result = stream.query_metadata_by_id(gers_id)
        if result is None:
            typer.echo(f"GERS ID {gers_id} not found in the current release", err=True)
            raise typer.Exit(2)
        typer.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    except (OvertureError, ConfigurationError) as e:
        _fail(str(e))
    finally:
        if stream:
            stream.close()


@app.command("bbox")
def bbox_query(
    overture_type: Annotated[OvertureType, typer.Argument(help="Overture feature type, e.g. place or building")],
    bbox: Annotated[str, typer.Option("--bbox", "-b", help="xmin,ymin,xmax,ymax in degrees")],
    limit: Annotated[Optional[int], typer.Option("--limit", "-l", help="Maximum number of features")] = None,
    fmt: Annotated[Optional[OutputFormat], typer.Option("--format", "-f", help="geojson | geojsonseq | geoparquet")] = None,
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help="Output file (stdout if omitted)")] = None,
    backend: BackendOption = None,
    verbose: VerboseOption = False,
    log_file: LogFileOption = None,
):
    """Stream features of a type inside a bounding box."""
    setup_logging(verbose, log_file)
    stream = None
    try:
        query_bbox = parse_bbox(bbox)
        exporter = Exporter(output, fmt)
        stream = build_stream(backend)
        with stream.stream_by_bbox(overture_type, query_bbox, limit=limit) as session:
            exporter.write(session)
    except (ValueError, OvertureError, ConfigurationError) as e:
        _fail(str(e))
    finally:
        if stream:
            stream.close()


@app.command("files")
def list_files(
    overture_type: Annotated[OvertureType, typer.Argument(help="Overture feature type")],
    bbox: Annotated[str, typer.Option("--bbox", "-b", help="xmin,ymin,xmax,ymax in degrees")],
    release: Annotated[Optional[str], typer.Option("--release", "-r", help="Release (latest if omitted)")] = None,
    verbose: VerboseOption = False,
):
    """List data files whose extent overlaps a bounding box."""
    setup_logging(verbose)
    try:
        stream = build_stream()
        for url in stream.get_files_in_bbox(overture_type, parse_bbox(bbox), release=release):
            typer.echo(url)
    except (OvertureError, ConfigurationError) as e:
        _fail(str(e))


@app.command("releases")
def list_releases(
    verbose: VerboseOption = False,
):
    """List releases advertised by the STAC catalog, newest first."""
    setup_logging(verbose)
    try:
        releases, latest = StacClient(Config()).get_available_releases()
    except (OvertureError, ConfigurationError) as e:
        _fail(str(e))

    for release in releases:
        marker = " (latest)" if release == latest else ""
        typer.echo(f"{release}{marker}")


if __name__ == "__main__":
    app()
