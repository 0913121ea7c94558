"""
Query Backends - Pushdown vs Full-Stream Parquet Access

Two strategies read the remote GeoParquet files:

- DuckDBBackend runs SQL with the httpfs extension, so ID and bbox predicates
  and result limits are evaluated before rows cross the network.
- ArrowBackend streams every row through PyArrow in fixed-size batches; the
  caller filters client-side.

select_backend() probes DuckDB once and silently falls back to PyArrow when
the engine cannot be initialized. BackendContext memoizes that choice and
owns the handle's lifecycle.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional
from urllib.parse import urlparse

import duckdb
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.fs as pafs
import pyarrow.parquet as pq
import requests

from ..config.settings import Config
from ..domain.enums import BackendKind
from ..domain.models import BoundingBox
from ..errors import BackendInitError, SchemaError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

# https://<bucket>.s3.<region>.amazonaws.com/<key> and the legacy s3-<region> form
_S3_HTTPS_HOST = re.compile(r"^(?P<bucket>[a-z0-9.\-]+?)\.s3(?:[.\-][a-z0-9\-]+)?\.amazonaws\.com$")


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class QueryBackend(ABC):
    """
    Row source over one parquet file at a time.

    Rows are plain dicts as produced by ``pyarrow.RecordBatch.to_pylist()``:
    struct columns become dicts and binary columns become bytes.
    """

    kind: BackendKind

    def __init__(self, settings: Config):
        self.settings = settings
        self.batch_size = settings.processing.batch_size

    @property
    def pushes_down(self) -> bool:
        """Whether bbox predicates and limits are applied before rows are returned."""
        return self.kind == BackendKind.PUSHDOWN

    @abstractmethod
    def open_by_id(self, url: str, gers_id: str, columns: Optional[list[str]] = None,
                   id_column: str = "id") -> Optional[dict[str, Any]]:
        """Return the first row whose ``id_column`` equals ``gers_id``, or None."""

    @abstractmethod
    def open_by_bbox(self, url: str, bbox: BoundingBox,
                     limit: Optional[int] = None) -> Iterator[dict[str, Any]]:
        """
        Lazily yield rows of ``url`` in storage order.

        Closing the returned iterator releases the underlying cursor or file.
        """

    @abstractmethod
    def schema(self, url: str) -> set[str]:
        """Top-level column names of ``url``."""

    def close(self) -> None:
        pass


class DuckDBBackend(QueryBackend):
    """Predicate-pushdown backend on an in-memory DuckDB connection."""

    kind = BackendKind.PUSHDOWN

    def __init__(self, settings: Config, extensions: tuple[str, ...] = ("httpfs",)):
        super().__init__(settings)
        self._lock = threading.Lock()
        self._con: Optional[duckdb.DuckDBPyConnection] = None
        try:
            self._con = self._setup_connection(extensions)
        except Exception as e:
            raise BackendInitError(f"DuckDB initialization failed: {e}") from e

    def _setup_connection(self, extensions: tuple[str, ...]) -> duckdb.DuckDBPyConnection:
        """Configure DuckDB for streaming remote parquet reads."""
        con = duckdb.connect()
        try:
            for ext in extensions:
                con.execute(f"INSTALL {ext}; LOAD {ext};")

            duckdb_settings = self.settings.get_duckdb_settings()
            con.execute(f"SET memory_limit='{duckdb_settings['memory_limit']}';")
            con.execute(f"SET threads={duckdb_settings['threads']};")
            # Rows must come back in storage order
            con.execute("SET preserve_insertion_order=true;")

            if "httpfs" in extensions:
                con.execute(f"SET s3_region='{duckdb_settings['s3_region']}';")
                con.execute(f"SET http_timeout={duckdb_settings['http_timeout']};")
                con.execute("SET http_keep_alive=true;")

            # Only set these if they exist in this DuckDB version
            for setting in ("enable_http_metadata_cache=true",
                            "enable_object_cache=true",
                            "enable_geoparquet_conversion=false"):
                try:
                    con.execute(f"SET {setting};")
                except duckdb.Error:
                    logger.debug(f"DuckDB setting not available in this version: {setting}")
        except Exception:
            con.close()
            raise

        logger.debug(f"DuckDB configured: {duckdb_settings['threads']} threads, "
                     f"memory {duckdb_settings['memory_limit']}, extensions {list(extensions)}")
        return con

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        with self._lock:
            if self._con is None:
                raise BackendInitError("DuckDB backend has been closed")
            return self._con.cursor()

    @staticmethod
    def _source(url: str) -> str:
        return f"read_parquet({_quote_literal(url)})"

    @staticmethod
    def _projection(columns: Optional[list[str]]) -> str:
        if not columns:
            return "*"
        return ", ".join(f"d.{_quote_ident(c)}" for c in columns)

    @staticmethod
    def _translate(error: Exception, url: str) -> Exception:
        if isinstance(error, duckdb.IOException):
            return UpstreamUnavailableError(f"Failed to read parquet file ({error})", url=url,
                                            status=getattr(error, "status_code", None))
        return SchemaError(f"Unexpected parquet layout in {url}: {error}")

    def open_by_id(self, url: str, gers_id: str, columns: Optional[list[str]] = None,
                   id_column: str = "id") -> Optional[dict[str, Any]]:
        sql = (f"SELECT {self._projection(columns)} FROM {self._source(url)} d "
               f"WHERE d.{_quote_ident(id_column)} = ? LIMIT 1")
        logger.debug(f"DuckDB id query: {sql}")

        cursor = self._cursor()
        try:
            rows = cursor.execute(sql, [gers_id]).fetch_arrow_table().to_pylist()
        except duckdb.Error as e:
            raise self._translate(e, url) from e
        finally:
            cursor.close()

        return rows[0] if rows else None

    def open_by_bbox(self, url: str, bbox: BoundingBox,
                     limit: Optional[int] = None) -> Iterator[dict[str, Any]]:
        sql = (f"SELECT * FROM {self._source(url)} d "
               "WHERE d.bbox.xmin < ? AND d.bbox.xmax > ? "
               "AND d.bbox.ymin < ? AND d.bbox.ymax > ?")
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        params = [bbox.xmax, bbox.xmin, bbox.ymax, bbox.ymin]
        logger.debug(f"DuckDB bbox query: {sql} {params}")
        return self._stream(sql, params, url)

    def _stream(self, sql: str, params: list, url: str) -> Iterator[dict[str, Any]]:
        cursor = self._cursor()
        try:
            try:
                result = cursor.execute(sql, params)
                # fetch_record_batch is deprecated in favour of to_arrow_reader
                to_reader = getattr(result, "to_arrow_reader", None) or result.fetch_record_batch
                reader = to_reader(self.batch_size)
            except duckdb.Error as e:
                raise self._translate(e, url) from e

            while True:
                try:
                    batch = reader.read_next_batch()
                except StopIteration:
                    break
                except (duckdb.Error, pa.ArrowException) as e:
                    raise self._translate(e, url) from e
                yield from batch.to_pylist()
        finally:
            cursor.close()

    def schema(self, url: str) -> set[str]:
        cursor = self._cursor()
        try:
            rows = cursor.execute(f"DESCRIBE SELECT * FROM {self._source(url)}").fetchall()
        except duckdb.Error as e:
            raise self._translate(e, url) from e
        finally:
            cursor.close()
        return {row[0] for row in rows}

    def close(self) -> None:
        with self._lock:
            if self._con is not None:
                self._con.close()
                self._con = None


class ArrowBackend(QueryBackend):
    """
    Full-stream backend built on PyArrow.

    S3 objects (``s3://`` or the bucket's HTTPS host) are read through an
    anonymous S3 filesystem with ranged, pre-buffered requests; other HTTP(S)
    URLs are downloaded whole; anything else is treated as a local path.
    """

    kind = BackendKind.FULL_STREAM

    def __init__(self, settings: Config, session: Optional[requests.Session] = None):
        super().__init__(settings)
        self._session = session or requests.Session()
        try:
            self._s3 = pafs.S3FileSystem(anonymous=True, region=settings.overture.s3_region)
        except Exception as e:
            raise BackendInitError(f"PyArrow S3 filesystem initialization failed: {e}") from e

    def _resolve(self, url: str) -> tuple[Optional[pafs.FileSystem], str]:
        """Map a URL to (filesystem, path); filesystem is None for plain HTTP downloads."""
        parsed = urlparse(url)
        if parsed.scheme == "s3":
            return self._s3, f"{parsed.netloc}{parsed.path}"

        if parsed.scheme in ("http", "https"):
            match = _S3_HTTPS_HOST.match(parsed.hostname or "")
            if match:
                return self._s3, f"{match.group('bucket')}{parsed.path}"
            return None, url

        return pafs.LocalFileSystem(), url

    def _open_handle(self, url: str):
        """Open a random-access handle on ``url``. Failures here are transport failures."""
        filesystem, path = self._resolve(url)
        if filesystem is None:
            logger.warning(f"No range-read support for {url}, downloading whole file")
            try:
                response = self._session.get(url, timeout=self.settings.http.timeout_s)
            except requests.RequestException as e:
                raise UpstreamUnavailableError(f"Failed to fetch parquet file ({e})", url=url) from e
            if not response.ok:
                raise UpstreamUnavailableError("Failed to fetch parquet file", url=url,
                                               status=response.status_code)
            return pa.BufferReader(response.content)

        try:
            return filesystem.open_input_file(path)
        except OSError as e:
            raise UpstreamUnavailableError(f"Failed to open parquet file ({e})", url=url) from e

    @contextmanager
    def _parquet(self, url: str):
        handle = self._open_handle(url)
        try:
            # the handle is open, so a failure to parse the footer is a layout problem
            try:
                parquet_file = pq.ParquetFile(handle, pre_buffer=True)
            except (pa.ArrowException, OSError) as e:
                raise SchemaError(f"Not a readable parquet file {url}: {e}") from e
            yield parquet_file
        finally:
            handle.close()

    def _iter_batches(self, parquet_file: pq.ParquetFile, url: str,
                      columns: Optional[list[str]] = None) -> Iterator[pa.RecordBatch]:
        if columns:
            missing = set(columns) - set(parquet_file.schema_arrow.names)
            if missing:
                raise SchemaError(f"Columns {sorted(missing)} not found in {url}")
        batches = parquet_file.iter_batches(batch_size=self.batch_size, columns=columns,
                                            use_threads=True)
        while True:
            try:
                batch = next(batches)
            except StopIteration:
                return
            except pa.ArrowException as e:
                raise SchemaError(f"Unexpected parquet layout in {url}: {e}") from e
            except OSError as e:
                raise UpstreamUnavailableError(f"Failed to read parquet file ({e})", url=url) from e
            yield batch

    def open_by_id(self, url: str, gers_id: str, columns: Optional[list[str]] = None,
                   id_column: str = "id") -> Optional[dict[str, Any]]:
        if columns and id_column not in columns:
            columns = [id_column, *columns]

        with self._parquet(url) as parquet_file:
            if id_column not in parquet_file.schema_arrow.names:
                raise SchemaError(f"Column '{id_column}' not found in {url}")

            for batch in self._iter_batches(parquet_file, url, columns):
                ids = batch.column(batch.schema.get_field_index(id_column))
                matches = batch.filter(pc.equal(ids, gers_id))
                if matches.num_rows:
                    return matches.slice(0, 1).to_pylist()[0]
        return None

    def open_by_bbox(self, url: str, bbox: BoundingBox,
                     limit: Optional[int] = None) -> Iterator[dict[str, Any]]:
        # No server-side filtering: bbox and limit are enforced by the caller.
        with self._parquet(url) as parquet_file:
            for batch in self._iter_batches(parquet_file, url):
                yield from batch.to_pylist()

    def schema(self, url: str) -> set[str]:
        with self._parquet(url) as parquet_file:
            return set(parquet_file.schema_arrow.names)

    def close(self) -> None:
        self._session.close()


def select_backend(settings: Config) -> QueryBackend:
    """
    Choose the query backend for a context.

    ``auto`` probes DuckDB by running its full initialization sequence; any
    failure downgrades to ArrowBackend for the lifetime of the context.

    Raises:
        BackendInitError: the forced backend, or the fallback, failed to start
    """
    preference = settings.processing.backend

    if preference in ("auto", "duckdb"):
        try:
            backend = DuckDBBackend(settings)
            logger.info("Using DuckDB backend with predicate pushdown")
            return backend
        except BackendInitError as e:
            if preference == "duckdb":
                raise
            logger.debug(f"DuckDB probe failed: {e}")
            logger.info("DuckDB unavailable, falling back to PyArrow streaming reader")

    backend = ArrowBackend(settings)
    logger.info("Using PyArrow full-stream backend")
    return backend


class BackendContext:
    """
    Owns one lazily created query backend.

    The backend is selected on first use and reused by every query that
    shares this context. ``close()`` invalidates it for all of them; only call
    it when no query is in flight.
    """

    def __init__(self, settings: Optional[Config] = None, backend: Optional[QueryBackend] = None):
        self.settings = settings or Config()
        self._backend = backend
        self._lock = threading.Lock()

    def init(self) -> QueryBackend:
        with self._lock:
            if self._backend is None:
                self._backend = select_backend(self.settings)
            return self._backend

    @property
    def backend(self) -> QueryBackend:
        return self.init()

    @property
    def is_initialized(self) -> bool:
        return self._backend is not None

    def close(self) -> None:
        with self._lock:
            if self._backend is not None:
                self._backend.close()
                self._backend = None
                logger.debug("Query backend closed")


_default_context: Optional[BackendContext] = None
_default_lock = threading.Lock()


def get_default_context() -> BackendContext:
    """Process-wide context shared by the module-level helpers."""
    global _default_context
    with _default_lock:
        if _default_context is None:
            _default_context = BackendContext()
        return _default_context


def close_backend() -> None:
    """Release the shared backend handle. Destructive to every in-flight query."""
    with _default_lock:
        if _default_context is not None:
            _default_context.close()
