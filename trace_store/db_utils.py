"""
Trace store access - engine caching, timeouts and typed query errors.

The query layer only needs ``query_raw(sql) -> list[dict]``. Failures are
raised as StorageError subclasses so callers can tell a bad query apart from
an unreachable store.
"""
import logging
import threading
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote_plus

import sqlalchemy
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from query_engine.services import settings
from query_engine.services.runtime import log_event, run_with_timeout

logger = logging.getLogger("trace_store")

_ENGINE_CACHE: Dict[str, Engine] = {}
_ENGINE_CACHE_LOCK = threading.RLock()


class StorageError(Exception):
    tag = "StorageError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StorageConnectionError(StorageError):
    tag = "ConnectionError"


class StorageTimeoutError(StorageError):
    tag = "TimeoutError"


class StorageQueryError(StorageError):
    """The store rejected the query; ``message`` is the engine's full text."""
    tag = "QueryError"

    def __init__(self, message: str, query: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.query = query
        self.cause = cause


class TraceStorage(Protocol):
    def query_raw(self, sql: str) -> List[Dict[str, Any]]:
        ...


@dataclass
class TraceStoreConfig:
    """ClickHouse connection configuration"""
    host: str
    port: int = 8123
    username: str = "default"
    password: str = ""
    database: str = "otel"
    secure: bool = False

    connect_timeout: int = 10
    query_timeout: float = 30.0
    max_rows: int = 1000

    @property
    def connection_uri(self) -> str:
        """Build a clickhouse-connect SQLAlchemy URI."""
        user = quote_plus(self.username or "default")
        password = quote_plus(self.password or "")
        auth = f"{user}:{password}@" if password else f"{user}@"
        params = f"connect_timeout={int(self.connect_timeout)}"
        if self.secure:
            params += "&secure=true"
        return f"clickhousedb://{auth}{self.host}:{int(self.port)}/{self.database}?{params}"


def _get_cached_engine(connection_uri: str) -> Optional[Engine]:
    with _ENGINE_CACHE_LOCK:
        return _ENGINE_CACHE.get(connection_uri)


def _set_cached_engine(connection_uri: str, engine: Engine) -> None:
    with _ENGINE_CACHE_LOCK:
        _ENGINE_CACHE[connection_uri] = engine
        if len(_ENGINE_CACHE) > 32:
            for key in list(_ENGINE_CACHE.keys())[:-16]:
                _ENGINE_CACHE.pop(key, None)


def create_engine_with_timeout(config: TraceStoreConfig) -> Engine:
    """
    Create (or reuse) an engine for the trace store.

    Engines are cached per connection URI. No warm-up query is issued here;
    connection problems surface as StorageConnectionError on first use.
    """
    cached = _get_cached_engine(config.connection_uri)
    if cached is not None:
        log_event(logger, logging.DEBUG, "engine_cache_hit", connection_uri_hash=hash(config.connection_uri))
        return cached

    engine = create_engine(
        config.connection_uri,
        pool_pre_ping=True,
        pool_recycle=300,
        echo=False,
    )
    _set_cached_engine(config.connection_uri, engine)
    log_event(logger, logging.INFO, "engine_created_and_cached", host=config.host, database=config.database)
    return engine


def _is_connection_error(error_text: str) -> bool:
    text_low = (error_text or "").lower()
    signals = (
        "could not connect",
        "connection refused",
        "connection reset",
        "connection aborted",
        "name or service not known",
        "failed to establish a new connection",
        "max retries exceeded",
        "authentication failed",
        "network is unreachable",
    )
    return any(sig in text_low for sig in signals)


def _driver_message(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).strip()


class SqlAlchemyTraceStorage:
    """TraceStorage over a SQLAlchemy engine (ClickHouse in production, SQLite in tests)."""

    def __init__(self, engine: Engine, query_timeout_s: float = 30.0, max_rows: int = 1000):
        self.engine = engine
        self.query_timeout_s = query_timeout_s
        self.max_rows = max_rows

    def query_raw(self, sql: str) -> List[Dict[str, Any]]:
        statement = (sql or "").strip().rstrip(";")

        def _execute() -> List[Dict[str, Any]]:
            with self.engine.connect() as conn:
                result = conn.execute(text(statement))
                if not result.returns_rows:
                    return []
                columns = list(result.keys())
                rows: List[Any] = []
                while len(rows) < self.max_rows:
                    chunk = result.fetchmany(500)
                    if not chunk:
                        break
                    rows.extend(chunk)
            return [dict(zip(columns, row)) for row in rows[: self.max_rows]]

        try:
            return run_with_timeout(_execute, self.query_timeout_s)
        except FuturesTimeoutError as exc:
            raise StorageTimeoutError(f"Query exceeded {self.query_timeout_s} second timeout") from exc
        except sqlalchemy.exc.DBAPIError as exc:
            message = _driver_message(exc)
            if exc.connection_invalidated or _is_connection_error(message):
                log_event(logger, logging.WARNING, "trace_store_unreachable", error=message[:300])
                raise StorageConnectionError(message) from exc
            raise StorageQueryError(message, statement, exc) from exc
        except sqlalchemy.exc.SQLAlchemyError as exc:
            raise StorageQueryError(_driver_message(exc), statement, exc) from exc


def build_trace_storage_from_env() -> SqlAlchemyTraceStorage:
    config = TraceStoreConfig(
        host=settings.CLICKHOUSE_HOST,
        port=settings.CLICKHOUSE_PORT,
        username=settings.CLICKHOUSE_USER,
        password=settings.CLICKHOUSE_PASSWORD,
        database=settings.CLICKHOUSE_DATABASE,
        query_timeout=settings.CLICKHOUSE_QUERY_TIMEOUT_S,
        max_rows=settings.CLICKHOUSE_MAX_ROWS,
    )
    engine = create_engine_with_timeout(config)
    return SqlAlchemyTraceStorage(engine, query_timeout_s=config.query_timeout, max_rows=config.max_rows)
