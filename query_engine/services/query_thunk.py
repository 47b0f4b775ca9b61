"""
Deferred query execution.

A thunk captures the SQL and the store; calling it runs the query and always
returns a QueryResult, with failures reported in ``error``.
"""
import logging
import time

from query_engine.services.models import QueryResult, QueryThunk
from query_engine.services.runtime import log_event
from trace_store.db_utils import StorageError, StorageQueryError, TraceStorage

logger = logging.getLogger("query_thunk")


def make_query_thunk(query_id: str, sql: str, storage: TraceStorage) -> QueryThunk:
    def _execute() -> QueryResult:
        started = time.perf_counter()
        data = []
        error = None
        try:
            data = storage.query_raw(sql)
        except StorageQueryError as exc:
            error = exc.message
        except StorageError as exc:
            error = f"Storage error: {exc.tag}: {exc.message}"
        except Exception as exc:
            error = str(exc) or type(exc).__name__

        elapsed_ms = (time.perf_counter() - started) * 1000
        log_event(
            logger,
            logging.INFO if error is None else logging.WARNING,
            "query_thunk_executed",
            query_id=query_id,
            rows=len(data),
            elapsed_ms=round(elapsed_ms, 2),
            error=error[:300] if error else None,
        )
        return QueryResult(
            query_id=query_id,
            data=data,
            row_count=len(data),
            execution_time_ms=elapsed_ms,
            error=error,
        )

    return _execute
