"""
Runtime utilities:
- shared foreground pool for timeout-guarded calls
- bounded per-request fan-out with cooperative cancellation
- request/path context for structured logs
"""
from __future__ import annotations

import contextvars
import json
import logging
import os
import threading
import uuid
from concurrent.futures import (
    FIRST_EXCEPTION,
    Future,
    ThreadPoolExecutor,
    TimeoutError as FuturesTimeoutError,
    wait,
)
from contextvars import ContextVar
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

_LOGGER = logging.getLogger("runtime")

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_PATH_ID: ContextVar[str] = ContextVar("path_id", default="-")

_FG_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()
_PENDING_LOCK = threading.Lock()
_PENDING_FUTURES: set[Future] = set()
_FOREGROUND_WORKERS = max(2, int(os.getenv("QUERY_ENGINE_FOREGROUND_MAX_WORKERS", "8")))

T = TypeVar("T")
R = TypeVar("R")


class _Skipped:
    pass


_SKIPPED = _Skipped()


class LinkedCancelEvent:
    """Cancel flag that also reads as set while any parent event is set. ``set`` never touches the parents."""

    def __init__(self, *parents: Any):
        self._own = threading.Event()
        self._parents = [p for p in parents if p is not None]

    def set(self) -> None:
        self._own.set()

    def is_set(self) -> bool:
        return self._own.is_set() or any(p.is_set() for p in self._parents)


def get_request_id() -> str:
    return _REQUEST_ID.get() or "-"


def get_path_id() -> str:
    return _PATH_ID.get() or "-"


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def set_path_id(path_id: Optional[str]) -> str:
    pid = (path_id or "").strip() or "-"
    _PATH_ID.set(pid)
    return pid


def clear_context() -> None:
    _REQUEST_ID.set("-")
    _PATH_ID.set("-")


def structured_fields(**extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "request_id": get_request_id(),
        "path_id": get_path_id(),
    }
    payload.update(extra)
    return payload


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    payload = structured_fields(event=event, **fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _get_fg_executor() -> ThreadPoolExecutor:
    global _FG_EXECUTOR
    if _FG_EXECUTOR is not None:
        return _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _FG_EXECUTOR is None:
            _FG_EXECUTOR = ThreadPoolExecutor(max_workers=_FOREGROUND_WORKERS, thread_name_prefix="querygen-fg")
        return _FG_EXECUTOR


def run_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run ``fn`` on the shared pool; raises FuturesTimeoutError after ``timeout_s``."""
    ctx = contextvars.copy_context()
    future = _get_fg_executor().submit(ctx.run, fn)
    with _PENDING_LOCK:
        _PENDING_FUTURES.add(future)

    def _done(fut: Future) -> None:
        with _PENDING_LOCK:
            _PENDING_FUTURES.discard(fut)

    future.add_done_callback(_done)
    try:
        return future.result(timeout=max(0.05, float(timeout_s)))
    except FuturesTimeoutError:
        future.cancel()
        raise


def map_bounded(
    fn: Callable[[T], R],
    items: Iterable[T],
    max_workers: int,
    cancel_event: Optional[threading.Event] = None,
) -> List[R]:
    """
    Apply ``fn`` to every item with at most ``max_workers`` in flight.

    Results keep input order. The first exception drops queued work and is
    re-raised. Items reached once ``cancel_event`` is set are skipped and left
    out of the result. The caller's event is only read, never set.
    """
    work = list(items)
    if not work:
        return []
    cancel = LinkedCancelEvent(cancel_event)

    def _guarded(item: T) -> Any:
        if cancel.is_set():
            return _SKIPPED
        return fn(item)

    results: List[Any] = [_SKIPPED] * len(work)
    workers = max(1, min(int(max_workers), len(work)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="querygen-fanout") as pool:
        futures = {
            pool.submit(contextvars.copy_context().run, _guarded, item): idx
            for idx, item in enumerate(work)
        }
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for fut in done:
            exc = fut.exception()
            if exc is not None:
                cancel.set()
                for p in pending:
                    p.cancel()
                raise exc
        for fut, idx in futures.items():
            results[idx] = fut.result()

    kept = [r for r in results if r is not _SKIPPED]
    if len(kept) < len(work):
        log_event(_LOGGER, logging.INFO, "fanout_cancelled", completed=len(kept), total=len(work))
    return kept


def shutdown_shared_executor(wait: bool = False) -> None:
    global _FG_EXECUTOR
    with _EXECUTOR_LOCK:
        if _FG_EXECUTOR is None:
            return
        with _PENDING_LOCK:
            pending = list(_PENDING_FUTURES)
            _PENDING_FUTURES.clear()
        for fut in pending:
            fut.cancel()
        _FG_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
        _FG_EXECUTOR = None
        _LOGGER.info("shared_executor_shutdown")
