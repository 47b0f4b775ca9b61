"""
SQL evaluation against the trace store.

A candidate query is first run through the local structural checks, then
executed (capped at one row) or EXPLAINed by the store. Rejections come back
as a classified SQLError inside the result; transport failures are raised.
"""
import logging
import re
import time
from typing import Optional

from query_engine.services import settings
from query_engine.services.models import SQLError, SQLErrorCode, SQLEvaluationResult
from query_engine.services.runtime import log_event
from query_engine.services.sql_analysis import find_static_error, mask_sql
from trace_store.db_utils import StorageQueryError, TraceStorage

logger = logging.getLogger("sql_evaluator")

VALIDATION_MODES = ("execution", "semantic")

_CODE_NUMBER_RE = re.compile(r"\bCode:\s*(\d+)")
_CODE_NAME_RE = re.compile(r"\(([A-Z][A-Z0-9_]+)\)\s*(?:\(version [^)]*\))?\s*\.?\s*$")
_POSITION_RE = re.compile(r"\bat position (\d+)", re.IGNORECASE)
_HINT_RES = (
    re.compile(r"`([^`]+)`"),
    re.compile(r"(?:identifier|table|column|columns|function)\s*:?\s*'([^']+)'", re.IGNORECASE),
    re.compile(r"position \d+ \('([^']+)'\)"),
    re.compile(r"no such (?:column|table):\s*([\w.]+)", re.IGNORECASE),
    re.compile(r"'([^']+)'"),
)
_TRAILING_LIMIT_RE = re.compile(r"\bLIMIT\s+\d+(?:\s*,\s*\d+)?(?:\s+OFFSET\s+\d+)?\s*$", re.IGNORECASE)
_SETTINGS_RE = re.compile(r"\bSETTINGS\s+\w+\s*=", re.IGNORECASE)
_FORMAT_RE = re.compile(r"\bFORMAT\s+[A-Za-z]\w*\s*$", re.IGNORECASE)

_NUMERIC_CODES = {
    47: SQLErrorCode.UNKNOWN_IDENTIFIER,
    10: SQLErrorCode.UNKNOWN_IDENTIFIER,
    16: SQLErrorCode.UNKNOWN_IDENTIFIER,
    53: SQLErrorCode.TYPE_MISMATCH,
    60: SQLErrorCode.UNKNOWN_TABLE,
    81: SQLErrorCode.UNKNOWN_TABLE,
    62: SQLErrorCode.SYNTAX_ERROR,
    184: SQLErrorCode.ILLEGAL_AGGREGATION,
    215: SQLErrorCode.NOT_AN_AGGREGATE,
    43: SQLErrorCode.ILLEGAL_TYPE_OF_ARGUMENT,
    42: SQLErrorCode.SEMANTIC_ERROR,
    46: SQLErrorCode.SEMANTIC_ERROR,
    63: SQLErrorCode.SEMANTIC_ERROR,
    80: SQLErrorCode.SEMANTIC_ERROR,
    164: SQLErrorCode.SEMANTIC_ERROR,
    167: SQLErrorCode.SEMANTIC_ERROR,
    207: SQLErrorCode.SEMANTIC_ERROR,
    352: SQLErrorCode.SEMANTIC_ERROR,
}

_NAMED_CODES = {
    "UNKNOWN_IDENTIFIER": SQLErrorCode.UNKNOWN_IDENTIFIER,
    "NOT_FOUND_COLUMN_IN_BLOCK": SQLErrorCode.UNKNOWN_IDENTIFIER,
    "NO_SUCH_COLUMN_IN_TABLE": SQLErrorCode.UNKNOWN_IDENTIFIER,
    "TYPE_MISMATCH": SQLErrorCode.TYPE_MISMATCH,
    "UNKNOWN_TABLE": SQLErrorCode.UNKNOWN_TABLE,
    "UNKNOWN_DATABASE": SQLErrorCode.UNKNOWN_TABLE,
    "SYNTAX_ERROR": SQLErrorCode.SYNTAX_ERROR,
    "ILLEGAL_AGGREGATION": SQLErrorCode.ILLEGAL_AGGREGATION,
    "NOT_AN_AGGREGATE": SQLErrorCode.NOT_AN_AGGREGATE,
    "ILLEGAL_TYPE_OF_ARGUMENT": SQLErrorCode.ILLEGAL_TYPE_OF_ARGUMENT,
    "NUMBER_OF_ARGUMENTS_DOESNT_MATCH": SQLErrorCode.SEMANTIC_ERROR,
    "UNKNOWN_FUNCTION": SQLErrorCode.SEMANTIC_ERROR,
    "UNKNOWN_AGGREGATE_FUNCTION": SQLErrorCode.SEMANTIC_ERROR,
    "INCORRECT_QUERY": SQLErrorCode.SEMANTIC_ERROR,
    "READONLY": SQLErrorCode.SEMANTIC_ERROR,
    "ILLEGAL_AGGREGATION_FUNCTION_ARGUMENT": SQLErrorCode.SEMANTIC_ERROR,
    "ILLEGAL_PREWHERE": SQLErrorCode.SEMANTIC_ERROR,
    "AMBIGUOUS_IDENTIFIER": SQLErrorCode.SEMANTIC_ERROR,
    "AMBIGUOUS_COLUMN_NAME": SQLErrorCode.SEMANTIC_ERROR,
}

# Checked in order; first substring hit wins.
_KEYWORD_CODES = (
    ("unknown expression identifier", SQLErrorCode.UNKNOWN_IDENTIFIER),
    ("unknown identifier", SQLErrorCode.UNKNOWN_IDENTIFIER),
    ("missing columns", SQLErrorCode.UNKNOWN_IDENTIFIER),
    ("no such column", SQLErrorCode.UNKNOWN_IDENTIFIER),
    ("is found in where", SQLErrorCode.ILLEGAL_AGGREGATION),
    ("is found inside another aggregate", SQLErrorCode.ILLEGAL_AGGREGATION),
    ("not under aggregate function", SQLErrorCode.NOT_AN_AGGREGATE),
    ("syntax error", SQLErrorCode.SYNTAX_ERROR),
    ("unknown table", SQLErrorCode.UNKNOWN_TABLE),
    ("doesn't exist", SQLErrorCode.UNKNOWN_TABLE),
    ("no such table", SQLErrorCode.UNKNOWN_TABLE),
    ("illegal type", SQLErrorCode.ILLEGAL_TYPE_OF_ARGUMENT),
    ("type mismatch", SQLErrorCode.TYPE_MISMATCH),
)


def _position_hint(message: str, sql: Optional[str]) -> Optional[str]:
    for pattern in _HINT_RES:
        m = pattern.search(message)
        if m and m.group(1).strip():
            return m.group(1).strip()
    m = _POSITION_RE.search(message)
    if m and sql:
        pos = max(0, int(m.group(1)) - 1)
        fragment = sql[pos:pos + 30].strip()
        return fragment or None
    return None


def classify_error(message: str, sql: Optional[str] = None) -> SQLError:
    """
    Map an engine error message onto an SQLErrorCode.

    The numeric ``Code: N`` wins, then the trailing ``(NAME)`` tag, then
    keyword matching. The message is kept verbatim.
    """
    message = message or ""
    code_number: Optional[int] = None
    code: Optional[SQLErrorCode] = None

    num = _CODE_NUMBER_RE.search(message)
    if num:
        code_number = int(num.group(1))
        code = _NUMERIC_CODES.get(code_number)
    if code is None:
        named = _CODE_NAME_RE.search(message.strip())
        if named:
            code = _NAMED_CODES.get(named.group(1))
    if code is None:
        low = message.lower()
        for needle, mapped in _KEYWORD_CODES:
            if needle in low:
                code = mapped
                break

    return SQLError(
        code=code or SQLErrorCode.UNKNOWN,
        message=message,
        position_hint=_position_hint(message, sql),
        code_number=code_number,
    )


def _paren_depth(masked: str, idx: int) -> int:
    return masked.count("(", 0, idx) - masked.count(")", 0, idx)


def _trailing_clauses_start(masked: str) -> Optional[int]:
    """Offset of a top-level SETTINGS/FORMAT tail, if any."""
    starts = [m.start() for m in _SETTINGS_RE.finditer(masked) if _paren_depth(masked, m.start()) == 0]
    fmt = _FORMAT_RE.search(masked)
    if fmt and _paren_depth(masked, fmt.start()) == 0:
        starts.append(fmt.start())
    return min(starts) if starts else None


def cap_row_limit(sql: str, limit: int = 1) -> str:
    """
    Replace a trailing top-level LIMIT with ``LIMIT limit``, or append one.

    The LIMIT goes before any trailing SETTINGS or FORMAT clause.
    """
    masked, _ = mask_sql(sql)
    masked = masked.rstrip()
    cut = _trailing_clauses_start(masked)
    if cut is None:
        cut = len(sql)
    head, tail = sql[:cut], sql[cut:]
    m = _TRAILING_LIMIT_RE.search(masked[:cut].rstrip())
    if m:
        return f"{sql[:m.start()]}LIMIT {limit}{sql[m.end():]}"
    if tail:
        return f"{head.rstrip()}\nLIMIT {limit}\n{tail}"
    return f"{sql}\nLIMIT {limit}"


def _strip_statement(sql: str) -> str:
    statement = (sql or "").strip()
    while statement.endswith(";"):
        statement = statement[:-1].rstrip()
    return statement


class SQLEvaluator:
    """Validate candidate SQL by static checks plus a capped run (or EXPLAIN) on the store."""

    def __init__(
        self,
        storage: TraceStorage,
        static_checks: bool = settings.EVALUATOR_STATIC_CHECKS,
        explain_prefix: str = "EXPLAIN PLAN",
    ):
        self.storage = storage
        self.static_checks = static_checks
        self.explain_prefix = explain_prefix

    def validate_execution(self, sql: str) -> SQLEvaluationResult:
        return self.evaluate(sql, "execution")

    def validate_semantics(self, sql: str) -> SQLEvaluationResult:
        return self.evaluate(sql, "semantic")

    def evaluate(self, sql: str, mode: str = "execution") -> SQLEvaluationResult:
        if mode not in VALIDATION_MODES:
            raise ValueError(f"unknown validation mode: {mode!r}")
        statement = _strip_statement(sql)
        started = time.perf_counter()

        error: Optional[SQLError] = None
        row_count: Optional[int] = None
        source = "engine"
        static_message = find_static_error(statement) if self.static_checks else None
        if static_message:
            source = "static"
            error = classify_error(static_message, statement)
        else:
            probe = cap_row_limit(statement) if mode == "execution" else f"{self.explain_prefix} {statement}"
            try:
                rows = self.storage.query_raw(probe)
                row_count = len(rows)
            except StorageQueryError as exc:
                error = classify_error(exc.message, statement)

        elapsed_ms = (time.perf_counter() - started) * 1000
        result = SQLEvaluationResult(
            is_valid=error is None,
            execution_time_ms=elapsed_ms,
            sql=statement,
            mode=mode,
            error=error,
            row_count=row_count,
        )
        log_event(
            logger,
            logging.INFO if result.is_valid else logging.WARNING,
            "sql_evaluation",
            mode=mode,
            valid=result.is_valid,
            source=source,
            code=error.code.value if error else None,
            code_number=error.code_number if error else None,
            elapsed_ms=round(elapsed_ms, 2),
        )
        return result
