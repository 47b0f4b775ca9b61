"""
Helpers that turn free-form LLM output into a single SQL statement.
"""
import re

from query_engine.services.sql_analysis import cte_names, is_cte_without_select

_FENCE_RE = re.compile(r"```[ \t]*(?:sql|clickhouse)?[ \t]*\r?\n(.*?)```", re.IGNORECASE | re.DOTALL)
_PREAMBLE_RES = (
    re.compile(
        r"^\s*here(?:'s| is)\s+(?:the\s+|an?\s+)?(?:corrected\s+|optimized\s+|updated\s+|fixed\s+)?"
        r"(?:clickhouse\s+)?(?:sql\s+)?(?:query|solution|statement)[^\n]*\n",
        re.IGNORECASE,
    ),
    re.compile(r"^\s*the\s+(?:corrected\s+|optimized\s+)?(?:sql\s+)?(?:query|solution)\s+is:?[^\n]*\n", re.IGNORECASE),
    re.compile(r"^\s*(?:sql(?:\s+query)?|query)\s*:\s*\n", re.IGNORECASE),
)
_STATEMENT_START_RE = re.compile(r"^[ \t]*(WITH|SELECT)\b", re.IGNORECASE | re.MULTILINE)
_NOTES_RE = re.compile(r"^\s*(?:Notes?|Explanation)\s*:", re.IGNORECASE | re.MULTILINE)

CTE_COMPLETION_LIMIT = 100


def extract_sql_from_response(content: str) -> str:
    """
    Pull the SQL statement out of an LLM reply.

    A fenced block wins. Otherwise known preambles are dropped and the text
    is cut to the first line that opens a WITH or SELECT statement.
    """
    if not content:
        return ""
    cleaned = content.strip()
    if len(cleaned) > 1 and cleaned[0] == cleaned[-1] and cleaned[0] in ("'", '"'):
        cleaned = cleaned[1:-1].strip()

    fence = _FENCE_RE.search(cleaned)
    if fence:
        cleaned = fence.group(1).strip()
    else:
        for pattern in _PREAMBLE_RES:
            cleaned = pattern.sub("", cleaned, count=1)
        start = _STATEMENT_START_RE.search(cleaned)
        if start:
            cleaned = cleaned[start.start():]

    cleaned = _NOTES_RE.split(cleaned, maxsplit=1)[0]
    cleaned = re.sub(r"```(?:sql|clickhouse)?", "", cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.strip()
    while cleaned.endswith(";"):
        cleaned = cleaned[:-1].rstrip()
    return cleaned


def complete_truncated_cte(sql: str) -> str:
    """Append a main SELECT over the first CTE when the text stops after its CTE list."""
    if not sql or not is_cte_without_select(sql):
        return sql
    names = cte_names(sql)
    if not names:
        return sql
    body = sql.rstrip()
    while body.endswith((";", ",")):
        body = body[:-1].rstrip()
    return f"{body}\nSELECT * FROM {names[0]} LIMIT {CTE_COMPLETION_LIMIT}"


def normalize_sql(sql: str) -> str:
    return " ".join((sql or "").split()).lower()
