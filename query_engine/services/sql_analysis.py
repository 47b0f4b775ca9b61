"""
Lightweight structural analysis of generated ClickHouse SELECT statements.

This is not a parser. Comments and literals are masked, parenthesised groups
are flattened per scope, and each SELECT block is cut into clauses by the
keywords left at depth 0. That is enough to catch the faults language models
commonly produce before the query reaches the engine:

- unbalanced parentheses, misspelled keywords, missing separators
- unknown tables
- identifiers that no source of the current CTE/select scope defines
- aggregates inside WHERE
- selected/ordered columns neither aggregated nor grouped

Every finding is rendered the way ClickHouse words the same fault, so one
classifier handles static and engine errors alike. Anything ambiguous is
left for the engine to judge.
"""
import difflib
import re
from typing import Dict, Iterator, List, Optional, Set, Tuple

from query_engine.services.trace_schema import TRACE_COLUMNS, is_trace_table

_WORD = r"[A-Za-z_][A-Za-z0-9_]*"

_CLAUSE_RE = re.compile(
    r"\b(SELECT|FROM|PREWHERE|WHERE|GROUP\s+BY|HAVING|ORDER\s+BY|LIMIT|SETTINGS|FORMAT|WINDOW|QUALIFY)\b",
    re.IGNORECASE,
)
_SUBQUERY_START_RE = re.compile(r"\s*(?:SELECT|WITH)\b", re.IGNORECASE)
_SELECT_RE = re.compile(r"\bSELECT\b", re.IGNORECASE)
_UNION_RE = re.compile(r"\bUNION\s+(?:ALL|DISTINCT)\b", re.IGNORECASE)
_FUNC_RE = re.compile(r"(?<![\w.])(" + _WORD + r")\s*\(")
_IDENT_RE = re.compile(r"(?<![\w.$])(" + _WORD + r")(?:\s*\.\s*(" + _WORD + r"|\*))?")
_AS_ALIAS_RE = re.compile(r"\bAS\s+" + _WORD, re.IGNORECASE)
_LAMBDA_RE = re.compile(r"(?:\(\s*(" + _WORD + r"(?:\s*,\s*" + _WORD + r")*)\s*\)|(" + _WORD + r"))\s*->")
_TYPE_RE = re.compile(
    r"^(?:U?Int(?:8|16|32|64|128|256)|Float(?:32|64)|String|FixedString|Date|Date32|DateTime|DateTime64|"
    r"Decimal(?:32|64|128|256)?|UUID|Bool|Boolean|Nullable|LowCardinality|Array|Map|Tuple|Enum8|Enum16|"
    r"IPv4|IPv6|JSON|Nothing)$"
)
_ORDER_SUFFIX_RE = re.compile(r"\s+(?:ASC|DESC|NULLS\s+(?:FIRST|LAST)|WITH\s+FILL|COLLATE)\b.*$", re.IGNORECASE | re.DOTALL)
_JOIN_CONDITION_RE = re.compile(r"\b(?:ON|USING)\b", re.IGNORECASE)
_JOIN_BOUNDARY_RE = re.compile(
    r"\b(?:(?:GLOBAL|ANY|ALL|ASOF|SEMI|ANTI|INNER|LEFT|RIGHT|FULL|OUTER|CROSS|ARRAY|PASTE)\s+)*JOIN\b",
    re.IGNORECASE,
)
_JOIN_MODIFIER_RE = re.compile(r"\b(INNER|LEFT|RIGHT|FULL|CROSS|SEMI|ANTI|ASOF|GLOBAL|PASTE)\s+(" + _WORD + r")", re.IGNORECASE)
# Two select expressions with no comma between them.
_AFTER_ALIAS_RE = re.compile(r"\bAS\s+" + _WORD + r"\s+(\S)", re.IGNORECASE)
_AFTER_CALL_RE = re.compile(r"\)\s+(" + _WORD + r")\s*\(")
_ADJACENT_TERMS_RE = re.compile(r"(?<![\w.])(?:" + _WORD + r"|\d+(?:\.\d+)?)\s+(" + _WORD + r")\s*\(")
_JOIN_MODIFIER_FOLLOWERS = {"join", "outer", "semi", "anti", "any", "all", "asof", "inner", "left", "right", "array"}
_NON_READONLY_RE = re.compile(
    r"^\s*(INSERT|ALTER|DROP|TRUNCATE|DELETE|UPDATE|CREATE|RENAME|ATTACH|DETACH|OPTIMIZE|GRANT|REVOKE|KILL)\b",
    re.IGNORECASE,
)

AGGREGATE_FUNCTIONS = {
    "count", "sum", "avg", "min", "max", "any", "anylast", "anyheavy", "argmin", "argmax",
    "uniq", "uniqexact", "uniqcombined", "uniqcombined64", "uniqhll12", "uniqtheta", "uniqupto",
    "quantile", "quantiles", "quantileexact", "quantilesexact", "quantiletiming", "quantilestiming",
    "quantiletdigest", "quantilestdigest", "quantiledeterministic", "quantileexactweighted",
    "median", "medianexact", "grouparray", "groupuniqarray", "groupbitand", "groupbitor",
    "stddevpop", "stddevsamp", "varpop", "varsamp", "covarpop", "covarsamp", "corr",
    "topk", "topkweighted", "summap", "minmap", "maxmap", "avgweighted", "entropy",
    "sumwithoverflow", "sumkahan", "simplelinearregression", "histogram", "stddev", "variance",
}
_AGGREGATE_SUFFIXES = ("if", "array", "state", "merge", "ornull", "ordefault", "distinct")

KEYWORDS = {
    "select", "from", "where", "prewhere", "group", "by", "order", "having", "limit", "offset",
    "with", "as", "and", "or", "not", "in", "is", "null", "like", "ilike", "between", "case",
    "when", "then", "else", "end", "distinct", "all", "any", "join", "inner", "left", "right",
    "full", "outer", "cross", "on", "using", "asc", "desc", "nulls", "first", "last", "interval",
    "second", "minute", "hour", "day", "week", "month", "quarter", "year", "true", "false",
    "union", "over", "partition", "rows", "range", "preceding", "following", "unbounded",
    "current", "row", "final", "sample", "array", "global", "semi", "anti", "asof", "exists",
    "settings", "format", "totals", "fill", "step", "to", "filter", "window", "qualify",
    "collate", "nan", "inf", "paste", "except", "replace", "apply", "ties",
}

KEYWORD_TYPOS = {
    "selct": "SELECT", "selet": "SELECT", "slect": "SELECT", "seelct": "SELECT",
    "form": "FROM", "frmo": "FROM", "fromm": "FROM",
    "wher": "WHERE", "whre": "WHERE", "wehre": "WHERE", "whree": "WHERE",
    "gropu": "GROUP", "gruop": "GROUP",
    "oder": "ORDER", "odrer": "ORDER", "ordr": "ORDER",
    "jion": "JOIN", "joni": "JOIN",
    "havng": "HAVING", "haivng": "HAVING", "havign": "HAVING",
    "limt": "LIMIT", "lmit": "LIMIT",
    "distnct": "DISTINCT", "disinct": "DISTINCT",
    "innner": "INNER", "lefft": "LEFT",
}
_TYPO_RE = re.compile(r"(?<![\w.])(" + "|".join(sorted(KEYWORD_TYPOS)) + r")\b(?!\s*\()", re.IGNORECASE)


def is_aggregate_function(name: str) -> bool:
    low = (name or "").lower()
    if low in AGGREGATE_FUNCTIONS:
        return True
    for suffix in _AGGREGATE_SUFFIXES:
        if low.endswith(suffix) and low[: -len(suffix)] in AGGREGATE_FUNCTIONS:
            return True
    return False


def mask_sql(sql: str) -> Tuple[str, Optional[int]]:
    """
    Blank comments and string literals, keeping every offset.

    String literals keep their quotes with spaces inside. Quoted identifiers
    become bare words. Returns the masked text and the offset of an
    unterminated literal, if any.
    """
    out = list(sql)
    n = len(sql)
    i = 0
    unterminated: Optional[int] = None
    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""
        if ch == "-" and nxt == "-":
            j = sql.find("\n", i)
            j = n if j == -1 else j
            out[i:j] = " " * (j - i)
            i = j
            continue
        if ch == "/" and nxt == "*":
            j = sql.find("*/", i + 2)
            j = n if j == -1 else j + 2
            out[i:j] = " " * (j - i)
            i = j
            continue
        if ch in ("'", '"', "`"):
            j = i + 1
            while j < n:
                if sql[j] == "\\":
                    j += 2
                    continue
                if sql[j] == ch:
                    if j + 1 < n and sql[j + 1] == ch:
                        j += 2
                        continue
                    break
                j += 1
            if j >= n:
                unterminated = i
                out[i:n] = " " * (n - i)
                break
            if ch == "'":
                out[i + 1:j] = " " * (j - i - 1)
            else:
                out[i] = " "
                out[j] = " "
                out[i + 1:j] = [c if (c.isalnum() or c == "_") else "_" for c in sql[i + 1:j]]
            i = j + 1
            continue
        i += 1
    return "".join(out), unterminated


def find_matching_paren(text: str, open_idx: int) -> int:
    depth = 0
    for idx in range(open_idx, len(text)):
        if text[idx] == "(":
            depth += 1
        elif text[idx] == ")":
            depth -= 1
            if depth == 0:
                return idx
    return -1


def _paren_pairs(masked: str) -> Tuple[List[Tuple[int, int]], Optional[int]]:
    stack: List[int] = []
    pairs: List[Tuple[int, int]] = []
    for idx, ch in enumerate(masked):
        if ch == "(":
            stack.append(idx)
        elif ch == ")":
            if not stack:
                return pairs, idx
            pairs.append((stack.pop(), idx))
    if stack:
        return pairs, stack[-1]
    return sorted(pairs), None


def _flatten(text: str) -> str:
    """Keep depth-0 text and the outermost parentheses; blank everything nested."""
    out = []
    depth = 0
    for ch in text:
        if ch == "(":
            depth += 1
            out.append("(" if depth == 1 else " ")
        elif ch == ")":
            out.append(")" if depth == 1 else " ")
            depth -= 1
        else:
            out.append(ch if depth == 0 else " ")
    return "".join(out)


def _split_commas(flat: str) -> List[Tuple[int, int]]:
    spans = []
    start = 0
    for idx, ch in enumerate(flat):
        if ch == ",":
            spans.append((start, idx))
            start = idx + 1
    spans.append((start, len(flat)))
    return [s for s in spans if flat[s[0]:s[1]].strip()]


def split_conditions(flat: str) -> List[Tuple[int, int]]:
    """Split a flattened boolean expression on depth-0 AND, skipping BETWEEN ... AND."""
    spans = []
    start = 0
    pending_between = 0
    for m in re.finditer(r"\b(BETWEEN|AND)\b", flat, re.IGNORECASE):
        if m.group(1).upper() == "BETWEEN":
            pending_between += 1
            continue
        if pending_between:
            pending_between -= 1
            continue
        spans.append((start, m.start()))
        start = m.end()
    spans.append((start, len(flat)))
    return [s for s in spans if flat[s[0]:s[1]].strip()]


def _aggregate_calls(text: str) -> Iterator[Tuple[int, int, bool]]:
    """Yield (start, end, windowed) for each outermost aggregate call in ``text``."""
    pos = 0
    while True:
        m = _FUNC_RE.search(text, pos)
        if m is None:
            return
        if not is_aggregate_function(m.group(1)):
            pos = m.end()
            continue
        end = find_matching_paren(text, m.end() - 1)
        if end == -1:
            return
        end += 1
        rest = text[end:]
        param = re.match(r"\s*\(", rest)
        if param:
            close = find_matching_paren(text, end + param.end() - 1)
            if close != -1:
                end = close + 1
        windowed = False
        over = re.match(r"\s*OVER\s*(\(|" + _WORD + ")", text[end:], re.IGNORECASE)
        if over:
            windowed = True
            if over.group(1) == "(":
                close = find_matching_paren(text, end + over.end() - 1)
                end = close + 1 if close != -1 else end + over.end()
            else:
                end += over.end()
        yield m.start(), end, windowed
        pos = end


def has_aggregate_call(text: str) -> bool:
    return any(True for _ in _aggregate_calls(text))


def _blank_aggregates(text: str) -> str:
    chars = list(text)
    for start, end, _ in _aggregate_calls(text):
        chars[start:end] = " " * (end - start)
    return "".join(chars)


def _lambda_params(text: str) -> Set[str]:
    params: Set[str] = set()
    for m in _LAMBDA_RE.finditer(text):
        names = m.group(1) or m.group(2) or ""
        params.update(p.strip().lower() for p in names.split(",") if p.strip())
    return params


def _iter_refs(text: str, offset: int = 0) -> Iterator[Tuple[str, Optional[str], int]]:
    """Yield (name, member, position) for column-like references in masked text."""
    text = _AS_ALIAS_RE.sub(lambda m: " " * len(m.group(0)), text)
    params = _lambda_params(text)
    for m in _IDENT_RE.finditer(text):
        name, member = m.group(1), m.group(2)
        if text[m.end():].lstrip().startswith("("):
            continue
        if text[m.end():].lstrip().startswith("->"):
            continue
        low = name.lower()
        if member is None and (low in KEYWORDS or low in params or _TYPE_RE.match(name)):
            continue
        yield name, member, offset + m.start()


def _bare_columns(text: str) -> List[str]:
    cols = []
    for name, member, _ in _iter_refs(_blank_aggregates(text)):
        if member == "*":
            continue
        cols.append(member or name)
    return cols


def _normalize_expr(text: str) -> str:
    return re.sub(r"\s+", "", text or "").lower()


class _Scope:
    def __init__(self, start: int, end: int, kind: str):
        self.start = start
        self.end = end
        self.kind = kind
        self.parent: Optional["_Scope"] = None
        self.children: List["_Scope"] = []
        self.nosub = ""
        self.flat = ""
        self.ctes: Dict[str, "_Scope"] = {}
        self.cte_labels: List[str] = []
        self.scalar_aliases: Set[str] = set()
        self.blocks: List["SelectBlock"] = []


class _SelectItem:
    def __init__(self, start: int, expr_end: int, end: int, alias: Optional[str]):
        self.start = start
        self.expr_end = expr_end
        self.end = end
        self.alias = alias


class _Source:
    def __init__(self, name: Optional[str], alias: Optional[str], kind: str, pos: int, scope: Optional[_Scope] = None):
        self.name = name
        self.alias = alias
        self.kind = kind
        self.pos = pos
        self.scope = scope
        self.columns: Optional[Set[str]] = None


class SelectBlock:
    """One SELECT ... [FROM ...] block inside a scope; offsets are absolute."""

    def __init__(self, scope: _Scope, start: int, end: int):
        self.scope = scope
        self.start = start
        self.end = end
        self.clauses: Dict[str, Tuple[int, int, int]] = {}
        self.items: List[_SelectItem] = []
        self.sources: List[_Source] = []
        self.join_conditions: List[Tuple[int, int]] = []
        self.has_array_join = False

    def aliases(self) -> Set[str]:
        return {item.alias.lower() for item in self.items if item.alias}


class SqlAnalysis:
    def __init__(self, sql: str):
        self.sql = sql or ""
        self.masked, self.unterminated_at = mask_sql(self.sql)
        self.pairs, self.unbalanced_at = _paren_pairs(self.masked)
        self.scopes: List[_Scope] = []
        self._by_start: Dict[int, _Scope] = {}
        self._outputs: Dict[int, Optional[Set[str]]] = {}
        if self.parsed:
            self._build_scopes()

    @property
    def parsed(self) -> bool:
        return self.unterminated_at is None and self.unbalanced_at is None

    @property
    def statement(self) -> Optional[_Scope]:
        return self.scopes[0] if self.scopes else None

    # structure

    def _build_scopes(self) -> None:
        statement = _Scope(0, len(self.sql), "statement")
        scopes = [statement]
        for open_idx, close_idx in self.pairs:
            if _SUBQUERY_START_RE.match(self.masked, open_idx + 1, close_idx):
                scopes.append(_Scope(open_idx + 1, close_idx, "expr"))
        scopes.sort(key=lambda s: (s.start, -s.end))

        stack = [statement]
        for scope in scopes[1:]:
            while stack and not (scope.start >= stack[-1].start and scope.end <= stack[-1].end):
                stack.pop()
            scope.parent = stack[-1]
            scope.parent.children.append(scope)
            stack.append(scope)

        for scope in scopes:
            chars = list(self.masked[scope.start:scope.end])
            for child in scope.children:
                a, b = child.start - scope.start, child.end - scope.start
                chars[a:b] = " " * (b - a)
            scope.nosub = "".join(chars)
            scope.flat = _flatten(scope.nosub)

        self.scopes = scopes
        self._by_start = {s.start: s for s in scopes}
        for scope in scopes:
            self._parse_scope(scope)

    def _scope_at(self, start: int) -> Optional[_Scope]:
        return self._by_start.get(start)

    def nosub(self, scope: _Scope, a: int, b: int) -> str:
        return scope.nosub[a - scope.start:b - scope.start]

    def flat(self, scope: _Scope, a: int, b: int) -> str:
        return scope.flat[a - scope.start:b - scope.start]

    def _parse_scope(self, scope: _Scope) -> None:
        flat = scope.flat
        with_m = re.match(r"\s*WITH\b", flat, re.IGNORECASE)
        main = _SELECT_RE.search(flat, with_m.end() if with_m else 0)
        if with_m:
            header_end = main.start() if main else len(flat)
            header = flat[with_m.end():header_end]
            offset = scope.start + with_m.end()
            for cm in re.finditer(r"(" + _WORD + r")\s+AS\s*\(", header, re.IGNORECASE):
                body = self._scope_at(offset + cm.end())
                if body is not None:
                    body.kind = "cte"
                    scope.ctes[cm.group(1).lower()] = body
                    scope.cte_labels.append(self.sql[offset + cm.start(1):offset + cm.end(1)])
                else:
                    scope.scalar_aliases.add(cm.group(1).lower())
            for am in re.finditer(r"\bAS\s+(" + _WORD + r")\b(?!\s*\()", header, re.IGNORECASE):
                scope.scalar_aliases.add(am.group(1).lower())
        if main is None:
            return
        starts = [main.start()]
        ends = []
        for um in _UNION_RE.finditer(flat, main.start()):
            nxt = _SELECT_RE.search(flat, um.end())
            if nxt is None:
                break
            ends.append(um.start())
            starts.append(nxt.start())
        ends.append(len(flat))
        for start, end in zip(starts, ends):
            scope.blocks.append(self._parse_block(scope, scope.start + start, scope.start + end))

    def _parse_block(self, scope: _Scope, start: int, end: int) -> SelectBlock:
        block = SelectBlock(scope, start, end)
        flat = self.flat(scope, start, end)
        marks = []
        seen: Set[str] = set()
        for cm in _CLAUSE_RE.finditer(flat):
            name = " ".join(cm.group(1).upper().split())
            if name in seen:
                continue
            seen.add(name)
            marks.append((name, start + cm.start(), start + cm.end()))
        for i, (name, ks, ke) in enumerate(marks):
            be = marks[i + 1][1] if i + 1 < len(marks) else end
            block.clauses[name] = (ks, ke, be)
        self._parse_items(block)
        self._parse_sources(block)
        return block

    def _parse_items(self, block: SelectBlock) -> None:
        span = block.clauses.get("SELECT")
        if not span:
            return
        _, body_start, body_end = span
        flat = self.flat(block.scope, body_start, body_end)
        lead = re.match(r"\s*DISTINCT\b(?:\s+ON\s*\([^)]*\))?", flat, re.IGNORECASE)
        skip = lead.end() if lead else 0
        flat_body = " " * skip + flat[skip:]
        for a, b in _split_commas(flat_body):
            a = max(a, skip)
            item_flat = flat_body[a:b]
            alias = None
            expr_end = b
            m = re.search(r"\s+AS\s+(" + _WORD + r")\s*$", item_flat, re.IGNORECASE)
            if m:
                alias = m.group(1)
                expr_end = a + m.start()
            else:
                m = re.search(r"(?<=[\w)\]'])\s+(" + _WORD + r")\s*$", item_flat)
                if m and m.group(1).lower() not in KEYWORDS:
                    prefix_words = re.findall(_WORD, item_flat[:m.start()])
                    if prefix_words and not all(w.lower() in KEYWORDS for w in prefix_words):
                        alias = m.group(1)
                        expr_end = a + m.start()
            block.items.append(_SelectItem(body_start + a, body_start + expr_end, body_start + b, alias))

    def _visible_ctes(self, scope: Optional[_Scope]) -> Dict[str, _Scope]:
        found: Dict[str, _Scope] = {}
        while scope is not None:
            for name, body in scope.ctes.items():
                found.setdefault(name, body)
            scope = scope.parent
        return found

    def _visible_scalars(self, scope: Optional[_Scope]) -> Set[str]:
        found: Set[str] = set()
        while scope is not None:
            found |= scope.scalar_aliases
            scope = scope.parent
        return found

    def _parse_sources(self, block: SelectBlock) -> None:
        span = block.clauses.get("FROM")
        if not span:
            return
        ks, _, be = span
        scope = block.scope
        flat = self.flat(scope, ks, be)
        for m in re.finditer(r"\b(FROM|JOIN)\b\s*", flat, re.IGNORECASE):
            if m.group(1).upper() == "FROM" and m.start() != 0:
                continue
            pos = m.end()
            abs_pos = ks + pos
            if m.group(1).upper() == "JOIN" and re.search(r"\bARRAY\s*$", flat[:m.start()], re.IGNORECASE):
                block.has_array_join = True
                continue
            source: Optional[_Source] = None
            if flat[pos:pos + 1] == "(":
                close = flat.find(")", pos)
                sub = self._scope_at(abs_pos + 1)
                if sub is not None:
                    sub.kind = "from"
                source = _Source(None, None, "subquery", abs_pos, sub)
                pos = close + 1 if close != -1 else len(flat)
            else:
                nm = re.match(_WORD + r"(?:\s*\.\s*" + _WORD + r")?", flat[pos:])
                if nm is None:
                    continue
                name = re.sub(r"\s+", "", nm.group(0))
                pos += nm.end()
                call = re.match(r"\s*\(", flat[pos:])
                if call:
                    close = flat.find(")", pos)
                    source = _Source(name, None, "function", abs_pos)
                    pos = close + 1 if close != -1 else len(flat)
                else:
                    source = _Source(name, None, "qualified" if "." in name else "table", abs_pos)
            am = re.match(r"\s+(?:AS\s+)?(" + _WORD + r")", flat[pos:], re.IGNORECASE)
            if am and am.group(1).lower() not in KEYWORDS:
                source.alias = am.group(1)
            block.sources.append(source)

        for cm in _JOIN_CONDITION_RE.finditer(flat):
            boundary = _JOIN_BOUNDARY_RE.search(flat, cm.end())
            stop = boundary.start() if boundary else len(flat)
            block.join_conditions.append((ks + cm.end(), ks + stop))

    def _resolve_sources(self, block: SelectBlock) -> Optional[str]:
        """Fill source columns; return the first unknown table name, if any."""
        ctes = self._visible_ctes(block.scope)
        for source in block.sources:
            if source.kind == "table":
                low = source.name.lower()
                if low in ctes:
                    source.kind = "cte"
                    source.scope = ctes[low]
                    source.columns = self._output_columns(ctes[low])
                elif is_trace_table(low):
                    source.columns = set(TRACE_COLUMNS)
                else:
                    return source.name
            elif source.kind == "qualified":
                if is_trace_table(source.name.split(".")[-1]):
                    source.columns = set(TRACE_COLUMNS)
            elif source.kind == "subquery" and source.scope is not None:
                source.columns = self._output_columns(source.scope)
        return None

    def _output_columns(self, scope: _Scope) -> Optional[Set[str]]:
        key = scope.start
        if key in self._outputs:
            return self._outputs[key]
        self._outputs[key] = None
        if not scope.blocks:
            return None
        block = scope.blocks[0]
        if self._resolve_sources(block) is not None:
            return None
        cols: Set[str] = set()
        for item in block.items:
            if item.alias:
                cols.add(item.alias.lower())
                continue
            expr = self.flat(scope, item.start, item.expr_end).strip()
            m = re.fullmatch(r"(?:(" + _WORD + r")\s*\.\s*)?(" + _WORD + r"|\*)", expr)
            if m is None:
                continue
            if m.group(2) != "*":
                cols.add(m.group(2).lower())
                continue
            qualifier = (m.group(1) or "").lower()
            matched = [
                s for s in block.sources
                if not qualifier or qualifier in {(s.alias or "").lower(), (s.name or "").lower()}
            ]
            if not matched or any(s.columns is None for s in matched):
                return None
            for s in matched:
                cols |= s.columns
        self._outputs[key] = cols
        return cols

    def blocks(self) -> Iterator[SelectBlock]:
        for scope in self.scopes:
            for block in scope.blocks:
                yield block

    def snippet(self, a: int, b: int, limit: int = 160) -> str:
        text = " ".join(self.sql[a:b].split())
        return text if len(text) <= limit else text[:limit] + "..."

    # checks

    def _check_statement(self) -> Optional[str]:
        stripped = self.masked.strip()
        if not stripped or stripped == ";":
            return "Code: 62. DB::Exception: Empty query. (SYNTAX_ERROR)"
        if self.unterminated_at is not None:
            pos = self.unterminated_at
            return (
                f"Code: 62. DB::Exception: Syntax error: failed at position {pos + 1} "
                f"('{self.sql[pos:pos + 20]}'): unterminated quoted literal. (SYNTAX_ERROR)"
            )
        verb = _NON_READONLY_RE.match(self.masked)
        if verb:
            return (
                f"Code: 164. DB::Exception: Cannot execute query in readonly mode: "
                f"{verb.group(1).upper()} statements are not allowed. (READONLY)"
            )
        if not re.match(r"\s*(?:SELECT|WITH)\b", self.masked, re.IGNORECASE):
            word = stripped.split()[0]
            return (
                f"Code: 62. DB::Exception: Syntax error: failed at position 1 ('{word}'): "
                f"{self.snippet(0, len(self.sql))}. Expected SELECT or WITH. (SYNTAX_ERROR)"
            )
        semi = self.masked.find(";")
        if semi != -1 and self.masked[semi + 1:].strip():
            return (
                "Code: 62. DB::Exception: Syntax error (Multi-statements are not allowed): "
                f"failed at position {semi + 1} (';'). (SYNTAX_ERROR)"
            )
        if self.unbalanced_at is not None:
            pos = self.unbalanced_at
            return (
                f"Code: 62. DB::Exception: Syntax error: failed at position {pos + 1} ('{self.sql[pos]}'): "
                f"{self.snippet(pos, pos + 40)}. Unmatched parentheses. (SYNTAX_ERROR)"
            )
        typo = _TYPO_RE.search(self.masked)
        if typo and not re.search(r"\bAS\s*$", self.masked[:typo.start()], re.IGNORECASE):
            word = typo.group(1)
            return (
                f"Code: 62. DB::Exception: Syntax error: failed at position {typo.start() + 1} ('{word}'): "
                f"{self.snippet(typo.start(), typo.start() + 60)}. "
                f"Expected one of: {KEYWORD_TYPOS[word.lower()]}, token. (SYNTAX_ERROR)"
            )
        dangling = re.search(r"\b(GROUP|ORDER)\b(?!\s+BY\b)", self.masked, re.IGNORECASE)
        if dangling:
            return (
                f"Code: 62. DB::Exception: Syntax error: failed at position {dangling.start() + 1} "
                f"('{dangling.group(1)}'): {self.snippet(dangling.start(), dangling.start() + 60)}. "
                "Expected BY. (SYNTAX_ERROR)"
            )
        return None

    def _check_separators(self, block: SelectBlock) -> Optional[str]:
        scope = block.scope
        for item in block.items:
            flat = self.flat(scope, item.start, item.end)
            for pattern in (_AFTER_ALIAS_RE, _AFTER_CALL_RE, _ADJACENT_TERMS_RE):
                for m in pattern.finditer(flat):
                    token = m.group(1)
                    if pattern is not _AFTER_ALIAS_RE and token.lower() in KEYWORDS:
                        continue
                    if pattern is _ADJACENT_TERMS_RE:
                        lead = re.match(_WORD, m.group(0))
                        if lead and lead.group(0).lower() in KEYWORDS:
                            continue
                    pos = item.start + m.start(1)
                    return (
                        f"Code: 62. DB::Exception: Syntax error: failed at position {pos + 1} ('{self.sql[pos:pos + len(token)]}'): "
                        f"{self.snippet(pos, pos + 60)}. Expected one of: token, Comma, FROM, AS. (SYNTAX_ERROR)"
                    )
        span = block.clauses.get("FROM")
        if span:
            ks, _, be = span
            flat = self.flat(scope, ks, be)
            for m in _JOIN_MODIFIER_RE.finditer(flat):
                if m.group(2).lower() not in _JOIN_MODIFIER_FOLLOWERS:
                    pos = ks + m.start(2)
                    return (
                        f"Code: 62. DB::Exception: Syntax error: failed at position {pos + 1} ('{m.group(2)}'): "
                        f"{self.snippet(pos, pos + 60)}. Expected JOIN. (SYNTAX_ERROR)"
                    )
        return None

    def _check_tables(self, block: SelectBlock) -> Optional[str]:
        unknown = self._resolve_sources(block)
        if unknown is None:
            return None
        return (
            f"Code: 60. DB::Exception: Unknown table expression identifier '{unknown}' in scope "
            f"{self.snippet(block.start, block.end)}. (UNKNOWN_TABLE)"
        )

    def _check_identifiers(self, block: SelectBlock) -> Optional[str]:
        scope = block.scope
        if scope.kind == "expr" or block.has_array_join or not block.sources:
            return None
        if any(src.columns is None for src in block.sources):
            return None
        allowed: Set[str] = set()
        qualifiers: Dict[str, Set[str]] = {}
        for src in block.sources:
            allowed |= src.columns
            for q in (src.alias, (src.name or "").split(".")[-1] if src.name else None):
                if q:
                    qualifiers[q.lower()] = src.columns
                    allowed.add(q.lower())
        allowed |= block.aliases()
        allowed |= self._visible_scalars(scope)
        allowed |= set(self._visible_ctes(scope))

        regions = []
        span = block.clauses.get("SELECT")
        if span:
            regions.append((span[1], span[2]))
        for name in ("PREWHERE", "WHERE", "GROUP BY", "HAVING", "ORDER BY", "QUALIFY"):
            span = block.clauses.get(name)
            if span:
                regions.append((span[1], span[2]))
        regions.extend(block.join_conditions)

        for a, b in regions:
            for name, member, pos in _iter_refs(self.nosub(scope, a, b), a):
                if member is not None:
                    if member == "*":
                        continue
                    cols = qualifiers.get(name.lower())
                    if cols is not None and member.lower() not in cols:
                        return self._unknown_identifier(member, cols, block)
                    continue
                if name.lower() not in allowed:
                    return self._unknown_identifier(name, allowed, block)
        return None

    def _unknown_identifier(self, name: str, candidates: Set[str], block: SelectBlock) -> str:
        close = difflib.get_close_matches(name.lower(), sorted(candidates), n=3, cutoff=0.6)
        hint = f" Maybe you meant: {close}." if close else ""
        return (
            f"Code: 47. DB::Exception: Unknown expression identifier `{name}` in scope "
            f"{self.snippet(block.start, block.end)}.{hint} (UNKNOWN_IDENTIFIER)"
        )

    def _check_where_aggregates(self, block: SelectBlock) -> Optional[str]:
        for clause in ("PREWHERE", "WHERE"):
            span = block.clauses.get(clause)
            if not span:
                continue
            text = self.nosub(block.scope, span[1], span[2])
            for start, _, _ in _aggregate_calls(text):
                fn = _FUNC_RE.match(text, start).group(1)
                return (
                    f"Code: 184. DB::Exception: Aggregate function {fn}() is found in {clause} in query: "
                    f"While processing {self.snippet(span[1], span[2])}. (ILLEGAL_AGGREGATION)"
                )
        return None

    def _check_grouping(self, block: SelectBlock) -> Optional[str]:
        scope = block.scope
        group_span = block.clauses.get("GROUP BY")
        aggregating = group_span is not None
        if not aggregating:
            for item in block.items:
                expr = self.nosub(scope, item.start, item.expr_end)
                if any(not windowed for _, _, windowed in _aggregate_calls(expr)):
                    aggregating = True
                    break
        if not aggregating:
            return None

        grouped_exprs: Set[str] = set()
        grouped_cols: Set[str] = set()
        positions: Set[int] = set()
        if group_span:
            gb_flat = self.flat(scope, group_span[1], group_span[2])
            if gb_flat.strip().upper() in ("ALL", "ALL WITH TOTALS"):
                return None
            gb_flat = re.sub(r"\bWITH\s+(?:TOTALS|ROLLUP|CUBE)\b.*$", "", gb_flat, flags=re.IGNORECASE | re.DOTALL)
            gb_text = self.nosub(scope, group_span[1], group_span[2])
            for a, b in _split_commas(gb_flat):
                expr = gb_text[a:b].strip()
                if expr.isdigit():
                    positions.add(int(expr))
                    continue
                grouped_exprs.add(_normalize_expr(expr))
                for name, member, _ in _iter_refs(expr):
                    grouped_cols.add((member or name).lower())
        aliases = block.aliases()
        have = ", ".join(sorted(grouped_cols)) or "none"

        def _ungrouped(expr: str) -> Optional[str]:
            if _normalize_expr(expr) in grouped_exprs:
                return None
            for col in _bare_columns(expr):
                low = col.lower()
                if low not in grouped_cols and low not in aliases and low not in grouped_exprs:
                    return col
            return None

        for idx, item in enumerate(block.items, start=1):
            if idx in positions:
                continue
            if item.alias and item.alias.lower() in grouped_exprs:
                continue
            expr = self.nosub(scope, item.start, item.expr_end)
            if expr.strip() == "*" or expr.strip().endswith(".*"):
                continue
            col = _ungrouped(expr)
            if col:
                return self._not_aggregate(col, have, item.start, item.expr_end)

        for clause in ("HAVING", "ORDER BY"):
            span = block.clauses.get(clause)
            if not span:
                continue
            flat = self.flat(scope, span[1], span[2])
            text = self.nosub(scope, span[1], span[2])
            parts = _split_commas(flat) if clause == "ORDER BY" else [(0, len(flat))]
            for a, b in parts:
                part_flat = flat[a:b]
                cut = _ORDER_SUFFIX_RE.search(part_flat) if clause == "ORDER BY" else None
                b_eff = a + cut.start() if cut else b
                expr = text[a:b_eff]
                if expr.strip().isdigit():
                    continue
                col = _ungrouped(expr)
                if col:
                    return self._not_aggregate(col, have, span[1] + a, span[1] + b_eff)
        return None

    def _not_aggregate(self, col: str, have: str, a: int, b: int) -> str:
        return (
            f"Code: 215. DB::Exception: Column `{col}` is not under aggregate function and not in GROUP BY. "
            f"Have columns: [{have}]: While processing {self.snippet(a, b)}. (NOT_AN_AGGREGATE)"
        )

    def first_error(self) -> Optional[str]:
        message = self._check_statement()
        if message or not self.scopes:
            return message
        checks = (
            self._check_separators,
            self._check_tables,
            self._check_identifiers,
            self._check_where_aggregates,
            self._check_grouping,
        )
        for check in checks:
            for block in self.blocks():
                message = check(block)
                if message:
                    return message
        return None


def find_static_error(sql: str) -> Optional[str]:
    """Return an engine-style error message for the first structural fault found, else None."""
    return SqlAnalysis(sql).first_error()


def cte_names(sql: str) -> List[str]:
    analysis = SqlAnalysis(sql)
    if analysis.statement is None:
        return []
    return list(analysis.statement.cte_labels)


def is_cte_without_select(sql: str) -> bool:
    """True for ``WITH name AS (...)`` text that never reaches its main SELECT."""
    analysis = SqlAnalysis(sql)
    statement = analysis.statement
    if statement is None:
        return False
    return bool(statement.ctes) and not statement.blocks


def move_where_aggregates_to_having(sql: str) -> Optional[str]:
    """Move aggregate conditions out of the first offending WHERE into HAVING."""
    analysis = SqlAnalysis(sql)
    for block in analysis.blocks():
        span = block.clauses.get("WHERE")
        if not span:
            continue
        ks, ke, be = span
        scope = block.scope
        text = analysis.nosub(scope, ke, be)
        if not has_aggregate_call(text):
            continue
        keep, move = [], []
        for a, b in split_conditions(analysis.flat(scope, ke, be)):
            original = sql[ke + a:ke + b].strip()
            (move if has_aggregate_call(text[a:b]) else keep).append(original)
        if not move:
            continue

        edits: List[Tuple[int, int, str]] = []
        where_text = ("WHERE " + " AND ".join(keep) + "\n") if keep else ""
        edits.append((ks, be, where_text))
        conditions = " AND ".join(move)
        having = block.clauses.get("HAVING")
        if having:
            _, hke, hbe = having
            existing = sql[hke:hbe]
            trailing = existing[len(existing.rstrip()):]
            trailing = trailing or "\n"
            edits.append((hke, hbe, f" ({existing.strip()}) AND {conditions}{trailing}"))
        else:
            group = block.clauses.get("GROUP BY")
            pos = group[2] if group else be
            lead = "" if pos > 0 and sql[pos - 1].isspace() else "\n"
            tail = "\n" if pos < len(sql) else ""
            edits.append((pos, pos, f"{lead}HAVING {conditions}{tail}"))

        rewritten = sql
        for start, end, replacement in sorted(edits, key=lambda e: e[0], reverse=True):
            rewritten = rewritten[:start] + replacement + rewritten[end:]
        return rewritten
    return None
