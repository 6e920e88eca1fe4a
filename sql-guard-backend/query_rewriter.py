"""
SQL Guard - Query Rewriter
==========================

PURPOSE:
    Final text-level guard applied to SQL (and, as annotations, to intent
    text) before anything reaches the NL→SQL model or the database.

SQL STEPS (each idempotent on its own, so the whole rewrite is):
    1. OWNERSHIP   owner_id = '<caller>' as the leading top-level conjunct of
                   WHERE. An existing WHERE is parenthesised behind it, so a
                   pre-supplied OR (or a different-id predicate) can never
                   widen scope. Without a WHERE, one is created before the
                   first top-level GROUP BY / ORDER BY / HAVING / LIMIT /
                   OFFSET, else at the end. A top-level UNION, EXCEPT or
                   INTERSECT is refused: a single WHERE scopes one branch.
    2. TIME BOUND  if the WHERE clause references no time column or date
                   function, the default window predicate is appended.
    3. NULL SAFETY SUM(...) over money fields -> COALESCE(SUM(...), 0);
                   *,- chains over nullable fields -> COALESCE(<chain>, 0).

STRUCTURE:
    String literals are masked (__STRL0000__) before any pattern runs and
    comments are dropped. Top-level clause positions come from the sqlparse
    token tree, so keywords inside parentheses/subqueries are never matched.
    A trailing semicolon is preserved; anything after an inner semicolon is
    refused.

INTENT TEXT:
    The same three concerns become Chinese annotations, each added once.
"""

import logging
import re
from functools import lru_cache
from typing import List, Optional, Tuple

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Where

from caller_context import CallerContext
from guard_config import GuardSettings
from guard_errors import RewriteInvariantViolation
from intent_classifier import detect_time_scope

logger = logging.getLogger(__name__)


# =============================================================================
# LITERAL MASKING
# =============================================================================

_STRING_LITERAL_RE = re.compile(r"'[^']*(?:''[^']*)*'")
_PLACEHOLDER_RE = re.compile(r"__STRL(\d{4})__")
_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)


def _mask_literals(sql: str) -> Tuple[str, List[str]]:
    """Replace single-quoted literals with __STRL0000__ placeholders."""
    literals: List[str] = []

    def _store(m: re.Match) -> str:
        idx = len(literals)
        literals.append(m.group(0))
        return f"__STRL{idx:04d}__"

    return _STRING_LITERAL_RE.sub(_store, sql), literals


def _unmask_literals(sql: str, literals: List[str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: literals[int(m.group(1))], sql)


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# =============================================================================
# CLAUSE LOCATION
# =============================================================================

# Combine several SELECTs; each branch would need its own scope, so these are refused
_SET_OPERATORS = {
    "UNION", "UNION ALL", "UNION DISTINCT", "EXCEPT", "EXCEPT ALL", "INTERSECT", "INTERSECT ALL",
}

# Clauses that close a WHERE (or mark where a new one must go)
_BOUNDARY_KEYWORDS = {
    "GROUP BY", "ORDER BY", "HAVING", "LIMIT", "OFFSET", "WINDOW", "FETCH",
} | _SET_OPERATORS


class _Clauses:
    """Character offsets of the top-level WHERE and the first boundary keyword."""

    def __init__(self, sql: str):
        self.sql = sql
        self.where_start: Optional[int] = None
        self.where_kw_end: Optional[int] = None
        self.where_end: int = len(sql)
        self.boundary: Optional[int] = None
        self.set_operator: Optional[str] = None
        self._locate()

    def _top_level_tokens(self):
        parsed = sqlparse.parse(self.sql)
        if not parsed:
            return
        offset = 0
        for token in parsed[0].tokens:
            # sqlparse groups WHERE with its conditions; walk its direct children
            children = token.tokens if isinstance(token, Where) else [token]
            for child in children:
                yield offset, child
                offset += len(str(child))

    def _locate(self) -> None:
        for offset, token in self._top_level_tokens():
            if token.is_whitespace or token.ttype in T.Comment or not token.is_keyword:
                continue
            keyword = " ".join(token.normalized.upper().split())

            if keyword in _SET_OPERATORS and self.set_operator is None:
                self.set_operator = keyword
            if self.boundary is not None:
                continue

            if keyword == "WHERE" and self.where_start is None:
                self.where_start = offset
                self.where_kw_end = offset + len(str(token))
            elif keyword in _BOUNDARY_KEYWORDS:
                self.boundary = offset
                if self.where_start is not None:
                    self.where_end = offset

    @property
    def has_where(self) -> bool:
        return self.where_start is not None

    @property
    def condition(self) -> str:
        if not self.has_where:
            return ""
        return self.sql[self.where_kw_end:self.where_end].strip()

    @property
    def tail(self) -> str:
        return self.sql[self.where_end:].strip() if self.has_where else ""


def _has_top_level_or(condition: str) -> bool:
    depth = 0
    for m in re.finditer(r"\(|\)|\bOR\b", condition, re.IGNORECASE):
        token = m.group(0)
        if token == "(":
            depth += 1
        elif token == ")":
            depth = max(depth - 1, 0)
        elif depth == 0:
            return True
    return False


def _top_level_conjuncts(condition: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    start = 0
    for m in re.finditer(r"\(|\)|\bAND\b", condition, re.IGNORECASE):
        token = m.group(0)
        if token == "(":
            depth += 1
        elif token == ")":
            depth = max(depth - 1, 0)
        elif depth == 0:
            parts.append(condition[start:m.start()].strip())
            start = m.end()
    parts.append(condition[start:].strip())
    return [p for p in parts if p]


def _matching_paren(text: str, open_idx: int) -> int:
    """Index of the ')' closing text[open_idx], or -1."""
    depth = 0
    for i in range(open_idx, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


# =============================================================================
# OWNERSHIP PREDICATES
# =============================================================================

def _strip_terminator(sql: str) -> str:
    body = sql.strip()
    while body.endswith(";"):
        body = body[:-1].rstrip()
    return body


def _analyze(sql: str) -> Tuple[_Clauses, List[str]]:
    """Top-level clauses of `sql` with literals masked and comments dropped."""
    masked, literals = _mask_literals(_strip_terminator(sql))
    masked = _COMMENT_RE.sub(" ", masked)
    return _Clauses(masked), literals


@lru_cache(maxsize=32)
def _owner_predicate_re(owner_column: str) -> "re.Pattern[str]":
    # group 1: masked single-quoted literal, group 2: double-quoted value
    return re.compile(
        rf"(?:\w+\.)?{re.escape(owner_column)}\s*=\s*(?:__STRL(\d{{4}})__|\"([^\"]*)\")",
        re.IGNORECASE,
    )


def _unquote(literal: str) -> str:
    return literal[1:-1].replace("''", "'")


def _owner_values(
    condition: str, literals: List[str], owner_column: str, double_quoted: bool = False
) -> List[str]:
    """Values bound by `<owner_column> = ...` top-level conjuncts. A top-level OR binds nothing."""
    if not condition or _has_top_level_or(condition):
        return []
    pattern = _owner_predicate_re(owner_column)
    values: List[str] = []
    for conjunct in _top_level_conjuncts(condition):
        m = pattern.fullmatch(conjunct)
        if m is None:
            continue
        if m.group(1) is not None:
            values.append(_unquote(literals[int(m.group(1))]))
        elif double_quoted:
            values.append(m.group(2))
    return values


def scoped_owner_values(sql: str, owner_column: str, double_quoted: bool = False) -> List[str]:
    """
    Owner ids that the top-level WHERE of `sql` pins `owner_column` to.

    Predicates inside comments, string literals, subqueries or under a
    top-level OR are not counted. `double_quoted` also accepts
    `owner = "id"` (SQLite treats it as a string).
    """
    clauses, literals = _analyze(sql)
    return _owner_values(clauses.condition, literals, owner_column, double_quoted)


def top_level_set_operator(sql: str) -> Optional[str]:
    """First top-level UNION / EXCEPT / INTERSECT in `sql`, or None."""
    clauses, _ = _analyze(sql)
    return clauses.set_operator


# =============================================================================
# NULL-SAFETY PATTERNS
# =============================================================================

_SUM_RE = re.compile(r"\bSUM\s*\(", re.IGNORECASE)
_COALESCE_OPEN_RE = re.compile(r"COALESCE\s*\(\s*$", re.IGNORECASE)
_IDENT_RE = re.compile(r"[A-Za-z_][\w.]*")
_MONEY_WORD_RE = re.compile(r"amount|price|cost|total|sales|revenue", re.IGNORECASE)

_OPERAND = r"(?:[A-Za-z_][\w.]*\b(?!\s*\()|\d+(?:\.\d+)?|(?<![\w)])\([^()]*\))"
_ARITH_CHAIN_RE = re.compile(
    rf"(?<![\w.)]){_OPERAND}\s*[*\-]\s*{_OPERAND}(?:\s*[*\-+/]\s*{_OPERAND})*"
)

_SQL_KEYWORDS = {
    "select", "from", "where", "and", "or", "not", "case", "when", "then", "else",
    "end", "as", "on", "in", "is", "null", "by", "group", "order", "having", "limit",
    "offset", "distinct", "union", "join", "left", "right", "inner", "outer", "between",
    "like", "asc", "desc", "with", "all", "except", "intersect", "interval",
}


# =============================================================================
# REWRITER
# =============================================================================

class QueryRewriter:
    """Ownership, time-window and null-safety rewriting for SQL and intent text."""

    SCOPE_TEMPLATE = "仅查询用户 {caller_id} 名下的数据："
    ROW_FILTER_TEMPLATE = "仅查询满足 {expr} 的数据："
    TIME_TEMPLATE = "默认时间范围（{label}）："
    NULL_SAFETY_NOTE = "（金额计算中的空值按 0 处理）"

    _ARITHMETIC_CUES = re.compile(
        r"[-+*/×÷－＋]|减|乘|除以|之和|总和|求和|合计|累计|平均|总额|\bsum\b|\btotal\b|\bavg\b",
        re.IGNORECASE,
    )

    def __init__(self, settings: Optional[GuardSettings] = None):
        self.settings = settings or GuardSettings()
        self.owner_column = self.settings.owner_column
        self._nullable = {f.lower() for f in self.settings.nullable_fields}
        columns = "|".join(re.escape(c) for c in self.settings.time_columns)
        self._time_re = re.compile(
            rf"(?<![\w])(?:\w+\.)?(?:{columns})\b"
            r"|\b(?:datetime|strftime|date|julianday)\s*\("
            r"|\bnow\s*\(\s*\)|\bcurrent_date\b|\bcurrent_timestamp\b|\binterval\b",
            re.IGNORECASE,
        )

    # -------------------------------------------------------------------------
    # Public SQL API
    # -------------------------------------------------------------------------

    def rewrite(self, sql: str, caller_id: str) -> str:
        """
        Apply ownership, time bound and null safety to `sql` for `caller_id`.

        Raises:
            RewriteInvariantViolation: empty input, more than one statement,
                or a top-level set operator.
        """
        if not isinstance(sql, str) or not sql.strip():
            raise RewriteInvariantViolation("empty SQL")

        body, had_semicolon = self._prepare(sql)

        result = self._ensure_ownership(body, caller_id)
        result = self._ensure_time_bound(result)
        result = self._ensure_null_safety(result)

        if had_semicolon:
            result = result + ";"
        if result != sql:
            logger.info(f"[REWRITE] caller={caller_id} sql rewritten")
            logger.debug(f"[REWRITE] {sql!r} -> {result!r}")
        return result

    def count_ownership_predicates(self, sql: str, caller_id: str) -> int:
        """Top-level `<owner_col> = '<caller_id>'` conjuncts of the outer WHERE."""
        return scoped_owner_values(sql, self.owner_column).count(caller_id)

    def has_time_bound(self, sql: str) -> bool:
        """True if the top-level WHERE clause carries a time predicate."""
        clauses, literals = _analyze(sql)
        return self._condition_has_time(clauses.condition, literals)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _prepare(self, sql: str) -> Tuple[str, bool]:
        stripped = sql.strip()
        had_semicolon = stripped.endswith(";")
        body = _strip_terminator(stripped)

        masked, literals = _mask_literals(body)
        if _COMMENT_RE.search(masked):
            masked = _COMMENT_RE.sub(" ", masked).strip()
            body = _unmask_literals(masked, literals)
        if ";" in masked:
            raise RewriteInvariantViolation("multiple statements in generated SQL")
        if not masked.strip():
            raise RewriteInvariantViolation("empty SQL")
        operator = _Clauses(masked).set_operator
        if operator:
            raise RewriteInvariantViolation(f"set operator {operator} is not allowed in generated SQL")
        return body, had_semicolon

    def _ensure_ownership(self, sql: str, caller_id: str) -> str:
        masked, literals = _mask_literals(sql)
        clauses = _Clauses(masked)

        if clauses.has_where and self._is_bound(clauses.condition, literals, caller_id):
            return sql

        # Caller id enters as a placeholder like any other literal
        literals.append(quote_literal(caller_id))
        predicate = f"{self.owner_column} = __STRL{len(literals) - 1:04d}__"

        if clauses.has_where:
            condition = clauses.condition
            head = masked[:clauses.where_kw_end]
            rebuilt = f"{head} {predicate} AND ({condition})" if condition else f"{head} {predicate}"
            if clauses.tail:
                rebuilt = f"{rebuilt} {clauses.tail}"
        elif clauses.boundary is not None:
            rebuilt = f"{masked[:clauses.boundary].rstrip()} WHERE {predicate} {masked[clauses.boundary:]}"
        else:
            rebuilt = f"{masked.rstrip()} WHERE {predicate}"

        logger.debug(f"[REWRITE] Ownership predicate injected for {caller_id}")
        return _unmask_literals(rebuilt, literals)

    def _is_bound(self, condition: str, literals: List[str], caller_id: str) -> bool:
        return caller_id in _owner_values(condition, literals, self.owner_column)

    def _condition_has_time(self, condition: str, literals: List[str]) -> bool:
        if not condition:
            return False
        if self._time_re.search(condition):
            return True
        # BETWEEN '2024-01-01' AND ...
        for m in re.finditer(r"\bBETWEEN\s+__STRL(\d{4})__", condition, re.IGNORECASE):
            if re.match(r"'\d{4}-\d{2}-\d{2}", literals[int(m.group(1))]):
                return True
        return False

    def _ensure_time_bound(self, sql: str) -> str:
        masked, literals = _mask_literals(sql)
        clauses = _Clauses(masked)
        condition = clauses.condition
        if self._condition_has_time(condition, literals):
            return sql

        predicate = self.settings.default_time_predicate
        if clauses.has_where:
            head = masked[:clauses.where_kw_end]
            if _has_top_level_or(condition):
                rebuilt = f"{head} ({condition}) AND {predicate}"
            else:
                rebuilt = f"{head} {condition} AND {predicate}"
            if clauses.tail:
                rebuilt = f"{rebuilt} {clauses.tail}"
        elif clauses.boundary is not None:
            rebuilt = f"{masked[:clauses.boundary].rstrip()} WHERE {predicate} {masked[clauses.boundary:]}"
        else:
            rebuilt = f"{masked.rstrip()} WHERE {predicate}"

        logger.debug("[REWRITE] Default time window appended")
        return _unmask_literals(rebuilt, literals)

    def _ensure_null_safety(self, sql: str) -> str:
        masked, literals = _mask_literals(sql)
        result = self._wrap_arithmetic(self._wrap_sums(masked))
        if result == masked:
            return sql
        return _unmask_literals(result, literals)

    # -------------------------------------------------------------------------
    # Null-safety helpers
    # -------------------------------------------------------------------------

    def _is_nullable(self, identifier: str) -> bool:
        return identifier.split(".")[-1].lower() in self._nullable

    def _is_money(self, identifier: str) -> bool:
        return self._is_nullable(identifier) or bool(_MONEY_WORD_RE.search(identifier.split(".")[-1]))

    @staticmethod
    def _already_wrapped(text: str, start: int) -> bool:
        return bool(_COALESCE_OPEN_RE.search(text[:start]))

    def _wrap_sums(self, sql: str) -> str:
        out: List[str] = []
        pos = 0
        for m in _SUM_RE.finditer(sql):
            if m.start() < pos:
                continue
            close = _matching_paren(sql, m.end() - 1)
            if close < 0:
                break
            inner = sql[m.end():close]
            call = sql[m.start():close + 1]
            wrap = (
                not self._already_wrapped(sql, m.start())
                and any(self._is_money(i) for i in _IDENT_RE.findall(inner))
            )
            out.append(sql[pos:m.start()])
            out.append(f"COALESCE({call}, 0)" if wrap else call)
            pos = close + 1
        out.append(sql[pos:])
        return "".join(out)

    def _wrap_arithmetic(self, sql: str) -> str:
        out: List[str] = []
        pos = 0
        for m in _ARITH_CHAIN_RE.finditer(sql):
            chain = m.group(0)
            idents = _IDENT_RE.findall(chain)
            wrap = (
                any(self._is_nullable(i) for i in idents)
                and not any(i.lower() in _SQL_KEYWORDS for i in idents)
                and not self._already_wrapped(sql, m.start())
            )
            out.append(sql[pos:m.start()])
            out.append(f"COALESCE({chain}, 0)" if wrap else chain)
            pos = m.end()
        out.append(sql[pos:])
        return "".join(out)

    # -------------------------------------------------------------------------
    # Intent text
    # -------------------------------------------------------------------------

    def scope_annotation(self, caller: CallerContext) -> str:
        if caller.row_filter_expr:
            return self.ROW_FILTER_TEMPLATE.format(expr=caller.row_filter_expr)
        return self.SCOPE_TEMPLATE.format(caller_id=caller.caller_id)

    def time_annotation(self) -> str:
        return self.TIME_TEMPLATE.format(label=self.settings.default_time_label)

    def rewrite_intent(self, text: str, caller: CallerContext) -> str:
        """Prefix ownership/time annotations and suffix the null-safety note, once each."""
        scope = self.scope_annotation(caller)
        time_note = self.time_annotation()
        # Cue detection ignores our own annotations so repeated calls agree
        bare = text.replace(time_note, "").replace(scope, "").replace(self.NULL_SAFETY_NOTE, "")

        result = text
        if scope not in result:
            result = f"{scope}{result}"
        if time_note not in result and detect_time_scope(bare) is None:
            result = f"{time_note}{result}"
        if self.NULL_SAFETY_NOTE not in result and self._ARITHMETIC_CUES.search(bare):
            result = f"{result}{self.NULL_SAFETY_NOTE}"
        return result
