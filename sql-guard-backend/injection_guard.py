"""
SQL Guard - Injection Guard
===========================

Blacklist scanner over raw intent text, run before anything else.

RULE CATEGORIES (applied in this order):
    statement_chaining  ; followed by a DDL/DML keyword
    comment_sequence    -- /* */
    system_schema       information_schema, sys., xp_, pg_catalog, ...
    destructive_dml     DROP TABLE, DELETE FROM, INSERT INTO, ...
    privilege_bypass    "ignore permission", "bypass security", 忽略权限, 越权, ...
    column_probing      literal mentions of the ownership / user id columns
    query_smuggling     UNION, CONCAT, SELECT ... FROM
    encoding            CHAR(, ASCII, UNICODE, HEX, BASE64

CONTRACT:
    scan(text) -> True means safe. Any single match fails the check.
    Pure predicate: no side effects besides a log line, never raises.
    False positives are acceptable, false negatives are not. Patterns are
    deliberately not anchored on word boundaries because CJK characters are
    word characters and would hide an adjacent keyword.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InjectionRule:
    """One case-insensitive blacklist pattern."""
    name: str
    category: str
    pattern: "re.Pattern[str]"

    @classmethod
    def compile(cls, name: str, category: str, regex: str) -> "InjectionRule":
        return cls(name=name, category=category, pattern=re.compile(regex, re.IGNORECASE | re.DOTALL))

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))


# (name, category, regex)
_DEFAULT_RULE_SPECS: Tuple[Tuple[str, str, str], ...] = (
    # Statement chaining
    ("chained_statement", "statement_chaining",
     r";\s*(?:drop|delete|update|insert|alter|create|truncate|exec|execute|select|grant|revoke|replace|merge)"),

    # Comment sequences
    ("line_comment", "comment_sequence", r"--"),
    ("block_comment_open", "comment_sequence", r"/\*"),
    ("block_comment_close", "comment_sequence", r"\*/"),

    # System schemas / procedures
    ("information_schema", "system_schema", r"information_schema"),
    ("sys_schema", "system_schema", r"sys\."),
    ("extended_procedure", "system_schema", r"xp_"),
    ("master_db", "system_schema", r"master\."),
    ("tempdb", "system_schema", r"tempdb\."),
    ("msdb", "system_schema", r"msdb\."),
    ("pg_catalog", "system_schema", r"pg_(?:catalog|shadow|user|roles)"),
    ("sqlite_master", "system_schema", r"sqlite_(?:master|schema)"),

    # Destructive statements even without a terminator
    ("drop_table", "destructive_dml", r"drop\s+(?:table|database|schema|view)"),
    ("delete_from", "destructive_dml", r"delete\s+from"),
    ("truncate_table", "destructive_dml", r"truncate\s+table"),
    ("insert_into", "destructive_dml", r"insert\s+into"),
    ("update_set", "destructive_dml", r"update\s+\S+\s+set\s"),

    # Privilege bypass phrases
    ("ignore_permission", "privilege_bypass", r"ignore\s+(?:all\s+|the\s+|any\s+)?(?:permission|privilege|restriction|rule)s?"),
    ("bypass_security", "privilege_bypass", r"bypass\s+(?:the\s+|all\s+)?(?:security|permission|filter|check)s?"),
    ("disable_security", "privilege_bypass", r"disable\s+(?:row[\s_-]*level\s+)?security"),
    ("hack", "privilege_bypass", r"hack"),
    ("act_as_admin", "privilege_bypass", r"(?:act|pretend)\s+(?:as|to\s+be)\s+(?:an?\s+)?admin"),
    ("ignore_permission_zh", "privilege_bypass", r"忽略(?:所有|全部|一切)?(?:的)?(?:权限|限制|规则)"),
    ("bypass_zh", "privilege_bypass", r"绕过|绕开|越权|提权"),
    ("skip_check_zh", "privilege_bypass", r"跳过(?:权限|安全|行级)"),
    ("act_as_admin_zh", "privilege_bypass", r"(?:假装|扮演|冒充|切换)(?:成|为)?(?:我是)?(?:管理员|admin)|以管理员(?:身份|权限)"),
    ("all_rows_zh", "privilege_bypass", r"(?:所有人|其他人|别人|他人|全部用户)的(?:订单|数据|客户)"),

    # Column-name probing
    ("owner_id_probe", "column_probing", r"owner[\s_]?id"),
    ("user_id_probe", "column_probing", r"user[\s_]?id"),

    # Query smuggling
    ("union", "query_smuggling", r"union"),
    ("concat", "query_smuggling", r"concat"),
    ("select_from", "query_smuggling", r"select\s+.*\s+from"),

    # Encoding tricks
    ("char_function", "encoding", r"char\s*\("),
    ("ascii", "encoding", r"ascii"),
    ("unicode", "encoding", r"unicode"),
    ("hex", "encoding", r"hex"),
    ("base64", "encoding", r"base64"),
)


def default_rules(owner_column: str = "owner_id") -> List[InjectionRule]:
    """Default ordered rule list, with a probe for the configured ownership column."""
    rules = [InjectionRule.compile(*spec) for spec in _DEFAULT_RULE_SPECS]

    normalized = owner_column.lower().replace("_", "")
    if normalized not in ("ownerid", "userid"):
        probe = InjectionRule.compile(
            f"{owner_column}_probe", "column_probing", re.escape(owner_column)
        )
        # Keep column probes grouped with their category
        insert_at = max(i for i, r in enumerate(rules) if r.category == "column_probing") + 1
        rules.insert(insert_at, probe)
    return rules


class InjectionGuard:
    """Ordered, extensible blacklist predicate over intent text."""

    def __init__(self, owner_column: str = "owner_id", extra_rules: Optional[Iterable[InjectionRule]] = None):
        self._rules: List[InjectionRule] = default_rules(owner_column)
        if extra_rules:
            self._rules.extend(extra_rules)

    @property
    def rules(self) -> Sequence[InjectionRule]:
        return tuple(self._rules)

    def first_violation(self, text: str) -> Optional[InjectionRule]:
        """First rule that matches `text`, or None when the text is clean."""
        for rule in self._rules:
            if rule.matches(text):
                return rule
        return None

    def scan(self, text: str) -> bool:
        """True if `text` is safe. Non-string input is never safe."""
        if not isinstance(text, str):
            logger.warning(f"[INJECTION] Non-string intent rejected ({type(text).__name__})")
            return False

        rule = self.first_violation(text)
        if rule is not None:
            logger.warning(f"[INJECTION] Blocked by rule '{rule.name}' ({rule.category})")
            return False
        return True
