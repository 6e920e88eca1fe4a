"""
SQL Guard - Sensitive Field Scanner
===================================

PURPOSE:
    Find restricted (L1) data a request touches even when the request never
    names the restricted indicator. Two independent layers:

    1. DIRECT FIELD SCAN
       Every underlying field of every indicator is tested by substring
       containment. A hit on a field belonging to an L1 indicator (for a role
       without L1 access) marks that field and each such indicator, and
       pushes the indicator's sibling fields onto the worklist so compound
       exposure is surfaced too (asking for 进货价 also exposes 毛利 because
       毛利 is computed from it).

    2. FORMULA / PARAPHRASE SCAN
       An ordered, extensible list of FormulaPatterns recognises algebraic
       rewrites of restricted formulas ("销售价 - 进货价", "利润 = ...",
       "赚了 300 元"). When a pattern matches, every L1 indicator whose
       fields, name or synonyms appear in the text is implicated, plus the
       L1 indicators the pattern itself derives ("sell price minus cost"
       always implicates gross_margin). This layer is role independent;
       the permission evaluator decides.

MARKERS:
    field:<name>              restricted field named (directly or as sibling)
    <indicator_key>(<field>)  restricted indicator exposed through <field>
    <indicator_key>(formula)  restricted indicator implicated by a formula
    formula_intent_detected   a derivation attempt was recognised

TERMINATION:
    ScanState.visited holds each field at most once per scan; the worklist
    never re-admits a visited field. Work is linear in catalog size.

CONTRACT:
    scan() never raises. On an internal fault every restricted indicator is
    implicated (fail closed).
"""

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple, Union

from caller_context import Role
from semantic_catalog import SemanticDictionary

logger = logging.getLogger(__name__)

FIELD_MARKER_PREFIX = "field:"
FORMULA_INTENT_MARKER = "formula_intent_detected"
FORMULA_SOURCE = "formula"
SCAN_FAULT_SOURCE = "scan_fault"

_INDICATOR_MARKER_RE = re.compile(r"^([^()]+)\((.+)\)$")


# =============================================================================
# SCAN STATE
# =============================================================================

@dataclass
class ScanState:
    """Visited set and worklist of a single scan invocation."""
    visited: Set[str] = field(default_factory=set)
    worklist: List[str] = field(default_factory=list)

    def push(self, field_name: str) -> None:
        if field_name not in self.visited and field_name not in self.worklist:
            self.worklist.append(field_name)

    def pop(self) -> Optional[str]:
        """Next unvisited field (marked visited on return), or None when drained."""
        while self.worklist:
            candidate = self.worklist.pop()
            if candidate not in self.visited:
                self.visited.add(candidate)
                return candidate
        return None


# =============================================================================
# FORMULA PATTERNS
# =============================================================================

@dataclass(frozen=True)
class FormulaPattern:
    """A named paraphrase rule, optionally tied to the indicators it derives."""
    name: str
    pattern: "re.Pattern[str]"
    indicators: Tuple[str, ...] = ()

    @classmethod
    def compile(cls, name: str, regex: str, indicators: Iterable[str] = ()) -> "FormulaPattern":
        return cls(name=name, pattern=re.compile(regex, re.IGNORECASE), indicators=tuple(indicators))

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))


_OP = r"[-+－＋]"
_MINUS_WORDS = r"(?:减去|减掉|扣除|扣掉|去掉|减|minus|less)"

_MARGIN = ("gross_margin",)
_DEBT = ("outstanding_debt",)

DEFAULT_FORMULA_PATTERNS: Sequence[FormulaPattern] = tuple(
    FormulaPattern.compile(name, regex, indicators) for name, regex, indicators in (
        # Symbolic arithmetic between price-like quantities
        ("unit_price_vs_cost", rf"单价\s*{_OP}\s*成本|成本\s*{_OP}\s*单价", _MARGIN),
        ("sell_price_vs_cost", rf"售价\s*{_OP}\s*成本|成本\s*{_OP}\s*售价", _MARGIN),
        ("purchase_vs_sell_price", rf"进货\s*{_OP}\s*售价|进价\s*{_OP}\s*售价", _MARGIN),
        ("sales_vs_purchase", rf"销售.*?{_OP}.*?进货|进货.*?{_OP}.*?销售", _MARGIN),
        ("sell_vs_purchase_price", rf"售价.*?{_OP}.*?进价|进价.*?{_OP}.*?售价", _MARGIN),
        ("column_arithmetic", rf"unit_?price\s*{_OP}\s*cost_?price|cost_?price\s*{_OP}\s*unit_?price", _MARGIN),
        ("repaid_vs_debt", rf"回款.*?{_OP}.*?欠款|欠款.*?{_OP}.*?回款", _DEBT),

        # Explicit equations
        ("profit_equation", rf"(?:利润|毛利|收益|盈利)\s*[=＝]\s*.*{_OP}", _MARGIN),
        ("income_minus_expense", r"收入\s*[-－]\s*支出", _MARGIN),
        ("revenue_minus_cost", r"营收\s*[-－]\s*成本", _MARGIN),

        # Natural-language subtraction
        ("sell_minus_cost_words", rf"(?:销售价|售价|单价|卖价).*?{_MINUS_WORDS}.*?(?:进货价|进价|成本|采购价)", _MARGIN),
        ("cost_minus_sell_words", rf"(?:进货价|进价|成本|采购价).*?{_MINUS_WORDS}.*?(?:销售价|售价|单价|卖价)", _MARGIN),
        ("price_difference", r"(?:销售价|售价|单价|卖价).*?(?:和|与|跟|同).*?(?:进货价|进价|成本|采购价).*?(?:差|差额|差价|之差)", _MARGIN),
        ("markup", r"(?:进销差|加价率|加价幅度|差价)", _MARGIN),
        (
            "english_margin",
            r"(?:sell(?:ing)?\s+price|sales?\s+price|unit\s+price|revenue)\s*(?:-|minus|less)\s*"
            r"(?:cost(?:\s+price)?|purchase\s+price)",
            _MARGIN,
        ),

        # Gain / loss amounts
        ("gain_loss_amount", r"(?:赚|亏).*\d+.*元", ()),
        ("profit_loss_amount", r"盈亏.*\d+", ()),
    )
)

_FORMULA_FRAGMENT_PATTERNS = [
    re.compile(r"[A-Za-z0-9_一-龥]+\s*[-+*/－＋]\s*[A-Za-z0-9_一-龥]+"),
    re.compile(r"[(（][^()（）]*[-+－＋][^()（）]*[)）]"),
]


@lru_cache(maxsize=256)
def _compile_catalog_pattern(regex: str) -> FormulaPattern:
    return FormulaPattern.compile(f"catalog:{regex}", regex)


def extract_formulas(text: str) -> List[str]:
    """Raw arithmetic fragments in `text`, in order of appearance, for audit."""
    if not text:
        return []
    fragments: List[str] = []
    for pattern in _FORMULA_FRAGMENT_PATTERNS:
        for match in pattern.finditer(text):
            fragment = match.group(0).strip()
            if fragment not in fragments:
                fragments.append(fragment)
    return fragments


def implicated_indicators(markers: Iterable[str]) -> FrozenSet[str]:
    """Indicator keys named by `<key>(<source>)` markers."""
    keys = set()
    for marker in markers:
        if marker.startswith(FIELD_MARKER_PREFIX):
            continue
        match = _INDICATOR_MARKER_RE.match(marker)
        if match:
            keys.add(match.group(1))
    return frozenset(keys)


def has_formula_intent(markers: Iterable[str]) -> bool:
    return FORMULA_INTENT_MARKER in set(markers)


# =============================================================================
# SCANNER
# =============================================================================

class SensitiveFieldScanner:
    """Composes the direct field scan and the formula scan."""

    def __init__(self, extra_patterns: Optional[Iterable[FormulaPattern]] = None):
        self._patterns: List[FormulaPattern] = list(DEFAULT_FORMULA_PATTERNS)
        if extra_patterns:
            self._patterns.extend(extra_patterns)

    @property
    def patterns(self) -> Sequence[FormulaPattern]:
        return tuple(self._patterns)

    def scan(self, text: str, role: Union[Role, str], catalog: SemanticDictionary) -> FrozenSet[str]:
        if not isinstance(text, str) or not text.strip():
            return frozenset()

        try:
            role = Role(role)
            text_lower = text.lower()
            markers = self._scan_fields(text_lower, role, catalog)
            markers |= self._scan_formulas(text, text_lower, catalog)
        except Exception:
            logger.exception("[SCANNER] Scan failed, implicating all restricted indicators")
            return frozenset(
                f"{ind.key}({SCAN_FAULT_SOURCE})" for ind in catalog.restricted_indicators()
            )

        if markers:
            logger.info(f"[SCANNER] {len(markers)} marker(s): {sorted(markers)}")
        return frozenset(markers)

    # -------------------------------------------------------------------------
    # Layer 1: direct fields
    # -------------------------------------------------------------------------

    def _scan_fields(self, text_lower: str, role: Role, catalog: SemanticDictionary) -> Set[str]:
        markers: Set[str] = set()
        if role.has_l1_access:
            return markers

        state = ScanState()
        for field_name in catalog.all_fields():
            if field_name.lower() in text_lower:
                state.push(field_name)

        while True:
            field_name = state.pop()
            if field_name is None:
                break

            restricted = [ind for ind in catalog.indicators_with_field(field_name) if ind.is_restricted]
            if not restricted:
                continue

            markers.add(f"{FIELD_MARKER_PREFIX}{field_name}")
            for indicator in restricted:
                markers.add(f"{indicator.key}({field_name})")
                for sibling in indicator.fields:
                    state.push(sibling)

        logger.debug(f"[SCANNER] Field scan visited {len(state.visited)} field(s)")
        return markers

    # -------------------------------------------------------------------------
    # Layer 2: formulas / paraphrases
    # -------------------------------------------------------------------------

    def _active_patterns(self, catalog: SemanticDictionary) -> List[FormulaPattern]:
        return self._patterns + [_compile_catalog_pattern(p) for p in catalog.formula_patterns]

    def _scan_formulas(self, text: str, text_lower: str, catalog: SemanticDictionary) -> Set[str]:
        matched = next((p for p in self._active_patterns(catalog) if p.matches(text)), None)
        if matched is None:
            return set()

        implicated = []
        for indicator in catalog.restricted_indicators():
            terms = [indicator.name, *indicator.synonyms, *indicator.fields]
            if indicator.key in matched.indicators or any(term.lower() in text_lower for term in terms):
                implicated.append(indicator.key)

        if not implicated:
            logger.info(f"[SCANNER] Formula pattern '{matched.name}' matched without restricted terms")
            return set()

        logger.warning(
            f"[SCANNER] Formula intent via '{matched.name}' implicating {implicated}; "
            f"fragments={extract_formulas(text)}"
        )
        markers = {f"{key}({FORMULA_SOURCE})" for key in implicated}
        markers.add(FORMULA_INTENT_MARKER)
        return markers
