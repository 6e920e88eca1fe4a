"""
SQL Guard - Permission Evaluator
================================

Turns (classified indicators, sensitive markers, role) into one of three
outcomes:

    FULL     nothing blocked. Admin always lands here, as does any request
             touching only L0 indicators.
    PARTIAL  allowed and blocked indicators both present. The request stays
             allowed at L0, but only the allowed subset may be executed.
    DENIED   only blocked indicators present. Hard deny at L1; a formula
             marker upgrades the message to a derivation attempt.

RULE:
    An indicator is blocked iff its level is L1 and the role lacks L1 access.
    Indicators implicated only through scanner markers join the candidate set.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Tuple, Union

from caller_context import Role
from intent_classifier import classify
from semantic_catalog import SecurityLevel, SemanticDictionary
from sensitive_scanner import has_formula_intent, implicated_indicators

logger = logging.getLogger(__name__)

FORMULA_DENIAL_PREFIX = "检测到变相计算敏感数据的意图："
ADMIN_SUGGESTION = "如需查看相关数据，请申请 Admin 权限"


class DecisionKind(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    DENIED = "denied"


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of one evaluation. Lists hold display names in catalog order."""
    kind: DecisionKind
    security_level: SecurityLevel
    allowed_indicators: Tuple[str, ...] = ()
    blocked_indicators: Tuple[str, ...] = ()
    allowed_names: Tuple[str, ...] = ()
    blocked_names: Tuple[str, ...] = ()
    denial_message: str = ""
    suggestion: str = ""
    formula_intent: bool = False
    markers: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def allowed(self) -> bool:
        return self.kind is not DecisionKind.DENIED

    @property
    def allowed_query(self) -> str:
        return f"允许查询：{'、'.join(self.allowed_names)}"

    @property
    def blocked_query(self) -> str:
        return f"已屏蔽：{'、'.join(self.blocked_names)}"


def partial_suggestion(allowed_names: Iterable[str]) -> str:
    return f"建议仅查询 {'、'.join(allowed_names)} 等公开指标"


def evaluate(
    indicators: Iterable[str],
    markers: Iterable[str],
    role: Union[Role, str],
    catalog: SemanticDictionary,
) -> PermissionDecision:
    """Decide FULL / PARTIAL / DENIED for one request."""
    role = Role(role)
    markers = frozenset(markers)
    formula_intent = has_formula_intent(markers)

    candidates = set(indicators) | implicated_indicators(markers)
    unknown = sorted(k for k in candidates if catalog.get(k) is None)
    if unknown:
        logger.warning(f"[PERMISSION] Ignoring keys absent from catalog v{catalog.version}: {unknown}")

    allowed: List[str] = []
    blocked: List[str] = []
    for key in catalog.ordered(candidates):
        indicator = catalog.indicators[key]
        if indicator.is_restricted and not role.has_l1_access:
            blocked.append(key)
        else:
            allowed.append(key)

    allowed_names = tuple(catalog.display_names(allowed))
    blocked_names = tuple(catalog.display_names(blocked))

    if not blocked:
        kind = DecisionKind.FULL
        decision = PermissionDecision(
            kind=kind,
            security_level=SecurityLevel.L0,
            allowed_indicators=tuple(allowed),
            allowed_names=allowed_names,
            formula_intent=formula_intent,
            markers=markers,
        )
    elif allowed:
        kind = DecisionKind.PARTIAL
        decision = PermissionDecision(
            kind=kind,
            security_level=SecurityLevel.L0,
            allowed_indicators=tuple(allowed),
            blocked_indicators=tuple(blocked),
            allowed_names=allowed_names,
            blocked_names=blocked_names,
            suggestion=partial_suggestion(allowed_names),
            formula_intent=formula_intent,
            markers=markers,
        )
    else:
        kind = DecisionKind.DENIED
        message = "；".join(catalog.indicators[k].effective_denial_message() for k in blocked)
        suggestion = ""
        if formula_intent:
            message = f"{FORMULA_DENIAL_PREFIX}{message}"
            suggestion = ADMIN_SUGGESTION
        decision = PermissionDecision(
            kind=kind,
            security_level=SecurityLevel.L1,
            blocked_indicators=tuple(blocked),
            blocked_names=blocked_names,
            denial_message=message,
            suggestion=suggestion,
            formula_intent=formula_intent,
            markers=markers,
        )

    logger.info(
        f"[PERMISSION] role={role.value} kind={kind.value} "
        f"allowed={list(allowed_names)} blocked={list(blocked_names)} formula={formula_intent}"
    )
    return decision


def quick_permission_check(role: Union[Role, str], text: str, catalog: SemanticDictionary) -> Tuple[bool, str]:
    """
    Classification-only shortcut, without scanning or rewriting.

    Returns:
        (can_proceed, reason). A reason is always given.
    """
    role = Role(role)
    keys = classify(text, catalog)
    if role.has_l1_access:
        return True, "Admin 可访问全部指标"

    blocked = [catalog.indicators[k] for k in catalog.ordered(keys) if catalog.indicators[k].is_restricted]
    if blocked:
        return False, "；".join(ind.effective_denial_message() for ind in blocked)
    return True, "仅涉及公开指标" if keys else "未识别到具体指标"
