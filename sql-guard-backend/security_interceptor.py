"""
SQL Guard - Security Interceptor (Orchestrator)
===============================================

PURPOSE:
    Single entry point of the policy engine. Composes the injection guard,
    intent classifier, sensitive scanner, permission evaluator and query
    rewriter into one request/response contract.

STATE MACHINE:
    RECEIVED -> INJECTION_CHECKED -> CLASSIFIED -> SCANNED -> DECIDED
             -> REWRITTEN | DENIED

    Every transition appends one audit entry and logs it. REWRITTEN and
    DENIED are terminal.

FAIL CLOSED:
    Any exception below this layer becomes Denied(L1) with a generic
    message. The cause is logged, never echoed to the caller.

DECISIONS:
    Denied | AllowedFull | AllowedPartial (frozen dataclasses). All three
    serialise to the same external shape via to_dict().
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from caller_context import CALLER_ID_PATTERN, CallerContext
from guard_config import GuardSettings
from guard_errors import EvaluationFault, GuardError, InjectionSuspected, RewriteInvariantViolation
from injection_guard import InjectionGuard
from intent_classifier import classify, detect_time_scope
from permission_evaluator import DecisionKind, PermissionDecision, evaluate
from query_rewriter import QueryRewriter
from semantic_catalog import CatalogStore, SecurityLevel
from sensitive_scanner import SensitiveFieldScanner

logger = logging.getLogger(__name__)

INJECTION_MESSAGE = "查询包含不安全的内容，已被系统拦截"
FAULT_MESSAGE = "系统验证时发生错误，请检查查询内容"
EMPTY_MESSAGE = "查询内容不能为空"


class Stage(str, Enum):
    RECEIVED = "RECEIVED"
    INJECTION_CHECKED = "INJECTION_CHECKED"
    CLASSIFIED = "CLASSIFIED"
    SCANNED = "SCANNED"
    DECIDED = "DECIDED"
    REWRITTEN = "REWRITTEN"
    DENIED = "DENIED"


# =============================================================================
# DECISION TYPES
# =============================================================================

@dataclass(frozen=True)
class PartialResult:
    allowed_query: str
    blocked_query: str
    suggestion: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "allowed_query": self.allowed_query,
            "blocked_query": self.blocked_query,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class Denied:
    denial_message: str
    security_level: SecurityLevel = SecurityLevel.L1
    blocked_fields: Tuple[str, ...] = ()
    suggestion: Optional[str] = None
    audit_trail: Tuple[str, ...] = ()

    allowed = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": False,
            "security_level": self.security_level.value,
            "rewritten_query": None,
            "denial_message": self.denial_message,
            "blocked_fields": list(self.blocked_fields) or None,
            "allowed_fields": None,
            "partial": None,
            "suggestion": self.suggestion,
            "audit_trail": list(self.audit_trail),
        }


@dataclass(frozen=True)
class AllowedFull:
    rewritten_query: str
    allowed_fields: Tuple[str, ...] = ()
    security_level: SecurityLevel = SecurityLevel.L0
    audit_trail: Tuple[str, ...] = ()

    allowed = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": True,
            "security_level": self.security_level.value,
            "rewritten_query": self.rewritten_query,
            "denial_message": None,
            "blocked_fields": None,
            "allowed_fields": list(self.allowed_fields) or None,
            "partial": None,
            "suggestion": None,
            "audit_trail": list(self.audit_trail),
        }


@dataclass(frozen=True)
class AllowedPartial:
    rewritten_query: str
    allowed_fields: Tuple[str, ...]
    blocked_fields: Tuple[str, ...]
    partial: PartialResult
    audit_trail: Tuple[str, ...] = ()

    allowed = True
    security_level = SecurityLevel.L0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": True,
            "security_level": self.security_level.value,
            "rewritten_query": self.rewritten_query,
            "denial_message": None,
            "blocked_fields": list(self.blocked_fields),
            "allowed_fields": list(self.allowed_fields),
            "partial": self.partial.to_dict(),
            "suggestion": self.partial.suggestion,
            "audit_trail": list(self.audit_trail),
        }


InterceptDecision = Union[Denied, AllowedFull, AllowedPartial]


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@dataclass
class _AuditTrail:
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    entries: List[str] = field(default_factory=list)

    def record(self, stage: Stage, detail: str = "") -> None:
        entry = f"{stage.value}: {detail}" if detail else stage.value
        self.entries.append(entry)
        logger.info(f"[INTERCEPT] {self.request_id} {entry}")

    def freeze(self) -> Tuple[str, ...]:
        return tuple(self.entries)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SecurityInterceptor:
    """Runs one request through the policy pipeline and returns an InterceptDecision."""

    def __init__(
        self,
        store: CatalogStore,
        settings: Optional[GuardSettings] = None,
        guard: Optional[InjectionGuard] = None,
        scanner: Optional[SensitiveFieldScanner] = None,
        rewriter: Optional[QueryRewriter] = None,
    ):
        self.store = store
        self.settings = settings or GuardSettings()
        self.guard = guard or InjectionGuard(owner_column=self.settings.owner_column)
        self.scanner = scanner or SensitiveFieldScanner()
        self.rewriter = rewriter or QueryRewriter(self.settings)

    # -------------------------------------------------------------------------
    # Intent entry point
    # -------------------------------------------------------------------------

    def intercept(self, text: str, caller: CallerContext) -> InterceptDecision:
        trail = _AuditTrail()
        try:
            return self._intercept(text, caller, trail)
        except Exception as e:
            return self._fault(e, trail)

    def _intercept(self, text: str, caller: CallerContext, trail: _AuditTrail) -> InterceptDecision:
        trail.record(Stage.RECEIVED, f"caller={caller.caller_id} role={caller.role.value}")

        if not isinstance(text, str) or not text.strip():
            return self._deny(trail, EMPTY_MESSAGE, reason="empty intent")

        # One catalog snapshot per evaluation
        catalog = self.store.current

        rule = self.guard.first_violation(text)
        if rule is not None:
            suspicion = InjectionSuspected(rule.name, rule.category)
            trail.record(Stage.INJECTION_CHECKED, f"{suspicion.code.value} {suspicion.detail}")
            return self._deny(trail, INJECTION_MESSAGE, reason=suspicion.code.value)
        trail.record(Stage.INJECTION_CHECKED, "passed")

        indicators = classify(text, catalog)
        trail.record(Stage.CLASSIFIED, ", ".join(catalog.ordered(indicators)) or "none")

        markers = self.scanner.scan(text, caller.role, catalog)
        trail.record(Stage.SCANNED, ", ".join(sorted(markers)) or "none")

        decision = evaluate(indicators, markers, caller.role, catalog)
        trail.record(
            Stage.DECIDED,
            f"{decision.kind.value} allowed={list(decision.allowed_names)} "
            f"blocked={list(decision.blocked_names)}",
        )

        if decision.kind is DecisionKind.DENIED:
            return self._deny(
                trail,
                decision.denial_message,
                blocked=decision.blocked_names,
                suggestion=decision.suggestion or None,
                reason="formula intent" if decision.formula_intent else "restricted indicator",
            )
        if decision.kind is DecisionKind.PARTIAL:
            return self._partial(text, caller, decision, trail)

        rewritten = self.rewriter.rewrite_intent(text, caller)
        trail.record(Stage.REWRITTEN, rewritten)
        return AllowedFull(
            rewritten_query=rewritten,
            allowed_fields=decision.allowed_names,
            audit_trail=trail.freeze(),
        )

    def _partial(
        self, text: str, caller: CallerContext, decision: PermissionDecision, trail: _AuditTrail
    ) -> AllowedPartial:
        # Only the allowed subset is carried forward; the original wording is dropped
        names = "、".join(decision.allowed_names)
        time_scope = detect_time_scope(text)
        narrowed = f"查询{time_scope}的{names}" if time_scope else f"查询{names}"
        rewritten = self.rewriter.rewrite_intent(narrowed, caller)
        trail.record(Stage.REWRITTEN, rewritten)
        return AllowedPartial(
            rewritten_query=rewritten,
            allowed_fields=decision.allowed_names,
            blocked_fields=decision.blocked_names,
            partial=PartialResult(
                allowed_query=decision.allowed_query,
                blocked_query=decision.blocked_query,
                suggestion=decision.suggestion,
            ),
            audit_trail=trail.freeze(),
        )

    # -------------------------------------------------------------------------
    # SQL entry point
    # -------------------------------------------------------------------------

    def rewrite_generated_sql(self, sql: str, caller_id: str) -> InterceptDecision:
        """Rewrite model-generated SQL and verify the ownership/time invariants."""
        trail = _AuditTrail()
        try:
            trail.record(Stage.RECEIVED, f"sql caller={caller_id}")
            if not isinstance(caller_id, str) or not CALLER_ID_PATTERN.fullmatch(caller_id):
                raise EvaluationFault("invalid caller id")

            rewritten = self.rewriter.rewrite(sql, caller_id)

            count = self.rewriter.count_ownership_predicates(rewritten, caller_id)
            if count != 1:
                raise RewriteInvariantViolation(f"expected one ownership predicate, found {count}")
            if not self.rewriter.has_time_bound(rewritten):
                raise RewriteInvariantViolation("rewritten SQL has no time bound")

            trail.record(Stage.REWRITTEN, rewritten)
            return AllowedFull(rewritten_query=rewritten, audit_trail=trail.freeze())
        except Exception as e:
            return self._fault(e, trail)

    # -------------------------------------------------------------------------
    # Audit helpers
    # -------------------------------------------------------------------------

    def security_log(self, text: str, caller: CallerContext) -> List[str]:
        """Human-readable audit lines for one evaluation."""
        decision = self.intercept(text, caller)
        lines = [
            f"用户：{caller.display_name}",
            f"角色：{caller.role.value}",
            f"查询：{text}",
            f"结果：{'允许' if decision.allowed else '拒绝'}（{decision.security_level.value}）",
        ]
        if isinstance(decision, Denied):
            lines.append(f"拒绝原因：{decision.denial_message}")
        elif isinstance(decision, AllowedPartial):
            lines.append(decision.partial.allowed_query)
            lines.append(decision.partial.blocked_query)
        lines.extend(f"审计：{entry}" for entry in decision.audit_trail)
        lines.append(f"时间：{datetime.now().isoformat(timespec='seconds')}")
        return lines

    def batch_intercept(self, texts: Iterable[str], caller: CallerContext) -> List[InterceptDecision]:
        return [self.intercept(text, caller) for text in texts]

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    @staticmethod
    def _deny(
        trail: _AuditTrail,
        message: str,
        blocked: Tuple[str, ...] = (),
        suggestion: Optional[str] = None,
        reason: str = "",
    ) -> Denied:
        trail.record(Stage.DENIED, reason)
        return Denied(
            denial_message=message,
            blocked_fields=tuple(blocked),
            suggestion=suggestion,
            audit_trail=trail.freeze(),
        )

    def _fault(self, error: Exception, trail: _AuditTrail) -> Denied:
        fault = error if isinstance(error, GuardError) else EvaluationFault(type(error).__name__)
        logger.exception(f"[INTERCEPT] {trail.request_id} evaluation fault: {error}")
        return self._deny(trail, FAULT_MESSAGE, reason=fault.code.value)
