"""
SQL Guard - Error Taxonomy
==========================

Every failure the policy engine can produce is one of these types.

PROPAGATION POLICY:
    - CatalogLoadError is fatal at startup (the engine refuses to serve).
    - Everything else raised below the SecurityInterceptor is caught there and
      converted into a Denied decision at security level L1.
    - OwnershipPredicateMissing, StatementNotAllowed and QueryExecutionError
      belong to the executing collaborator and are raised only by
      guarded_executor.py.
"""

from enum import Enum


class GuardCode(str, Enum):
    """Machine-readable reason codes attached to every GuardError."""
    CATALOG_LOAD = "CATALOG_LOAD"                    # Catalog missing or malformed
    INJECTION_SUSPECTED = "INJECTION_SUSPECTED"      # Intent text matched a blacklist rule
    EVALUATION_FAULT = "EVALUATION_FAULT"            # Unexpected internal error
    REWRITE_INVARIANT = "REWRITE_INVARIANT"          # Rewritten SQL failed a post-check
    OWNERSHIP_MISSING = "OWNERSHIP_MISSING"          # Executor refused unscoped SQL
    STATEMENT_NOT_ALLOWED = "STATEMENT_NOT_ALLOWED"  # Executor refused a non-SELECT statement
    EXECUTION_FAILED = "EXECUTION_FAILED"            # Database rejected or failed the query


class GuardError(Exception):
    """Base exception for the policy engine."""

    code: GuardCode = GuardCode.EVALUATION_FAULT

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"{self.code.value}: {detail}")


class CatalogLoadError(GuardError):
    """Indicator catalog could not be loaded or failed validation."""
    code = GuardCode.CATALOG_LOAD


class InjectionSuspected(GuardError):
    """Intent text matched an injection rule. Surfaced as a deny, never thrown to callers."""
    code = GuardCode.INJECTION_SUSPECTED

    def __init__(self, rule_name: str, category: str):
        self.rule_name = rule_name
        self.category = category
        super().__init__(f"rule '{rule_name}' ({category})")


class EvaluationFault(GuardError):
    """Unexpected error during classification, scanning or decision."""
    code = GuardCode.EVALUATION_FAULT


class RewriteInvariantViolation(EvaluationFault):
    """Rewritten SQL is missing its ownership or time predicate."""
    code = GuardCode.REWRITE_INVARIANT


class OwnershipPredicateMissing(GuardError):
    """SQL reached the executor without the caller's ownership predicate."""
    code = GuardCode.OWNERSHIP_MISSING


class StatementNotAllowed(GuardError):
    """Executor only runs single read-only SELECT statements."""
    code = GuardCode.STATEMENT_NOT_ALLOWED


class QueryExecutionError(GuardError):
    """Database driver error, wrapped so callers never see driver internals."""
    code = GuardCode.EXECUTION_FAILED
