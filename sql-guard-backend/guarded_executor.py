"""
Guarded SQL Executor for SQL Guard

Second, independent enforcement point in front of the database. It does not
trust the policy engine's output: every statement is re-checked for the
caller's ownership predicate and for being a single read-only SELECT before
SQLAlchemy runs it.

Money columns are stored in fen (1/100 yuan); numeric result columns whose
name looks monetary are converted to yuan with two decimals.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

import sqlparse
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from guard_config import GuardSettings
from guard_errors import OwnershipPredicateMissing, QueryExecutionError, StatementNotAllowed
from query_rewriter import scoped_owner_values, top_level_set_operator

logger = logging.getLogger(__name__)

MONEY_COLUMN_HINTS = ("amount", "price", "cost", "total", "sales", "revenue")


def convert_fen_to_yuan(value: Union[int, float, Decimal]) -> float:
    return round(float(value) / 100.0, 2)


def is_money_column(name: str) -> bool:
    lowered = name.lower()
    return any(hint in lowered for hint in MONEY_COLUMN_HINTS)


def convert_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of `row` with monetary numeric columns converted to yuan."""
    converted = {}
    for key, value in row.items():
        if (
            is_money_column(key)
            and isinstance(value, (int, float, Decimal))
            and not isinstance(value, bool)
        ):
            converted[key] = convert_fen_to_yuan(value)
        else:
            converted[key] = value
    return converted


class GuardedSQLExecutor:
    """Runs caller-scoped, read-only SQL through a SQLAlchemy engine."""

    def __init__(self, engine: Engine, owner_column: str = "owner_id"):
        self.engine = engine
        self.owner_column = owner_column

    @classmethod
    def from_settings(cls, settings: GuardSettings) -> "GuardedSQLExecutor":
        if not settings.database_url:
            raise ValueError("DATABASE_URL not set in environment")
        engine = create_engine(settings.database_url)
        logger.info("[EXECUTOR] Database engine created")
        return cls(engine, owner_column=settings.owner_column)

    def verify(self, sql: str, caller_id: str) -> None:
        """
        Refuse SQL that is not one SELECT statement scoped to `caller_id`.

        The predicate must be a conjunct of the outermost WHERE clause; a copy
        inside a comment, a string literal, a subquery or under a top-level OR
        does not count.

        Raises:
            StatementNotAllowed: empty, multi-statement, non-SELECT or set-operator SQL
            OwnershipPredicateMissing: no top-level `<owner_col> = '<caller_id>'` predicate
        """
        statements = [s for s in sqlparse.parse(sql or "") if s.value.strip().strip(";").strip()]
        if len(statements) != 1:
            raise StatementNotAllowed(f"expected exactly one statement, got {len(statements)}")
        statement_type = statements[0].get_type()
        if statement_type != "SELECT":
            raise StatementNotAllowed(f"only SELECT statements are allowed, got {statement_type}")

        operator = top_level_set_operator(sql)
        if operator:
            raise StatementNotAllowed(f"set operator {operator} is not allowed")

        if caller_id not in scoped_owner_values(sql, self.owner_column, double_quoted=True):
            logger.warning(f"[EXECUTOR] Refused SQL without ownership predicate for {caller_id}")
            raise OwnershipPredicateMissing(
                f"SQL must include {self.owner_column} filter for caller {caller_id}"
            )

    def execute(self, sql: str, caller_id: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Verify, run and convert. Returns rows as plain dicts."""
        self.verify(sql, caller_id)
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text(sql), params or {})
                rows = [convert_row(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            logger.error(f"[EXECUTOR] Query execution failed: {e}")
            raise QueryExecutionError(str(e.__cause__ or e)) from e

        logger.info(f"[EXECUTOR] caller={caller_id} returned {len(rows)} row(s)")
        return rows

    def dispose(self) -> None:
        self.engine.dispose()
