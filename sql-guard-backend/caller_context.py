"""
Caller identity as seen by the policy engine.

A CallerContext is created once per request from trusted session data and is
never mutated afterwards.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

# Caller ids end up inside SQL string literals; keep them to a plain charset.
CALLER_ID_PATTERN = re.compile(r"[A-Za-z0-9_.\-]{1,64}")


class Role(str, Enum):
    ADMIN = "Admin"
    MANAGER = "Manager"
    SALES = "Sales"

    @property
    def has_l1_access(self) -> bool:
        return self is Role.ADMIN


@dataclass(frozen=True)
class CallerContext:
    role: Role
    caller_id: str
    row_filter_expr: Optional[str] = None
    department: Optional[str] = None
    username: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.role, Role):
            try:
                object.__setattr__(self, "role", Role(self.role))
            except ValueError:
                raise ValueError(f"unknown role {self.role!r}; expected Admin, Manager or Sales")
        if not isinstance(self.caller_id, str) or not CALLER_ID_PATTERN.fullmatch(self.caller_id):
            raise ValueError(f"invalid caller id {self.caller_id!r}")

    @property
    def display_name(self) -> str:
        return self.username or f"User_{self.caller_id}"
