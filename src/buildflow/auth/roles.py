"""Role names and the fixed authority ordering.

Lower rank means more authority. The ordering is purely ordinal: the only
question ever asked of a rank is whether it is less than or equal to
another.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum


class Role(StrEnum):
    SUPER_ADMIN = "super_admin"
    CEO = "ceo"
    CTO = "cto"
    CFO = "cfo"
    COO = "coo"
    ADMIN = "admin"
    OPERATIONS_MANAGER = "operations_manager"
    DEPARTMENT_HEAD = "department_head"
    TEAM_LEAD = "team_lead"
    PROJECT_MANAGER = "project_manager"
    HR = "hr"
    FINANCE_MANAGER = "finance_manager"
    SALES_MANAGER = "sales_manager"
    MARKETING_MANAGER = "marketing_manager"
    QUALITY_ASSURANCE = "quality_assurance"
    IT_SUPPORT = "it_support"
    LEGAL_COUNSEL = "legal_counsel"
    BUSINESS_ANALYST = "business_analyst"
    CUSTOMER_SUCCESS = "customer_success"
    EMPLOYEE = "employee"
    CONTRACTOR = "contractor"
    INTERN = "intern"


# Declaration order of Role is the authority order.
ROLE_HIERARCHY: dict[Role, int] = {role: i for i, role in enumerate(Role, start=1)}

# Rank given to role names stored in a database but unknown to this build.
UNKNOWN_RANK = 99

# Roles whose checks consult the main database before the agency one.
SYSTEM_ROLES: frozenset[Role] = frozenset({Role.SUPER_ADMIN, Role.ADMIN, Role.CEO})


def rank(role: str) -> int:
    """Authority rank of a role name; unknown names rank last."""
    try:
        return ROLE_HIERARCHY[Role(role)]
    except ValueError:
        return UNKNOWN_RANK


def effective_role(roles: Iterable[str]) -> str | None:
    """Highest-authority role among ``roles``, or None when there are none.

    Ties keep the first role seen.
    """
    best: str | None = None
    for role in roles:
        if best is None or rank(role) < rank(best):
            best = role
    return best


def has_role_or_higher(role: str, minimum: str) -> bool:
    return rank(role) <= rank(minimum)


def is_system_check(required: Iterable[str]) -> bool:
    """True when any required role is a system-level one."""
    return any(r in SYSTEM_ROLES for r in required)
