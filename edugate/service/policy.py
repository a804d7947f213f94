"""Role and tenant-scope access policy.

Every authorization gate in the API is a single call to
:func:`evaluate_access`. The rules live in ``_RULES`` and ``_ASSIGNABLE``;
changing who may do what means editing those tables, not the callers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Collection, Dict, FrozenSet, Optional


class Role(str, Enum):
    SUPERADMIN = "SUPERADMIN"
    ADMIN_CENTRE = "ADMIN_CENTRE"
    ADMIN_CURS = "ADMIN_CURS"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"
    SUSPENDED = "SUSPENDED"


class ScopeKind(str, Enum):
    # requested scope is a collection of allowed roles
    ROLE = "role"
    # requested scope is a centre id, caller scope the caller's bound centre
    CENTRE = "centre"
    # requested scope is a curs id, caller scope the caller's bound curs
    CURS = "curs"
    # requested scope is a user id, caller scope the caller's own id
    USER = "user"
    # requested scope is the role being granted to another user
    ASSIGN_ROLE = "assign_role"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOW


class Rule(str, Enum):
    ALWAYS = "always"
    NEVER = "never"
    MATCH = "match"  # requested == caller scope
    MEMBER = "member"  # caller role in requested collection
    ASSIGNABLE = "assignable"  # requested role in _ASSIGNABLE[caller role]


_RULES: Dict[ScopeKind, Dict[Role, Rule]] = {
    ScopeKind.ROLE: {
        Role.SUPERADMIN: Rule.MEMBER,
        Role.ADMIN_CENTRE: Rule.MEMBER,
        Role.ADMIN_CURS: Rule.MEMBER,
    },
    ScopeKind.CENTRE: {
        Role.SUPERADMIN: Rule.ALWAYS,
        Role.ADMIN_CENTRE: Rule.MATCH,
        Role.ADMIN_CURS: Rule.MATCH,
    },
    # centre admins are trusted for every curs; curs ownership is not re-checked here
    ScopeKind.CURS: {
        Role.SUPERADMIN: Rule.ALWAYS,
        Role.ADMIN_CENTRE: Rule.ALWAYS,
        Role.ADMIN_CURS: Rule.MATCH,
    },
    ScopeKind.USER: {
        Role.SUPERADMIN: Rule.ALWAYS,
        Role.ADMIN_CENTRE: Rule.MATCH,
        Role.ADMIN_CURS: Rule.MATCH,
    },
    ScopeKind.ASSIGN_ROLE: {
        Role.SUPERADMIN: Rule.ASSIGNABLE,
        Role.ADMIN_CENTRE: Rule.ASSIGNABLE,
        Role.ADMIN_CURS: Rule.ASSIGNABLE,
    },
}

_ASSIGNABLE: Dict[Role, FrozenSet[Role]] = {
    Role.SUPERADMIN: frozenset(Role),
    Role.ADMIN_CENTRE: frozenset({Role.ADMIN_CURS}),
    Role.ADMIN_CURS: frozenset(),
}

ADMIN_CENTRE_TIER = frozenset({Role.SUPERADMIN, Role.ADMIN_CENTRE})
ADMIN_CURS_TIER = frozenset({Role.SUPERADMIN, Role.ADMIN_CENTRE, Role.ADMIN_CURS})


def _coerce_role(value: Any) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        return None


def evaluate_access(
    role: Any,
    scope_kind: ScopeKind,
    requested_scope: Any = None,
    caller_scope: Any = None,
) -> Decision:
    """Decide whether ``role`` may act on ``requested_scope``.

    Unknown roles, unknown scope kinds and missing scope values on a
    ``MATCH`` row all deny.
    """
    caller_role = _coerce_role(role)
    if caller_role is None:
        return Decision.DENY
    rule = _RULES.get(scope_kind, {}).get(caller_role, Rule.NEVER)

    if rule is Rule.ALWAYS:
        allowed = True
    elif rule is Rule.MATCH:
        allowed = (
            requested_scope is not None
            and caller_scope is not None
            and str(requested_scope) == str(caller_scope)
        )
    elif rule is Rule.MEMBER:
        allowed = _is_member(caller_role, requested_scope)
    elif rule is Rule.ASSIGNABLE:
        target = _coerce_role(requested_scope)
        allowed = target is not None and target in _ASSIGNABLE.get(caller_role, frozenset())
    else:
        allowed = False
    return Decision.ALLOW if allowed else Decision.DENY


def _is_member(role: Role, allowed: Optional[Collection[Any]]) -> bool:
    if not allowed:
        return False
    return any(_coerce_role(candidate) is role for candidate in allowed)
