"""Role allow-lists for every mutating operation.

A user holds exactly one global role.  Some operations use the same list for
every document kind, others vary per kind; :func:`allowed_roles` resolves
the list for an action and :func:`permission_check` tests a user against it.
"""

from __future__ import annotations

from docflow.errors import AuthorizationError
from docflow.models import DocumentKind, RoleEnum

R = RoleEnum

_LEADERSHIP = frozenset(
    r.value for r in (R.SUPER_ADMIN, R.DIRECTOR, R.DEPUTY_DIRECTOR)
)

APPROVE_ROLES = frozenset(
    r.value
    for r in (
        R.APPROVER,
        R.SUPER_ADMIN,
        R.DIRECTOR,
        R.DEPUTY_DIRECTOR,
        R.HEAD_OF_MECHANICAL,
        R.HEAD_OF_TECHNICAL,
        R.HEAD_OF_ACCOUNTING,
        R.HEAD_OF_PURCHASING,
        R.HEAD_OF_OPERATIONS,
        R.HEAD_OF_NORTHERN_OFFICE,
        R.CAPTAIN_OF_MECHANICAL,
        R.CAPTAIN_OF_TECHNICAL,
        R.CAPTAIN_OF_PURCHASING,
        R.CAPTAIN_OF_ACCOUNTING,
        R.CAPTAIN_OF_BUSINESS,
        R.CAPTAIN_OF_FINANCE,
        R.TRANSPORTER_OF_ACCOUNTING,
    )
)
STAGE_APPROVE_ROLES = APPROVE_ROLES - {R.TRANSPORTER_OF_ACCOUNTING.value}

STAGE_CONTROL_ROLES = _LEADERSHIP | {
    R.HEAD_OF_ACCOUNTING.value,
    R.HEAD_OF_PURCHASING.value,
}

PRIORITY_ROLES = STAGE_CONTROL_ROLES | {
    R.CAPTAIN_OF_ACCOUNTING.value,
    R.CAPTAIN_OF_PURCHASING.value,
    R.CAPTAIN_OF_FINANCE.value,
}

EXTEND_DEADLINE_ROLES = _LEADERSHIP

GROUP_DECLARATION_ASSIGN_ROLES = STAGE_CONTROL_ROLES | {
    R.CAPTAIN_OF_PURCHASING.value,
    R.CAPTAIN_OF_FINANCE.value,
}
GROUP_DECLARATION_LOCK_ROLES = STAGE_CONTROL_ROLES
GROUP_DECLARATION_UNLOCK_ROLES = _LEADERSHIP

# action -> (default roles, per-kind overrides)
_ACTIONS: dict[str, tuple[frozenset, dict[DocumentKind, frozenset]]] = {
    "approve": (APPROVE_ROLES, {}),
    "approve_stage": (STAGE_APPROVE_ROLES, {}),
    "suspend": (
        _LEADERSHIP,
        {
            DocumentKind.PROPOSAL: _LEADERSHIP | {R.HEAD_OF_PURCHASING.value},
            DocumentKind.PURCHASING: _LEADERSHIP | {R.HEAD_OF_PURCHASING.value},
        },
    ),
    "open": (
        _LEADERSHIP,
        {
            DocumentKind.PROPOSAL: _LEADERSHIP | {R.HEAD_OF_PURCHASING.value},
            DocumentKind.PURCHASING: frozenset({R.HEAD_OF_PURCHASING.value}),
            DocumentKind.PROJECT_PROPOSAL: frozenset({R.DIRECTOR.value}),
        },
    ),
    "suspend_stage": (STAGE_CONTROL_ROLES, {}),
    "open_stage": (STAGE_CONTROL_ROLES, {}),
    "declaration": (
        frozenset(
            {R.APPROVER.value, R.HEAD_OF_ACCOUNTING.value, R.HEAD_OF_PURCHASING.value}
        ),
        {
            DocumentKind.PAYMENT: frozenset(
                {
                    R.SUPER_ADMIN.value,
                    R.HEAD_OF_ACCOUNTING.value,
                    R.HEAD_OF_PURCHASING.value,
                }
            ),
            DocumentKind.ADVANCE_PAYMENT_RECLAIM: _LEADERSHIP,
        },
    ),
    "priority": (PRIORITY_ROLES, {}),
    "extend_deadline": (EXTEND_DEADLINE_ROLES, {}),
    "assign_group_declaration": (GROUP_DECLARATION_ASSIGN_ROLES, {}),
    "lock_group_declaration": (GROUP_DECLARATION_LOCK_ROLES, {}),
    "unlock_group_declaration": (GROUP_DECLARATION_UNLOCK_ROLES, {}),
}


def allowed_roles(action: str, kind=None) -> frozenset:
    try:
        default, overrides = _ACTIONS[action]
    except KeyError:
        raise ValueError(f"Unknown action {action!r}") from None
    if kind is None:
        return default
    return overrides.get(DocumentKind(kind), default)


def permission_check(user, action: str, kind=None) -> bool:
    """Return True if ``user``'s role may perform ``action`` on ``kind``."""

    role = getattr(user, "role", None)
    return role is not None and role in allowed_roles(action, kind)


def require_permission(user, action: str, kind=None) -> None:
    if not permission_check(user, action, kind):
        raise AuthorizationError(
            f"Role {getattr(user, 'role', None)!r} may not {action.replace('_', ' ')}"
        )
