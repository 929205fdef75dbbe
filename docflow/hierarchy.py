"""Sequential approval ordering for hierarchy roles.

Most approvers may sign in any order.  Three roles form a hierarchy that
must approve in sequence, and the sequence depends on the document kind and
the amount involved.  :func:`can_approve_now` is shared by whole documents
and individual payment stages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from docflow.models import DocumentKind, RoleEnum

PAYMENT_THRESHOLD = 100_000_000

DEFAULT_ORDER = (
    RoleEnum.DIRECTOR.value,
    RoleEnum.DEPUTY_DIRECTOR.value,
    RoleEnum.CAPTAIN_OF_ACCOUNTING.value,
)
SMALL_PAYMENT_ORDER = (
    RoleEnum.DEPUTY_DIRECTOR.value,
    RoleEnum.CAPTAIN_OF_ACCOUNTING.value,
    RoleEnum.DIRECTOR.value,
)


@dataclass(frozen=True)
class ApproverInfo:
    user_id: int
    username: str
    role: str


@dataclass(frozen=True)
class ApprovalCheck:
    can_approve: bool
    waiting_for: str | None = None
    pending: tuple[str, ...] = field(default_factory=tuple)


def _is_payment(kind) -> bool:
    if kind is None:
        return False
    return DocumentKind(kind) is DocumentKind.PAYMENT


def hierarchy_order(kind, amount: float | None) -> tuple[str, ...]:
    """Return the hierarchy roles in the order they must approve."""

    if _is_payment(kind) and (amount or 0) < PAYMENT_THRESHOLD:
        return SMALL_PAYMENT_ORDER
    return DEFAULT_ORDER


def _bypasses(role: str, kind, amount: float) -> bool:
    if role == RoleEnum.DIRECTOR.value:
        return True
    if role == RoleEnum.DEPUTY_DIRECTOR.value and _is_payment(kind):
        # exactly at the threshold the deputy waits like everyone else
        return amount != PAYMENT_THRESHOLD
    return False


def _pending(members: Iterable[ApproverInfo], approved: set[int]) -> tuple[str, ...]:
    return tuple(m.username or m.role for m in members if m.user_id not in approved)


def can_approve_now(
    role: str,
    user_id: int,
    approvers: Sequence[ApproverInfo],
    approved_user_ids: Iterable[int],
    amount: float | None,
    kind,
) -> ApprovalCheck:
    """Decide whether ``user_id`` holding ``role`` may approve right now.

    ``approvers`` must already carry each approver's current global role;
    approvers whose user could not be resolved are expected to be left out.
    """

    amount = amount or 0
    approved = set(approved_user_ids)
    order = hierarchy_order(kind, amount)
    present = {a.role for a in approvers}
    assigned = [r for r in order if r in present]

    if _bypasses(role, kind, amount) or role not in assigned:
        return ApprovalCheck(True)

    others = [a for a in approvers if a.role not in order]
    pending_others = _pending(others, approved)
    if pending_others:
        return ApprovalCheck(
            False,
            f"other approvers ({', '.join(pending_others)})",
            pending_others,
        )

    for required in assigned[: assigned.index(role)]:
        group = [a for a in approvers if a.role == required]
        pending_group = _pending(group, approved)
        if pending_group:
            return ApprovalCheck(
                False,
                f"all {required} ({', '.join(pending_group)})",
                pending_group,
            )

    return ApprovalCheck(True)
