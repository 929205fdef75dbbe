"""Approval state machine shared by documents and payment stages.

Both :class:`~docflow.models.Document` and
:class:`~docflow.models.PaymentStage` expose ``approvers``, ``approved_by``,
``status`` and ``suspend_reason``; the helpers here only rely on those.

    Pending --approve--> Pending | Approved
    Pending | Approved --suspend--> Suspended   (approvals are cleared)
    Suspended --open--> Pending                  (approvals stay cleared)
"""

from __future__ import annotations

from datetime import datetime

from docflow.errors import AlreadyApprovedError, AuthorizationError, ValidationError
from docflow.models import APPROVED, PENDING, SUSPENDED
from docflow.timeutil import format_timestamp


def approved_user_ids(target) -> set[int]:
    return {r.user_id for r in target.approved_by}


def approver_user_ids(target) -> set[int]:
    return {a.user_id for a in target.approvers}


def is_approver(target, user_id: int) -> bool:
    return user_id in approver_user_ids(target)


def has_approved(target, user_id: int) -> bool:
    return user_id in approved_user_ids(target)


def is_fully_approved(target) -> bool:
    assigned = approver_user_ids(target)
    if not assigned:
        return False
    return assigned <= approved_user_ids(target) and len(target.approved_by) == len(
        target.approvers
    )


def ensure_can_record(target, user_id: int) -> None:
    """Reject an approval attempt before any hierarchy evaluation."""

    if target.status == SUSPENDED:
        raise ValidationError("Suspended items must be opened before approval")
    if not is_approver(target, user_id):
        raise AuthorizationError("You are not an assigned approver")
    if has_approved(target, user_id):
        raise AlreadyApprovedError("You have already approved this item")


def settle_status(target) -> str:
    """Bring ``status`` in line with the approval counts after a change."""

    if target.status == SUSPENDED:
        return target.status
    target.status = APPROVED if is_fully_approved(target) else PENDING
    return target.status


def record_approval(target, user, when: datetime | None = None):
    ensure_can_record(target, user.id)
    record = target.new_approval_record(
        user_id=user.id,
        username=user.username,
        role=user.role,
        approval_date=format_timestamp(when),
    )
    target.approved_by.append(record)
    settle_status(target)
    return record


def suspend(target, reason: str, allow_approved: bool = True) -> list[dict]:
    """Suspend ``target`` and return the approvals that were discarded."""

    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A suspend reason is required")
    if target.status == SUSPENDED:
        raise ValidationError("Already suspended")
    if target.status == APPROVED and not allow_approved:
        raise ValidationError("Approved items cannot be suspended")

    cleared = [
        {
            "user_id": r.user_id,
            "username": r.username,
            "role": r.role,
            "approval_date": r.approval_date,
        }
        for r in target.approved_by
    ]
    target.approved_by.clear()
    target.status = SUSPENDED
    target.suspend_reason = reason
    return cleared


def reopen(target) -> None:
    if target.status != SUSPENDED:
        raise ValidationError("Only suspended items can be opened")
    target.status = PENDING
    target.suspend_reason = ""


def check_invariants(target) -> list[str]:
    """Return a description of every broken invariant (empty when sound)."""

    problems = []
    ids = [r.user_id for r in target.approved_by]
    if len(ids) != len(set(ids)):
        problems.append("duplicate approval records")
    stray = set(ids) - approver_user_ids(target)
    if stray:
        problems.append(f"approvals from unassigned users {sorted(stray)}")
    if (target.status == APPROVED) != is_fully_approved(target):
        problems.append(f"status {target.status} disagrees with approval counts")
    if target.status == SUSPENDED and ids:
        problems.append("suspended item still holds approvals")
    if target.status == SUSPENDED and not target.suspend_reason:
        problems.append("suspended item has no reason")
    return problems
