import pytest

from docflow import approval
from docflow.errors import AlreadyApprovedError, AuthorizationError, ValidationError
from docflow.models import (
    APPROVED,
    PENDING,
    SUSPENDED,
    Approver,
    GenericDocument,
    PaymentStage,
    StageApprovalRecord,
    StageApprover,
    User,
)


def _users(*roles):
    return [User(id=i, username=f"u{i}", role=role) for i, role in enumerate(roles, start=1)]


def _document(users):
    doc = GenericDocument(tag="t", title="Doc", status=PENDING, suspend_reason="")
    for user in users:
        doc.approvers.append(Approver(user_id=user.id, username=user.username, sub_role="x"))
    return doc


def test_record_approval_completes_after_last_approver():
    first, second = _users("approver", "headOfTechnical")
    doc = _document([first, second])

    record = approval.record_approval(doc, first)
    assert record.username == "u1"
    assert record.role == "approver"
    assert record.approved_at.tzinfo is not None
    assert doc.status == PENDING

    approval.record_approval(doc, second)
    assert doc.status == APPROVED
    assert approval.check_invariants(doc) == []


def test_record_approval_rejects_strangers_and_repeats():
    first, stranger = _users("approver", "approver")
    doc = _document([first])
    with pytest.raises(AuthorizationError):
        approval.record_approval(doc, stranger)

    approval.record_approval(doc, first)
    with pytest.raises(AlreadyApprovedError):
        approval.record_approval(doc, first)
    assert len(doc.approved_by) == 1


def test_suspend_clears_approvals_and_returns_them():
    first, second = _users("approver", "approver")
    doc = _document([first, second])
    approval.record_approval(doc, first)
    approval.record_approval(doc, second)

    cleared = approval.suspend(doc, "  thiếu chứng từ ")
    assert [c["user_id"] for c in cleared] == [1, 2]
    assert doc.status == SUSPENDED
    assert doc.suspend_reason == "thiếu chứng từ"
    assert doc.approved_by == []
    assert approval.check_invariants(doc) == []


def test_suspend_requires_reason_and_is_not_repeatable():
    (user,) = _users("approver")
    doc = _document([user])
    with pytest.raises(ValidationError):
        approval.suspend(doc, "   ")
    approval.suspend(doc, "reason")
    with pytest.raises(ValidationError):
        approval.suspend(doc, "again")


def test_reopen_only_from_suspended():
    (user,) = _users("approver")
    doc = _document([user])
    with pytest.raises(ValidationError):
        approval.reopen(doc)

    approval.record_approval(doc, user)
    approval.suspend(doc, "reason")
    approval.reopen(doc)
    assert doc.status == PENDING
    assert doc.suspend_reason == ""
    assert doc.approved_by == []


def test_suspended_items_cannot_be_approved():
    (user,) = _users("approver")
    doc = _document([user])
    approval.suspend(doc, "reason")
    with pytest.raises(ValidationError):
        approval.record_approval(doc, user)


def test_stage_records_and_approved_stage_cannot_be_suspended():
    (user,) = _users("captainOfAccounting")
    stage = PaymentStage(name="Đợt 1", amount=10, status=PENDING, suspend_reason="")
    stage.approvers.append(StageApprover(user_id=user.id, username=user.username, sub_role="x"))

    record = approval.record_approval(stage, user)
    assert isinstance(record, StageApprovalRecord)
    assert stage.status == APPROVED
    with pytest.raises(ValidationError):
        approval.suspend(stage, "reason", allow_approved=False)
    assert stage.status == APPROVED


def test_check_invariants_reports_inconsistent_status():
    first, second = _users("approver", "approver")
    doc = _document([first, second])
    approval.record_approval(doc, first)
    doc.status = APPROVED
    assert approval.check_invariants(doc) == ["status Approved disagrees with approval counts"]


def test_settle_status_after_approver_removed():
    first, second = _users("approver", "approver")
    doc = _document([first, second])
    approval.record_approval(doc, first)
    doc.approvers.pop()
    assert approval.settle_status(doc) == APPROVED
