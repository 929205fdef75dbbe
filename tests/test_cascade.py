from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from docflow import approval, cascade, models, services, timeutil
from docflow.models import (
    APPROVED,
    PENDING,
    AdvancePaymentReclaimDocument,
    AuditLog,
    Document,
    DocumentKind,
)


@pytest.fixture()
def advance_payment(make_user, make_document):
    submitter = make_user("submitter")
    approver = make_user("headOfAccounting")
    doc = make_document(
        DocumentKind.ADVANCE_PAYMENT,
        tag="TamUng24",
        name="Mua vật tư",
        content="Tạm ứng mua vật tư",
        approvers=[approver],
        submitter=submitter,
        advance_payment=5_000_000,
        payment_method="Chuyển khoản",
        group_name="Nhóm A",
        project_name="Dự án B",
        file_metadata=[
            {
                "driveFileId": "/Documents/a.pdf",
                "name": "a_2024.pdf",
                "displayName": "a.pdf",
                "link": "https://cloud/s/abc",
                "path": "/Documents/a.pdf",
                "size": 10,
            }
        ],
        appended_purchasing_documents=[{"id": 1, "tag": "MuaHang"}],
    )
    return doc, approver, submitter


def _reclaims(db):
    return db.query(Document).filter_by(kind=DocumentKind.ADVANCE_PAYMENT_RECLAIM.value).all()


def test_full_approval_creates_one_reclaim(db, advance_payment, make_user):
    doc, approver, submitter = advance_payment
    deputy = make_user("deputyDirector")
    make_user("deputyDirector")

    result = services.approve_document(db, doc.id, approver)
    assert result.status == APPROVED

    (reclaim,) = _reclaims(db)
    assert isinstance(reclaim, AdvancePaymentReclaimDocument)
    assert reclaim.tag == "Hoàn ứng_TamUng24"
    assert reclaim.advance_payment_reclaim == 5_000_000
    assert reclaim.approval_amount == 5_000_000
    expected = timeutil.format_date(timeutil.now() + timedelta(days=30))
    assert reclaim.payment_deadline == expected
    assert reclaim.extended_payment_deadline == expected
    assert reclaim.status == PENDING
    assert reclaim.submitted_by_id == submitter.id
    assert reclaim.group_name == "Nhóm A"
    assert reclaim.project_name == "Dự án B"
    assert reclaim.name == "Hoàn ứng cho phiếu Mua vật tư"
    assert reclaim.appended_purchasing_documents == [{"id": 1, "tag": "MuaHang"}]
    assert reclaim.file_metadata == [
        {
            "driveFileId": "/Documents/a.pdf",
            "name": "a_2024.pdf",
            "link": "https://cloud/s/abc",
            "path": "/Documents/a.pdf",
        }
    ]
    # the first deputy director by id is the only approver
    assert [(a.user_id, a.sub_role) for a in reclaim.approvers] == [(deputy.id, "Thủ quỹ")]

    entry = db.query(AuditLog).filter_by(document_id=reclaim.id, action="cascade_create").one()
    assert entry.payload["source_document_id"] == doc.id


def test_cost_center_falls_back(db, advance_payment, make_user):
    doc, approver, _ = advance_payment
    make_user("deputyDirector")
    services.approve_document(db, doc.id, approver)
    (reclaim,) = _reclaims(db)
    assert reclaim.cost_center == "Không có"


def test_missing_deputy_director_skips_cascade(db, advance_payment, caplog):
    doc, approver, _ = advance_payment
    with caplog.at_level("ERROR", logger="docflow.cascade"):
        result = services.approve_document(db, doc.id, approver)
    assert result.status == APPROVED
    assert _reclaims(db) == []
    assert "No deputy director found" in caplog.text


def test_cascade_failure_does_not_undo_approval(db, advance_payment, make_user, monkeypatch, caplog):
    doc, approver, _ = advance_payment
    make_user("deputyDirector")

    def explode(session, source):
        raise RuntimeError("boom")

    monkeypatch.setitem(cascade._registry, DocumentKind.ADVANCE_PAYMENT, [explode])
    with caplog.at_level("ERROR", logger="docflow.cascade"):
        result = services.approve_document(db, doc.id, approver)
    assert result.fully_approved
    db.expire_all()
    assert db.get(Document, doc.id).status == APPROVED
    assert _reclaims(db) == []
    assert "Cascade explode failed" in caplog.text


def test_no_handlers_for_other_kinds():
    assert cascade.handlers_for(DocumentKind.PAYMENT) == []
    assert cascade.handlers_for("advance_payment") == [cascade.create_reclaim_document]


def test_reduced_file_metadata_handles_missing():
    assert cascade.reduced_file_metadata(None) == []


def test_concurrent_final_approvals_create_one_reclaim(db, make_user, make_document):
    first = make_user("headOfAccounting")
    second = make_user("approver")
    make_user("deputyDirector")
    doc = make_document(
        DocumentKind.ADVANCE_PAYMENT,
        tag="TamUng25",
        name="Mua dầu",
        approvers=[first, second],
        submitter=make_user("submitter"),
        advance_payment=2_000_000,
    )

    Session = sessionmaker(bind=models.engine)
    one, two = Session(), Session()
    try:
        # both requests read the document before either one commits
        for session in (one, two):
            assert session.get(Document, doc.id).approved_by == []
        earlier = services.approve_document(one, doc.id, first)
        later = services.approve_document(two, doc.id, second)
    finally:
        one.close()
        two.close()

    assert earlier.fully_approved is False
    assert later.fully_approved is True
    db.expire_all()
    settled = db.get(Document, doc.id)
    assert settled.status == APPROVED
    assert len(settled.approved_by) == 2
    assert approval.check_invariants(settled) == []
    assert len(_reclaims(db)) == 1
