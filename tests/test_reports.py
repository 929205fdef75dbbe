from io import BytesIO

import pandas as pd

from docflow import reports, services
from docflow.models import DocumentKind


def test_pending_summary_groups_by_kind_and_priority(db, make_user, make_document):
    me = make_user("captainOfAccounting")
    other = make_user("approver")
    low = make_document(DocumentKind.PAYMENT, approvers=[me], total_payment=1, priority="Thấp")
    high = make_document(DocumentKind.PAYMENT, approvers=[me], total_payment=1, priority="Cao")
    make_document(DocumentKind.PAYMENT, approvers=[other], total_payment=1)
    proposal = make_document(DocumentKind.PROPOSAL, approvers=[me], task="x")

    summary = reports.pending_summary(db, me)
    assert set(summary) == {k.value for k in DocumentKind}
    assert summary["payment"]["count"] == 2
    assert [d["id"] for d in summary["payment"]["documents"]] == [high.id, low.id]
    assert [d["id"] for d in summary["proposal"]["documents"]] == [proposal.id]
    assert summary["generic"]["count"] == 0


def test_pending_summary_skips_documents_already_approved_by_user(db, make_user, make_document):
    me = make_user("approver")
    other = make_user("approver")
    doc = make_document(approvers=[me, other])
    services.approve_document(db, doc.id, me)
    assert reports.pending_summary(db, me)["generic"]["count"] == 0
    assert reports.pending_summary(db, other)["generic"]["count"] == 1


def test_open_stage_priority_wins(db, make_user, make_document):
    me = make_user("captainOfAccounting")
    plain = make_document(DocumentKind.PAYMENT, approvers=[me], total_payment=1, priority="Trung bình")
    staged = make_document(
        DocumentKind.PAYMENT,
        approvers=[me],
        total_payment=1,
        priority="Thấp",
        stages=[{"name": "Đợt 1", "amount": 1, "priority": "Cao", "approvers": [me]}],
    )
    assert reports.effective_priority(staged) == 1
    documents = reports.pending_summary(db, me)["payment"]["documents"]
    assert [d["id"] for d in documents] == [staged.id, plain.id]


def test_priority_rank_unknown():
    assert reports.priority_rank(None) == reports.UNKNOWN_PRIORITY
    assert reports.priority_rank("Cao") < reports.priority_rank("Thấp")


def test_document_report_and_exports(db, make_user, make_document):
    approver = make_user("approver", username="duyet")
    doc = make_document(
        DocumentKind.PAYMENT,
        approvers=[approver],
        total_payment=12_000,
        payment_method="Tiền mặt",
        payment_deadline="01-01-2030",
    )
    make_document(DocumentKind.PROPOSAL, approvers=[approver], task="x")

    rows = reports.document_report(db, "payment")
    assert len(rows) == 1
    assert rows[0]["tag"] == doc.tag
    assert rows[0]["amount"] == 12_000
    assert rows[0]["approvers"] == "duyet (Duyệt)"
    assert reports.document_report(db, "payment", status="Approved") == []

    content, mime, ext = reports.export_documents(db, "payment", "csv")
    assert (mime, ext) == ("text/csv", "csv")
    assert doc.tag in content.decode("utf-8")

    content, _, ext = reports.export_documents(db, "payment", "xlsx")
    assert ext == "xlsx"
    frame = pd.read_excel(BytesIO(content))
    assert list(frame["tag"]) == [doc.tag]

    content, mime, _ = reports.export_documents(db, "payment", "pdf")
    assert mime == "application/pdf"
    assert content.startswith(b"%PDF")
