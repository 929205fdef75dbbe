from io import BytesIO
from typing import Dict, List, Optional, Tuple

import pandas as pd
from reportlab.lib.pagesizes import landscape, letter
from reportlab.pdfgen import canvas

from docflow import timeutil
from docflow.models import (
    APPROVED,
    PENDING,
    ApprovalRecord,
    Approver,
    Document,
    DocumentKind,
    PaymentStage,
    StageApprover,
)

PRIORITY_ORDER = {"Cao": 1, "Trung bình": 2, "Thấp": 3}
UNKNOWN_PRIORITY = 4


def priority_rank(priority: Optional[str]) -> int:
    return PRIORITY_ORDER.get(priority, UNKNOWN_PRIORITY)


def effective_priority(doc: Document) -> int:
    """Highest priority among unapproved stages, else the document's own."""
    open_stages = [s for s in doc.stages if s.status != APPROVED]
    if open_stages:
        return min(priority_rank(s.priority) for s in open_stages)
    return priority_rank(doc.priority)


def _submitted_at(doc: Document) -> float:
    try:
        return timeutil.parse_timestamp(doc.submission_date).timestamp()
    except (AttributeError, ValueError):
        return 0.0


def _awaits(doc: Document, user_id: int) -> bool:
    if not doc.stages:
        return True
    for stage in doc.stages:
        assigned = any(a.user_id == user_id for a in stage.approvers)
        done = any(r.user_id == user_id for r in stage.approved_by)
        if assigned and not done:
            return True
    return any(a.user_id == user_id for a in doc.approvers)


def _stage_summary(stage: PaymentStage) -> Dict:
    return {
        "name": stage.name,
        "amount": stage.amount,
        "status": stage.status,
        "priority": stage.priority,
        "approvers": [
            {"username": a.username, "role": a.user.role if a.user else None}
            for a in stage.approvers
        ],
        "approvedBy": [{"username": r.username, "role": r.role} for r in stage.approved_by],
    }


def pending_summary(db, user) -> Dict[str, Dict]:
    """Pending documents per kind that still wait for ``user``."""
    waiting_on_user = (
        Document.approvers.any(Approver.user_id == user.id)
        | Document.stages.any(PaymentStage.approvers.any(StageApprover.user_id == user.id))
    )
    docs = (
        db.query(Document)
        .filter(
            Document.status == PENDING,
            waiting_on_user,
            ~Document.approved_by.any(ApprovalRecord.user_id == user.id),
        )
        .all()
    )
    grouped: Dict[str, List[Document]] = {kind.value: [] for kind in DocumentKind}
    for doc in docs:
        if _awaits(doc, user.id):
            grouped[doc.kind].append(doc)

    summary = {}
    for kind, items in grouped.items():
        items.sort(key=lambda d: (effective_priority(d), -_submitted_at(d)))
        summary[kind] = {
            "count": len(items),
            "documents": [
                {
                    "id": d.id,
                    "title": d.title,
                    "tag": d.tag,
                    "name": d.name,
                    "task": d.task,
                    "priority": d.priority,
                    "effectivePriority": effective_priority(d),
                    "submittedBy": d.submitted_by.username if d.submitted_by else "Unknown",
                    "submissionDate": d.submission_date,
                    "stages": [_stage_summary(s) for s in d.stages],
                }
                for d in items
            ],
        }
    return summary


def _export_row(doc: Document) -> Dict:
    row = {
        "id": doc.id,
        "tag": doc.tag,
        "title": doc.title,
        "name": doc.name or doc.task,
        "cost_center": doc.cost_center,
        "submitted_by": doc.submitted_by.username if doc.submitted_by else "",
        "submission_date": doc.submission_date,
        "status": doc.status,
        "suspend_reason": doc.suspend_reason or "",
        "declaration": doc.declaration or "",
        "group": doc.group_name or "",
        "project": doc.project_name or "",
        "approvers": ", ".join(f"{a.username} ({a.sub_role})" for a in doc.approvers),
        "approved_by": ", ".join(f"{r.username} {r.approval_date}" for r in doc.approved_by),
    }
    kind = doc.document_kind
    if kind in (DocumentKind.PURCHASING, DocumentKind.DELIVERY, DocumentKind.RECEIPT):
        row["grand_total_cost"] = doc.grand_total_cost
    if kind in (
        DocumentKind.PAYMENT,
        DocumentKind.ADVANCE_PAYMENT,
        DocumentKind.ADVANCE_PAYMENT_RECLAIM,
    ):
        row["amount"] = doc.approval_amount
        row["payment_method"] = doc.payment_method
        row["payment_deadline"] = doc.extended_payment_deadline or doc.payment_deadline
    if kind is DocumentKind.PAYMENT:
        row["priority"] = doc.priority
    return row


def document_report(db, kind, status: Optional[str] = None) -> List[Dict]:
    query = db.query(Document).filter(Document.kind == DocumentKind(kind).value)
    if status:
        query = query.filter(Document.status == status)
    return [_export_row(doc) for doc in query.order_by(Document.id).all()]


def _df_to_pdf(df: pd.DataFrame) -> bytes:
    """Render a DataFrame to a very basic PDF table."""
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=landscape(letter))
    text = c.beginText(30, 570)
    text.textLine("\t".join(str(col) for col in df.columns))
    for _, row in df.iterrows():
        text.textLine("\t".join(str(v) for v in row))
    c.drawText(text)
    c.save()
    buffer.seek(0)
    return buffer.getvalue()


def _render_output(rows: List[Dict], fmt: str) -> Tuple[bytes, str, str]:
    """Return file content, mime type and extension."""
    df = pd.DataFrame(rows)
    if fmt == "csv":
        return df.to_csv(index=False).encode("utf-8"), "text/csv", "csv"
    if fmt == "xlsx":
        buf = BytesIO()
        df.to_excel(buf, index=False)
        return (
            buf.getvalue(),
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "xlsx",
        )
    if fmt == "pdf":
        return _df_to_pdf(df), "application/pdf", "pdf"
    raise ValueError("unsupported format")


def export_documents(db, kind, fmt: str = "csv", status: Optional[str] = None) -> Tuple[bytes, str, str]:
    return _render_output(document_report(db, kind, status), fmt)
