"""Follow-up actions fired when a document becomes fully approved.

Handlers are registered per document kind with :func:`cascade_for` and run
by :func:`run_cascades` after the approval itself has been committed.  Each
handler runs in its own session; a failing handler is logged and rolled back
without affecting the approval that triggered it.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import sessionmaker

from docflow import timeutil
from docflow.audit import log_action
from docflow.errors import CascadeError
from docflow.models import (
    PENDING,
    AdvancePaymentReclaimDocument,
    Approver,
    Document,
    DocumentKind,
    DOCUMENT_TITLES,
    RoleEnum,
    User,
    engine,
)

logger = logging.getLogger(__name__)

RECLAIM_TAG_PREFIX = "Hoàn ứng_"
RECLAIM_APPROVER_SUB_ROLE = "Thủ quỹ"
RECLAIM_DEADLINE_DAYS = 30
NO_COST_CENTER = "Không có"

_registry: dict[DocumentKind, list[Callable]] = defaultdict(list)


def cascade_for(kind: DocumentKind):
    """Register the decorated ``handler(session, document)`` for ``kind``."""

    def decorator(handler):
        _registry[DocumentKind(kind)].append(handler)
        return handler

    return decorator


def handlers_for(kind) -> list[Callable]:
    return list(_registry.get(DocumentKind(kind), ()))


def run_cascades(document_id: int, kind) -> None:
    """Run every handler registered for ``kind`` against ``document_id``."""

    for handler in handlers_for(kind):
        Session = sessionmaker(bind=engine)
        session = Session()
        try:
            document = session.get(Document, document_id)
            if document is None:
                raise CascadeError(f"Document {document_id} vanished before cascade")
            handler(session, document)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception(
                "Cascade %s failed for document %s", handler.__name__, document_id
            )
        finally:
            session.close()


def reduced_file_metadata(descriptors) -> list[dict]:
    return [
        {
            "driveFileId": d.get("driveFileId"),
            "name": d.get("name"),
            "link": d.get("link"),
            "path": d.get("path"),
        }
        for d in descriptors or []
    ]


@cascade_for(DocumentKind.ADVANCE_PAYMENT)
def create_reclaim_document(session, source: Document):
    """Open an advance payment reclaim for a fully approved advance payment."""

    treasurer = (
        session.query(User)
        .filter_by(role=RoleEnum.DEPUTY_DIRECTOR.value)
        .order_by(User.id)
        .first()
    )
    if treasurer is None:
        logger.error(
            "No deputy director found; skipping reclaim for document %s", source.id
        )
        return None

    current = timeutil.now()
    deadline = timeutil.format_date(current + timedelta(days=RECLAIM_DEADLINE_DAYS))
    reclaim = AdvancePaymentReclaimDocument(
        tag=f"{RECLAIM_TAG_PREFIX}{source.tag}",
        title=DOCUMENT_TITLES[DocumentKind.ADVANCE_PAYMENT_RECLAIM],
        name=f"Hoàn ứng cho phiếu {source.name}",
        cost_center=source.cost_center or NO_COST_CENTER,
        content=f"Hoàn ứng cho nội dung {source.content}",
        payment_method=source.payment_method,
        advance_payment_reclaim=source.advance_payment,
        payment_deadline=deadline,
        extended_payment_deadline=deadline,
        file_metadata=reduced_file_metadata(source.file_metadata),
        submitted_by_id=source.submitted_by_id,
        appended_purchasing_documents=list(source.appended_purchasing_documents or []),
        submission_date=timeutil.format_timestamp(current),
        status=PENDING,
        suspend_reason="",
        group_name=source.group_name,
        project_name=source.project_name,
    )
    reclaim.approvers.append(
        Approver(
            user_id=treasurer.id,
            username=treasurer.username,
            sub_role=RECLAIM_APPROVER_SUB_ROLE,
        )
    )
    session.add(reclaim)
    session.flush()
    log_action(
        None,
        reclaim.id,
        "cascade_create",
        payload={"source_document_id": source.id, "source_tag": source.tag},
        session=session,
    )
    logger.info("Created reclaim %s for advance payment %s", reclaim.tag, source.tag)
    return reclaim
