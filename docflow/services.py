"""Document workflow operations.

Every operation receives an SQLAlchemy session and the acting
:class:`~docflow.models.User`.  Input and permissions are checked before
anything is changed; on success the change is committed together with an
audit entry.  Errors are raised as :mod:`docflow.errors` types.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from docflow import approval, notifications, timeutil
from docflow.attachments import (
    IncomingFile,
    delete_file,
    delete_files,
    folder_for,
    upload_file,
    upload_files,
)
from docflow.audit import log_action
from docflow.cascade import run_cascades
from docflow.errors import (
    AlreadyApprovedError,
    AuthorizationError,
    HierarchyBlockedError,
    NotFoundError,
    StagesPendingError,
    ValidationError,
)
from docflow.hierarchy import ApproverInfo, can_approve_now
from docflow.models import (
    APPROVED,
    DEFAULT_PRIORITY,
    DOCUMENT_CLASSES,
    DOCUMENT_TITLES,
    NOT_SPECIFIED,
    PENDING,
    PRIORITIES,
    STAGED_KINDS,
    Approver,
    Document,
    DocumentKind,
    Group,
    GroupDeclaration,
    PaymentStage,
    RoleEnum,
    StageApprover,
    User,
)
from docflow.permissions import STAGE_CONTROL_ROLES, require_permission
from docflow.storage import StorageBackend

logger = logging.getLogger(__name__)

RECLAIM_EXTENSION_DAYS = 30
MASS_DECLARATION_KINDS = frozenset(
    {
        DocumentKind.PAYMENT,
        DocumentKind.ADVANCE_PAYMENT,
        DocumentKind.ADVANCE_PAYMENT_RECLAIM,
    }
)


@dataclass
class ApprovalResult:
    document: Document
    status: str
    fully_approved: bool
    stage: PaymentStage | None = None
    can_approve_document: bool = False


# ---------------------------------------------------------------------------
# lookups
# ---------------------------------------------------------------------------

def parse_kind(kind) -> DocumentKind:
    try:
        return DocumentKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown document kind {kind!r}") from None


def get_document(db, document_id: int, kind=None) -> Document:
    doc = db.get(Document, document_id)
    if doc is None or (kind is not None and doc.kind != parse_kind(kind).value):
        raise NotFoundError("Document not found")
    return doc


def get_stage(doc: Document, stage_index: int) -> PaymentStage:
    if doc.document_kind not in STAGED_KINDS:
        raise NotFoundError("Document has no payment stages")
    if not 0 <= stage_index < len(doc.stages):
        raise NotFoundError("Payment stage not found")
    return doc.stages[stage_index]


def _approver_infos(approvers) -> list[ApproverInfo]:
    # roles are read from the live user rows; deleted users are skipped
    return [
        ApproverInfo(a.user_id, a.username, a.user.role)
        for a in approvers
        if a.user is not None
    ]


def ready_approvers(target, amount, kind) -> set[int]:
    """Approvers who have not approved yet and are not held back."""

    infos = _approver_infos(target.approvers)
    approved = approval.approved_user_ids(target)
    return {
        info.user_id
        for info in infos
        if info.user_id not in approved
        and can_approve_now(info.role, info.user_id, infos, approved, amount, kind).can_approve
    }


def _check_hierarchy(target, actor: User, amount, kind) -> None:
    check = can_approve_now(
        actor.role,
        actor.id,
        _approver_infos(target.approvers),
        approval.approved_user_ids(target),
        amount,
        kind,
    )
    if not check.can_approve:
        logger.info(
            "Approval by %s blocked, waiting for %s", actor.username, check.waiting_for
        )
        raise HierarchyBlockedError(waiting_for=check.waiting_for)


def _commit_approval(db) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        # another request recorded the same approver first
        db.rollback()
        raise AlreadyApprovedError("You have already approved this item") from exc


def _settle_committed(db, target) -> bool:
    """Re-read committed approvals and promote ``target`` when they are complete.

    Concurrent approvers each see a stale approval list and may all commit
    ``Pending``.  The conditional update lets exactly one of them flip the
    status; it returns True only for that caller.
    """

    db.expire(target)
    if target.status != PENDING or not approval.is_fully_approved(target):
        return False
    table = target.__table__
    result = db.execute(
        update(table)
        .where(table.c.id == target.id, table.c.status == PENDING)
        .values(status=APPROVED)
    )
    db.commit()
    db.expire(target)
    return result.rowcount == 1


def _pending_stage_names(doc: Document) -> list[str]:
    return [s.name for s in doc.stages if s.status != APPROVED]


def stages_complete(doc: Document) -> bool:
    return all(s.status == APPROVED for s in doc.stages)


# ---------------------------------------------------------------------------
# approval state
# ---------------------------------------------------------------------------

def approve_document(db, document_id: int, actor: User) -> ApprovalResult:
    require_permission(actor, "approve")
    doc = get_document(db, document_id)
    approval.ensure_can_record(doc, actor.id)
    if doc.document_kind in STAGED_KINDS and doc.stages:
        pending = _pending_stage_names(doc)
        if pending:
            raise StagesPendingError(pending)
    kind, amount = doc.document_kind, doc.approval_amount
    _check_hierarchy(doc, actor, amount, kind)

    before = ready_approvers(doc, amount, kind)
    approval.record_approval(doc, actor)
    fully_approved = doc.status == APPROVED
    log_action(
        actor.id,
        doc.id,
        "approve",
        payload={"status": doc.status, "role": actor.role},
        session=db,
    )
    _commit_approval(db)
    if not fully_approved:
        fully_approved = _settle_committed(db, doc)
    logger.info("Document %s approved by %s (%s)", doc.tag, actor.username, doc.status)

    if fully_approved:
        run_cascades(document_id, kind)
        notifications.notify_fully_approved(doc)
    else:
        newly_ready = ready_approvers(doc, amount, kind) - before - {actor.id}
        notifications.notify_approval_queue(doc, sorted(newly_ready))
    return ApprovalResult(doc, doc.status, fully_approved)


def approve_stage(db, document_id: int, stage_index: int, actor: User) -> ApprovalResult:
    require_permission(actor, "approve_stage")
    doc = get_document(db, document_id)
    stage = get_stage(doc, stage_index)
    approval.ensure_can_record(stage, actor.id)
    kind = doc.document_kind
    # The director skips the order at every stage amount, same as for whole
    # documents, not only for stages below PAYMENT_THRESHOLD.
    _check_hierarchy(stage, actor, stage.amount, kind)

    before = ready_approvers(stage, stage.amount, kind)
    approval.record_approval(stage, actor)
    stage_approved = stage.status == APPROVED
    log_action(
        actor.id,
        doc.id,
        "approve_stage",
        entity_type="PaymentStage",
        entity_id=stage.id,
        payload={"stage": stage.name, "status": stage.status},
        session=db,
    )
    _commit_approval(db)
    if not stage_approved:
        stage_approved = _settle_committed(db, stage)

    can_approve_document = stages_complete(doc) and len(doc.approvers) > 0
    if stage_approved and can_approve_document:
        notifications.notify_approval_queue(
            doc, sorted(ready_approvers(doc, doc.approval_amount, kind))
        )
    elif not stage_approved:
        newly_ready = ready_approvers(stage, stage.amount, kind) - before - {actor.id}
        notifications.notify_stage_approval_queue(doc, stage, sorted(newly_ready))
    return ApprovalResult(
        doc,
        doc.status,
        doc.status == APPROVED,
        stage=stage,
        can_approve_document=can_approve_document,
    )


def suspend_document(db, document_id: int, actor: User, reason: str) -> Document:
    doc = get_document(db, document_id)
    require_permission(actor, "suspend", doc.kind)
    cleared = approval.suspend(doc, reason)
    log_action(
        actor.id,
        doc.id,
        "suspend",
        payload={"reason": doc.suspend_reason, "cleared_approvals": cleared},
        session=db,
    )
    db.commit()
    logger.info(
        "Document %s suspended by %s; %d approvals cleared",
        doc.tag,
        actor.username,
        len(cleared),
    )
    notifications.notify_suspended(doc, doc.suspend_reason)
    return doc


def open_document(db, document_id: int, actor: User) -> Document:
    doc = get_document(db, document_id)
    require_permission(actor, "open", doc.kind)
    approval.reopen(doc)
    log_action(actor.id, doc.id, "open", session=db)
    db.commit()
    notifications.notify_approval_queue(
        doc, sorted(ready_approvers(doc, doc.approval_amount, doc.document_kind))
    )
    return doc


def suspend_stage(db, document_id: int, stage_index: int, actor: User, reason: str) -> PaymentStage:
    require_permission(actor, "suspend_stage")
    doc = get_document(db, document_id)
    stage = get_stage(doc, stage_index)
    cleared = approval.suspend(stage, reason, allow_approved=False)
    log_action(
        actor.id,
        doc.id,
        "suspend_stage",
        entity_type="PaymentStage",
        entity_id=stage.id,
        payload={"reason": stage.suspend_reason, "cleared_approvals": cleared},
        session=db,
    )
    db.commit()
    return stage


def open_stage(db, document_id: int, stage_index: int, actor: User) -> PaymentStage:
    require_permission(actor, "open_stage")
    doc = get_document(db, document_id)
    stage = get_stage(doc, stage_index)
    approval.reopen(stage)
    log_action(
        actor.id,
        doc.id,
        "open_stage",
        entity_type="PaymentStage",
        entity_id=stage.id,
        session=db,
    )
    db.commit()
    return stage


# ---------------------------------------------------------------------------
# declarations, priority and deadlines
# ---------------------------------------------------------------------------

def _declaration_text(declaration) -> str:
    if not isinstance(declaration, str):
        raise ValidationError("Declaration must be text")
    return declaration


def update_declaration(db, document_id: int, actor: User, declaration) -> Document:
    doc = get_document(db, document_id)
    require_permission(actor, "declaration", doc.kind)
    doc.declaration = _declaration_text(declaration)
    log_action(actor.id, doc.id, "declaration", payload={"declaration": doc.declaration}, session=db)
    db.commit()
    return doc


def mass_update_declaration(db, kind, document_ids, actor: User, declaration) -> int:
    kind = parse_kind(kind)
    if kind not in MASS_DECLARATION_KINDS:
        raise ValidationError(f"Mass declaration is not available for {kind.value}")
    require_permission(actor, "declaration", kind)
    if not isinstance(document_ids, (list, tuple)) or not document_ids:
        raise ValidationError("At least one document id is required")
    declaration = _declaration_text(declaration)
    if not declaration.strip():
        raise ValidationError("Declaration must not be empty")
    try:
        ids = [int(i) for i in document_ids]
    except (TypeError, ValueError):
        raise ValidationError("Document ids must be integers") from None

    updated = (
        db.query(Document)
        .filter(Document.kind == kind.value, Document.id.in_(ids))
        .update({"declaration": declaration}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        raise NotFoundError("No matching documents found")
    log_action(
        actor.id,
        None,
        "mass_declaration",
        entity_type="Document",
        payload={"kind": kind.value, "ids": ids, "declaration": declaration, "updated": updated},
        session=db,
    )
    db.commit()
    return updated


def update_payment_priority(db, document_id: int, actor: User, priority: str) -> Document:
    doc = get_document(db, document_id, kind=DocumentKind.PAYMENT)
    require_permission(actor, "priority")
    if priority not in PRIORITIES:
        raise ValidationError(f"Priority must be one of {', '.join(PRIORITIES)}")
    approved, total = len(doc.approved_by), len(doc.approvers)
    if doc.status != PENDING or not 0 < approved < total:
        raise ValidationError(
            "Priority can only change while a document is partially approved"
        )
    doc.priority = priority
    log_action(actor.id, doc.id, "priority", payload={"priority": priority}, session=db)
    db.commit()
    return doc


def extend_reclaim_deadline(db, document_id: int, actor: User) -> str:
    doc = get_document(db, document_id, kind=DocumentKind.ADVANCE_PAYMENT_RECLAIM)
    require_permission(actor, "extend_deadline")
    base = doc.extended_payment_deadline or doc.payment_deadline
    if not base or base == NOT_SPECIFIED or not timeutil.is_valid_date(base):
        raise ValidationError("Document has no valid payment deadline to extend")
    doc.extended_payment_deadline = timeutil.add_days(base, RECLAIM_EXTENSION_DAYS)
    log_action(
        actor.id,
        doc.id,
        "extend_deadline",
        payload={"from": base, "to": doc.extended_payment_deadline},
        session=db,
    )
    db.commit()
    return doc.extended_payment_deadline


# ---------------------------------------------------------------------------
# submission
# ---------------------------------------------------------------------------

def _parse_json(value, field: str):
    if isinstance(value, (str, bytes)):
        if not value.strip():
            return None
        try:
            return json.loads(value)
        except ValueError:
            raise ValidationError(f"Invalid {field} data format") from None
    return value


def _number(value, field: str, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None


def _positive(value, field: str) -> float:
    number = _number(value, field, default=0.0)
    if number <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return number


def _text(payload: dict, key: str, required: bool = False, label: str | None = None):
    value = payload.get(key)
    if isinstance(value, str):
        value = value.strip()
    if required and not value:
        raise ValidationError(f"{label or key} is required")
    return value


def _deadline(value) -> str:
    if value in (None, "", NOT_SPECIFIED):
        return NOT_SPECIFIED
    if not timeutil.is_valid_date(value):
        raise ValidationError("Payment deadline must use DD-MM-YYYY")
    return value.strip()


def resolve_approvers(db, raw, field: str = "approvers") -> list[tuple[int, str, str]]:
    """Validate an approver list into ``(user_id, username, sub_role)``."""

    entries = _parse_json(raw, field)
    if not isinstance(entries, list) or not entries:
        raise ValidationError(f"At least one entry is required in {field}")
    seen: set[int] = set()
    resolved = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationError(f"Invalid {field} data format")
        try:
            user_id = int(entry.get("user_id", entry.get("approver")))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid approver id in {field}") from None
        if user_id in seen:
            raise ValidationError(f"Duplicate approver {user_id} in {field}")
        seen.add(user_id)
        user = db.get(User, user_id)
        if user is None:
            raise ValidationError(f"Unknown approver {user_id} in {field}")
        sub_role = (entry.get("sub_role") or entry.get("subRole") or "").strip()
        if not sub_role:
            raise ValidationError(f"Approver {user.username} needs a sub-role")
        resolved.append((user.id, user.username, sub_role))
    return resolved


def build_stages(db, raw) -> list[PaymentStage]:
    entries = _parse_json(raw, "stages")
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ValidationError("Invalid stages data format")
    stages = []
    for position, entry in enumerate(entries):
        label = f"Stage {position + 1}"
        if not isinstance(entry, dict):
            raise ValidationError(f"{label}: invalid data format")
        name = str(entry.get("name") or "").strip()
        if not name:
            raise ValidationError(f"{label}: name is required")
        amount = _positive(entry.get("amount"), f"{label}: amount")
        deadline = entry.get("deadline")
        if not timeutil.is_valid_date(deadline):
            raise ValidationError(f"{label}: deadline must use DD-MM-YYYY")
        priority = entry.get("priority") or DEFAULT_PRIORITY
        if priority not in PRIORITIES:
            raise ValidationError(f"{label}: unknown priority {priority!r}")
        approvers = resolve_approvers(db, entry.get("approvers"), f"{label} approvers")
        stage = PaymentStage(
            position=position,
            name=name,
            amount=amount,
            deadline=deadline.strip(),
            priority=priority,
            payment_method=entry.get("paymentMethod"),
            notes=entry.get("notes") or "",
            status=PENDING,
            suspend_reason="",
        )
        stage.approvers.extend(
            StageApprover(user_id=uid, username=name_, sub_role=sub)
            for uid, name_, sub in approvers
        )
        stages.append(stage)
    return stages


def process_products(raw) -> tuple[list[dict], float]:
    entries = _parse_json(raw, "products") or []
    if not isinstance(entries, list):
        raise ValidationError("Invalid products data format")
    products = []
    for index, product in enumerate(entries, start=1):
        if not isinstance(product, dict):
            raise ValidationError(f"Product {index}: invalid data format")
        cost = _number(product.get("costPerUnit"), f"Product {index}: cost per unit")
        amount = _number(product.get("amount"), f"Product {index}: amount")
        vat = _number(product.get("vat"), f"Product {index}: VAT")
        total = cost * amount
        products.append(
            {
                "productName": product.get("productName"),
                "costPerUnit": cost,
                "amount": amount,
                "vat": vat,
                "totalCost": total,
                "totalCostAfterVat": total * (1 + vat / 100),
                "costCenter": product.get("costCenter"),
                "note": product.get("note") or "",
            }
        )
    return products, sum(p["totalCostAfterVat"] for p in products)


def snapshot_documents(db, raw, kind: DocumentKind, field: str) -> list[dict]:
    """Copy the referenced documents by value, in the order given."""

    ids = _parse_json(raw, field) or []
    if not isinstance(ids, list):
        raise ValidationError(f"Invalid {field} data format")
    try:
        ids = [int(i) for i in ids]
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid document id in {field}") from None
    if not ids:
        return []
    found = {
        d.id: d
        for d in db.query(Document)
        .filter(Document.kind == kind.value, Document.id.in_(ids))
        .all()
    }
    return [found[i].to_dict() for i in ids if i in found]


def _sections(db, payload: dict) -> list[dict]:
    sections = _parse_json(payload.get("sections"), "sections")
    if sections is None:
        names = payload.get("contentName")
        texts = payload.get("contentText")
        if isinstance(names, list) and isinstance(texts, list):
            sections = [{"name": n, "text": t} for n, t in zip(names, texts)]
        elif names or texts:
            sections = [{"name": names, "text": texts}]
        else:
            sections = []
    if not isinstance(sections, list):
        raise ValidationError("Invalid sections data format")
    for snapshot in snapshot_documents(
        db, payload.get("approvedDocuments"), DocumentKind.GENERIC, "approvedDocuments"
    ):
        sections.extend(snapshot["sections"])
    return sections


def _proposal_fields(db, payload):
    task = _text(payload, "task", required=True, label="Task")
    return task, {
        "task": task,
        "date_of_error": payload.get("dateOfError"),
        "details_description": payload.get("detailsDescription"),
        "direction": payload.get("direction"),
    }


def _product_fields(db, payload):
    name = _text(payload, "name", required=True, label="Name")
    products, grand_total = process_products(payload.get("products"))
    return name, {
        "name": name,
        "products": products,
        "grand_total_cost": grand_total,
        "appended_proposals": snapshot_documents(
            db, payload.get("approvedProposals"), DocumentKind.PROPOSAL, "approvedProposals"
        ),
    }


def _payment_family_fields(db, payload):
    name = _text(payload, "name", required=True, label="Name")
    return name, {
        "name": name,
        "content": payload.get("content"),
        "payment_method": payload.get("paymentMethod"),
        "payment_deadline": _deadline(payload.get("paymentDeadline")),
        "appended_purchasing_documents": snapshot_documents(
            db,
            payload.get("approvedPurchasingDocuments"),
            DocumentKind.PURCHASING,
            "approvedPurchasingDocuments",
        ),
    }


def _payment_fields(db, payload):
    name, fields = _payment_family_fields(db, payload)
    priority = payload.get("priority") or DEFAULT_PRIORITY
    if priority not in PRIORITIES:
        raise ValidationError(f"Unknown priority {priority!r}")
    fields.update(
        total_payment=_positive(payload.get("totalPayment"), "Total payment"),
        advance_payment=_number(payload.get("advancePayment"), "Advance payment"),
        priority=priority,
    )
    return name, fields


def _advance_payment_fields(db, payload):
    name, fields = _payment_family_fields(db, payload)
    fields["advance_payment"] = _positive(payload.get("advancePayment"), "Advance payment")
    return name, fields


def _reclaim_fields(db, payload):
    name, fields = _payment_family_fields(db, payload)
    fields["advance_payment_reclaim"] = _number(
        payload.get("advancePaymentReclaim"), "Advance payment reclaim"
    )
    return name, fields


def _sectioned_fields(db, payload):
    name = _text(payload, "name") or _text(payload, "title") or ""
    return name or "document", {"name": name or None, "sections": _sections(db, payload)}


_FIELD_BUILDERS = {
    DocumentKind.GENERIC: _sectioned_fields,
    DocumentKind.PROPOSAL: _proposal_fields,
    DocumentKind.PURCHASING: _product_fields,
    DocumentKind.DELIVERY: _product_fields,
    DocumentKind.RECEIPT: _product_fields,
    DocumentKind.PAYMENT: _payment_fields,
    DocumentKind.ADVANCE_PAYMENT: _advance_payment_fields,
    DocumentKind.ADVANCE_PAYMENT_RECLAIM: _reclaim_fields,
    DocumentKind.PROJECT_PROPOSAL: _sectioned_fields,
}


def submit_document(
    db,
    kind,
    actor: User,
    payload: dict,
    files: Sequence[IncomingFile] = (),
    file_store: StorageBackend | None = None,
) -> Document:
    kind = parse_kind(kind)
    approvers = resolve_approvers(db, payload.get("approvers"))
    tag_base, fields = _FIELD_BUILDERS[kind](db, payload)
    stages = build_stages(db, payload.get("stages")) if kind in STAGED_KINDS else []

    descriptors: list[dict] = []
    if files:
        if file_store is None:
            raise ValidationError("No file store configured for attachments")
        descriptors = upload_files(file_store, files, folder_for(kind))

    when = timeutil.now()
    title = payload.get("title") if kind is DocumentKind.GENERIC else None
    doc = DOCUMENT_CLASSES[kind](
        tag=f"{tag_base}{timeutil.tag_suffix(when)}",
        title=title or DOCUMENT_TITLES[kind],
        cost_center=payload.get("costCenter"),
        group_name=payload.get("groupName"),
        project_name=payload.get("projectName"),
        notes=payload.get("notes") or "",
        submitted_by_id=actor.id,
        submission_date=timeutil.format_timestamp(when),
        file_metadata=descriptors,
        declaration="",
        status=PENDING,
        suspend_reason="",
        **fields,
    )
    doc.approvers.extend(
        Approver(user_id=uid, username=name, sub_role=sub) for uid, name, sub in approvers
    )
    doc.stages.extend(stages)
    db.add(doc)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if file_store is not None:
            delete_files(file_store, descriptors)
        raise ValidationError("A document with this tag already exists") from exc
    logger.info("Document %s submitted by %s", doc.tag, actor.username)

    if doc.stages:
        for stage in doc.stages:
            notifications.notify_stage_approval_queue(
                doc, stage, sorted(ready_approvers(stage, stage.amount, kind))
            )
    else:
        notifications.notify_approval_queue(
            doc, sorted(ready_approvers(doc, doc.approval_amount, kind))
        )
    return doc


def list_approved(db, kind) -> list[Document]:
    kind = parse_kind(kind)
    return (
        db.query(Document)
        .filter(Document.kind == kind.value, Document.status == APPROVED)
        .order_by(Document.id.desc())
        .all()
    )


# ---------------------------------------------------------------------------
# payment stage editing
# ---------------------------------------------------------------------------

def _require_editor(actor: User, doc: Document) -> None:
    if actor.id == doc.submitted_by_id or actor.role in STAGE_CONTROL_ROLES:
        return
    raise AuthorizationError("Only the submitter or a manager may edit payment stages")


def _require_stages_editable(doc: Document) -> None:
    if doc.status == APPROVED or doc.approved_by:
        raise ValidationError("Payment stages are locked once document approval has started")


def _replace_approvers(target, entries: Iterable[tuple[int, str, str]], approver_cls):
    entries = list(entries)
    keep = {uid for uid, _, _ in entries}
    for assigned in list(target.approvers):
        if assigned.user_id not in keep:
            target.approvers.remove(assigned)
    for record in list(target.approved_by):
        if record.user_id not in keep:
            target.approved_by.remove(record)
    existing = {a.user_id: a for a in target.approvers}
    for uid, username, sub_role in entries:
        if uid in existing:
            existing[uid].sub_role = sub_role
        else:
            target.approvers.append(
                approver_cls(user_id=uid, username=username, sub_role=sub_role)
            )
    approval.settle_status(target)


def _critical_fields(stage: PaymentStage) -> tuple:
    return (
        stage.name,
        stage.amount,
        stage.deadline,
        stage.payment_method,
        stage.priority,
        tuple((a.user_id, a.sub_role) for a in stage.approvers),
    )


def update_payment_stages(db, document_id: int, actor: User, stages) -> Document:
    """Replace the stage list, keeping fully approved stages untouched."""

    doc = get_document(db, document_id)
    if doc.document_kind not in STAGED_KINDS:
        raise ValidationError("This document kind has no payment stages")
    _require_editor(actor, doc)
    _require_stages_editable(doc)
    incoming = build_stages(db, stages)
    existing = list(doc.stages)

    for index, current in enumerate(existing):
        if not approval.is_fully_approved(current):
            continue
        if index >= len(incoming) or _critical_fields(current) != _critical_fields(
            incoming[index]
        ):
            raise ValidationError(
                f"Stage {index + 1} is fully approved and cannot be changed"
            )

    for index, new in enumerate(incoming):
        if index >= len(existing):
            new.position = index
            doc.stages.append(new)
            continue
        current = existing[index]
        current.notes = new.notes
        if approval.is_fully_approved(current):
            continue
        current.name = new.name
        current.amount = new.amount
        current.deadline = new.deadline
        current.priority = new.priority
        current.payment_method = new.payment_method
        _replace_approvers(
            current,
            [(a.user_id, a.username, a.sub_role) for a in new.approvers],
            StageApprover,
        )
    for stale in existing[len(incoming):]:
        doc.stages.remove(stale)

    log_action(actor.id, doc.id, "update_stages", payload={"count": len(incoming)}, session=db)
    db.commit()
    return doc


def update_stage_approvers(db, document_id: int, stage_index: int, actor: User, approvers) -> PaymentStage:
    doc = get_document(db, document_id)
    stage = get_stage(doc, stage_index)
    _require_editor(actor, doc)
    _require_stages_editable(doc)
    if approval.is_fully_approved(stage):
        raise ValidationError("A fully approved stage cannot be edited")
    entries = resolve_approvers(db, approvers, f"Stage {stage_index + 1} approvers")
    _replace_approvers(stage, entries, StageApprover)
    log_action(
        actor.id,
        doc.id,
        "update_stage_approvers",
        entity_type="PaymentStage",
        entity_id=stage.id,
        payload={"approvers": [uid for uid, _, _ in entries]},
        session=db,
    )
    db.commit()
    return stage


def remove_stage_approver(db, document_id: int, stage_index: int, actor: User, user_id: int) -> PaymentStage:
    doc = get_document(db, document_id)
    stage = get_stage(doc, stage_index)
    _require_editor(actor, doc)
    _require_stages_editable(doc)
    if approval.is_fully_approved(stage):
        raise ValidationError("A fully approved stage cannot be edited")
    if not approval.is_approver(stage, user_id):
        raise NotFoundError("Approver not assigned to this stage")
    if len(stage.approvers) <= 1:
        raise ValidationError("A stage must keep at least one approver")
    _replace_approvers(
        stage,
        [(a.user_id, a.username, a.sub_role) for a in stage.approvers if a.user_id != user_id],
        StageApprover,
    )
    log_action(
        actor.id,
        doc.id,
        "remove_stage_approver",
        entity_type="PaymentStage",
        entity_id=stage.id,
        payload={"user_id": user_id},
        session=db,
    )
    db.commit()
    return stage


# ---------------------------------------------------------------------------
# attachments
# ---------------------------------------------------------------------------

def upload_stage_file(
    db, document_id: int, stage_index: int, actor: User, incoming: IncomingFile, file_store: StorageBackend
) -> dict:
    doc = get_document(db, document_id)
    stage = get_stage(doc, stage_index)
    _require_editor(actor, doc)
    if stage.status == APPROVED:
        raise ValidationError("Files of an approved stage cannot be changed")
    descriptor = upload_file(file_store, incoming, folder_for(doc.kind))
    previous = stage.file_metadata
    stage.file_metadata = descriptor
    log_action(
        actor.id,
        doc.id,
        "upload_stage_file",
        entity_type="PaymentStage",
        entity_id=stage.id,
        payload={"path": descriptor["path"]},
        session=db,
    )
    db.commit()
    delete_file(file_store, previous)
    return descriptor


def remove_stage_file(db, document_id: int, stage_index: int, actor: User, file_store: StorageBackend) -> None:
    doc = get_document(db, document_id)
    stage = get_stage(doc, stage_index)
    _require_editor(actor, doc)
    if stage.status == APPROVED:
        raise ValidationError("Files of an approved stage cannot be changed")
    if not stage.file_metadata:
        raise NotFoundError("Stage has no file")
    descriptor = stage.file_metadata
    delete_file(file_store, descriptor)
    stage.file_metadata = None
    log_action(
        actor.id,
        doc.id,
        "remove_stage_file",
        entity_type="PaymentStage",
        entity_id=stage.id,
        payload={"path": descriptor.get("path")},
        session=db,
    )
    db.commit()


def delete_document_file(db, document_id: int, file_id: str, actor: User, file_store: StorageBackend) -> None:
    doc = get_document(db, document_id)
    _require_owner(actor, doc)
    if doc.status == APPROVED or doc.approved_by:
        raise ValidationError("Files cannot be removed once approval has started")
    files = list(doc.file_metadata or [])
    match = next((f for f in files if f.get("driveFileId") == file_id), None)
    if match is None:
        raise NotFoundError("File not found")
    delete_file(file_store, match)
    doc.file_metadata = [f for f in files if f is not match]
    log_action(actor.id, doc.id, "delete_file", payload={"path": match.get("path")}, session=db)
    db.commit()


def _require_owner(actor: User, doc: Document) -> None:
    if actor.role == RoleEnum.SUPER_ADMIN.value or actor.id == doc.submitted_by_id:
        return
    raise AuthorizationError("Only the submitter may change this document")


def delete_document(db, document_id: int, actor: User, file_store: StorageBackend | None = None) -> None:
    doc = get_document(db, document_id)
    _require_owner(actor, doc)
    descriptors = list(doc.file_metadata or [])
    descriptors.extend(s.file_metadata for s in doc.stages if s.file_metadata)
    tag = doc.tag
    # audit_logs.document_id carries no foreign key; after the commit it
    # names a row that no longer exists, the tag in the payload identifies it
    log_action(
        actor.id,
        document_id,
        "delete",
        entity_type="Document",
        entity_id=document_id,
        payload={"tag": tag, "kind": doc.kind},
        session=db,
    )
    db.delete(doc)
    db.commit()
    if file_store is not None:
        delete_files(file_store, descriptors)
    logger.info("Document %s deleted by %s", tag, actor.username)


# ---------------------------------------------------------------------------
# groups
# ---------------------------------------------------------------------------

def create_group(db, actor: User, name: str, description: str = "") -> Group:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Group name is required")
    if db.query(Group).filter_by(name=name).first():
        raise ValidationError(f"Group {name} already exists")
    group = Group(name=name, description=description or "")
    db.add(group)
    log_action(actor.id, None, "create_group", entity_type="Group", payload={"name": name}, session=db)
    db.commit()
    return group


def assign_group(db, document_id: int, actor: User, group_name: str) -> Document:
    doc = get_document(db, document_id)
    if not db.query(Group).filter_by(name=group_name).first():
        raise NotFoundError(f"Group {group_name} not found")
    doc.group_name = group_name
    log_action(actor.id, doc.id, "assign_group", payload={"group": group_name}, session=db)
    db.commit()
    return doc


def remove_from_group(db, document_id: int, actor: User) -> Document:
    doc = get_document(db, document_id)
    doc.group_name = ""
    log_action(actor.id, doc.id, "remove_group", session=db)
    db.commit()
    return doc


def _group_declaration(db, name: str) -> GroupDeclaration:
    group = db.query(GroupDeclaration).filter_by(name=name).first()
    if group is None:
        raise NotFoundError(f"Declaration group {name} not found")
    return group


def create_group_declaration(db, actor: User, name: str, description: str = "") -> GroupDeclaration:
    require_permission(actor, "assign_group_declaration")
    name = (name or "").strip()
    if not name:
        raise ValidationError("Declaration group name is required")
    if db.query(GroupDeclaration).filter_by(name=name).first():
        raise ValidationError(f"Declaration group {name} already exists")
    group = GroupDeclaration(name=name, description=description or "", locked=False)
    db.add(group)
    db.commit()
    return group


def assign_group_declaration(db, document_id: int, actor: User, name: str) -> Document:
    require_permission(actor, "assign_group_declaration")
    doc = get_document(db, document_id)
    group = _group_declaration(db, name)
    if group.locked:
        raise ValidationError(f"Declaration group {name} is locked")
    doc.group_declaration_name = name
    log_action(actor.id, doc.id, "assign_group_declaration", payload={"group": name}, session=db)
    db.commit()
    return doc


def remove_from_group_declaration(db, document_id: int, actor: User) -> Document:
    require_permission(actor, "assign_group_declaration")
    doc = get_document(db, document_id)
    if doc.group_declaration_name:
        group = db.query(GroupDeclaration).filter_by(name=doc.group_declaration_name).first()
        if group is not None and group.locked:
            raise ValidationError(f"Declaration group {group.name} is locked")
    doc.group_declaration_name = ""
    log_action(actor.id, doc.id, "remove_group_declaration", session=db)
    db.commit()
    return doc


def lock_group_declaration(db, name: str, actor: User) -> GroupDeclaration:
    require_permission(actor, "lock_group_declaration")
    group = _group_declaration(db, name)
    group.locked = True
    group.locked_by_id = actor.id
    group.locked_at = timeutil.now().replace(tzinfo=None)
    log_action(actor.id, None, "lock_group_declaration", entity_type="GroupDeclaration", entity_id=group.id, session=db)
    db.commit()
    return group


def unlock_group_declaration(db, name: str, actor: User) -> GroupDeclaration:
    require_permission(actor, "unlock_group_declaration")
    group = _group_declaration(db, name)
    group.locked = False
    group.locked_by_id = None
    group.locked_at = None
    log_action(actor.id, None, "unlock_group_declaration", entity_type="GroupDeclaration", entity_id=group.id, session=db)
    db.commit()
    return group
