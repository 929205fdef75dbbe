import os
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    DateTime,
    UniqueConstraint,
    create_engine,
    event,
    inspect,
)
from sqlalchemy.orm import (
    declarative_base,
    relationship,
    scoped_session,
    sessionmaker,
)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///docflow.db")

engine = create_engine(DATABASE_URL)
SessionLocal = scoped_session(sessionmaker(bind=engine))
Base = declarative_base()


class RoleEnum(PyEnum):
    SUPER_ADMIN = "superAdmin"
    DIRECTOR = "director"
    DEPUTY_DIRECTOR = "deputyDirector"
    HEAD_OF_MECHANICAL = "headOfMechanical"
    HEAD_OF_TECHNICAL = "headOfTechnical"
    HEAD_OF_ACCOUNTING = "headOfAccounting"
    HEAD_OF_PURCHASING = "headOfPurchasing"
    HEAD_OF_OPERATIONS = "headOfOperations"
    HEAD_OF_NORTHERN_OFFICE = "headOfNorthernRepresentativeOffice"
    CAPTAIN_OF_MECHANICAL = "captainOfMechanical"
    CAPTAIN_OF_TECHNICAL = "captainOfTechnical"
    CAPTAIN_OF_PURCHASING = "captainOfPurchasing"
    CAPTAIN_OF_ACCOUNTING = "captainOfAccounting"
    CAPTAIN_OF_BUSINESS = "captainOfBusiness"
    CAPTAIN_OF_FINANCE = "captainOfFinance"
    TRANSPORTER_OF_ACCOUNTING = "transporterOfAccounting"
    APPROVER = "approver"
    SUBMITTER = "submitter"


class DocumentKind(PyEnum):
    GENERIC = "generic"
    PROPOSAL = "proposal"
    PURCHASING = "purchasing"
    DELIVERY = "delivery"
    RECEIPT = "receipt"
    PAYMENT = "payment"
    ADVANCE_PAYMENT = "advance_payment"
    ADVANCE_PAYMENT_RECLAIM = "advance_payment_reclaim"
    PROJECT_PROPOSAL = "project_proposal"


# Display titles, also used to pick the upload folder of each kind.
DOCUMENT_TITLES = {
    DocumentKind.GENERIC: "Generic Document",
    DocumentKind.PROPOSAL: "Proposal Document",
    DocumentKind.PURCHASING: "Purchasing Document",
    DocumentKind.DELIVERY: "Delivery Document",
    DocumentKind.RECEIPT: "Receipt Document",
    DocumentKind.PAYMENT: "Payment Document",
    DocumentKind.ADVANCE_PAYMENT: "Advance Payment Document",
    DocumentKind.ADVANCE_PAYMENT_RECLAIM: "Advance Payment Reclaim Document",
    DocumentKind.PROJECT_PROPOSAL: "Project Proposal Document",
}

PENDING = "Pending"
APPROVED = "Approved"
SUSPENDED = "Suspended"
APPROVAL_STATUSES = (PENDING, APPROVED, SUSPENDED)

# High / medium / low
PRIORITIES = ("Cao", "Trung bình", "Thấp")
DEFAULT_PRIORITY = "Thấp"
NOT_SPECIFIED = "Not specified"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    real_name = Column(String, default="none")
    role = Column(String, default=RoleEnum.SUBMITTER.value, nullable=False, index=True)
    department = Column(String, default="In Training")
    email = Column(String)


class ApprovalStateMixin:
    """Columns shared by everything that walks the approval state machine."""

    status = Column(String, default=PENDING, nullable=False, index=True)
    suspend_reason = Column(String, default="", nullable=False)

    def new_approval_record(self, **fields):
        raise NotImplementedError  # pragma: no cover - interface only


class Document(ApprovalStateMixin, Base):
    __tablename__ = "documents"
    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    tag = Column(String, unique=True, nullable=False)
    title = Column(String, nullable=False)
    name = Column(String)
    content = Column(Text)
    cost_center = Column(String)
    notes = Column(Text, default="")
    submitted_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    submission_date = Column(String, nullable=False)
    file_metadata = Column(JSON, default=list)
    declaration = Column(String, default="", nullable=False)
    group_name = Column(String, index=True)
    group_declaration_name = Column(String, index=True)
    project_name = Column(String, index=True)

    # generic / project proposal content blocks
    sections = Column(JSON, default=list)

    # proposal
    task = Column(String)
    date_of_error = Column(String)
    details_description = Column(Text)
    direction = Column(Text)

    # purchasing / delivery / receipt
    products = Column(JSON, default=list)
    grand_total_cost = Column(Float, default=0.0)
    appended_proposals = Column(JSON, default=list)

    # payment family
    payment_method = Column(String)
    total_payment = Column(Float)
    advance_payment = Column(Float, default=0.0)
    advance_payment_reclaim = Column(Float)
    payment_deadline = Column(String, default=NOT_SPECIFIED)
    extended_payment_deadline = Column(String)
    priority = Column(String, default=DEFAULT_PRIORITY)
    appended_purchasing_documents = Column(JSON, default=list)

    submitted_by = relationship("User", foreign_keys=[submitted_by_id])

    __mapper_args__ = {"polymorphic_on": kind}

    def new_approval_record(self, **fields):
        return ApprovalRecord(**fields)

    @property
    def document_kind(self) -> DocumentKind:
        return DocumentKind(self.kind)

    @property
    def approval_amount(self) -> float:
        """Amount the approval hierarchy is conditioned on."""
        return 0.0

    def to_dict(self) -> dict:
        """Snapshot used when a document is appended to another one."""
        return {
            "id": self.id,
            "kind": self.kind,
            "tag": self.tag,
            "title": self.title,
            "name": self.name,
            "task": self.task,
            "content": self.content,
            "sections": list(self.sections or []),
            "costCenter": self.cost_center,
            "groupName": self.group_name,
            "projectName": self.project_name,
            "declaration": self.declaration,
            "submissionDate": self.submission_date,
            "submittedBy": self.submitted_by_id,
            "fileMetadata": list(self.file_metadata or []),
            "products": list(self.products or []),
            "grandTotalCost": self.grand_total_cost,
            "dateOfError": self.date_of_error,
            "detailsDescription": self.details_description,
            "direction": self.direction,
            "status": self.status,
            "suspendReason": self.suspend_reason,
            "approvers": [
                {
                    "approver": a.user_id,
                    "username": a.username,
                    "subRole": a.sub_role,
                }
                for a in self.approvers
            ],
            "approvedBy": [
                {
                    "user": r.user_id,
                    "username": r.username,
                    "role": r.role,
                    "approvalDate": r.approval_date,
                }
                for r in self.approved_by
            ],
        }


class GenericDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.GENERIC.value}


class ProposalDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.PROPOSAL.value}


class PurchasingDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.PURCHASING.value}


class DeliveryDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.DELIVERY.value}


class ReceiptDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.RECEIPT.value}


class PaymentDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.PAYMENT.value}

    @property
    def approval_amount(self) -> float:
        return self.total_payment or 0.0


class AdvancePaymentDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.ADVANCE_PAYMENT.value}

    @property
    def approval_amount(self) -> float:
        return self.advance_payment or 0.0


class AdvancePaymentReclaimDocument(Document):
    __mapper_args__ = {
        "polymorphic_identity": DocumentKind.ADVANCE_PAYMENT_RECLAIM.value
    }

    @property
    def approval_amount(self) -> float:
        return self.advance_payment_reclaim or 0.0


class ProjectProposalDocument(Document):
    __mapper_args__ = {"polymorphic_identity": DocumentKind.PROJECT_PROPOSAL.value}


DOCUMENT_CLASSES = {
    DocumentKind.GENERIC: GenericDocument,
    DocumentKind.PROPOSAL: ProposalDocument,
    DocumentKind.PURCHASING: PurchasingDocument,
    DocumentKind.DELIVERY: DeliveryDocument,
    DocumentKind.RECEIPT: ReceiptDocument,
    DocumentKind.PAYMENT: PaymentDocument,
    DocumentKind.ADVANCE_PAYMENT: AdvancePaymentDocument,
    DocumentKind.ADVANCE_PAYMENT_RECLAIM: AdvancePaymentReclaimDocument,
    DocumentKind.PROJECT_PROPOSAL: ProjectProposalDocument,
}

# Kinds whose documents may carry independently approved payment stages.
STAGED_KINDS = frozenset(
    {DocumentKind.PAYMENT, DocumentKind.ADVANCE_PAYMENT_RECLAIM}
)


class Approver(Base):
    __tablename__ = "document_approvers"
    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    username = Column(String, nullable=False)
    sub_role = Column(String, nullable=False)

    user = relationship(User)
    document = relationship(Document, back_populates="approvers")
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_document_approver"),
    )


class ApprovalRecord(Base):
    __tablename__ = "document_approvals"
    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    username = Column(String, nullable=False)
    role = Column(String, nullable=False)
    # DD-MM-YYYY HH:mm:ss, Asia/Bangkok
    approval_date = Column(String, nullable=False)

    document = relationship(Document, back_populates="approved_by")
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_document_approval"),
    )

    @property
    def approved_at(self) -> datetime:
        from docflow.timeutil import parse_timestamp

        return parse_timestamp(self.approval_date)


class PaymentStage(ApprovalStateMixin, Base):
    __tablename__ = "payment_stages"
    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    deadline = Column(String)
    priority = Column(String, default=DEFAULT_PRIORITY, nullable=False)
    payment_method = Column(String)
    notes = Column(Text)
    file_metadata = Column(JSON)
    declaration = Column(String, default="")
    group_declaration_name = Column(String)

    document = relationship(Document, back_populates="stages")

    def new_approval_record(self, **fields):
        return StageApprovalRecord(**fields)

    @property
    def approval_amount(self) -> float:
        return self.amount or 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "amount": self.amount,
            "deadline": self.deadline,
            "priority": self.priority,
            "paymentMethod": self.payment_method,
            "notes": self.notes,
            "status": self.status,
            "suspendReason": self.suspend_reason,
            "fileMetadata": self.file_metadata,
            "approvers": [
                {"approver": a.user_id, "username": a.username, "subRole": a.sub_role}
                for a in self.approvers
            ],
            "approvedBy": [
                {
                    "user": r.user_id,
                    "username": r.username,
                    "role": r.role,
                    "approvalDate": r.approval_date,
                }
                for r in self.approved_by
            ],
        }


class StageApprover(Base):
    __tablename__ = "stage_approvers"
    id = Column(Integer, primary_key=True)
    stage_id = Column(Integer, ForeignKey("payment_stages.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    username = Column(String, nullable=False)
    sub_role = Column(String, nullable=False)

    user = relationship(User)
    stage = relationship(PaymentStage, back_populates="approvers")
    __table_args__ = (
        UniqueConstraint("stage_id", "user_id", name="uq_stage_approver"),
    )


class StageApprovalRecord(Base):
    __tablename__ = "stage_approvals"
    id = Column(Integer, primary_key=True)
    stage_id = Column(Integer, ForeignKey("payment_stages.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    username = Column(String, nullable=False)
    role = Column(String, nullable=False)
    approval_date = Column(String, nullable=False)

    stage = relationship(PaymentStage, back_populates="approved_by")
    __table_args__ = (
        UniqueConstraint("stage_id", "user_id", name="uq_stage_approval"),
    )

    @property
    def approved_at(self) -> datetime:
        from docflow.timeutil import parse_timestamp

        return parse_timestamp(self.approval_date)


class Group(Base):
    __tablename__ = "groups"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=False, default="")


class GroupDeclaration(Base):
    __tablename__ = "group_declarations"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=False, default="")
    locked = Column(Boolean, default=False, nullable=False)
    locked_by_id = Column(Integer, ForeignKey("users.id"))
    locked_at = Column(DateTime)

    locked_by = relationship(User)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    message = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    read = Column(Boolean, default=False, nullable=False)

    user = relationship("User")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    document_id = Column(Integer)
    entity_type = Column(String)
    entity_id = Column(Integer)
    action = Column(String, nullable=False)
    payload = Column(JSON)
    at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User")


# establish relationships defined after class declarations
Document.approvers = relationship(
    Approver,
    back_populates="document",
    order_by=Approver.id,
    cascade="all, delete-orphan",
)
Document.approved_by = relationship(
    ApprovalRecord,
    back_populates="document",
    order_by=ApprovalRecord.id,
    cascade="all, delete-orphan",
)
Document.stages = relationship(
    PaymentStage,
    back_populates="document",
    order_by=PaymentStage.position,
    cascade="all, delete-orphan",
)
PaymentStage.approvers = relationship(
    StageApprover,
    back_populates="stage",
    order_by=StageApprover.id,
    cascade="all, delete-orphan",
)
PaymentStage.approved_by = relationship(
    StageApprovalRecord,
    back_populates="stage",
    order_by=StageApprovalRecord.id,
    cascade="all, delete-orphan",
)


def _capture_changes(target):
    state = inspect(target)
    changes: dict[str, dict[str, object]] = {}
    for attr in state.mapper.column_attrs:
        if attr.key in {"id", "kind"}:
            continue
        hist = state.get_history(attr.key, True)
        if hist.has_changes():
            old = hist.deleted[0] if hist.deleted else None
            new = hist.added[0] if hist.added else None
            changes[attr.key] = {"old": old, "new": new}
    return changes


def _insert_audit(connection, **data):
    data.setdefault("at", datetime.utcnow())
    connection.execute(AuditLog.__table__.insert(), [data])


@event.listens_for(Document, "after_insert", propagate=True)
def _log_document_insert(mapper, connection, target):
    _insert_audit(
        connection,
        user_id=target.submitted_by_id,
        document_id=target.id,
        entity_type="Document",
        entity_id=target.id,
        action="create",
        payload={"kind": target.kind, "tag": target.tag, "status": target.status},
    )


@event.listens_for(Document, "after_update", propagate=True)
def _log_document_update(mapper, connection, target):
    changes = _capture_changes(target)
    if changes:
        _insert_audit(
            connection,
            document_id=target.id,
            entity_type="Document",
            entity_id=target.id,
            action="update",
            payload={"changes": changes},
        )


def get_session():
    return SessionLocal()


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_session",
    "RoleEnum",
    "DocumentKind",
    "DOCUMENT_TITLES",
    "DOCUMENT_CLASSES",
    "STAGED_KINDS",
    "PENDING",
    "APPROVED",
    "SUSPENDED",
    "PRIORITIES",
    "User",
    "Document",
    "GenericDocument",
    "ProposalDocument",
    "PurchasingDocument",
    "DeliveryDocument",
    "ReceiptDocument",
    "PaymentDocument",
    "AdvancePaymentDocument",
    "AdvancePaymentReclaimDocument",
    "ProjectProposalDocument",
    "Approver",
    "ApprovalRecord",
    "PaymentStage",
    "StageApprover",
    "StageApprovalRecord",
    "Group",
    "GroupDeclaration",
    "Notification",
    "AuditLog",
]
