"""Notification dispatch and queue integration.

Approvers are told when a document is waiting for them, and submitters when
their document is fully approved or suspended.  Messages are queued on RQ so
that approval requests never block on SMTP; :func:`_send_notification` runs
in the worker, stores a :class:`~docflow.models.Notification` row and emails
the user.  Failed jobs are retried up to three times.

Queueing failures are logged and swallowed: a notification is never allowed
to fail the workflow action that triggered it.
"""

from __future__ import annotations

import logging
import os
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Iterable, Tuple

from redis import Redis
from rq import Queue, Retry
from sqlalchemy.orm import sessionmaker

from docflow.models import Notification, User, engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queue configuration
# ---------------------------------------------------------------------------

# Tests monkeypatch this queue with a mock.
redis_conn = Redis(
    host=os.getenv("REDIS_HOST", "localhost"),
    port=int(os.getenv("REDIS_PORT", "6379")),
    db=int(os.getenv("REDIS_DB", "0")),
    password=os.getenv("REDIS_PASSWORD"),
)
queue: Queue = Queue("notifications", connection=redis_conn)


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------

class Notifier(ABC):
    """Base class for notification backends."""

    def prepare_message(
        self, subject_template: str, body_template: str, **context: str
    ) -> Tuple[str, str]:
        return subject_template.format(**context), body_template.format(**context)

    @abstractmethod
    def send(self, user: User, subject: str, body: str) -> None:
        """Send a notification to ``user``."""


class EmailNotifier(Notifier):
    """Send notifications via SMTP."""

    def __init__(self) -> None:
        self.server = os.getenv("SMTP_SERVER", "localhost")
        self.port = int(os.getenv("SMTP_PORT", "25"))
        self.sender = os.getenv("SMTP_SENDER", "noreply@example.com")

    def send(self, user: User, subject: str, body: str) -> None:
        if not getattr(user, "email", None):
            return
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = user.email
        msg.set_content(body)
        with smtplib.SMTP(self.server, self.port) as smtp:
            smtp.send_message(msg)


def _email_enabled() -> bool:
    return os.getenv("ENABLE_EMAIL_NOTIFIER", "1") in ("1", "true", "True")


# ---------------------------------------------------------------------------
# Notification job
# ---------------------------------------------------------------------------

def _send_notification(user_id: int, subject: str, body: str) -> None:
    """Job function executed by the worker to deliver a notification."""

    Session = sessionmaker(bind=engine, expire_on_commit=False)
    session = Session()
    try:
        user = session.get(User, user_id)
        if user is None:
            logger.warning("Dropping notification for unknown user %s", user_id)
            return
        session.add(Notification(user_id=user_id, message=body))
        session.commit()
        session.expunge(user)
    finally:
        session.close()

    if _email_enabled():
        # errors propagate so RQ retries the job
        EmailNotifier().send(user, subject, body)


def notify_user(user_id: int, subject: str, body: str) -> None:
    """Enqueue a notification for asynchronous delivery."""

    try:
        queue.enqueue(_send_notification, user_id, subject, body, retry=Retry(max=3))
    except Exception:
        logger.exception("Could not enqueue notification for user %s", user_id)


# ---------------------------------------------------------------------------
# Higher level helpers with simple templates
# ---------------------------------------------------------------------------

_TEMPLATES = {
    "approval_queue": (
        "Document {tag} awaiting approval",
        "{title} {tag} is waiting for your approval.",
    ),
    "stage_approval_queue": (
        "Payment stage {stage} awaiting approval",
        "Stage {stage} of {tag} is waiting for your approval.",
    ),
    "fully_approved": (
        "Document {tag} approved",
        "{title} {tag} has been approved by every approver.",
    ),
    "suspended": (
        "Document {tag} suspended",
        "{title} {tag} was suspended: {reason}",
    ),
}


def _render(template_key: str, **context: str) -> Tuple[str, str]:
    subject_t, body_t = _TEMPLATES[template_key]
    return EmailNotifier().prepare_message(subject_t, body_t, **context)


def notify_approval_queue(doc, user_ids: Iterable[int]) -> None:
    subject, body = _render("approval_queue", title=doc.title, tag=doc.tag)
    for uid in user_ids:
        notify_user(uid, subject, body)


def notify_stage_approval_queue(doc, stage, user_ids: Iterable[int]) -> None:
    subject, body = _render("stage_approval_queue", tag=doc.tag, stage=stage.name)
    for uid in user_ids:
        notify_user(uid, subject, body)


def notify_fully_approved(doc) -> None:
    if doc.submitted_by_id is None:
        return
    subject, body = _render("fully_approved", title=doc.title, tag=doc.tag)
    notify_user(doc.submitted_by_id, subject, body)


def notify_suspended(doc, reason: str) -> None:
    if doc.submitted_by_id is None:
        return
    subject, body = _render("suspended", title=doc.title, tag=doc.tag, reason=reason)
    notify_user(doc.submitted_by_id, subject, body)
