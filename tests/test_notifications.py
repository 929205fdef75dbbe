from types import SimpleNamespace
from unittest.mock import patch

import pytest

from docflow import notifications
from docflow.models import Notification


def test_notify_user_enqueues_job_with_retry(notify_queue):
    notifications.notify_user(7, "Subject", "Body")
    notify_queue.enqueue.assert_called_once()
    args, kwargs = notify_queue.enqueue.call_args
    assert args == (notifications._send_notification, 7, "Subject", "Body")
    assert kwargs["retry"].max == 3


def test_enqueue_failure_is_logged(notify_queue, caplog):
    notify_queue.enqueue.side_effect = ConnectionError("redis down")
    with caplog.at_level("ERROR", logger="docflow.notifications"):
        notifications.notify_user(7, "Subject", "Body")
    assert "Could not enqueue notification for user 7" in caplog.text


def test_send_notification_stores_row_and_emails(db, make_user, monkeypatch):
    user = make_user("approver", email="a@example.com")
    monkeypatch.setenv("ENABLE_EMAIL_NOTIFIER", "1")
    with patch.object(notifications.EmailNotifier, "send") as send:
        notifications._send_notification(user.id, "Sub", "Body")
    sent_user, subject, body = send.call_args.args
    assert sent_user.email == "a@example.com"
    assert (subject, body) == ("Sub", "Body")
    assert db.query(Notification).filter_by(user_id=user.id).one().message == "Body"


def test_send_notification_errors_propagate_for_retry(make_user, monkeypatch):
    user = make_user("approver", email="a@example.com")
    monkeypatch.setenv("ENABLE_EMAIL_NOTIFIER", "1")
    with patch.object(notifications.EmailNotifier, "send", side_effect=OSError("smtp")):
        with pytest.raises(OSError):
            notifications._send_notification(user.id, "Sub", "Body")


def test_send_notification_unknown_user(db):
    with patch.object(notifications.EmailNotifier, "send") as send:
        notifications._send_notification(12345, "Sub", "Body")
    send.assert_not_called()
    assert db.query(Notification).count() == 0


def test_email_skipped_without_address():
    with patch("docflow.notifications.smtplib.SMTP") as smtp:
        notifications.EmailNotifier().send(SimpleNamespace(email=None), "s", "b")
    smtp.assert_not_called()


def test_templates(notify_queue):
    doc = SimpleNamespace(title="Payment Document", tag="TT01", submitted_by_id=3)
    stage = SimpleNamespace(name="Đợt 1")
    notifications.notify_approval_queue(doc, [1, 2])
    notifications.notify_stage_approval_queue(doc, stage, [4])
    notifications.notify_fully_approved(doc)
    notifications.notify_suspended(doc, "Sai số")

    calls = [c.args[1:] for c in notify_queue.enqueue.call_args_list]
    assert calls == [
        (1, "Document TT01 awaiting approval", "Payment Document TT01 is waiting for your approval."),
        (2, "Document TT01 awaiting approval", "Payment Document TT01 is waiting for your approval."),
        (4, "Payment stage Đợt 1 awaiting approval", "Stage Đợt 1 of TT01 is waiting for your approval."),
        (3, "Document TT01 approved", "Payment Document TT01 has been approved by every approver."),
        (3, "Document TT01 suspended", "Payment Document TT01 was suspended: Sai số"),
    ]


def test_submitterless_documents_are_not_notified(notify_queue):
    doc = SimpleNamespace(title="x", tag="y", submitted_by_id=None)
    notifications.notify_fully_approved(doc)
    notifications.notify_suspended(doc, "r")
    notify_queue.enqueue.assert_not_called()
