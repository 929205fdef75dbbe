import itertools
import os
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))

# Configure the application before any docflow module is imported.
db_path = repo_root / "test.db"
if db_path.exists():
    db_path.unlink()
os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
os.environ["STORAGE__TYPE"] = "fs"
os.environ.setdefault("STORAGE__FS_PATH", str(repo_root / ".test-files"))
os.environ["ENABLE_EMAIL_NOTIFIER"] = "0"
os.environ["SESSION_COOKIE_SECURE"] = "false"

from sqlalchemy.orm import sessionmaker  # noqa: E402

from docflow import models, timeutil  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def setup_database():
    models.Base.metadata.create_all(bind=models.engine)
    yield
    models.Base.metadata.drop_all(bind=models.engine)


@pytest.fixture(autouse=True)
def reset_database():
    models.SessionLocal.remove()
    models.Base.metadata.drop_all(bind=models.engine)
    models.Base.metadata.create_all(bind=models.engine)
    yield
    models.SessionLocal.remove()


@pytest.fixture(autouse=True)
def notify_queue(monkeypatch):
    """Replace the RQ queue so nothing talks to Redis."""
    from docflow import notifications

    queue = MagicMock()
    monkeypatch.setattr(notifications, "queue", queue)
    return queue


@pytest.fixture()
def db():
    # Separate from the scoped session the Flask views use, so objects held
    # by a test survive requests made through the test client.
    Session = sessionmaker(bind=models.engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture()
def make_user(db):
    counter = itertools.count(1)

    def _make(role="approver", username=None, email=None):
        role = getattr(role, "value", role)
        user = models.User(
            username=username or f"{role}_{next(counter)}",
            role=role,
            email=email,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def make_document(db):
    """Create a Pending document directly, bypassing submission checks.

    ``stages`` is a list of dicts with ``name``, ``amount`` and ``approvers``.
    """
    counter = itertools.count(1)

    def _make(kind=models.DocumentKind.GENERIC, approvers=(), submitter=None, stages=(), **fields):
        kind = models.DocumentKind(kind)
        doc = models.DOCUMENT_CLASSES[kind](
            tag=fields.pop("tag", f"{kind.value}_{next(counter)}"),
            title=fields.pop("title", models.DOCUMENT_TITLES[kind]),
            submission_date=timeutil.format_timestamp(),
            submitted_by_id=submitter.id if submitter else None,
            status=models.PENDING,
            suspend_reason="",
            declaration="",
            **fields,
        )
        for user in approvers:
            doc.approvers.append(
                models.Approver(user_id=user.id, username=user.username, sub_role="Duyệt")
            )
        for position, spec in enumerate(stages):
            stage = models.PaymentStage(
                position=position,
                name=spec["name"],
                amount=spec["amount"],
                deadline=spec.get("deadline", "01-01-2030"),
                priority=spec.get("priority", models.DEFAULT_PRIORITY),
                status=models.PENDING,
                suspend_reason="",
            )
            for user in spec.get("approvers", ()):
                stage.approvers.append(
                    models.StageApprover(user_id=user.id, username=user.username, sub_role="Duyệt")
                )
            doc.stages.append(stage)
        db.add(doc)
        db.commit()
        return doc

    return _make


@pytest.fixture()
def file_store(tmp_path):
    from docflow.storage import FSBackend

    return FSBackend(base_path=str(tmp_path / "store"), public_url="/fs")


@pytest.fixture()
def app(file_store, monkeypatch):
    from docflow import app as app_module

    app_module.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    monkeypatch.setattr(app_module, "file_store", file_store)
    return app_module.app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user"] = {"id": user.id, "name": user.username}
            sess["roles"] = [user.role]

    return _login
