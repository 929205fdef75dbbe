"""Create tables and seed an administrator plus the hierarchy approvers.

The administrator's username and email can be configured via the
``INITIAL_ADMIN_USERNAME`` and ``INITIAL_ADMIN_EMAIL`` environment
variables.  Existing users are left untouched apart from their role.
"""

import os


def _get_models():
    """Import and return the models module lazily.

    Importing at call time makes sure the engine configured by the caller
    (``DATABASE_URL``) is the one being seeded.
    """

    from docflow import models

    return models


# One account per role that takes part in the sequential approval hierarchy;
# the reclaim cascade assigns the first deputy director it finds.
HIERARCHY_USERS = (
    ("director", "director"),
    ("deputy_director", "deputyDirector"),
    ("chief_accountant", "captainOfAccounting"),
)


def _ensure_user(session, models, username, role, email=None):
    user = session.query(models.User).filter_by(username=username).first()
    if not user:
        user = models.User(username=username, email=email or f"{username}@example.com")
        session.add(user)
    user.role = role
    return user


def seed_admin_user(session, models) -> None:
    username = os.getenv("INITIAL_ADMIN_USERNAME", "admin")
    email = os.getenv("INITIAL_ADMIN_EMAIL", f"{username}@example.com")
    _ensure_user(session, models, username, models.RoleEnum.SUPER_ADMIN.value, email)


def seed_hierarchy_users(session, models) -> None:
    for username, role in HIERARCHY_USERS:
        _ensure_user(session, models, username, role)


def seed() -> None:
    """Create tables if needed and seed default users."""

    models = _get_models()
    models.Base.metadata.create_all(bind=models.engine)

    session = models.SessionLocal()
    try:
        seed_admin_user(session, models)
        seed_hierarchy_users(session, models)
        session.commit()
    finally:
        session.close()


if __name__ == "__main__":
    seed()
