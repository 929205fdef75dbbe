from datetime import datetime

from sqlalchemy.orm import sessionmaker

from docflow.models import AuditLog, engine


def log_action(
    user_id=None,
    document_id=None,
    action=None,
    *,
    entity_type=None,
    entity_id=None,
    payload=None,
    session=None,
):
    """Persist an audit log entry.

    When ``session`` is given the entry joins that session's transaction so
    it is committed (or rolled back) together with the change it describes.
    """
    if entity_type is None and entity_id is None and document_id is not None:
        entity_type = "Document"
        entity_id = document_id

    data = {
        "user_id": user_id,
        "document_id": document_id,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "payload": payload,
        "at": datetime.utcnow(),
    }

    if session is not None:
        session.add(AuditLog(**data))
        return

    Session = sessionmaker(bind=engine)
    own = Session()
    try:
        own.execute(AuditLog.__table__.insert(), [data])
        own.commit()
    finally:
        own.close()
