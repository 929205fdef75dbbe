import os
import tempfile
from pathlib import Path

from flask import Flask, Response, jsonify, request, session
from flask_wtf.csrf import CSRFProtect

from docflow import reports, services
from docflow.attachments import IncomingFile
from docflow.auth import auth_bp, current_user, login_required, roles_required
from docflow.errors import DocflowError, HierarchyBlockedError
from docflow.models import get_session
from docflow.permissions import (
    APPROVE_ROLES,
    EXTEND_DEADLINE_ROLES,
    PRIORITY_ROLES,
    STAGE_APPROVE_ROLES,
    STAGE_CONTROL_ROLES,
)
from docflow.storage import load_backend


# Automatically run database migrations in non-SQLite environments.
def _run_migrations() -> None:
    db_url = os.environ.get("DATABASE_URL", "")
    if db_url.startswith("sqlite"):
        return

    from alembic import command
    from alembic.config import Config

    repo_root = Path(__file__).resolve().parent.parent
    cfg = Config(str(repo_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(repo_root / "alembic"))
    command.upgrade(cfg, "head")


_run_migrations()

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev")
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
)
app.config["SESSION_COOKIE_SECURE"] = (
    os.environ.get("SESSION_COOKIE_SECURE", "true").lower() == "true"
)

CSRFProtect(app)
app.register_blueprint(auth_bp)

# Constructed once; tests replace it with their own backend.
file_store = load_backend()


@app.after_request
def set_security_headers(response):
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.errorhandler(DocflowError)
def handle_docflow_error(error):
    log = app.logger.info if isinstance(error, HierarchyBlockedError) else app.logger.warning
    log(
        "%s %s: path=%s user=%s",
        error.status,
        error.code,
        request.path,
        session.get("user"),
    )
    return jsonify(error.to_dict()), error.status


@app.errorhandler(401)
def handle_unauthorized(error):
    return jsonify(error="UNAUTHORIZED", message="Login required"), 401


@app.errorhandler(403)
def handle_forbidden(error):
    app.logger.warning(
        "403 Forbidden: path=%s user=%s roles=%s reason=%s",
        request.path,
        session.get("user"),
        session.get("roles"),
        getattr(error, "description", ""),
    )
    return jsonify(error="FORBIDDEN", message="Forbidden"), 403


@app.errorhandler(404)
def handle_not_found(error):
    return jsonify(error="NOT_FOUND", message="Not found"), 404


def _payload() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    data = request.form.to_dict()
    for key in ("contentName", "contentText"):
        values = request.form.getlist(key)
        if len(values) > 1:
            data[key] = values
    return data


def _incoming_files(field: str = "files") -> list[IncomingFile]:
    incoming = []
    for storage in request.files.getlist(field):
        if not storage or not storage.filename:
            continue
        fd, path = tempfile.mkstemp(prefix="docflow-")
        os.close(fd)
        storage.save(path)
        incoming.append(IncomingFile(local_path=path, filename=storage.filename))
    return incoming


def _document_json(doc) -> dict:
    data = doc.to_dict()
    if doc.stages:
        data["stages"] = [s.to_dict() for s in doc.stages]
    data.update(
        totalPayment=doc.total_payment,
        advancePayment=doc.advance_payment,
        advancePaymentReclaim=doc.advance_payment_reclaim,
        paymentDeadline=doc.payment_deadline,
        extendedPaymentDeadline=doc.extended_payment_deadline,
        priority=doc.priority,
        paymentMethod=doc.payment_method,
    )
    return data


@app.get("/health")
def health():
    return jsonify(status="ok")


# -- submission -------------------------------------------------------------
@app.post("/api/documents")
@login_required
def api_submit_document():
    payload = _payload()
    files = _incoming_files()
    db = get_session()
    try:
        actor = current_user(db)
        try:
            doc = services.submit_document(
                db, payload.get("kind"), actor, payload, files, file_store
            )
        finally:
            # uploads remove their own temp files; this covers early validation failures
            for incoming in files:
                if os.path.exists(incoming.local_path):
                    os.remove(incoming.local_path)
        return jsonify(_document_json(doc)), 201
    finally:
        db.close()


@app.get("/api/documents/<int:doc_id>")
@login_required
def api_get_document(doc_id):
    db = get_session()
    try:
        return jsonify(_document_json(services.get_document(db, doc_id)))
    finally:
        db.close()


@app.delete("/api/documents/<int:doc_id>")
@login_required
def api_delete_document(doc_id):
    db = get_session()
    try:
        services.delete_document(db, doc_id, current_user(db), file_store)
        return jsonify(status="deleted")
    finally:
        db.close()


# -- approval state ---------------------------------------------------------
@app.post("/api/documents/<int:doc_id>/approve")
@roles_required(*APPROVE_ROLES)
def api_approve_document(doc_id):
    db = get_session()
    try:
        result = services.approve_document(db, doc_id, current_user(db))
        return jsonify(
            status=result.status,
            fully_approved=result.fully_approved,
        )
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/suspend")
@login_required
def api_suspend_document(doc_id):
    data = _payload()
    reason = data.get("suspendReason") or data.get("reason")
    db = get_session()
    try:
        doc = services.suspend_document(db, doc_id, current_user(db), reason)
        return jsonify(status=doc.status, suspend_reason=doc.suspend_reason)
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/open")
@login_required
def api_open_document(doc_id):
    db = get_session()
    try:
        doc = services.open_document(db, doc_id, current_user(db))
        return jsonify(status=doc.status)
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/stages/<int:stage_index>/approve")
@roles_required(*STAGE_APPROVE_ROLES)
def api_approve_stage(doc_id, stage_index):
    db = get_session()
    try:
        result = services.approve_stage(db, doc_id, stage_index, current_user(db))
        return jsonify(
            stage_status=result.stage.status,
            can_approve_document=result.can_approve_document,
        )
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/stages/<int:stage_index>/suspend")
@roles_required(*STAGE_CONTROL_ROLES)
def api_suspend_stage(doc_id, stage_index):
    data = _payload()
    reason = data.get("suspendReason") or data.get("reason")
    db = get_session()
    try:
        stage = services.suspend_stage(db, doc_id, stage_index, current_user(db), reason)
        return jsonify(status=stage.status, suspend_reason=stage.suspend_reason)
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/stages/<int:stage_index>/open")
@roles_required(*STAGE_CONTROL_ROLES)
def api_open_stage(doc_id, stage_index):
    db = get_session()
    try:
        stage = services.open_stage(db, doc_id, stage_index, current_user(db))
        return jsonify(status=stage.status)
    finally:
        db.close()


# -- stage editing ----------------------------------------------------------
@app.put("/api/documents/<int:doc_id>/stages")
@login_required
def api_update_stages(doc_id):
    stages = _payload().get("stages")
    db = get_session()
    try:
        doc = services.update_payment_stages(db, doc_id, current_user(db), stages)
        return jsonify(stages=[s.to_dict() for s in doc.stages])
    finally:
        db.close()


@app.put("/api/documents/<int:doc_id>/stages/<int:stage_index>/approvers")
@login_required
def api_update_stage_approvers(doc_id, stage_index):
    approvers = _payload().get("approvers")
    db = get_session()
    try:
        stage = services.update_stage_approvers(
            db, doc_id, stage_index, current_user(db), approvers
        )
        return jsonify(stage.to_dict())
    finally:
        db.close()


@app.delete("/api/documents/<int:doc_id>/stages/<int:stage_index>/approvers/<int:user_id>")
@login_required
def api_remove_stage_approver(doc_id, stage_index, user_id):
    db = get_session()
    try:
        stage = services.remove_stage_approver(
            db, doc_id, stage_index, current_user(db), user_id
        )
        return jsonify(stage.to_dict())
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/stages/<int:stage_index>/file")
@login_required
def api_upload_stage_file(doc_id, stage_index):
    files = _incoming_files("file")
    if not files:
        return jsonify(error="VALIDATION_ERROR", message="No file uploaded"), 400
    db = get_session()
    try:
        descriptor = services.upload_stage_file(
            db, doc_id, stage_index, current_user(db), files[0], file_store
        )
        return jsonify(descriptor), 201
    finally:
        for incoming in files:
            if os.path.exists(incoming.local_path):
                os.remove(incoming.local_path)
        db.close()


@app.delete("/api/documents/<int:doc_id>/stages/<int:stage_index>/file")
@login_required
def api_remove_stage_file(doc_id, stage_index):
    db = get_session()
    try:
        services.remove_stage_file(db, doc_id, stage_index, current_user(db), file_store)
        return jsonify(status="removed")
    finally:
        db.close()


@app.delete("/api/documents/<int:doc_id>/files/<path:file_id>")
@login_required
def api_delete_document_file(doc_id, file_id):
    db = get_session()
    try:
        services.delete_document_file(db, doc_id, file_id, current_user(db), file_store)
        return jsonify(status="removed")
    finally:
        db.close()


# -- declarations, priority and deadlines -----------------------------------
@app.post("/api/documents/<int:doc_id>/declaration")
@login_required
def api_update_declaration(doc_id):
    declaration = _payload().get("declaration")
    db = get_session()
    try:
        doc = services.update_declaration(db, doc_id, current_user(db), declaration)
        return jsonify(declaration=doc.declaration)
    finally:
        db.close()


@app.post("/api/documents/declaration/mass")
@login_required
def api_mass_update_declaration():
    data = _payload()
    db = get_session()
    try:
        updated = services.mass_update_declaration(
            db,
            data.get("kind"),
            data.get("documentIds"),
            current_user(db),
            data.get("declaration"),
        )
        return jsonify(updated=updated)
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/priority")
@roles_required(*PRIORITY_ROLES)
def api_update_priority(doc_id):
    priority = _payload().get("priority")
    db = get_session()
    try:
        doc = services.update_payment_priority(db, doc_id, current_user(db), priority)
        return jsonify(priority=doc.priority)
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/extend-deadline")
@roles_required(*EXTEND_DEADLINE_ROLES)
def api_extend_deadline(doc_id):
    db = get_session()
    try:
        deadline = services.extend_reclaim_deadline(db, doc_id, current_user(db))
        return jsonify(extended_payment_deadline=deadline)
    finally:
        db.close()


# -- groups -----------------------------------------------------------------
@app.post("/api/documents/<int:doc_id>/group")
@login_required
def api_assign_group(doc_id):
    name = _payload().get("groupName")
    db = get_session()
    try:
        actor = current_user(db)
        if name:
            doc = services.assign_group(db, doc_id, actor, name)
        else:
            doc = services.remove_from_group(db, doc_id, actor)
        return jsonify(group_name=doc.group_name)
    finally:
        db.close()


@app.post("/api/documents/<int:doc_id>/group-declaration")
@login_required
def api_assign_group_declaration(doc_id):
    name = _payload().get("groupDeclarationName")
    db = get_session()
    try:
        actor = current_user(db)
        if name:
            doc = services.assign_group_declaration(db, doc_id, actor, name)
        else:
            doc = services.remove_from_group_declaration(db, doc_id, actor)
        return jsonify(group_declaration_name=doc.group_declaration_name)
    finally:
        db.close()


@app.post("/api/group-declarations/<name>/lock")
@login_required
def api_lock_group_declaration(name):
    db = get_session()
    try:
        group = services.lock_group_declaration(db, name, current_user(db))
        return jsonify(name=group.name, locked=group.locked)
    finally:
        db.close()


@app.post("/api/group-declarations/<name>/unlock")
@login_required
def api_unlock_group_declaration(name):
    db = get_session()
    try:
        group = services.unlock_group_declaration(db, name, current_user(db))
        return jsonify(name=group.name, locked=group.locked)
    finally:
        db.close()


# -- listings and reports ---------------------------------------------------
@app.get("/api/documents/pending")
@login_required
def api_pending_documents():
    db = get_session()
    try:
        return jsonify(reports.pending_summary(db, current_user(db)))
    finally:
        db.close()


@app.get("/api/documents/<kind>/approved")
@login_required
def api_approved_documents(kind):
    db = get_session()
    try:
        docs = services.list_approved(db, kind)
        return jsonify([_document_json(d) for d in docs])
    finally:
        db.close()


@app.get("/reports/<kind>")
@login_required
def report_download(kind):
    fmt = request.args.get("format", "json").lower()
    status = request.args.get("status")
    db = get_session()
    try:
        services.parse_kind(kind)
        if fmt == "json":
            return jsonify(reports.document_report(db, kind, status))
        try:
            content, mime, ext = reports.export_documents(db, kind, fmt, status)
        except ValueError:
            return jsonify(error="unknown report or format"), 400
        return Response(
            content,
            mimetype=mime,
            headers={"Content-Disposition": f"attachment; filename={kind}.{ext}"},
        )
    finally:
        db.close()


if __name__ == "__main__":
    app.run(debug=True)
