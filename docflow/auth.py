"""Session helpers for the JSON API.

Users are authenticated upstream; the session carries ``user`` (a dict
holding at least ``id``) and ``roles``.  Views only check those values.
"""

from functools import wraps

from flask import Blueprint, abort, jsonify, session

from docflow.models import User, get_session

auth_bp = Blueprint('auth', __name__)


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get('user'):
            abort(401)
        return view(*args, **kwargs)

    return wrapped


def roles_required(*required_roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not session.get('user'):
                abort(401)
            user_roles = session.get('roles', [])
            role_names = [r.value if hasattr(r, 'value') else r for r in required_roles]
            if role_names and not any(r in user_roles for r in role_names):
                abort(403)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def current_user(db) -> User:
    """Load the session's user from ``db`` or abort with 401."""
    data = session.get('user') or {}
    user = db.get(User, data.get('id')) if data.get('id') is not None else None
    if user is None:
        abort(401)
    return user


@auth_bp.get('/api/auth/me')
@login_required
def me():
    db = get_session()
    try:
        user = current_user(db)
        return jsonify(
            id=user.id,
            username=user.username,
            role=user.role,
            roles=session.get('roles', []),
        )
    finally:
        db.close()


@auth_bp.post('/api/auth/logout')
def logout():
    session.clear()
    return jsonify(status='ok')
