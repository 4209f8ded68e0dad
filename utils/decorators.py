"""Authorization decorators and audit helpers for the JSON API."""
from functools import wraps

from flask import current_app, request
from flask_login import current_user, login_required

from extensions import db
from models import AuditLog
from utils.errors import AuthorizationError


def record_audit(action_type: str, user=None, context_entity: str | None = None) -> AuditLog:
    """Stage an audit row for the current request; the caller commits."""
    audit = AuditLog(
        user_id=user.id if user is not None and getattr(user, "is_authenticated", False) else None,
        action_type=action_type,
        ip_address=request.remote_addr,
        user_agent=(request.headers.get("User-Agent") or "unknown")[:255],
        context_entity=context_entity,
    )
    db.session.add(audit)
    return audit


def roles_required(*roles):
    allowed = {r.lower() for r in roles}

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            if current_user.role_name in allowed:
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": current_user.role_name, "path": request.path},
            )
            record_audit("UNAUTHORIZED_ACCESS", current_user, request.path)
            db.session.commit()
            raise AuthorizationError("Admin access required")

        return wrapped

    return decorator
