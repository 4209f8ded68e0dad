"""The signed-in user's profile, statistics and reports."""
from flask import Blueprint, request
from flask_login import current_user, login_required, logout_user

from extensions import db
from utils import report_service
from utils.decorators import record_audit
from .common import success

users_bp = Blueprint("users", __name__)


@users_bp.route("/me", methods=["GET"])
@login_required
def me():
    return success(current_user.profile_payload())


@users_bp.route("/me", methods=["DELETE"])
@login_required
def delete_me():
    user = current_user._get_current_object()
    user_id = str(user.id)
    report_service.delete_account(user)
    logout_user()
    record_audit("ACCOUNT_DELETED", context_entity=user_id)
    db.session.commit()
    return success(message="Account deleted successfully")


@users_bp.route("/me/stats", methods=["GET"])
@login_required
def my_stats():
    return success(report_service.user_stats(current_user))


@users_bp.route("/me/reports", methods=["GET"])
@login_required
def my_reports():
    data = report_service.list_reports(
        {
            "author_id": current_user.id,
            "type": request.args.get("type"),
            "severity": request.args.get("severity"),
            # Own reports are listed in every status unless narrowed.
            "status": request.args.get("status") or report_service.ALL_STATUSES,
        },
        page=request.args.get("page"),
        limit=request.args.get("limit"),
    )
    return success(data)
