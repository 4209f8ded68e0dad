"""Traffic report endpoints: CRUD, nearby search, votes, comments, flags and stats."""
from flask import Blueprint, request
from flask_login import current_user, login_required
from flask_wtf import FlaskForm
from flask_wtf.file import MultipleFileField
from wtforms import FloatField, IntegerField, StringField
from wtforms.validators import AnyOf, DataRequired, InputRequired, Length, NumberRange, Optional

from extensions import db
from models import (
    ADDRESS_MAX_LENGTH,
    COMMENT_MAX_LENGTH,
    DESCRIPTION_MAX_LENGTH,
    DESCRIPTION_MIN_LENGTH,
    FLAG_REASON_MAX_LENGTH,
    REPORT_SEVERITIES,
    REPORT_STATUSES,
    REPORT_TYPES,
    REPORTED_VIA,
)
from utils import report_service
from utils.decorators import record_audit, roles_required
from utils.errors import ValidationError
from .common import enforce_rate_limit, form_input, report_input, success, validated

reports_bp = Blueprint("reports", __name__)


def _strip(value):
    return value.strip() if isinstance(value, str) else value


def _one_of(choices, label):
    return AnyOf(choices, message=f"{label} must be one of: " + ", ".join(choices))


class ReportCreateForm(FlaskForm):
    class Meta:
        csrf = False

    type = StringField("Type", validators=[DataRequired(message="Report type is required"), _one_of(REPORT_TYPES, "Report type")])
    severity = StringField("Severity", validators=[Optional(), _one_of(REPORT_SEVERITIES, "Severity")])
    description = StringField(
        "Description",
        filters=[_strip],
        validators=[
            DataRequired(message="Description is required"),
            Length(
                min=DESCRIPTION_MIN_LENGTH,
                max=DESCRIPTION_MAX_LENGTH,
                message=f"Description must be between {DESCRIPTION_MIN_LENGTH} and {DESCRIPTION_MAX_LENGTH} characters",
            ),
        ],
    )
    latitude = FloatField(
        "Latitude",
        validators=[InputRequired(message="Latitude is required"), NumberRange(min=-90, max=90, message="Latitude must be between -90 and 90")],
    )
    longitude = FloatField(
        "Longitude",
        validators=[InputRequired(message="Longitude is required"), NumberRange(min=-180, max=180, message="Longitude must be between -180 and 180")],
    )
    address = StringField("Address", filters=[_strip], validators=[Optional(), Length(max=ADDRESS_MAX_LENGTH)])
    images = MultipleFileField("Images")


class ReportUpdateForm(FlaskForm):
    class Meta:
        csrf = False

    description = StringField(
        "Description",
        filters=[_strip],
        validators=[
            Optional(),
            Length(
                min=DESCRIPTION_MIN_LENGTH,
                max=DESCRIPTION_MAX_LENGTH,
                message=f"Description must be between {DESCRIPTION_MIN_LENGTH} and {DESCRIPTION_MAX_LENGTH} characters",
            ),
        ],
    )
    severity = StringField("Severity", validators=[Optional(), _one_of(REPORT_SEVERITIES, "Severity")])
    status = StringField("Status", validators=[Optional(), _one_of(REPORT_STATUSES, "Status")])


class NearbyQueryForm(FlaskForm):
    class Meta:
        csrf = False

    latitude = FloatField("Latitude", validators=[InputRequired(message="Latitude and longitude are required")])
    longitude = FloatField("Longitude", validators=[InputRequired(message="Latitude and longitude are required")])
    radius = IntegerField("Radius", validators=[Optional()])


class CommentForm(FlaskForm):
    class Meta:
        csrf = False

    text = StringField(
        "Text",
        filters=[_strip],
        validators=[
            DataRequired(message="Comment text is required"),
            Length(max=COMMENT_MAX_LENGTH, message=f"Comment cannot exceed {COMMENT_MAX_LENGTH} characters"),
        ],
    )


class FlagForm(FlaskForm):
    class Meta:
        csrf = False

    reason = StringField("Reason", filters=[_strip], validators=[Optional(), Length(max=FLAG_REASON_MAX_LENGTH)])


def _clean_metadata(metadata: dict) -> dict:
    cleaned = {}
    reported_via = metadata.get("reportedVia")
    if reported_via is not None:
        if reported_via not in REPORTED_VIA:
            raise ValidationError.for_field("metadata.reportedVia", "reportedVia must be one of: " + ", ".join(REPORTED_VIA))
        cleaned["reportedVia"] = reported_via
    for key in ("deviceInfo", "weatherConditions"):
        if metadata.get(key) is not None:
            cleaned[key] = str(metadata[key])[:255]
    return cleaned


@reports_bp.route("", methods=["POST"])
@login_required
def create_report():
    formdata, metadata = report_input()
    form = validated(ReportCreateForm(formdata=formdata))
    payload = report_service.create_report(
        current_user,
        report_type=form.type.data,
        severity=form.severity.data or None,
        description=form.description.data,
        latitude=form.latitude.data,
        longitude=form.longitude.data,
        address=form.address.data or None,
        images=form.images.data or [],
        metadata=_clean_metadata(metadata),
    )
    record_audit("REPORT_CREATE", current_user, payload["id"])
    db.session.commit()
    return success(payload, "Report created successfully", 201)


@reports_bp.route("", methods=["GET"])
def list_reports():
    data = report_service.list_reports(
        {
            "type": request.args.get("type"),
            "severity": request.args.get("severity"),
            "status": request.args.get("status"),
        },
        page=request.args.get("page"),
        limit=request.args.get("limit"),
    )
    return success(data)


@reports_bp.route("/nearby", methods=["GET"])
def nearby_reports():
    form = validated(NearbyQueryForm(formdata=request.args))
    data = report_service.list_nearby(form.latitude.data, form.longitude.data, form.radius.data)
    return success(data)


@reports_bp.route("/stats/summary", methods=["GET"])
def stats_summary():
    return success(report_service.stats_summary())


@reports_bp.route("/flags", methods=["GET"])
@roles_required("admin")
def list_flags():
    return success(report_service.list_flags(request.args.get("page"), request.args.get("limit")))


@reports_bp.route("/<string:report_id>", methods=["GET"])
def get_report(report_id):
    return success(report_service.get_report(report_id))


@reports_bp.route("/<string:report_id>", methods=["PUT"])
@login_required
def update_report(report_id):
    form = validated(ReportUpdateForm(formdata=form_input()))
    patch = {
        "description": form.description.data or None,
        "severity": form.severity.data or None,
        "status": form.status.data or None,
    }
    payload = report_service.update_report(report_id, current_user, patch)
    if patch["status"] and current_user.is_admin:
        record_audit("REPORT_STATUS_CHANGE", current_user, report_id)
        db.session.commit()
    return success(payload, "Report updated successfully")


@reports_bp.route("/<string:report_id>", methods=["DELETE"])
@login_required
def delete_report(report_id):
    report_service.delete_report(report_id, current_user)
    record_audit("REPORT_DELETE", current_user, report_id)
    db.session.commit()
    return success(message="Report deleted successfully")


@reports_bp.route("/<string:report_id>/verify", methods=["POST"])
@login_required
def verify_report(report_id):
    data = report_service.verify_report(report_id, current_user)
    return success(data, "Report verified successfully")


@reports_bp.route("/<string:report_id>/helpful", methods=["POST"])
@login_required
def vote_helpful(report_id):
    data = report_service.vote_helpful(report_id, current_user)
    return success(data, "Marked as helpful")


@reports_bp.route("/<string:report_id>/helpful", methods=["DELETE"])
@login_required
def unvote_helpful(report_id):
    data = report_service.unvote_helpful(report_id, current_user)
    return success(data, "Helpful vote removed")


@reports_bp.route("/<string:report_id>/comments", methods=["POST"])
@login_required
def add_comment(report_id):
    form = validated(CommentForm(formdata=form_input()))
    enforce_rate_limit("comment", current_user, "COMMENT_RATE_LIMIT")
    comment = report_service.add_comment(report_id, current_user, form.text.data)
    return success(comment, "Comment added successfully", 201)


@reports_bp.route("/<string:report_id>/comments", methods=["GET"])
def list_comments(report_id):
    data = report_service.list_comments(report_id, request.args.get("page"), request.args.get("limit"))
    return success(data)


@reports_bp.route("/<string:report_id>/comments/<string:comment_id>", methods=["DELETE"])
@login_required
def delete_comment(report_id, comment_id):
    report_service.delete_comment(report_id, comment_id, current_user)
    return success(message="Comment deleted successfully")


@reports_bp.route("/<string:report_id>/flag", methods=["POST"])
@login_required
def flag_report(report_id):
    form = validated(FlagForm(formdata=form_input()))
    enforce_rate_limit("flag", current_user, "FLAG_RATE_LIMIT")
    flag = report_service.flag_report(report_id, current_user, form.reason.data)
    record_audit("REPORT_FLAG", current_user, report_id)
    db.session.commit()
    return success(flag, "Report flagged for review", 201)
