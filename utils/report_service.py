"""Report operations: create, list, nearby, update, delete, votes, comments, flags and stats.

Every function validates its input before touching the session, commits its
own unit of work, and raises ``utils.errors`` exceptions for the API layer to
render.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, Iterable, Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import (
    REPORT_SEVERITIES,
    REPORT_STATUSES,
    REPORT_TYPES,
    AuditLog,
    HelpfulVote,
    Report,
    ReportComment,
    ReportFlag,
    ReportImage,
    ReportStatusHistory,
    ReportVerification,
    User,
    utcnow,
)
from utils import lifecycle, verification
from utils.errors import AuthorizationError, ConflictError, NotFoundError, StorageError, ValidationError
from utils.geo import GeoStore, active_filter, round_distance, validate_point
from utils.geocoding import address_for
from utils.image_utils import delete_images_quietly, get_image_store

ALL_STATUSES = "all"


def _commit(action: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Database error while %s", action)
        raise StorageError(f"Server error while {action}") from exc


def _report_or_404(report_id) -> Report:
    report = db.session.get(Report, str(report_id)) if report_id else None
    if report is None:
        raise NotFoundError("Report not found")
    return report


def _owns(report: Report, actor) -> bool:
    return str(report.author_id) == str(actor.id)


def _bump_user_counter(user_id, column, delta: int) -> None:
    criteria = [User.id == user_id]
    if delta < 0:
        criteria.append(column > 0)
    User.query.filter(*criteria).update({column: column + delta}, synchronize_session="fetch")


def _pagination(page, limit, default_limit: int, max_limit: int) -> tuple[int, int]:
    try:
        page = int(page) if page not in (None, "") else 1
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit) if limit not in (None, "") else default_limit
    except (TypeError, ValueError):
        limit = default_limit
    return max(page, 1), max(1, min(limit, max_limit))


def _page_meta(page: int, limit: int, total: int) -> Dict:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def _check_choice(field: str, value, choices: Iterable[str]) -> None:
    if value and value not in choices:
        raise ValidationError.for_field(field, f"{field.capitalize()} must be one of: " + ", ".join(choices))


def create_report(
    author: User,
    *,
    report_type: str,
    description: str,
    latitude,
    longitude,
    severity: Optional[str] = None,
    address: Optional[str] = None,
    images: Iterable = (),
    metadata: Optional[Dict] = None,
) -> Dict:
    """Validate, store images, persist the report and credit the author.

    Uploaded images are deleted again if any later step fails.
    """
    files = [f for f in images or () if f is not None and getattr(f, "filename", None)]
    max_images = int(current_app.config.get("MAX_IMAGES_PER_REPORT", 5))
    if len(files) > max_images:
        raise ValidationError.for_field("images", f"A report can include at most {max_images} images")

    report = Report(
        author_id=author.id,
        report_type=report_type,
        severity=severity or "medium",
        description=description,
        latitude=latitude,
        longitude=longitude,
        address=address,
        extra_metadata=metadata or {},
    )
    lifecycle.initialize(report)
    if not report.address:
        report.address = address_for(report.latitude, report.longitude)

    store = GeoStore()
    image_store = get_image_store()
    uploaded: list[str] = []
    try:
        for position, file in enumerate(files):
            stored = image_store.upload(file)
            uploaded.append(stored["external_id"])
            report.images.append(
                ReportImage(url=stored["url"], external_id=stored["external_id"], position=position)
            )
        store.insert(report)
        _bump_user_counter(author.id, User.reports_submitted, 1)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        delete_images_quietly(image_store, uploaded, current_app.logger)
        current_app.logger.exception("Database error while creating report")
        raise StorageError("Server error while creating report") from exc
    except Exception:
        db.session.rollback()
        if uploaded:
            delete_images_quietly(image_store, uploaded, current_app.logger)
            current_app.logger.warning(
                "Report creation failed; uploaded images removed",
                extra={"author_id": str(author.id), "images": len(uploaded)},
            )
        raise

    current_app.logger.info(
        "Report created",
        extra={"report_id": str(report.id), "type": report.report_type, "author_id": str(author.id)},
    )
    return report.to_payload()


def list_reports(filters: Dict, page=None, limit=None, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    page, limit = _pagination(
        page,
        limit,
        int(current_app.config.get("REPORTS_PER_PAGE", 20)),
        int(current_app.config.get("REPORTS_MAX_PAGE_SIZE", 100)),
    )
    report_type = filters.get("type") or None
    severity = filters.get("severity") or None
    status = filters.get("status") or "active"
    _check_choice("type", report_type, REPORT_TYPES)
    _check_choice("severity", severity, REPORT_SEVERITIES)
    if status != ALL_STATUSES:
        _check_choice("status", status, REPORT_STATUSES)

    query_filters = {
        "type": report_type,
        "severity": severity,
        "status": None if status == ALL_STATUSES else status,
        "author_id": filters.get("author_id"),
    }
    items, total = GeoStore().query_page(query_filters, page, limit, now=now)
    return {
        "reports": [report.to_payload(now) for report in items],
        "pagination": _page_meta(page, limit, total),
    }


def list_nearby(latitude, longitude, radius=None, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    center = validate_point(latitude, longitude)
    if radius in (None, ""):
        radius = int(current_app.config.get("NEARBY_DEFAULT_RADIUS", 5000))
    try:
        radius = int(float(radius))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError.for_field("radius", "Radius must be a number of meters") from None
    if radius <= 0:
        raise ValidationError.for_field("radius", "Radius must be a positive number of meters")
    max_radius = current_app.config.get("NEARBY_MAX_RADIUS")
    if max_radius and radius > int(max_radius):
        raise ValidationError.for_field("radius", f"Radius must be between 1 and {max_radius} meters")

    matches = GeoStore().query_nearby(center, radius, now=now)
    matches.sort(key=lambda match: match[1])
    reports = []
    for report, distance in matches:
        payload = report.to_payload(now)
        payload["distance"] = round_distance(distance)
        reports.append(payload)
    return {
        "reports": reports,
        "center": {"latitude": center.latitude, "longitude": center.longitude},
        "radius": radius,
    }


def _increment_views(report_id: str) -> None:
    try:
        Report.query.filter(Report.id == report_id).update(
            {Report.views: Report.views + 1}, synchronize_session=False
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("View counter update failed", extra={"report_id": report_id}, exc_info=True)


def get_report(report_id) -> Dict:
    """Report detail; the view counter is bumped after the payload is built."""
    report = _report_or_404(report_id)
    payload = report.to_payload(include_comments=True)
    _increment_views(str(report.id))
    return payload


def update_report(report_id, actor: User, patch: Dict) -> Dict:
    report = _report_or_404(report_id)
    if not _owns(report, actor) and not actor.is_admin:
        raise AuthorizationError("Not authorized to update this report")

    try:
        if patch.get("description"):
            report.description = patch["description"]
        if patch.get("severity"):
            report.severity = patch["severity"]
        if patch.get("status"):
            if actor.is_admin:
                lifecycle.transition(report, patch["status"], actor)
            else:
                current_app.logger.info(
                    "Status change from non-admin ignored",
                    extra={"report_id": str(report.id), "actor_id": str(actor.id)},
                )
    except ValidationError:
        db.session.rollback()
        raise

    _commit("updating report")
    return report.to_payload()


def delete_report(report_id, actor: User) -> None:
    report = _report_or_404(report_id)
    if not _owns(report, actor) and not actor.is_admin:
        raise AuthorizationError("Not authorized to delete this report")

    author_id = report.author_id
    external_ids = [image.external_id for image in report.images]
    failed = delete_images_quietly(get_image_store(), external_ids, current_app.logger)
    db.session.delete(report)
    _bump_user_counter(author_id, User.reports_submitted, -1)
    _commit("deleting report")
    current_app.logger.info(
        "Report deleted",
        extra={"report_id": str(report_id), "actor_id": str(actor.id), "image_failures": len(failed)},
    )


def verify_report(report_id, actor: User) -> Dict:
    report = _report_or_404(report_id)
    if _owns(report, actor):
        raise ConflictError("Cannot verify your own report")

    was_verified = bool(report.is_verified)
    if not verification.add_verification(report, actor.id):
        raise ConflictError("You have already verified this report")
    if report.is_verified and not was_verified:
        _bump_user_counter(report.author_id, User.reports_verified, 1)
    _commit("verifying report")
    return {"verificationCount": report.verification_count, "isVerified": bool(report.is_verified)}


def vote_helpful(report_id, actor: User) -> Dict:
    report = _report_or_404(report_id)
    if not verification.add_helpful_vote(report, actor.id):
        raise ConflictError("You have already marked this report as helpful")
    _bump_user_counter(report.author_id, User.helpful_votes, 1)
    _commit("marking report as helpful")
    return {"helpfulCount": report.helpful_count}


def unvote_helpful(report_id, actor: User) -> Dict:
    report = _report_or_404(report_id)
    if not verification.remove_helpful_vote(report, actor.id):
        raise ConflictError("You have not marked this report as helpful")
    _bump_user_counter(report.author_id, User.helpful_votes, -1)
    _commit("removing helpful vote")
    return {"helpfulCount": report.helpful_count}


def add_comment(report_id, actor: User, text: str) -> Dict:
    comment = ReportComment(user_id=actor.id, text=text)
    report = _report_or_404(report_id)
    report.comments.append(comment)
    _commit("adding comment")
    return comment.to_payload()


def list_comments(report_id, page=None, limit=None) -> Dict:
    report = _report_or_404(report_id)
    page, limit = _pagination(
        page,
        limit,
        int(current_app.config.get("COMMENTS_PER_PAGE", 10)),
        int(current_app.config.get("REPORTS_MAX_PAGE_SIZE", 100)),
    )
    comments = list(report.comments)
    start = (page - 1) * limit
    return {
        "comments": [comment.to_payload() for comment in comments[start:start + limit]],
        "pagination": _page_meta(page, limit, len(comments)),
    }


def delete_comment(report_id, comment_id, actor: User) -> None:
    report = _report_or_404(report_id)
    comment = ReportComment.query.filter_by(id=str(comment_id), report_id=report.id).first()
    if comment is None:
        raise NotFoundError("Comment not found")
    if str(comment.user_id) != str(actor.id) and not actor.is_admin:
        raise AuthorizationError("Not authorized to delete this comment")
    report.comments.remove(comment)
    _commit("deleting comment")


def flag_report(report_id, actor: User, reason: Optional[str] = None) -> Dict:
    """Queue a report for moderation. Status is left alone; admins decide."""
    report = _report_or_404(report_id)
    if ReportFlag.query.filter_by(report_id=report.id, user_id=actor.id).first():
        raise ConflictError("You have already flagged this report")
    flag = ReportFlag(report=report, user_id=actor.id, reason=(reason or "").strip() or None)
    db.session.add(flag)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("You have already flagged this report") from None
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Database error while flagging report")
        raise StorageError("Server error while flagging report") from exc

    current_app.logger.warning(
        "Report flagged",
        extra={"report_id": str(report.id), "actor_id": str(actor.id), "reason": flag.reason},
    )
    return flag.to_payload()


def list_flags(page=None, limit=None) -> Dict:
    page, limit = _pagination(
        page,
        limit,
        int(current_app.config.get("REPORTS_PER_PAGE", 20)),
        int(current_app.config.get("REPORTS_MAX_PAGE_SIZE", 100)),
    )
    pagination = ReportFlag.query.order_by(ReportFlag.created_at.desc()).paginate(
        page=page, per_page=limit, error_out=False
    )
    flags = []
    for flag in pagination.items:
        payload = flag.to_payload()
        payload["report"] = {
            "id": str(flag.report.id),
            "type": flag.report.report_type,
            "status": flag.report.status,
            "description": flag.report.description,
            "flagCount": len(flag.report.flags),
        }
        flags.append(payload)
    return {"flags": flags, "pagination": _page_meta(page, limit, pagination.total)}


def stats_summary(now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    store = GeoStore()
    return {
        "totalReports": store.count(),
        "activeReports": store.count(active_filter(now)),
        "verifiedReports": store.count(Report.is_verified.is_(True)),
        "reportsByType": store.count_by_group(Report.report_type),
    }


def user_stats(user: User, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    store = GeoStore()
    authored = Report.author_id == user.id
    total_helpful = (
        db.session.query(func.coalesce(func.sum(Report.helpful_count), 0)).filter(authored).scalar() or 0
    )
    return {
        "totalReports": store.count(authored),
        "activeReports": store.count(authored, active_filter(now)),
        "verifiedReports": store.count(authored, Report.is_verified.is_(True)),
        "totalHelpfulVotes": int(total_helpful),
        "reportsSubmitted": user.reports_submitted,
        "reportsVerified": user.reports_verified,
        "helpfulVotes": user.helpful_votes,
    }


def reconcile_user_stats() -> int:
    """Recompute every user's counters from their live reports; returns users changed."""
    changed = 0
    for user in User.query.all():
        authored = Report.author_id == user.id
        submitted = Report.query.filter(authored).count()
        verified = Report.query.filter(authored, Report.is_verified.is_(True)).count()
        helpful = (
            db.session.query(func.count(HelpfulVote.id))
            .select_from(HelpfulVote)
            .join(Report, HelpfulVote.report_id == Report.id)
            .filter(authored)
            .scalar()
            or 0
        )
        if (user.reports_submitted, user.reports_verified, user.helpful_votes) != (submitted, verified, helpful):
            user.reports_submitted = submitted
            user.reports_verified = verified
            user.helpful_votes = helpful
            changed += 1
    _commit("reconciling user statistics")
    current_app.logger.info("User statistics reconciled", extra={"users_changed": changed})
    return changed


def delete_account(user: User) -> Dict:
    """Remove a user, their reports and every vote, comment and flag they left.

    Votes on other people's reports are withdrawn so cached counts and author
    counters stay true. A report that already reached the verification
    threshold keeps its verified flag. Images are deleted after the commit,
    one at a time; failures are logged only.
    """
    user_id = user.id
    external_ids = [
        image.external_id
        for image in ReportImage.query.join(Report, ReportImage.report_id == Report.id).filter(Report.author_id == user_id)
    ]

    for vote in HelpfulVote.query.filter_by(user_id=user_id).all():
        report = vote.report
        if str(report.author_id) == str(user_id):
            continue
        verification.remove_helpful_vote(report, user_id)
        _bump_user_counter(report.author_id, User.helpful_votes, -1)

    for row in ReportVerification.query.filter_by(user_id=user_id).all():
        report = row.report
        report.verifications.remove(row)
        db.session.flush()
        report.verification_count = ReportVerification.query.filter_by(report_id=report.id).count()

    ReportComment.query.filter_by(user_id=user_id).delete(synchronize_session="fetch")
    ReportFlag.query.filter_by(user_id=user_id).delete(synchronize_session="fetch")
    ReportStatusHistory.query.filter_by(changed_by=user_id).update({"changed_by": None}, synchronize_session="fetch")
    AuditLog.query.filter_by(user_id=user_id).update({"user_id": None}, synchronize_session="fetch")

    removed = 0
    for report in Report.query.filter_by(author_id=user_id).all():
        db.session.delete(report)
        removed += 1
    try:
        # Reports go first; the author row must outlive them within the flush.
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Database error while deleting account reports")
        raise StorageError("Server error while deleting account") from exc
    db.session.delete(user)
    _commit("deleting account")

    failed = delete_images_quietly(get_image_store(), external_ids, current_app.logger)
    current_app.logger.info(
        "Account deleted",
        extra={"user_id": str(user_id), "reports_removed": removed, "image_failures": len(failed)},
    )
    return {"reportsRemoved": removed, "imageFailures": len(failed)}
