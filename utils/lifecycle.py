"""Report status state machine and time-to-live handling."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import REPORT_STATUSES, Report, ReportStatusHistory, utcnow
from utils.errors import AuthorizationError, StorageError, ValidationError
from utils.image_utils import delete_images_quietly, get_image_store

DEFAULT_TTL_HOURS = 24


def report_ttl() -> timedelta:
    return timedelta(hours=int(current_app.config.get("REPORT_TTL_HOURS", DEFAULT_TTL_HOURS)))


def initialize(report: Report, now: Optional[datetime] = None) -> Report:
    """Put a new report in its initial state: active and expiring after the TTL."""
    now = now or utcnow()
    report.status = "active"
    report.created_at = report.created_at or now
    report.expires_at = report.created_at + report_ttl()
    return report


def is_active(report: Report, now: Optional[datetime] = None) -> bool:
    return report.is_active_at(now)


def transition(report: Report, new_status: str, actor) -> bool:
    """Move ``report`` to ``new_status`` on behalf of ``actor``.

    Only administrators change status. Returns False when the status is unchanged.
    """
    if not getattr(actor, "is_admin", False):
        raise AuthorizationError("Only administrators can change report status")
    if new_status not in REPORT_STATUSES:
        raise ValidationError.for_field("status", "Status must be one of: " + ", ".join(REPORT_STATUSES))
    if report.status == new_status:
        return False
    db.session.add(
        ReportStatusHistory(
            report=report,
            previous_status=report.status,
            new_status=new_status,
            changed_by=actor.id,
        )
    )
    report.status = new_status
    current_app.logger.info(
        "Report status changed",
        extra={"report_id": str(report.id), "status": new_status, "actor_id": str(actor.id)},
    )
    return True


def sweep_expired(now: Optional[datetime] = None, batch_size: int = 500) -> Dict[str, int]:
    """Delete reports whose ``expires_at`` has passed, with their stored images.

    Runs from cron through ``flask reports-sweep-expired``; request handling
    never assigns the ``expired`` status itself.
    """
    now = now or utcnow()
    store = get_image_store()
    removed = 0
    failed_images = 0
    while True:
        try:
            batch = Report.query.filter(Report.expires_at <= now).limit(batch_size).all()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageError("Storage error while sweeping expired reports") from exc
        if not batch:
            break
        external_ids = [image.external_id for report in batch for image in report.images]
        for report in batch:
            db.session.delete(report)
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Expired report sweep failed")
            raise StorageError("Storage error while sweeping expired reports") from exc
        failed_images += len(delete_images_quietly(store, external_ids, current_app.logger))
        removed += len(batch)

    current_app.logger.info(
        "Expired report sweep completed",
        extra={"removed": removed, "image_failures": failed_images},
    )
    return {"removed": removed, "image_failures": failed_images}
