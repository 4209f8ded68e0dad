"""Verification and helpful-vote sets on a report.

Both sets hold at most one row per user, guarded by a unique constraint, and
each mutation recomputes the cached count on the report from the rows.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import HelpfulVote, Report, ReportVerification

DEFAULT_VERIFICATION_THRESHOLD = 3


def verification_threshold() -> int:
    return int(current_app.config.get("VERIFICATION_THRESHOLD", DEFAULT_VERIFICATION_THRESHOLD))


def _insert_unique(row) -> bool:
    """Flush a new vote row; a unique-constraint race counts as an existing vote."""
    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.info(
            "Concurrent duplicate vote ignored",
            extra={"vote_table": row.__tablename__, "user_id": str(row.user_id)},
        )
        return False
    return True


def has_verified(report: Report, user_id: str) -> bool:
    return ReportVerification.query.filter_by(report_id=report.id, user_id=user_id).first() is not None


def has_voted_helpful(report: Report, user_id: str) -> bool:
    return HelpfulVote.query.filter_by(report_id=report.id, user_id=user_id).first() is not None


def add_verification(report: Report, user_id: str) -> bool:
    """Record ``user_id`` as a verifier. False, with nothing changed, for the author or a repeat."""
    if str(report.author_id) == str(user_id) or has_verified(report, user_id):
        return False
    if not _insert_unique(ReportVerification(report=report, user_id=user_id)):
        return False
    report.verification_count = ReportVerification.query.filter_by(report_id=report.id).count()
    if report.verification_count >= verification_threshold():
        # One-way: verifiers are never removed, so the flag never reverts.
        report.is_verified = True
    return True


def add_helpful_vote(report: Report, user_id: str) -> bool:
    if has_voted_helpful(report, user_id):
        return False
    if not _insert_unique(HelpfulVote(report=report, user_id=user_id)):
        return False
    report.helpful_count = HelpfulVote.query.filter_by(report_id=report.id).count()
    return True


def remove_helpful_vote(report: Report, user_id: str) -> bool:
    vote = HelpfulVote.query.filter_by(report_id=report.id, user_id=user_id).first()
    if vote is None:
        return False
    report.helpful_voters.remove(vote)
    db.session.flush()
    report.helpful_count = HelpfulVote.query.filter_by(report_id=report.id).count()
    return True
