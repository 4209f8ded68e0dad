"""Spatial storage for reports: inserts, radius queries, paging and grouped counts.

Radius queries run in two stages. The database narrows candidates with the
``(latitude, longitude)`` index using a bounding region computed on the sphere:
near a pole the region becomes a polar cap spanning every longitude, and a
region that crosses the antimeridian is split into two longitude ranges. The
candidates are then filtered with the haversine great-circle distance.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Report, utcnow
from utils.errors import StorageError, ValidationError

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class BoundingRegion:
    min_lat: float
    max_lat: float
    # One or two (min_lon, max_lon) ranges; None means every longitude.
    lon_ranges: Optional[Tuple[Tuple[float, float], ...]]


def validate_point(latitude, longitude) -> GeoPoint:
    errors = []
    try:
        lat = float(latitude)
    except (TypeError, ValueError):
        lat = math.nan
    try:
        lon = float(longitude)
    except (TypeError, ValueError):
        lon = math.nan
    if not math.isfinite(lat) or not -90 <= lat <= 90:
        errors.append({"field": "latitude", "message": "Latitude must be between -90 and 90"})
    if not math.isfinite(lon) or not -180 <= lon <= 180:
        errors.append({"field": "longitude", "message": "Longitude must be between -180 and 180"})
    if errors:
        raise ValidationError("Invalid coordinates", errors=errors)
    return GeoPoint(lat, lon)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def round_distance(meters: float) -> int:
    """Round half up, as clients expect whole metres."""
    return int(math.floor(meters + 0.5))


def bounding_region(center: GeoPoint, radius_m: float) -> BoundingRegion:
    angular = radius_m / EARTH_RADIUS_M
    if angular >= math.pi:
        return BoundingRegion(-90.0, 90.0, None)

    lat = math.radians(center.latitude)
    min_lat = lat - angular
    max_lat = lat + angular
    if max_lat >= math.pi / 2 or min_lat <= -math.pi / 2:
        # The circle contains a pole: every meridian crosses it.
        return BoundingRegion(
            math.degrees(max(min_lat, -math.pi / 2)),
            math.degrees(min(max_lat, math.pi / 2)),
            None,
        )

    delta_lon = math.degrees(math.asin(min(1.0, math.sin(angular) / math.cos(lat))))
    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180:
        ranges = ((min_lon + 360, 180.0), (-180.0, max_lon))
    elif max_lon > 180:
        ranges = ((min_lon, 180.0), (-180.0, max_lon - 360))
    else:
        ranges = ((min_lon, max_lon),)
    return BoundingRegion(math.degrees(min_lat), math.degrees(max_lat), ranges)


def active_filter(now: datetime):
    return and_(Report.status == "active", Report.expires_at > now)


class GeoStore:
    """Report persistence and spatial lookup over the SQLAlchemy session."""

    def __init__(self, session=None) -> None:
        self.session = session or db.session

    def _fail(self, action: str, exc: Exception):
        self.session.rollback()
        current_app.logger.exception("Report storage failure", extra={"action": action})
        raise StorageError(f"Storage error while {action}") from exc

    def insert(self, report: Report) -> Report:
        missing = [
            field
            for field, value in (
                ("author", report.author_id or report.author),
                ("type", report.report_type),
                ("description", report.description),
                ("latitude", report.latitude),
                ("longitude", report.longitude),
                ("expiresAt", report.expires_at),
            )
            if value is None
        ]
        if missing:
            raise ValidationError(
                "Validation error",
                errors=[{"field": field, "message": f"{field} is required"} for field in missing],
            )
        try:
            self.session.add(report)
            self.session.flush()
        except SQLAlchemyError as exc:
            self._fail("saving report", exc)
        return report

    def query_nearby(
        self,
        center: GeoPoint,
        max_distance_m: float,
        now: Optional[datetime] = None,
    ) -> List[Tuple[Report, float]]:
        """Active, unexpired reports within ``max_distance_m``, unordered, with their distance."""
        now = now or utcnow()
        region = bounding_region(center, max_distance_m)
        conditions = [active_filter(now), Report.latitude.between(region.min_lat, region.max_lat)]
        if region.lon_ranges is not None:
            conditions.append(or_(*(Report.longitude.between(lo, hi) for lo, hi in region.lon_ranges)))
        try:
            candidates = Report.query.filter(*conditions).all()
        except SQLAlchemyError as exc:
            self._fail("querying nearby reports", exc)

        matches: List[Tuple[Report, float]] = []
        for report in candidates:
            distance = haversine_distance(center.latitude, center.longitude, report.latitude, report.longitude)
            if distance <= max_distance_m:
                matches.append((report, distance))
        return matches

    def query_page(self, filters: Dict, page: int, limit: int, now: Optional[datetime] = None):
        """Return ``(items, total)`` ordered newest first.

        Recognised filters: ``type``, ``severity``, ``status``, ``author_id``.
        An ``active`` status filter also excludes reports past ``expires_at``.
        """
        now = now or utcnow()
        query = Report.query
        if filters.get("author_id"):
            query = query.filter(Report.author_id == filters["author_id"])
        if filters.get("type"):
            query = query.filter(Report.report_type == filters["type"])
        if filters.get("severity"):
            query = query.filter(Report.severity == filters["severity"])
        if filters.get("status"):
            query = query.filter(Report.status == filters["status"])
            if filters["status"] == "active":
                query = query.filter(Report.expires_at > now)
        try:
            pagination = query.order_by(Report.created_at.desc()).paginate(
                page=page, per_page=limit, error_out=False
            )
        except SQLAlchemyError as exc:
            self._fail("listing reports", exc)
        return pagination.items, pagination.total

    def count_by_group(self, column, *criteria) -> Dict:
        try:
            rows = (
                self.session.query(column, func.count(Report.id))
                .filter(*criteria)
                .group_by(column)
                .all()
            )
        except SQLAlchemyError as exc:
            self._fail("aggregating reports", exc)
        return {key: count for key, count in rows}

    def count(self, *criteria) -> int:
        try:
            return self.session.query(func.count(Report.id)).filter(*criteria).scalar() or 0
        except SQLAlchemyError as exc:
            self._fail("counting reports", exc)
