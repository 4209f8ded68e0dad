"""Spherical helpers and radius queries."""
from datetime import timedelta

import pytest

from extensions import db
from models import Report, utcnow
from utils.errors import ValidationError
from utils.geo import (
    GeoPoint,
    GeoStore,
    bounding_region,
    haversine_distance,
    round_distance,
    validate_point,
)


class TestDistance:

    def test_same_point_is_zero(self) -> None:
        assert haversine_distance(40.7128, -74.0060, 40.7128, -74.0060) == 0

    def test_new_york_to_los_angeles(self) -> None:
        distance = haversine_distance(40.7128, -74.0060, 34.0522, -118.2437)
        assert distance == pytest.approx(3_936_000, rel=0.01)

    def test_one_hundredth_degree_of_latitude(self) -> None:
        assert haversine_distance(0, 0, 0.01, 0) == pytest.approx(1111.95, abs=0.5)

    def test_rounds_half_up(self) -> None:
        assert round_distance(2.5) == 3
        assert round_distance(2.49) == 2
        assert round_distance(0) == 0


class TestValidatePoint:

    def test_accepts_bounds(self) -> None:
        assert validate_point(90, -180) == GeoPoint(90.0, -180.0)
        assert validate_point("-90", "180") == GeoPoint(-90.0, 180.0)

    @pytest.mark.parametrize(
        "lat, lon, field",
        [(90.1, 0, "latitude"), (0, 180.5, "longitude"), ("north", 0, "latitude"), (0, None, "longitude")],
    )
    def test_rejects_out_of_range(self, lat, lon, field) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_point(lat, lon)
        assert exc_info.value.message == "Invalid coordinates"
        assert [e["field"] for e in exc_info.value.errors] == [field]


class TestBoundingRegion:

    def test_plain_region_has_single_longitude_range(self) -> None:
        region = bounding_region(GeoPoint(40.7128, -74.0060), 5000)
        assert region.min_lat < 40.7128 < region.max_lat
        assert len(region.lon_ranges) == 1
        lo, hi = region.lon_ranges[0]
        assert lo < -74.0060 < hi

    def test_region_near_pole_spans_every_longitude(self) -> None:
        region = bounding_region(GeoPoint(89.99, 10), 5000)
        assert region.lon_ranges is None
        assert region.max_lat == 90.0

    def test_region_across_antimeridian_is_split(self) -> None:
        region = bounding_region(GeoPoint(0, 179.99), 5000)
        assert len(region.lon_ranges) == 2
        (east_lo, east_hi), (west_lo, west_hi) = region.lon_ranges
        assert east_hi == 180.0 and east_lo < 179.99
        assert west_lo == -180.0 and west_hi > -180.0

    def test_huge_radius_covers_the_globe(self) -> None:
        region = bounding_region(GeoPoint(0, 0), 25_000_000)
        assert (region.min_lat, region.max_lat, region.lon_ranges) == (-90.0, 90.0, None)


def _store_report(author, lat, lon, **fields):
    report = Report(
        author_id=author.id,
        report_type=fields.pop("report_type", "hazard"),
        description="Debris blocking the right lane",
        latitude=lat,
        longitude=lon,
        status=fields.pop("status", "active"),
        expires_at=fields.pop("expires_at", utcnow() + timedelta(hours=24)),
    )
    GeoStore().insert(report)
    db.session.commit()
    return report


class TestGeoStore:

    def test_nearby_filters_by_distance_and_activity(self, make_user) -> None:
        author = make_user()
        close = _store_report(author, 40.7138, -74.0060)
        _store_report(author, 40.8128, -74.0060)
        _store_report(author, 40.7129, -74.0060, status="resolved")
        _store_report(author, 40.7130, -74.0060, expires_at=utcnow() - timedelta(minutes=1))

        matches = GeoStore().query_nearby(GeoPoint(40.7128, -74.0060), 5000)

        assert [report.id for report, _ in matches] == [close.id]
        assert matches[0][1] == pytest.approx(111.2, abs=0.5)

    def test_nearby_finds_reports_across_antimeridian(self, make_user) -> None:
        author = make_user()
        west = _store_report(author, 0.0, -179.999)

        matches = GeoStore().query_nearby(GeoPoint(0.0, 179.999), 1000)

        assert [report.id for report, _ in matches] == [west.id]
        assert matches[0][1] < 300

    def test_nearby_finds_reports_over_the_pole(self, make_user) -> None:
        author = make_user()
        far_side = _store_report(author, 89.999, -170.0)

        matches = GeoStore().query_nearby(GeoPoint(89.999, 10.0), 1000)

        assert [report.id for report, _ in matches] == [far_side.id]

    def test_insert_requires_expiry(self, make_user) -> None:
        author = make_user()
        report = Report(
            author_id=author.id,
            report_type="traffic",
            description="Heavy congestion near the bridge",
            latitude=1.0,
            longitude=1.0,
        )
        with pytest.raises(ValidationError) as exc_info:
            GeoStore().insert(report)
        assert {"field": "expiresAt", "message": "expiresAt is required"} in exc_info.value.errors

    def test_count_by_group(self, make_user) -> None:
        author = make_user()
        _store_report(author, 1.0, 1.0, report_type="police")
        _store_report(author, 1.0, 1.0, report_type="police")
        _store_report(author, 1.0, 1.0, report_type="construction")

        assert GeoStore().count_by_group(Report.report_type) == {"police": 2, "construction": 1}
        assert GeoStore().count() == 3
