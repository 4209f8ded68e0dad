"""HTTP surface: envelopes, authentication and the report endpoints."""
import io
import json

import pytest

from conftest import png_bytes

ACCIDENT = {
    "type": "accident",
    "severity": "high",
    "description": "Multi-vehicle collision on highway",
    "location": {"latitude": 40.7128, "longitude": -74.0060, "address": "Broadway, New York"},
    "metadata": {"reportedVia": "mobile", "deviceInfo": "Pixel 8"},
}


def _create(client, headers, **overrides):
    body = dict(ACCIDENT, **overrides)
    resp = client.post("/api/reports", json=body, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"]


class TestEnvelope:

    def test_health(self, client) -> None:
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json() == {"success": True, "message": "Service is healthy", "data": {"status": "ok"}}
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    def test_unknown_route(self, client) -> None:
        resp = client.get("/api/nowhere")
        assert resp.status_code == 404
        assert resp.get_json() == {"success": False, "message": "Route not found"}

    def test_method_not_allowed(self, client) -> None:
        resp = client.patch("/api/reports")
        assert resp.status_code == 405
        assert resp.get_json()["success"] is False

    def test_missing_report(self, client) -> None:
        resp = client.get("/api/reports/does-not-exist")
        assert resp.status_code == 404
        assert resp.get_json() == {"success": False, "message": "Report not found"}


class TestAuthentication:

    def test_register_login_logout(self, client) -> None:
        resp = client.post(
            "/api/auth/register",
            json={"name": "Dana", "email": "Dana@traffic-alert.org", "password": "Secret123"},
        )
        assert resp.status_code == 201
        registered = resp.get_json()["data"]
        assert registered["user"]["email"] == "dana@traffic-alert.org"
        assert registered["user"]["role"] == "user"

        resp = client.post("/api/auth/login", json={"email": "dana@traffic-alert.org", "password": "Secret123"})
        assert resp.status_code == 200
        headers = {"Authorization": f"Bearer {resp.get_json()['data']['token']}"}

        me = client.get("/api/users/me", headers=headers)
        assert me.status_code == 200
        assert me.get_json()["data"]["stats"] == {"reportsSubmitted": 0, "reportsVerified": 0, "helpfulVotes": 0}

        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/users/me", headers=headers).status_code == 401

    def test_duplicate_email_rejected(self, client) -> None:
        body = {"name": "Dana", "email": "dana@traffic-alert.org", "password": "Secret123"}
        assert client.post("/api/auth/register", json=body).status_code == 201
        resp = client.post("/api/auth/register", json=body)
        assert resp.status_code == 400
        assert resp.get_json()["errors"][0]["field"] == "email"

    def test_weak_password_rejected(self, client) -> None:
        resp = client.post(
            "/api/auth/register", json={"name": "Dana", "email": "dana@traffic-alert.org", "password": "password"}
        )
        assert resp.status_code == 400
        assert resp.get_json()["errors"][0]["field"] == "password"

    def test_bad_credentials(self, client, api_user) -> None:
        resp = client.post("/api/auth/login", json={"email": "nobody@traffic-alert.org", "password": "Secret123"})
        assert resp.status_code == 401
        assert resp.get_json()["success"] is False

    def test_writes_require_token(self, client) -> None:
        resp = client.post("/api/reports", json=ACCIDENT)
        assert resp.status_code == 401
        assert resp.get_json() == {"success": False, "message": "Authentication required"}

    def test_garbage_token_rejected(self, client) -> None:
        resp = client.get("/api/users/me", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401


class TestReportEndpoints:

    def test_create_with_json(self, client, api_user) -> None:
        data = _create(client, api_user["headers"])

        assert data["type"] == "accident"
        assert data["status"] == "active"
        assert data["location"]["address"] == "Broadway, New York"
        assert data["metadata"] == {"reportedVia": "mobile", "deviceInfo": "Pixel 8"}
        assert data["user"]["id"] == api_user["id"]

    def test_create_with_geojson_coordinates(self, client, api_user) -> None:
        data = _create(client, api_user["headers"], location={"coordinates": [-74.0060, 40.7128]})
        assert (data["latitude"], data["longitude"]) == (40.7128, -74.0060)

    def test_create_validation_errors(self, client, api_user) -> None:
        resp = client.post(
            "/api/reports",
            json=dict(ACCIDENT, description="Too short", type="meteor"),
            headers=api_user["headers"],
        )
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["success"] is False
        assert {e["field"] for e in body["errors"]} == {"description", "type"}

    def test_create_rejects_unknown_reported_via(self, client, api_user) -> None:
        resp = client.post(
            "/api/reports", json=dict(ACCIDENT, metadata={"reportedVia": "fax"}), headers=api_user["headers"]
        )
        assert resp.status_code == 400

    def test_multipart_with_image(self, client, api_user) -> None:
        resp = client.post(
            "/api/reports",
            data={
                "type": "hazard",
                "description": "Fallen tree across both lanes",
                "location": json.dumps({"latitude": 51.5074, "longitude": -0.1278}),
                "images": [(io.BytesIO(png_bytes()), "tree.png", "image/png")],
            },
            headers=api_user["headers"],
            content_type="multipart/form-data",
        )
        assert resp.status_code == 201, resp.get_json()
        image = resp.get_json()["data"]["images"][0]

        served = client.get(image["url"])
        assert served.status_code == 200
        assert served.mimetype == "image/png"
        assert client.get("/api/uploads/missing.png").status_code == 404

    def test_list_nearby_and_detail(self, client, api_user) -> None:
        created = _create(client, api_user["headers"])

        listing = client.get("/api/reports?type=accident").get_json()["data"]
        assert [r["id"] for r in listing["reports"]] == [created["id"]]

        nearby = client.get("/api/reports/nearby?latitude=40.7128&longitude=-74.0060&radius=1000")
        assert nearby.status_code == 200
        assert nearby.get_json()["data"]["reports"][0]["distance"] == 0

        detail = client.get(f"/api/reports/{created['id']}").get_json()["data"]
        assert detail["id"] == created["id"]
        again = client.get(f"/api/reports/{created['id']}").get_json()["data"]
        assert again["interactions"]["views"] == 1

    def test_nearby_requires_coordinates(self, client) -> None:
        resp = client.get("/api/reports/nearby?latitude=40.7")
        assert resp.status_code == 400
        assert resp.get_json()["errors"][0]["message"] == "Latitude and longitude are required"

    def test_nearby_rejects_out_of_range(self, client) -> None:
        resp = client.get("/api/reports/nearby?latitude=95&longitude=0")
        assert resp.status_code == 400
        assert resp.get_json()["message"] == "Invalid coordinates"

    def test_nearby_accepts_regional_radius(self, client, api_user) -> None:
        created = _create(client, api_user["headers"])
        resp = client.get("/api/reports/nearby?latitude=39.9526&longitude=-75.1652&radius=200000")
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["radius"] == 200000
        assert [r["id"] for r in data["reports"]] == [created["id"]]

    def test_owner_update_ignores_status(self, client, api_user) -> None:
        created = _create(client, api_user["headers"])
        resp = client.put(
            f"/api/reports/{created['id']}",
            json={"status": "resolved", "severity": "low"},
            headers=api_user["headers"],
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert (data["status"], data["severity"]) == ("active", "low")

    def test_admin_update_changes_status(self, client, api_user, api_admin) -> None:
        created = _create(client, api_user["headers"])
        resp = client.put(f"/api/reports/{created['id']}", json={"status": "resolved"}, headers=api_admin["headers"])
        assert resp.get_json()["data"]["status"] == "resolved"

    def test_only_owner_or_admin_can_delete(self, client, api_user, api_other) -> None:
        created = _create(client, api_user["headers"])
        assert client.delete(f"/api/reports/{created['id']}", headers=api_other["headers"]).status_code == 403
        assert client.delete(f"/api/reports/{created['id']}", headers=api_user["headers"]).status_code == 200
        assert client.get(f"/api/reports/{created['id']}").status_code == 404

    def test_verify_and_helpful(self, client, api_user, api_other) -> None:
        created = _create(client, api_user["headers"])
        url = f"/api/reports/{created['id']}"

        own = client.post(f"{url}/verify", headers=api_user["headers"])
        assert own.status_code == 400
        assert own.get_json()["message"] == "Cannot verify your own report"

        verified = client.post(f"{url}/verify", headers=api_other["headers"])
        assert verified.get_json()["data"] == {"verificationCount": 1, "isVerified": False}
        assert client.post(f"{url}/verify", headers=api_other["headers"]).status_code == 400

        assert client.post(f"{url}/helpful", headers=api_other["headers"]).get_json()["data"] == {"helpfulCount": 1}
        assert client.delete(f"{url}/helpful", headers=api_other["headers"]).get_json()["data"] == {"helpfulCount": 0}
        assert client.delete(f"{url}/helpful", headers=api_other["headers"]).status_code == 400

    def test_comments(self, client, api_user, api_other) -> None:
        created = _create(client, api_user["headers"])
        url = f"/api/reports/{created['id']}/comments"

        added = client.post(url, json={"text": "Great"}, headers=api_other["headers"])
        assert added.status_code == 201
        comment_id = added.get_json()["data"]["id"]

        too_long = client.post(url, json={"text": "x" * 201}, headers=api_other["headers"])
        assert too_long.status_code == 400

        listing = client.get(url).get_json()["data"]
        assert [c["text"] for c in listing["comments"]] == ["Great"]

        assert client.delete(f"{url}/{comment_id}", headers=api_user["headers"]).status_code == 403
        assert client.delete(f"{url}/{comment_id}", headers=api_other["headers"]).status_code == 200

    def test_comment_rate_limit(self, app, client, api_user) -> None:
        app.config["COMMENT_RATE_LIMIT"] = 2
        created = _create(client, api_user["headers"])
        url = f"/api/reports/{created['id']}/comments"

        statuses = [client.post(url, json={"text": f"Update {i}"}, headers=api_user["headers"]).status_code for i in range(3)]

        assert statuses == [201, 201, 429]

    def test_comment_limit_resets_next_hour(self, app, client, api_user, monkeypatch) -> None:
        from routes import common
        from utils import security

        app.config["COMMENT_RATE_LIMIT"] = 1
        created = _create(client, api_user["headers"])
        url = f"/api/reports/{created['id']}/comments"
        clock = {"now": 7200.0}
        monkeypatch.setattr(common.time, "time", lambda: clock["now"])

        assert client.post(url, json={"text": "First"}, headers=api_user["headers"]).status_code == 201
        assert client.post(url, json={"text": "Second"}, headers=api_user["headers"]).status_code == 429

        clock["now"] += 3600
        assert client.post(url, json={"text": "Third"}, headers=api_user["headers"]).status_code == 201
        assert list(security._attempts.values()) == [(3, 1)]

    def test_flags_and_moderation_queue(self, client, api_user, api_other, api_admin) -> None:
        created = _create(client, api_user["headers"])

        flagged = client.post(f"/api/reports/{created['id']}/flag", json={"reason": "Fake"}, headers=api_other["headers"])
        assert flagged.status_code == 201
        assert client.post(f"/api/reports/{created['id']}/flag", headers=api_other["headers"]).status_code == 400

        assert client.get("/api/reports/flags", headers=api_user["headers"]).status_code == 403
        queue = client.get("/api/reports/flags", headers=api_admin["headers"])
        assert queue.status_code == 200
        assert queue.get_json()["data"]["flags"][0]["reason"] == "Fake"

    def test_stats_and_user_reports(self, client, api_user) -> None:
        _create(client, api_user["headers"])
        _create(client, api_user["headers"], type="police")

        stats = client.get("/api/reports/stats/summary").get_json()["data"]
        assert stats["totalReports"] == 2
        assert stats["reportsByType"] == {"accident": 1, "police": 1}

        mine = client.get("/api/users/me/reports", headers=api_user["headers"]).get_json()["data"]
        assert mine["pagination"]["total"] == 2

        my_stats = client.get("/api/users/me/stats", headers=api_user["headers"]).get_json()["data"]
        assert my_stats["reportsSubmitted"] == 2


def test_delete_account_revokes_access(client, api_user, api_other) -> None:
    created = _create(client, api_user["headers"])
    client.post(f"/api/reports/{created['id']}/helpful", headers=api_other["headers"])

    resp = client.delete("/api/users/me", headers=api_user["headers"])

    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "message": "Account deleted successfully"}
    assert client.get("/api/users/me", headers=api_user["headers"]).status_code == 401
    assert client.get(f"/api/reports/{created['id']}").status_code == 404
    assert client.get("/api/users/me", headers=api_other["headers"]).status_code == 200


@pytest.mark.parametrize("path", ["/api/users/me", "/api/users/me/stats", "/api/users/me/reports"])
def test_user_endpoints_require_auth(client, path) -> None:
    assert client.get(path).status_code == 401
