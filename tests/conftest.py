"""
Pytest configuration and fixtures for the traffic alert API tests.

Builds a fresh app per test on an in-memory SQLite database with a temporary
image folder, plus factories for users, tokens, images and reports.
"""
import io
import uuid
from datetime import timedelta

import pytest
from PIL import Image
from werkzeug.datastructures import FileStorage

from app import create_app
from extensions import db
from models import Role, User
from utils import report_service
from utils.security import reset_attempts

PASSWORD = "Secret123"


# =============================================================================
# Application
# =============================================================================

@pytest.fixture
def app(tmp_path):
    reset_attempts()
    application = create_app(
        "testing",
        test_config={
            "IMAGE_UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "LOG_DIR": str(tmp_path / "logs"),
        },
    )
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()
    reset_attempts()


@pytest.fixture
def ctx(app):
    """An application context for service-level tests."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def upload_dir(app):
    return app.config["IMAGE_UPLOAD_FOLDER"]


# =============================================================================
# Factory Helpers
# =============================================================================

def png_bytes(color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_upload(filename: str = "photo.png", color: str = "red") -> FileStorage:
    return FileStorage(stream=io.BytesIO(png_bytes(color)), filename=filename, content_type="image/png")


def create_user(name: str = "Alice", role: str = "user", email: str | None = None) -> User:
    user = User(
        name=name,
        email=email or f"{name.lower()}-{uuid.uuid4().hex[:8]}@traffic-alert.org",
        role=Role.get_or_create(role),
        is_active=True,
    )
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.commit()
    return user


def auth_headers(user: User) -> dict:
    token = user.issue_api_token(timedelta(days=1))
    db.session.commit()
    return {"Authorization": f"Bearer {token}"}


def create_report(author: User, **overrides) -> dict:
    fields = {
        "report_type": "accident",
        "severity": "high",
        "description": "Multi-vehicle collision on highway",
        "latitude": 40.7128,
        "longitude": -74.0060,
    }
    fields.update(overrides)
    return report_service.create_report(author, **fields)


@pytest.fixture
def make_user(ctx):
    return create_user


@pytest.fixture
def make_report(ctx):
    return create_report


@pytest.fixture
def api_user(app):
    """A regular user id and bearer headers, created outside any request."""
    with app.app_context():
        user = create_user("Reporter")
        return {"id": user.id, "headers": auth_headers(user)}


@pytest.fixture
def api_other(app):
    with app.app_context():
        user = create_user("Bystander")
        return {"id": user.id, "headers": auth_headers(user)}


@pytest.fixture
def api_admin(app):
    with app.app_context():
        user = create_user("Moderator", role="admin")
        return {"id": user.id, "headers": auth_headers(user)}
