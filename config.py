"""Environment-aware configuration for the traffic alert API."""
import os
import tempfile
from datetime import timedelta


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class BaseConfig:
    def __init__(self) -> None:
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        # Placeholder hosts (e.g. db_host from an example .env) fall back to SQLite.
        if db_url and "db_host" not in db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'traffic.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
            "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
        }
        self.JSON_SORT_KEYS = False
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "")
        self.API_TOKEN_TTL = timedelta(days=int(os.getenv("API_TOKEN_TTL_DAYS", 7)))

        # Image store
        self.IMAGE_UPLOAD_FOLDER = os.getenv(
            "IMAGE_UPLOAD_FOLDER",
            os.path.join(os.getcwd(), "instance", "report_images"),
        )
        self.IMAGE_BASE_URL = os.getenv("IMAGE_BASE_URL", "/api/uploads")
        self.MAX_IMAGE_UPLOAD_BYTES = int(os.getenv("MAX_FILE_SIZE", 5 * 1024 * 1024))
        self.MAX_IMAGES_PER_REPORT = int(os.getenv("MAX_FILES_PER_REPORT", 5))
        self.MAX_CONTENT_LENGTH = int(os.getenv("MAX_REQUEST_BYTES", 30 * 1024 * 1024))

        # Report lifecycle and verification
        self.REPORT_TTL_HOURS = int(os.getenv("REPORT_TTL_HOURS", 24))
        self.VERIFICATION_THRESHOLD = int(os.getenv("VERIFICATION_THRESHOLD", 3))

        # Listing and nearby queries
        self.NEARBY_DEFAULT_RADIUS = int(os.getenv("NEARBY_DEFAULT_RADIUS", 5000))
        # Unset means no upper bound on the search radius.
        max_radius = os.getenv("NEARBY_MAX_RADIUS")
        self.NEARBY_MAX_RADIUS = int(max_radius) if max_radius else None
        self.REPORTS_PER_PAGE = int(os.getenv("REPORTS_PER_PAGE", 20))
        self.REPORTS_MAX_PAGE_SIZE = int(os.getenv("REPORTS_MAX_PAGE_SIZE", 100))
        self.COMMENTS_PER_PAGE = int(os.getenv("COMMENTS_PER_PAGE", 10))

        # Abuse limits (per user, per process)
        self.COMMENT_RATE_LIMIT = int(os.getenv("COMMENT_RATE_LIMIT", 60))
        self.FLAG_RATE_LIMIT = int(os.getenv("FLAG_RATE_LIMIT", 20))

        # Optional reverse geocoding of report coordinates
        self.GEOCODING_ENABLED = _env_flag("GEOCODING_ENABLED")
        self.GEOCODER_URL = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/reverse")
        self.GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "traffic-alert-api/1.0")
        self.GEOCODER_TIMEOUT = float(os.getenv("GEOCODER_TIMEOUT", 5))


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"
        self.SESSION_COOKIE_SECURE = True
        self.REMEMBER_COOKIE_SECURE = True


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite://")
        # In-memory SQLite uses a static pool that rejects sizing options.
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.WTF_CSRF_ENABLED = False
        self.LOG_LEVEL = "WARNING"
        self.LOG_DIR = os.path.join(tempfile.gettempdir(), "traffic-alert-test-logs")
        self.GEOCODING_ENABLED = False
