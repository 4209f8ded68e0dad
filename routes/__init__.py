"""Blueprint registration, health check and stored image serving."""
import os

from flask import Blueprint, send_file
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from utils.errors import NotFoundError, StorageError
from utils.image_utils import get_image_store
from .auth import auth_bp
from .common import success
from .reports import reports_bp
from .users import users_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/health", methods=["GET"])
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError("Database unavailable") from exc
    return success({"status": "ok"}, "Service is healthy")


@main_bp.route("/uploads/<string:name>", methods=["GET"])
def uploaded_image(name):
    path = get_image_store().path_for(name)
    if not os.path.isfile(path):
        raise NotFoundError("Image not found")
    return send_file(path, max_age=86400, conditional=True)


__all__ = ["main_bp", "auth_bp", "reports_bp", "users_bp"]
