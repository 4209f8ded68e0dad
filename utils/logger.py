"""Rotating application log, stamped with the request and caller behind each line."""
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import g, has_request_context, request
from sqlalchemy import inspect

LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d"
    " | %(http_method)s %(http_path)s | caller=%(caller)s | %(message)s"
)


class RequestContextFilter(logging.Filter):
    """Attach the HTTP method, path and authenticated user id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        method = path = caller = "-"
        if has_request_context():
            method = request.method
            path = request.path
            caller = _caller_id()
        record.http_method = method
        record.http_path = path
        record.caller = caller
        return True


def _caller_id() -> str:
    # Only a user Flask-Login already resolved; loading one here could recurse into logging.
    user = g.get("_login_user")
    if user is None or not getattr(user, "is_authenticated", False):
        return "anonymous"
    # Instance state only; never reloads an expired user.
    identity = inspect(user).identity
    return str(identity[0]) if identity else "anonymous"


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "traffic-alert.log")

    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    context = RequestContextFilter()

    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    stream_handler = logging.StreamHandler()
    for handler in (file_handler, stream_handler):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context)

    logger = logging.getLogger(app.name)
    # The factory may run several times in one process (tests, CLI).
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False

    app.logger.handlers = logger.handlers
    app.logger.setLevel(level)

    logger.info("Logging initialized", extra={"log_path": log_path})
    return logger
