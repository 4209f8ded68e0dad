"""Security helpers for headers, tokens, passwords and rate limiting."""
import hashlib
import secrets

from flask import request

PASSWORD_MIN_LENGTH = 8


def apply_security_headers(response, force_https: bool = False):
    """Apply headers suitable for a JSON API consumed by mobile and web clients."""
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def bearer_token(req=None) -> str | None:
    req = req or request
    header = req.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    if len(password) < PASSWORD_MIN_LENGTH:
        return False, f"Password must be at least {PASSWORD_MIN_LENGTH} characters long."
    if not any(c.isalpha() for c in password):
        return False, "Include at least one letter."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    return True, None


# Per-process counters; swap for a shared cache when running several workers.
# Maps key -> (window, count); keys from earlier windows are dropped once a newer window is seen.
_attempts = {}
_latest_window = None


def _prune_before(window) -> None:
    stale = [key for key, (seen, _) in _attempts.items() if seen is not None and seen < window]
    for key in stale:
        del _attempts[key]


def track_attempt(key: str, limit: int = 10, window=None):
    """Track attempts by key (e.g. user id + action) and report whether the limit still holds.

    ``window`` identifies the current period (for example the hour number); the count
    restarts when it changes.
    """
    global _latest_window
    if window is not None and (_latest_window is None or window > _latest_window):
        _latest_window = window
        _prune_before(window)
    seen, count = _attempts.get(key, (window, 0))
    if seen != window:
        count = 0
    count += 1
    _attempts[key] = (window, count)
    return count <= limit


def reset_attempts() -> None:
    global _latest_window
    _attempts.clear()
    _latest_window = None
