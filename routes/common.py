"""Request parsing and response envelope shared by the API blueprints."""
import json
import time

from flask import current_app, jsonify, request
from werkzeug.datastructures import CombinedMultiDict, MultiDict

from utils.errors import RateLimitError, ValidationError
from utils.security import track_attempt


def success(data=None, message: str | None = None, status: int = 200):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def form_input() -> MultiDict:
    """Form data for a write, read from a JSON body or a regular form post."""
    if request.is_json:
        return MultiDict({k: str(v) for k, v in json_body().items() if v is not None})
    return request.form


def _as_object(value, field: str) -> dict:
    """Accept a nested object either as JSON or as a JSON-encoded form string."""
    if value in (None, ""):
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            raise ValidationError.for_field(field, f"{field.capitalize()} must be a JSON object") from None
    if not isinstance(value, dict):
        raise ValidationError.for_field(field, f"{field.capitalize()} must be a JSON object")
    return value


def _flatten_location(fields: dict, location: dict) -> None:
    coordinates = location.get("coordinates")
    if isinstance(coordinates, (list, tuple)) and len(coordinates) == 2:
        # GeoJSON order is [longitude, latitude]
        fields.setdefault("longitude", coordinates[0])
        fields.setdefault("latitude", coordinates[1])
    for key in ("latitude", "longitude", "address"):
        if location.get(key) is not None:
            fields.setdefault(key, location[key])


def report_input():
    """Form data for a report write, plus its metadata object.

    JSON bodies and multipart forms are both accepted; ``location`` and
    ``metadata`` may arrive as nested objects or JSON strings.
    """
    if request.is_json:
        payload = json_body()
        fields = {k: v for k, v in payload.items() if k not in ("location", "metadata") and v is not None}
        _flatten_location(fields, _as_object(payload.get("location"), "location"))
        metadata = _as_object(payload.get("metadata"), "metadata")
        formdata = MultiDict({k: str(v) for k, v in fields.items()})
        return formdata, metadata

    fields = {k: v for k, v in request.form.items() if k not in ("location", "metadata")}
    _flatten_location(fields, _as_object(request.form.get("location"), "location"))
    metadata = _as_object(request.form.get("metadata"), "metadata")
    return CombinedMultiDict([MultiDict(fields), request.files]), metadata


def validated(form):
    if not form.validate():
        raise ValidationError.from_form(form)
    return form


def enforce_rate_limit(action: str, user, limit_key: str) -> None:
    """Hourly per-user limit on abuse-prone writes."""
    limit = int(current_app.config.get(limit_key, 60))
    window = int(time.time() // 3600)
    if not track_attempt(f"{action}:{user.id}", limit, window=window):
        current_app.logger.warning("Rate limit exceeded", extra={"action": action, "user_id": str(user.id)})
        raise RateLimitError()
