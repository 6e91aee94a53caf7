"""
JSON endpoint helpers shared by every module blueprint.

Envelope:
    success -> {"success": true, "message": ..., "data": ...}
    error   -> {"success": false, "error": "..."}
    422     -> {"success": false, "error": "Validation failed", "errors": {field: [...]}}
"""
from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from functools import wraps
from typing import Any

from flask import g, jsonify, request

from app.erp.db import db_session

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ApiError(ValueError):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class NotFound(LookupError):
    pass


class ValidationFailed(ApiError):
    def __init__(self, errors: dict[str, list[str]]) -> None:
        super().__init__("Validation failed", 422)
        self.errors = errors


def json_success(data: Any = None, *, message: str | None = None, status: int = 200, **extra: Any):
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return jsonify(jsonable(body)), status


def json_error(message: str, status: int = 400, **extra: Any):
    body: dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    return jsonify(jsonable(body)), status


def get_payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        data.pop("csrf_token", None)
        return data
    form = request.form.to_dict()
    form.pop("csrf_token", None)
    return form


def jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if hasattr(value, "_mapping"):
        return jsonable(dict(value._mapping))
    if hasattr(value, "__table__"):
        return model_to_dict(value)
    return value


def model_to_dict(obj: Any, *, exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for col in obj.__table__.columns:
        if col.key in exclude:
            continue
        out[col.key] = jsonable(getattr(obj, col.key))
    return out


def require_fields(data: dict[str, Any], fields: list[str] | tuple[str, ...]) -> None:
    for field in fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()) or (isinstance(value, (list, dict)) and not value):
            raise ApiError(f"Field '{field}' is required", 400)


def _check_type(value: Any, kind: str) -> tuple[bool, Any]:
    try:
        if kind == "int":
            if isinstance(value, bool):
                return False, value
            return True, int(value)
        if kind == "float":
            return True, float(value)
        if kind == "bool":
            if isinstance(value, bool):
                return True, value
            if str(value).lower() in ("1", "true", "yes", "on"):
                return True, True
            if str(value).lower() in ("0", "false", "no", "off"):
                return True, False
            return False, value
        if kind == "email":
            email = str(value).strip().lower()
            return bool(EMAIL_RE.match(email)), email
        if kind == "uuid":
            return True, str(uuid.UUID(str(value)))
        if kind == "date":
            return True, date.fromisoformat(str(value)[:10])
        if kind == "list":
            return isinstance(value, list), value
        if kind == "dict":
            return isinstance(value, dict), value
    except (TypeError, ValueError):
        return False, value
    return True, value


def validate_payload(data: dict[str, Any], rules: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """
    Validate + coerce a request payload.

    rules = {"rating": {"required": True, "type": "int", "min": 1, "max": 5}}
    Raises ValidationFailed (422) with per-field messages; returns the coerced values.
    """
    errors: dict[str, list[str]] = {}
    clean: dict[str, Any] = {}
    for field, rule in rules.items():
        value = data.get(field)
        missing = value is None or (isinstance(value, str) and value.strip() == "")
        if missing:
            if rule.get("required"):
                errors.setdefault(field, []).append(f"{field} is required")
            elif "default" in rule:
                clean[field] = rule["default"]
            continue

        kind = rule.get("type")
        if kind:
            ok, value = _check_type(value, kind)
            if not ok:
                errors.setdefault(field, []).append(f"{field} must be a valid {kind}")
                continue

        if "choices" in rule and value not in rule["choices"]:
            errors.setdefault(field, []).append(f"{field} must be one of: {', '.join(map(str, rule['choices']))}")

        measured = len(value) if isinstance(value, (str, list)) else value
        if "min" in rule and isinstance(measured, (int, float)) and measured < rule["min"]:
            errors.setdefault(field, []).append(f"{field} must be at least {rule['min']}")
        if "max" in rule and isinstance(measured, (int, float)) and measured > rule["max"]:
            errors.setdefault(field, []).append(f"{field} must be at most {rule['max']}")

        if "pattern" in rule and not re.fullmatch(rule["pattern"], str(value)):
            errors.setdefault(field, []).append(f"{field} has an invalid format")

        clean[field] = value

    if errors:
        raise ValidationFailed(errors)
    return clean


def json_endpoint(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Wrap a JSON route: commit on success, roll back and translate on failure.

    ValueError -> 400, NotFound -> 404, ApiError -> its status, anything else -> 500.
    """

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        s = db_session()
        try:
            rv = fn(*args, **kwargs)
            s.commit()
            return rv
        except ValidationFailed as e:
            s.rollback()
            return json_error(e.message, e.status, errors=e.errors)
        except ApiError as e:
            s.rollback()
            return json_error(e.message, e.status)
        except NotFound as e:
            s.rollback()
            return json_error(str(e) or "Not found", 404)
        except ValueError as e:
            s.rollback()
            return json_error(str(e), 400)
        except Exception as e:
            s.rollback()
            logger.exception("API endpoint %s failed (request_id=%s)", request.endpoint, getattr(g, "request_id", None))
            return json_error(str(e), 500)

    return wrapped
