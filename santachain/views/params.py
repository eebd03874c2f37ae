from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from flask import request

from ..errors import BadRequest


def json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BadRequest("Invalid request body")
    return body


def parse_fid(raw: Any, field: str = "fid") -> int:
    # bool is an int subclass; reject it explicitly.
    if isinstance(raw, bool) or raw is None or raw == "":
        raise BadRequest(f"{field} is required")
    try:
        fid = int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid {field} format")
    if fid <= 0:
        raise BadRequest(f"Invalid {field} provided: {raw}")
    return fid


def parse_int(raw: Any, field: str, default: int, minimum: int | None = None, maximum: int | None = None) -> int:
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise BadRequest(f"Invalid {field}")
    if minimum is not None and value < minimum:
        raise BadRequest(f"{field} must be at least {minimum}")
    if maximum is not None and value > maximum:
        raise BadRequest(f"{field} must be at most {maximum}")
    return value


def parse_positive_number(raw: Any, field: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise BadRequest(f"{field} must be a number")
    if raw <= 0:
        raise BadRequest(f"{field} must be positive")
    return float(raw)


def parse_datetime(raw: Any, field: str) -> datetime:
    """ISO-8601 -> naive UTC."""
    if not isinstance(raw, str) or not raw.strip():
        raise BadRequest(f"{field} must be an ISO-8601 datetime")
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise BadRequest(f"{field} must be an ISO-8601 datetime")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_text(raw: Any, field: str, *, min_len: int = 0, max_len: int, required: bool = True) -> str | None:
    if raw is None:
        if required:
            raise BadRequest(f"{field} is required")
        return None
    if not isinstance(raw, str):
        raise BadRequest(f"{field} must be a string")
    value = raw.strip()
    if len(value) < min_len or len(value) > max_len:
        raise BadRequest(f"{field} must be between {min_len} and {max_len} characters")
    return value


def parse_choice(raw: Any, field: str, choices: tuple[str, ...], default: str | None = None) -> str:
    if raw is None and default is not None:
        return default
    if raw not in choices:
        raise BadRequest(f"{field} must be one of: {', '.join(choices)}")
    return raw
