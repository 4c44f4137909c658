from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any

from flask import request

from app.gallery.errors import ValidationError


def json_payload() -> dict[str, Any]:
    """Request body as a dict; anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def optional_int(data: Mapping[str, Any], key: str) -> int | None:
    raw = data.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be an integer", details={key: "invalid"})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", details={key: "invalid"}) from None


def required_int(data: Mapping[str, Any], key: str) -> int:
    value = optional_int(data, key)
    if value is None:
        raise ValidationError(f"{key} is required", details={key: "required"})
    return value


def int_list(data: Mapping[str, Any], key: str, *, required: bool = True) -> list[int]:
    raw = data.get(key)
    if raw is None:
        if required:
            raise ValidationError(f"{key} is required", details={key: "required"})
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"{key} must be a list", details={key: "invalid"})
    return [required_int({key: item}, key) for item in raw]


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def parse_datetime(raw: Any, field: str = "date") -> datetime | None:
    """
    Accepts ISO dates and datetimes. Values carrying an offset (or a trailing
    ``Z``) are converted to UTC; the result is always naive UTC, as stored.
    """
    if raw is None or raw == "":
        return None
    text = str(raw).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        try:
            value = datetime.combine(date.fromisoformat(text), datetime.min.time())
        except ValueError:
            raise ValidationError(f"{field} must be an ISO date", details={field: "invalid"}) from None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
