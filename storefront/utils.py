import re
import secrets
import string
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from flask import request

from .errors import ValidationError

_ALPHABET = string.ascii_letters + string.digits
_BASE36 = string.digits + string.ascii_uppercase


def new_id(size: int = 21) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(size))


def random_base36(size: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(size))


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or new_id(8).lower()


def money(value: Any) -> float:
    """Round to two decimals, half-up, the way prices are shown to customers."""
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("JSON object expected")
    return body


def page_args(default_limit: int = 50, max_limit: int = 100) -> tuple[int, int, int]:
    page = request.args.get("page", default=1, type=int) or 1
    limit = request.args.get("limit", default=default_limit, type=int) or default_limit
    if page <= 0:
        page = 1
    if limit <= 0:
        limit = default_limit
    limit = min(limit, max_limit)
    return page, limit, (page - 1) * limit


def client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr


def as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
