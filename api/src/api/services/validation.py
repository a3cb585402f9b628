"""Input checks shared by payment services."""

from __future__ import annotations

import uuid
from urllib.parse import urlparse

from storefront.config import Settings

from api.errors import ValidationError


def parse_uuid(value: object, *, field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError(f"{field} is required", fields={field: "required"})
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise ValidationError(f"Invalid {field}", fields={field: "must be a valid id"})


def _origin(url: str) -> str | None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def validate_redirect_url(url: str | None, *, field: str, settings: Settings) -> str:
    """Require an absolute http(s) URL on the configured site or admin origin."""
    raw = str(url or "").strip()
    if not raw:
        raise ValidationError(f"{field} is required", fields={field: "required"})
    parsed_origin = _origin(raw)
    if parsed_origin is None:
        raise ValidationError(
            f"Invalid {field}", fields={field: "must be an absolute http(s) URL"}
        )
    allowed_origins = {_origin(settings.site_url), _origin(settings.admin_url)}
    allowed_origins.discard(None)
    if parsed_origin not in allowed_origins:
        raise ValidationError(
            f"Invalid {field}",
            fields={field: "URL must match configured site origin"},
        )
    return raw
