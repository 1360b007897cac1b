from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    # Columns are DateTime(timezone=False); store naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_digest(content: Any) -> str:
    """SHA-256 of the canonical JSON form, so key order never counts as a change."""
    h = hashlib.sha256()
    h.update(canonical_json(content).encode("utf-8"))
    return h.hexdigest()


def is_blank_content(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    if isinstance(content, (dict, list, tuple)):
        return len(content) == 0
    return False


def ensure_json_value(value: Any, *, field: str) -> Any:
    """Reject payloads that would not survive the JSON column round trip."""
    from app.docflow.errors import ValidationError

    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be JSON-serialisable: {e}") from e
    return value
