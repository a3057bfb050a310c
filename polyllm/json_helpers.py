"""JSON/text helpers for bounded logging output."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values (pydantic models included) into bounded JSON text for logging."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", exclude_none=True)
    try:
        raw = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def parse_json_object(raw: str | None) -> dict[str, Any]:
    """Parse tool-call argument text into a JSON object.

    Empty text counts as an empty object. Anything that is not an object raises ValueError.
    """
    text = (raw or "").strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON arguments: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValueError("tool arguments must be a JSON object")
    return value
