from __future__ import annotations

import json
from typing import Any


def serialize_event(event_type: str, payload: dict[str, Any]) -> str:
    envelope = {"event": event_type, "data": payload}
    return json.dumps(envelope, separators=(",", ":"))


def deserialize_event(raw: str | bytes) -> tuple[str, dict[str, Any]]:
    data = json.loads(raw)
    if not isinstance(data, dict) or "event" not in data:
        raise ValueError("Frame is not an event envelope")
    payload = data.get("data") or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Frame data for {data['event']!r} is not an object")
    return data["event"], payload
