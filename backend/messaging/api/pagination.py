"""Opaque keyset cursors over message history.

A cursor names the last message a client holds, `(created_at, message_id)`;
`after=<cursor>` returns strictly newer messages in the same order.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Tuple

Cursor = Tuple[datetime, str]


class InvalidCursor(ValueError):
    pass


def encode_cursor(created_at: datetime, message_id: str) -> str:
    raw = json.dumps({"t": created_at.isoformat(), "id": message_id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(value: str) -> Cursor:
    padded = value + "=" * (-len(value) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
        created_at = datetime.fromisoformat(data["t"])
        message_id = str(data["id"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise InvalidCursor("invalid_cursor") from exc
    if created_at.tzinfo is None or not message_id:
        raise InvalidCursor("invalid_cursor")
    return created_at, message_id
