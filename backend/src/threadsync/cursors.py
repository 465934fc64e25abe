"""Opaque pagination cursors.

A cursor references the oldest message of a page as ``<created_at>|<id>``,
base64url encoded without padding.
"""

import base64
import binascii
from dataclasses import dataclass


@dataclass(frozen=True)
class DecodedCursor:
    created_at: str
    id: str


def encode_cursor(created_at: str, message_id: str) -> str:
    raw = f"{created_at}|{message_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str | None) -> DecodedCursor | None:
    """Decode a cursor, returning None for anything malformed."""
    if not value:
        return None
    padded = value + "=" * (-len(value) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    created_at, _, message_id = decoded.partition("|")
    if not created_at or not message_id:
        return None
    return DecodedCursor(created_at=created_at, id=message_id)
