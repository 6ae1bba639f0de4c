"""
Utility helpers for the Deal Workflow engine.

uuid7() wraps fastuuid.uuid7() to return a stdlib uuid.UUID instance.
fastuuid.UUID is a Rust-backed type that is NOT isinstance-compatible with
uuid.UUID, so we roundtrip through the string representation.
"""

from datetime import datetime, timezone
from uuid import UUID

import fastuuid


def uuid7() -> UUID:
    """Generate a UUIDv7 (time-sortable) as a stdlib uuid.UUID."""
    return UUID(str(fastuuid.uuid7()))


def new_id() -> str:
    """Time-sortable string identifier for persisted records."""
    return str(uuid7())


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)
