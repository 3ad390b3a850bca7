"""Shared base utilities for data models."""
from datetime import datetime, timezone
import secrets


def generate_id(prefix: str) -> str:
    """Generate a unique ID with a prefix."""
    return f"{prefix}_{secrets.token_hex(6)}"


def utcnow() -> datetime:
    """Timezone-aware current time, matching DateTime(timezone=True) columns."""
    return datetime.now(timezone.utc)
