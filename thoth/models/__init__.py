"""
Consolidated models package.

IMPORTANT: Explicit imports only - no wildcards to prevent circular imports.
"""

# Base utilities
from thoth.models.base import generate_id, utcnow

# Bitrix24 models
from thoth.models.bitrix24 import Bitrix24Integration, Bitrix24ChannelMapping

__all__ = [
    "generate_id",
    "utcnow",
    "Bitrix24Integration",
    "Bitrix24ChannelMapping",
]
