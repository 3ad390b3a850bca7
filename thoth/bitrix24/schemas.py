"""Bitrix24 schemas - re-exports from consolidated schemas package."""
from thoth.schemas.bitrix24 import (
    DispatchResponse,
    ChannelMappingSummary,
    IntegrationStatus,
)

__all__ = [
    "DispatchResponse",
    "ChannelMappingSummary",
    "IntegrationStatus",
]
