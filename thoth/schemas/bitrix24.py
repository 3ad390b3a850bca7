"""Pydantic schemas for the Bitrix24 connector."""
from pydantic import BaseModel, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime


# ============================================================================
# DISPATCH SCHEMAS
# ============================================================================

class DispatchResponse(BaseModel):
    """Uniform envelope for every setup action."""
    success: bool
    message: str
    details: Dict[str, Any] = {}


# ============================================================================
# STATUS SCHEMAS
# ============================================================================

class ChannelMappingSummary(BaseModel):
    """One line -> WhatsApp instance mapping."""
    model_config = ConfigDict(from_attributes=True)

    line_id: int
    line_name: Optional[str] = None
    instance_id: Optional[str] = None
    is_active: bool
    activation_state: Optional[str] = None
    last_activated_at: Optional[datetime] = None
    last_error: Optional[str] = None


class IntegrationStatus(BaseModel):
    """Locally recorded state of a portal integration."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    domain: Optional[str] = None
    member_id: str
    connector_id: Optional[str] = None
    is_active: bool
    registered: bool
    events_bound: bool
    auto_setup_completed: bool
    token_expires_at: Optional[datetime] = None
    token_refresh_error: Optional[str] = None
    last_diagnosis_at: Optional[datetime] = None
    channel_mappings: List[ChannelMappingSummary] = []
