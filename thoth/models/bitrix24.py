"""Database models for the Bitrix24 Open Channel integration."""
from sqlalchemy import (
    Column, String, DateTime, Text, ForeignKey, Boolean, Integer, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from thoth.database import Base
from thoth.models.base import generate_id


class Bitrix24Integration(Base):
    """One Bitrix24 portal connected to one workspace.

    Holds the OAuth tokens issued by the Marketplace install, the REST
    endpoint of the portal, and the last-known outcome of connector
    registration. Remote connector state is never cached here beyond
    these flags; it is always re-read from the portal.
    """

    __tablename__ = "bitrix24_integrations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "member_id", name="uq_bitrix24_integrations_workspace_member"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("b24"))
    workspace_id = Column(String, nullable=True, index=True)  # Tenant; null until linked

    # Portal identity
    member_id = Column(String, nullable=False, unique=True, index=True)
    domain = Column(String, nullable=True, index=True)
    client_endpoint = Column(String, nullable=True)  # https://<domain>/rest/
    application_token = Column(String, nullable=True)

    # OAuth tokens (encrypted in production)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Refresh bookkeeping
    last_token_refresh_at = Column(DateTime(timezone=True), nullable=True)
    token_refresh_error = Column(Text, nullable=True)
    token_refresh_failed_at = Column(DateTime(timezone=True), nullable=True)

    # Connector outcome flags (last known, not authoritative)
    connector_id = Column(String, nullable=True)
    registered = Column(Boolean, nullable=False, default=False)
    registered_at = Column(DateTime(timezone=True), nullable=True)
    events_bound = Column(Boolean, nullable=False, default=False)
    auto_setup_completed = Column(Boolean, nullable=False, default=False)
    last_diagnosis_at = Column(DateTime(timezone=True), nullable=True)

    # Free-form settings: events_url, app_url, last results
    settings = Column(JSONB, nullable=True)

    # Lifecycle
    is_active = Column(Boolean, nullable=False, default=True)
    installed_at = Column(DateTime(timezone=True), nullable=True)
    uninstalled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    channel_mappings = relationship(
        "Bitrix24ChannelMapping",
        back_populates="integration",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def rest_endpoint(self) -> str:
        """REST base URL, always on the portal domain."""
        if self.client_endpoint:
            endpoint = self.client_endpoint
        else:
            endpoint = f"https://{self.domain}/rest/"
        return endpoint if endpoint.endswith("/") else f"{endpoint}/"


class Bitrix24ChannelMapping(Base):
    """Links one Open Channel line to one local WhatsApp instance."""

    __tablename__ = "bitrix24_channel_mappings"
    __table_args__ = (
        UniqueConstraint("integration_id", "line_id", name="uq_bitrix24_channel_mappings_line"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("b24map"))
    integration_id = Column(
        String, ForeignKey("bitrix24_integrations.id", ondelete="CASCADE"), nullable=False, index=True
    )

    line_id = Column(Integer, nullable=False)  # Remote-assigned Open Line ID
    line_name = Column(String, nullable=True)
    instance_id = Column(String, nullable=True)  # Local WhatsApp sending identity

    is_active = Column(Boolean, nullable=False, default=True)
    activation_state = Column(String, nullable=True)  # ActivationState value
    last_activated_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    integration = relationship("Bitrix24Integration", back_populates="channel_mappings")
