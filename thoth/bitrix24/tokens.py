"""Token management and integration lookup for Bitrix24 portals."""
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlparse
import logging

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from thoth.config import settings
from thoth.models.base import utcnow
from thoth.models.bitrix24 import Bitrix24Integration
from thoth.bitrix24.client import Bitrix24Client, TokenRefreshError, refresh_access_token


logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600
OAUTH_HOST = "oauth.bitrix.info"


class NoCredentialError(Exception):
    """No usable access token for the portal."""

    def __init__(self, message: str = "No Bitrix24 access token stored; reinstall may be required"):
        super().__init__(message)


class IntegrationNotFoundError(Exception):
    """No active integration matched the request."""


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def token_is_fresh(integration: Bitrix24Integration, now: Optional[datetime] = None) -> bool:
    """True when the stored token outlives the refresh buffer."""
    if not integration.access_token or not integration.token_expires_at:
        return False
    now = now or utcnow()
    buffer = timedelta(minutes=settings.BITRIX24_TOKEN_REFRESH_BUFFER_MINUTES)
    return _as_aware(integration.token_expires_at) - now > buffer


def _portal_endpoint(tokens: dict) -> Optional[str]:
    """client_endpoint from an OAuth response, unless it points at the OAuth host."""
    endpoint = tokens.get("client_endpoint")
    if not endpoint:
        return None
    host = urlparse(endpoint).netloc.lower()
    if not host or host == OAUTH_HOST:
        return None
    return endpoint if endpoint.endswith("/") else f"{endpoint}/"


async def get_valid_token(
    db: AsyncSession,
    integration: Bitrix24Integration,
    force: bool = False,
    now: Optional[datetime] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Return an access token for the portal, refreshing it when close to expiry.

    A failed refresh is recorded on the integration and the previous token
    is returned; it may still be accepted by the portal.

    Raises:
        NoCredentialError: nothing to return and nothing to refresh with.
    """
    now = now or utcnow()

    if not force and token_is_fresh(integration, now):
        return integration.access_token

    if not integration.refresh_token:
        if not integration.access_token:
            raise NoCredentialError()
        # Refresh is impossible; hand back what we have
        return integration.access_token

    try:
        tokens = await refresh_access_token(integration.refresh_token, transport=transport)
    except TokenRefreshError as e:
        logger.error(f"Bitrix24 token refresh failed for integration {integration.id}: {e}")
        integration.token_refresh_error = str(e)
        integration.token_refresh_failed_at = now
        await db.commit()
        if not integration.access_token:
            raise NoCredentialError(f"{e}; reinstall may be required") from e
        return integration.access_token

    integration.access_token = tokens["access_token"]
    integration.refresh_token = tokens.get("refresh_token") or integration.refresh_token
    integration.token_expires_at = now + timedelta(seconds=int(tokens.get("expires_in") or DEFAULT_EXPIRES_IN))
    integration.last_token_refresh_at = now
    integration.token_refresh_error = None
    integration.token_refresh_failed_at = None

    endpoint = _portal_endpoint(tokens)
    if endpoint:
        integration.client_endpoint = endpoint

    await db.commit()
    logger.info(f"Refreshed Bitrix24 token for integration {integration.id}")
    return integration.access_token


async def get_client(
    db: AsyncSession,
    integration: Bitrix24Integration,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    force_refresh: bool = False,
) -> Bitrix24Client:
    """REST client for the integration's portal with a valid token."""
    token = await get_valid_token(db, integration, force=force_refresh, transport=transport)
    return Bitrix24Client(integration.rest_endpoint, token, transport=transport)


def _bare_domain(domain: str) -> str:
    domain = domain.strip().lower()
    if "://" in domain:
        domain = urlparse(domain).netloc
    return domain.rstrip("/")


async def find_integration(
    db: AsyncSession,
    integration_id: Optional[str] = None,
    member_id: Optional[str] = None,
    domain: Optional[str] = None,
    workspace_id: Optional[str] = None,
) -> Optional[Bitrix24Integration]:
    """
    Resolve an active integration.

    Tries, in order: integration id, portal member id, portal domain,
    workspace. Returns None if nothing matches.
    """
    criteria = []
    if integration_id:
        criteria.append(Bitrix24Integration.id == integration_id)
    if member_id:
        criteria.append(Bitrix24Integration.member_id == member_id)
    if domain:
        criteria.append(Bitrix24Integration.domain == _bare_domain(domain))
    if workspace_id:
        criteria.append(Bitrix24Integration.workspace_id == workspace_id)

    for criterion in criteria:
        result = await db.execute(
            select(Bitrix24Integration)
            .where(criterion, Bitrix24Integration.is_active == True)
            .order_by(Bitrix24Integration.created_at.desc())
            .limit(1)
        )
        integration = result.scalars().first()
        if integration:
            return integration

    return None
