"""
Setup dispatcher - one entry point for connector setup actions.

The dashboard sends an ``action`` plus a payload; the portal itself calls
back on placement (connector settings opened) and on app lifecycle events.
Every action returns the same ``{success, message, details}`` envelope and
never raises past this module, except for an unknown action name.
"""
import asyncio
import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, unquote_plus
import logging

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from thoth.config import settings
from thoth.models.base import generate_id, utcnow
from thoth.models.bitrix24 import Bitrix24Integration
from thoth.bitrix24.activation import ActivationOrchestrator, ActivationState
from thoth.bitrix24.client import Bitrix24Client, Bitrix24TransportError, normalize_flag
from thoth.bitrix24.diagnostics import DiagnosticEngine
from thoth.bitrix24.events import EventBindingManager, events_url_for
from thoth.bitrix24.placements import SETTING_CONNECTOR, bind_placement, rebind_placements
from thoth.bitrix24.retry import RetryPolicy, Sleep
from thoth.bitrix24.tokens import (
    DEFAULT_EXPIRES_IN,
    IntegrationNotFoundError,
    NoCredentialError,
    find_integration,
    get_client,
    get_valid_token,
)


logger = logging.getLogger(__name__)

# The portal treats any other placement response as "setup still pending"
PLACEMENT_ACK = "successfully"

REINSTALL_HINT = "reinstall may be required"

# Canonical action -> names the dashboard has used for it
ACTION_ALIASES = {
    "activate_line": ["register", "register_connector"],
    "auto_setup": ["reconfigure_connector"],
    "diagnose": ["diagnose_connector"],
    "clean_duplicate_connectors": ["clean_connectors"],
    "refresh_token": [],
    "check_status": ["check_connector_status", "verify_integration"],
    "list_bound_events": [],
    "cleanup_duplicate_events": [],
    "rebind_events": ["force_reinstall_events"],
    "rebind_placements": [],
    "force_activate": [],
}

_ACTION_LOOKUP = {
    name: canonical
    for canonical, aliases in ACTION_ALIASES.items()
    for name in [canonical, *aliases]
}


def resolve_action(action: Optional[str]) -> Optional[str]:
    """Canonical action name, or None if unknown."""
    if not action:
        return None
    return _ACTION_LOOKUP.get(str(action).strip().lower())


class UnknownActionError(Exception):
    """The requested action does not exist."""


@dataclass
class DispatchResult:
    success: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, "details": self.details}


def parse_placement_options(raw: Any) -> Dict[str, Any]:
    """PLACEMENT_OPTIONS arrive as a dict, a JSON string or URL-encoded JSON."""
    if isinstance(raw, dict):
        return raw
    if not raw or not isinstance(raw, str):
        return {}
    for candidate in (raw, unquote_plus(raw)):
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    pairs = parse_qsl(raw)
    return dict(pairs) if pairs else {}


def _line_id(payload: Dict[str, Any], default: int = 1) -> int:
    for key in ("line_id", "line", "LINE"):
        if payload.get(key) not in (None, ""):
            try:
                return int(payload[key])
            except (TypeError, ValueError):
                break
    return default


def _identity(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Lookup keys for the integration, from dashboard or portal payloads."""
    auth = payload.get("auth") if isinstance(payload.get("auth"), dict) else {}
    return {
        "integration_id": payload.get("integration_id"),
        "member_id": payload.get("member_id") or auth.get("member_id"),
        "domain": payload.get("domain") or payload.get("DOMAIN") or auth.get("domain"),
        "workspace_id": payload.get("workspace_id"),
    }


class SetupDispatcher:
    """Routes setup actions to the orchestrator, diagnostics and event manager."""

    def __init__(
        self,
        db: AsyncSession,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
        policy: Optional[RetryPolicy] = None,
    ):
        self.db = db
        self.transport = transport
        self.sleep = sleep
        self.policy = policy
        self._handlers: Dict[str, Callable] = {
            "activate_line": self._activate_line,
            "auto_setup": self._auto_setup,
            "diagnose": self._diagnose,
            "clean_duplicate_connectors": self._clean_duplicate_connectors,
            "refresh_token": self._refresh_token,
            "check_status": self._check_status,
            "list_bound_events": self._list_bound_events,
            "cleanup_duplicate_events": self._cleanup_duplicate_events,
            "rebind_events": self._rebind_events,
            "rebind_placements": self._rebind_placements,
            "force_activate": self._force_activate,
        }

    # =========================================================================
    # Entry points
    # =========================================================================

    async def dispatch(self, action: Optional[str], payload: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """
        Run one action and wrap its outcome.

        Raises:
            UnknownActionError: ``action`` is missing or not recognised.
        """
        canonical = resolve_action(action)
        if canonical is None:
            raise UnknownActionError(f"Unknown action: {action!r}")

        payload = payload or {}
        logger.info(f"Dispatching Bitrix24 action {canonical}")
        try:
            return await self._handlers[canonical](payload)
        except IntegrationNotFoundError as e:
            return DispatchResult(False, str(e), {"error": "integration_not_found"})
        except NoCredentialError as e:
            return DispatchResult(False, str(e), {"error": "no_credential", "hint": REINSTALL_HINT})
        except Bitrix24TransportError as e:
            logger.warning(f"Action {canonical} interrupted by transport failure: {e}")
            return DispatchResult(
                False,
                "Bitrix24 did not respond; the remote state is unknown, run diagnose again",
                {"error": "transport", "method": e.method, "detail": e.detail},
            )

    async def handle_placement(self, payload: Dict[str, Any]) -> str:
        """
        Handle the portal's connector-settings callback.

        Always returns the acknowledgement string, whatever happens inside.
        """
        try:
            options = parse_placement_options(payload.get("PLACEMENT_OPTIONS"))
            connector = options.get("CONNECTOR") or settings.BITRIX24_CONNECTOR_ID
            line_id = _line_id(options)
            activate = normalize_flag(options.get("ACTIVE_STATUS", 1))

            integration = await find_integration(self.db, **_identity(payload))
            if integration is None:
                logger.warning(f"Placement {payload.get('PLACEMENT')} for unknown portal {_identity(payload)}")
                return PLACEMENT_ACK

            expected = integration.connector_id or settings.BITRIX24_CONNECTOR_ID
            if connector != expected:
                logger.info(f"Placement for foreign connector {connector}; ignoring")
                return PLACEMENT_ACK

            integration, client = await self._context_for(integration)
            orchestrator = self._orchestrator(integration, client)
            if activate:
                report = await orchestrator.activate_line(line_id)
            else:
                report = await orchestrator.deactivate_line(line_id)
            logger.info(f"Placement line {line_id} (active={activate}): {report.state.value}")
        except Exception as e:
            logger.exception(f"Placement callback failed: {e}")
        return PLACEMENT_ACK

    async def handle_install_event(self, payload: Dict[str, Any]) -> DispatchResult:
        """ONAPPINSTALL / ONAPPUNINSTALL / ONAPPTEST from the portal."""
        event = str(payload.get("event") or "").upper()
        auth = self._install_auth(payload)

        if event == "ONAPPTEST":
            return DispatchResult(True, "Test event acknowledged")

        member_id = auth.get("member_id")
        if not member_id:
            return DispatchResult(False, "Missing member_id in install payload", {"event": event})

        integration = await self._integration_by_member(member_id)

        if event == "ONAPPUNINSTALL":
            if integration is None:
                return DispatchResult(True, "Nothing to uninstall", {"member_id": member_id})
            if not self._application_token_matches(integration, auth):
                return DispatchResult(False, "Application token mismatch", {"member_id": member_id})
            integration.is_active = False
            integration.uninstalled_at = utcnow()
            await self.db.commit()
            logger.info(f"Bitrix24 app uninstalled for member {member_id}")
            return DispatchResult(True, "Integration deactivated", {"integration_id": integration.id})

        if event in ("ONAPPINSTALL", ""):
            return await self._install(integration, auth, payload)

        return DispatchResult(True, f"Event {event} ignored")

    async def handle_connector_event(self, payload: Dict[str, Any]) -> DispatchResult:
        """
        Connector events sent to the events URL.

        Only OnImConnectorStatusDelete changes connector state here: the
        line was disconnected in the portal, so its mapping goes inactive.
        Message and dialog events belong to the messaging pipeline and are
        only acknowledged.
        """
        event = str(payload.get("event") or "").upper()
        if event.startswith("ONAPP"):
            return await self.handle_install_event(payload)

        if event != "ONIMCONNECTORSTATUSDELETE":
            return DispatchResult(True, f"Event {event or 'unknown'} acknowledged")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        integration = await find_integration(self.db, **_identity(payload))
        if integration is None:
            return DispatchResult(True, "No integration for event", {"event": event})

        connector = data.get("CONNECTOR") or data.get("connector")
        if connector and connector != (integration.connector_id or settings.BITRIX24_CONNECTOR_ID):
            return DispatchResult(True, f"Event for foreign connector {connector} ignored")

        line_id = _line_id(data, default=0)
        changed = []
        for mapping in integration.channel_mappings:
            if mapping.line_id == line_id and mapping.is_active:
                mapping.is_active = False
                mapping.activation_state = ActivationState.REGISTERED.value
                changed.append(line_id)
        if changed:
            await self.db.commit()
            logger.info(f"Connector removed from line {line_id} in portal {integration.domain}")
        return DispatchResult(True, "Connector status change recorded", {"lines_deactivated": changed})

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _context(self, payload: Dict[str, Any]) -> Tuple[Bitrix24Integration, Bitrix24Client]:
        integration = await find_integration(self.db, **_identity(payload))
        if integration is None:
            raise IntegrationNotFoundError("Bitrix24 integration not found")
        return await self._context_for(integration)

    async def _context_for(self, integration: Bitrix24Integration) -> Tuple[Bitrix24Integration, Bitrix24Client]:
        client = await get_client(self.db, integration, transport=self.transport)
        return integration, client

    def _orchestrator(self, integration, client) -> ActivationOrchestrator:
        return ActivationOrchestrator(self.db, integration, client, policy=self.policy, sleep=self.sleep)

    def _engine(self, integration, client) -> DiagnosticEngine:
        return DiagnosticEngine(self.db, integration, client, policy=self.policy, sleep=self.sleep)

    @staticmethod
    def _install_auth(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Token fields from either the event form (auth[...]) or the install iframe."""
        auth = payload.get("auth") if isinstance(payload.get("auth"), dict) else {}
        return {
            "access_token": auth.get("access_token") or payload.get("AUTH_ID"),
            "refresh_token": auth.get("refresh_token") or payload.get("REFRESH_ID"),
            "expires_in": auth.get("expires_in") or payload.get("AUTH_EXPIRES"),
            "member_id": auth.get("member_id") or payload.get("member_id"),
            "domain": auth.get("domain") or payload.get("DOMAIN"),
            "application_token": auth.get("application_token") or payload.get("APP_SID"),
        }

    @staticmethod
    def _application_token_matches(integration: Bitrix24Integration, auth: Dict[str, Any]) -> bool:
        if not integration.application_token or not auth.get("application_token"):
            return True
        return integration.application_token == auth["application_token"]

    async def _integration_by_member(self, member_id: str) -> Optional[Bitrix24Integration]:
        # Includes deactivated integrations so a reinstall revives the same row
        result = await self.db.execute(
            select(Bitrix24Integration).where(Bitrix24Integration.member_id == member_id)
        )
        return result.scalars().first()

    async def _install(self, integration, auth, payload) -> DispatchResult:
        domain = (auth.get("domain") or "").strip().lower().rstrip("/")
        if not auth.get("access_token") or not domain:
            return DispatchResult(False, "Install payload missing access token or domain", {})

        now = utcnow()
        if integration is None:
            integration = Bitrix24Integration(
                id=generate_id("b24"),
                member_id=auth["member_id"],
                workspace_id=payload.get("workspace_id"),
                connector_id=settings.BITRIX24_CONNECTOR_ID,
                registered=False,
                events_bound=False,
                auto_setup_completed=False,
                channel_mappings=[],
            )
            self.db.add(integration)

        integration.domain = domain
        # REST calls go to the portal, never to the OAuth server
        integration.client_endpoint = f"https://{domain}/rest/"
        integration.access_token = auth["access_token"]
        integration.refresh_token = auth.get("refresh_token") or integration.refresh_token
        try:
            expires_in = int(auth.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        integration.token_expires_at = now + timedelta(seconds=expires_in)
        integration.token_refresh_error = None
        integration.token_refresh_failed_at = None
        if auth.get("application_token"):
            integration.application_token = auth["application_token"]
        integration.is_active = True
        integration.installed_at = now
        integration.uninstalled_at = None
        integration.settings = {
            **(integration.settings or {}),
            "events_url": events_url_for(integration),
            "app_url": settings.BITRIX24_APP_URL,
        }
        await self.db.commit()

        client = Bitrix24Client(integration.rest_endpoint, integration.access_token, transport=self.transport)
        details: Dict[str, Any] = {"integration_id": integration.id, "domain": domain}
        try:
            details["placement"] = await bind_placement(
                client, SETTING_CONNECTOR, settings.BITRIX24_SETTINGS_URL, settings.BITRIX24_CONNECTOR_NAME
            )
            events = await EventBindingManager(client, canonical_url=events_url_for(integration)).bind_required()
            details["events"] = events.to_dict()
            integration.events_bound = events.ok
            await self.db.commit()
        except Bitrix24TransportError as e:
            details["error"] = f"post-install binding interrupted: {e}"

        logger.info(f"Bitrix24 app installed for {domain} (member {integration.member_id})")
        return DispatchResult(True, "Integration installed", details)

    # =========================================================================
    # Actions
    # =========================================================================

    async def _activate_line(self, payload: Dict[str, Any], force: bool = False) -> DispatchResult:
        integration, client = await self._context(payload)
        line_id = _line_id(payload)
        report = await self._orchestrator(integration, client).activate_line(
            line_id,
            instance_id=payload.get("instance_id"),
            line_name=payload.get("line_name"),
            force=force,
        )
        if report.state == ActivationState.ACTIVE:
            message = f"Line {line_id} is active"
        elif report.partial:
            message = f"Line {line_id} activation accepted but not yet confirmed; run diagnose shortly"
        else:
            message = f"Line {line_id} activation failed"
        return DispatchResult(report.state == ActivationState.ACTIVE, message, report.to_dict())

    async def _force_activate(self, payload: Dict[str, Any]) -> DispatchResult:
        return await self._activate_line(payload, force=True)

    async def _auto_setup(self, payload: Dict[str, Any]) -> DispatchResult:
        integration, client = await self._context(payload)
        setup = await self._orchestrator(integration, client).activate_all_lines(
            instance_id=payload.get("instance_id")
        )
        if setup.success and setup.lines_unverified:
            message = f"Connector set up; lines {setup.lines_unverified} still propagating"
        elif setup.success:
            message = "Connector set up on all lines"
        else:
            message = "Connector setup incomplete"
        return DispatchResult(setup.success, message, setup.to_dict())

    async def _diagnose(self, payload: Dict[str, Any]) -> DispatchResult:
        integration, client = await self._context(payload)
        auto_fix = normalize_flag(payload.get("auto_fix", payload.get("autoFix", False)))
        result = await self._engine(integration, client).diagnose(_line_id(payload), auto_fix=auto_fix)
        if result.healthy:
            message = "Connector healthy"
        elif not result.remaining_issues:
            message = f"Status of line {result.line_id} unknown; portal unreachable"
        else:
            message = f"{len(result.remaining_issues)} issue(s) found: {', '.join(result.remaining_issues)}"
        return DispatchResult(result.healthy, message, result.to_dict())

    async def _clean_duplicate_connectors(self, payload: Dict[str, Any]) -> DispatchResult:
        integration, client = await self._context(payload)
        cleanup = await self._engine(integration, client).clean_duplicate_connectors()
        message = f"Removed {len(cleanup.removed)} duplicate connector(s)"
        return DispatchResult(cleanup.success, message, cleanup.to_dict())

    async def _refresh_token(self, payload: Dict[str, Any]) -> DispatchResult:
        integration = await find_integration(self.db, **_identity(payload))
        if integration is None:
            raise IntegrationNotFoundError("Bitrix24 integration not found")
        if not integration.refresh_token:
            return DispatchResult(False, f"No refresh token stored; {REINSTALL_HINT}", {"error": "no_credential"})
        await get_valid_token(self.db, integration, force=True, transport=self.transport)
        details = {
            "token_expires_at": integration.token_expires_at.isoformat() if integration.token_expires_at else None,
            "last_token_refresh_at": (
                integration.last_token_refresh_at.isoformat() if integration.last_token_refresh_at else None
            ),
            "error": integration.token_refresh_error,
        }
        if integration.token_refresh_error:
            return DispatchResult(False, f"Token refresh failed; {REINSTALL_HINT}", details)
        return DispatchResult(True, "Token refreshed", details)

    async def _check_status(self, payload: Dict[str, Any]) -> DispatchResult:
        integration, client = await self._context(payload)
        line_id = _line_id(payload)
        engine = self._engine(integration, client)
        snapshot = await engine.inspect(line_id)
        details = {
            "connector_id": engine.connector_id,
            "line_id": line_id,
            "registered": snapshot.registered,
            "active": snapshot.status.active if snapshot.status else None,
            "connection": snapshot.status.connected if snapshot.status else None,
            "events_bound": snapshot.events.bound_count,
            "missing_events": snapshot.events.missing,
            "issues": snapshot.issues,
            "errors": snapshot.errors,
        }
        if snapshot.status is None:
            return DispatchResult(False, f"Status of line {line_id} unknown; portal unreachable", details)
        healthy = not snapshot.issues
        return DispatchResult(healthy, "Connector active" if healthy else "Connector needs attention", details)

    async def _list_bound_events(self, payload: Dict[str, Any]) -> DispatchResult:
        integration, client = await self._context(payload)
        manager = EventBindingManager(client, canonical_url=events_url_for(integration))
        result = await client.list_bound_events()
        if not result.ok:
            return DispatchResult(False, f"Could not list events: {result.message}", {})
        events = [
            {
                "event": bound.event,
                "handler": bound.handler,
                "owned": manager.is_owned(bound.handler),
            }
            for bound in result.value
        ]
        return DispatchResult(True, f"{len(events)} event binding(s)", {"events": events})

    async def _cleanup_duplicate_events(self, payload: Dict[str, Any]) -> DispatchResult:
        integration, client = await self._context(payload)
        manager = EventBindingManager(client, canonical_url=events_url_for(integration))
        outcome = await manager.cleanup_duplicates()
        return DispatchResult(
            outcome.ok,
            f"Removed {len(outcome.removed)} duplicate event handler(s)",
            outcome.to_dict(),
        )

    async def _rebind_events(self, payload: Dict[str, Any]) -> DispatchResult:
        integration, client = await self._context(payload)
        new_url = payload.get("new_url") or settings.BITRIX24_EVENTS_URL
        outcome = await EventBindingManager(client, canonical_url=events_url_for(integration)).rebind_to(new_url)

        connector_id = integration.connector_id or settings.BITRIX24_CONNECTOR_ID
        lines = sorted({m.line_id for m in integration.channel_mappings if m.is_active}) or [1]
        data_updates = {}
        for line_id in lines:
            try:
                result = await client.set_connector_data(connector_id, line_id, url=new_url)
                data_updates[line_id] = result.ok
            except Bitrix24TransportError as e:
                data_updates[line_id] = False
                outcome.failed[f"data.set line {line_id}"] = f"outcome unknown ({e.detail})"

        integration.events_bound = outcome.ok
        integration.settings = {**(integration.settings or {}), "events_url": new_url}
        await self.db.commit()

        details = {**outcome.to_dict(), "events_url": new_url, "connector_data": data_updates}
        return DispatchResult(outcome.ok, f"Events rebound to {new_url}", details)

    async def _rebind_placements(self, payload: Dict[str, Any]) -> DispatchResult:
        _, client = await self._context(payload)
        results = await rebind_placements(client)
        success = all(r["ok"] for r in results)
        return DispatchResult(
            success,
            "Placements rebound" if success else "Some placements failed to rebind",
            {"placements": results},
        )
