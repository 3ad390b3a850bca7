"""
Activation Orchestrator - brings an Open Channel line to "active and receiving".

Sequence per (integration, line):

    UNREGISTERED -> REGISTERED -> ACTIVATING -> ACTIVE
                                           |-> FAILED

1. imconnector.register (an existing connector counts as success)
2. imconnector.activate + imconnector.connector.data.set, best-effort
3. imconnector.status to verify
4. one corrective re-send of step 2 and a re-check after a short delay
5. bind the required events and save the channel mapping

A FAILED report still says which steps the portal accepted, so callers can
tell "nothing happened" from "activated but not yet confirmed".
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from thoth.config import settings
from thoth.models.base import utcnow
from thoth.models.bitrix24 import Bitrix24Integration, Bitrix24ChannelMapping
from thoth.bitrix24.client import Bitrix24Client, Bitrix24TransportError, ConnectorStatus, OpenLine
from thoth.bitrix24.events import EventBindingManager, events_url_for
from thoth.bitrix24.retry import RetryPolicy, Sleep, retry_until


logger = logging.getLogger(__name__)


class ActivationState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    ACTIVATING = "activating"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class ActivationReport:
    """Outcome of driving one line, including partial progress."""
    line_id: int
    state: ActivationState = ActivationState.UNREGISTERED
    already_active: bool = False
    registered: bool = False
    activate_accepted: bool = False
    data_set: bool = False
    verified: bool = False
    attempts: int = 0
    errors: List[str] = field(default_factory=list)
    events: Optional[dict] = None
    mapping_saved: bool = False

    @property
    def partial(self) -> bool:
        """Activation accepted by the portal but not confirmed by a status read."""
        return self.state == ActivationState.FAILED and self.activate_accepted

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "state": self.state.value,
            "already_active": self.already_active,
            "registered": self.registered,
            "activate_accepted": self.activate_accepted,
            "data_set": self.data_set,
            "verified": self.verified,
            "partial": self.partial,
            "attempts": self.attempts,
            "errors": list(self.errors),
            "events": self.events,
            "mapping_saved": self.mapping_saved,
        }


@dataclass
class AutoSetupReport:
    """Outcome of activating every open line of a portal."""
    connector_registered: bool = False
    events_bound: bool = False
    events: Optional[dict] = None
    lines: List[ActivationReport] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def lines_accepted(self) -> List[int]:
        return [r.line_id for r in self.lines if r.activate_accepted or r.already_active]

    @property
    def lines_unverified(self) -> List[int]:
        return [r.line_id for r in self.lines if not r.verified]

    @property
    def success(self) -> bool:
        # Unverified lines are tolerated while the portal catches up
        return self.connector_registered and self.events_bound and bool(self.lines_accepted)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "connector_registered": self.connector_registered,
            "events_bound": self.events_bound,
            "events": self.events,
            "lines_accepted": self.lines_accepted,
            "lines_unverified": self.lines_unverified,
            "lines": [r.to_dict() for r in self.lines],
            "errors": list(self.errors),
        }


class ActivationOrchestrator:
    """Drives register -> activate -> verify -> bind for one integration."""

    def __init__(
        self,
        db: AsyncSession,
        integration: Bitrix24Integration,
        client: Bitrix24Client,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        events: Optional[EventBindingManager] = None,
    ):
        self.db = db
        self.integration = integration
        self.client = client
        self.connector_id = integration.connector_id or settings.BITRIX24_CONNECTOR_ID
        self.policy = policy or RetryPolicy.verification()
        self.sleep = sleep
        self.events = events or EventBindingManager(client, canonical_url=events_url_for(integration))

    # =========================================================================
    # Remote steps (no database writes)
    # =========================================================================

    async def read_status(self, line_id: int) -> Optional[ConnectorStatus]:
        """Current status of the line, or None when the portal could not be reached."""
        try:
            result = await self.client.connector_status(self.connector_id, line_id)
        except Bitrix24TransportError as e:
            logger.warning(f"Status check for line {line_id} indeterminate: {e.detail}")
            return None
        return result.value

    async def register(self, report: Optional[ActivationReport] = None) -> Optional[bool]:
        """
        Register the connector.

        Returns True when registered (or already registered), False on a
        remote refusal and None when the outcome is unknown.
        """
        try:
            result = await self.client.register_connector(
                self.connector_id,
                settings.BITRIX24_CONNECTOR_NAME,
                placement_handler=settings.BITRIX24_SETTINGS_URL,
            )
        except Bitrix24TransportError as e:
            if report:
                report.errors.append(f"register: outcome unknown ({e.detail})")
            return None

        if not result.ok:
            if report:
                report.errors.append(f"register: {result.message}")
            return False

        if report:
            report.registered = True
            report.state = ActivationState.REGISTERED
        return True

    async def send_activation(self, line_id: int, report: ActivationReport) -> None:
        """imconnector.activate then connector.data.set; failures are recorded, not raised."""
        try:
            result = await self.client.activate_connector(self.connector_id, line_id, active=True)
            if result.ok:
                report.activate_accepted = True
            else:
                report.errors.append(f"activate: {result.message}")
        except Bitrix24TransportError as e:
            report.errors.append(f"activate: outcome unknown ({e.detail})")

        try:
            result = await self.client.set_connector_data(
                self.connector_id, line_id, url=self.events.canonical_url
            )
            if result.ok:
                report.data_set = True
            else:
                report.errors.append(f"data.set: {result.message}")
        except Bitrix24TransportError as e:
            report.errors.append(f"data.set: outcome unknown ({e.detail})")

    async def drive(self, line_id: int, register: bool = True, force: bool = False) -> ActivationReport:
        """Run the remote part of the state machine for one line."""
        report = ActivationReport(line_id=line_id)

        if not force:
            status = await self.read_status(line_id)
            if status is not None and status.active:
                report.already_active = True
                report.registered = True
                report.verified = True
                report.state = ActivationState.ACTIVE
                return report

        if register:
            registered = await self.register(report)
            if registered is False:
                report.state = ActivationState.FAILED
                return report
        else:
            report.registered = True
            report.state = ActivationState.REGISTERED

        report.state = ActivationState.ACTIVATING
        await self.send_activation(line_id, report)

        async def resend(attempt: int) -> None:
            logger.info(f"Line {line_id} not active yet, re-sending activation (attempt {attempt})")
            await self.send_activation(line_id, report)

        status, attempts = await retry_until(
            lambda attempt: self.read_status(line_id),
            lambda s: s is not None and s.active,
            self.policy,
            between=resend,
            sleep=self.sleep,
        )
        report.attempts = attempts

        if status is not None and status.active:
            report.verified = True
            report.state = ActivationState.ACTIVE
        else:
            report.state = ActivationState.FAILED
            report.errors.append(f"line {line_id} not confirmed active after {attempts} check(s)")

        logger.info(f"Line {line_id} activation finished: {report.state.value}")
        return report

    async def list_line_ids(self) -> List[OpenLine]:
        """Open lines on the portal; line 1 when none can be listed."""
        try:
            result = await self.client.list_lines()
            lines = result.value if result.ok else []
        except Bitrix24TransportError as e:
            logger.warning(f"Could not list open lines: {e.detail}")
            lines = []
        return lines or [OpenLine(id=1)]

    # =========================================================================
    # Persistence
    # =========================================================================

    def _mark_registered(self) -> None:
        if not self.integration.registered:
            self.integration.registered_at = utcnow()
        self.integration.registered = True
        self.integration.connector_id = self.connector_id

    def find_mapping(self, line_id: int) -> Optional[Bitrix24ChannelMapping]:
        for mapping in self.integration.channel_mappings:
            if mapping.line_id == line_id:
                return mapping
        return None

    def save_mapping(
        self,
        report: ActivationReport,
        instance_id: Optional[str] = None,
        line_name: Optional[str] = None,
    ) -> Bitrix24ChannelMapping:
        """Create or update the mapping for the report's line (caller commits)."""
        mapping = self.find_mapping(report.line_id)
        if mapping is None:
            mapping = Bitrix24ChannelMapping(integration_id=self.integration.id, line_id=report.line_id)
            self.integration.channel_mappings.append(mapping)
            self.db.add(mapping)

        if instance_id:
            mapping.instance_id = instance_id
        if line_name:
            mapping.line_name = line_name
        mapping.activation_state = report.state.value
        mapping.is_active = report.state == ActivationState.ACTIVE or report.activate_accepted
        mapping.last_error = "; ".join(report.errors) or None
        if report.state == ActivationState.ACTIVE:
            mapping.last_activated_at = utcnow()

        report.mapping_saved = True
        return mapping

    # =========================================================================
    # Entry points
    # =========================================================================

    async def activate_line(
        self,
        line_id: int,
        instance_id: Optional[str] = None,
        line_name: Optional[str] = None,
        bind_events: bool = True,
        force: bool = False,
    ) -> ActivationReport:
        """Activate one line end to end and persist the outcome."""
        report = await self.drive(line_id, force=force)

        if report.registered:
            self._mark_registered()

        progressed = report.state == ActivationState.ACTIVE or report.activate_accepted
        if bind_events and progressed:
            events = await self.events.bind_required()
            report.events = events.to_dict()
            if events.ok:
                self.integration.events_bound = True

        if progressed or self.find_mapping(line_id) is not None or instance_id:
            self.save_mapping(report, instance_id=instance_id, line_name=line_name)

        await self.db.commit()
        return report

    async def activate_all_lines(self, instance_id: Optional[str] = None) -> AutoSetupReport:
        """Register once, activate every open line concurrently, bind events once."""
        setup = AutoSetupReport()

        registered = await self.register()
        if registered is False:
            setup.errors.append("connector registration refused")
            return setup
        if registered is None:
            setup.errors.append("connector registration outcome unknown")
        setup.connector_registered = bool(registered)

        lines = await self.list_line_ids()
        names = {line.id: line.name for line in lines}

        # Remote calls only; mappings are written below on the one session
        setup.lines = list(await asyncio.gather(
            *(self.drive(line.id, register=False) for line in lines)
        ))

        # An unknown registration outcome is settled by any line the portal accepted
        if not setup.connector_registered and setup.lines_accepted:
            setup.connector_registered = True

        if setup.connector_registered:
            self._mark_registered()
            events = await self.events.bind_required()
            setup.events = events.to_dict()
            setup.events_bound = events.ok
            self.integration.events_bound = events.ok

        for report in setup.lines:
            if report.state == ActivationState.ACTIVE or report.activate_accepted:
                self.save_mapping(report, instance_id=instance_id, line_name=names.get(report.line_id))

        self.integration.auto_setup_completed = setup.success
        await self.db.commit()
        return setup

    async def deactivate_line(self, line_id: int) -> ActivationReport:
        """Turn the connector off for one line and mark its mapping inactive."""
        report = ActivationReport(line_id=line_id, state=ActivationState.REGISTERED, registered=True)
        try:
            result = await self.client.activate_connector(self.connector_id, line_id, active=False)
            if not result.ok:
                report.errors.append(f"deactivate: {result.message}")
        except Bitrix24TransportError as e:
            report.errors.append(f"deactivate: outcome unknown ({e.detail})")

        mapping = self.find_mapping(line_id)
        if mapping is not None:
            mapping.is_active = False
            mapping.activation_state = report.state.value
            mapping.last_error = "; ".join(report.errors) or None
            report.mapping_saved = True

        await self.db.commit()
        return report
