"""
Reconciliation / diagnostic engine for the Open Channel connector.

Compares what the portal reports (connector list, line status, event
bindings) against what the connector needs, and optionally repairs the
difference. Repairs only ever add: register, activate, bind. Removal is
limited to handlers and connectors positively identified as this
platform's duplicates.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from thoth.config import settings
from thoth.models.base import utcnow
from thoth.models.bitrix24 import Bitrix24Integration
from thoth.bitrix24.activation import ActivationOrchestrator, ActivationState
from thoth.bitrix24.client import Bitrix24Client, Bitrix24TransportError, ConnectorStatus
from thoth.bitrix24.events import EventBindingManager, EventBindingState, events_url_for
from thoth.bitrix24.retry import RetryPolicy, Sleep


logger = logging.getLogger(__name__)

ISSUE_NOT_REGISTERED = "not registered"
ISSUE_NOT_ACTIVE = "not active"
ISSUE_MISSING_EVENT = "missing event binding: {event}"


@dataclass
class Snapshot:
    """Remote state as read in one inspection pass."""
    registered: bool
    status: Optional[ConnectorStatus]  # None when the status call could not be made
    events: EventBindingState
    errors: List[str] = field(default_factory=list)

    @property
    def issues(self) -> List[str]:
        issues = []
        if not self.registered:
            issues.append(ISSUE_NOT_REGISTERED)
        if self.status is not None and not self.status.active:
            issues.append(ISSUE_NOT_ACTIVE)
        for event in self.events.missing:
            issues.append(ISSUE_MISSING_EVENT.format(event=event))
        return issues


@dataclass
class DiagnosisResult:
    connector_id: str
    line_id: int
    connector_registered: bool = False
    connector_active: bool = False
    connector_connection: bool = False
    status_known: bool = True
    events_bound: bool = False
    missing_events: List[str] = field(default_factory=list)
    duplicate_events: Dict[str, List[str]] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)
    fixes_applied: List[str] = field(default_factory=list)
    cleanup_actions: List[str] = field(default_factory=list)
    remaining_issues: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        # Cleanup actions are informational and never make a result unhealthy
        return self.status_known and not self.remaining_issues

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        self.connector_registered = snapshot.registered
        self.status_known = snapshot.status is not None
        status = snapshot.status or ConnectorStatus()
        self.connector_active = status.active
        self.connector_connection = status.connected
        self.events_bound = snapshot.events.all_bound
        self.missing_events = list(snapshot.events.missing)
        self.duplicate_events = dict(snapshot.events.duplicates)
        self.remaining_issues = snapshot.issues

    def to_dict(self) -> dict:
        return {
            "connector_id": self.connector_id,
            "line_id": self.line_id,
            "connector_registered": self.connector_registered,
            "connector_active": self.connector_active,
            "connector_connection": self.connector_connection,
            "status_known": self.status_known,
            "events_bound": self.events_bound,
            "missing_events": self.missing_events,
            "duplicate_events": self.duplicate_events,
            "issues": self.issues,
            "fixes_applied": self.fixes_applied,
            "cleanup_actions": self.cleanup_actions,
            "remaining_issues": self.remaining_issues,
            "healthy": self.healthy,
            "errors": self.errors,
        }


@dataclass
class ConnectorCleanupResult:
    canonical_id: str
    removed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    events_removed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed and not self.errors

    def to_dict(self) -> dict:
        return {
            "canonical_id": self.canonical_id,
            "removed": self.removed,
            "failed": self.failed,
            "events_removed": self.events_removed,
            "errors": self.errors,
        }


class DiagnosticEngine:
    """Inspects and optionally repairs one integration's connector state."""

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
        self.events = events or EventBindingManager(client, canonical_url=events_url_for(integration))
        self.orchestrator = ActivationOrchestrator(
            db, integration, client, policy=policy, sleep=sleep, events=self.events
        )
        self.connector_id = self.orchestrator.connector_id

    async def inspect(self, line_id: int) -> Snapshot:
        """Read connector list, line status and event bindings. Never writes."""
        errors = []

        listed = None
        try:
            result = await self.client.list_connectors()
            if result.ok:
                listed = self.connector_id in result.value
            else:
                errors.append(f"imconnector.list: {result.message}")
        except Bitrix24TransportError as e:
            errors.append(f"imconnector.list: outcome unknown ({e.detail})")

        status = await self.orchestrator.read_status(line_id)
        if status is None:
            errors.append(f"imconnector.status: outcome unknown for line {line_id}")

        if listed is not None:
            registered = listed
        else:
            registered = bool(status and status.registered)

        events = await self.events.inspect()
        if events.error:
            errors.append(f"event.get: {events.error}")

        return Snapshot(registered=registered, status=status, events=events, errors=errors)

    async def diagnose(self, line_id: int = 1, auto_fix: bool = False) -> DiagnosisResult:
        """
        Report drift for one line and, with ``auto_fix``, repair it.

        Without ``auto_fix`` nothing is written locally or remotely. With
        ``auto_fix`` a healthy line produces no fixes.
        """
        result = DiagnosisResult(connector_id=self.connector_id, line_id=line_id)
        snapshot = await self.inspect(line_id)
        result.issues = snapshot.issues
        result.errors.extend(snapshot.errors)
        result.apply_snapshot(snapshot)

        if not auto_fix:
            return result

        acted = False
        if result.issues or snapshot.status is None:
            await self._fix(snapshot, result)
            acted = True

        if snapshot.events.duplicates:
            cleanup = await self.events.cleanup_duplicates()
            result.cleanup_actions.extend(cleanup.removed)
            result.errors.extend(f"cleanup {event}: {error}" for event, error in cleanup.failed.items())
            acted = True

        if acted:
            after = await self.inspect(line_id)
            result.apply_snapshot(after)
            result.errors.extend(after.errors)

        self.integration.last_diagnosis_at = utcnow()
        self.integration.events_bound = result.events_bound
        if result.connector_registered:
            self.integration.registered = True
            self.integration.connector_id = self.connector_id
        await self.db.commit()

        logger.info(
            f"Diagnosis line {line_id}: issues={result.issues} fixes={result.fixes_applied} "
            f"remaining={result.remaining_issues}"
        )
        return result

    async def _fix(self, snapshot: Snapshot, result: DiagnosisResult) -> None:
        """Minimal corrective action per issue."""
        line_id = result.line_id

        if not snapshot.registered:
            registered = await self.orchestrator.register()
            if registered:
                result.fixes_applied.append("registered connector")
            else:
                result.errors.append("connector registration failed")

        if snapshot.status is None or not snapshot.status.active:
            report = await self.orchestrator.drive(line_id, register=False, force=True)
            if report.state == ActivationState.ACTIVE:
                result.fixes_applied.append(f"activated line {line_id}")
            elif report.activate_accepted:
                result.fixes_applied.append(f"activation requested for line {line_id}")
            result.errors.extend(report.errors)
            if report.state == ActivationState.ACTIVE or report.activate_accepted:
                self.orchestrator.save_mapping(report)

        if snapshot.events.missing:
            outcome = await self.events.bind_required(snapshot.events)
            for event in outcome.bound:
                result.fixes_applied.append(f"bound event {event}")
            result.errors.extend(f"bind {event}: {error}" for event, error in outcome.failed.items())

    async def clean_duplicate_connectors(self) -> ConnectorCleanupResult:
        """
        Remove every connector of ours except the canonical one.

        Ours means the id matches BITRIX24_CONNECTOR_ID_PATTERN. Each stale
        connector is deactivated on lines 1..BITRIX24_DUPLICATE_LINE_SCAN_MAX
        and then unregistered. Running it twice removes nothing the second time.
        """
        cleanup = ConnectorCleanupResult(canonical_id=self.connector_id)
        pattern = re.compile(settings.BITRIX24_CONNECTOR_ID_PATTERN, re.IGNORECASE)

        try:
            listed = await self.client.list_connectors()
        except Bitrix24TransportError as e:
            cleanup.errors.append(f"imconnector.list: outcome unknown ({e.detail})")
            return cleanup
        if not listed.ok:
            cleanup.errors.append(f"imconnector.list: {listed.message}")
            return cleanup

        stale = [cid for cid in listed.value if cid != self.connector_id and pattern.search(cid)]

        for connector_id in stale:
            for line_id in range(1, settings.BITRIX24_DUPLICATE_LINE_SCAN_MAX + 1):
                try:
                    await self.client.activate_connector(connector_id, line_id, active=False)
                except Bitrix24TransportError as e:
                    logger.warning(f"Deactivating {connector_id} on line {line_id} indeterminate: {e.detail}")

            try:
                result = await self.client.unregister_connector(connector_id)
            except Bitrix24TransportError as e:
                cleanup.failed[connector_id] = f"outcome unknown ({e.detail})"
                continue
            if result.ok:
                cleanup.removed.append(connector_id)
                logger.info(f"Unregistered duplicate connector {connector_id}")
            else:
                cleanup.failed[connector_id] = result.message or "unregister failed"

        events = await self.events.cleanup_duplicates()
        cleanup.events_removed = events.removed
        cleanup.errors.extend(f"{event}: {error}" for event, error in events.failed.items())
        return cleanup
