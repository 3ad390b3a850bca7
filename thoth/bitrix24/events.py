"""Event subscription management for the Open Channel connector.

Bitrix24 keeps one flat list of event handlers per app and happily stores
the same event several times under different (or identical) handler URLs.
This module binds the events the connector needs and removes the extra
copies this platform left behind, without touching handlers that belong
to anyone else.
"""
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional
import logging

from thoth.config import settings
from thoth.models.bitrix24 import Bitrix24Integration
from thoth.bitrix24.client import Bitrix24Client, Bitrix24TransportError, BoundEvent


logger = logging.getLogger(__name__)

REQUIRED_EVENTS = [
    "OnImConnectorMessageAdd",
    "OnImConnectorDialogStart",
    "OnImConnectorDialogFinish",
    "OnImConnectorStatusDelete",
]

_REQUIRED_BY_KEY = {name.lower(): name for name in REQUIRED_EVENTS}


def _same_url(a: str, b: str) -> bool:
    return a.strip().rstrip("/").lower() == b.strip().rstrip("/").lower()


def events_url_for(integration: Bitrix24Integration) -> str:
    """Handler URL the integration's events are bound to; ``rebind_events`` moves it."""
    stored = (integration.settings or {}).get("events_url")
    return stored or settings.BITRIX24_EVENTS_URL


@dataclass
class EventBindingState:
    """Snapshot of this platform's required-event subscriptions."""
    listed: bool
    owned: List[BoundEvent] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    duplicates: Dict[str, List[str]] = field(default_factory=dict)  # event -> extra handlers
    error: Optional[str] = None

    @property
    def all_bound(self) -> bool:
        return self.listed and not self.missing

    @property
    def bound_count(self) -> int:
        return len(REQUIRED_EVENTS) - len(self.missing) if self.listed else 0


@dataclass
class EventSyncResult:
    """What a bind / cleanup / rebind pass changed."""
    bound: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {**asdict(self), "ok": self.ok}


class EventBindingManager:
    """Binds and de-duplicates the connector's event handlers."""

    def __init__(
        self,
        client: Bitrix24Client,
        canonical_url: Optional[str] = None,
        markers: Optional[List[str]] = None,
    ):
        self.client = client
        self.canonical_url = canonical_url or settings.BITRIX24_EVENTS_URL
        self.markers = [m.lower() for m in (markers if markers is not None else settings.BITRIX24_OWNED_MARKERS)]

    def is_owned(self, handler: str) -> bool:
        """Handlers are ours if they are the canonical URL or carry one of our markers."""
        if _same_url(handler, self.canonical_url):
            return True
        lowered = handler.lower()
        return any(marker and marker in lowered for marker in self.markers)

    def _group_owned(self, owned: List[BoundEvent]) -> "OrderedDict[str, List[BoundEvent]]":
        groups = OrderedDict((key, []) for key in _REQUIRED_BY_KEY)
        for bound in owned:
            groups[bound.event.lower()].append(bound)
        return groups

    async def inspect(self) -> EventBindingState:
        """Read the portal's bindings and classify ours."""
        try:
            result = await self.client.list_bound_events()
        except Bitrix24TransportError as e:
            return EventBindingState(listed=False, missing=list(REQUIRED_EVENTS), error=str(e))

        if not result.ok:
            return EventBindingState(listed=False, missing=list(REQUIRED_EVENTS), error=result.message)

        owned = [
            bound for bound in result.value
            if bound.event.lower() in _REQUIRED_BY_KEY and self.is_owned(bound.handler)
        ]

        state = EventBindingState(listed=True, owned=owned)
        for key, group in self._group_owned(owned).items():
            canonical = [b for b in group if _same_url(b.handler, self.canonical_url)]
            if not canonical:
                state.missing.append(_REQUIRED_BY_KEY[key])
            if len(group) > 1:
                extras = [b.handler for b in group if not _same_url(b.handler, self.canonical_url)]
                extras.extend([self.canonical_url] * max(0, len(canonical) - 1))
                state.duplicates[_REQUIRED_BY_KEY[key]] = extras
        return state

    async def list_owned(self) -> List[BoundEvent]:
        state = await self.inspect()
        return state.owned

    async def missing_events(self) -> List[str]:
        state = await self.inspect()
        return state.missing

    async def _bind(self, event: str, handler: str, outcome: EventSyncResult) -> None:
        try:
            result = await self.client.bind_event(event, handler)
        except Bitrix24TransportError as e:
            outcome.failed[event] = f"outcome unknown: {e.detail}"
            return
        if result.ok:
            outcome.bound.append(event)
        else:
            outcome.failed[event] = result.message or "bind failed"

    async def _unbind(self, event: str, handler: str, outcome: EventSyncResult) -> bool:
        try:
            result = await self.client.unbind_event(event, handler)
        except Bitrix24TransportError as e:
            outcome.failed[event] = f"outcome unknown: {e.detail}"
            return False
        if not result.ok:
            outcome.failed[event] = result.message or "unbind failed"
            return False
        return True

    async def bind_required(self, state: Optional[EventBindingState] = None) -> EventSyncResult:
        """Bind every required event missing at the canonical URL."""
        state = state or await self.inspect()
        outcome = EventSyncResult()
        # When the listing failed we cannot tell what is missing; binding is idempotent
        for event in state.missing:
            await self._bind(event, self.canonical_url, outcome)
        if outcome.bound:
            logger.info(f"Bound Bitrix24 events at {self.canonical_url}: {', '.join(outcome.bound)}")
        return outcome

    async def cleanup_duplicates(self, state: Optional[EventBindingState] = None) -> EventSyncResult:
        """
        Leave exactly one handler per required event at the canonical URL.

        Only events with more than one handler of ours are touched. Handlers
        that are not ours are never unbound.
        """
        state = state or await self.inspect()
        outcome = EventSyncResult()
        if not state.listed:
            outcome.failed["event.get"] = state.error or "could not list events"
            return outcome

        for key, group in self._group_owned(state.owned).items():
            if len(group) < 2:
                continue
            event = _REQUIRED_BY_KEY[key]
            canonical = [b for b in group if _same_url(b.handler, self.canonical_url)]
            stale = []
            for bound in group:
                if not _same_url(bound.handler, self.canonical_url) and bound.handler not in stale:
                    stale.append(bound.handler)

            for handler in stale:
                if await self._unbind(event, handler, outcome):
                    count = sum(1 for b in group if b.handler == handler)
                    outcome.removed.extend([f"removed duplicate handler for {event}"] * count)

            if len(canonical) > 1:
                # unbind drops every copy at that URL, so re-add a single one
                if await self._unbind(event, self.canonical_url, outcome):
                    outcome.removed.extend([f"removed duplicate handler for {event}"] * (len(canonical) - 1))
                    await self._bind(event, self.canonical_url, outcome)
            elif not canonical:
                await self._bind(event, self.canonical_url, outcome)

        if outcome.removed:
            logger.info(f"Removed {len(outcome.removed)} duplicate Bitrix24 event handler(s)")
        return outcome

    async def rebind_to(self, new_url: str) -> EventSyncResult:
        """Move every required event of ours to ``new_url``."""
        state = await self.inspect()
        outcome = EventSyncResult()
        if not state.listed:
            outcome.failed["event.get"] = state.error or "could not list events"
            return outcome

        seen = set()
        for bound in state.owned:
            if _same_url(bound.handler, new_url) or (bound.event.lower(), bound.handler) in seen:
                continue
            seen.add((bound.event.lower(), bound.handler))
            event = _REQUIRED_BY_KEY[bound.event.lower()]
            if await self._unbind(event, bound.handler, outcome):
                outcome.removed.append(f"unbound {event} from {bound.handler}")

        self.canonical_url = new_url
        for event in REQUIRED_EVENTS:
            await self._bind(event, new_url, outcome)

        logger.info(f"Rebound Bitrix24 events to {new_url}")
        return outcome
