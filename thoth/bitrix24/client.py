"""Bitrix24 REST client wrapper.

This module wraps the parts of the Bitrix24 REST surface used by the
Open Channel connector: connector registration and activation
(``imconnector.*``), open line listing, event subscriptions and UI
placements. Every call returns a ``RemoteResult``; only transport
failures raise.
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import logging

import httpx

from thoth.config import settings


logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================

class Bitrix24TransportError(Exception):
    """A REST call did not produce a usable response (timeout, connection, non-JSON).

    The remote outcome is unknown; callers must re-verify instead of
    assuming the call failed.
    """

    def __init__(self, method: str, detail: str):
        self.method = method
        self.detail = detail
        super().__init__(f"{method}: {detail}")


class TokenRefreshError(Exception):
    """The OAuth server rejected a refresh or could not be reached."""


# Error codes that mean "the thing you asked for is already the case"
ALREADY_DONE_ERRORS = {
    "HANDLER_ALREADY_BINDED",
    "ERROR_HANDLER_ALREADY_BINDED",
    "ERROR_CONNECTOR_ALREADY_EXISTS",
    "CONNECTOR_ALREADY_EXISTS",
    "ERROR_PLACEMENT_ALREADY_BINDED",
}


def is_already_done(error: Optional[str], description: Optional[str] = None) -> bool:
    """True when a remote error only says the requested state already holds."""
    if error and error.upper() in ALREADY_DONE_ERRORS:
        return True
    text = f"{error or ''} {description or ''}".lower()
    return "already" in text


# ============================================================================
# NORMALISATION
# ============================================================================

TRUTHY = {"y", "yes", "1", "true", "on", "active"}


def normalize_flag(value: Any) -> bool:
    """Collapse the CRM's boolean encodings ("Y"/"N", 1/0, "true", True) to bool."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY
    return False


def _upper_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(k).upper(): v for k, v in data.items()}


def _first_flag(data: Dict[str, Any], keys: List[str]) -> Optional[bool]:
    """Flag for the first key present, or None if none of them are."""
    for key in keys:
        if key in data:
            return normalize_flag(data[key])
    return None


@dataclass
class ConnectorStatus:
    """Connector state for one line as reported by ``imconnector.status``."""
    active: bool = False
    registered: bool = False
    connected: bool = False
    raw: Any = None

    @classmethod
    def from_raw(cls, result: Any) -> "ConnectorStatus":
        if not isinstance(result, dict):
            flag = normalize_flag(result)
            return cls(active=flag, registered=flag, connected=flag, raw=result)

        data = _upper_keys(result)
        active = bool(_first_flag(data, ["ACTIVE"])) or bool(_first_flag(data, ["STATUS"]))
        registered = _first_flag(data, ["REGISTER", "REGISTERED", "CONFIGURED"])
        connected = _first_flag(data, ["CONNECTION", "CONNECTED"])

        return cls(
            active=active,
            # An active line implies a registered connector
            registered=active if registered is None else (registered or active),
            connected=active if connected is None else connected,
            raw=result,
        )


@dataclass
class OpenLine:
    """One Open Channel line."""
    id: int
    name: Optional[str] = None
    active: bool = True

    @classmethod
    def from_raw(cls, item: Dict[str, Any]) -> Optional["OpenLine"]:
        data = _upper_keys(item)
        try:
            line_id = int(data.get("ID"))
        except (TypeError, ValueError):
            return None
        name = data.get("LINE_NAME") or data.get("NAME")
        active = normalize_flag(data["ACTIVE"]) if "ACTIVE" in data else True
        return cls(id=line_id, name=name, active=active)


@dataclass
class BoundEvent:
    """One event subscription as returned by ``event.get``."""
    event: str
    handler: str

    @classmethod
    def from_raw(cls, item: Dict[str, Any]) -> Optional["BoundEvent"]:
        data = {str(k).lower(): v for k, v in item.items()}
        event = data.get("event")
        handler = data.get("handler")
        if not event or not handler:
            return None
        return cls(event=str(event), handler=str(handler))


def parse_connectors(result: Any) -> Dict[str, str]:
    """``imconnector.list`` result as id -> display name."""
    if isinstance(result, dict):
        return {str(k): str(v) for k, v in result.items()}
    connectors = {}
    if isinstance(result, list):
        for item in result:
            if isinstance(item, dict):
                data = _upper_keys(item)
                if data.get("ID"):
                    connectors[str(data["ID"])] = str(data.get("NAME") or data["ID"])
            elif item:
                connectors[str(item)] = str(item)
    return connectors


# ============================================================================
# RESULT ENVELOPE
# ============================================================================

@dataclass
class RemoteResult:
    """Normalised outcome of one REST call."""
    ok: bool
    raw: Any = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    already_done: bool = False
    value: Any = None  # Parsed payload for list/status calls

    @property
    def result(self) -> Any:
        if isinstance(self.raw, dict):
            return self.raw.get("result")
        return None

    @property
    def message(self) -> Optional[str]:
        return self.error_description or self.error

    @classmethod
    def from_body(cls, body: Any) -> "RemoteResult":
        if not isinstance(body, dict) or not body.get("error"):
            return cls(ok=True, raw=body)

        error = str(body.get("error"))
        description = body.get("error_description")
        if is_already_done(error, description):
            return cls(ok=True, raw=body, error=error, error_description=description, already_done=True)
        return cls(ok=False, raw=body, error=error, error_description=description)


# ============================================================================
# TOKEN MANAGEMENT
# ============================================================================

async def refresh_access_token(
    refresh_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Exchange a refresh token for a new token pair.

    Raises:
        TokenRefreshError: rejected by the OAuth server or unreachable.
    """
    params = {
        "grant_type": "refresh_token",
        "client_id": settings.BITRIX24_CLIENT_ID,
        "client_secret": settings.BITRIX24_CLIENT_SECRET,
        "refresh_token": refresh_token,
    }

    try:
        async with httpx.AsyncClient(
            timeout=settings.BITRIX24_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            response = await client.get(settings.BITRIX24_OAUTH_URL, params=params)
    except httpx.HTTPError as e:
        raise TokenRefreshError(f"OAuth server unreachable: {e}") from e

    try:
        tokens = response.json()
    except ValueError:
        raise TokenRefreshError(f"Token refresh failed: HTTP {response.status_code}")

    if response.status_code != 200 or tokens.get("error") or not tokens.get("access_token"):
        reason = tokens.get("error_description") or tokens.get("error") or f"HTTP {response.status_code}"
        raise TokenRefreshError(f"Token refresh failed: {reason}")

    return tokens


# ============================================================================
# BITRIX24 API WRAPPER CLASS
# ============================================================================

CONNECTOR_ICON = {
    "DATA_IMAGE": (
        "data:image/svg+xml;charset=US-ASCII,"
        "%3Csvg%20xmlns%3D%22http%3A//www.w3.org/2000/svg%22%20viewBox%3D%220%200%2070%2071%22%3E"
        "%3Cpath%20fill%3D%22%23FFF%22%20d%3D%22M34.7%2064c-11.6%200-22-7.1-26.3-17.8C4%2035.4%206.4%2023%2014.5%2014.7"
        "c8.1-8.2%2020.4-10.7%2031-6.2%2012.5%205.4%2019.6%2018.8%2017%2032.2-2.6%2013.2-14.1%2023.1-27.8%2023.3z%22/%3E%3C/svg%3E"
    ),
    "COLOR": "#25D366",
    "SIZE": "100%",
    "POSITION": "center",
}


@dataclass
class Bitrix24Client:
    """REST client for one portal, bound to one access token."""
    endpoint: str
    access_token: str
    transport: Optional[httpx.AsyncBaseTransport] = None
    timeout: float = field(default_factory=lambda: settings.BITRIX24_HTTP_TIMEOUT_SECONDS)

    def __post_init__(self):
        if not self.endpoint.endswith("/"):
            self.endpoint = f"{self.endpoint}/"

    async def call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> RemoteResult:
        """POST one REST method. Business errors come back in the result."""
        body = dict(payload or {})
        body["auth"] = self.access_token

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.endpoint}{method}", json=body)
        except httpx.HTTPError as e:
            logger.warning(f"Bitrix24 {method} transport failure: {e!r}")
            raise Bitrix24TransportError(method, str(e) or e.__class__.__name__) from e

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"Bitrix24 {method} returned non-JSON body (HTTP {response.status_code})")
            raise Bitrix24TransportError(method, f"non-JSON response (HTTP {response.status_code})") from e

        result = RemoteResult.from_body(data)
        if not result.ok:
            logger.warning(f"Bitrix24 {method} failed: {result.error} {result.error_description or ''}".rstrip())
        elif result.already_done:
            logger.info(f"Bitrix24 {method}: already done ({result.error})")
        else:
            logger.debug(f"Bitrix24 {method}: ok")
        return result

    # -------------------------------------------------------------------------
    # Connectors
    # -------------------------------------------------------------------------

    async def register_connector(
        self,
        connector_id: str,
        name: str,
        placement_handler: Optional[str] = None,
    ) -> RemoteResult:
        payload = {
            "ID": connector_id,
            "NAME": name,
            "ICON": CONNECTOR_ICON,
            "ICON_DISABLED": {**CONNECTOR_ICON, "COLOR": "#9E9E9E"},
        }
        if placement_handler:
            payload["PLACEMENT_HANDLER"] = placement_handler
        return await self.call("imconnector.register", payload)

    async def unregister_connector(self, connector_id: str) -> RemoteResult:
        return await self.call("imconnector.unregister", {"ID": connector_id})

    async def list_connectors(self) -> RemoteResult:
        """List every connector on the portal; ``value`` is id -> name."""
        result = await self.call("imconnector.list")
        result.value = parse_connectors(result.result) if result.ok else {}
        return result

    async def activate_connector(self, connector_id: str, line_id: int, active: bool = True) -> RemoteResult:
        return await self.call(
            "imconnector.activate",
            {"CONNECTOR": connector_id, "LINE": int(line_id), "ACTIVE": 1 if active else 0},
        )

    async def set_connector_data(
        self,
        connector_id: str,
        line_id: int,
        url: str,
        name: Optional[str] = None,
        url_im: Optional[str] = None,
    ) -> RemoteResult:
        data = {
            "id": f"{connector_id}_line_{line_id}",
            "url": url,
            "url_im": url_im or url,
            "name": name or settings.BITRIX24_CONNECTOR_NAME,
        }
        return await self.call(
            "imconnector.connector.data.set",
            {"CONNECTOR": connector_id, "LINE": int(line_id), "DATA": data},
        )

    async def connector_status(self, connector_id: str, line_id: int) -> RemoteResult:
        """Status for one line; ``value`` is a ``ConnectorStatus``."""
        result = await self.call("imconnector.status", {"CONNECTOR": connector_id, "LINE": int(line_id)})
        result.value = ConnectorStatus.from_raw(result.result) if result.ok else ConnectorStatus(raw=result.raw)
        return result

    # -------------------------------------------------------------------------
    # Open lines
    # -------------------------------------------------------------------------

    async def list_lines(self) -> RemoteResult:
        """List Open Channel lines; ``value`` is a list of ``OpenLine``."""
        result = await self.call("imopenlines.config.list.get")
        lines = []
        if result.ok and isinstance(result.result, list):
            for item in result.result:
                if isinstance(item, dict):
                    line = OpenLine.from_raw(item)
                    if line:
                        lines.append(line)
        result.value = lines
        return result

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def bind_event(self, event: str, handler: str) -> RemoteResult:
        return await self.call("event.bind", {"event": event, "handler": handler})

    async def unbind_event(self, event: str, handler: str) -> RemoteResult:
        return await self.call("event.unbind", {"event": event, "handler": handler})

    async def list_bound_events(self) -> RemoteResult:
        """Every event subscription of this app; ``value`` is a list of ``BoundEvent``."""
        result = await self.call("event.get")
        events = []
        if result.ok and isinstance(result.result, list):
            for item in result.result:
                if isinstance(item, dict):
                    bound = BoundEvent.from_raw(item)
                    if bound:
                        events.append(bound)
        result.value = events
        return result

    # -------------------------------------------------------------------------
    # Placements and app
    # -------------------------------------------------------------------------

    async def bind_placement(self, placement: str, handler: str, title: Optional[str] = None) -> RemoteResult:
        payload = {"PLACEMENT": placement, "HANDLER": handler}
        if title:
            payload["TITLE"] = title
        return await self.call("placement.bind", payload)

    async def unbind_placement(self, placement: str, handler: Optional[str] = None) -> RemoteResult:
        payload = {"PLACEMENT": placement}
        if handler:
            payload["HANDLER"] = handler
        return await self.call("placement.unbind", payload)

    async def app_info(self) -> RemoteResult:
        return await self.call("app.info")
