"""Bitrix24 connector routes.

Endpoints:
- POST|GET /bitrix24/dispatch - Run a setup action (dashboard), or a placement callback
- POST /bitrix24/placement - Connector settings opened inside the portal
- POST /bitrix24/install - App lifecycle events (install, uninstall, test)
- POST /bitrix24/events - Connector events bound to this app
- GET /bitrix24/integration - Locally recorded integration state
"""
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl
import json
import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from thoth.config import settings
from thoth.database import get_db
from thoth.middleware.rate_limit import is_placement_callback, limiter
from thoth.bitrix24 import schemas
from thoth.bitrix24.dispatcher import PLACEMENT_ACK, SetupDispatcher, UnknownActionError
from thoth.bitrix24.tokens import find_integration


router = APIRouter()
logger = logging.getLogger(__name__)

_KEY_PART = re.compile(r"\[([^\]]*)\]")


# ============================================================================
# REQUEST PARSING
# ============================================================================

def parse_form_body(body: str) -> Dict[str, Any]:
    """
    Parse a PHP-style form body into nested dicts.

    ``auth[domain]=x&data[LINE]=2`` -> ``{"auth": {"domain": "x"}, "data": {"LINE": "2"}}``
    """
    parsed: Dict[str, Any] = {}
    for key, value in parse_qsl(body, keep_blank_values=True):
        head = key.split("[", 1)[0]
        parts = [head] + _KEY_PART.findall(key[len(head):])
        target = parsed
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = value
    return parsed


async def read_payload(request: Request) -> Dict[str, Any]:
    """Query params overlaid with a JSON or form-encoded body."""
    payload: Dict[str, Any] = parse_form_body(str(request.query_params))
    body = await request.body()
    if not body:
        return payload

    content_type = request.headers.get("content-type", "")
    text = body.decode("utf-8", errors="replace")
    if "json" in content_type:
        try:
            data = json.loads(text)
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed JSON body")
        if isinstance(data, dict):
            payload.update(data)
    else:
        payload.update(parse_form_body(text))
    return payload


async def dispatch_payload(request: Request) -> Dict[str, Any]:
    """Parsed payload, kept on ``request.state`` for the rate limiter."""
    payload = await read_payload(request)
    request.state.payload = payload
    return payload


def get_dispatcher(db: AsyncSession = Depends(get_db)) -> SetupDispatcher:
    return SetupDispatcher(db)


# ============================================================================
# DASHBOARD ACTIONS
# ============================================================================

@router.api_route("/dispatch", methods=["GET", "POST"], response_model=schemas.DispatchResponse)
@limiter.limit(settings.RATE_LIMIT_DEFAULT, exempt_when=is_placement_callback)
async def dispatch_action(
    request: Request,
    payload: Dict[str, Any] = Depends(dispatch_payload),
    dispatcher: SetupDispatcher = Depends(get_dispatcher),
):
    """
    Run one setup action.

    The action comes from ``?action=`` or the body's ``action`` field. A
    body carrying ``PLACEMENT`` is the portal's placement callback and is
    answered with the plain-text acknowledgement instead, and is never
    rate limited.
    """
    if payload.get("PLACEMENT"):
        return PlainTextResponse(await dispatcher.handle_placement(payload))

    action = request.query_params.get("action") or payload.get("action")
    try:
        result = await dispatcher.dispatch(action, payload)
    except UnknownActionError as e:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": str(e), "details": {}},
        )
    return schemas.DispatchResponse(**result.to_dict())


# ============================================================================
# PORTAL CALLBACKS
# ============================================================================

@router.api_route("/placement", methods=["GET", "POST"], response_class=PlainTextResponse)
async def placement_callback(
    request: Request,
    dispatcher: SetupDispatcher = Depends(get_dispatcher),
):
    """Connector settings opened in the portal. Always answers "successfully"."""
    payload = await read_payload(request)
    return PlainTextResponse(await dispatcher.handle_placement(payload))


@router.post("/install", response_model=schemas.DispatchResponse)
async def install_event(
    request: Request,
    dispatcher: SetupDispatcher = Depends(get_dispatcher),
):
    """ONAPPINSTALL / ONAPPUNINSTALL / ONAPPTEST."""
    payload = await read_payload(request)
    result = await dispatcher.handle_install_event(payload)
    return schemas.DispatchResponse(**result.to_dict())


@router.post("/events", response_class=PlainTextResponse)
async def connector_event(
    request: Request,
    dispatcher: SetupDispatcher = Depends(get_dispatcher),
):
    """Events bound by this app; acknowledged with "successfully"."""
    payload = await read_payload(request)
    result = await dispatcher.handle_connector_event(payload)
    if not result.success:
        logger.warning(f"Event {payload.get('event')} not applied: {result.message}")
    return PlainTextResponse(PLACEMENT_ACK)


# ============================================================================
# STATUS
# ============================================================================

@router.get("/integration", response_model=schemas.IntegrationStatus)
async def get_integration(
    integration_id: Optional[str] = Query(None),
    member_id: Optional[str] = Query(None),
    domain: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Locally recorded integration state; remote state needs ``check_status``."""
    integration = await find_integration(
        db,
        integration_id=integration_id,
        member_id=member_id,
        domain=domain,
        workspace_id=workspace_id,
    )
    if integration is None:
        raise HTTPException(status_code=404, detail="Bitrix24 integration not found")
    return schemas.IntegrationStatus.model_validate(integration)


# Portal callbacks are never throttled
for _endpoint in (placement_callback, install_event, connector_event):
    limiter.exempt(_endpoint)
