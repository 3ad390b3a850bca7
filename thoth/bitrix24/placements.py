"""UI placement bindings (connector settings slider and app page)."""
from typing import Dict, List, Optional, Tuple
import logging

from thoth.config import settings
from thoth.bitrix24.client import Bitrix24Client, Bitrix24TransportError


logger = logging.getLogger(__name__)

SETTING_CONNECTOR = "SETTING_CONNECTOR"
REST_APP = "REST_APP"


def placement_targets() -> List[Tuple[str, str, str]]:
    """(placement, handler URL, title) for every placement the app owns."""
    return [
        (SETTING_CONNECTOR, settings.BITRIX24_SETTINGS_URL, settings.BITRIX24_CONNECTOR_NAME),
        (REST_APP, settings.BITRIX24_APP_URL, settings.BITRIX24_CONNECTOR_NAME),
    ]


async def bind_placement(client: Bitrix24Client, placement: str, handler: str, title: Optional[str] = None) -> Dict:
    """Bind one placement; an existing binding counts as success."""
    try:
        result = await client.bind_placement(placement, handler, title=title)
    except Bitrix24TransportError as e:
        return {"placement": placement, "handler": handler, "ok": False, "error": f"outcome unknown ({e.detail})"}
    return {"placement": placement, "handler": handler, "ok": result.ok, "error": None if result.ok else result.message}


async def rebind_placements(client: Bitrix24Client) -> List[Dict]:
    """Unbind and re-bind each placement so it points at the current URLs."""
    results = []
    for placement, handler, title in placement_targets():
        try:
            unbound = await client.unbind_placement(placement)
            if not unbound.ok:
                logger.warning(f"placement.unbind {placement}: {unbound.message}")
        except Bitrix24TransportError as e:
            logger.warning(f"placement.unbind {placement} indeterminate: {e.detail}")

        outcome = await bind_placement(client, placement, handler, title)
        results.append(outcome)
        logger.info(f"Placement {placement} -> {handler}: {'ok' if outcome['ok'] else outcome['error']}")
    return results
