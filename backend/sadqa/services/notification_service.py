"""Fire-and-forget notifications to the external notifier service"""
import asyncio
import logging
from typing import Any, Dict, Set

import httpx

from sadqa.core.config import settings

logger = logging.getLogger(__name__)

# Strong references so pending sends are not garbage collected
_pending: Set[asyncio.Task] = set()


async def _send(kind: str, payload: Dict[str, Any]) -> None:
    try:
        async with httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.NOTIFIER_URL, json={"kind": kind, "data": payload})
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Notification {kind} failed: {e}")


def notify(kind: str, payload: Dict[str, Any]) -> bool:
    """Schedule a notification without waiting for it. Returns True if scheduled."""
    if not settings.NOTIFIER_URL:
        return False
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug(f"No running event loop; notification {kind} skipped")
        return False

    task = loop.create_task(_send(kind, payload))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return True
