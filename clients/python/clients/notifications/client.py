"""Notification Client — hands user-facing events to the marketplace
notification service (email / SMS / push fan-out lives there, not here).

Delivery is best-effort: ``notify`` schedules the HTTP call as a background
task and returns immediately. Failures are logged and dropped.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from clients.http import HttpRequestError, request
from clients.notifications.exceptions import NotificationDeliveryError

logger = logging.getLogger(__name__)

NOTIFICATIONS_WEBHOOK_URL = os.environ.get("NOTIFICATIONS_WEBHOOK_URL", "")
NOTIFICATIONS_TIMEOUT_SECONDS = float(os.environ.get("NOTIFICATIONS_TIMEOUT_SECONDS", "5"))

# Event types understood by the notification service
BID_PLACED = "bid_placed"
BID_OUTBID = "bid_outbid"
BID_WON = "bid_won"
AUCTION_ENDED = "auction_ended"
AUCTION_CANCELLED = "auction_cancelled"


class NotificationClient:
    """Thin wrapper around the notification service webhook.

    Usage::

        client = NotificationClient(webhook_url="http://notifications:8080/events")
        await client.send("user-1", BID_OUTBID, {"auctionId": "..."})
    """

    def __init__(self, webhook_url: str, timeout: float = 5.0) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        """Deliver one notification; raises ``NotificationDeliveryError`` on failure."""
        body = {
            "user_id": user_id,
            "type": event_type,
            "payload": payload,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await request("POST", self.webhook_url, json_data=body, timeout=self.timeout)
        except HttpRequestError as e:
            raise NotificationDeliveryError(f"Notification '{event_type}' for {user_id} failed: {e}") from e


_client: Optional[NotificationClient] = None
_pending: Set[asyncio.Task] = set()


def get_notification_client() -> NotificationClient:
    """Returns a singleton NotificationClient configured from the environment."""
    global _client
    if _client is None:
        _client = NotificationClient(NOTIFICATIONS_WEBHOOK_URL, NOTIFICATIONS_TIMEOUT_SECONDS)
    return _client


async def _deliver(client: NotificationClient, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
    try:
        await client.send(user_id, event_type, payload)
    except Exception as e:
        logger.warning(f"Dropping notification {event_type} for {user_id}: {e}")


def notify(user_id: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
    """Fire-and-forget notification. Never raises, never blocks on delivery."""
    if not user_id:
        return
    client = get_notification_client()
    if not client.enabled:
        logger.debug(f"Notifications disabled, skipping {event_type} for {user_id}")
        return
    try:
        task = asyncio.get_running_loop().create_task(_deliver(client, user_id, event_type, payload))
    except RuntimeError:
        logger.warning(f"No running event loop, dropping notification {event_type} for {user_id}")
        return
    # Keep a strong reference until the task finishes
    _pending.add(task)
    task.add_done_callback(_pending.discard)
