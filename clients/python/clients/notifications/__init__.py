from .client import (
    NotificationClient,
    get_notification_client,
    notify,
    BID_PLACED,
    BID_OUTBID,
    BID_WON,
    AUCTION_ENDED,
    AUCTION_CANCELLED,
)
from .exceptions import NotificationClientError, NotificationDeliveryError

__all__ = [
    "NotificationClient",
    "get_notification_client",
    "notify",
    "BID_PLACED",
    "BID_OUTBID",
    "BID_WON",
    "AUCTION_ENDED",
    "AUCTION_CANCELLED",
    "NotificationClientError",
    "NotificationDeliveryError",
]
