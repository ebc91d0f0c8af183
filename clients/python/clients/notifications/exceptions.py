class NotificationClientError(Exception):
    """Base exception for NotificationClient."""
    pass


class NotificationDeliveryError(NotificationClientError):
    """Raised when the notification service rejects or cannot receive a message."""
    pass
