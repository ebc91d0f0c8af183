class AuctionError(Exception):
    """Base exception for auction operations."""
    pass


class AuctionNotFound(AuctionError):
    """Raised when the auction document does not exist."""
    pass


class AuctionWriteConflict(AuctionError):
    """Raised when CAS retries are exhausted. Transient: re-fetch and resubmit."""
    pass


class InvalidAuctionTransition(AuctionError):
    """Raised when a lifecycle transition is not allowed from the current state."""
    pass


class AuctionPermissionDenied(AuctionError):
    """Raised when the caller may not perform the transition (e.g. not the seller)."""
    pass
