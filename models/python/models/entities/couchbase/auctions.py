from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel, Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


AuctionStatus = Literal[
    "scheduled",
    "active",
    "ending",
    "sold",
    "unsold",
    "reserve_not_met",
    "cancelled",
]

TERMINAL_STATUSES = ("sold", "unsold", "reserve_not_met", "cancelled")
OPEN_STATUSES = ("scheduled", "active")

OrderStatus = Literal["not_required", "pending", "created", "failed"]


class AuctionConfig(BaseModel):
    """Auction parameters; frozen once the auction is active."""
    starting_bid: float = Field(gt=0)
    bid_increment: float = Field(default=10.0, gt=0)
    reserve_price: Optional[float] = Field(default=None, gt=0)
    extension_window_seconds: int = Field(default=120, gt=0)


class AuctionData(BaseCouchbaseEntityData):
    # Ownership (immutable)
    seller_id: str
    listing_id: str

    config: AuctionConfig

    # Schedule
    starts_at: datetime
    ends_at: datetime
    effective_ends_at: datetime  # only ever pushed forward by anti-snipe
    extensions_count: int = 0

    status: AuctionStatus = "scheduled"

    # Denormalized high bid, updated atomically via CAS on each accepted bid.
    # total_bids doubles as the sequence number of the newest ledger entry.
    current_bid: float
    highest_bidder_id: Optional[str] = None
    total_bids: int = 0
    last_bid_at: Optional[datetime] = None

    # Closure
    closing_started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    winner_id: Optional[str] = None
    final_amount: Optional[float] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None

    # Hand-off to order creation (sold auctions only)
    order_status: OrderStatus = "not_required"
    order_id: Optional[str] = None
    order_attempts: int = 0
    order_last_error: Optional[str] = None

    archived: bool = False
    archived_at: Optional[datetime] = None


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"


def auction_key_for_listing(listing_id: str) -> str:
    """One auction per listing: the listing id is baked into the document key."""
    return f"auction::{listing_id}"
