"""
Pure auction rules: bid validation, anti-snipe extension, closure outcome.

Nothing in here touches the store. Every function takes an ``AuctionData``
snapshot plus the server clock, which keeps the rules testable without
Couchbase and lets the CAS loop in operations/auctions.py re-run them against
each fresh snapshot it reads.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from models.entities.couchbase.auctions import AuctionData


# Closing or closed; bids on these are late, not premature
ENDED_STATUSES = frozenset({"ending", "sold", "unsold", "reserve_not_met"})


class RejectionReason(str, Enum):
    AUCTION_NOT_ACTIVE = "auction_not_active"
    AUCTION_ENDED = "auction_ended"
    BID_TOO_LOW = "bid_too_low"
    SELLER_CANNOT_BID = "seller_cannot_bid"


@dataclass(frozen=True)
class BidDecision:
    accepted: bool
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None
    minimum_amount: Optional[float] = None

    @classmethod
    def accept(cls) -> "BidDecision":
        return cls(accepted=True)

    @classmethod
    def reject(
        cls,
        reason: RejectionReason,
        message: str,
        minimum_amount: Optional[float] = None,
    ) -> "BidDecision":
        return cls(accepted=False, reason=reason, message=message, minimum_amount=minimum_amount)


def minimum_next_bid(d: AuctionData) -> float:
    return round(d.current_bid + d.config.bid_increment, 2)


def validate_bid(d: AuctionData, bidder_id: str, amount: float, now: datetime) -> BidDecision:
    """Check a proposed bid against a snapshot. First failing check wins."""
    if d.status in ENDED_STATUSES:
        return BidDecision.reject(RejectionReason.AUCTION_ENDED, "Auction has ended")
    if d.status != "active":
        return BidDecision.reject(
            RejectionReason.AUCTION_NOT_ACTIVE,
            f"Auction is not active (status: {d.status})",
        )
    if now >= d.effective_ends_at:
        return BidDecision.reject(RejectionReason.AUCTION_ENDED, "Auction has ended")

    minimum = minimum_next_bid(d)
    if not math.isfinite(amount) or amount < minimum:
        return BidDecision.reject(
            RejectionReason.BID_TOO_LOW,
            f"Minimum bid is {minimum:.2f}",
            minimum_amount=minimum,
        )
    if bidder_id == d.seller_id:
        return BidDecision.reject(
            RejectionReason.SELLER_CANNOT_BID,
            "Sellers cannot bid on their own auction",
        )
    return BidDecision.accept()


def apply_extension(d: AuctionData, now: datetime) -> Optional[datetime]:
    """Anti-snipe: a bid inside the final window resets the clock to a full window.

    Returns the new effective end, or ``None`` if the bid was early enough.
    """
    window = timedelta(seconds=d.config.extension_window_seconds)
    if d.effective_ends_at - now >= window:
        return None
    new_end = now + window
    if new_end <= d.effective_ends_at:
        return None
    d.effective_ends_at = new_end
    d.extensions_count += 1
    return new_end


def apply_bid(d: AuctionData, bidder_id: str, amount: float, now: datetime) -> Optional[datetime]:
    """Record an already-validated bid on the snapshot; returns the extended end, if any."""
    d.current_bid = amount
    d.highest_bidder_id = bidder_id
    d.total_bids += 1
    d.last_bid_at = now
    return apply_extension(d, now)


def initial_status(starts_at: datetime, now: datetime) -> str:
    return "scheduled" if starts_at > now else "active"


def is_due_for_activation(d: AuctionData, now: datetime) -> bool:
    return d.status == "scheduled" and now >= d.starts_at


def is_due_for_closure(d: AuctionData, now: datetime) -> bool:
    return d.status == "active" and now >= d.effective_ends_at


def activate(d: AuctionData, now: datetime) -> bool:
    """scheduled -> active once the start time is reached. Returns True if it flipped."""
    if not is_due_for_activation(d, now):
        return False
    d.status = "active"
    return True


def closure_outcome(d: AuctionData) -> str:
    """Terminal status for an auction whose clock has run out.

    No bids wins over the reserve check: an auction nobody bid on is unsold,
    whatever its reserve.
    """
    if d.total_bids == 0 or not d.highest_bidder_id:
        return "unsold"
    if d.config.reserve_price is not None and d.current_bid < d.config.reserve_price:
        return "reserve_not_met"
    return "sold"
