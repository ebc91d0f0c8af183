"""
Realtime events produced by auction transitions.

Transitions in operations/auctions.py return these instead of emitting them;
the broadcast gateway in the API service fans them out to room members.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from models.entities.couchbase.auctions import Auction
from models.operations.auction_rules import minimum_next_bid

SNAPSHOT = "auction.snapshot"
STARTED = "auction.started"
BID_ACCEPTED = "auction.bidAccepted"
EXTENDED = "auction.extended"
CLOSED = "auction.closed"
PRESENCE = "auction.presence"
BID_RESULT = "auction.bidResult"
ERROR = "auction.error"


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


class AuctionEvent(BaseModel):
    type: str
    auction_id: str
    data: Dict[str, Any] = {}
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> Dict[str, Any]:
        return {
            "event": self.type,
            "auctionId": self.auction_id,
            "data": self.data,
            "emittedAt": self.emitted_at.isoformat(),
        }


def snapshot_event(auction: Auction, now: Optional[datetime] = None) -> AuctionEvent:
    """Full current state; sent first to every member that joins a room."""
    d = auction.data
    now = now or datetime.now(timezone.utc)
    reserve = d.config.reserve_price
    return AuctionEvent(
        type=SNAPSHOT,
        auction_id=auction.id,
        data={
            "listingId": d.listing_id,
            "sellerId": d.seller_id,
            "status": d.status,
            "startingBid": d.config.starting_bid,
            "bidIncrement": d.config.bid_increment,
            "currentBid": d.current_bid,
            "minimumNextBid": minimum_next_bid(d),
            "highestBidderId": d.highest_bidder_id,
            "totalBids": d.total_bids,
            "hasReserve": reserve is not None,
            "reserveMet": reserve is None or (d.total_bids > 0 and d.current_bid >= reserve),
            "startTime": _iso(d.starts_at),
            "endTime": _iso(d.effective_ends_at),
            "extensionsCount": d.extensions_count,
            "winnerId": d.winner_id,
            "finalAmount": d.final_amount,
            "orderRef": d.order_id,
            "serverTime": now.isoformat(),
        },
    )


def started_event(auction: Auction) -> AuctionEvent:
    d = auction.data
    return AuctionEvent(
        type=STARTED,
        auction_id=auction.id,
        data={"startTime": _iso(d.starts_at), "endTime": _iso(d.effective_ends_at)},
    )


def bid_accepted_event(
    auction: Auction,
    amount: float,
    bidder_id: str,
    new_end: Optional[datetime] = None,
) -> AuctionEvent:
    data: Dict[str, Any] = {
        "amount": amount,
        "bidderId": bidder_id,
        "totalBids": auction.data.total_bids,
        "minimumNextBid": minimum_next_bid(auction.data),
    }
    if new_end is not None:
        data["newEndTime"] = new_end.isoformat()
    return AuctionEvent(type=BID_ACCEPTED, auction_id=auction.id, data=data)


def extended_event(auction_id: str, new_end: datetime) -> AuctionEvent:
    return AuctionEvent(type=EXTENDED, auction_id=auction_id, data={"newEndTime": new_end.isoformat()})


def closed_event(auction: Auction) -> AuctionEvent:
    d = auction.data
    data: Dict[str, Any] = {"outcome": d.status}
    if d.winner_id:
        data["winnerId"] = d.winner_id
    if d.final_amount is not None:
        data["finalAmount"] = d.final_amount
    if d.order_id:
        data["orderRef"] = d.order_id
    return AuctionEvent(type=CLOSED, auction_id=auction.id, data=data)


def presence_event(auction_id: str, active_users: int) -> AuctionEvent:
    return AuctionEvent(type=PRESENCE, auction_id=auction_id, data={"activeUsers": active_users})
