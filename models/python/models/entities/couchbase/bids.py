from typing import Optional
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class BidData(BaseCouchbaseEntityData):
    auction_id: str
    bidder_id: str
    amount: float
    previous_amount: float
    sequence: int  # server-assigned, 1-based, gap-free per auction
    placed_at: datetime
    extended_ends_at: Optional[datetime] = None  # set when this bid triggered anti-snipe


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"


def bid_key(auction_id: str, sequence: int) -> str:
    return f"{auction_id}::{sequence:08d}"
