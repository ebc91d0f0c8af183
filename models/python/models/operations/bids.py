"""
Bid ledger operations.

Append-only, one ordered sequence per auction. A bid's sequence number is the
auction's ``total_bids`` right after the CAS write that accepted it, so exactly
one writer ever owns a slot and appends need no coordination of their own.
The heavy bid-placement logic lives in operations/auctions.py.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional

from couchbase.exceptions import DocumentExistsException

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid, BidData, bid_key

logger = logging.getLogger(__name__)

_READ_BATCH_SIZE = 50


@dataclass
class LedgerTotals:
    total_bids: int
    current_bid: Optional[float]
    highest_bidder_id: Optional[str]
    missing_sequences: List[int] = field(default_factory=list)


async def ledger_append(auction_id: str, bid: BidData) -> int:
    """Write one ledger entry; idempotent on (auction_id, sequence)."""
    await Bid.create_or_update(bid_key(auction_id, bid.sequence), bid, user_id=bid.bidder_id)
    return bid.sequence


async def _high_water_mark(auction_id: str) -> int:
    auction = await Auction.get(auction_id)
    return auction.data.total_bids if auction else 0


async def ledger_iter(
    auction_id: str,
    after_sequence: int = 0,
    upto_sequence: Optional[int] = None,
) -> AsyncIterator[Bid]:
    """Yield ledger entries oldest first, starting after *after_sequence*.

    The upper bound is fixed when iteration starts, so the sequence is finite
    even while bids keep arriving; restart from the last sequence seen to pick
    up newer entries.
    """
    if upto_sequence is None:
        upto_sequence = await _high_water_mark(auction_id)

    seq = after_sequence + 1
    while seq <= upto_sequence:
        batch = range(seq, min(seq + _READ_BATCH_SIZE, upto_sequence + 1))
        bids = await asyncio.gather(*(Bid.get(bid_key(auction_id, s)) for s in batch))
        for bid in bids:
            if bid is not None:
                yield bid
        seq = batch.stop


async def ledger_read_all(auction_id: str, after_sequence: int = 0) -> List[Bid]:
    return [bid async for bid in ledger_iter(auction_id, after_sequence)]


async def ledger_recompute(auction_id: str) -> LedgerTotals:
    """Rebuild the denormalized high-bid fields from the ledger alone."""
    upto = await _high_water_mark(auction_id)
    bids = [bid async for bid in ledger_iter(auction_id, upto_sequence=upto)]

    present = {b.data.sequence for b in bids}
    missing = [s for s in range(1, upto + 1) if s not in present]

    if not bids:
        return LedgerTotals(total_bids=0, current_bid=None, highest_bidder_id=None, missing_sequences=missing)

    # Highest amount wins; on a tie the earlier sequence keeps it
    best = max(bids, key=lambda b: (b.data.amount, -b.data.sequence))
    return LedgerTotals(
        total_bids=max(present),
        current_bid=best.data.amount,
        highest_bidder_id=best.data.bidder_id,
        missing_sequences=missing,
    )


async def ledger_restore(
    auction_id: str,
    sequence: int,
    bidder_id: str,
    amount: float,
    placed_at: datetime,
    fallback_previous_amount: float,
) -> bool:
    """Rebuild one ledger entry whose append was lost. Returns True if it wrote one.

    Uses insert, so an append that lands concurrently is never overwritten.
    """
    if await Bid.get(bid_key(auction_id, sequence)) is not None:
        return False

    previous = await Bid.get(bid_key(auction_id, sequence - 1)) if sequence > 1 else None
    bid = BidData(
        auction_id=auction_id,
        bidder_id=bidder_id,
        amount=amount,
        previous_amount=previous.data.amount if previous else fallback_previous_amount,
        sequence=sequence,
        placed_at=placed_at,
    )
    try:
        await Bid.create(bid, key=bid_key(auction_id, sequence), user_id=bidder_id)
    except DocumentExistsException:
        return False
    logger.warning(f"Ledger entry rematerialised for auction {auction_id} (sequence {sequence})")
    return True


async def ledger_ensure_tail(auction: Auction) -> bool:
    """Rematerialise the newest accepted bid if its ledger append was lost.

    The auction document always describes its latest bid completely
    (``total_bids``, ``current_bid``, ``highest_bidder_id``, ``last_bid_at``),
    so the tail entry can be rebuilt from it.
    """
    d = auction.data
    if d.total_bids == 0 or not d.highest_bidder_id:
        return False
    return await ledger_restore(
        auction.id,
        d.total_bids,
        d.highest_bidder_id,
        d.current_bid,
        d.last_bid_at or d.updated_at or datetime.now(timezone.utc),
        d.config.starting_bid,
    )


async def ledger_velocity(
    auction_id: str,
    window_seconds: int = 300,
    now: Optional[datetime] = None,
) -> float:
    """Accepted bids per minute over the trailing window, read newest first."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=window_seconds)

    upto = await _high_water_mark(auction_id)
    count = 0
    while upto > 0:
        start = max(upto - _READ_BATCH_SIZE, 0)
        batch = [bid async for bid in ledger_iter(auction_id, start, upto)]
        recent = [b for b in batch if b.data.placed_at >= cutoff]
        count += len(recent)
        if len(recent) < len(batch):
            break
        upto = start

    return round(count / (window_seconds / 60), 2)


async def bid_get_by_bidder(bidder_id: str, limit: int = 50) -> List[Bid]:
    """Get a bidder's bid history, most recent first."""
    keyspace = Bid.get_keyspace()
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE bidder_id = $bidder_id "
        f"ORDER BY placed_at DESC "
        f"LIMIT {int(limit)}"
    )
    rows = await keyspace.query(query, bidder_id=bidder_id)
    return Bid.from_rows(rows)
