"""Bid placement — tests for the CAS-guarded accept-bid transition.

Tests cover:
    - Reserve scenario: 110 accepted, 105 rejected (min 120), 140 accepted
    - Rejections cause no state mutation and no ledger entry
    - Anti-snipe: two late bids each push the end to bidTime + window
    - Concurrent bids: highest valid amount wins, totals match the ledger
    - Lazy activation of a scheduled auction on first bid
    - Write conflicts surface as AuctionWriteConflict once retries run out
    - A lost ledger append is rebuilt from the auction document, or by the next bid
    - Infinite and NaN amounts are rejected without a write
"""

import asyncio
from datetime import timedelta

import pytest
from couchbase.exceptions import CouchbaseException

import models.operations.auctions as auctions_module
from models.entities.couchbase.auctions import Auction
from models.operations.auction_events import BID_ACCEPTED, EXTENDED, STARTED
from models.operations.auction_rules import RejectionReason
from models.operations.auctions import auction_get, auction_place_bid
from models.operations.bids import ledger_read_all, ledger_recompute
from models.operations.exceptions import AuctionNotFound, AuctionWriteConflict

from conftest import T0


async def test_reserve_scenario_bidding_sequence(make_auction):
    auction = await make_auction(starting_bid=100, bid_increment=10, reserve_price=150)

    first = await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=1))
    assert first.accepted
    assert first.auction.data.current_bid == 110

    low = await auction_place_bid(auction.id, "bidder-2", 105, now=T0 + timedelta(minutes=2))
    assert not low.accepted
    assert low.decision.reason == RejectionReason.BID_TOO_LOW
    assert low.decision.minimum_amount == 120

    second = await auction_place_bid(auction.id, "bidder-2", 140, now=T0 + timedelta(minutes=3))
    assert second.accepted
    assert second.sequence == 2

    stored = await auction_get(auction.id)
    assert stored.data.current_bid == 140
    assert stored.data.highest_bidder_id == "bidder-2"
    assert stored.data.total_bids == 2


async def test_rejected_bid_leaves_no_trace(make_auction, store):
    auction = await make_auction()
    before = store.doc("auctions", auction.id)

    result = await auction_place_bid(auction.id, "bidder-1", 50, now=T0 + timedelta(minutes=1))

    assert not result.accepted
    assert result.events == []
    assert store.doc("auctions", auction.id) == before
    assert await ledger_read_all(auction.id) == []


async def test_seller_self_bid_rejected(make_auction):
    auction = await make_auction(seller_id="seller-9")
    result = await auction_place_bid(auction.id, "seller-9", 500, now=T0 + timedelta(minutes=1))
    assert result.decision.reason == RejectionReason.SELLER_CANNOT_BID


async def test_bid_after_end_rejected(make_auction):
    auction = await make_auction()
    result = await auction_place_bid(auction.id, "bidder-1", 500, now=T0 + timedelta(hours=1))
    assert result.decision.reason == RejectionReason.AUCTION_ENDED


async def test_unknown_auction_raises_not_found(store):
    with pytest.raises(AuctionNotFound):
        await auction_place_bid("auction::missing", "bidder-1", 100, now=T0)


async def test_late_bids_extend_end_time_each_time(make_auction):
    end = T0 + timedelta(hours=1)
    auction = await make_auction(starting_bid=490, bid_increment=10, window=120, ends_at=end)
    await auction_place_bid(auction.id, "bidder-0", 500, now=T0 + timedelta(minutes=5))

    first_time = end - timedelta(seconds=30)
    first = await auction_place_bid(auction.id, "bidder-1", 510, now=first_time)
    assert first.accepted
    assert first.extended_until == first_time + timedelta(seconds=120)

    second_time = first_time + timedelta(seconds=10)
    second = await auction_place_bid(auction.id, "bidder-2", 520, now=second_time)
    assert second.accepted
    assert second.extended_until == second_time + timedelta(seconds=120)
    assert second.extended_until > first.extended_until

    stored = await auction_get(auction.id)
    assert stored.data.effective_ends_at == second_time + timedelta(seconds=120)
    assert stored.data.ends_at == end
    assert stored.data.extensions_count == 2

    types = [e.type for e in second.events]
    assert types == [BID_ACCEPTED, EXTENDED]
    assert second.events[0].data["newEndTime"] == second.extended_until.isoformat()


async def test_early_bid_does_not_extend(make_auction):
    auction = await make_auction()
    result = await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=1))
    assert result.extended_until is None
    assert [e.type for e in result.events] == [BID_ACCEPTED]


async def test_concurrent_bids_highest_wins(make_auction, store):
    auction = await make_auction(starting_bid=100, bid_increment=10)
    now = T0 + timedelta(minutes=10)
    amounts = [110, 150, 130, 200, 120, 180, 160, 140]

    results = await asyncio.gather(*(
        auction_place_bid(auction.id, f"bidder-{i}", amount, now=now, max_retries=50)
        for i, amount in enumerate(amounts)
    ))

    accepted = [r for r in results if r.accepted]
    assert accepted
    assert store.cas_mismatches > 0

    stored = await auction_get(auction.id)
    best = max(accepted, key=lambda r: r.auction.data.current_bid)
    assert stored.data.current_bid == best.auction.data.current_bid
    assert stored.data.highest_bidder_id == best.auction.data.highest_bidder_id
    assert stored.data.total_bids == len(accepted)

    ledger = await ledger_read_all(auction.id)
    assert [b.data.sequence for b in ledger] == list(range(1, len(accepted) + 1))
    ledger_amounts = [b.data.amount for b in ledger]
    assert ledger_amounts == sorted(ledger_amounts)
    assert all(b - a >= 10 for a, b in zip(ledger_amounts, ledger_amounts[1:]))

    totals = await ledger_recompute(auction.id)
    assert totals.total_bids == stored.data.total_bids
    assert totals.current_bid == stored.data.current_bid
    assert totals.highest_bidder_id == stored.data.highest_bidder_id


async def test_first_bid_activates_scheduled_auction(make_auction):
    auction = await make_auction(starts_at=T0 + timedelta(minutes=10), ends_at=T0 + timedelta(hours=2))
    assert auction.data.status == "scheduled"

    early = await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=5))
    assert early.decision.reason == RejectionReason.AUCTION_NOT_ACTIVE
    assert (await auction_get(auction.id)).data.status == "scheduled"

    result = await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=11))
    assert result.accepted
    assert [e.type for e in result.events] == [STARTED, BID_ACCEPTED]
    assert (await auction_get(auction.id)).data.status == "active"


async def test_write_conflict_after_retries_exhausted(make_auction, monkeypatch):
    auction = await make_auction()

    async def always_conflict(item):
        from couchbase.exceptions import CASMismatchException
        raise CASMismatchException()

    monkeypatch.setattr(Auction, "update", always_conflict)
    with pytest.raises(AuctionWriteConflict):
        await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=1), max_retries=2)


class _StoreDown(CouchbaseException):
    def __str__(self):
        return "store unavailable"


async def test_lost_ledger_append_is_rebuilt(make_auction, monkeypatch):
    auction = await make_auction()
    await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=1))

    async def failing_append(auction_id, bid):
        raise _StoreDown()

    original = auctions_module.ledger_append
    monkeypatch.setattr(auctions_module, "ledger_append", failing_append)
    result = await auction_place_bid(auction.id, "bidder-2", 130, now=T0 + timedelta(minutes=2))
    assert result.accepted
    monkeypatch.setattr(auctions_module, "ledger_append", original)

    report = await auctions_module.auction_check_consistency(auction.id)
    assert report.repaired_tail
    assert report.consistent

    ledger = await ledger_read_all(auction.id)
    assert [(b.data.sequence, b.data.bidder_id, b.data.amount) for b in ledger] == [
        (1, "bidder-1", 110),
        (2, "bidder-2", 130),
    ]
    assert ledger[1].data.previous_amount == 110


async def test_lost_append_repaired_by_next_bid(make_auction, monkeypatch):
    auction = await make_auction()

    async def failing_append(auction_id, bid):
        raise _StoreDown()

    original = auctions_module.ledger_append
    monkeypatch.setattr(auctions_module, "ledger_append", failing_append)
    first = await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=1))
    assert first.accepted
    monkeypatch.setattr(auctions_module, "ledger_append", original)

    second = await auction_place_bid(auction.id, "bidder-2", 130, now=T0 + timedelta(minutes=2))
    assert second.accepted

    ledger = await ledger_read_all(auction.id)
    assert [(b.data.sequence, b.data.bidder_id, b.data.amount) for b in ledger] == [
        (1, "bidder-1", 110),
        (2, "bidder-2", 130),
    ]
    assert ledger[0].data.previous_amount == 100
    assert ledger[0].data.placed_at == T0 + timedelta(minutes=1)

    report = await auctions_module.auction_check_consistency(auction.id)
    assert report.consistent
    assert not report.repaired_tail
    assert report.ledger.missing_sequences == []


async def test_non_finite_bid_never_committed(make_auction, store):
    auction = await make_auction()
    for amount in (float("inf"), float("nan")):
        result = await auction_place_bid(auction.id, "bidder-1", amount, now=T0 + timedelta(minutes=1))
        assert not result.accepted
        assert result.decision.reason == RejectionReason.BID_TOO_LOW

    stored = await auction_get(auction.id)
    assert stored.data.current_bid == 100
    assert stored.data.total_bids == 0
    assert await ledger_read_all(auction.id) == []


async def test_outbid_and_seller_notifications(make_auction, notifications):
    auction = await make_auction(seller_id="seller-1")
    await auction_place_bid(auction.id, "bidder-1", 110, now=T0 + timedelta(minutes=1))
    await auction_place_bid(auction.id, "bidder-2", 120, now=T0 + timedelta(minutes=2))

    kinds = [(user, kind) for user, kind, _ in notifications]
    assert ("bidder-1", "bid_outbid") in kinds
    assert kinds.count(("seller-1", "bid_placed")) == 2
    assert ("bidder-2", "bid_outbid") not in kinds
