"""
Auction state machine with CAS-guarded atomic transitions.

    scheduled -> active -> ending -> sold | unsold | reserve_not_met
    scheduled | active -> cancelled

- _auction_cas_retry does every read-modify-write: the mutator re-runs the
  pure rules in auction_rules.py against the freshest snapshot on each attempt,
  so a bid is never validated against stale state.
- Exponential backoff on CASMismatchException, bounded retries, then
  AuctionWriteConflict (transient; the caller re-fetches and resubmits).
- Transitions return the events to broadcast. Nothing in here knows about
  sockets or rooms.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional

from couchbase.exceptions import CASMismatchException, CouchbaseException, DocumentExistsException

from clients.notifications import (
    notify,
    AUCTION_CANCELLED,
    AUCTION_ENDED,
    BID_OUTBID,
    BID_PLACED,
    BID_WON,
)
from models.entities.couchbase.auctions import (
    Auction,
    AuctionConfig,
    AuctionData,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    auction_key_for_listing,
)
from models.entities.couchbase.bids import BidData
from models.operations.auction_events import (
    AuctionEvent,
    bid_accepted_event,
    closed_event,
    extended_event,
    snapshot_event,
    started_event,
)
from models.operations.auction_rules import (
    BidDecision,
    activate,
    apply_bid,
    closure_outcome,
    initial_status,
    is_due_for_closure,
    validate_bid,
)
from models.operations.bids import (
    LedgerTotals,
    ledger_append,
    ledger_ensure_tail,
    ledger_recompute,
    ledger_restore,
)
from models.operations.exceptions import (
    AuctionError,
    AuctionNotFound,
    AuctionPermissionDenied,
    AuctionWriteConflict,
    InvalidAuctionTransition,
)
from models.operations.orders import order_create_for_auction

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5

# Returned by the closure claim when another closer already moved the auction to "ending"
_RESUME_CLOSURE = "resume"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


@dataclass
class TransitionResult:
    auction: Auction
    changed: bool
    reason: Optional[str] = None
    events: List[AuctionEvent] = field(default_factory=list)


@dataclass
class BidResult:
    decision: BidDecision
    auction: Auction
    sequence: Optional[int] = None
    extended_until: Optional[datetime] = None
    events: List[AuctionEvent] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.decision.accepted


@dataclass
class ConsistencyReport:
    auction_id: str
    consistent: bool
    auction_total_bids: int
    auction_current_bid: float
    ledger: LedgerTotals
    repaired_tail: bool = False


# ---------------------------------------------------------------------------
# CAS-retry helper
# ---------------------------------------------------------------------------

async def _auction_cas_retry(
    auction_id: str,
    mutator: Callable[[AuctionData], Optional[Any]],
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> tuple[Auction, Optional[Any]]:
    """Read-modify-write an auction with CAS-guarded retry.

    *mutator* receives ``AuctionData`` and mutates it in place. It returns
    ``None`` to commit, or any other value to abort without writing; that
    value is handed back alongside the untouched snapshot. On
    ``CASMismatchException`` the helper re-reads and retries with exponential
    backoff (10 ms, 20 ms, 40 ms, …).
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        auction = await Auction.get(auction_id)
        if not auction:
            raise AuctionNotFound(f"Auction {auction_id} not found")

        pristine = copy.deepcopy(auction.data)
        abort = mutator(auction.data)
        if abort is not None:
            auction.data = pristine
            return auction, abort

        try:
            await Auction.update(auction)
            return auction, None
        except CASMismatchException:
            if attempt == max_retries:
                break
            logger.debug(f"CAS mismatch on auction {auction_id} (attempt {attempt + 1}), retrying")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    raise AuctionWriteConflict(f"Concurrent update conflict on auction {auction_id}, please retry")


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

async def auction_create(
    seller_id: str,
    listing_id: str,
    config: AuctionConfig,
    starts_at: datetime,
    ends_at: datetime,
    now: Optional[datetime] = None,
) -> Auction:
    """Create the auction for a listing published as auction-type."""
    now = now or _utcnow()
    if ends_at <= starts_at:
        raise ValueError("Auction must end after it starts")
    if ends_at <= now:
        raise ValueError("Auction end time must be in the future")
    if config.reserve_price is not None and config.reserve_price < config.starting_bid:
        raise ValueError("Reserve price cannot be below the starting bid")

    data = AuctionData(
        seller_id=seller_id,
        listing_id=listing_id,
        config=config,
        starts_at=starts_at,
        ends_at=ends_at,
        effective_ends_at=ends_at,
        current_bid=config.starting_bid,
        status=initial_status(starts_at, now),
    )
    try:
        auction = await Auction.create(data, key=auction_key_for_listing(listing_id), user_id=seller_id)
    except DocumentExistsException:
        raise ValueError(f"Listing {listing_id} already has an auction")

    logger.info(f"Auction {auction.id} created for listing {listing_id} ({data.status}, ends {ends_at.isoformat()})")
    return auction


async def auction_get(auction_id: str) -> Optional[Auction]:
    return await Auction.get(auction_id)


async def auction_snapshot_event(auction_id: str, now: Optional[datetime] = None) -> AuctionEvent:
    auction = await Auction.get(auction_id)
    if not auction:
        raise AuctionNotFound(f"Auction {auction_id} not found")
    return snapshot_event(auction, now)


async def auction_search(
    status: Optional[str] = "active",
    seller_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Auction]:
    """Search auctions with optional filters, soonest-ending first."""
    keyspace = Auction.get_keyspace()
    conditions = ["archived = false"]
    params: Dict[str, Any] = {}

    if status:
        conditions.append("status = $status")
        params["status"] = status
    if seller_id:
        conditions.append("seller_id = $seller_id")
        params["seller_id"] = seller_id

    where = " AND ".join(conditions)
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE {where} "
        f"ORDER BY effective_ends_at ASC "
        f"LIMIT {int(limit)} OFFSET {int(offset)}"
    )
    rows = await keyspace.query(query, **params)
    return Auction.from_rows(rows)


async def auction_get_by_seller(seller_id: str) -> List[Auction]:
    keyspace = Auction.get_keyspace()
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE seller_id = $seller_id ORDER BY created_at DESC"
    )
    rows = await keyspace.query(query, seller_id=seller_id)
    return Auction.from_rows(rows)


async def auction_update_config(
    auction_id: str,
    actor_id: str,
    config: AuctionConfig,
    now: Optional[datetime] = None,
) -> Auction:
    """Change the terms of an auction that has not started yet."""
    now = now or _utcnow()

    def _mutate(d: AuctionData) -> Optional[AuctionError]:
        if d.seller_id != actor_id:
            return AuctionPermissionDenied("Not your auction")
        if d.status != "scheduled" or now >= d.starts_at:
            return InvalidAuctionTransition("Auction terms are frozen once the auction is active")
        if config.reserve_price is not None and config.reserve_price < config.starting_bid:
            return InvalidAuctionTransition("Reserve price cannot be below the starting bid")
        d.config = config
        d.current_bid = config.starting_bid
        return None

    auction, err = await _auction_cas_retry(auction_id, _mutate)
    if err is not None:
        raise err
    return auction


# ---------------------------------------------------------------------------
# Bid placement (CAS-critical)
# ---------------------------------------------------------------------------

async def auction_place_bid(
    auction_id: str,
    bidder_id: str,
    amount: float,
    now: Optional[datetime] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> BidResult:
    """
    Atomically place a bid on an auction.

    CAS flow, repeated on conflict:
    1. Read the persisted auction with its CAS
    2. Lazily activate it if it was scheduled and its start time has passed
    3. Validate (status, timing, amount, not own auction)
    4. Apply the bid and the anti-snipe extension
    5. CAS-write; on mismatch go back to 1

    After the commit the bid is appended to the ledger under the sequence the
    commit assigned, and the outbid / seller notifications are fired.
    Rejections come back in ``BidResult.decision`` without any write.
    """
    now = now or _utcnow()
    amount = float(amount)
    state: Dict[str, Any] = {}

    def _mutate(d: AuctionData) -> Optional[BidDecision]:
        state["previous_bidder_id"] = d.highest_bidder_id
        state["previous_amount"] = d.current_bid
        state["previous_bid_at"] = d.last_bid_at
        state["activated"] = activate(d, now)

        decision = validate_bid(d, bidder_id, amount, now)
        if not decision.accepted:
            return decision

        state["new_end"] = apply_bid(d, bidder_id, amount, now)
        return None

    auction, rejection = await _auction_cas_retry(auction_id, _mutate, max_retries)
    if rejection is not None:
        logger.info(
            f"Bid rejected on auction {auction_id}: bidder={bidder_id}, amount={amount}, "
            f"reason={rejection.reason.value}"
        )
        return BidResult(decision=rejection, auction=auction)

    d = auction.data
    new_end: Optional[datetime] = state["new_end"]
    sequence = d.total_bids

    try:
        await ledger_append(auction_id, BidData(
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            previous_amount=state["previous_amount"],
            sequence=sequence,
            placed_at=now,
            extended_ends_at=new_end,
        ))
    except CouchbaseException as e:
        # The auction document still describes this bid; ledger_ensure_tail rebuilds it
        logger.error(f"Ledger append failed for auction {auction_id} sequence {sequence}: {e}")

    # The snapshot this bid replaced described bid sequence - 1 completely
    if sequence > 1 and state["previous_bidder_id"]:
        try:
            await ledger_restore(
                auction_id,
                sequence - 1,
                state["previous_bidder_id"],
                state["previous_amount"],
                state["previous_bid_at"] or now,
                d.config.starting_bid,
            )
        except CouchbaseException as e:
            logger.error(f"Ledger check failed for auction {auction_id} sequence {sequence - 1}: {e}")

    events: List[AuctionEvent] = []
    if state["activated"]:
        events.append(started_event(auction))
    events.append(bid_accepted_event(auction, amount, bidder_id, new_end))
    if new_end is not None:
        events.append(extended_event(auction_id, new_end))
        logger.info(f"Auction {auction_id} extended to {new_end.isoformat()} (extension #{d.extensions_count})")

    previous_bidder_id = state["previous_bidder_id"]
    if previous_bidder_id and previous_bidder_id != bidder_id:
        notify(previous_bidder_id, BID_OUTBID, {
            "auctionId": auction_id,
            "listingId": d.listing_id,
            "currentBid": amount,
        })
    notify(d.seller_id, BID_PLACED, {
        "auctionId": auction_id,
        "listingId": d.listing_id,
        "amount": amount,
        "totalBids": d.total_bids,
    })

    logger.info(f"Bid accepted on auction {auction_id}: bidder={bidder_id}, amount={amount}, sequence={sequence}")
    return BidResult(
        decision=BidDecision.accept(),
        auction=auction,
        sequence=sequence,
        extended_until=new_end,
        events=events,
    )


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

async def auction_activate(auction_id: str, now: Optional[datetime] = None) -> TransitionResult:
    """Transition a scheduled auction to active once its start time has passed."""
    now = now or _utcnow()

    def _mutate(d: AuctionData) -> Optional[str]:
        if not activate(d, now):
            return f"Cannot activate: status is {d.status}, starts at {d.starts_at.isoformat()}"
        return None

    auction, skipped = await _auction_cas_retry(auction_id, _mutate)
    if skipped is not None:
        return TransitionResult(auction=auction, changed=False, reason=skipped)

    logger.info(f"Auction {auction_id} is now active")
    return TransitionResult(auction=auction, changed=True, events=[started_event(auction)])


async def auction_cancel(
    auction_id: str,
    actor_id: str,
    is_admin: bool = False,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Cancel an open auction.

    Sellers may cancel their own auction while nobody has bid; admins may
    cancel any open auction. No order is ever created for a cancelled auction.
    """
    now = now or _utcnow()

    def _mutate(d: AuctionData) -> Optional[AuctionError]:
        if d.status not in OPEN_STATUSES:
            return InvalidAuctionTransition(f"Cannot cancel auction with status: {d.status}")
        if not is_admin:
            if d.seller_id != actor_id:
                return AuctionPermissionDenied("Not your auction")
            if d.total_bids > 0:
                return InvalidAuctionTransition("Cannot cancel auction with existing bids")
        d.status = "cancelled"
        d.closed_at = now
        d.cancelled_by = actor_id
        d.cancel_reason = reason
        return None

    auction, err = await _auction_cas_retry(auction_id, _mutate)
    if err is not None:
        raise err

    d = auction.data
    logger.info(f"Auction {auction_id} cancelled by {actor_id}" + (f": {reason}" if reason else ""))
    notify(d.highest_bidder_id, AUCTION_CANCELLED, {"auctionId": auction_id, "listingId": d.listing_id})
    return TransitionResult(auction=auction, changed=True, events=[closed_event(auction)])


async def auction_close(
    auction_id: str,
    now: Optional[datetime] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> TransitionResult:
    """
    Close an auction whose clock has run out. Exactly-once per auction.

    1. Claim: active -> ending, guarded on ``now >= effective_ends_at`` inside
       the CAS write. From here on no bid can be accepted.
    2. Repair the ledger tail if its append was lost.
    3. Finalize: ending -> sold | unsold | reserve_not_met, guarded on
       ``status == ending``. Only the writer that wins this CAS goes on.
    4. Sold: hand off to order creation. A failure there is recorded on the
       auction and retried by the sweeper; the terminal status stands.

    An auction found already in ``ending`` (a closer that died mid-way, or a
    concurrent sweep) is resumed from step 2; the finalize guard keeps two
    resumers from both settling it.
    """
    now = now or _utcnow()

    def _claim(d: AuctionData) -> Optional[str]:
        if d.status == "ending":
            return _RESUME_CLOSURE
        if not is_due_for_closure(d, now):
            return f"Not closable: status is {d.status}, ends at {d.effective_ends_at.isoformat()}"
        d.status = "ending"
        d.closing_started_at = now
        return None

    auction, skipped = await _auction_cas_retry(auction_id, _claim, max_retries)
    if skipped is not None and skipped != _RESUME_CLOSURE:
        return TransitionResult(auction=auction, changed=False, reason=skipped)

    try:
        await ledger_ensure_tail(auction)
    except CouchbaseException as e:
        logger.warning(f"Could not verify ledger tail for auction {auction_id}: {e}")

    def _finalize(d: AuctionData) -> Optional[str]:
        if d.status != "ending":
            return f"Already closed (status: {d.status})"
        outcome = closure_outcome(d)
        d.status = outcome
        d.closed_at = now
        if outcome == "sold":
            d.winner_id = d.highest_bidder_id
            d.final_amount = d.current_bid
            d.order_status = "pending"
        return None

    auction, skipped = await _auction_cas_retry(auction_id, _finalize, max_retries)
    if skipped is not None:
        return TransitionResult(auction=auction, changed=False, reason=skipped)

    d = auction.data
    logger.info(
        f"Auction {auction_id} closed: outcome={d.status}, winner={d.winner_id}, "
        f"final={d.final_amount}, bids={d.total_bids}"
    )

    if d.status == "sold":
        auction = await _hand_off_order(auction)
        d = auction.data
        notify(d.winner_id, BID_WON, {
            "auctionId": auction_id,
            "listingId": d.listing_id,
            "finalAmount": d.final_amount,
            "orderRef": d.order_id,
        })

    notify(d.seller_id, AUCTION_ENDED, {
        "auctionId": auction_id,
        "listingId": d.listing_id,
        "outcome": d.status,
        "finalAmount": d.final_amount,
    })
    return TransitionResult(auction=auction, changed=True, events=[closed_event(auction)])


# ---------------------------------------------------------------------------
# Settlement hand-off
# ---------------------------------------------------------------------------

async def _hand_off_order(auction: Auction) -> Auction:
    """Ask the order collaborator for the sold auction's order and record the outcome.

    Never raises: the auction is already terminal, and whatever happens here
    is picked up again by the order-retry sweep.
    """
    d = auction.data
    try:
        order_id = await order_create_for_auction(
            auction_id=auction.id,
            listing_id=d.listing_id,
            buyer_id=d.winner_id,
            seller_id=d.seller_id,
            amount=d.final_amount,
        )
    except Exception as e:
        logger.error(f"Order creation failed for auction {auction.id}: {e}")
        error = str(e)[:500]

        def _failed(ad: AuctionData) -> Optional[str]:
            if ad.order_status == "created":
                return "order already created"
            ad.order_status = "failed"
            ad.order_attempts += 1
            ad.order_last_error = error
            return None

        return await _record_hand_off(auction, _failed)

    def _created(ad: AuctionData) -> Optional[str]:
        if ad.order_status == "created":
            return "order already recorded"
        ad.order_status = "created"
        ad.order_id = order_id
        ad.order_attempts += 1
        ad.order_last_error = None
        return None

    return await _record_hand_off(auction, _created)


async def _record_hand_off(auction: Auction, mutator: Callable[[AuctionData], Optional[str]]) -> Auction:
    try:
        updated, _ = await _auction_cas_retry(auction.id, mutator)
        return updated
    except (AuctionError, CouchbaseException) as e:
        logger.error(f"Could not record order hand-off for auction {auction.id}: {e}")
        return auction


async def auction_retry_order(auction_id: str) -> TransitionResult:
    """Retry order creation for a sold auction whose hand-off did not complete."""
    auction = await Auction.get(auction_id)
    if not auction:
        raise AuctionNotFound(f"Auction {auction_id} not found")
    if auction.data.status != "sold" or auction.data.order_status == "created":
        return TransitionResult(auction=auction, changed=False, reason="No order hand-off pending")

    auction = await _hand_off_order(auction)
    if auction.data.order_status != "created":
        return TransitionResult(auction=auction, changed=False, reason=auction.data.order_last_error)

    logger.info(f"Order {auction.data.order_id} created for auction {auction_id} on retry")
    return TransitionResult(auction=auction, changed=True, events=[closed_event(auction)])


# ---------------------------------------------------------------------------
# Sweeper queries
# ---------------------------------------------------------------------------

async def auction_find_due_for_closure(now: Optional[datetime] = None, limit: int = 500) -> List[Auction]:
    """Active auctions past their effective end, plus closures left half-way in ``ending``."""
    now = now or _utcnow()
    keyspace = Auction.get_keyspace()
    due = await keyspace.query(
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE status = $status AND STR_TO_MILLIS(effective_ends_at) <= $now_ms "
        f"ORDER BY effective_ends_at ASC "
        f"LIMIT {int(limit)}",
        status="active",
        now_ms=_ms(now),
    )
    stuck = await keyspace.query(
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE status = $status "
        f"LIMIT {int(limit)}",
        status="ending",
    )
    return Auction.from_rows(due) + Auction.from_rows(stuck)


async def auction_find_due_for_activation(now: Optional[datetime] = None, limit: int = 500) -> List[Auction]:
    now = now or _utcnow()
    keyspace = Auction.get_keyspace()
    rows = await keyspace.query(
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE status = $status AND STR_TO_MILLIS(starts_at) <= $now_ms "
        f"ORDER BY starts_at ASC "
        f"LIMIT {int(limit)}",
        status="scheduled",
        now_ms=_ms(now),
    )
    return Auction.from_rows(rows)


async def auction_find_pending_orders(
    now: Optional[datetime] = None,
    grace_seconds: int = 120,
    limit: int = 100,
) -> List[Auction]:
    """Sold auctions whose order hand-off failed, or stalled for longer than the grace period."""
    now = now or _utcnow()
    keyspace = Auction.get_keyspace()
    rows = await keyspace.query(
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE status = $status AND order_status IN $order_statuses "
        f"ORDER BY closed_at ASC "
        f"LIMIT {int(limit)}",
        status="sold",
        order_statuses=["pending", "failed"],
    )
    stale_before = now - timedelta(seconds=grace_seconds)
    return [
        a for a in Auction.from_rows(rows)
        if a.data.order_status == "failed"
        or (a.data.closed_at is not None and a.data.closed_at <= stale_before)
    ]


async def auction_archive_expired(
    now: Optional[datetime] = None,
    retention_days: int = 30,
    limit: int = 1000,
) -> int:
    """Flip the archive flag on terminal auctions closed before the retention window."""
    now = now or _utcnow()
    cutoff = now - timedelta(days=retention_days)
    keyspace = Auction.get_keyspace()
    rows = await keyspace.query(
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE status IN $statuses AND archived = false "
        f"AND STR_TO_MILLIS(closed_at) < $cutoff_ms "
        f"LIMIT {int(limit)}",
        statuses=list(TERMINAL_STATUSES),
        cutoff_ms=_ms(cutoff),
    )

    def _archive(d: AuctionData) -> Optional[str]:
        if d.archived or d.status not in TERMINAL_STATUSES:
            return "not archivable"
        d.archived = True
        d.archived_at = now
        return None

    archived = 0
    for auction in Auction.from_rows(rows):
        try:
            _, skipped = await _auction_cas_retry(auction.id, _archive)
        except AuctionError as e:
            logger.warning(f"Could not archive auction {auction.id}: {e}")
            continue
        if skipped is None:
            archived += 1
    return archived


# ---------------------------------------------------------------------------
# Consistency
# ---------------------------------------------------------------------------

async def auction_check_consistency(auction_id: str) -> ConsistencyReport:
    """Compare the denormalized high-bid fields with a recomputation from the ledger."""
    auction = await Auction.get(auction_id)
    if not auction:
        raise AuctionNotFound(f"Auction {auction_id} not found")

    repaired = await ledger_ensure_tail(auction)
    totals = await ledger_recompute(auction_id)

    d = auction.data
    consistent = (
        totals.total_bids == d.total_bids
        and not totals.missing_sequences
        and (
            d.total_bids == 0
            or (totals.current_bid == d.current_bid and totals.highest_bidder_id == d.highest_bidder_id)
        )
    )
    if not consistent:
        logger.warning(
            f"Auction {auction_id} diverges from its ledger: auction=({d.total_bids}, {d.current_bid}, "
            f"{d.highest_bidder_id}) ledger=({totals.total_bids}, {totals.current_bid}, "
            f"{totals.highest_bidder_id}) missing={totals.missing_sequences}"
        )
    return ConsistencyReport(
        auction_id=auction_id,
        consistent=consistent,
        auction_total_bids=d.total_bids,
        auction_current_bid=d.current_bid,
        ledger=totals,
        repaired_tail=repaired,
    )
