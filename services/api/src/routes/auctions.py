"""
API endpoints for auctions and bidding.

POST   /auctions/                  — create auction for a listing (seller)
GET    /auctions/                  — search auctions (public)
GET    /auctions/me                — caller's own auctions
GET    /auctions/{id}              — auction detail
PATCH  /auctions/{id}/config       — change terms while still scheduled (seller)
GET    /auctions/{id}/bids         — bid ledger
POST   /auctions/{id}/bid          — place a bid
POST   /auctions/{id}/cancel       — cancel (seller with no bids, or admin)
GET    /auctions/{id}/consistency  — ledger vs. auction check (admin)
GET    /auctions/{id}/stream       — SSE stream of room events
WS     /auctions/ws                — join/leave rooms, place bids, receive room events
"""

import asyncio
import json
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

from couchbase.exceptions import CouchbaseException
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

import conf
from models.entities.couchbase.auctions import Auction, AuctionConfig, TERMINAL_STATUSES
from models.operations.auction_events import BID_RESULT, CLOSED, ERROR, SNAPSHOT
from models.operations.auction_rules import minimum_next_bid
from models.operations.auctions import (
    BidResult,
    auction_cancel,
    auction_check_consistency,
    auction_create,
    auction_get,
    auction_get_by_seller,
    auction_place_bid,
    auction_search,
    auction_update_config,
)
from models.operations.bids import ledger_read_all
from models.operations.exceptions import (
    AuctionError,
    AuctionNotFound,
    AuctionPermissionDenied,
    AuctionWriteConflict,
    InvalidAuctionTransition,
)
from realtime import Connection, get_gateway
from utils import log

from .dependencies import is_admin, require_admin, require_authenticated

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class AuctionTermsRequest(BaseModel):
    starting_bid: float = Field(gt=0)
    bid_increment: float = Field(default=10.0, gt=0)
    reserve_price: Optional[float] = Field(default=None, gt=0)
    extension_window_seconds: Optional[int] = Field(default=None, gt=0)

    def to_config(self) -> AuctionConfig:
        window = self.extension_window_seconds or conf.get_auction_conf().extension_window_seconds
        return AuctionConfig(
            starting_bid=self.starting_bid,
            bid_increment=self.bid_increment,
            reserve_price=self.reserve_price,
            extension_window_seconds=window,
        )


class CreateAuctionRequest(AuctionTermsRequest):
    listing_id: str
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    duration_hours: float = Field(default=48.0, gt=0)


class PlaceBidRequest(BaseModel):
    amount: float = Field(gt=0, allow_inf_nan=False)


class CancelAuctionRequest(BaseModel):
    reason: Optional[str] = None


class BidResponse(BaseModel):
    id: str
    auction_id: str
    bidder_id: str
    amount: float
    previous_amount: float
    sequence: int
    placed_at: datetime
    extended_ends_at: Optional[datetime] = None


class PlaceBidResponse(BaseModel):
    accepted: bool
    auction_id: str
    sequence: int
    amount: float
    current_bid: float
    minimum_next_bid: float
    total_bids: int
    effective_ends_at: datetime
    extended: bool


class AuctionConfigResponse(BaseModel):
    starting_bid: float
    bid_increment: float
    has_reserve: bool
    extension_window_seconds: int


class AuctionResponse(BaseModel):
    id: str
    seller_id: str
    listing_id: str
    config: AuctionConfigResponse
    starts_at: datetime
    ends_at: datetime
    effective_ends_at: datetime
    extensions_count: int
    status: str
    current_bid: float
    minimum_next_bid: float
    highest_bidder_id: Optional[str] = None
    total_bids: int
    reserve_met: bool
    winner_id: Optional[str] = None
    final_amount: Optional[float] = None
    order_id: Optional[str] = None
    order_status: str
    closed_at: Optional[datetime] = None


class ConsistencyResponse(BaseModel):
    auction_id: str
    consistent: bool
    auction_total_bids: int
    auction_current_bid: float
    ledger_total_bids: int
    ledger_current_bid: Optional[float] = None
    ledger_highest_bidder_id: Optional[str] = None
    missing_sequences: List[int] = []
    repaired_tail: bool


def _auction_to_response(auction: Auction) -> AuctionResponse:
    d = auction.data
    reserve = d.config.reserve_price
    return AuctionResponse(
        id=auction.id,
        seller_id=d.seller_id,
        listing_id=d.listing_id,
        config=AuctionConfigResponse(
            starting_bid=d.config.starting_bid,
            bid_increment=d.config.bid_increment,
            has_reserve=reserve is not None,
            extension_window_seconds=d.config.extension_window_seconds,
        ),
        starts_at=d.starts_at,
        ends_at=d.ends_at,
        effective_ends_at=d.effective_ends_at,
        extensions_count=d.extensions_count,
        status=d.status,
        current_bid=d.current_bid,
        minimum_next_bid=minimum_next_bid(d),
        highest_bidder_id=d.highest_bidder_id,
        total_bids=d.total_bids,
        reserve_met=reserve is None or (d.total_bids > 0 and d.current_bid >= reserve),
        winner_id=d.winner_id,
        final_amount=d.final_amount,
        order_id=d.order_id,
        order_status=d.order_status,
        closed_at=d.closed_at,
    )


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _raise_for(e: AuctionError):
    if isinstance(e, AuctionNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, AuctionPermissionDenied):
        raise HTTPException(status_code=403, detail=str(e))
    if isinstance(e, AuctionWriteConflict):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidAuctionTransition):
        raise HTTPException(status_code=400, detail=str(e))
    raise HTTPException(status_code=500, detail=str(e))


def _rejection_detail(result: BidResult) -> Dict[str, Any]:
    decision = result.decision
    return {
        "reason": decision.reason.value if decision.reason else None,
        "message": decision.message,
        "minimumAmount": decision.minimum_amount,
    }


# ---------------------------------------------------------------------------
# POST /auctions/ — create auction
# ---------------------------------------------------------------------------

@router.post("/", response_model=AuctionResponse, status_code=201)
async def route_auction_create(
    body: CreateAuctionRequest,
    user: dict = Depends(require_authenticated),
):
    """Create an auction for a listing. Starts immediately unless starts_at is given."""
    now = datetime.now(timezone.utc)
    starts_at = _as_utc(body.starts_at) or now
    ends_at = _as_utc(body.ends_at) or starts_at + timedelta(hours=body.duration_hours)

    try:
        auction = await auction_create(
            seller_id=user["sub"],
            listing_id=body.listing_id,
            config=body.to_config(),
            starts_at=starts_at,
            ends_at=ends_at,
            now=now,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _auction_to_response(auction)


# ---------------------------------------------------------------------------
# GET /auctions/ — search auctions
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[AuctionResponse])
async def route_auctions_search(
    status: str = "active",
    seller_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """Search auctions with optional filters."""
    auctions = await auction_search(status=status, seller_id=seller_id, limit=limit, offset=offset)
    return [_auction_to_response(a) for a in auctions]


# ---------------------------------------------------------------------------
# GET /auctions/me — caller's own auctions
# ---------------------------------------------------------------------------

@router.get("/me", response_model=List[AuctionResponse])
async def route_auctions_mine(user: dict = Depends(require_authenticated)):
    """List the seller's own auctions."""
    auctions = await auction_get_by_seller(user["sub"])
    return [_auction_to_response(a) for a in auctions]


# ---------------------------------------------------------------------------
# GET /auctions/{id} — auction detail
# ---------------------------------------------------------------------------

@router.get("/{auction_id}", response_model=AuctionResponse)
async def route_auction_detail(auction_id: str):
    auction = await auction_get(auction_id)
    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")
    return _auction_to_response(auction)


# ---------------------------------------------------------------------------
# PATCH /auctions/{id}/config — change terms before the start
# ---------------------------------------------------------------------------

@router.patch("/{auction_id}/config", response_model=AuctionResponse)
async def route_auction_update_config(
    auction_id: str,
    body: AuctionTermsRequest,
    user: dict = Depends(require_authenticated),
):
    """Change starting bid, increment, reserve or extension window. Scheduled auctions only."""
    try:
        auction = await auction_update_config(auction_id, user["sub"], body.to_config())
    except AuctionError as e:
        _raise_for(e)
    return _auction_to_response(auction)


# ---------------------------------------------------------------------------
# GET /auctions/{id}/bids — bid ledger
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/bids", response_model=List[BidResponse])
async def route_auction_bids(auction_id: str, after: int = Query(default=0, ge=0)):
    """Ledger entries in acceptance order, optionally only those after a sequence number."""
    auction = await auction_get(auction_id)
    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")
    bids = await ledger_read_all(auction_id, after_sequence=after)
    return [
        BidResponse(
            id=b.id,
            auction_id=b.data.auction_id,
            bidder_id=b.data.bidder_id,
            amount=b.data.amount,
            previous_amount=b.data.previous_amount,
            sequence=b.data.sequence,
            placed_at=b.data.placed_at,
            extended_ends_at=b.data.extended_ends_at,
        )
        for b in bids
    ]


# ---------------------------------------------------------------------------
# POST /auctions/{id}/bid — place a bid
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/bid", response_model=PlaceBidResponse, status_code=201)
async def route_place_bid(
    auction_id: str,
    body: PlaceBidRequest,
    user: dict = Depends(require_authenticated),
):
    """Place a bid on an active auction."""
    try:
        result = await auction_place_bid(
            auction_id=auction_id,
            bidder_id=user["sub"],
            amount=body.amount,
            max_retries=conf.get_auction_conf().bid_max_retries,
        )
    except AuctionError as e:
        _raise_for(e)

    if not result.accepted:
        raise HTTPException(status_code=400, detail=_rejection_detail(result))

    get_gateway().broadcast_all(result.events)

    d = result.auction.data
    return PlaceBidResponse(
        accepted=True,
        auction_id=auction_id,
        sequence=result.sequence,
        amount=body.amount,
        current_bid=d.current_bid,
        minimum_next_bid=minimum_next_bid(d),
        total_bids=d.total_bids,
        effective_ends_at=d.effective_ends_at,
        extended=result.extended_until is not None,
    )


# ---------------------------------------------------------------------------
# POST /auctions/{id}/cancel — cancel auction
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/cancel", response_model=AuctionResponse)
async def route_auction_cancel(
    auction_id: str,
    body: Optional[CancelAuctionRequest] = None,
    user: dict = Depends(require_authenticated),
):
    """Cancel an auction. Sellers only while nobody has bid; admins at any point before close."""
    try:
        result = await auction_cancel(
            auction_id,
            actor_id=user["sub"],
            is_admin=is_admin(user),
            reason=body.reason if body else None,
        )
    except AuctionError as e:
        _raise_for(e)

    get_gateway().broadcast_all(result.events)
    return _auction_to_response(result.auction)


# ---------------------------------------------------------------------------
# GET /auctions/{id}/consistency — ledger recompute (admin)
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/consistency", response_model=ConsistencyResponse)
async def route_auction_consistency(auction_id: str, user: dict = Depends(require_admin)):
    try:
        report = await auction_check_consistency(auction_id)
    except AuctionError as e:
        _raise_for(e)
    return ConsistencyResponse(
        auction_id=report.auction_id,
        consistent=report.consistent,
        auction_total_bids=report.auction_total_bids,
        auction_current_bid=report.auction_current_bid,
        ledger_total_bids=report.ledger.total_bids,
        ledger_current_bid=report.ledger.current_bid,
        ledger_highest_bidder_id=report.ledger.highest_bidder_id,
        missing_sequences=report.ledger.missing_sequences,
        repaired_tail=report.repaired_tail,
    )


# ---------------------------------------------------------------------------
# GET /auctions/{id}/stream — SSE for live room events
# ---------------------------------------------------------------------------

def _is_final(message: dict) -> bool:
    if message.get("event") == CLOSED:
        return True
    return message.get("event") == SNAPSHOT and message.get("data", {}).get("status") in TERMINAL_STATUSES


@router.get("/{auction_id}/stream")
async def route_auction_stream(auction_id: str):
    """Server-Sent Events stream for one auction room.

    Starts with the snapshot and follows with every room event in broadcast
    order. Ends after the auction closes.
    """
    gateway = get_gateway()
    conn = gateway.register()
    try:
        await gateway.join(conn.id, auction_id)
    except AuctionNotFound:
        gateway.disconnect(conn.id)
        raise HTTPException(status_code=404, detail="Auction not found")

    async def event_generator():
        try:
            async for message in conn.messages():
                yield f"event: {message['event']}\ndata: {json.dumps(message)}\n\n"
                if _is_final(message):
                    break
        finally:
            gateway.disconnect(conn.id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# WS /auctions/ws — bidirectional realtime channel
# ---------------------------------------------------------------------------

class _ClientMessage(BaseModel):
    event: str
    auctionId: str
    amount: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    requestId: Optional[str] = None


def _error(message: str, auction_id: Optional[str] = None, request_id: Optional[str] = None) -> dict:
    return {"event": ERROR, "auctionId": auction_id, "data": {"message": message, "requestId": request_id}}


def _bid_result(auction_id: str, request_id: Optional[str], **data) -> dict:
    return {"event": BID_RESULT, "auctionId": auction_id, "data": {"requestId": request_id, **data}}


async def _ws_place_bid(conn: Connection, msg: _ClientMessage) -> dict:
    if not conn.user_id:
        return _error("Authentication required", msg.auctionId, msg.requestId)
    if msg.amount is None:
        return _error("amount is required", msg.auctionId, msg.requestId)

    try:
        result = await auction_place_bid(
            auction_id=msg.auctionId,
            bidder_id=conn.user_id,
            amount=msg.amount,
            max_retries=conf.get_auction_conf().bid_max_retries,
        )
    except AuctionWriteConflict as e:
        return _bid_result(msg.auctionId, msg.requestId, accepted=False, transient=True, message=str(e))
    except AuctionError as e:
        return _error(str(e), msg.auctionId, msg.requestId)
    except CouchbaseException as e:
        logger.error(f"Bid on auction {msg.auctionId} failed: {e}")
        return _error("Bid could not be processed, try again", msg.auctionId, msg.requestId)

    if not result.accepted:
        return _bid_result(msg.auctionId, msg.requestId, accepted=False, **_rejection_detail(result))

    get_gateway().broadcast_all(result.events)
    return _bid_result(msg.auctionId, msg.requestId, accepted=True, sequence=result.sequence, amount=msg.amount)


async def _ws_handle(conn: Connection, raw: str) -> None:
    gateway = get_gateway()
    try:
        msg = _ClientMessage.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        gateway.send(conn.id, _error(f"Malformed message: {e}"))
        return

    if msg.event == "auction.join":
        try:
            await gateway.join(conn.id, msg.auctionId)
        except AuctionNotFound as e:
            gateway.send(conn.id, _error(str(e), msg.auctionId, msg.requestId))
        except (AuctionError, CouchbaseException) as e:
            logger.error(f"Could not load auction {msg.auctionId} for connection {conn.id}: {e}")
            gateway.send(conn.id, _error("Auction is temporarily unavailable", msg.auctionId, msg.requestId))
    elif msg.event == "auction.leave":
        gateway.leave(conn.id, msg.auctionId)
    elif msg.event == "auction.placeBid":
        gateway.send(conn.id, await _ws_place_bid(conn, msg))
    else:
        gateway.send(conn.id, _error(f"Unknown event: {msg.event}", msg.auctionId, msg.requestId))


@router.websocket("/ws")
async def route_auction_ws(websocket: WebSocket, user_id: Optional[str] = Query(default=None)):
    """One connection, any number of auction rooms.

    Inbound: auction.join / auction.leave / auction.placeBid. Outbound: room
    events, plus auction.bidResult and auction.error addressed to this
    connection only.
    """
    await websocket.accept()
    gateway = get_gateway()
    conn = gateway.register(user_id=user_id)

    async def writer():
        async for message in conn.messages():
            await websocket.send_json(message)

    writer_task = asyncio.create_task(writer())
    try:
        while True:
            raw = await websocket.receive_text()
            await _ws_handle(conn, raw)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket {conn.id} disconnected")
    finally:
        gateway.disconnect(conn.id)
        try:
            await writer_task
        except Exception as e:
            logger.debug(f"WebSocket {conn.id} writer stopped: {e}")
