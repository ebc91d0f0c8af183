"""REST, SSE and WebSocket surfaces — tests through the FastAPI app.

Tests cover:
    - create / detail / search / mine
    - bid acceptance, actionable rejection detail, auth required
    - error mapping: 404, 403, 400 for illegal transitions, 409 on conflict
    - terms editable only while scheduled
    - admin-only consistency check
    - SSE stream of a closed auction ends after the snapshot
    - WebSocket join, snapshot, bid result and broadcast
    - non-finite amounts refused at the edge; a failed room load keeps the socket open
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

import routes.auctions as auction_routes
from main import app
from models.operations.auctions import auction_close
from models.operations.exceptions import AuctionWriteConflict

SELLER = {"X-User-Id": "seller-1"}
BIDDER = {"X-User-Id": "bidder-1"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Roles": "admin"}


@pytest.fixture
async def client(store, notifications, gateway):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _create(client, listing_id="listing-1", **overrides) -> dict:
    body = {"listing_id": listing_id, "starting_bid": 100, "bid_increment": 10, "duration_hours": 2}
    body.update(overrides)
    resp = await client.post("/api/auctions/", json=body, headers=SELLER)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_health(client, monkeypatch):
    import routes.base as base_routes

    async def ok():
        return None

    monkeypatch.setattr(base_routes, "check_connection", ok)
    resp = await client.get("/api/health")
    assert resp.json() == {"status": "ok", "couchbase": "ok"}


async def test_create_and_fetch_auction(client):
    created = await _create(client, reserve_price=500)
    assert created["status"] == "active"
    assert created["current_bid"] == 100
    assert created["minimum_next_bid"] == 110
    assert created["config"]["has_reserve"] is True
    assert created["config"]["extension_window_seconds"] == 120
    assert "reserve_price" not in created["config"]

    detail = await client.get(f"/api/auctions/{created['id']}")
    assert detail.status_code == 200
    assert detail.json()["listing_id"] == "listing-1"

    listed = await client.get("/api/auctions/")
    assert [a["id"] for a in listed.json()] == [created["id"]]

    mine = await client.get("/api/auctions/me", headers=SELLER)
    assert [a["id"] for a in mine.json()] == [created["id"]]


async def test_one_auction_per_listing(client):
    await _create(client)
    resp = await client.post(
        "/api/auctions/",
        json={"listing_id": "listing-1", "starting_bid": 50},
        headers=SELLER,
    )
    assert resp.status_code == 400


async def test_missing_auction_is_404(client):
    assert (await client.get("/api/auctions/auction::nope")).status_code == 404
    resp = await client.post("/api/auctions/auction::nope/bid", json={"amount": 10}, headers=BIDDER)
    assert resp.status_code == 404


async def test_place_bid_and_read_ledger(client):
    auction = await _create(client)
    resp = await client.post(f"/api/auctions/{auction['id']}/bid", json={"amount": 110}, headers=BIDDER)
    assert resp.status_code == 201
    body = resp.json()
    assert body["sequence"] == 1
    assert body["current_bid"] == 110
    assert body["minimum_next_bid"] == 120
    assert body["extended"] is False

    bids = await client.get(f"/api/auctions/{auction['id']}/bids")
    assert [(b["sequence"], b["bidder_id"], b["amount"]) for b in bids.json()] == [(1, "bidder-1", 110)]


async def test_rejected_bid_returns_reason_and_minimum(client):
    auction = await _create(client)
    resp = await client.post(f"/api/auctions/{auction['id']}/bid", json={"amount": 105}, headers=BIDDER)
    assert resp.status_code == 400
    assert resp.json()["detail"] == {
        "reason": "bid_too_low",
        "message": "Minimum bid is 110.00",
        "minimumAmount": 110,
    }


async def test_bid_requires_identity(client):
    auction = await _create(client)
    resp = await client.post(f"/api/auctions/{auction['id']}/bid", json={"amount": 110})
    assert resp.status_code == 401


async def test_write_conflict_maps_to_409(client, monkeypatch):
    auction = await _create(client)

    async def conflicted(**kwargs):
        raise AuctionWriteConflict("busy")

    monkeypatch.setattr(auction_routes, "auction_place_bid", conflicted)
    resp = await client.post(f"/api/auctions/{auction['id']}/bid", json={"amount": 110}, headers=BIDDER)
    assert resp.status_code == 409


async def test_cancel_permissions(client):
    auction = await _create(client)
    url = f"/api/auctions/{auction['id']}/cancel"

    assert (await client.post(url, headers=BIDDER)).status_code == 403

    resp = await client.post(url, json={"reason": "relisting"}, headers=SELLER)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    assert (await client.post(url, headers=ADMIN)).status_code == 400


async def test_config_editable_only_while_scheduled(client):
    starts = datetime.now(timezone.utc) + timedelta(hours=1)
    scheduled = await _create(client, listing_id="later", starts_at=starts.isoformat())
    assert scheduled["status"] == "scheduled"

    resp = await client.patch(
        f"/api/auctions/{scheduled['id']}/config",
        json={"starting_bid": 200, "bid_increment": 25},
        headers=SELLER,
    )
    assert resp.status_code == 200
    assert resp.json()["current_bid"] == 200
    assert resp.json()["minimum_next_bid"] == 225

    active = await _create(client, listing_id="now")
    resp = await client.patch(
        f"/api/auctions/{active['id']}/config",
        json={"starting_bid": 1},
        headers=SELLER,
    )
    assert resp.status_code == 400


async def test_consistency_is_admin_only(client):
    auction = await _create(client)
    await client.post(f"/api/auctions/{auction['id']}/bid", json={"amount": 110}, headers=BIDDER)
    url = f"/api/auctions/{auction['id']}/consistency"

    assert (await client.get(url, headers=BIDDER)).status_code == 403
    resp = await client.get(url, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["consistent"] is True
    assert resp.json()["ledger_total_bids"] == 1


async def test_stream_of_closed_auction_ends_after_snapshot(client):
    auction = await _create(client)
    await auction_close(auction["id"], now=datetime.now(timezone.utc) + timedelta(hours=3))

    resp = await client.get(f"/api/auctions/{auction['id']}/stream")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.text.startswith("event: auction.snapshot\n")
    assert '"status": "unsold"' in resp.text


async def test_stream_of_missing_auction_is_404(client):
    resp = await client.get("/api/auctions/auction::nope/stream")
    assert resp.status_code == 404


def test_websocket_bidding(store, notifications, gateway):
    client = TestClient(app)
    created = client.post(
        "/api/auctions/",
        json={"listing_id": "ws-listing", "starting_bid": 100},
        headers=SELLER,
    )
    auction_id = created.json()["id"]

    with client.websocket_connect("/api/auctions/ws?user_id=bidder-1") as ws:
        ws.send_json({"event": "auction.join", "auctionId": auction_id})
        assert ws.receive_json()["event"] == "auction.snapshot"
        assert ws.receive_json()["event"] == "auction.presence"

        ws.send_json({"event": "auction.placeBid", "auctionId": auction_id, "amount": 90, "requestId": "r1"})
        rejected = ws.receive_json()
        assert rejected["event"] == "auction.bidResult"
        assert rejected["data"]["accepted"] is False
        assert rejected["data"]["reason"] == "bid_too_low"
        assert rejected["data"]["requestId"] == "r1"

        ws.send_json({"event": "auction.placeBid", "auctionId": auction_id, "amount": 110, "requestId": "r2"})
        broadcast = ws.receive_json()
        assert broadcast["event"] == "auction.bidAccepted"
        assert broadcast["data"]["amount"] == 110
        result = ws.receive_json()
        assert result["event"] == "auction.bidResult"
        assert result["data"] == {"requestId": "r2", "accepted": True, "sequence": 1, "amount": 110}

        ws.send_text("not json")
        assert ws.receive_json()["event"] == "auction.error"


async def test_non_finite_bid_amount_is_422(client):
    auction = await _create(client)
    for token in ("Infinity", "-Infinity", "NaN"):
        resp = await client.post(
            f"/api/auctions/{auction['id']}/bid",
            content=f'{{"amount": {token}}}',
            headers={**BIDDER, "Content-Type": "application/json"},
        )
        assert resp.status_code == 422, token

    detail = (await client.get(f"/api/auctions/{auction['id']}")).json()
    assert detail["current_bid"] == 100
    assert detail["total_bids"] == 0


def test_websocket_survives_snapshot_load_failure(store, notifications, monkeypatch):
    import realtime.gateway as gateway_module
    from couchbase.exceptions import CouchbaseException
    from models.operations.auctions import auction_snapshot_event

    class _StoreDown(CouchbaseException):
        def __str__(self):
            return "store unavailable"

    async def flaky_loader(auction_id):
        if auction_id == "auction::flaky":
            raise _StoreDown()
        return await auction_snapshot_event(auction_id)

    gateway = gateway_module.BroadcastGateway(snapshot_loader=flaky_loader)
    monkeypatch.setattr(gateway_module, "_gateway", gateway)

    client = TestClient(app)
    created = client.post(
        "/api/auctions/",
        json={"listing_id": "ws-flaky", "starting_bid": 100},
        headers=SELLER,
    )
    auction_id = created.json()["id"]

    with client.websocket_connect("/api/auctions/ws?user_id=bidder-1") as ws:
        ws.send_json({"event": "auction.join", "auctionId": "auction::flaky", "requestId": "j1"})
        error = ws.receive_json()
        assert error["event"] == "auction.error"
        assert error["auctionId"] == "auction::flaky"
        assert error["data"]["requestId"] == "j1"
        assert gateway.room_size("auction::flaky") == 0

        ws.send_json({"event": "auction.join", "auctionId": auction_id})
        assert ws.receive_json()["event"] == "auction.snapshot"
        assert ws.receive_json()["event"] == "auction.presence"

        ws.send_text(f'{{"event": "auction.placeBid", "auctionId": "{auction_id}", "amount": Infinity}}')
        assert ws.receive_json()["event"] == "auction.error"
        assert gateway.room_size(auction_id) == 1
