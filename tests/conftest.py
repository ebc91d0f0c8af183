"""Root conftest — shared test configuration.

Invariants:
    - COUCHBASE_* variables are set before any client module is imported
      (clients.couchbase.config validates them at import time)
    - Every test that asks for `store` runs against a fresh FakeCouchbase
    - Notifications are captured, never sent
    - The realtime gateway singleton is replaced per test
"""

import os

os.environ.setdefault("COUCHBASE_USERNAME", "test")
os.environ.setdefault("COUCHBASE_PASSWORD", "test")
os.environ.setdefault("COUCHBASE_HOST", "localhost")
os.environ.setdefault("COUCHBASE_BUCKET", "auctions-test")
os.environ.setdefault("COUCHBASE_PROTOCOL", "couchbase")
os.environ.setdefault("AUCTION_SCHEDULER_ENABLED", "false")
os.environ.pop("NOTIFICATIONS_WEBHOOK_URL", None)

from datetime import datetime, timedelta, timezone

import pytest

import clients.couchbase.base_model as base_model_module
from clients.couchbase import Keyspace
from fake_couchbase import FakeCouchbase

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(monkeypatch):
    fake = FakeCouchbase()

    async def get_collection(self):
        return fake.collection(self.collection_name)

    async def query(self, statement, **params):
        return await fake.query(statement, params)

    monkeypatch.setattr(Keyspace, "get_collection", get_collection)
    monkeypatch.setattr(Keyspace, "query", query)
    monkeypatch.setattr(base_model_module, "ReplaceOptions", lambda **kw: kw)
    return fake


@pytest.fixture
def notifications(monkeypatch):
    sent = []

    def record(user_id, event_type, payload):
        if user_id:
            sent.append((user_id, event_type, payload))

    import models.operations.auctions as auctions_module
    monkeypatch.setattr(auctions_module, "notify", record)
    return sent


@pytest.fixture
def gateway(monkeypatch):
    import realtime.gateway as gateway_module
    fresh = gateway_module.BroadcastGateway()
    monkeypatch.setattr(gateway_module, "_gateway", fresh)
    return fresh


@pytest.fixture
def make_auction(store, notifications):
    """Create an auction through the real operation, relative to T0."""
    from models.entities.couchbase.auctions import AuctionConfig
    from models.operations.auctions import auction_create

    counter = {"n": 0}

    async def _make(
        starting_bid=100.0,
        bid_increment=10.0,
        reserve_price=None,
        window=120,
        starts_at=None,
        ends_at=None,
        seller_id="seller-1",
        listing_id=None,
        now=T0,
    ):
        counter["n"] += 1
        return await auction_create(
            seller_id=seller_id,
            listing_id=listing_id or f"listing-{counter['n']}",
            config=AuctionConfig(
                starting_bid=starting_bid,
                bid_increment=bid_increment,
                reserve_price=reserve_price,
                extension_window_seconds=window,
            ),
            starts_at=starts_at or T0,
            ends_at=ends_at or T0 + timedelta(hours=1),
            now=now,
        )

    return _make
