"""Notification client — tests for fire-and-forget delivery.

Tests cover:
    - send posts the event envelope to the webhook
    - HTTP failures surface as NotificationDeliveryError from send
    - notify never raises and drops failures after logging
    - notify is a no-op when disabled or without a recipient
"""

import asyncio

import pytest

import clients.notifications.client as client_module
from clients.http import HttpRequestError
from clients.notifications import (
    BID_OUTBID,
    NotificationClient,
    NotificationDeliveryError,
    notify,
)


@pytest.fixture
def posted(monkeypatch):
    calls = []

    async def fake_request(method, url, headers=None, json_data=None, timeout=10.0):
        calls.append((method, url, json_data))
        if "broken" in url:
            raise HttpRequestError("boom", status=503)
        return None

    monkeypatch.setattr(client_module, "request", fake_request)
    return calls


async def test_send_posts_envelope(posted):
    client = NotificationClient("http://notifications/events")
    await client.send("user-1", BID_OUTBID, {"auctionId": "a1"})

    method, url, body = posted[0]
    assert (method, url) == ("POST", "http://notifications/events")
    assert body["user_id"] == "user-1"
    assert body["type"] == "bid_outbid"
    assert body["payload"] == {"auctionId": "a1"}
    assert "sent_at" in body


async def test_send_wraps_http_errors(posted):
    client = NotificationClient("http://broken/events")
    with pytest.raises(NotificationDeliveryError):
        await client.send("user-1", BID_OUTBID, {})


async def test_notify_is_fire_and_forget(posted, monkeypatch):
    monkeypatch.setattr(client_module, "_client", NotificationClient("http://broken/events"))
    notify("user-1", BID_OUTBID, {"auctionId": "a1"})
    assert len(client_module._pending) == 1
    await asyncio.gather(*client_module._pending)
    assert len(posted) == 1


async def test_notify_skips_without_recipient_or_webhook(posted, monkeypatch):
    monkeypatch.setattr(client_module, "_client", NotificationClient(""))
    notify("user-1", BID_OUTBID, {})
    monkeypatch.setattr(client_module, "_client", NotificationClient("http://notifications/events"))
    notify(None, BID_OUTBID, {})
    assert client_module._pending == set()
    assert posted == []
