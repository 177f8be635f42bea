"""
Test event publishing envelope and best-effort delivery
"""

import json
import pytest
from types import SimpleNamespace

from crm.app.services import nats_client as events
from crm.app.services.nats_client import NATSClient, STREAMS, publish_event_safely


class FakeJetStream:
    def __init__(self, fail=False):
        self.published = []
        self.fail = fail

    async def publish(self, subject, payload, headers=None):
        if self.fail:
            raise ConnectionError("nats: connection closed")
        self.published.append((subject, json.loads(payload), headers))
        return SimpleNamespace(stream="CRM_DEALS", seq=len(self.published))


@pytest.fixture
def connected(monkeypatch):
    client = NATSClient("nats://test:4222")
    client.js = FakeJetStream()
    monkeypatch.setattr(events, "nats_client", client)
    return client


def test_streams_cover_published_subjects():
    subjects = {subject for stream in STREAMS for subject in stream["subjects"]}
    assert "deals.kyc_requested" in subjects
    assert "bookings.created" in subjects
    assert all(subject.split(".")[0] in ("deals", "bookings") for subject in subjects)


async def test_publish_wraps_event(connected):
    assert await publish_event_safely("deals.progressed", {"deal_id": "d-1"}) is True

    subject, envelope, headers = connected.js.published[0]
    assert subject == "deals.progressed"
    assert envelope["type"] == "deals.progressed"
    assert envelope["source"] == "wealth-crm"
    assert envelope["data"] == {"deal_id": "d-1"}
    assert headers == {"Nats-Msg-Id": envelope["id"]}


async def test_publish_without_connection_is_skipped(monkeypatch):
    monkeypatch.setattr(events, "nats_client", None)
    assert await publish_event_safely("bookings.created", {}) is False


async def test_publish_failure_is_swallowed(connected):
    connected.js.fail = True
    assert await publish_event_safely("bookings.created", {"booking_id": "b-1"}) is False
