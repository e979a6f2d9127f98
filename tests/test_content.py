"""
Content Publishing & Notifications Test Suite

Coverage:
  - canonical JSON and content URIs
  - in-memory publisher
  - IPFS HTTP publisher against a mocked transport
  - fire-and-forget notification dispatch
"""

import json
import os
import sys

import httpx
import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from landreg.config import ContentConfig
from landreg.content import (
    InMemoryContentPublisher,
    IpfsHttpPublisher,
    canonical_json,
    content_uri,
)
from landreg.exceptions import ContentPublishError
from landreg.notifications import (
    EventKind,
    GovernanceEvent,
    LoggingNotifier,
    Notifier,
    dispatch,
    drain,
)


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

DOCUMENT = {"title": "Transfer parcel LR-3", "actions": {"targets": ["0x11"]}, "id": "p1"}
CID = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"


def ipfs_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_event(kind=EventKind.VOTE_CAST) -> GovernanceEvent:
    return GovernanceEvent(
        proposal_id="p1",
        external_id="0x" + "ab" * 32,
        actor_address="0x" + "a1" * 20,
        kind=kind,
    )


class RecordingNotifier(Notifier):

    def __init__(self):
        self.events = []

    async def notify(self, event):
        self.events.append(event)


class BrokenNotifier(Notifier):

    async def notify(self, event):
        raise ConnectionError("smtp down")


# ══════════════════════════════════════════════════════════════════════
#  CONTENT
# ══════════════════════════════════════════════════════════════════════

class TestCanonicalJson:

    def test_key_order_irrelevant(self):
        reordered = {"id": "p1", "actions": {"targets": ["0x11"]}, "title": "Transfer parcel LR-3"}
        assert canonical_json(DOCUMENT) == canonical_json(reordered)
        assert b" " not in canonical_json({"a": 1, "b": [1, 2]})

    def test_content_uri(self):
        assert content_uri(CID, "ipfs") == f"ipfs://{CID}"


class TestInMemoryPublisher:

    @pytest.mark.asyncio
    async def test_deterministic_reference(self):
        publisher = InMemoryContentPublisher()
        first = await publisher.publish(DOCUMENT)
        second = await publisher.publish(dict(reversed(list(DOCUMENT.items()))))
        assert first == second
        assert publisher.documents[first] == DOCUMENT
        assert publisher.uri_for(first) == f"mem://{first}"

    @pytest.mark.asyncio
    async def test_different_documents_differ(self):
        publisher = InMemoryContentPublisher(scheme="ipfs")
        other = dict(DOCUMENT, title="Transfer parcel LR-4")
        assert await publisher.publish(DOCUMENT) != await publisher.publish(other)
        assert publisher.uri_for("abc") == "ipfs://abc"


class TestIpfsPublisher:

    @pytest.mark.asyncio
    async def test_publish(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content
            seen["content_type"] = request.headers["content-type"]
            return httpx.Response(200, json={"Name": "proposal.json", "Hash": CID, "Size": "91"})

        publisher = IpfsHttpPublisher(api_url="http://ipfs.test:5001/", client=ipfs_client(handler))
        try:
            assert await publisher.publish(DOCUMENT) == CID
        finally:
            await publisher.close()
        assert seen["url"] == "http://ipfs.test:5001/api/v0/add?pin=true"
        assert seen["content_type"].startswith("multipart/form-data")
        assert canonical_json(DOCUMENT) in seen["body"]
        assert publisher.uri_for(CID) == f"ipfs://{CID}"

    @pytest.mark.asyncio
    async def test_http_error(self):
        publisher = IpfsHttpPublisher(
            client=ipfs_client(lambda request: httpx.Response(500, text="daemon error"))
        )
        with pytest.raises(ContentPublishError):
            await publisher.publish(DOCUMENT)
        await publisher.close()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        publisher = IpfsHttpPublisher(client=ipfs_client(handler))
        with pytest.raises(ContentPublishError):
            await publisher.publish(DOCUMENT)
        await publisher.close()

    @pytest.mark.asyncio
    async def test_unexpected_body(self):
        publisher = IpfsHttpPublisher(
            client=ipfs_client(lambda request: httpx.Response(200, json={"Name": "x"}))
        )
        with pytest.raises(ContentPublishError):
            await publisher.publish(DOCUMENT)
        await publisher.close()

    @pytest.mark.asyncio
    async def test_from_config(self):
        config = ContentConfig(scheme="ipfs", ipfs_api_url="http://ipfs.internal:5001",
                               api_token="", timeout=5.0)
        publisher = IpfsHttpPublisher.from_config(
            config, client=ipfs_client(lambda request: httpx.Response(200, json={"Hash": CID}))
        )
        assert publisher.api_url == "http://ipfs.internal:5001"
        assert await publisher.publish(DOCUMENT) == CID
        await publisher.close()


# ══════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ══════════════════════════════════════════════════════════════════════

class TestNotifications:

    def test_event_payload(self):
        assert make_event(EventKind.PROPOSAL_EXECUTED).to_dict() == {
            "proposalId": "p1",
            "externalId": "0x" + "ab" * 32,
            "actorAddress": "0x" + "a1" * 20,
            "eventKind": "proposal_executed",
        }
        json.dumps(make_event().to_dict())

    @pytest.mark.asyncio
    async def test_dispatch_delivers(self):
        notifier = RecordingNotifier()
        task = dispatch(notifier, make_event())
        assert task is not None
        await drain()
        assert notifier.events == [make_event()]

    @pytest.mark.asyncio
    async def test_failing_notifier_is_contained(self):
        task = dispatch(BrokenNotifier(), make_event())
        await drain()
        assert task.done()
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_no_notifier(self):
        assert dispatch(None, make_event()) is None

    @pytest.mark.asyncio
    async def test_logging_notifier(self):
        await LoggingNotifier().notify(make_event(EventKind.PROPOSAL_CREATED))
