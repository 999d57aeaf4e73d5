# tests/test_broadcast.py
import pytest
from structlog.testing import capture_logs

from carequeue.broadcast import BroadcastHub, make_event
from carequeue.models import EventType


class FakeSocket:
    def __init__(self, closed=False, failures=0):
        self.sent = []
        self.closed = closed
        self.close_code = None
        self.failures = failures

    async def send_json(self, message):
        if self.closed:
            raise RuntimeError("Cannot call send once a close message has been sent")
        if self.failures:
            self.failures -= 1
            raise ConnectionResetError("send failed")
        self.sent.append(message)

    async def close(self, code=1000):
        if self.closed:
            raise RuntimeError("Unexpected ASGI message 'websocket.close'")
        self.closed = True
        self.close_code = code


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.mark.asyncio
async def test_publish_skips_the_sender(hub):
    a, b, c = FakeSocket(), FakeSocket(), FakeSocket()
    sender = hub.connect(a, user_id=1)
    hub.connect(b, user_id=2)
    hub.connect(c, user_id=3)
    message = {"type": "token_update", "data": {"id": 4}}

    delivered = await hub.publish(message, sender=sender)

    assert delivered == 2
    assert a.sent == []
    assert b.sent == [message] and c.sent == [message]


@pytest.mark.asyncio
async def test_closed_subscriber_does_not_block_the_others(hub):
    dead, alive_1, alive_2 = FakeSocket(closed=True), FakeSocket(), FakeSocket()
    hub.connect(alive_1)
    hub.connect(dead)
    hub.connect(alive_2)

    with capture_logs() as logs:
        delivered = await hub.notify(EventType.emergency_alert, {"location": "Ward 3"})

    assert delivered == 2
    assert len(alive_1.sent) == 1 and len(alive_2.sent) == 1
    assert hub.connection_count == 2
    assert any(entry["event"] == "broadcast_delivery_failed" for entry in logs)


@pytest.mark.asyncio
async def test_notify_skips_only_the_originating_session(hub):
    laptop, phone, other = FakeSocket(), FakeSocket(), FakeSocket()
    origin = hub.connect(laptop, user_id=9)
    hub.connect(phone, user_id=9)
    hub.connect(other, user_id=10)

    delivered = await hub.notify(EventType.prescription_created, {"id": 1}, origin=origin)

    assert delivered == 2
    assert laptop.sent == []
    assert phone.sent[0]["type"] == "prescription_created"
    assert other.sent[0]["type"] == "prescription_created"


def test_origin_must_belong_to_the_caller(hub):
    mine = hub.connect(FakeSocket(), user_id=9)
    theirs = hub.connect(FakeSocket(), user_id=10)

    assert hub.origin(mine.id, 9) is mine
    assert hub.origin(theirs.id, 9) is None
    assert hub.origin(None, 9) is None
    assert hub.origin(10_000, 9) is None


@pytest.mark.asyncio
async def test_failed_subscriber_is_closed_so_it_reconnects(hub):
    flaky, steady = FakeSocket(failures=1), FakeSocket()
    dropped = hub.connect(flaky)
    hub.connect(steady)

    await hub.notify(EventType.token_update, {"id": 1})
    await hub.notify(EventType.token_update, {"id": 2})

    assert flaky.closed is True
    assert flaky.close_code == 1011
    assert not hub.is_subscribed(dropped)
    assert [event["data"]["id"] for event in steady.sent] == [1, 2]


@pytest.mark.asyncio
async def test_closing_an_already_closed_socket_is_quiet(hub):
    dead = FakeSocket(closed=True)
    hub.connect(dead)

    assert await hub.notify(EventType.token_update, {"id": 1}) == 0
    assert hub.connection_count == 0


@pytest.mark.asyncio
async def test_publish_with_no_subscribers(hub):
    assert await hub.publish({"type": "ping", "data": {}}) == 0


def test_disconnect_is_idempotent(hub):
    connection = hub.connect(FakeSocket())
    hub.disconnect(connection)
    hub.disconnect(connection)
    assert hub.connection_count == 0


def test_event_envelope():
    event = make_event(EventType.token_update, {"id": 3, "status": "called"})

    assert event["type"] == "token_update"
    assert event["data"] == {"id": 3, "status": "called"}
    assert event["timestamp"].endswith("+00:00")
