import asyncio
import json

import httpx
import pytest

from visaconnect.core.config import Settings
from visaconnect.sync.api_client import ChatApiClient, ChatClientError
from visaconnect.sync.session import SessionContext
from visaconnect.sync.subscription import (
    ChatSync,
    PushUnavailable,
    Subscription,
    SyncMode,
    WebSocketPushSource,
    create_chat_sync,
)


class FakeStream:

    def __init__(self, snapshots, error=None):
        self._queue = asyncio.Queue()
        for snapshot in snapshots:
            self._queue.put_nowait(snapshot)
        self._error = error
        self.close_calls = 0

    def push(self, snapshot):
        self._queue.put_nowait(snapshot)

    async def receive(self):
        if self._queue.empty() and self._error is not None:
            raise self._error
        return await self._queue.get()

    async def close(self):
        self.close_calls += 1


class FakePushSource:

    def __init__(self, stream=None, unavailable=False):
        self.stream = stream
        self.unavailable = unavailable
        self.opened = []

    async def open(self, path):
        self.opened.append(path)
        if self.unavailable:
            raise PushUnavailable("no push backend")
        return self.stream


class CountingFetch:

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        if self.snapshots:
            return self.snapshots.pop(0)
        return [{"id": f"poll-{self.calls}"}]


async def wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_poll_mode_without_push_source():
    received = []
    fetch = CountingFetch()
    sub = Subscription(fetch, received.append, interval=0.01)
    sub.start()

    await wait_for(lambda: len(received) >= 3)
    sub.unsubscribe()

    assert sub.mode is SyncMode.STOPPED
    assert fetch.max_in_flight == 1


@pytest.mark.asyncio
async def test_poll_errors_are_logged_not_delivered():
    received = []
    calls = 0

    async def flaky_fetch():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise ChatClientError("boom")
        return [{"id": "m1"}]

    sub = Subscription(flaky_fetch, received.append, interval=0.01)
    sub.start()
    await wait_for(lambda: received)
    sub.unsubscribe()

    assert received[0] == [{"id": "m1"}]


@pytest.mark.asyncio
async def test_poll_survives_failing_callback():
    received = []

    def render(snapshot):
        received.append(snapshot)
        if len(received) == 1:
            raise RuntimeError("ui render failed")

    sub = Subscription(CountingFetch(), render, interval=0.01)
    sub.start()
    await wait_for(lambda: len(received) >= 3)

    assert sub.mode is SyncMode.POLL
    assert not sub._task.done()
    sub.unsubscribe()


@pytest.mark.asyncio
async def test_poll_survives_unexpected_fetch_error():
    received = []
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise AttributeError("'list' object has no attribute 'get'")
        return [{"id": "m1"}]

    sub = Subscription(fetch, received.append, interval=0.01)
    sub.start()
    await wait_for(lambda: received)
    sub.unsubscribe()

    assert received[0] == [{"id": "m1"}]


@pytest.mark.asyncio
async def test_push_callback_error_keeps_push_mode():
    stream = FakeStream([[{"id": "m1"}], [{"id": "m2"}]])
    source = FakePushSource(stream)
    received = []

    def render(snapshot):
        received.append(snapshot)
        if len(received) == 1:
            raise RuntimeError("ui render failed")

    fetch = CountingFetch()
    sub = Subscription(fetch, render, interval=0.01, push_source=source, push_path="/ws/x")
    sub.start()
    await wait_for(lambda: len(received) == 2)

    assert sub.mode is SyncMode.PUSH
    assert fetch.calls == 0
    sub.unsubscribe()


@pytest.mark.asyncio
async def test_push_batches_replace_view():
    stream = FakeStream([[{"id": "m1"}]])
    source = FakePushSource(stream)
    received = []
    fetch = CountingFetch()
    sub = Subscription(fetch, received.append, interval=0.01, push_source=source, push_path="/ws/x")
    sub.start()

    await wait_for(lambda: len(received) == 1)
    stream.push([{"id": "m1"}, {"id": "m2"}])
    await wait_for(lambda: len(received) == 2)

    assert sub.mode is SyncMode.PUSH
    assert received[-1] == [{"id": "m1"}, {"id": "m2"}]
    assert fetch.calls == 0
    sub.unsubscribe()
    await asyncio.sleep(0.01)
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_push_error_falls_over_to_poll_once():
    stream = FakeStream([[{"id": "pushed"}]], error=ConnectionError("socket dropped"))
    source = FakePushSource(stream)
    received = []
    fetch = CountingFetch()
    sub = Subscription(fetch, received.append, interval=0.01, push_source=source, push_path="/ws/x")
    sub.start()

    await wait_for(lambda: fetch.calls >= 2)
    sub.unsubscribe()
    await asyncio.sleep(0.01)

    assert received[0] == [{"id": "pushed"}]
    assert received[1] == [{"id": "poll-1"}]
    assert stream.close_calls == 1
    assert len(source.opened) == 1


@pytest.mark.asyncio
async def test_unavailable_push_starts_polling():
    source = FakePushSource(unavailable=True)
    received = []
    sub = Subscription(CountingFetch(), received.append, interval=0.01, push_source=source, push_path="/ws/x")
    sub.start()

    await wait_for(lambda: received)

    assert sub.mode is SyncMode.POLL
    sub.unsubscribe()


@pytest.mark.asyncio
async def test_unsubscribe_twice_stops_callbacks():
    received = []
    sub = Subscription(CountingFetch(), received.append, interval=0.01)
    sub.start()
    await wait_for(lambda: received)

    sub.unsubscribe()
    sub.unsubscribe()
    seen = len(received)
    await asyncio.sleep(0.05)

    assert len(received) == seen


@pytest.mark.asyncio
async def test_unsubscribe_before_first_fetch():
    received = []
    sub = Subscription(CountingFetch(), received.append, interval=0.01)
    sub.start()
    sub.unsubscribe()
    await asyncio.sleep(0.03)

    assert received == []
    sub.start()
    assert sub.mode is SyncMode.STOPPED


# ChatSync against a fake HTTP API


class FakeChatApi:

    def __init__(self):
        self.messages = {"c1": [{"id": "m1", "senderId": "bob", "receiverId": "alice", "content": "hello", "timestamp": "2025-01-01T00:00:00+00:00", "read": False}]}
        self.fail_sends = set()
        self.release = asyncio.Event()
        self.release.set()
        self.next_id = 100

    def handler(self):
        async def handle(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer tok"
            path = request.url.path
            if request.method == "GET" and path == "/api/chat/conversations/c1/messages":
                return httpx.Response(200, json={"success": True, "data": self.messages["c1"]})
            if request.method == "GET" and path == "/api/chat/conversations":
                return httpx.Response(200, json={"success": True, "data": [{"id": "c1", "unreadCount": {"alice": 2}}]})
            if request.method == "POST" and path == "/api/chat/conversations/c1/messages":
                body = json.loads(request.content)
                await self.release.wait()
                if body["content"] in self.fail_sends:
                    return httpx.Response(500, json={"success": False, "message": "Failed to send message"})
                self.next_id += 1
                return httpx.Response(200, json={"success": True, "data": {"messageId": f"m{self.next_id}"}})
            return httpx.Response(404, json={"success": False, "message": "not found"})
        return handle


@pytest.fixture
def session():
    return SessionContext(token="tok", profile={"uid": "alice", "first_name": "Alice"})


@pytest.fixture
def fake_api():
    return FakeChatApi()


@pytest.fixture
def sync(session, fake_api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handler()), base_url="http://test")
    # long intervals: each test sees exactly one poll per subscription
    return ChatSync(ChatApiClient(session, client=client), session, message_interval=10, conversation_interval=10)


@pytest.mark.asyncio
async def test_optimistic_send_success_replaces_id(sync):
    views = []
    unsubscribe = sync.subscribe_messages("c1", views.append)
    await wait_for(lambda: views)

    message_id = await sync.send_message("c1", "bob", "hi bob")
    unsubscribe()

    optimistic, confirmed = views[-2], views[-1]
    assert optimistic[-1]["pending"] is True
    assert optimistic[-1]["id"].startswith("local-")
    assert confirmed[-1]["id"] == message_id
    assert confirmed[-1]["pending"] is False
    assert [m["content"] for m in confirmed] == ["hello", "hi bob"]
    assert confirmed[-1]["timestamp"] == optimistic[-1]["timestamp"]


@pytest.mark.asyncio
async def test_optimistic_send_failure_removes_only_that_entry(sync, fake_api):
    fake_api.fail_sends.add("doomed")
    fake_api.release.clear()
    timeline = sync.timeline("c1")
    timeline.replace_confirmed(fake_api.messages["c1"])

    ok = asyncio.create_task(sync.send_message("c1", "bob", "fine"))
    bad = asyncio.create_task(sync.send_message("c1", "bob", "doomed"))
    await wait_for(lambda: len(timeline.pending_ids()) == 2)
    fake_api.release.set()

    with pytest.raises(ChatClientError):
        await bad
    server_id = await ok

    assert [m["content"] for m in timeline.messages()] == ["hello", "fine"]
    assert timeline.messages()[-1]["id"] == server_id
    assert timeline.pending_ids() == []


@pytest.mark.asyncio
async def test_unsubscribed_listener_gets_no_more_updates(sync):
    views = []
    unsubscribe = sync.subscribe_messages("c1", views.append)
    await wait_for(lambda: views)
    unsubscribe()
    unsubscribe()
    seen = len(views)

    await sync.send_message("c1", "bob", "after")
    await asyncio.sleep(0.03)

    assert len(views) == seen


@pytest.mark.asyncio
async def test_conversation_subscription_tracks_latest(sync):
    views = []
    unsubscribe = sync.subscribe_conversations(views.append)
    await wait_for(lambda: views)
    unsubscribe()

    assert sync.conversations == [{"id": "c1", "unreadCount": {"alice": 2}}]


def test_create_chat_sync_polls_without_push_url(session):
    settings = Settings(CHAT_PUSH_URL=None, CHAT_API_URL="http://api")
    assert create_chat_sync(session, settings)._push_source is None

    settings = Settings(CHAT_PUSH_URL="ws://api", CHAT_API_URL="http://api")
    assert isinstance(create_chat_sync(session, settings)._push_source, WebSocketPushSource)


@pytest.mark.asyncio
async def test_websocket_push_source_unreachable(session):
    source = WebSocketPushSource("ws://127.0.0.1:9", session, open_timeout=0.5)
    with pytest.raises(PushUnavailable):
        await source.open("/api/chat/ws/conversations")
