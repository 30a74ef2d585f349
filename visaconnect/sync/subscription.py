"""Live views over conversations and messages.

A ``Subscription`` is a small state machine::

    PUSH --(push error)--> POLL
    PUSH | POLL --(unsubscribe)--> STOPPED

It starts in PUSH when a push source is configured and answers the probe,
otherwise in POLL. STOPPED is terminal: once ``unsubscribe()`` returns the
callback is never invoked again.
"""

import asyncio
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import structlog
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from visaconnect.core.config import get_settings
from visaconnect.sync.api_client import ChatApiClient, ChatClientError
from visaconnect.sync.session import SessionContext
from visaconnect.sync.timeline import MessageTimeline


logger = structlog.get_logger(__name__)

Snapshot = List[Dict[str, Any]]
Fetch = Callable[[], Awaitable[Snapshot]]
Callback = Callable[[Snapshot], Any]
Unsubscribe = Callable[[], None]


class SyncMode(str, Enum):
    PUSH = "push"
    POLL = "poll"
    STOPPED = "stopped"


class PushUnavailable(Exception):
    pass


class PushStream(Protocol):

    async def receive(self) -> Snapshot: ...

    async def close(self) -> None: ...


class PushSource(Protocol):

    async def open(self, path: str) -> PushStream: ...


class WebSocketPushStream:

    def __init__(self, websocket, first_snapshot: Snapshot) -> None:
        self._websocket = websocket
        self._buffered: Optional[Snapshot] = first_snapshot

    async def receive(self) -> Snapshot:
        if self._buffered is not None:
            snapshot, self._buffered = self._buffered, None
            return snapshot
        return _parse_frame(await self._websocket.recv())

    async def close(self) -> None:
        await self._websocket.close()


def _parse_frame(frame: Any) -> Snapshot:
    return json.loads(frame).get("data") or []


class WebSocketPushSource:
    """Opens the server's snapshot websockets.

    The probe succeeds only once the first snapshot arrives; a server without
    a realtime bus accepts and immediately closes, which counts as unavailable.
    """

    def __init__(self, base_url: str, session: SessionContext, open_timeout: float = 5.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._open_timeout = open_timeout

    async def open(self, path: str) -> WebSocketPushStream:
        url = f"{self._base_url}{path}?{urlencode({'token': self._session.token or ''})}"
        try:
            websocket = await connect(url, open_timeout=self._open_timeout)
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as exc:
            raise PushUnavailable(str(exc)) from exc
        try:
            first = await asyncio.wait_for(websocket.recv(), timeout=self._open_timeout)
            snapshot = _parse_frame(first)
        except (ConnectionClosed, asyncio.TimeoutError, ValueError) as exc:
            await websocket.close()
            raise PushUnavailable(str(exc)) from exc
        return WebSocketPushStream(websocket, snapshot)


class Subscription:

    def __init__(
        self,
        fetch: Fetch,
        callback: Callback,
        interval: float,
        push_source: Optional[PushSource] = None,
        push_path: Optional[str] = None,
        name: str = "subscription",
    ) -> None:
        self._fetch = fetch
        self._callback = callback
        self._interval = interval
        self._push_source = push_source
        self._push_path = push_path
        self._stream: Optional[PushStream] = None
        self._task: Optional[asyncio.Task] = None
        self._log = logger.bind(subscription=name)
        self.mode = SyncMode.PUSH if push_source is not None and push_path else SyncMode.POLL

    @property
    def stopped(self) -> bool:
        return self.mode is SyncMode.STOPPED

    def start(self) -> None:
        if self._task is None and not self.stopped:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def unsubscribe(self) -> None:
        if self.stopped:
            return
        self.mode = SyncMode.STOPPED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._log.debug("subscription_stopped")

    async def _run(self) -> None:
        try:
            if self.mode is SyncMode.PUSH:
                await self._run_push()
            if self.mode is SyncMode.POLL:
                await self._run_poll()
        except asyncio.CancelledError:
            pass
        finally:
            await self._close_push()

    async def _run_push(self) -> None:
        try:
            self._stream = await self._push_source.open(self._push_path)
            self._log.info("push_mode")
            while self.mode is SyncMode.PUSH:
                await self._deliver(await self._stream.receive())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # never surfaced to the caller; the session continues on polling
            if self.mode is SyncMode.PUSH:
                self._log.warning("push_failed_falling_back_to_poll", error=str(exc))
                self.mode = SyncMode.POLL
            await self._close_push()

    async def _run_poll(self) -> None:
        self._log.info("poll_mode", interval=self._interval)
        while self.mode is SyncMode.POLL:
            try:
                snapshot = await self._fetch()
            except Exception as exc:
                # a bad poll is skipped; the next tick tries again
                self._log.warning("poll_failed", error=str(exc))
            else:
                await self._deliver(snapshot)
            if self.mode is not SyncMode.POLL:
                break
            await asyncio.sleep(self._interval)

    async def _deliver(self, snapshot: Snapshot) -> None:
        if self.stopped:
            return
        # a failing view must not end the subscription or trigger a push fallback
        try:
            result = self._callback(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._log.error("callback_failed", error=str(exc))

    async def _close_push(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            await stream.close()
        except Exception as exc:
            self._log.debug("push_close_failed", error=str(exc))


class ChatSync:
    """Client-side read model for the chat screens.

    ``subscribe_*`` return an unsubscribe function that is idempotent and safe
    to call after the screen that created it is gone.
    """

    def __init__(
        self,
        api: ChatApiClient,
        session: SessionContext,
        push_source: Optional[PushSource] = None,
        message_interval: float = 2.0,
        conversation_interval: float = 5.0,
    ) -> None:
        self._api = api
        self._session = session
        self._push_source = push_source
        self._message_interval = message_interval
        self._conversation_interval = conversation_interval
        self._timelines: Dict[str, MessageTimeline] = {}
        self._listeners: Dict[str, Dict[int, Callback]] = {}
        self._next_token = 0
        self.conversations: Snapshot = []

    def timeline(self, conversation_id: str) -> MessageTimeline:
        return self._timelines.setdefault(conversation_id, MessageTimeline())

    def subscribe_messages(self, conversation_id: str, callback: Callback) -> Unsubscribe:
        timeline = self.timeline(conversation_id)
        token = self._add_listener(conversation_id, callback)

        async def on_snapshot(messages: Snapshot) -> None:
            timeline.replace_confirmed(messages)
            await self._notify(conversation_id)

        subscription = Subscription(
            fetch=lambda: self._api.fetch_messages(conversation_id),
            callback=on_snapshot,
            interval=self._message_interval,
            push_source=self._push_source,
            push_path=f"/api/chat/ws/conversations/{conversation_id}/messages",
            name=f"messages:{conversation_id}",
        )
        subscription.start()

        def unsubscribe() -> None:
            subscription.unsubscribe()
            self._listeners.get(conversation_id, {}).pop(token, None)

        return unsubscribe

    def subscribe_conversations(self, callback: Callback) -> Unsubscribe:
        def on_snapshot(conversations: Snapshot) -> Any:
            self.conversations = conversations
            return callback(conversations)

        subscription = Subscription(
            fetch=self._api.fetch_conversations,
            callback=on_snapshot,
            interval=self._conversation_interval,
            push_source=self._push_source,
            push_path="/api/chat/ws/conversations",
            name="conversations",
        )
        subscription.start()
        return subscription.unsubscribe

    async def send_message(self, conversation_id: str, receiver_id: str, content: str) -> str:
        """Show the message immediately, then reconcile with the server result.

        On failure the placeholder is removed and ``ChatClientError`` is raised.
        """
        timeline = self.timeline(conversation_id)
        pending = timeline.add_pending(conversation_id, self._session.user_id, receiver_id, content)
        await self._notify(conversation_id)
        try:
            server_id = await self._api.send_message(conversation_id, receiver_id, content)
        except ChatClientError:
            timeline.discard(pending.local_id)
            await self._notify(conversation_id)
            raise
        timeline.confirm(pending.local_id, server_id)
        await self._notify(conversation_id)
        return server_id

    def _add_listener(self, conversation_id: str, callback: Callback) -> int:
        self._next_token += 1
        self._listeners.setdefault(conversation_id, {})[self._next_token] = callback
        return self._next_token

    async def _notify(self, conversation_id: str) -> None:
        messages = self.timeline(conversation_id).messages()
        listeners = self._listeners.get(conversation_id, {})
        for token in list(listeners):
            # an earlier callback may have unsubscribed this one
            callback = listeners.get(token)
            if callback is None:
                continue
            result = callback(messages)
            if inspect.isawaitable(result):
                await result


def create_chat_sync(session: SessionContext, settings=None) -> ChatSync:
    """Wire a ``ChatSync`` from configuration; push is used only when a push URL is set."""
    settings = settings or get_settings()
    push_source = WebSocketPushSource(settings.CHAT_PUSH_URL, session) if settings.CHAT_PUSH_URL else None
    return ChatSync(
        ChatApiClient(session, base_url=settings.CHAT_API_URL),
        session,
        push_source=push_source,
        message_interval=settings.MESSAGE_POLL_INTERVAL,
        conversation_interval=settings.CONVERSATION_POLL_INTERVAL,
    )
