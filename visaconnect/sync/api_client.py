from typing import Any, Dict, List, Optional

import httpx
import structlog

from visaconnect.sync.session import SessionContext


logger = structlog.get_logger(__name__)


class ChatClientError(Exception):
    pass


class ChatApiClient:
    """HTTP client for the chat API.

    List reads return an empty result on failure; writes raise ``ChatClientError``.
    The ``fetch_*`` variants raise as well and are what the poller uses, so a
    transient error never blanks a view that already has data.
    """

    def __init__(self, session: SessionContext, base_url: str = "", client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self._session = session
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = self._session.token
        if not token:
            raise ChatClientError("No authentication token found")
        try:
            response = await self._client.request(
                method,
                f"/api/chat{path}",
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChatClientError(f"{method} {path} failed: {exc}") from exc
        if not isinstance(body, dict):
            raise ChatClientError(f"{method} {path} returned an unexpected body")
        if not body.get("success"):
            raise ChatClientError(body.get("message") or f"{method} {path} failed")
        return body

    async def fetch_conversations(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/conversations")
        return body.get("data") or []

    async def fetch_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        body = await self._request("GET", f"/conversations/{conversation_id}/messages")
        return body.get("data") or []

    async def get_conversations(self) -> List[Dict[str, Any]]:
        try:
            return await self.fetch_conversations()
        except ChatClientError as exc:
            logger.warning("conversations_fetch_failed", error=str(exc))
            return []

    async def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        try:
            return await self.fetch_messages(conversation_id)
        except ChatClientError as exc:
            logger.warning("messages_fetch_failed", conversation_id=conversation_id, error=str(exc))
            return []

    async def get_or_create_conversation(self, other_user_id: str) -> str:
        body = await self._request("POST", "/conversations", json={"otherUserId": other_user_id})
        return body["data"]["id"]

    async def send_message(self, conversation_id: str, receiver_id: str, content: str) -> str:
        body = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={"content": content, "receiverId": receiver_id},
        )
        return body["data"]["messageId"]

    async def mark_messages_as_read(self, conversation_id: str) -> None:
        await self._request("PUT", f"/conversations/{conversation_id}/read")

    async def get_unread_count(self) -> int:
        user_id = self._session.user_id
        conversations = await self.get_conversations()
        return sum(int((c.get("unreadCount") or {}).get(user_id, 0) or 0) for c in conversations)
