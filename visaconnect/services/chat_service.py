from typing import Any, Dict, List, Optional

import structlog
from pymongo.errors import OperationFailure, PyMongoError

from visaconnect.repositories.conversation_repository import ConversationRepository
from visaconnect.repositories.message_repository import MessageRepository
from visaconnect.repositories.user_repository import UserRepository
from visaconnect.utils.realtime_bus import conversation_channel, publish_event, user_conversations_channel


logger = structlog.get_logger(__name__)


class ChatServiceError(Exception):
    """A write against the document store failed."""


def _sort_key(conversation: Dict[str, Any]) -> float:
    last = conversation.get("lastMessageTime")
    return last.timestamp() if last else 0.0


class ChatService:
    """Conversation and message orchestration.

    Reads are advisory: a store failure degrades to an empty list or zero.
    Writes raise ``ChatServiceError`` so a failed write never looks successful.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: Optional[UserRepository] = None,
        bus: Any = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._bus = bus

    async def get_or_create_conversation(self, user_a: str, user_b: str) -> str:
        if not user_a or not user_b or user_a == user_b:
            raise ValueError("A conversation needs two distinct participants")
        try:
            existing = await self._conversation_repo.find_by_participants(user_a, user_b)
            if existing:
                return existing["_id"]
            # No uniqueness constraint: two concurrent callers can both create one.
            created = await self._conversation_repo.create(user_a, user_b)
        except PyMongoError as exc:
            logger.error("conversation_get_or_create_failed", user_a=user_a, user_b=user_b, error=str(exc))
            raise ChatServiceError("Failed to get or create conversation") from exc
        logger.info("conversation_created", conversation_id=created["_id"])
        return created["_id"]

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._conversation_repo.get(conversation_id)
        except PyMongoError as exc:
            logger.error("conversation_lookup_failed", conversation_id=conversation_id, error=str(exc))
            raise ChatServiceError("Failed to load conversation") from exc

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        read: bool = False,
    ) -> str:
        if not content or not content.strip():
            raise ValueError("Message content cannot be empty")
        if not receiver_id:
            raise ValueError("Message receiver is required")
        try:
            saved = await self._message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                read=read,
            )
            # Second, separate write. If it fails the message still exists and
            # rebuild_summary() can bring the conversation summary back in line.
            last_message = {k: saved[k] for k in ("content", "senderId", "receiverId", "timestamp", "read")}
            await self._conversation_repo.update_on_new_message(conversation_id, last_message)
        except PyMongoError as exc:
            logger.error("message_send_failed", conversation_id=conversation_id, sender_id=sender_id, error=str(exc))
            raise ChatServiceError("Failed to send message") from exc

        event = {"type": "message", "conversationId": conversation_id, "messageId": saved["_id"]}
        await publish_event(conversation_channel(conversation_id), event, self._bus)
        for user_id in {sender_id, receiver_id}:
            await publish_event(user_conversations_channel(user_id), event, self._bus)
        return saved["_id"]

    async def get_conversation_messages(self, conversation_id: str, user_id: str) -> List[Dict[str, Any]]:
        try:
            return await self._message_repo.get_messages_by_conversation(conversation_id)
        except PyMongoError as exc:
            logger.warning("messages_read_degraded", conversation_id=conversation_id, user_id=user_id, error=str(exc))
            return []

    async def get_user_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            try:
                return await self._conversation_repo.list_for_user(user_id)
            except OperationFailure as exc:
                logger.warning("conversation_index_missing", user_id=user_id, error=str(exc))
                conversations = await self._conversation_repo.list_for_user_unordered(user_id)
                return sorted(conversations, key=_sort_key, reverse=True)
        except PyMongoError as exc:
            logger.warning("conversations_read_degraded", user_id=user_id, error=str(exc))
            return []

    async def mark_messages_as_read(self, conversation_id: str, user_id: str) -> bool:
        # Only the aggregate counter changes; per-message read flags stay as stored.
        try:
            updated = await self._conversation_repo.reset_unread(conversation_id, user_id)
        except PyMongoError as exc:
            logger.error("mark_read_failed", conversation_id=conversation_id, user_id=user_id, error=str(exc))
            raise ChatServiceError("Failed to mark messages as read") from exc
        if updated:
            event = {"type": "read", "conversationId": conversation_id, "userId": user_id}
            await publish_event(user_conversations_channel(user_id), event, self._bus)
        return updated

    async def get_unread_count(self, user_id: str) -> int:
        try:
            conversations = await self._conversation_repo.list_for_user_unordered(user_id)
            return sum(int((c.get("unreadCount") or {}).get(user_id, 0) or 0) for c in conversations)
        except Exception as exc:
            logger.warning("unread_count_degraded", user_id=user_id, error=str(exc))
            return 0

    async def rebuild_summary(self, conversation_id: str) -> bool:
        """Recompute lastMessage/lastMessageTime from the newest stored message.

        Repairs a send whose summary write never landed. Unread counters are
        not touched.
        """
        try:
            latest = await self._message_repo.get_latest(conversation_id)
            last_message = None
            if latest:
                last_message = {k: latest.get(k) for k in ("content", "senderId", "receiverId", "timestamp", "read")}
            return await self._conversation_repo.set_summary(conversation_id, last_message)
        except PyMongoError as exc:
            logger.error("summary_rebuild_failed", conversation_id=conversation_id, error=str(exc))
            raise ChatServiceError("Failed to rebuild conversation summary") from exc

    async def enrich_conversations(self, conversations: List[Dict[str, Any]], user_id: str) -> List[Dict[str, Any]]:
        if self._user_repo is None or not conversations:
            return conversations
        other_ids = {
            c["_id"]: next((p for p in c.get("participants", []) if p != user_id), user_id)
            for c in conversations
        }
        try:
            profiles = await self._user_repo.get_profiles(other_ids.values())
        except PyMongoError as exc:
            logger.warning("directory_lookup_degraded", user_id=user_id, error=str(exc))
            profiles = {}
        for c in conversations:
            c["otherUser"] = profiles.get(other_ids[c["_id"]])
        return conversations
