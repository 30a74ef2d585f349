import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from pymongo.errors import ConnectionFailure, OperationFailure

from visaconnect.services.chat_service import ChatService


class StoreSwitch:
    """Shared failure toggle for the in-memory repositories."""

    def __init__(self) -> None:
        self.down = False

    def check(self) -> None:
        if self.down:
            raise ConnectionFailure("document store unavailable")


class InMemoryConversationRepository:

    def __init__(self, switch: StoreSwitch) -> None:
        self._switch = switch
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.index_available = True
        self.fail_summary_update = False

    async def find_by_participants(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        self._switch.check()
        participants = sorted([user_a, user_b])
        for doc in self.docs.values():
            if doc["participants"] == participants:
                return dict(doc)
        return None

    async def create(self, user_a: str, user_b: str) -> Dict[str, Any]:
        self._switch.check()
        now = datetime.now(timezone.utc)
        doc = {
            "_id": str(ObjectId()),
            "participants": sorted([user_a, user_b]),
            "unreadCount": {user_a: 0, user_b: 0},
            "createdAt": now,
            "updatedAt": now,
        }
        self.docs[doc["_id"]] = doc
        return dict(doc)

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        self._switch.check()
        doc = self.docs.get(conversation_id)
        return dict(doc) if doc else None

    async def update_on_new_message(self, conversation_id: str, last_message: Dict[str, Any]) -> bool:
        self._switch.check()
        if self.fail_summary_update:
            raise ConnectionFailure("summary write lost")
        doc = self.docs.get(conversation_id)
        if not doc:
            return False
        doc["lastMessage"] = last_message
        doc["lastMessageTime"] = last_message["timestamp"]
        receiver, sender = last_message["receiverId"], last_message["senderId"]
        doc["unreadCount"][receiver] = 0 if receiver == sender else 1
        return True

    async def set_summary(self, conversation_id: str, last_message: Optional[Dict[str, Any]]) -> bool:
        self._switch.check()
        doc = self.docs.get(conversation_id)
        if not doc:
            return False
        if last_message is None:
            doc.pop("lastMessage", None)
            doc.pop("lastMessageTime", None)
        else:
            doc["lastMessage"] = last_message
            doc["lastMessageTime"] = last_message["timestamp"]
        return True

    async def reset_unread(self, conversation_id: str, user_id: str) -> bool:
        self._switch.check()
        doc = self.docs.get(conversation_id)
        if not doc:
            return False
        doc["unreadCount"][user_id] = 0
        return True

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        self._switch.check()
        if not self.index_available:
            raise OperationFailure("error processing query: planner returned error :: hint provided does not correspond to an existing index", code=2)
        items = [dict(d) for d in self.docs.values() if user_id in d["participants"]]
        return sorted(items, key=lambda d: d.get("lastMessageTime") or datetime.min.replace(tzinfo=timezone.utc), reverse=True)

    async def list_for_user_unordered(self, user_id: str) -> List[Dict[str, Any]]:
        self._switch.check()
        return [dict(d) for d in self.docs.values() if user_id in d["participants"]]


class InMemoryMessageRepository:

    def __init__(self, switch: StoreSwitch) -> None:
        self._switch = switch
        self.docs: List[Dict[str, Any]] = []
        self._clock = itertools.count()
        self._epoch = datetime(2025, 1, 1, tzinfo=timezone.utc)

    async def save_message(self, conversation_id, sender_id, receiver_id, content, read=False) -> Dict[str, Any]:
        self._switch.check()
        doc = {
            "_id": str(ObjectId()),
            "conversationId": conversation_id,
            "senderId": sender_id,
            "receiverId": receiver_id,
            "content": content,
            "timestamp": self._epoch + timedelta(seconds=next(self._clock)),
            "read": read,
        }
        self.docs.append(doc)
        return dict(doc)

    async def get_messages_by_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        self._switch.check()
        items = [dict(d) for d in self.docs if d["conversationId"] == conversation_id]
        return sorted(items, key=lambda d: (d["timestamp"], d["_id"]))

    async def get_latest(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        items = await self.get_messages_by_conversation(conversation_id)
        return items[-1] if items else None


class InMemoryUserRepository:

    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.profiles = profiles or {}

    async def get_profiles(self, user_ids):
        return {uid: dict(self.profiles[uid]) for uid in set(user_ids) if uid in self.profiles}


class RecordingBus:

    enabled = True

    def __init__(self) -> None:
        self.published: List[tuple] = []

    async def publish(self, channel: str, message: str) -> None:
        self.published.append((channel, message))


@pytest.fixture
def store_switch():
    return StoreSwitch()


@pytest.fixture
def conversation_repo(store_switch):
    return InMemoryConversationRepository(store_switch)


@pytest.fixture
def message_repo(store_switch):
    return InMemoryMessageRepository(store_switch)


@pytest.fixture
def user_repo():
    return InMemoryUserRepository({
        "bob": {"_id": "bob", "first_name": "Bob", "last_name": "Reyes", "occupation": "Nurse", "visa_type": "H-1B"},
        "carol": {"_id": "carol", "first_name": "Carol", "last_name": "Ng", "occupation": "Engineer", "visa_type": "O-1"},
    })


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def chat_service(message_repo, conversation_repo, user_repo, bus):
    return ChatService(message_repo, conversation_repo, user_repo, bus)
