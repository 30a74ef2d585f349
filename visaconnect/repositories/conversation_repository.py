from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from visaconnect.models.conversation import ConversationDocument
from visaconnect.models.message import LastMessage


LIST_INDEX_NAME = "participants_1_lastMessageTime_-1"


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value is None:
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index(
            [("participants", ASCENDING), ("lastMessageTime", DESCENDING)],
            name=LIST_INDEX_NAME,
        )

    async def find_by_participants(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        participants = sorted([user_a, user_b])
        existing = await self.collection.find_one({"participants": participants})
        if existing:
            existing["_id"] = str(existing.get("_id"))
        return existing

    async def create(self, user_a: str, user_b: str) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "participants": sorted([user_a, user_b]),
            "unreadCount": {user_a: 0, user_b: 0},
            "createdAt": now,
            "updatedAt": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def update_on_new_message(self, conversation_id: str, last_message: LastMessage) -> bool:
        sender_id = last_message["senderId"]
        receiver_id = last_message["receiverId"]
        result = await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {
                "$set": {
                    "lastMessage": last_message,
                    "lastMessageTime": last_message["timestamp"],
                    "updatedAt": datetime.now(timezone.utc),
                    # set, not incremented; a self-message never counts as unread
                    f"unreadCount.{receiver_id}": 0 if receiver_id == sender_id else 1,
                },
            },
        )
        return bool(result.matched_count)

    async def set_summary(self, conversation_id: str, last_message: Optional[LastMessage]) -> bool:
        if last_message is None:
            update = {"$unset": {"lastMessage": "", "lastMessageTime": ""}}
        else:
            update = {"$set": {"lastMessage": last_message, "lastMessageTime": last_message["timestamp"]}}
        result = await self.collection.update_one({"_id": to_object_id(conversation_id)}, update)
        return bool(result.matched_count)

    async def reset_unread(self, conversation_id: str, user_id: str) -> bool:
        oid = to_object_id(conversation_id)
        if oid is None:
            return False
        result = await self.collection.update_one(
            {"_id": oid},
            {"$set": {f"unreadCount.{user_id}": 0}},
        )
        return bool(result.matched_count)

    async def list_for_user(self, user_id: str) -> List[ConversationDocument]:
        # hint() makes the server reject the query when the composite index is absent
        cursor = (
            self.collection.find({"participants": user_id})
            .sort("lastMessageTime", DESCENDING)
            .hint(LIST_INDEX_NAME)
        )
        return self._normalize(await cursor.to_list(length=None))

    async def list_for_user_unordered(self, user_id: str) -> List[ConversationDocument]:
        cursor = self.collection.find({"participants": user_id})
        return self._normalize(await cursor.to_list(length=None))

    def _normalize(self, items: List[Dict[str, Any]]) -> List[ConversationDocument]:
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items
