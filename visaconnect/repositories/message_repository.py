from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from visaconnect.models.message import MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversationId", ASCENDING), ("timestamp", ASCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        read: bool = False,
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "conversationId": conversation_id,
            "senderId": sender_id,
            "receiverId": receiver_id,
            "content": content,
            "timestamp": datetime.now(timezone.utc),
            "read": read,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageDocument]:
        # full history, oldest first; _id breaks timestamp ties
        cur = self.collection.find({"conversationId": conversation_id}).sort(
            [("timestamp", ASCENDING), ("_id", ASCENDING)]
        )
        items = await cur.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def get_latest(self, conversation_id: str) -> Optional[MessageDocument]:
        cur = self.collection.find({"conversationId": conversation_id}).sort(
            [("timestamp", DESCENDING), ("_id", DESCENDING)]
        ).limit(1)
        items = await cur.to_list(length=1)
        if not items:
            return None
        items[0]["_id"] = str(items[0]["_id"])
        return items[0]
