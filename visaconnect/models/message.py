from datetime import datetime
from typing import TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversationId: str
    senderId: str
    receiverId: str
    content: str
    timestamp: datetime
    read: bool


class LastMessage(TypedDict, total=False):
    content: str
    senderId: str
    receiverId: str
    timestamp: datetime
    read: bool
