from datetime import datetime
from typing import Dict, List, Optional, TypedDict

from visaconnect.models.message import LastMessage


class ConversationDocument(TypedDict, total=False):
    _id: str
    # always two user ids, sorted
    participants: List[str]
    lastMessage: Optional[LastMessage]
    lastMessageTime: Optional[datetime]
    # per-user unread counters (user_id -> count)
    unreadCount: Dict[str, int]
    createdAt: datetime
    updatedAt: datetime
