import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union


@dataclass(frozen=True)
class Confirmed:
    message: Dict[str, Any]

    @property
    def id(self) -> Optional[str]:
        return self.message.get("id")


@dataclass(frozen=True)
class Pending:
    local_id: str
    message: Dict[str, Any]


TimelineEntry = Union[Confirmed, Pending]


class MessageTimeline:
    """In-memory message list for one conversation.

    Server snapshots replace the confirmed entries. Optimistic sends live as
    ``Pending`` entries keyed by their own local id until confirmed or
    discarded.
    """

    def __init__(self) -> None:
        self._entries: List[TimelineEntry] = []

    @property
    def entries(self) -> Tuple[TimelineEntry, ...]:
        return tuple(self._entries)

    def pending_ids(self) -> List[str]:
        return [e.local_id for e in self._entries if isinstance(e, Pending)]

    def messages(self) -> List[Dict[str, Any]]:
        out = []
        for entry in self._entries:
            if isinstance(entry, Pending):
                out.append({**entry.message, "id": entry.local_id, "pending": True})
            else:
                out.append({**entry.message, "pending": False})
        return out

    def add_pending(self, conversation_id: str, sender_id: str, receiver_id: str, content: str) -> Pending:
        entry = Pending(
            local_id=f"local-{uuid.uuid4().hex}",
            message={
                "conversationId": conversation_id,
                "senderId": sender_id,
                "receiverId": receiver_id,
                "content": content,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "read": False,
            },
        )
        self._entries.append(entry)
        return entry

    def confirm(self, local_id: str, server_id: str) -> bool:
        index = self._index_of(local_id)
        if index is None:
            return False
        if any(isinstance(e, Confirmed) and e.id == server_id for e in self._entries):
            # a snapshot already delivered the stored copy
            del self._entries[index]
            return True
        pending = self._entries[index]
        self._entries[index] = Confirmed({**pending.message, "id": server_id})
        return True

    def discard(self, local_id: str) -> bool:
        index = self._index_of(local_id)
        if index is None:
            return False
        del self._entries[index]
        return True

    def replace_confirmed(self, messages: List[Dict[str, Any]]) -> None:
        pending = [e for e in self._entries if isinstance(e, Pending)]
        self._entries = [Confirmed(dict(m)) for m in messages] + pending

    def _index_of(self, local_id: str) -> Optional[int]:
        for i, entry in enumerate(self._entries):
            if isinstance(entry, Pending) and entry.local_id == local_id:
                return i
        return None
