from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel


class CreateConversationRequest(BaseModel):

    participantIds: Optional[List[str]] = None
    otherUserId: Optional[str] = None


class SendMessageRequest(BaseModel):

    content: Optional[str] = None
    receiverId: Optional[str] = None


def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc.get("_id"))
    return out


def message_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    return jsonable_encoder(_public(doc))


def conversation_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = _public(doc)
    other = out.get("otherUser")
    if other:
        out["otherUser"] = _public(other)
    return jsonable_encoder(out)
