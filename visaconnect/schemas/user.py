from typing import Optional

from pydantic import BaseModel, Field


class TokenPayload(BaseModel):

    sub: str
    exp: int
    email: Optional[str] = None
    email_verified: bool = False


class CurrentUser(BaseModel):

    uid: str
    email: str = ""
    email_verified: bool = Field(default=False, serialization_alias="emailVerified")
