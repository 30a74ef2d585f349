from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from visaconnect.core.config import get_settings
from visaconnect.schemas.user import CurrentUser, TokenPayload


class AuthenticationError(Exception):
    pass


def decode_access_token(token: str) -> TokenPayload:
    """Verify a bearer token issued by the identity provider."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.AUTH_SECRET_KEY, algorithms=[settings.AUTH_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc
    return TokenPayload(**payload)


def verify_identity(token: str) -> CurrentUser:
    payload = decode_access_token(token)
    return CurrentUser(uid=payload.sub, email=payload.email or "", email_verified=payload.email_verified)


def create_access_token(subject: str, email: Optional[str] = None, email_verified: bool = False, expires_minutes: int = 60) -> str:
    # Used by tests and local tooling; production tokens come from the identity provider.
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    claims = {"sub": subject, "exp": int(expire.timestamp()), "email": email, "email_verified": email_verified}
    return jwt.encode(claims, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)
