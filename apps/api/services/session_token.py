"""Signed session tokens scoping wallet endpoints to one user."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "dropboard_session"


class SessionTokenError(ValueError):
    """Token is unsigned, expired, of the wrong type, or has no subject."""


def issue_session_token(user_id: str, email: Optional[str] = None, ttl_hours: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int((now + lifetime).timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise SessionTokenError("Invalid or expired session token.") from exc

    if str(claims.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise SessionTokenError("Invalid session token type.")
    if not str(claims.get("sub", "")).strip():
        raise SessionTokenError("Session token missing subject.")
    return claims
