"""Signed session tokens identifying the already-authenticated caller.

Sign-in happens upstream of this API; requests arrive with a bearer token
that is only verified here. ``issue_session_token`` mints the same tokens
for tests and for operator scripts acting as a given user.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "prompt_enhancer_session"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str]
    expires_at: datetime


def issue_session_token(user_id: str, email: Optional[str] = None, ttl_hours: Optional[int] = None) -> str:
    subject = (user_id or "").strip()
    if not subject:
        raise ValueError("user_id is required to issue a session token.")
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": subject,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_session_token(token: str) -> SessionClaims:
    """Check signature, expiry, token type and subject; raise ``ValueError`` otherwise."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require_exp": True},
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise ValueError("Session token missing subject.")
    return SessionClaims(
        user_id=subject,
        email=str(payload.get("email") or "") or None,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
