"""Bearer token verification for tokens issued by the external identity provider.

Tokens are HS256 JWTs whose ``sub`` is the user profile id and whose
audience is ``JWT_AUDIENCE``.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timedelta, timezone
from uuid import UUID

from jose import JWTError, jwt

from imagegen.config import settings
from imagegen.errors import AuthenticationError

ALGORITHM = "HS256"


def create_access_token(user_id: UUID, expires_in: timedelta = timedelta(hours=1)) -> str:
    """Issue a token in the identity provider's format (used by tooling and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "aud": settings.JWT_AUDIENCE,
        "role": "authenticated",
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=ALGORITHM)


def verify_access_token(token: str) -> UUID:
    """Decode and validate a JWT and return the user id it names.

    Raises AuthenticationError (401) if the token is invalid, expired, or
    has no usable subject.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
    except JWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc

    try:
        return UUID(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationError("Token has no valid subject") from exc


def is_admin_token(token: str | None) -> bool:
    if not token or not settings.ADMIN_API_TOKEN:
        return False
    return hmac.compare_digest(token, settings.ADMIN_API_TOKEN)
