"""Bearer token handling.

Tokens are minted by the identity service; this engine only verifies them
and reads the principal's user id, organisation and role. ``create_access_token``
exists for service-to-service callers, scripts and tests.
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from slotbook.core.config import settings


def create_access_token(subject: str, organisation_id: int, role: str = "member", extra: dict | None = None) -> str:
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {"sub": subject, "org": organisation_id, "role": role, "exp": expire, "type": "access"}
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises JWTError on failure."""
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload
