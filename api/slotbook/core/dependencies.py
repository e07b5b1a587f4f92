"""FastAPI dependencies for injection into route handlers."""

import enum
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from slotbook.core.auth import decode_token

bearer_scheme = HTTPBearer(auto_error=False)


class OrgRole(enum.StrEnum):
    """Roles within an organisation, as asserted by the identity service."""

    MEMBER = "member"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """The already-authenticated caller: who they are and which tenant they act for."""

    user_id: int
    organisation_id: int
    role: OrgRole

    @property
    def is_admin(self) -> bool:
        return self.role == OrgRole.ADMIN


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


async def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """Extract the caller's identity from the JWT bearer token."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
        return Principal(
            user_id=int(payload["sub"]),
            organisation_id=int(payload["org"]),
            role=OrgRole(payload.get("role", OrgRole.MEMBER)),
        )
    except (JWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from None


async def require_org_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """Require the caller to administer their organisation."""
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Organisation admin access required")
    return principal
