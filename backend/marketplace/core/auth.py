import logging
from dataclasses import dataclass
from typing import Any, Optional

import jwt
from fastapi import Depends, Header, HTTPException

from marketplace.core.config import get_settings

logger = logging.getLogger(__name__)

ROLES = frozenset({"CUSTOMER", "ENGINEER", "ADMIN"})


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(401, "Missing bearer token")
    return token.strip()


def _role_from_claims(claims: dict[str, Any]) -> Optional[str]:
    # Only app_metadata is server-managed; user_metadata is editable by the user.
    raw = (claims.get("app_metadata") or {}).get("role")
    role = str(raw).strip().upper() if raw is not None else ""
    return role if role in ROLES else None


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    audience = (settings.jwt_audience or "").strip() or None
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        audience=audience,
        options={"verify_aud": audience is not None},
    )


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    token = _bearer_token(authorization)
    if not get_settings().jwt_secret:
        raise HTTPException(500, "JWT_SECRET is not configured")

    try:
        claims = decode_token(token)
    except jwt.InvalidTokenError as exc:
        logger.debug("Token rejected: %s", exc)
        raise HTTPException(401, "Invalid token")

    subject = claims.get("sub")
    if not subject:
        raise HTTPException(401, "Invalid token")
    role = _role_from_claims(claims)
    if role is None:
        raise HTTPException(403, "Missing role")
    return CurrentUser(id=str(subject), role=role, email=claims.get("email"))


def require_roles(*roles: str):
    allowed = frozenset(roles)

    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in allowed:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency
