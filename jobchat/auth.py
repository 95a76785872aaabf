"""Bearer-token authentication for the chat endpoints.

The chat core only needs an authenticated ``user_id`` and a role. Tokens are
HS256 JWTs signed with JWT_SECRET and carrying ``user_id`` (or ``sub``) and
``user_type`` claims, matching the tokens minted by the auth service.

Provides:
- verify_token(): Validate a token and return the caller's Identity
- get_identity(): FastAPI dependency for the authenticated caller
- require_roles(): FastAPI dependency factory for role checks
"""

from collections.abc import Callable
from dataclasses import dataclass

import jwt
from fastapi import Depends, Request

from jobchat.config import get_settings
from jobchat.errors import AuthenticationError, AuthorizationError

CHAT_ROLES = ("EMPLOYER", "CANDIDATE", "ADMIN")


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    user_id: str
    user_type: str
    email: str | None = None


def verify_token(token: str, secret: str) -> Identity:
    """Decode and validate a bearer token.

    Raises:
        AuthenticationError: If the token is missing claims, expired or forged.
    """
    if not secret:
        raise AuthenticationError("Authentication is not configured")
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    user_id = claims.get("user_id") or claims.get("sub")
    if not user_id:
        raise AuthenticationError("Token has no subject")
    user_type = str(claims.get("user_type") or "CANDIDATE").upper()
    return Identity(user_id=str(user_id), user_type=user_type, email=claims.get("email"))


def get_identity(request: Request) -> Identity:
    """FastAPI dependency returning the authenticated caller."""
    header = request.headers.get("Authorization", "")
    token = header.removeprefix("Bearer ").strip()
    if not token:
        raise AuthenticationError("No Authorization header provided")
    return verify_token(token, get_settings().jwt_secret)


def require_roles(*roles: str) -> Callable[..., Identity]:
    """Create a dependency that admits only callers with one of ``roles``.

    Usage:
        @app.post("/messages")
        async def send(identity: Identity = Depends(require_roles(*CHAT_ROLES))):
            ...
    """
    allowed = {role.upper() for role in roles}

    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.user_type not in allowed:
            raise AuthorizationError(f"Role {identity.user_type} may not access this resource")
        return identity

    return dependency
