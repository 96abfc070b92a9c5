"""
Identity resolution for the API.

Validates bearer JWTs issued by the identity provider and extracts the
user id and email from them. Falls back to X-User-Id / X-User-Email headers
when no signing secret is configured (local development and tests).
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Header, Request

from jobboard.core.config import settings
from jobboard.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """The caller as seen by the entitlement subsystem."""
    id: str
    email: Optional[str] = None
    token: Optional[str] = None


def verify_access_token(token: str, secret: Optional[str] = None, audience: Optional[str] = None) -> Identity:
    """
    Verify an HS256 access token and build the Identity from its claims.

    Raises:
        UnauthorizedError: Invalid, expired or subject-less token
    """
    key = secret or settings.AUTH_JWT_SECRET
    aud = audience if audience is not None else settings.AUTH_JWT_AUDIENCE
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=["HS256"],
            audience=aud,
            options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(aud)},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired", code="token_expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token", code="invalid_token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("No 'sub' claim in token", code="invalid_token")
    return Identity(id=user_id, email=payload.get("email"), token=token)


async def get_current_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development fallback: user id"),
    x_user_email: Optional[str] = Header(None, description="Development fallback: user email"),
) -> Identity:
    """
    Resolve the calling identity.

    Priority:
    1. Bearer JWT from Authorization header (when AUTH_JWT_SECRET is set)
    2. X-User-Id header (only when no secret is configured)
    3. 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if settings.AUTH_JWT_SECRET:
        if not auth_header.startswith("Bearer "):
            raise UnauthorizedError("Missing Authorization bearer token")
        return verify_access_token(auth_header[7:])

    if x_user_id:
        return Identity(id=x_user_id, email=x_user_email)

    raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")
