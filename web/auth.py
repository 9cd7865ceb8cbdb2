"""Identity resolution for authenticated routes.

Sign-in happens at the managed identity provider; this backend only checks
the HS256 access token it issues (``Authorization: Bearer <jwt>``) and uses
the ``sub`` claim as the user id.
"""

from __future__ import annotations

import logging
from typing import Optional

import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


class AuthError(Exception):
    """The request carries no usable identity."""


def resolve_user_id(
    authorization: Optional[str],
    secret: str,
    audience: str = "authenticated",
) -> str:
    """Return the user id from a bearer token.

    Raises:
        AuthError: If the header is missing or malformed, or the token is
            invalid, expired, or cannot be verified.
    """
    if not secret:
        raise AuthError("Token verification is not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Unauthorized - no user found")

    try:
        payload = jwt.decode(
            token.strip(),
            secret,
            algorithms=[JWT_ALGORITHM],
            audience=audience,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Session has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected access token: %s", exc)
        raise AuthError("Authentication failed") from exc

    return str(payload["sub"])
