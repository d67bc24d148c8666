"""Resolve the calling student from the bearer token.

Tokens come from the platform's auth provider (HS256, ``sub`` = user id).
The student id used for every ownership check is taken from here, never
from the request body.
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from server import settings
from server.services.errors import Unauthenticated

bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> dict:
    if not settings.AUTH_JWT_SECRET:
        logging.error("AUTH_JWT_SECRET is not configured; rejecting all tokens")
        raise Unauthenticated()
    options = {"verify_aud": bool(settings.AUTH_JWT_AUDIENCE)}
    try:
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE or None,
            options=options,
        )
    except JWTError as exc:
        logging.info("Rejected bearer token: %s", exc)
        raise Unauthenticated() from exc


async def get_current_student_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Return the caller's id, or None when no usable token was sent.

    Routers pass the result straight to the services, which raise
    :class:`Unauthenticated` for a missing identity.
    """
    if credentials is None or not credentials.credentials:
        return None
    try:
        payload = decode_access_token(credentials.credentials)
    except Unauthenticated:
        return None
    return payload.get("sub") or None
