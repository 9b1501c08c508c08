"""Utilities for issuing and validating caller JWTs."""

from __future__ import annotations

import hmac
import time
from typing import Any

import jwt

from ..config import get_settings
from ..domain.errors import Unauthorized


def issue_access_token(*, subject: str, ttl_seconds: int | None = None) -> tuple[str, int]:
    """Create a signed JWT representing an authenticated account.

    Parameters
    ----------
    subject:
        Account identifier to embed in the token `sub` claim.
    ttl_seconds:
        Optional lifetime override; defaults to ``JWT_TTL_SECONDS``.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = ttl_seconds if ttl_seconds is not None else settings.jwt_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "iat": now,
        "exp": now + expires_in,
    }

    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        audience=None,
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp"]},
    )


def subject_from_authorization(header: str | None) -> str:
    """Return the account id carried by a ``Bearer`` authorization header."""
    if not header:
        raise Unauthorized("missing authorization header")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("authorization header must use the Bearer scheme")
    try:
        claims = decode_access_token(token.strip())
    except jwt.PyJWTError as exc:
        raise Unauthorized("invalid token") from exc
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise Unauthorized("invalid token")
    return subject


def internal_token_matches(presented: str | None) -> bool:
    """Constant-time check of the scheduler/provisioning shared secret."""
    expected = get_settings().internal_token
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
