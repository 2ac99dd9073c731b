"""RS256 access tokens.

The venue auth service issues tokens; this API verifies them with the public
key. ``sub`` is the web user id. Roles are re-read from the database on every
request, so the ``roles`` claim is informational only.

``create_access_token`` signs with the local private key and exists for
tooling and tests that stand in for the auth service.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

import jwt

from kartpark.config import get_settings
from kartpark.time_utils import utcnow

ACCESS = "access"

_public_key: str | None = None
_private_key: str | None = None


def _public() -> str:
    global _public_key  # noqa: PLW0603
    if _public_key is None:
        _public_key = Path(get_settings().jwt_public_key_path).read_text()
    return _public_key


def _private() -> str:
    global _private_key  # noqa: PLW0603
    if _private_key is None:
        path = Path(get_settings().jwt_private_key_path)
        if not path.exists():
            msg = f"No JWT private key at {path}; this deployment can only verify tokens"
            raise RuntimeError(msg)
        _private_key = path.read_text()
    return _private_key


def reset_keys() -> None:
    """Forget cached keys so the next call re-reads the configured paths."""
    global _private_key, _public_key  # noqa: PLW0603
    _private_key = None
    _public_key = None


def create_access_token(user_id: int, roles: list[str] | None = None) -> str:
    settings = get_settings()
    now = utcnow()
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "roles": roles or ["user"],
        "type": ACCESS,
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_access_token_expire_minutes),
    }
    return jwt.encode(payload, _private(), algorithm=settings.jwt_algorithm)


def verify_token(token: str, expected_type: str = ACCESS) -> dict[str, Any]:
    """Decode ``token`` and check signature, issuer, expiry, type and subject.

    Raises:
        jwt.InvalidTokenError: on any failure, with a message safe to return
            to the client.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _public(),
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "sub", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        raise jwt.InvalidTokenError("Token has expired") from None

    if payload.get("type") != expected_type:
        raise jwt.InvalidTokenError(f"Expected a {expected_type} token")
    if not str(payload["sub"]).isdigit():
        raise jwt.InvalidTokenError("Token subject is not a user id")
    return payload
