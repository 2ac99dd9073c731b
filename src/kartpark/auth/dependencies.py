"""Authentication and role dependencies.

Roles used by this service: ``user`` (everyone), ``admin`` (linkage review,
ledger reverts, lap capture), ``organizer`` (ledger deltas) and ``timing``
(session ingestion). Admins pass every role check.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.auth.jwt import verify_token
from kartpark.database import get_session
from kartpark.db.models import WebUser

_bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> WebUser:
    """The active account behind the bearer token. 401 without a valid token, 403 if suspended."""
    if credentials is None:
        raise _unauthorized("Not authenticated")
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise _unauthorized(str(e)) from e

    user = await db.get(WebUser, int(payload["sub"]))
    if user is None:
        raise _unauthorized("Unknown account")
    if user.account_status != "active":
        raise HTTPException(status_code=403, detail=f"Account is {user.account_status}")
    return user


def require_roles(*roles: str) -> Callable[..., Awaitable[WebUser]]:
    allowed = {*roles, "admin"}

    async def _check(user: WebUser = Depends(get_current_user)) -> WebUser:
        if not user.has_role(*allowed):
            raise HTTPException(status_code=403, detail=f"Requires one of: {', '.join(sorted(allowed))}")
        return user

    return _check


require_admin = require_roles("admin")
require_organizer = require_roles("organizer")
require_timing = require_roles("timing")
