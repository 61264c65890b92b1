from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .settings import Settings

_security = HTTPBasic(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Basic"},
    )


def _check_basic(settings: Settings, creds: Optional[HTTPBasicCredentials]) -> str:
    if creds is None or creds.username is None or creds.password is None:
        raise _unauthorized("Not authenticated")

    expected_user = settings.basic_auth_username
    expected_pass = settings.basic_auth_password
    if expected_user is None or expected_pass is None:
        # Misconfiguration: auth enabled but username/password not provided
        raise _unauthorized("Server authentication not configured")

    user_ok = secrets.compare_digest(creds.username.encode(), expected_user.encode())
    pass_ok = secrets.compare_digest(creds.password.encode(), expected_pass.encode())
    if not (user_ok and pass_ok):
        raise _unauthorized("Invalid authentication credentials")
    return creds.username


# PUBLIC_INTERFACE
def get_current_owner(
    request: Request,
    creds: Optional[HTTPBasicCredentials] = Depends(_security),
    x_owner_id: Optional[str] = Header(default=None, description="Owner identity when basic auth is disabled"),
) -> str:
    """
    Resolve the owner of the request.

    Behavior:
    - ENABLE_BASIC_AUTH=true: the authenticated username; missing or invalid
      credentials raise 401 with WWW-Authenticate: Basic.
    - Otherwise: the X-Owner-Id header, falling back to DEFAULT_OWNER_ID.
    """
    settings: Settings = request.app.state.context.settings
    if settings.enable_basic_auth:
        return _check_basic(settings, creds)
    owner = (x_owner_id or "").strip()
    return owner or settings.default_owner_id
