"""Admin access to leads and live chat traces.

Visitors use the chat endpoints without credentials; everything that
exposes other visitors' leads (lead listing, stats, CSV export, deletion,
session listing, the debug trace) needs the admin key.

``admin_denial`` makes the decision once for both transports:

  ADMIN_API_KEY set + matching token   → allow
  ADMIN_API_KEY set + wrong/missing    → 401
  ADMIN_API_KEY empty + DEBUG=true     → allow
  ADMIN_API_KEY empty + DEBUG=false    → 403

HTTP callers get the status as an HTTPException.  The trace WebSocket
closes with 4001 or 4003 instead, since browsers cannot read handshake
status codes.
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Query, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from leadchat.config import settings

log = logging.getLogger("leadchat.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

WS_CLOSE_CODES = {
    status.HTTP_401_UNAUTHORIZED: (4001, "Unauthorized"),
    status.HTTP_403_FORBIDDEN: (4003, "Admin API key not configured"),
}


def admin_denial(token: Optional[str]) -> Optional[int]:
    """Status to refuse an admin caller with, or None to let them in."""
    key = settings.admin_api_key
    if not key:
        return None if settings.debug else status.HTTP_403_FORBIDDEN
    if token and hmac.compare_digest(token.encode(), key.encode()):
        return None
    return status.HTTP_401_UNAUTHORIZED


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """Guard the admin lead endpoints with ``Authorization: Bearer <key>``."""
    denial = admin_denial(credentials.credentials if credentials else None)
    if denial is None:
        return
    if denial == status.HTTP_403_FORBIDDEN:
        raise HTTPException(
            status_code=denial,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )
    log.warning("Rejected admin lead request (%s token)",
                "wrong" if credentials else "missing")
    raise HTTPException(
        status_code=denial,
        detail="Invalid or missing admin token.",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_admin_ws(
    websocket: WebSocket,
    token: str = Query(default=""),
) -> None:
    """Guard the chat trace WebSocket with a ``?token=`` query parameter."""
    denial = admin_denial(token)
    if denial is None:
        return
    code, reason = WS_CLOSE_CODES[denial]
    log.warning("Rejected chat trace subscriber: %s", reason)
    await websocket.close(code=code, reason=reason)
    raise HTTPException(status_code=denial)
