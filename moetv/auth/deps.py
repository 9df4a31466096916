from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request

from moetv.config import Config
from moetv.db import connect
from moetv.util.time import parse_iso

from .crud import get_user_by_id, public_user
from .security import SessionCodec


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Cookie"})


def get_cfg(request: Request) -> Config:
    cfg = getattr(request.app.state, "cfg", None)
    if cfg is None:
        raise HTTPException(status_code=500, detail="server_config_missing")
    return cfg


def get_sessions(request: Request) -> SessionCodec:
    codec = getattr(request.app.state, "sessions", None)
    if codec is None:
        raise HTTPException(status_code=500, detail="server_config_missing")
    return codec


def current_session(request: Request) -> Optional[Dict[str, Any]]:
    """Claims of the request's `session` cookie, or None (anonymous).

    Only the cookie is consulted; an invalid or expired token is treated the
    same as no cookie at all.
    """
    cfg = get_cfg(request)
    token = request.cookies.get(cfg.AUTH_COOKIE_NAME)
    if not token:
        return None
    return get_sessions(request).verify(token)


def require_session(session: Optional[Dict[str, Any]] = Depends(current_session)) -> Dict[str, Any]:
    if session is None:
        # Keep a single detail string so frontends can handle consistently.
        raise _unauthorized("not_authenticated")
    return session


def _mark_resolved(request: Request, row: Any) -> None:
    # Read by the session-refresh middleware: only resolved sessions slide.
    request.state.session_user_id = str(row["id"])


def require_user(
    request: Request,
    session: Dict[str, Any] = Depends(require_session),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    """Resolve the session to the current user record (public view)."""
    with connect(cfg.DB_DSN) as conn:
        row = get_user_by_id(conn, session["userId"])
        if row is None:
            raise _unauthorized("user_not_found")
        _mark_resolved(request, row)
        return public_user(row)


def require_admin(
    request: Request,
    session: Dict[str, Any] = Depends(require_session),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    """Require a logged-in admin.

    The role is read from the users table on every call, never from the token,
    so revoking admin rights takes effect on the next request.
    """
    with connect(cfg.DB_DSN) as conn:
        row = get_user_by_id(conn, session["userId"])
        if row is None or not int(row["is_admin"] or 0):
            raise HTTPException(status_code=403, detail="admin_required")
        _mark_resolved(request, row)
        return public_user(row)


def has_active_subscription(user: Dict[str, Any], *, now: Optional[datetime] = None) -> bool:
    """True when the user's projection says subscribed and the expiry is in the future."""
    if not user.get("isSubscribed"):
        return False
    if not user.get("subscriptionType"):
        return False
    try:
        expires = parse_iso(user.get("subscriptionExpires"))
    except ValueError:
        return False
    if expires is None:
        return False
    return expires > (now or datetime.now(timezone.utc))


def require_subscription(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    """Require an active paid subscription. Admins are always allowed."""
    if user.get("isAdmin"):
        return user
    if has_active_subscription(user):
        return user
    raise HTTPException(status_code=402, detail="subscription_required")
