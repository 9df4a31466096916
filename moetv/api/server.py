from __future__ import annotations

import traceback
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from moetv import __version__
from moetv.config import Config, load_config
from moetv.db import connect, init_db, pagination

from moetv.auth import SessionCodec, require_admin, require_subscription, require_user
from moetv.auth.crud import (
    bootstrap_admin_if_needed,
    create_user,
    delete_user,
    get_user_by_id,
    list_users,
    public_user,
    touch_last_login,
    update_user,
    verify_user_credentials,
)
from moetv.auth.deps import current_session, get_cfg, get_sessions

from moetv.billing.subscriptions import (
    PLANS,
    admin_create_subscription,
    create_subscription,
    delete_subscription,
    get_subscription,
    list_subscriptions,
    list_user_subscriptions,
    update_subscription,
)
from moetv.catalog import videos as catalog


def _debug(msg: str) -> None:
    print(f"[api] {msg}")


router = APIRouter()


# -----------------------------
# Health
# -----------------------------


@router.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok"}


# -----------------------------
# Auth
# -----------------------------


def _cookie_secure(cfg: Config) -> bool:
    """Return whether the session cookie should be marked Secure."""
    samesite = str(cfg.AUTH_COOKIE_SAMESITE or "lax").lower()
    # Browsers require Secure when SameSite=None
    if samesite == "none":
        return True
    return bool(cfg.AUTH_COOKIE_SECURE)


def set_session_cookie(response: Response, *, token: str, cfg: Config) -> None:
    response.set_cookie(
        key=cfg.AUTH_COOKIE_NAME,
        value=str(token),
        httponly=True,
        samesite=str(cfg.AUTH_COOKIE_SAMESITE or "lax").lower(),
        secure=_cookie_secure(cfg),
        max_age=int(cfg.AUTH_SESSION_TTL_SECONDS),
        path=cfg.AUTH_COOKIE_PATH or "/",
        domain=cfg.AUTH_COOKIE_DOMAIN,
    )


def clear_session_cookie(response: Response, cfg: Config) -> None:
    response.delete_cookie(
        key=cfg.AUTH_COOKIE_NAME,
        path=cfg.AUTH_COOKIE_PATH or "/",
        domain=cfg.AUTH_COOKIE_DOMAIN,
        httponly=True,
        samesite=str(cfg.AUTH_COOKIE_SAMESITE or "lax").lower(),
        secure=_cookie_secure(cfg),
    )


def _issue_for(sessions: SessionCodec, user: Dict[str, Any]) -> str:
    return sessions.issue({"userId": user["id"], "email": user["email"], "username": user["username"]})


def _summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "username": user["username"],
        "isSubscribed": user["isSubscribed"],
        "subscriptionType": user["subscriptionType"],
    }


class RegisterRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


@router.post("/register", status_code=201)
def auth_register(
    payload: RegisterRequest,
    response: Response,
    cfg: Config = Depends(get_cfg),
    sessions: SessionCodec = Depends(get_sessions),
) -> Dict[str, Any]:
    """Create an account and log it in immediately."""
    if not payload.email or not payload.username or not payload.password:
        raise HTTPException(status_code=400, detail="missing_fields")

    with connect(cfg.DB_DSN) as conn:
        try:
            u = create_user(conn, email=payload.email, username=payload.username, password=payload.password)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    set_session_cookie(response, token=_issue_for(sessions, u), cfg=cfg)
    return {"message": "user_created", "user": _summary(u)}


@router.post("/login")
def auth_login(
    payload: LoginRequest,
    response: Response,
    cfg: Config = Depends(get_cfg),
    sessions: SessionCodec = Depends(get_sessions),
) -> Dict[str, Any]:
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="missing_fields")

    with connect(cfg.DB_DSN) as conn:
        user_row = verify_user_credentials(conn, payload.email, payload.password)
        if user_row is None:
            # Same answer for unknown email and wrong password.
            raise HTTPException(status_code=401, detail="invalid_credentials")
        touch_last_login(conn, str(user_row["id"]))
        u = public_user(user_row)

    set_session_cookie(response, token=_issue_for(sessions, u), cfg=cfg)
    return {"message": "login_successful", "user": _summary(u)}


@router.post("/logout")
def auth_logout(response: Response, cfg: Config = Depends(get_cfg)) -> Dict[str, Any]:
    """Clear the session cookie."""
    clear_session_cookie(response, cfg)
    return {"message": "logged_out"}


@router.get("/user")
def auth_user(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    return {"user": user}


# -----------------------------
# Subscriptions (self-serve)
# -----------------------------


class PurchaseRequest(BaseModel):
    planType: Optional[str] = None


@router.get("/subscriptions/plans")
def subscription_plans() -> Dict[str, Any]:
    return {
        "plans": [
            {
                "planType": key,
                "name": plan["name"],
                "price": plan["price"],
                "currency": plan["currency"],
                "durationDays": plan["duration_days"],
                "features": list(plan["features"]),
            }
            for key, plan in PLANS.items()
        ]
    }


@router.get("/subscriptions")
def my_subscriptions(
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        return {"subscriptions": list_user_subscriptions(conn, user["id"])}


@router.post("/subscriptions")
def purchase_subscription(
    payload: PurchaseRequest,
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        try:
            sub = create_subscription(conn, user_id=user["id"], plan_type=payload.planType or "")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return {"message": "subscription_created", "subscription": sub}


# -----------------------------
# Admin: users
# -----------------------------


class AdminCreateUserRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    isAdmin: bool = False


class AdminUpdateUserRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    avatar: Optional[str] = None
    isAdmin: Optional[bool] = None
    isSubscribed: Optional[bool] = None
    subscriptionType: Optional[str] = None
    subscriptionExpires: Optional[str] = None


def _value_error(e: ValueError) -> HTTPException:
    detail = str(e)
    if detail.endswith("_exists"):
        return HTTPException(status_code=409, detail=detail)
    return HTTPException(status_code=400, detail=detail)


@router.get("/admin/users")
def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        items, total, page, limit = list_users(conn, page=page, limit=limit, search=search)
    return {"items": items, "pagination": pagination(page, limit, total)}


@router.post("/admin/users")
def admin_create_user(
    payload: AdminCreateUserRequest,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    if not payload.email or not payload.username or not payload.password:
        raise HTTPException(status_code=400, detail="missing_fields")
    with connect(cfg.DB_DSN) as conn:
        try:
            u = create_user(
                conn,
                email=payload.email,
                username=payload.username,
                password=payload.password,
                is_admin=payload.isAdmin,
            )
        except ValueError as e:
            raise _value_error(e)
    _debug(f"Admin {_admin['id']} created user id={u['id']} is_admin={u['isAdmin']}")
    return {"user": u}


@router.get("/admin/users/{user_id}")
def admin_get_user(
    user_id: str,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        row = get_user_by_id(conn, user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="user_not_found")
    return {"user": public_user(row)}


@router.put("/admin/users/{user_id}")
def admin_update_user(
    user_id: str,
    payload: AdminUpdateUserRequest,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    fields = payload.model_dump(exclude_unset=True)
    with connect(cfg.DB_DSN) as conn:
        try:
            u = update_user(conn, user_id, fields)
        except ValueError as e:
            raise _value_error(e)
    if u is None:
        raise HTTPException(status_code=404, detail="user_not_found")
    return {"user": u}


@router.delete("/admin/users/{user_id}")
def admin_delete_user(
    user_id: str,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    if user_id == _admin["id"]:
        raise HTTPException(status_code=400, detail="cannot_delete_self")
    with connect(cfg.DB_DSN) as conn:
        deleted = delete_user(conn, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="user_not_found")
    _debug(f"Admin {_admin['id']} deleted user id={user_id}")
    return {"message": "user_deleted"}


# -----------------------------
# Admin: subscriptions
# -----------------------------


class AdminCreateSubscriptionRequest(BaseModel):
    userId: Optional[str] = None
    planType: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    autoRenew: Optional[bool] = None


class AdminUpdateSubscriptionRequest(BaseModel):
    planType: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    autoRenew: Optional[bool] = None


@router.get("/admin/subscriptions")
def admin_list_subscriptions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    status: Optional[str] = None,
    planType: Optional[str] = None,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        items, total, page, limit = list_subscriptions(
            conn,
            page=page,
            limit=limit,
            search=search,
            status=status,
            plan_type=planType,
        )
    return {"items": items, "pagination": pagination(page, limit, total)}


@router.post("/admin/subscriptions")
def admin_create_subscription_route(
    payload: AdminCreateSubscriptionRequest,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        try:
            sub = admin_create_subscription(conn, payload.model_dump(exclude_unset=True))
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return {"subscription": sub}


@router.get("/admin/subscriptions/{subscription_id}")
def admin_get_subscription(
    subscription_id: str,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        sub = get_subscription(conn, subscription_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="subscription_not_found")
    return {"subscription": sub}


@router.put("/admin/subscriptions/{subscription_id}")
def admin_update_subscription(
    subscription_id: str,
    payload: AdminUpdateSubscriptionRequest,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        try:
            sub = update_subscription(conn, subscription_id, payload.model_dump(exclude_unset=True))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    if sub is None:
        raise HTTPException(status_code=404, detail="subscription_not_found")
    return {"subscription": sub}


@router.delete("/admin/subscriptions/{subscription_id}")
def admin_delete_subscription(
    subscription_id: str,
    _admin: Dict[str, Any] = Depends(require_admin),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        deleted = delete_subscription(conn, subscription_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="subscription_not_found")
    return {"message": "subscription_deleted"}


# -----------------------------
# Videos
# -----------------------------


class VideoCreateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    videoUrl: Optional[str] = None
    thumbnailUrl: Optional[str] = None
    duration: Optional[int] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    isPremium: bool = False
    isPublic: bool = True


class ProgressRequest(BaseModel):
    watchTime: int = 0
    completed: bool = False


class CommentRequest(BaseModel):
    content: Optional[str] = None
    parentId: Optional[str] = None


def _video_or_404(conn: Any, video_id: str) -> Dict[str, Any]:
    video = catalog.get_video(conn, video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="video_not_found")
    return video


@router.get("/videos")
def list_videos(
    category: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        return {"videos": catalog.list_videos(conn, category=category, search=search, limit=limit, offset=offset)}


@router.post("/videos")
def create_video(
    payload: VideoCreateRequest,
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        try:
            video = catalog.create_video(
                conn,
                uploader_id=user["id"],
                title=payload.title or "",
                video_url=payload.videoUrl or "",
                description=payload.description,
                thumbnail_url=payload.thumbnailUrl,
                duration=payload.duration,
                category=payload.category,
                tags=payload.tags,
                is_premium=payload.isPremium,
                is_public=payload.isPublic,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return {"message": "video_created", "video": video}


@router.get("/videos/{video_id}")
def get_video(
    video_id: str,
    session: Optional[Dict[str, Any]] = Depends(current_session),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    """Video detail. Each successful read counts as one view.

    Premium videos require an active subscription (admins always pass).
    """
    with connect(cfg.DB_DSN) as conn:
        video = _video_or_404(conn, video_id)
        if video["isPremium"]:
            if session is None:
                raise HTTPException(status_code=401, detail="not_authenticated")
            row = get_user_by_id(conn, session["userId"])
            if row is None:
                raise HTTPException(status_code=401, detail="user_not_found")
            require_subscription(public_user(row))

        video["views"] = catalog.increment_views(conn, video_id)
    return {"video": video}


@router.get("/videos/{video_id}/comments")
def video_comments(video_id: str, cfg: Config = Depends(get_cfg)) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        _video_or_404(conn, video_id)
        return {"comments": catalog.list_comments(conn, video_id)}


@router.post("/videos/{video_id}/comments")
def add_video_comment(
    video_id: str,
    payload: CommentRequest,
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        _video_or_404(conn, video_id)
        try:
            comment = catalog.add_comment(
                conn,
                video_id=video_id,
                user_id=user["id"],
                content=payload.content or "",
                parent_id=payload.parentId,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return {"comment": comment}


@router.put("/videos/{video_id}/progress")
def video_progress(
    video_id: str,
    payload: ProgressRequest,
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        _video_or_404(conn, video_id)
        try:
            entry = catalog.record_progress(
                conn,
                user_id=user["id"],
                video_id=video_id,
                watch_time=payload.watchTime,
                completed=payload.completed,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return {"history": entry}


@router.get("/history")
def watch_history(
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        return {"history": catalog.list_history(conn, user["id"])}


@router.get("/favorites")
def favorites(
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        return {"videos": catalog.list_favorites(conn, user["id"])}


@router.post("/videos/{video_id}/favorite")
def add_favorite(
    video_id: str,
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        _video_or_404(conn, video_id)
        catalog.add_favorite(conn, user_id=user["id"], video_id=video_id)
    return {"favorited": True}


@router.delete("/videos/{video_id}/favorite")
def remove_favorite(
    video_id: str,
    user: Dict[str, Any] = Depends(require_user),
    cfg: Config = Depends(get_cfg),
) -> Dict[str, Any]:
    with connect(cfg.DB_DSN) as conn:
        removed = catalog.remove_favorite(conn, user_id=user["id"], video_id=video_id)
    return {"favorited": False, "removed": removed}


# -----------------------------
# App factory
# -----------------------------


def create_app(cfg: Optional[Config] = None) -> FastAPI:
    """Build the API.

    Without an explicit config the environment is read via `load_config()`,
    which raises when no session secret is set, so the server never starts
    with a guessable signing key.
    """
    cfg = cfg or load_config()
    sessions = SessionCodec(cfg.AUTH_JWT_SECRET, ttl_seconds=cfg.AUTH_SESSION_TTL_SECONDS)

    app = FastAPI(title="MoeTV", version=__version__)
    app.state.cfg = cfg
    app.state.sessions = sessions

    # Ensure schema exists.
    init_db(cfg.DB_DSN)

    # Bootstrap first admin if needed (only when users table is empty)
    boot = bootstrap_admin_if_needed(cfg)
    if boot:
        _debug(f"Bootstrapped initial admin user: email={boot.get('email')} username={boot.get('username')}")

    # CORS is mainly needed for local development (frontend dev server -> API).
    origins = list(cfg.cors_origins())
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def _slide_session(request: Request, call_next: Any) -> Any:
        """Push the session expiry forward after a successful authenticated request.

        Only sessions a guard resolved to an existing user slide; error
        responses (deleted user, forbidden, ...) never get a fresh cookie.
        """
        response = await call_next(request)
        token = request.cookies.get(cfg.AUTH_COOKIE_NAME)
        if not token or response.status_code >= 400:
            return response
        if getattr(request.state, "session_user_id", None) is None:
            return response
        # The handler already set or cleared the cookie (login/register/logout).
        prefix = f"{cfg.AUTH_COOKIE_NAME}="
        if any(h.startswith(prefix) for h in response.headers.getlist("set-cookie")):
            return response
        refreshed = sessions.refresh(token)
        if refreshed:
            set_session_cookie(response, token=refreshed, cfg=cfg)
        return response

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": "validation_error", "errors": jsonable_errors(exc)})

    @app.exception_handler(Exception)
    async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
        # Real cause stays server-side.
        _debug(
            f"Unhandled error on {request.method} {request.url.path}: {type(exc).__name__}: {exc}\n"
            + "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        )
        return JSONResponse(status_code=500, content={"detail": "internal_error"})

    app.include_router(router)
    return app


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for err in exc.errors():
        out.append({"loc": [str(p) for p in err.get("loc", ())], "msg": str(err.get("msg", ""))})
    return out
