from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from moetv.config import Config
from moetv.db import LIKE_ESCAPE, as_bool, connect, contains_pattern, page_bounds
from moetv.util.ids import new_id
from moetv.util.time import parse_iso, to_iso, utcnow_iso

from .security import hash_password, verify_password


# Columns an admin may edit through `update_user` (API name -> column).
_EDITABLE_FIELDS = {
    "email": "email",
    "username": "username",
    "isAdmin": "is_admin",
    "isSubscribed": "is_subscribed",
    "subscriptionType": "subscription_type",
    "subscriptionExpires": "subscription_expires",
    "avatar": "avatar",
}
_BOOL_COLUMNS = ("is_admin", "is_subscribed")
# Optional columns that accept an explicit null to clear them.
_NULLABLE_COLUMNS = ("subscription_type", "subscription_expires", "avatar")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_username(username: str) -> str:
    return (username or "").strip()


def public_user(row: Any | Dict[str, Any]) -> Dict[str, Any]:
    """API view of a users row (camelCase, no password hash)."""
    d = dict(row)
    return {
        "id": d.get("id"),
        "email": d.get("email"),
        "username": d.get("username"),
        "avatar": d.get("avatar"),
        "isAdmin": as_bool(d.get("is_admin")),
        "isSubscribed": as_bool(d.get("is_subscribed")),
        "subscriptionType": d.get("subscription_type"),
        "subscriptionExpires": d.get("subscription_expires"),
        "createdAt": d.get("created_at"),
        "updatedAt": d.get("updated_at"),
        "lastLoginAt": d.get("last_login_at"),
    }


def get_user_by_id(conn: Any, user_id: str) -> Optional[Any]:
    if not user_id:
        return None
    return conn.execute(
        "SELECT * FROM users WHERE id=?",
        (str(user_id),),
    ).fetchone()


def get_user_by_email(conn: Any, email: str) -> Optional[Any]:
    e = normalize_email(email)
    if not e:
        return None
    return conn.execute(
        "SELECT * FROM users WHERE email=?",
        (e,),
    ).fetchone()


def get_user_by_username(conn: Any, username: str) -> Optional[Any]:
    u = normalize_username(username)
    if not u:
        return None
    return conn.execute(
        "SELECT * FROM users WHERE username=?",
        (u,),
    ).fetchone()


def verify_user_credentials(conn: Any, email: str, password: str) -> Optional[Any]:
    """Return the user row when email + password match, else None.

    Unknown email and wrong password are deliberately indistinguishable.
    """
    row = get_user_by_email(conn, email)
    if row is None:
        return None
    if not verify_password(password, str(row["password_hash"])):
        return None
    return row


def create_user(
    conn: Any,
    *,
    email: str,
    username: str,
    password: str,
    is_admin: bool = False,
) -> Dict[str, Any]:
    e = normalize_email(email)
    u = normalize_username(username)
    if not e or not u or not password:
        raise ValueError("missing_fields")
    if "@" not in e:
        raise ValueError("invalid_email")

    if get_user_by_email(conn, e) is not None:
        raise ValueError("email_exists")
    if get_user_by_username(conn, u) is not None:
        raise ValueError("username_exists")

    now = utcnow_iso()
    user_id = new_id()
    conn.execute(
        """
        INSERT INTO users (
            id, email, username, password_hash, is_admin,
            is_subscribed, subscription_type, subscription_expires,
            created_at, updated_at
        )
        VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (user_id, e, u, hash_password(password), 1 if is_admin else 0, 0, None, None, now, now),
    )
    row = get_user_by_id(conn, user_id)
    assert row is not None
    return public_user(row)


def update_user(conn: Any, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Partial update. Only keys present in `fields` are written.

    Accepts API (camelCase) names plus `password`. Returns the updated public
    user, or None when the user does not exist.
    """
    if get_user_by_id(conn, user_id) is None:
        return None

    sets: List[Tuple[str, Any]] = []
    for key, value in fields.items():
        if key == "password":
            if value:
                sets.append(("password_hash", hash_password(str(value))))
            continue

        col = _EDITABLE_FIELDS.get(key)
        if col is None:
            continue

        if col in _BOOL_COLUMNS:
            if value is None:
                raise ValueError(f"{key}_required")
            sets.append((col, 1 if value else 0))
        elif col == "email":
            e = normalize_email(value)
            if not e or "@" not in e:
                raise ValueError("invalid_email")
            other = get_user_by_email(conn, e)
            if other is not None and str(other["id"]) != str(user_id):
                raise ValueError("email_exists")
            sets.append((col, e))
        elif col == "username":
            u = normalize_username(value)
            if not u:
                raise ValueError("invalid_username")
            other = get_user_by_username(conn, u)
            if other is not None and str(other["id"]) != str(user_id):
                raise ValueError("username_exists")
            sets.append((col, u))
        elif col == "subscription_expires":
            try:
                dt = parse_iso(value)
            except (TypeError, ValueError):
                raise ValueError("invalid_subscription_expires")
            sets.append((col, to_iso(dt) if dt is not None else None))
        elif col in _NULLABLE_COLUMNS:
            # Empty string clears, like an explicit null.
            sets.append((col, value or None))

    sets.append(("updated_at", utcnow_iso()))
    assignments = ", ".join(f"{k}=?" for k, _ in sets)
    params = [v for _, v in sets] + [str(user_id)]
    conn.execute(f"UPDATE users SET {assignments} WHERE id=?", params)

    row = get_user_by_id(conn, user_id)
    return public_user(row) if row is not None else None


def set_subscription_projection(
    conn: Any,
    user_id: str,
    *,
    is_subscribed: bool,
    subscription_type: str | None,
    subscription_expires: str | None,
) -> None:
    """Overwrite the denormalized subscription fields on a user row."""
    conn.execute(
        """
        UPDATE users
        SET is_subscribed=?, subscription_type=?, subscription_expires=?, updated_at=?
        WHERE id=?
        """,
        (1 if is_subscribed else 0, subscription_type, subscription_expires, utcnow_iso(), str(user_id)),
    )


def delete_user(conn: Any, user_id: str) -> bool:
    """Delete a user and the rows that reference it. Returns False if absent."""
    if get_user_by_id(conn, user_id) is None:
        return False
    uid = str(user_id)
    conn.execute("DELETE FROM subscriptions WHERE user_id=?", (uid,))
    conn.execute("DELETE FROM watch_history WHERE user_id=?", (uid,))
    conn.execute("DELETE FROM favorites WHERE user_id=?", (uid,))
    conn.execute("DELETE FROM comments WHERE user_id=?", (uid,))
    conn.execute("UPDATE videos SET uploader_id=NULL WHERE uploader_id=?", (uid,))
    conn.execute("DELETE FROM users WHERE id=?", (uid,))
    return True


def list_users(
    conn: Any,
    *,
    page: int = 1,
    limit: int = 10,
    search: str | None = None,
) -> Tuple[List[Dict[str, Any]], int, int, int]:
    """Newest users first. Returns (items, total, page, limit)."""
    page, limit, offset = page_bounds(page, limit)

    where = ""
    params: List[Any] = []
    q = (search or "").strip()
    if q:
        like = contains_pattern(q)
        where = f" WHERE (email LIKE ? {LIKE_ESCAPE} OR username LIKE ? {LIKE_ESCAPE})"
        params.extend([like, like])

    total = conn.execute(f"SELECT COUNT(*) AS n FROM users{where}", tuple(params)).fetchone()["n"]
    rows = conn.execute(
        f"SELECT * FROM users{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        tuple(params + [limit, offset]),
    ).fetchall()
    return [public_user(r) for r in rows], int(total), page, limit


def touch_last_login(conn: Any, user_id: str) -> None:
    now = utcnow_iso()
    conn.execute(
        "UPDATE users SET last_login_at=?, updated_at=? WHERE id=?",
        (now, now, str(user_id)),
    )


def bootstrap_admin_if_needed(cfg: Config) -> Optional[Dict[str, Any]]:
    """Create the first admin user if the users table is empty.

    Controlled via environment variables so a new deployment has a deterministic way to log in.

    - AUTH_BOOTSTRAP_ADMIN_EMAIL (default: admin@moetv.com)
    - AUTH_BOOTSTRAP_ADMIN_USERNAME (default: admin)
    - AUTH_BOOTSTRAP_ADMIN_PASSWORD (no default; blank skips bootstrapping)

    This only runs when there are 0 rows in `users`.
    """

    email = normalize_email(cfg.AUTH_BOOTSTRAP_ADMIN_EMAIL)
    username = normalize_username(cfg.AUTH_BOOTSTRAP_ADMIN_USERNAME)
    password = cfg.AUTH_BOOTSTRAP_ADMIN_PASSWORD
    if not email or not username or not password:
        return None

    with connect(cfg.DB_DSN) as conn:
        n = conn.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"]
        if int(n) > 0:
            return None
        return create_user(conn, email=email, username=username, password=password, is_admin=True)
