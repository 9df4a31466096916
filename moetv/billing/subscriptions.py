"""Subscription ledger + user projection.

Every function here that changes a `subscriptions` row also rewrites the owning
user's projection (is_subscribed / subscription_type / subscription_expires).
Callers pass the connection of a single `connect()` block so both writes commit
or roll back together.

Status is advisory: an `active` row whose end_date has passed stays active
until an admin edits it, the user buys again, or `expire_lapsed_subscriptions`
is run explicitly.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from moetv.auth.crud import get_user_by_id, set_subscription_projection
from moetv.db import LIKE_ESCAPE, as_bool, contains_pattern, page_bounds
from moetv.util.ids import new_id
from moetv.util.time import parse_iso, to_iso, utcnow, utcnow_iso


PLANS: Dict[str, Dict[str, Any]] = {
    "premium": {
        "name": "Premium",
        "price": 9.99,
        "currency": "USD",
        "duration_days": 30,
        "features": ["HD streaming", "Ad-free", "Mobile download"],
    },
    "vip": {
        "name": "VIP",
        "price": 19.99,
        "currency": "USD",
        "duration_days": 30,
        "features": ["4K streaming", "Ad-free", "Mobile download", "Exclusive content"],
    },
}

STATUSES = ("active", "cancelled", "expired")

# API name -> column, for partial admin updates.
_EDITABLE_FIELDS = {
    "planType": "plan_type",
    "price": "price",
    "currency": "currency",
    "status": "status",
    "startDate": "start_date",
    "endDate": "end_date",
    "autoRenew": "auto_renew",
}


def _debug(msg: str) -> None:
    print(f"[billing] {msg}")


def public_subscription(row: Any | Dict[str, Any]) -> Dict[str, Any]:
    d = dict(row)
    out = {
        "id": d.get("id"),
        "userId": d.get("user_id"),
        "planType": d.get("plan_type"),
        "price": d.get("price"),
        "currency": d.get("currency"),
        "status": d.get("status"),
        "startDate": d.get("start_date"),
        "endDate": d.get("end_date"),
        "autoRenew": as_bool(d.get("auto_renew")),
        "createdAt": d.get("created_at"),
        "updatedAt": d.get("updated_at"),
    }
    # Present when the row came from a join with users.
    if "user_email" in d:
        out["userEmail"] = d.get("user_email")
        out["username"] = d.get("user_username")
    return out


def _check_plan(plan_type: Any) -> str:
    p = str(plan_type or "").strip().lower()
    if p not in PLANS:
        raise ValueError("invalid_plan")
    return p


def _check_status(status: Any) -> str:
    s = str(status or "").strip().lower()
    if s not in STATUSES:
        raise ValueError("invalid_status")
    return s


def _check_price(price: Any) -> float:
    try:
        p = float(price)
    except (TypeError, ValueError):
        raise ValueError("invalid_price")
    if p <= 0:
        raise ValueError("invalid_price")
    return p


def _check_date(value: Any, code: str) -> str:
    try:
        dt = parse_iso(value)
    except (TypeError, ValueError):
        raise ValueError(code)
    if dt is None:
        raise ValueError(code)
    return to_iso(dt)


def _project_row(conn: Any, row: Any) -> None:
    """Make the owning user's projection mirror `row` (last writer wins)."""
    if str(row["status"]) == "active":
        set_subscription_projection(
            conn,
            str(row["user_id"]),
            is_subscribed=True,
            subscription_type=str(row["plan_type"]),
            subscription_expires=str(row["end_date"]),
        )
    else:
        clear_projection(conn, str(row["user_id"]))


def clear_projection(conn: Any, user_id: str) -> None:
    set_subscription_projection(
        conn,
        user_id,
        is_subscribed=False,
        subscription_type=None,
        subscription_expires=None,
    )


def _get_row(conn: Any, subscription_id: str) -> Optional[Any]:
    return conn.execute("SELECT * FROM subscriptions WHERE id=?", (str(subscription_id),)).fetchone()


def _insert(
    conn: Any,
    *,
    user_id: str,
    plan_type: str,
    price: float,
    currency: str,
    status: str,
    start_date: str,
    end_date: str,
    auto_renew: bool,
) -> Any:
    now = utcnow_iso()
    sub_id = new_id()
    conn.execute(
        """
        INSERT INTO subscriptions (
            id, user_id, plan_type, price, currency, status,
            start_date, end_date, auto_renew, created_at, updated_at
        )
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            sub_id,
            str(user_id),
            plan_type,
            float(price),
            currency,
            status,
            start_date,
            end_date,
            1 if auto_renew else 0,
            now,
            now,
        ),
    )
    row = _get_row(conn, sub_id)
    assert row is not None
    return row


def create_subscription(
    conn: Any,
    *,
    user_id: str,
    plan_type: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Purchase `plan_type` for `user_id`.

    Inserts an active 30-day row priced from PLANS and overwrites the user's
    projection. Earlier active rows are left untouched (plans may stack).
    """
    plan_key = _check_plan(plan_type)
    if get_user_by_id(conn, user_id) is None:
        raise LookupError("user_not_found")

    plan = PLANS[plan_key]
    start = now or utcnow()
    end = start + timedelta(days=int(plan["duration_days"]))

    row = _insert(
        conn,
        user_id=user_id,
        plan_type=plan_key,
        price=plan["price"],
        currency=plan["currency"],
        status="active",
        start_date=to_iso(start),
        end_date=to_iso(end),
        auto_renew=True,
    )
    _project_row(conn, row)
    _debug(f"Purchase user_id={user_id} plan={plan_key} end_date={row['end_date']}")

    out = public_subscription(row)
    out["features"] = list(plan["features"])
    return out


def admin_create_subscription(conn: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Insert an arbitrary subscription row (admin console).

    Required: userId, planType, price, startDate, endDate.
    The user's projection is only touched when the new row is active.
    """
    user_id = str(fields.get("userId") or "").strip()
    if not user_id or fields.get("planType") is None or fields.get("price") is None:
        raise ValueError("missing_fields")
    if not fields.get("startDate") or not fields.get("endDate"):
        raise ValueError("missing_fields")

    plan_key = _check_plan(fields.get("planType"))
    price = _check_price(fields.get("price"))
    status = _check_status(fields.get("status") or "active")
    start_date = _check_date(fields.get("startDate"), "invalid_start_date")
    end_date = _check_date(fields.get("endDate"), "invalid_end_date")
    if end_date <= start_date:
        raise ValueError("end_before_start")

    if get_user_by_id(conn, user_id) is None:
        raise LookupError("user_not_found")

    auto_renew = fields.get("autoRenew")
    row = _insert(
        conn,
        user_id=user_id,
        plan_type=plan_key,
        price=price,
        currency=str(fields.get("currency") or PLANS[plan_key]["currency"]),
        status=status,
        start_date=start_date,
        end_date=end_date,
        auto_renew=True if auto_renew is None else bool(auto_renew),
    )
    if status == "active":
        _project_row(conn, row)
    return public_subscription(row)


def update_subscription(conn: Any, subscription_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Partial update of a subscription row.

    Only keys present in `fields` are written. When `status` is among them the
    owning user's projection is rewritten from this row, even if the user has
    other active rows. Returns None when the row does not exist.
    """
    current = _get_row(conn, subscription_id)
    if current is None:
        return None

    sets: List[Tuple[str, Any]] = []
    for key, value in fields.items():
        col = _EDITABLE_FIELDS.get(key)
        if col is None:
            continue
        if col == "plan_type":
            sets.append((col, _check_plan(value)))
        elif col == "price":
            sets.append((col, _check_price(value)))
        elif col == "status":
            sets.append((col, _check_status(value)))
        elif col == "start_date":
            sets.append((col, _check_date(value, "invalid_start_date")))
        elif col == "end_date":
            sets.append((col, _check_date(value, "invalid_end_date")))
        elif col == "currency":
            c = str(value or "").strip().upper()
            if not c:
                raise ValueError("invalid_currency")
            sets.append((col, c))
        elif col == "auto_renew":
            if value is None:
                raise ValueError("invalid_auto_renew")
            sets.append((col, 1 if value else 0))

    merged = dict(current)
    merged.update(dict(sets))
    if str(merged["end_date"]) <= str(merged["start_date"]):
        raise ValueError("end_before_start")

    sets.append(("updated_at", utcnow_iso()))
    assignments = ", ".join(f"{k}=?" for k, _ in sets)
    params = [v for _, v in sets] + [str(subscription_id)]
    conn.execute(f"UPDATE subscriptions SET {assignments} WHERE id=?", params)

    row = _get_row(conn, subscription_id)
    assert row is not None
    if "status" in fields:
        _project_row(conn, row)
        _debug(f"Status change subscription_id={subscription_id} status={row['status']} user_id={row['user_id']}")
    return public_subscription(row)


def delete_subscription(conn: Any, subscription_id: str) -> bool:
    """Delete a row and clear the owning user's projection unconditionally."""
    row = _get_row(conn, subscription_id)
    if row is None:
        return False
    conn.execute("DELETE FROM subscriptions WHERE id=?", (str(subscription_id),))
    clear_projection(conn, str(row["user_id"]))
    _debug(f"Deleted subscription_id={subscription_id} user_id={row['user_id']}")
    return True


_JOINED_SELECT = """
    SELECT s.*, u.email AS user_email, u.username AS user_username
    FROM subscriptions s
    LEFT JOIN users u ON u.id = s.user_id
"""


def get_subscription(conn: Any, subscription_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(_JOINED_SELECT + " WHERE s.id=?", (str(subscription_id),)).fetchone()
    return public_subscription(row) if row is not None else None


def list_subscriptions(
    conn: Any,
    *,
    page: int = 1,
    limit: int = 10,
    search: str | None = None,
    status: str | None = None,
    plan_type: str | None = None,
) -> Tuple[List[Dict[str, Any]], int, int, int]:
    """Newest rows first, joined with the owning user. Returns (items, total, page, limit)."""
    page, limit, offset = page_bounds(page, limit)

    where: List[str] = []
    params: List[Any] = []
    if status:
        where.append("s.status=?")
        params.append(status.strip().lower())
    if plan_type:
        where.append("s.plan_type=?")
        params.append(plan_type.strip().lower())
    q = (search or "").strip()
    if q:
        like = contains_pattern(q)
        where.append(f"(u.email LIKE ? {LIKE_ESCAPE} OR u.username LIKE ? {LIKE_ESCAPE})")
        params.extend([like, like])

    where_sql = (" WHERE " + " AND ".join(where)) if where else ""
    total = conn.execute(
        "SELECT COUNT(*) AS n FROM subscriptions s LEFT JOIN users u ON u.id = s.user_id" + where_sql,
        tuple(params),
    ).fetchone()["n"]
    rows = conn.execute(
        _JOINED_SELECT + where_sql + " ORDER BY s.created_at DESC, s.id DESC LIMIT ? OFFSET ?",
        tuple(params + [limit, offset]),
    ).fetchall()
    return [public_subscription(r) for r in rows], int(total), page, limit


def list_user_subscriptions(conn: Any, user_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM subscriptions WHERE user_id=? ORDER BY created_at ASC, id ASC",
        (str(user_id),),
    ).fetchall()
    return [public_subscription(r) for r in rows]


def expire_lapsed_subscriptions(conn: Any, *, now: Optional[datetime] = None) -> int:
    """Flip active rows past their end_date to `expired` and re-project their users.

    Each affected user is projected from their newest remaining active row
    (by end_date), or cleared if none is left. Returns the number of rows expired.
    """
    now_iso = to_iso(now) if now is not None else utcnow_iso()
    lapsed = conn.execute(
        "SELECT id, user_id FROM subscriptions WHERE status='active' AND end_date <= ?",
        (now_iso,),
    ).fetchall()
    if not lapsed:
        return 0

    conn.execute(
        "UPDATE subscriptions SET status='expired', updated_at=? WHERE status='active' AND end_date <= ?",
        (utcnow_iso(), now_iso),
    )

    user_ids = sorted({str(r["user_id"]) for r in lapsed})
    for uid in user_ids:
        remaining = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE user_id=? AND status='active'
            ORDER BY end_date DESC, created_at DESC
            LIMIT 1
            """,
            (uid,),
        ).fetchone()
        if remaining is not None:
            _project_row(conn, remaining)
        else:
            clear_projection(conn, uid)

    _debug(f"Expired {len(lapsed)} subscription(s) across {len(user_ids)} user(s)")
    return len(lapsed)
