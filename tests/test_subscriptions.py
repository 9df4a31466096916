# tests/test_subscriptions.py

from datetime import datetime, timedelta, timezone

import pytest

from moetv.auth.crud import get_user_by_id, public_user
from moetv.billing.subscriptions import (
    PLANS,
    admin_create_subscription,
    create_subscription,
    delete_subscription,
    expire_lapsed_subscriptions,
    list_user_subscriptions,
    update_subscription,
)
from moetv.util.time import to_iso


NOW = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _user(conn, user_id):
    return public_user(get_user_by_id(conn, user_id))


def _active_rows(conn, user_id):
    return conn.execute(
        "SELECT * FROM subscriptions WHERE user_id=? AND status='active'", (user_id,)
    ).fetchall()


# ─────────────────────────────────────────────────────────────
# purchase
# ─────────────────────────────────────────────────────────────

def test_purchase_creates_active_row_and_projects_user(db, make_user):
    u = make_user()
    with db() as conn:
        sub = create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW)

    assert sub["status"] == "active"
    assert sub["price"] == 9.99
    assert sub["currency"] == "USD"
    assert sub["autoRenew"] is True
    assert sub["startDate"] == to_iso(NOW)
    assert sub["endDate"] == to_iso(NOW + timedelta(days=30))
    assert sub["features"] == PLANS["premium"]["features"]

    with db() as conn:
        user = _user(conn, u["id"])
        assert len(_active_rows(conn, u["id"])) == 1
    assert user["isSubscribed"] is True
    assert user["subscriptionType"] == "premium"
    assert user["subscriptionExpires"] == sub["endDate"]


def test_vip_uses_vip_price(db, make_user):
    u = make_user()
    with db() as conn:
        sub = create_subscription(conn, user_id=u["id"], plan_type="vip", now=NOW)
    assert sub["price"] == 19.99


@pytest.mark.parametrize("plan", ["", "gold", "free", None])
def test_purchase_rejects_unknown_plan(db, make_user, plan):
    u = make_user()
    with db() as conn:
        with pytest.raises(ValueError):
            create_subscription(conn, user_id=u["id"], plan_type=plan)
        assert list_user_subscriptions(conn, u["id"]) == []
        assert _user(conn, u["id"])["isSubscribed"] is False


def test_purchase_for_missing_user(db):
    with db() as conn:
        with pytest.raises(LookupError):
            create_subscription(conn, user_id="ghost", plan_type="premium")


def test_purchases_stack_and_last_writer_wins(db, make_user):
    u = make_user()
    with db() as conn:
        create_subscription(conn, user_id=u["id"], plan_type="vip", now=NOW)
        second = create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW + timedelta(days=1))

    with db() as conn:
        assert len(_active_rows(conn, u["id"])) == 2
        user = _user(conn, u["id"])
        history = list_user_subscriptions(conn, u["id"])
    assert user["subscriptionType"] == "premium"
    assert user["subscriptionExpires"] == second["endDate"]
    assert sorted(s["planType"] for s in history) == ["premium", "vip"]


# ─────────────────────────────────────────────────────────────
# admin create / update / delete
# ─────────────────────────────────────────────────────────────

def _fields(user_id, **overrides):
    f = {
        "userId": user_id,
        "planType": "premium",
        "price": 9.99,
        "startDate": "2030-01-01T00:00:00Z",
        "endDate": "2030-02-01T00:00:00Z",
    }
    f.update(overrides)
    return f


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"planType": "gold"}, "invalid_plan"),
        ({"status": "paused"}, "invalid_status"),
        ({"price": 0}, "invalid_price"),
        ({"price": "abc"}, "invalid_price"),
        ({"startDate": "not-a-date"}, "invalid_start_date"),
        ({"endDate": "2029-12-31T00:00:00Z"}, "end_before_start"),
        ({"endDate": None}, "missing_fields"),
    ],
)
def test_admin_create_validation(db, make_user, overrides, code):
    u = make_user()
    with db() as conn:
        with pytest.raises(ValueError) as e:
            admin_create_subscription(conn, _fields(u["id"], **overrides))
    assert str(e.value) == code


def test_admin_create_accepts_date_only(db, make_user):
    u = make_user()
    with db() as conn:
        sub = admin_create_subscription(conn, _fields(u["id"], startDate="2030-01-01", endDate="2030-02-01"))
    assert sub["startDate"] == "2030-01-01T00:00:00Z"
    assert sub["endDate"] == "2030-02-01T00:00:00Z"


def test_cancel_clears_projection_even_before_end_date(db, make_user):
    u = make_user()
    with db() as conn:
        sub = create_subscription(conn, user_id=u["id"], plan_type="vip")
        updated = update_subscription(conn, sub["id"], {"status": "cancelled"})
        user = _user(conn, u["id"])

    assert updated["status"] == "cancelled"
    assert updated["endDate"] == sub["endDate"]
    assert user["isSubscribed"] is False
    assert user["subscriptionType"] is None
    assert user["subscriptionExpires"] is None


def test_update_without_status_leaves_projection(db, make_user):
    u = make_user()
    with db() as conn:
        sub = create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW)
        before = _user(conn, u["id"])
        updated = update_subscription(conn, sub["id"], {"price": 4.99, "endDate": "2031-01-01T00:00:00Z"})
        after = _user(conn, u["id"])

    assert updated["price"] == 4.99
    assert updated["endDate"] == "2031-01-01T00:00:00Z"
    assert after["subscriptionExpires"] == before["subscriptionExpires"]
    assert after["subscriptionType"] == "premium"


def test_update_status_projects_this_row_over_others(db, make_user):
    u = make_user()
    with db() as conn:
        create_subscription(conn, user_id=u["id"], plan_type="vip", now=NOW)
        older = create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW)
        update_subscription(conn, older["id"], {"status": "expired"})
        # Another active vip row still exists, projection follows the edited row.
        user = _user(conn, u["id"])
    assert user["isSubscribed"] is False


def test_update_missing_subscription(db):
    with db() as conn:
        assert update_subscription(conn, "nope", {"status": "active"}) is None


def test_update_rejects_dates_out_of_order(db, make_user):
    u = make_user()
    with db() as conn:
        sub = create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW)
        with pytest.raises(ValueError):
            update_subscription(conn, sub["id"], {"endDate": "2029-01-01T00:00:00Z"})


def test_delete_clears_projection_despite_other_active_rows(db, make_user):
    u = make_user()
    with db() as conn:
        create_subscription(conn, user_id=u["id"], plan_type="vip", now=NOW)
        drop = create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW)
        assert delete_subscription(conn, drop["id"]) is True
        user = _user(conn, u["id"])
        remaining = list_user_subscriptions(conn, u["id"])

    assert user["isSubscribed"] is False
    assert user["subscriptionType"] is None
    assert [s["planType"] for s in remaining] == ["vip"]

    with db() as conn:
        assert delete_subscription(conn, drop["id"]) is False


# ─────────────────────────────────────────────────────────────
# atomicity
# ─────────────────────────────────────────────────────────────

def test_failed_unit_of_work_leaves_nothing_behind(db, make_user):
    u = make_user()
    with pytest.raises(RuntimeError):
        with db() as conn:
            create_subscription(conn, user_id=u["id"], plan_type="vip")
            raise RuntimeError("crash between writes")

    with db() as conn:
        assert list_user_subscriptions(conn, u["id"]) == []
        user = _user(conn, u["id"])
    assert user["isSubscribed"] is False
    assert user["subscriptionType"] is None


# ─────────────────────────────────────────────────────────────
# expiry sweep
# ─────────────────────────────────────────────────────────────

def test_expire_lapsed_clears_projection(db, make_user):
    u = make_user()
    with db() as conn:
        sub = create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW - timedelta(days=40))
        # Advisory status: still active until swept.
        assert _user(conn, u["id"])["isSubscribed"] is True

        assert expire_lapsed_subscriptions(conn, now=NOW) == 1
        user = _user(conn, u["id"])
        rows = list_user_subscriptions(conn, u["id"])

    assert rows[0]["id"] == sub["id"]
    assert rows[0]["status"] == "expired"
    assert user["isSubscribed"] is False


def test_expire_lapsed_reprojects_from_remaining_row(db, make_user):
    u = make_user()
    with db() as conn:
        keep = create_subscription(conn, user_id=u["id"], plan_type="vip", now=NOW - timedelta(days=5))
        create_subscription(conn, user_id=u["id"], plan_type="premium", now=NOW - timedelta(days=40))

        assert expire_lapsed_subscriptions(conn, now=NOW) == 1
        user = _user(conn, u["id"])

    assert user["isSubscribed"] is True
    assert user["subscriptionType"] == "vip"
    assert user["subscriptionExpires"] == keep["endDate"]


def test_expire_lapsed_noop(db, make_user):
    u = make_user()
    with db() as conn:
        create_subscription(conn, user_id=u["id"], plan_type="vip", now=NOW)
        assert expire_lapsed_subscriptions(conn, now=NOW) == 0
