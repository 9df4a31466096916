"""Mark lapsed subscriptions as expired and re-project their users.

Subscription status is not time-derived inside the API; run this from cron
(or any scheduler) to reconcile rows whose end_date has passed.

Usage:
  python scripts/expire_subscriptions.py
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from moetv.config import load_config
from moetv.db import connect, init_db
from moetv.billing.subscriptions import expire_lapsed_subscriptions


def main() -> None:
    cfg = load_config()
    init_db(cfg.DB_DSN)
    with connect(cfg.DB_DSN) as conn:
        n = expire_lapsed_subscriptions(conn)
    print(f"Expired subscriptions: {n}")


if __name__ == "__main__":
    main()
