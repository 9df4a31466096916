"""Create a user (admin by default) in the configured DB.

Usage:
  python scripts/create_admin.py --email admin@moetv.com --username admin --password '...'
  python scripts/create_admin.py --email bob@x.com --username bob --password '...' --no-admin

Change the password after the first login.
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from moetv.config import load_config
from moetv.db import init_db, connect
from moetv.auth.crud import create_user


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--email", required=True)
    ap.add_argument("--username", required=True)
    ap.add_argument("--password", required=True)
    ap.add_argument("--no-admin", action="store_true", help="Create a regular user instead")
    args = ap.parse_args()

    cfg = load_config()
    init_db(cfg.DB_DSN)

    with connect(cfg.DB_DSN) as conn:
        u = create_user(
            conn,
            email=args.email,
            username=args.username,
            password=args.password,
            is_admin=not args.no_admin,
        )

    print("Created user:")
    print(u)


if __name__ == "__main__":
    main()
