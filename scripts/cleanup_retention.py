"""
Retention purge: deletes read notifications and feed items older than
RETENTION_DAYS (default 30). Unread notifications are never purged.

Usage:
  python scripts/cleanup_retention.py
  python scripts/cleanup_retention.py --days 7
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    parser = argparse.ArgumentParser(description="Purge expired notifications and feed items.")
    parser.add_argument("--days", type=int, default=None, help="Override RETENTION_DAYS for this run.")
    args = parser.parse_args()

    from app.closet import create_app
    from app.closet.services import get_services

    app = create_app()
    with app.app_context():
        read_model = get_services(app).notifications
        if args.days is not None:
            if args.days < 1:
                parser.error("--days must be >= 1")
            read_model.retention_days = args.days
        notifications, feed_items = read_model.purge_expired()
    print(f"Purged notifications={notifications} feed_items={feed_items}", flush=True)


if __name__ == "__main__":
    main()
