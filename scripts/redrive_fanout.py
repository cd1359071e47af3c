"""
Re-drives fan-out work parked in fanout_retries after the dispatcher
exhausted its in-process attempts.

Usage:
  python scripts/redrive_fanout.py
  python scripts/redrive_fanout.py --limit 20
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-drive parked fan-out work.")
    parser.add_argument("--limit", type=int, default=100, help="Max parked rows to pick up in this run.")
    args = parser.parse_args()

    from app.closet import create_app
    from app.closet.services import get_services

    app = create_app()
    with app.app_context():
        dispatcher = get_services(app).dispatcher
        try:
            stats = dispatcher.redrive(limit=args.limit)
        finally:
            dispatcher.close()
    print(f"Re-drive picked={stats['picked']} done={stats['done']} failed={stats['failed']}", flush=True)
    if stats["failed"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
