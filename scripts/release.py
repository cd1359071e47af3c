"""
Release-phase helper.

Goal:
- Fail fast if DATABASE_URL is missing (avoid silently using SQLite in prod).
- Run alembic migrations against the listing store, and against the
  notification store when NOTIFICATIONS_DATABASE_URL points elsewhere.
- Seed the admin user (idempotent; does NOT overwrite existing passwords).

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def _upgrade(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def run_release() -> None:
    db_url = _require_env("DATABASE_URL")
    notifications_url = (os.environ.get("NOTIFICATIONS_DATABASE_URL") or "").strip() or db_url
    # Guardrail: prevent accidental prod deploys against SQLite.
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and (db_url.startswith("sqlite") or notifications_url.startswith("sqlite")):
        raise RuntimeError("Refusing to run release on a sqlite database URL in production. Use Postgres.")

    print("=== closet release start ===", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)
    print("Running Alembic migrations...", flush=True)
    _upgrade(db_url)
    if notifications_url != db_url:
        print("Running Alembic migrations on notification store...", flush=True)
        _upgrade(notifications_url)
    print("Migrations complete.", flush=True)

    print("Seeding admin (idempotent)...", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("Seed complete.", flush=True)
    print("=== closet release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
