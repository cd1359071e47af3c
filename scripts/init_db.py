import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.closet.models import User  # noqa: E402
from app.closet.rbac import Roles  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin account in an idempotent way.
    Does NOT overwrite an existing admin user's password; only promotes the role.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@closet.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///closet.db").strip()

    # Direct engine/session so this can run in release without building the app.
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                name="Admin",
                password_hash=generate_password_hash(admin_password),
                role=Roles.ADMIN,
                is_active=True,
            )
            s.add(user)
            print(f"Created admin user {admin_email}", flush=True)
        elif user.role != Roles.ADMIN:
            user.role = Roles.ADMIN
            print(f"Promoted {admin_email} to {Roles.ADMIN}", flush=True)
        else:
            print(f"Admin user {admin_email} already present", flush=True)


def main() -> None:
    from app.closet import create_app
    from app.closet.models import Base

    app = create_app()
    # Local development convenience; production schemas come from alembic.
    Base.metadata.create_all(app.extensions["sqlalchemy_engine"])
    if app.extensions["notifications_engine"] is not app.extensions["sqlalchemy_engine"]:
        Base.metadata.create_all(app.extensions["notifications_engine"])
    seed_only(database_url=app.config["DATABASE_URL"])


if __name__ == "__main__":
    main()
