import os
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.gallery.models import ROLE_ADMIN, Base, User  # noqa: E402
from scripts._db_utils import create_script_engine, database_url_from_env, script_session  # noqa: E402


def create_tables(*, database_url: str | None = None) -> None:
    """Dev/test shortcut. Production schemas come from `alembic upgrade head`."""
    engine = create_script_engine(database_url_from_env(database_url))
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.org").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    with script_session(database_url_from_env(database_url)) as s:
        user = s.scalars(select(User).where(User.email == admin_email)).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                role=ROLE_ADMIN,
                is_active=True,
                force_password_change=True,
            )
            s.add(user)
        elif user.role != ROLE_ADMIN:
            print(f"WARNING: {admin_email} exists with role {user.role}; leaving it unchanged.")

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    if "--create-tables" in sys.argv[1:]:
        create_tables(database_url=None)
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
