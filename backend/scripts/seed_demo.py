"""
Seed a demo user and practice account.

Examples:
  python backend/scripts/seed_demo.py
  python backend/scripts/seed_demo.py --email someone@example.com --name "Someone"
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Ensure `storage.*` imports resolve when launched from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy.orm import Session  # noqa: E402

from storage.database import SessionLocal, init_db  # noqa: E402
from storage.service import StorageService  # noqa: E402

DEMO_ACCOUNT_NAME = "Demo Account"
DEMO_API_KEY = "demo-api-key"


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def seed(db: Session, email: str = "test@example.com", name: str = "Test User") -> dict:
    """
    Create the demo user, account and welcome notification.
    Re-running with the same email changes nothing.
    """
    storage = StorageService(db)
    existing = storage.users.get_by_email(email.strip().lower())
    if existing is not None:
        return {"created": False, "user_id": existing.id, "email": existing.email}

    user = storage.create_user(email=email, name=name)
    account = storage.create_account(
        user_id=user.id,
        name=DEMO_ACCOUNT_NAME,
        api_key=DEMO_API_KEY,
        is_practice=True,
        make_default=True,
        currency="USD",
        cash=10000.0,
    )
    storage.create_welcome_notification(user.id)
    return {"created": True, "user_id": user.id, "email": user.email, "account_id": account.id}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Seed demo data")
    parser.add_argument("--email", default="test@example.com")
    parser.add_argument("--name", default="Test User")
    args = parser.parse_args(argv)

    init_db()
    db = SessionLocal()
    try:
        _print(seed(db, email=args.email, name=args.name))
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
