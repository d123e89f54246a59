"""Seed sample users and wallets for local development."""
from __future__ import annotations

from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select

from fundledger import models
from fundledger.config import get_settings
from fundledger.db import get_sessionmaker, init_engine
from fundledger.services.ledger import credit_wallet


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    init_engine()
    session = get_sessionmaker()()
    try:
        for username in ("alice", "bob"):
            email = f"{username}@example.com"
            if session.scalars(select(models.User).where(models.User.email == email)).first():
                continue
            session.add(models.User(username=username, email=email))
        session.commit()

        alice = session.scalars(select(models.User).where(models.User.username == "alice")).one()
        if not session.scalars(select(models.LedgerEntry).where(models.LedgerEntry.user_id == alice.id)).first():
            credit_wallet(
                session,
                user_id=alice.id,
                amount=Decimal("2500.00"),
                reference="SEED-OPENING-BALANCE",
                description="Seed opening balance",
            )
            session.commit()
        print("Seed data inserted.")
    finally:
        session.close()


if __name__ == "__main__":
    main()
