#!/usr/bin/env python3
"""
Initialize the database schema using SQLAlchemy models.

Creates profiles, company_settings, clients and appointments, including the
unique index that keeps one live appointment per company slot.
Safe to run multiple times (idempotent).

Usage:
    export DATABASE_URL="postgresql+asyncpg://localhost:5432/agenda_test"
    python3 Backend/scripts/init_db.py
"""
import asyncio
import os
import sys
from pathlib import Path

# Add Backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from agenda.core.db import Base
import agenda.models  # noqa: F401  registers the tables on Base.metadata

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    print("ERROR: DATABASE_URL environment variable not set")
    print("   Use: export DATABASE_URL='postgresql+asyncpg://localhost:5432/agenda_test'")
    sys.exit(1)


async def init_db():
    """Create all tables."""
    print("Initializing database...")
    print(f"   Database: {DATABASE_URL}")

    engine = create_async_engine(DATABASE_URL, echo=False)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        print("Schema initialized:")
        for table in Base.metadata.sorted_tables:
            print(f"   - {table.name}")
    except SQLAlchemyError as e:
        print(f"Error initializing database: {e}")
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_db())
