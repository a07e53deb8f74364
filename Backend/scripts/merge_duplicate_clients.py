#!/usr/bin/env python3
"""
Merge Duplicate Clients Script

Consolidates clients that share a phone identity (e.g. "(11) 99999-8888" and
"11999998888" stored as two rows before phone normalization was enforced).
The oldest client of each group is kept and receives the appointments of the
others.

Usage:
    cd Backend
    python scripts/merge_duplicate_clients.py

    # Report only, roll back instead of committing:
    python scripts/merge_duplicate_clients.py --dry-run

    # A single company:
    python scripts/merge_duplicate_clients.py --company 0b7c...-uuid

Requirements:
    - Database connection (DATABASE_URL env var or .env)
"""

import argparse
import asyncio
import logging
import os
import sys
import uuid

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from agenda.clients import merge_duplicate_clients
from agenda.core.db import AsyncSessionLocal, engine
from agenda.models import Profile

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


async def run_merge(company_id: uuid.UUID | None = None, dry_run: bool = False) -> dict:
    """Merge duplicates for one company, or all of them. Returns summed counters."""
    totals = {"companies": 0, "duplicates_found": 0, "duplicates_removed": 0, "clients_consolidated": 0}

    if dry_run:
        logger.info("DRY RUN MODE - changes will be rolled back")

    async with AsyncSessionLocal() as session:
        if company_id is not None:
            company_ids = [company_id]
        else:
            result = await session.execute(select(Profile.id).order_by(Profile.created_at.asc()))
            company_ids = list(result.scalars().all())

        for current in company_ids:
            summary = await merge_duplicate_clients(session, current)
            totals["companies"] += 1
            for key, value in summary.to_dict().items():
                totals[key] += value

            if summary.duplicates_removed:
                logger.info(
                    f"[{current}] removed {summary.duplicates_removed} duplicate(s) "
                    f"across {summary.clients_consolidated} client(s)"
                )

            if dry_run:
                await session.rollback()
            else:
                await session.commit()

    logger.info(
        f"Done: {totals['companies']} company(ies), {totals['duplicates_removed']} duplicate(s) removed"
    )
    return totals


async def main() -> int:
    parser = argparse.ArgumentParser(description="Merge clients sharing the same phone identity")
    parser.add_argument("--company", type=uuid.UUID, help="Only this company id")
    parser.add_argument("--dry-run", action="store_true", help="Report without committing")
    args = parser.parse_args()

    try:
        await run_merge(company_id=args.company, dry_run=args.dry_run)
    finally:
        await engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
