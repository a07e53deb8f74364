"""
Client identity persistence.

A client is identified inside a company by the canonical phone key, and the
database enforces one row per (company_id, normalized_phone). Writes therefore
go through upsert_client() instead of blind inserts, so "(11) 99999-8888" and
"11999998888" land on the same client.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_rules.queries import find_client_by_phone
from .models import Appointment, Client
from .phone_identity import MIN_IDENTITY_DIGITS, normalize_phone

logger = logging.getLogger(__name__)


class InvalidPhoneNumber(ValueError):
    """Raised when a phone number cannot identify a client."""

    def __init__(self, phone: str):
        self.phone = phone
        super().__init__(f"Invalid phone number: {phone!r}")


@dataclass
class ClientUpsertResult:
    client: Client
    is_new: bool


@dataclass
class DeduplicationSummary:
    duplicates_found: int = 0
    duplicates_removed: int = 0
    clients_consolidated: int = 0

    def to_dict(self) -> dict:
        return {
            "duplicates_found": self.duplicates_found,
            "duplicates_removed": self.duplicates_removed,
            "clients_consolidated": self.clients_consolidated,
        }


def _apply_contact_details(
    client: Client,
    phone: str,
    normalized: str,
    name: Optional[str],
    email: Optional[str],
    notes: Optional[str],
) -> None:
    client.phone = phone
    client.normalized_phone = normalized
    if name and name.strip():
        client.name = name.strip()
    if email:
        client.email = email.strip().lower()
    if notes:
        client.notes = notes


async def upsert_client(
    session: AsyncSession,
    company_id: uuid.UUID,
    phone: str,
    name: str,
    email: Optional[str] = None,
    notes: Optional[str] = None,
) -> ClientUpsertResult:
    """
    Create the client, or update the one already holding this phone identity.

    Flushes but does not commit. Raises InvalidPhoneNumber when the phone
    cannot serve as an identity key.
    """
    normalized = normalize_phone(phone)
    if len(normalized) < MIN_IDENTITY_DIGITS:
        raise InvalidPhoneNumber(phone)

    existing = await find_client_by_phone(session, company_id, phone)
    if existing is not None:
        _apply_contact_details(existing, phone, normalized, name, email, notes)
        await session.flush()
        logger.debug(f"[CLIENTS] Updated client {existing.id} for {normalized}")
        return ClientUpsertResult(client=existing, is_new=False)

    client = Client(
        company_id=company_id,
        name=name.strip() if name else "",
        phone=phone,
        normalized_phone=normalized,
        email=email.strip().lower() if email else None,
        notes=notes,
    )
    try:
        async with session.begin_nested():
            session.add(client)
    except IntegrityError:
        # Another request created the same identity between our read and write
        logger.info(f"[CLIENTS] Concurrent insert for {normalized} at {company_id}, reusing existing row")
        existing = await find_client_by_phone(session, company_id, phone)
        if existing is None:
            raise
        _apply_contact_details(existing, phone, normalized, name, email, notes)
        await session.flush()
        return ClientUpsertResult(client=existing, is_new=False)

    logger.info(f"[CLIENTS] Created client {client.id} for {normalized} at {company_id}")
    return ClientUpsertResult(client=client, is_new=True)


async def merge_duplicate_clients(session: AsyncSession, company_id: uuid.UUID) -> DeduplicationSummary:
    """
    Consolidate clients of a company that share a phone identity.

    The oldest client of each group is kept; appointments of the others are
    moved to it, missing email / notes and the longest name are carried over,
    and the duplicates are deleted. Flushes but does not commit.
    """
    result = await session.execute(
        select(Client)
        .where(Client.company_id == company_id)
        .order_by(Client.created_at.asc(), Client.id.asc())
    )
    clients = result.scalars().all()

    groups: dict[str, list[Client]] = defaultdict(list)
    for client in clients:
        key = normalize_phone(client.phone)
        if not key:
            logger.warning(f"[CLIENTS] Client {client.id} has an unusable phone: {client.phone!r}")
            continue
        groups[key].append(client)

    summary = DeduplicationSummary()
    for key, members in groups.items():
        if len(members) < 2:
            continue

        primary, duplicates = members[0], members[1:]
        summary.duplicates_found += len(members)
        logger.info(f"[CLIENTS] Merging {len(duplicates)} duplicate(s) of {primary.id} ({key})")

        for duplicate in duplicates:
            await session.execute(
                update(Appointment)
                .where(Appointment.client_id == duplicate.id)
                .values(client_id=primary.id)
            )
            if not primary.email and duplicate.email:
                primary.email = duplicate.email
            if not primary.notes and duplicate.notes:
                primary.notes = duplicate.notes
            if len(duplicate.name or "") > len(primary.name or ""):
                primary.name = duplicate.name
            await session.delete(duplicate)
            summary.duplicates_removed += 1

        # The constraint is on normalized_phone, so free it before the primary takes it
        await session.flush()
        primary.normalized_phone = key
        await session.flush()
        summary.clients_consolidated += 1

    return summary
