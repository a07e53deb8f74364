"""
Tests for booking writes and the appointment status lifecycle.

Run with: pytest Backend/tests/test_appointments.py -v
"""

import uuid
from datetime import date, time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select

from agenda.appointments import (
    ALLOWED_TRANSITIONS,
    AppointmentNotFound,
    BookingRejected,
    BookingRequest,
    InvalidStatusTransition,
    SlotUnavailable,
    create_appointment,
    transition_appointment_status,
)
from agenda.clients import InvalidPhoneNumber
from agenda.models import Appointment, AppointmentStatus, Client
from agenda.realtime import BookingEventType

from factories import AbortingSession, make_appointment, make_client, make_company


DAY = date(2025, 1, 20)


def booking_for(company, phone="(11) 99999-8888", at=time(14, 30), day=DAY, name="Maria Silva"):
    return BookingRequest(
        company_id=company.id,
        client_name=name,
        client_phone=phone,
        appointment_date=day,
        appointment_time=at,
    )


def record_events(bus):
    seen = []
    for event_type in BookingEventType:
        bus.on(event_type, seen.append)
    return seen


# ============================================================================
# CREATE
# ============================================================================

@pytest.mark.asyncio
async def test_create_appointment_confirms_and_links_client(async_session, rules, event_bus):
    company = await make_company(async_session)
    seen = record_events(event_bus)

    appointment = await create_appointment(
        async_session, booking_for(company, at=time(14, 30, 45)), rules=rules, events=event_bus
    )

    assert appointment.status == AppointmentStatus.CONFIRMED
    assert appointment.appointment_time == time(14, 30)
    assert appointment.duration == 30

    result = await async_session.execute(select(Client).where(Client.id == appointment.client_id))
    client = result.scalar_one()
    assert client.normalized_phone == "5511999998888"

    assert len(seen) == 1
    assert seen[0].type == BookingEventType.APPOINTMENT_CREATED
    assert seen[0].appointment_id == str(appointment.id)
    assert seen[0].date == "2025-01-20"
    assert seen[0].time == "14:30"


@pytest.mark.asyncio
async def test_returning_client_is_reused(async_session, rules):
    company = await make_company(async_session)
    client = await make_client(async_session, company, phone="11999998888")

    appointment = await create_appointment(
        async_session, booking_for(company, phone="+55 (11) 99999-8888"), rules=rules
    )

    assert appointment.client_id == client.id


@pytest.mark.asyncio
async def test_taken_slot_is_rejected_before_insert(async_session, rules, event_bus):
    company = await make_company(async_session)
    other = await make_client(async_session, company, phone="21988887777")
    await make_appointment(async_session, company, other, DAY, time(14, 30))
    seen = record_events(event_bus)

    with pytest.raises(BookingRejected) as exc_info:
        await create_appointment(async_session, booking_for(company), rules=rules, events=event_bus)

    assert exc_info.value.reason == "slot_taken"
    assert "no longer available" in exc_info.value.messages[0]
    assert seen == []


@pytest.mark.asyncio
async def test_simultaneous_limit_rejects(async_session, rules):
    company = await make_company(async_session, max_simultaneous=1)
    client = await make_client(async_session, company)
    await make_appointment(async_session, company, client, date(2025, 1, 18), time(9, 0))

    with pytest.raises(BookingRejected) as exc_info:
        await create_appointment(async_session, booking_for(company), rules=rules)

    assert exc_info.value.reason == "simultaneous_limit"


@pytest.mark.asyncio
async def test_monthly_limit_rejects(async_session, rules):
    company = await make_company(async_session, max_simultaneous=10, monthly_limit=1)
    client = await make_client(async_session, company)
    await make_appointment(
        async_session, company, client, date(2025, 1, 2), time(9, 0), AppointmentStatus.COMPLETED
    )

    with pytest.raises(BookingRejected) as exc_info:
        await create_appointment(async_session, booking_for(company), rules=rules)

    assert exc_info.value.reason == "monthly_limit"
    assert "limit of 1" in str(exc_info.value)


@pytest.mark.asyncio
async def test_cancelled_slot_can_be_booked_again(async_session, rules):
    company = await make_company(async_session)
    other = await make_client(async_session, company, phone="21988887777")
    await make_appointment(async_session, company, other, DAY, time(14, 30), AppointmentStatus.CANCELLED)

    appointment = await create_appointment(async_session, booking_for(company), rules=rules)

    assert appointment.status == AppointmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_invalid_phone_is_rejected(async_session, rules):
    company = await make_company(async_session)

    with pytest.raises(InvalidPhoneNumber):
        await create_appointment(async_session, booking_for(company, phone="12345"), rules=rules)


@pytest.mark.asyncio
async def test_booking_survives_a_failed_check_when_failing_open(async_session, rules):
    company = await make_company(async_session)
    request = booking_for(company)
    session = AbortingSession(async_session)

    appointment = await create_appointment(session, request, rules=rules)

    assert appointment.status == AppointmentStatus.CONFIRMED
    assert session.rollbacks == 1
    result = await async_session.execute(
        select(func.count()).select_from(Appointment).where(Appointment.company_id == request.company_id)
    )
    assert result.scalar_one() == 1


@pytest.mark.asyncio
async def test_concurrent_booking_loses_at_the_database(async_session, rules, event_bus):
    """Both requests passed the checks; the unique index decides."""
    company = await make_company(async_session)
    other = await make_client(async_session, company, phone="21988887777")
    await make_appointment(async_session, company, other, DAY, time(14, 30))
    company_id = company.id
    seen = record_events(event_bus)

    passed = AsyncMock(return_value=MagicMock(is_valid=True))
    with patch("agenda.appointments.validate_booking_request", passed):
        with pytest.raises(SlotUnavailable) as exc_info:
            await create_appointment(async_session, booking_for(company), rules=rules, events=event_bus)

    assert exc_info.value.appointment_time == "14:30"
    assert "14:30" in exc_info.value.message
    assert seen == []

    result = await async_session.execute(
        select(func.count()).select_from(Appointment).where(Appointment.company_id == company_id)
    )
    assert result.scalar_one() == 1


# ============================================================================
# STATUS LIFECYCLE
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_dispatches_cancelled_event(async_session, event_bus):
    company = await make_company(async_session)
    client = await make_client(async_session, company)
    appointment = await make_appointment(async_session, company, client, DAY)
    seen = record_events(event_bus)

    updated = await transition_appointment_status(
        async_session, company.id, appointment.id, AppointmentStatus.CANCELLED, events=event_bus
    )

    assert updated.status == AppointmentStatus.CANCELLED
    assert [event.type for event in seen] == [BookingEventType.APPOINTMENT_CANCELLED]


@pytest.mark.asyncio
async def test_complete_dispatches_completed_event(async_session, event_bus):
    company = await make_company(async_session)
    client = await make_client(async_session, company)
    appointment = await make_appointment(async_session, company, client, DAY)
    seen = record_events(event_bus)

    await transition_appointment_status(
        async_session, company.id, appointment.id, AppointmentStatus.COMPLETED, events=event_bus
    )

    assert [event.type for event in seen] == [BookingEventType.APPOINTMENT_COMPLETED]


@pytest.mark.asyncio
async def test_start_dispatches_updated_event(async_session, event_bus):
    company = await make_company(async_session)
    client = await make_client(async_session, company)
    appointment = await make_appointment(async_session, company, client, DAY)
    seen = record_events(event_bus)

    await transition_appointment_status(
        async_session, company.id, appointment.id, AppointmentStatus.IN_PROGRESS, events=event_bus
    )

    assert [event.type for event in seen] == [BookingEventType.APPOINTMENT_UPDATED]


@pytest.mark.asyncio
async def test_terminal_status_cannot_change(async_session):
    company = await make_company(async_session)
    client = await make_client(async_session, company)
    appointment = await make_appointment(async_session, company, client, DAY, status=AppointmentStatus.CANCELLED)

    with pytest.raises(InvalidStatusTransition) as exc_info:
        await transition_appointment_status(
            async_session, company.id, appointment.id, AppointmentStatus.CONFIRMED
        )

    assert exc_info.value.current == AppointmentStatus.CANCELLED
    assert exc_info.value.requested == AppointmentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_same_status_is_noop(async_session, event_bus):
    company = await make_company(async_session)
    client = await make_client(async_session, company)
    appointment = await make_appointment(async_session, company, client, DAY)
    seen = record_events(event_bus)

    await transition_appointment_status(
        async_session, company.id, appointment.id, AppointmentStatus.CONFIRMED, events=event_bus
    )

    assert seen == []


@pytest.mark.asyncio
async def test_other_company_cannot_touch_appointment(async_session):
    company = await make_company(async_session)
    other_company = await make_company(async_session)
    client = await make_client(async_session, company)
    appointment = await make_appointment(async_session, company, client, DAY)

    with pytest.raises(AppointmentNotFound):
        await transition_appointment_status(
            async_session, other_company.id, appointment.id, AppointmentStatus.CANCELLED
        )


@pytest.mark.asyncio
async def test_unknown_appointment(async_session):
    company = await make_company(async_session)

    with pytest.raises(AppointmentNotFound):
        await transition_appointment_status(
            async_session, company.id, uuid.uuid4(), AppointmentStatus.CANCELLED
        )


def test_terminal_states_have_no_exits():
    assert ALLOWED_TRANSITIONS[AppointmentStatus.COMPLETED] == frozenset()
    assert ALLOWED_TRANSITIONS[AppointmentStatus.CANCELLED] == frozenset()
    assert AppointmentStatus.SCHEDULED not in ALLOWED_TRANSITIONS[AppointmentStatus.CONFIRMED]
