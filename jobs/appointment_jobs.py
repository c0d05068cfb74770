"""Appointment Jobs - fire ``missed_appointment`` for bookings nobody closed."""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import TYPE_CHECKING

import config
from automation_graph import migrate_automations_document, parse_automations_document
from collaborators import Booking
from utils import clamp_int

if TYPE_CHECKING:
    from automations import AutomationEngine

log = logging.getLogger(__name__)


def _missed_message(booking: Booking) -> str:
    name = booking.contact_name.strip() or "(unknown)"
    reach = booking.contact_email.strip() or booking.contact_phone.strip()
    return f"Missed appointment: {name} ({reach})"


def _booking_contact(booking: Booking) -> dict:
    contact = {
        "name": booking.contact_name,
        "email": booking.contact_email,
        "phone": booking.contact_phone,
    }
    if booking.contact_id:
        contact["id"] = booking.contact_id
    return contact


async def process_due_missed_appointments(
    engine: AutomationEngine,
    *,
    lookback_hours: int | None = None,
    grace_minutes: int | None = None,
    limit: int | None = None,
) -> dict[str, int]:
    """Fire once per SCHEDULED booking that ended more than *grace* ago.

    Bookings ending before ``now - lookback`` are ignored.  Each fired booking
    id is appended to the tenant's ``missedAppointmentFiredIds`` (newest
    ``MISSED_APPOINTMENT_FIRED_IDS_CAP`` kept).
    """
    grace = clamp_int(grace_minutes, config.MISSED_APPOINTMENT_GRACE_MINUTES, 5, 1440)
    lookback = clamp_int(lookback_hours, config.MISSED_APPOINTMENT_LOOKBACK_HOURS, 1, 336)
    limit = clamp_int(limit, config.MISSED_APPOINTMENT_LIMIT, 1, 2000)
    totals = {"scanned": 0, "owners_touched": 0, "fired": 0, "skipped": 0}

    now = engine.clock()
    try:
        bookings = await engine.collaborators.bookings.list_scheduled_bookings_ended(
            now - timedelta(hours=lookback), now - timedelta(minutes=grace), limit,
        )
    except Exception:
        log.error("Failed to list ended bookings", exc_info=True)
        return totals

    by_owner: dict[str, list[Booking]] = defaultdict(list)
    for booking in bookings:
        by_owner[booking.owner_id].append(booking)

    for owner_id, owner_bookings in by_owner.items():
        if totals["fired"] >= config.MISSED_APPOINTMENT_MAX_FIRES:
            break
        try:
            document = await engine.load_document(owner_id)
        except Exception:
            log.warning("Unreadable automations document for owner %s", owner_id, exc_info=True)
            continue
        already = set(document.missed_appointment_fired_ids)
        fired: list[str] = []
        for booking in owner_bookings:
            totals["scanned"] += 1
            if booking.id in already or booking.id in fired:
                totals["skipped"] += 1
                continue
            if totals["fired"] >= config.MISSED_APPOINTMENT_MAX_FIRES:
                break
            await engine.run_for_event(
                owner_id,
                "missed_appointment",
                message={
                    "from": booking.contact_email or booking.contact_phone,
                    "to": "",
                    "body": _missed_message(booking),
                },
                contact=_booking_contact(booking),
                event={"bookingId": booking.id, "calendarId": booking.calendar_id},
            )
            fired.append(booking.id)
            totals["fired"] += 1

        if fired:
            totals["owners_touched"] += 1
            await _record_fired(engine, owner_id, fired)

    if totals["fired"]:
        log.info("Missed-appointment sweep: fired=%d skipped=%d", totals["fired"], totals["skipped"])
    return totals


async def _record_fired(engine: AutomationEngine, owner_id: str, fired: list[str]) -> None:
    slug = config.AUTOMATIONS_SERVICE_SLUG
    try:
        async with engine.documents.lock(owner_id, slug):
            data = migrate_automations_document(await engine.documents.load(owner_id, slug))
            existing = parse_automations_document(data).missed_appointment_fired_ids
            merged = [booking_id for booking_id in existing if booking_id not in fired] + fired
            data["missedAppointmentFiredIds"] = merged[-config.MISSED_APPOINTMENT_FIRED_IDS_CAP:]
            await engine.documents.save(owner_id, slug, data)
    except Exception:
        log.error("Failed to record missed appointments for owner %s", owner_id, exc_info=True)
