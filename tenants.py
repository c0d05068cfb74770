"""sqlite-backed tenant directory, tasks, bookings and campaign services."""

import asyncio
import json
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any

from collaborators import (
    Booking,
    BookingProvider,
    BookingSite,
    CalendarConfig,
    CampaignServices,
    Member,
    TaskStore,
    TenantDirectory,
    TenantProfile,
)
from database import Database
from utils import parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)

WEBHOOK_TOKEN_BYTES = 24


def _email_list(raw: Any) -> tuple[str, ...]:
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError:
        return ()
    if not isinstance(data, list):
        return ()
    return tuple(str(item).strip() for item in data if isinstance(item, str) and "@" in item)


class SqliteTenantDirectory(TenantDirectory):
    def __init__(self, db: Database):
        self.db = db

    async def get_profile(self, owner_id: str) -> TenantProfile:
        row = await asyncio.to_thread(
            self.db.query_one, "SELECT * FROM tenants WHERE owner_id = ?", (owner_id,)
        )
        if row is None:
            return TenantProfile(owner_id=owner_id)
        return TenantProfile(
            owner_id=owner_id,
            owner_name=row["owner_name"] or "",
            owner_email=row["owner_email"] or "",
            owner_phone=row["owner_phone"] or "",
            business_name=row["business_name"] or "",
            business_email=row["business_email"] or "",
            business_phone=row["business_phone"] or "",
        )

    async def list_members(self, owner_id: str) -> list[Member]:
        rows = await asyncio.to_thread(
            self.db.query,
            "SELECT * FROM members WHERE owner_id = ? ORDER BY user_id",
            (owner_id,),
        )
        return [
            Member(
                user_id=row["user_id"],
                email=row["email"] or "",
                name=row["name"] or "",
                phone=row["phone"] or "",
                active=bool(row["active"]),
            )
            for row in rows
        ]

    async def _link(self, owner_id: str, column: str) -> str | None:
        row = await asyncio.to_thread(
            self.db.query_one, f"SELECT {column} FROM tenants WHERE owner_id = ?", (owner_id,)
        )
        value = (row[column] if row else "") or ""
        return value.strip() or None

    async def get_review_link(self, owner_id: str) -> str | None:
        return await self._link(owner_id, "review_link")

    async def get_booking_link(self, owner_id: str) -> str | None:
        return await self._link(owner_id, "booking_link")

    def _webhook_token_sync(self, owner_id: str) -> str:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT token FROM webhook_tokens WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            if row is not None:
                return row["token"]
            token = secrets.token_urlsafe(WEBHOOK_TOKEN_BYTES)
            conn.execute(
                "INSERT INTO webhook_tokens (token, owner_id, created_at) VALUES (?, ?, ?)",
                (token, owner_id, to_iso(utc_now())),
            )
        log.info("Minted inbound webhook token for owner %s", owner_id)
        return token

    async def get_webhook_token(self, owner_id: str) -> str:
        return await asyncio.to_thread(self._webhook_token_sync, owner_id)

    async def find_owner_by_webhook_token(self, token: str) -> str | None:
        token = str(token or "").strip()
        if not token:
            return None
        row = await asyncio.to_thread(
            self.db.query_one, "SELECT owner_id FROM webhook_tokens WHERE token = ?", (token,)
        )
        return row["owner_id"] if row else None


class SqliteTaskStore(TaskStore):
    def __init__(self, db: Database):
        self.db = db

    async def create_task(
        self,
        owner_id: str,
        title: str,
        description: str = "",
        *,
        assigned_to_user_id: str | None = None,
        contact_id: str | None = None,
    ) -> str:
        task_id = f"task_{uuid.uuid4().hex[:20]}"
        await asyncio.to_thread(
            self.db.execute,
            """
            INSERT INTO tasks
                (id, owner_id, title, description, status, assigned_to_user_id, contact_id, created_at)
            VALUES (?, ?, ?, ?, 'OPEN', ?, ?, ?)
            """,
            (task_id, owner_id, title[:200], description[:5000], assigned_to_user_id,
             contact_id, to_iso(utc_now())),
        )
        return task_id


class SqliteBookingProvider(BookingProvider):
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _row_to_booking(row) -> Booking | None:
        start_at = parse_iso(row["start_at"])
        end_at = parse_iso(row["end_at"])
        if start_at is None or end_at is None:
            log.warning("Booking %s has unparseable times", row["id"])
            return None
        return Booking(
            id=row["id"],
            owner_id=row["owner_id"],
            status=row["status"],
            start_at=start_at,
            end_at=end_at,
            calendar_id=row["calendar_id"] or "",
            site_id=row["site_id"] or "",
            contact_name=row["contact_name"] or "",
            contact_email=row["contact_email"] or "",
            contact_phone=row["contact_phone"] or "",
            contact_id=row["contact_id"] or "",
        )

    async def get_site(self, owner_id: str) -> BookingSite | None:
        row = await asyncio.to_thread(
            self.db.query_one, "SELECT * FROM booking_sites WHERE owner_id = ?", (owner_id,)
        )
        if row is None:
            return None
        return BookingSite(
            id=row["id"],
            owner_id=owner_id,
            title=row["title"] or "",
            time_zone=row["time_zone"] or "UTC",
            notification_emails=_email_list(row["notification_emails"]),
        )

    async def get_booking(self, owner_id: str, booking_id: str) -> Booking | None:
        row = await asyncio.to_thread(
            self.db.query_one,
            "SELECT * FROM bookings WHERE owner_id = ? AND id = ?",
            (owner_id, booking_id),
        )
        return self._row_to_booking(row) if row else None

    async def get_calendar(self, owner_id: str, calendar_id: str) -> CalendarConfig | None:
        row = await asyncio.to_thread(
            self.db.query_one,
            "SELECT * FROM calendars WHERE owner_id = ? AND id = ?",
            (owner_id, calendar_id),
        )
        if row is None:
            return None
        return CalendarConfig(
            id=row["id"],
            title=row["title"] or "",
            notification_emails=_email_list(row["notification_emails"]),
        )

    async def list_scheduled_bookings_ended(
        self,
        start: datetime,
        end: datetime,
        limit: int,
    ) -> list[Booking]:
        rows = await asyncio.to_thread(
            self.db.query,
            """
            SELECT * FROM bookings
            WHERE status = 'SCHEDULED' AND end_at >= ? AND end_at < ?
            ORDER BY end_at DESC
            LIMIT ?
            """,
            (to_iso(start), to_iso(end), max(1, int(limit))),
        )
        bookings = [self._row_to_booking(row) for row in rows]
        return [booking for booking in bookings if booking is not None]


class SqliteCampaignServices(CampaignServices):
    def __init__(self, db: Database):
        self.db = db

    def _active_campaigns(self, table: str, owner_id: str, campaign_id: str | None) -> list:
        if campaign_id:
            return self.db.query(
                f"SELECT * FROM {table} WHERE owner_id = ? AND id = ? AND status = 'ACTIVE'",
                (owner_id, campaign_id),
            )
        return self.db.query(
            f"SELECT * FROM {table} WHERE owner_id = ? AND status = 'ACTIVE' ORDER BY created_at",
            (owner_id,),
        )

    def _enroll_nurture_sync(self, owner_id: str, contact_id: str, campaign_id: str | None) -> int:
        now = utc_now()
        enrolled = 0
        for campaign in self._active_campaigns("nurture_campaigns", owner_id, campaign_id):
            delay = max(0, int(campaign["first_step_delay_minutes"] or 0))
            enrolled += self.db.execute(
                """
                INSERT OR IGNORE INTO nurture_enrollments
                    (id, owner_id, campaign_id, contact_id, status, step_index, next_send_at, created_at)
                VALUES (?, ?, ?, ?, 'ACTIVE', 0, ?, ?)
                """,
                (f"ne_{uuid.uuid4().hex[:20]}", owner_id, campaign["id"], contact_id,
                 to_iso(now + timedelta(minutes=delay)), to_iso(now)),
            )
        return enrolled

    async def enroll_in_nurture_campaign(
        self,
        owner_id: str,
        contact_id: str,
        campaign_id: str | None = None,
    ) -> int:
        return await asyncio.to_thread(self._enroll_nurture_sync, owner_id, contact_id, campaign_id)

    def _enqueue_call_sync(self, owner_id: str, contact_id: str, campaign_id: str | None) -> int:
        now = to_iso(utc_now())
        queued = 0
        for campaign in self._active_campaigns("outbound_call_campaigns", owner_id, campaign_id):
            queued += self.db.execute(
                """
                INSERT OR IGNORE INTO outbound_call_enrollments
                    (id, owner_id, campaign_id, contact_id, status, next_call_at, created_at)
                VALUES (?, ?, ?, ?, 'QUEUED', ?, ?)
                """,
                (f"oc_{uuid.uuid4().hex[:20]}", owner_id, campaign["id"], contact_id, now, now),
            )
        return queued

    async def enqueue_outbound_call(
        self,
        owner_id: str,
        contact_id: str,
        campaign_id: str | None = None,
    ) -> int:
        return await asyncio.to_thread(self._enqueue_call_sync, owner_id, contact_id, campaign_id)
