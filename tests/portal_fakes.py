"""Shared fixtures for the portal test-suite.

``make_runtime`` wires the real sqlite stores against an in-memory database
and swaps the outbound senders for recording fakes.
"""
from __future__ import annotations

import json
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import config
from automations import AutomationEngine
from channels.base import EmailSender, SmsSender, WebhookSender
from database import Database, ServiceDataStore
from followups import FollowUpScheduler
from runtime import Runtime, build_collaborators
from utils import to_iso

OWNER = "owner_1"


class FixedClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSms(SmsSender):
    from_address = "+15550001111"

    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, str, str]] = []
        self.error = error

    async def send_sms(self, owner_id, to, body):
        if self.error is not None:
            raise self.error
        self.sent.append((owner_id, to, body))
        return f"SM{len(self.sent)}"


class RecordingEmail(EmailSender):
    from_address = "hello@portal.test"

    def __init__(self, error: Exception | None = None):
        self.sent: list[dict] = []
        self.error = error

    async def send_email(self, owner_id, to, subject, text, *, from_name=None):
        if self.error is not None:
            raise self.error
        self.sent.append(
            {"owner_id": owner_id, "to": to, "subject": subject, "text": text, "from_name": from_name}
        )
        return f"EM{len(self.sent)}"


class RecordingWebhooks(WebhookSender):
    def __init__(self, status_code: int = 200):
        self.posts: list[tuple[str, dict]] = []
        self.status_code = status_code

    async def post_json(self, url, payload):
        self.posts.append((url, payload))
        return self.status_code


def make_runtime(clock: FixedClock | None = None, **engine_kwargs) -> Runtime:
    clock = clock or FixedClock()
    db = Database(":memory:")
    db.initialize()
    documents = ServiceDataStore(db)
    collaborators = replace(
        build_collaborators(db),
        sms=RecordingSms(),
        email=RecordingEmail(),
        webhooks=RecordingWebhooks(),
    )
    engine = AutomationEngine(documents, collaborators, clock=clock, **engine_kwargs)
    scheduler = FollowUpScheduler(documents, collaborators, clock=clock)
    return Runtime(db=db, documents=documents, collaborators=collaborators, engine=engine, scheduler=scheduler)


# ---------------------------------------------------------------------------
# Seed rows
# ---------------------------------------------------------------------------

def add_tenant(db: Database, owner_id: str = OWNER, **fields):
    row = {
        "owner_name": "Olivia Owner",
        "owner_email": "olivia@acme.test",
        "owner_phone": "+15550002222",
        "business_name": "Acme Dental",
        "business_email": "front@acme.test",
        "business_phone": "+15550003333",
        "review_link": None,
        "booking_link": None,
    }
    row.update(fields)
    db.execute(
        """
        INSERT INTO tenants
            (owner_id, owner_name, owner_email, owner_phone, business_name,
             business_email, business_phone, review_link, booking_link)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (owner_id, row["owner_name"], row["owner_email"], row["owner_phone"], row["business_name"],
         row["business_email"], row["business_phone"], row["review_link"], row["booking_link"]),
    )


def add_member(db: Database, user_id: str, *, owner_id: str = OWNER, email: str = "",
               name: str = "", phone: str = "", active: bool = True):
    db.execute(
        "INSERT INTO members (owner_id, user_id, email, name, phone, active) VALUES (?, ?, ?, ?, ?, ?)",
        (owner_id, user_id, email, name, phone, 1 if active else 0),
    )


def add_site(db: Database, *, owner_id: str = OWNER, site_id: str = "site_1", title: str = "Consultation",
             time_zone: str = "America/Chicago", emails: list[str] | None = None):
    db.execute(
        "INSERT INTO booking_sites (id, owner_id, title, time_zone, notification_emails) VALUES (?, ?, ?, ?, ?)",
        (site_id, owner_id, title, time_zone, json.dumps(emails or [])),
    )


def add_calendar(db: Database, calendar_id: str, *, owner_id: str = OWNER, title: str = "",
                 emails: list[str] | None = None):
    db.execute(
        "INSERT INTO calendars (owner_id, id, title, notification_emails) VALUES (?, ?, ?, ?)",
        (owner_id, calendar_id, title, json.dumps(emails or [])),
    )


def add_booking(db: Database, booking_id: str, *, start_at: datetime, minutes: int = 30,
                owner_id: str = OWNER, site_id: str = "site_1", calendar_id: str = "",
                status: str = "SCHEDULED", contact_name: str = "Ada Lovelace",
                contact_email: str = "ada@example.com", contact_phone: str = "+15551230000",
                contact_id: str | None = None):
    db.execute(
        """
        INSERT INTO bookings
            (id, owner_id, site_id, calendar_id, status, start_at, end_at,
             contact_name, contact_email, contact_phone, contact_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (booking_id, owner_id, site_id, calendar_id, status, to_iso(start_at),
         to_iso(start_at + timedelta(minutes=minutes)), contact_name, contact_email, contact_phone,
         contact_id),
    )


def set_booking_status(db: Database, booking_id: str, status: str):
    db.execute("UPDATE bookings SET status = ? WHERE id = ?", (status, booking_id))


# ---------------------------------------------------------------------------
# Automation documents
# ---------------------------------------------------------------------------

def trigger(node_id: str, trigger_kind: str, **cfg) -> dict:
    return {"id": node_id, "type": "trigger", "config": {"kind": "trigger", "triggerKind": trigger_kind, **cfg}}


def action(node_id: str, action_kind: str, **cfg) -> dict:
    return {"id": node_id, "type": "action", "config": {"kind": "action", "actionKind": action_kind, **cfg}}


def condition(node_id: str, left: str, op: str, right: str = "") -> dict:
    return {
        "id": node_id,
        "type": "condition",
        "config": {"kind": "condition", "left": left, "op": op, "right": right},
    }


def note(node_id: str, text: str = "") -> dict:
    return {"id": node_id, "type": "note", "config": {"kind": "note", "text": text}}


def edge(from_id: str, to_id: str, port: str = "out") -> dict:
    return {"from": from_id, "to": to_id, "fromPort": port}


def automation(automation_id: str, nodes: list[dict], edges: list[dict], name: str = "") -> dict:
    return {"id": automation_id, "name": name or automation_id, "nodes": nodes, "edges": edges}


def save_automations(runtime: Runtime, automations: list[dict], *, owner_id: str = OWNER, **extra):
    runtime.db.put_document(
        owner_id,
        config.AUTOMATIONS_SERVICE_SLUG,
        {"version": 2, "automations": automations, **extra},
    )


def load_automations_raw(runtime: Runtime, owner_id: str = OWNER) -> dict:
    return runtime.db.get_document(owner_id, config.AUTOMATIONS_SERVICE_SLUG) or {}
