"""Trigger matching and ``scheduled_time`` due computation."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from automation_graph import Automation, Node, ScheduleSpec, TriggerConfig
from collaborators import Contact

log = logging.getLogger(__name__)

# Trigger kinds whose configured filter must equal the event's value.
_FILTERED_TRIGGERS = {
    "tag_added": ("tag_id", "tag_id"),
    "inbound_webhook": ("webhook_key", "webhook_key"),
}


def _s(value: Any, max_len: int = 500) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()[:max_len]


@dataclass(frozen=True)
class TriggerEvent:
    """A business event that may start automations."""

    message: dict[str, str] = field(default_factory=dict)
    contact: Contact = field(default_factory=Contact)
    tag_id: str = ""
    webhook_key: str = ""
    trigger_node_id: str = ""
    booking_id: str = ""
    calendar_id: str = ""
    lead_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        *,
        message: dict[str, Any] | None = None,
        contact: dict[str, Any] | Contact | None = None,
        event: dict[str, Any] | None = None,
    ) -> "TriggerEvent":
        message = message if isinstance(message, dict) else {}
        event = event if isinstance(event, dict) else {}
        if not isinstance(contact, Contact):
            contact = Contact.from_payload(contact)
        payload = event.get("payload")
        return cls(
            message={
                "from": _s(message.get("from")),
                "to": _s(message.get("to")),
                "body": "" if message.get("body") is None else str(message.get("body"))[:20000],
            },
            contact=contact,
            tag_id=_s(event.get("tagId")),
            webhook_key=_s(event.get("webhookKey")),
            trigger_node_id=_s(event.get("triggerNodeId")),
            booking_id=_s(event.get("bookingId")),
            calendar_id=_s(event.get("calendarId")),
            lead_id=_s(event.get("leadId")),
            payload=payload if isinstance(payload, dict) else {},
        )

    def event_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tagId": self.tag_id,
            "webhookKey": self.webhook_key,
            "triggerNodeId": self.trigger_node_id,
            "bookingId": self.booking_id,
            "calendarId": self.calendar_id,
            "leadId": self.lead_id,
        }
        data = {key: value for key, value in data.items() if value}
        if self.payload:
            data["payload"] = self.payload
        return data


def trigger_matches(cfg: TriggerConfig, trigger_kind: str, event: TriggerEvent) -> bool:
    if cfg.trigger_kind != trigger_kind:
        return False
    filter_spec = _FILTERED_TRIGGERS.get(trigger_kind)
    if filter_spec is None:
        return True
    cfg_attr, event_attr = filter_spec
    expected = getattr(cfg, cfg_attr, "")
    if not expected:
        return True
    actual = getattr(event, event_attr, "")
    return bool(actual) and actual == expected


def select_trigger_nodes(automation: Automation, trigger_kind: str, event: TriggerEvent) -> list[Node]:
    rows: list[Node] = []
    for node in automation.trigger_nodes(trigger_kind):
        if event.trigger_node_id and node.id != event.trigger_node_id:
            continue
        if trigger_matches(node.config, trigger_kind, event):
            rows.append(node)
    return rows


# ---------------------------------------------------------------------------
# scheduled_time
# ---------------------------------------------------------------------------

def schedule_state_key(automation_id: str, node_id: str) -> str:
    return f"{automation_id}:{node_id}"


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def next_due_every(spec: ScheduleSpec, last_fired: datetime | None, now: datetime) -> datetime:
    if last_fired is None:
        return now
    if spec.every_unit == "months":
        return add_months(last_fired, spec.every_value)
    unit_minutes = {"minutes": 1, "days": 60 * 24, "weeks": 60 * 24 * 7}.get(spec.every_unit, 1)
    return last_fired + timedelta(minutes=spec.every_value * unit_minutes)


def most_recent_specific_occurrence(spec: ScheduleSpec, now: datetime) -> datetime:
    """Latest daily/weekly/monthly occurrence at ``specific_time`` UTC not after *now*."""
    now = now.astimezone(timezone.utc)
    hour, minute = (int(part) for part in spec.specific_time.split(":"))
    today = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if spec.specific_kind == "daily":
        return today if now >= today else today - timedelta(days=1)

    if spec.specific_kind == "weekly":
        # specific_weekday uses 0=Sunday .. 6=Saturday.
        today_weekday = (now.weekday() + 1) % 7
        diff = (today_weekday - spec.specific_weekday) % 7
        occurrence = today - timedelta(days=diff)
        return occurrence if now >= occurrence else occurrence - timedelta(days=7)

    days_this_month = calendar.monthrange(now.year, now.month)[1]
    occurrence = today.replace(day=min(spec.specific_day_of_month, days_this_month))
    if now >= occurrence:
        return occurrence
    prev = add_months(today.replace(day=1), -1)
    days_prev_month = calendar.monthrange(prev.year, prev.month)[1]
    return prev.replace(day=min(spec.specific_day_of_month, days_prev_month))


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown schedule timezone %r; using UTC", name)
        return ZoneInfo("UTC")


def most_recent_cron_occurrence(spec: ScheduleSpec, now: datetime) -> datetime | None:
    if not spec.cron:
        return None
    now_local = now.astimezone(_zone(spec.timezone)).replace(second=0, microsecond=0)
    try:
        if croniter.match(spec.cron, now_local):
            return now_local.astimezone(timezone.utc)
        return croniter(spec.cron, now_local).get_prev(datetime).astimezone(timezone.utc)
    except Exception:
        log.warning("Invalid cron expression %r", spec.cron, exc_info=True)
        return None


def schedule_is_due(spec: ScheduleSpec, last_fired: datetime | None, now: datetime) -> bool:
    """Whether a scheduled trigger should fire at *now* given its last fire time."""
    if spec.mode == "specific":
        occurrence = most_recent_specific_occurrence(spec, now)
        return now >= occurrence and (last_fired is None or last_fired < occurrence)

    if spec.mode == "cron":
        occurrence = most_recent_cron_occurrence(spec, now)
        if occurrence is None:
            return False
        return last_fired is None or last_fired < occurrence

    return now >= next_due_every(spec, last_fired, now)
