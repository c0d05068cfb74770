"""Post-appointment follow-up steps and their delayed-message queue.

Each tenant keeps one ``follow-up`` document::

    {"version": 3, "settings": {...}, "queue": [...], "bookingMeta": {...}}

``FollowUpScheduler.schedule_for_booking`` is a desired-state reconciliation:
it renders every enabled step of the booking's chain into queue items, upserts
them by identity key ``(bookingId, stepId, channel, lower(trim(to)))`` and
cancels any other PENDING item for the booking.  Re-running it for the same
booking converges on the same queue.  The due-item sweeper lives in
``jobs.followup_jobs``.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import config
from collaborators import Booking, BookingSite, CalendarConfig, Collaborators
from contacts import normalize_phone
from database import ServiceDataStore
from templates import render_template
from utils import clamp_int, parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)

SETTINGS_VERSION = 3

AUDIENCE_CONTACT = "CONTACT"
AUDIENCE_INTERNAL = "INTERNAL"
RECIPIENTS_BOOKING = "BOOKING_NOTIFICATION_EMAILS"
RECIPIENTS_CUSTOM = "CUSTOM"

CHANNEL_EMAIL = "EMAIL"
CHANNEL_SMS = "SMS"
CHANNELS = frozenset({CHANNEL_EMAIL, CHANNEL_SMS})

STATUS_PENDING = "PENDING"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"
STATUS_CANCELED = "CANCELED"
QUEUE_STATUSES = frozenset({STATUS_PENDING, STATUS_SENT, STATUS_FAILED, STATUS_CANCELED})

SUBJECT_MAX_CHARS = 120
EMAIL_BODY_MAX_CHARS = 5000
SMS_BODY_MAX_CHARS = 900
MAX_RECIPIENTS = 20
MAX_ATTEMPTS = 20

RESERVED_VARIABLES = frozenset({
    "contactName",
    "contactEmail",
    "contactPhone",
    "businessName",
    "bookingTitle",
    "calendarTitle",
    "startAt",
    "endAt",
    "when",
    "timeZone",
})
CUSTOM_VARIABLES_MAX = 30
CUSTOM_VARIABLE_KEY_MAX_CHARS = 32
CUSTOM_VARIABLE_VALUE_MAX_CHARS = 800

_ID_CLEAN_RE = re.compile(r"[^a-zA-Z0-9_-]+")
_EMAIL_LIKE_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_VARIABLE_KEY_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def _as_dict(raw: Any) -> dict[str, Any]:
    return raw if isinstance(raw, dict) else {}


def _as_list(raw: Any) -> list[Any]:
    return raw if isinstance(raw, list) else []


def _bool(raw: Any, default: bool) -> bool:
    return raw if isinstance(raw, bool) else default


def _text(raw: Any, default: str, max_len: int) -> str:
    return (raw if isinstance(raw, str) else default)[:max_len]


def normalize_id(raw: Any, fallback: str) -> str:
    text = raw.strip() if isinstance(raw, str) else ""
    cleaned = _ID_CLEAN_RE.sub("-", text).strip("-")
    return cleaned or fallback


def normalize_email_list(raw: Any, limit: int = MAX_RECIPIENTS) -> list[str]:
    out: list[str] = []
    for item in _as_list(raw):
        if not isinstance(item, str):
            continue
        email = item.strip().lower()
        if not _EMAIL_LIKE_RE.match(email) or email in out:
            continue
        out.append(email)
        if len(out) >= limit:
            break
    return out


def normalize_phone_list(raw: Any, limit: int = MAX_RECIPIENTS) -> list[str]:
    out: list[str] = []
    for item in _as_list(raw):
        if not isinstance(item, str):
            continue
        phone = normalize_phone(item)
        if not phone or phone in out:
            continue
        out.append(phone)
        if len(out) >= limit:
            break
    return out


def normalize_custom_variables(raw: Any) -> dict[str, str]:
    """Tenant variables; keys shadowing booking variables are dropped."""
    out: dict[str, str] = {}
    for key, value in _as_dict(raw).items():
        if len(out) >= CUSTOM_VARIABLES_MAX:
            break
        name = str(key).strip()[:CUSTOM_VARIABLE_KEY_MAX_CHARS]
        if not name or not _VARIABLE_KEY_RE.match(name) or name in RESERVED_VARIABLES:
            continue
        text = value if isinstance(value, str) else ("" if value is None else str(value))
        out[name] = text.strip()[:CUSTOM_VARIABLE_VALUE_MAX_CHARS]
    return out


def format_when(moment: datetime, time_zone: str) -> str:
    """Human booking time, e.g. ``Tue, Mar 3, 2026, 2:30 PM (America/Chicago)``."""
    try:
        zone = ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    local = moment.astimezone(zone)
    hour = local.hour % 12 or 12
    return (
        f"{local:%a}, {local:%b} {local.day}, {local.year}, "
        f"{hour}:{local:%M} {local:%p} ({time_zone})"
    )


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InternalRecipients:
    mode: str = RECIPIENTS_BOOKING
    emails: tuple[str, ...] = ()
    phones: tuple[str, ...] = ()

    @classmethod
    def parse(cls, raw: Any) -> InternalRecipients:
        data = _as_dict(raw)
        if data.get("mode") != RECIPIENTS_CUSTOM:
            return cls()
        return cls(
            mode=RECIPIENTS_CUSTOM,
            emails=tuple(normalize_email_list(data.get("emails"))),
            phones=tuple(normalize_phone_list(data.get("phones"))),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"mode": self.mode}
        if self.mode == RECIPIENTS_CUSTOM:
            if self.emails:
                out["emails"] = list(self.emails)
            if self.phones:
                out["phones"] = list(self.phones)
        return out


@dataclass(frozen=True)
class FollowUpStep:
    """One follow-up message definition.

    Preset library entries (``settings.templates``) share this shape; a step
    copied from a preset remembers it in ``preset_id``.
    """

    id: str
    name: str
    enabled: bool = True
    delay_minutes: int = 60
    audience: str = AUDIENCE_CONTACT
    internal_recipients: InternalRecipients | None = None
    email_enabled: bool = True
    sms_enabled: bool = False
    subject_template: str = ""
    email_body_template: str = ""
    sms_body_template: str = ""
    preset_id: str | None = None

    def as_step(self, step_id: str, **overrides: Any) -> FollowUpStep:
        values: dict[str, Any] = {
            "internal_recipients": self.internal_recipients if self.audience == AUDIENCE_INTERNAL else None,
            "preset_id": self.id,
        }
        values.update(overrides)
        return replace(self, id=step_id, **values)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "delayMinutes": self.delay_minutes,
            "audience": self.audience,
            "channels": {"email": self.email_enabled, "sms": self.sms_enabled},
            "email": {
                "subjectTemplate": self.subject_template,
                "bodyTemplate": self.email_body_template,
            },
            "sms": {"bodyTemplate": self.sms_body_template},
        }
        if self.internal_recipients is not None:
            out["internalRecipients"] = self.internal_recipients.to_dict()
        if self.preset_id:
            out["presetId"] = self.preset_id
        return out


@dataclass(frozen=True)
class FollowUpSettings:
    enabled: bool = False
    templates: tuple[FollowUpStep, ...] = ()
    default_steps: tuple[FollowUpStep, ...] = ()
    calendar_steps: dict[str, tuple[FollowUpStep, ...]] = field(default_factory=dict)
    custom_variables: dict[str, str] = field(default_factory=dict)

    def steps_for(self, calendar_id: str | None) -> tuple[FollowUpStep, ...]:
        chain = self.calendar_steps.get(calendar_id or "") or self.default_steps
        return chain[:config.FOLLOW_UP_MAX_STEPS]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SETTINGS_VERSION,
            "enabled": self.enabled,
            "templates": [template.to_dict() for template in self.templates],
            "assignments": {
                "defaultSteps": [step.to_dict() for step in self.default_steps],
                "calendarSteps": {
                    calendar_id: [step.to_dict() for step in steps]
                    for calendar_id, steps in self.calendar_steps.items()
                },
            },
            "customVariables": dict(self.custom_variables),
        }


def _preset(
    preset_id: str,
    name: str,
    delay_minutes: int,
    subject: str,
    body_lines: list[str],
    sms: str,
    *,
    enabled: bool = False,
    audience: str = AUDIENCE_CONTACT,
) -> FollowUpStep:
    return FollowUpStep(
        id=preset_id,
        name=name,
        enabled=enabled,
        delay_minutes=delay_minutes,
        audience=audience,
        internal_recipients=InternalRecipients() if audience == AUDIENCE_INTERNAL else None,
        subject_template=subject,
        email_body_template="\n".join(body_lines),
        sms_body_template=sms,
    )


def default_presets() -> tuple[FollowUpStep, ...]:
    return (
        _preset(
            "thanks", "Quick thank you", 60,
            "Thanks for meeting, {contactName}",
            [
                "Hi {contactName},",
                "",
                "Thanks again for booking time with {businessName}.",
                "",
                "If you have any questions, just reply to this email.",
                "",
                "- {businessName}",
            ],
            "Thanks again for your time. Reply here if you have any questions. - {businessName}",
            enabled=True,
        ),
        _preset(
            "feedback", "Feedback request", 60 * 24,
            "Quick question about our call",
            [
                "Hi {contactName},",
                "",
                "Do you have any feedback on our conversation?",
                "",
                "One sentence is totally fine, it helps {businessName} a lot.",
                "",
                "- {businessName}",
            ],
            "Any quick feedback on our call? One sentence helps a lot. - {businessName}",
        ),
        _preset(
            "next_steps", "Next steps", 60 * 3,
            "Next steps",
            [
                "Hi {contactName},",
                "",
                "Here are the next steps from our call with {businessName}:",
                "- ",
                "",
                "If you'd like, just reply with any questions.",
                "",
                "- {businessName}",
            ],
            "Next steps from our call: reply here if you want me to send them over. - {businessName}",
        ),
        _preset(
            "review", "Review / testimonial", 60 * 24 * 3,
            "Would you be open to a quick review?",
            [
                "Hi {contactName},",
                "",
                "If you found our call helpful, would you be open to leaving a quick review for {businessName}?",
                "",
                "No worries either way, thanks again.",
                "",
                "- {businessName}",
            ],
            "If our call helped, would you be open to leaving a quick review for {businessName}?",
        ),
        _preset(
            "internal_summary", "Internal summary", 0,
            "Appointment finished: {contactName}",
            [
                "Internal notification for {businessName}",
                "",
                "Contact: {contactName}",
                "Email: {contactEmail}",
                "Phone: {contactPhone}",
                "",
                "Calendar: {calendarTitle}",
                "When: {when}",
            ],
            "Appointment finished: {contactName} / {calendarTitle} / {when}",
            audience=AUDIENCE_INTERNAL,
        ),
    )


def default_settings() -> FollowUpSettings:
    presets = default_presets()
    return FollowUpSettings(
        enabled=False,
        templates=presets,
        default_steps=(presets[0].as_step("step_thanks_1", enabled=True),),
    )


def _parse_step(
    raw: Any,
    fallback_id: str,
    *,
    id_max: int = 60,
    keep_preset: bool = True,
) -> FollowUpStep | None:
    """Normalize one step or preset; returns None for unusable entries."""
    if not isinstance(raw, dict):
        return None
    name = _text(raw.get("name"), "Step", 80).strip()
    if not name:
        return None

    base = default_presets()[0]
    channels = _as_dict(raw.get("channels"))
    email = _as_dict(raw.get("email"))
    sms = _as_dict(raw.get("sms"))
    audience = AUDIENCE_INTERNAL if raw.get("audience") == AUDIENCE_INTERNAL else AUDIENCE_CONTACT

    preset_id = None
    if keep_preset and isinstance(raw.get("presetId"), str):
        preset_id = normalize_id(raw["presetId"], "")[:40] or None

    return FollowUpStep(
        id=normalize_id(raw.get("id"), fallback_id)[:id_max],
        name=name,
        enabled=_bool(raw.get("enabled"), True),
        delay_minutes=clamp_int(raw.get("delayMinutes"), 60, 0, config.FOLLOW_UP_MAX_DELAY_MINUTES),
        audience=audience,
        internal_recipients=(
            InternalRecipients.parse(raw.get("internalRecipients"))
            if audience == AUDIENCE_INTERNAL else None
        ),
        email_enabled=_bool(channels.get("email"), True),
        sms_enabled=_bool(channels.get("sms"), False),
        subject_template=_text(email.get("subjectTemplate"), base.subject_template, 200),
        email_body_template=_text(email.get("bodyTemplate"), base.email_body_template, 5000),
        sms_body_template=_text(sms.get("bodyTemplate"), base.sms_body_template, SMS_BODY_MAX_CHARS),
        preset_id=preset_id,
    )


def _parse_templates(raw: Any) -> tuple[FollowUpStep, ...]:
    out: list[FollowUpStep] = []
    seen: set[str] = set()
    for index, item in enumerate(_as_list(raw)):
        template = _parse_step(item, f"tpl{index + 1}", id_max=40, keep_preset=False)
        if template is None or template.id in seen:
            continue
        seen.add(template.id)
        out.append(template)
        if len(out) >= config.FOLLOW_UP_MAX_TEMPLATES:
            break
    return tuple(out)


def _parse_chain(raw: Any) -> tuple[FollowUpStep, ...]:
    out: list[FollowUpStep] = []
    seen: set[str] = set()
    for index, item in enumerate(_as_list(raw)):
        step = _parse_step(item, f"step{index + 1}")
        if step is None or step.id in seen:
            continue
        seen.add(step.id)
        out.append(step)
        if len(out) >= config.FOLLOW_UP_MAX_STEPS:
            break
    return tuple(out)


def _clean_id_list(raw: Any) -> list[str]:
    ids = [normalize_id(item, "")[:40] for item in _as_list(raw) if isinstance(item, str)]
    return [item for item in ids if item][:config.FOLLOW_UP_MAX_TEMPLATES]


def _migrate_v1(data: dict[str, Any], defaults: FollowUpSettings) -> FollowUpSettings:
    """v1 held a single message; it becomes the only step plus disabled presets."""
    primary = _parse_step(
        {
            "id": "default",
            "name": "Default follow-up",
            "delayMinutes": data.get("delayMinutes"),
            "channels": data.get("channels"),
            "email": data.get("email"),
            "sms": data.get("sms"),
        },
        "default",
        id_max=40,
        keep_preset=False,
    )
    extras = [
        replace(preset, enabled=False)
        for preset in defaults.templates
        if preset.id != "thanks"
    ]
    return FollowUpSettings(
        enabled=_bool(data.get("enabled"), defaults.enabled),
        templates=tuple([primary, *extras][:config.FOLLOW_UP_MAX_TEMPLATES]),
        default_steps=(primary.as_step("step_default_1", enabled=True),),
    )


def _migrate_v2(data: dict[str, Any], defaults: FollowUpSettings) -> FollowUpSettings:
    """v2 assigned template ids; each assignment becomes a copied step."""
    templates = _parse_templates(data.get("templates")) or defaults.templates
    by_id = {template.id: template for template in templates}
    assignments = _as_dict(data.get("assignments"))

    default_steps: list[FollowUpStep] = []
    for index, template_id in enumerate(_clean_id_list(assignments.get("defaultTemplateIds"))):
        template = by_id.get(template_id)
        if template is not None:
            default_steps.append(
                template.as_step(f"step_default_{template_id}_{index + 1}"[:60], enabled=True)
            )

    calendar_steps: dict[str, tuple[FollowUpStep, ...]] = {}
    for raw_calendar_id, raw_ids in _as_dict(assignments.get("calendarTemplateIds")).items():
        calendar_id = normalize_id(raw_calendar_id, "")[:40]
        if not calendar_id:
            continue
        steps = [
            by_id[template_id].as_step(f"step_cal_{calendar_id}_{template_id}_{index + 1}"[:60], enabled=True)
            for index, template_id in enumerate(_clean_id_list(raw_ids))
            if template_id in by_id
        ]
        if steps:
            calendar_steps[calendar_id] = tuple(steps)

    return FollowUpSettings(
        enabled=_bool(data.get("enabled"), defaults.enabled),
        templates=templates,
        default_steps=tuple(default_steps) or defaults.default_steps,
        calendar_steps=calendar_steps,
        custom_variables=normalize_custom_variables(data.get("customVariables")),
    )


def parse_settings(raw: Any) -> FollowUpSettings:
    """Parse follow-up settings of any version into the current shape."""
    outer = _as_dict(raw)
    data = outer["settings"] if isinstance(outer.get("settings"), dict) else outer
    defaults = default_settings()

    version = data.get("version")
    if version == 1:
        return _migrate_v1(data, defaults)
    if version == 2:
        return _migrate_v2(data, defaults)

    assignments = _as_dict(data.get("assignments"))
    calendar_steps: dict[str, tuple[FollowUpStep, ...]] = {}
    for raw_calendar_id, raw_steps in _as_dict(assignments.get("calendarSteps")).items():
        calendar_id = normalize_id(raw_calendar_id, "")[:40]
        steps = _parse_chain(raw_steps) if calendar_id else ()
        if steps:
            calendar_steps[calendar_id] = steps

    return FollowUpSettings(
        enabled=_bool(data.get("enabled"), defaults.enabled),
        templates=_parse_templates(data.get("templates")) or defaults.templates,
        default_steps=_parse_chain(assignments.get("defaultSteps")) or defaults.default_steps,
        calendar_steps=calendar_steps,
        custom_variables=normalize_custom_variables(data.get("customVariables")),
    )


# ---------------------------------------------------------------------------
# Queue model
# ---------------------------------------------------------------------------

def identity_key(booking_id: str, step_id: str, channel: str, to: str) -> tuple[str, str, str, str]:
    return (booking_id, step_id, channel, str(to or "").strip().lower())


@dataclass
class FollowUpQueueItem:
    id: str
    booking_id: str
    owner_id: str
    step_id: str
    step_name: str
    channel: str
    to: str
    body: str
    send_at_iso: str
    created_at_iso: str
    status: str = STATUS_PENDING
    attempts: int = 0
    calendar_id: str | None = None
    subject: str | None = None
    last_error: str | None = None
    sent_at_iso: str | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return identity_key(self.booking_id, self.step_id, self.channel, self.to)

    @property
    def send_at(self) -> datetime | None:
        return parse_iso(self.send_at_iso)

    @classmethod
    def parse(cls, raw: Any, now_iso: str) -> FollowUpQueueItem | None:
        if not isinstance(raw, dict):
            return None

        def _str(name: str) -> str | None:
            value = raw.get(name)
            return value if isinstance(value, str) else None

        required = {
            name: _str(name)
            for name in ("id", "bookingId", "ownerId", "to", "body", "sendAtIso")
        }
        channel = raw.get("channel")
        if channel not in CHANNELS or not all(required.values()):
            return None
        status = raw.get("status")
        return cls(
            id=required["id"],
            booking_id=required["bookingId"],
            owner_id=required["ownerId"],
            step_id=_str("stepId") or _str("templateId") or "step",
            step_name=_str("stepName") or _str("templateName") or "Step",
            channel=channel,
            to=required["to"],
            body=required["body"],
            send_at_iso=required["sendAtIso"],
            created_at_iso=_str("createdAtIso") or now_iso,
            status=status if status in QUEUE_STATUSES else STATUS_PENDING,
            attempts=clamp_int(raw.get("attempts"), 0, 0, MAX_ATTEMPTS),
            calendar_id=_str("calendarId"),
            subject=_str("subject"),
            last_error=_str("lastError"),
            sent_at_iso=_str("sentAtIso"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "bookingId": self.booking_id,
            "ownerId": self.owner_id,
            "stepId": self.step_id,
            "stepName": self.step_name,
            "channel": self.channel,
            "to": self.to,
            "body": self.body,
            "sendAtIso": self.send_at_iso,
            "status": self.status,
            "attempts": self.attempts,
            "createdAtIso": self.created_at_iso,
        }
        for name, value in (
            ("calendarId", self.calendar_id),
            ("subject", self.subject),
            ("lastError", self.last_error),
            ("sentAtIso", self.sent_at_iso),
        ):
            if value is not None:
                out[name] = value
        return out


@dataclass
class FollowUpDocument:
    settings: FollowUpSettings
    queue: list[FollowUpQueueItem] = field(default_factory=list)
    booking_meta: dict[str, dict[str, str]] = field(default_factory=dict)

    def find(self, item_id: str) -> FollowUpQueueItem | None:
        for item in self.queue:
            if item.id == item_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SETTINGS_VERSION,
            "settings": self.settings.to_dict(),
            "queue": [item.to_dict() for item in self.queue],
            "bookingMeta": dict(self.booking_meta),
        }


def parse_document(raw: Any, *, now: datetime | None = None) -> FollowUpDocument:
    data = _as_dict(raw)
    now_iso = to_iso(now or utc_now())
    queue: list[FollowUpQueueItem] = []
    for entry in _as_list(data.get("queue")):
        item = FollowUpQueueItem.parse(entry, now_iso)
        if item is None:
            continue
        queue.append(item)
        if len(queue) >= config.FOLLOW_UP_MAX_QUEUE_ITEMS:
            break

    meta: dict[str, dict[str, str]] = {}
    for booking_id, entry in _as_dict(data.get("bookingMeta")).items():
        entry = _as_dict(entry)
        if isinstance(entry.get("calendarId"), str) and entry["calendarId"]:
            meta[str(booking_id)] = {
                "calendarId": entry["calendarId"],
                "updatedAtIso": str(entry.get("updatedAtIso") or ""),
            }

    return FollowUpDocument(
        settings=parse_settings(data),
        queue=queue,
        booking_meta=meta,
    )


def trim_queue(queue: list[FollowUpQueueItem], max_items: int | None = None) -> list[FollowUpQueueItem]:
    """Keep every PENDING item plus the newest history that still fits."""
    max_items = max_items or config.FOLLOW_UP_MAX_QUEUE_ITEMS
    pending = [item for item in queue if item.status == STATUS_PENDING]
    done = sorted(
        (item for item in queue if item.status != STATUS_PENDING),
        key=lambda item: item.created_at_iso,
        reverse=True,
    )
    return (pending + done[:max(0, max_items - len(pending))])[:max_items]


def trim_booking_meta(meta: dict[str, dict[str, str]], limit: int | None = None) -> dict[str, dict[str, str]]:
    limit = limit or config.FOLLOW_UP_BOOKING_META_LIMIT
    newest = sorted(meta.items(), key=lambda kv: kv[1].get("updatedAtIso", ""), reverse=True)
    return dict(newest[:limit])


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

@dataclass
class ScheduleResult:
    ok: bool
    scheduled: int = 0
    created: int = 0
    canceled: int = 0
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        if not self.ok:
            return {"ok": False, "reason": self.reason}
        return {
            "ok": True,
            "scheduled": self.scheduled,
            "created": self.created,
            "canceled": self.canceled,
        }


class FollowUpScheduler:
    """Reconciles each booking's desired follow-ups against the tenant queue."""

    def __init__(
        self,
        documents: ServiceDataStore,
        collaborators: Collaborators,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.documents = documents
        self.collaborators = collaborators
        self.clock = clock

    @property
    def slug(self) -> str:
        return config.FOLLOW_UP_SERVICE_SLUG

    async def load(self, owner_id: str) -> FollowUpDocument:
        return parse_document(await self.documents.load(owner_id, self.slug), now=self.clock())

    async def save(self, owner_id: str, document: FollowUpDocument) -> None:
        await self.documents.save(owner_id, self.slug, document.to_dict())

    # ------------------------------------------------------------------
    # Settings and queue views
    # ------------------------------------------------------------------

    async def get_settings(self, owner_id: str) -> FollowUpSettings:
        return (await self.load(owner_id)).settings

    async def set_settings(self, owner_id: str, patch: dict[str, Any]) -> FollowUpSettings:
        """Shallow-merge *patch* over the current settings and re-normalize."""
        async with self.documents.lock(owner_id, self.slug):
            document = await self.load(owner_id)
            merged = {**document.settings.to_dict(), **_as_dict(patch)}
            merged["version"] = SETTINGS_VERSION
            document.settings = parse_settings(merged)
            await self.save(owner_id, document)
        log.info("Follow-up settings updated for owner %s (enabled=%s)", owner_id, document.settings.enabled)
        return document.settings

    async def list_queue(self, owner_id: str, limit: int = 60) -> list[FollowUpQueueItem]:
        document = await self.load(owner_id)
        ordered = sorted(document.queue, key=lambda item: item.send_at_iso)
        return ordered[:clamp_int(limit, 60, 1, 200)]

    async def cancel_for_booking(self, owner_id: str, booking_id: str) -> int:
        async with self.documents.lock(owner_id, self.slug):
            document = await self.load(owner_id)
            canceled = 0
            for item in document.queue:
                if item.booking_id == booking_id and item.status == STATUS_PENDING:
                    item.status = STATUS_CANCELED
                    canceled += 1
            if canceled:
                await self.save(owner_id, document)
        log.info("Canceled %d follow-up(s) for booking %s owner %s", canceled, booking_id, owner_id)
        return canceled

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_for_booking(
        self,
        owner_id: str,
        booking_id: str,
        calendar_id: str | None = None,
    ) -> ScheduleResult:
        try:
            return await self._schedule(owner_id, booking_id, calendar_id)
        except Exception as exc:
            log.error("Follow-up scheduling failed for booking %s owner %s", booking_id, owner_id, exc_info=True)
            return ScheduleResult(ok=False, reason=str(exc) or "Scheduling failed")

    async def _schedule(self, owner_id: str, booking_id: str, calendar_id: str | None) -> ScheduleResult:
        bookings = self.collaborators.bookings
        site = await bookings.get_site(owner_id)
        if site is None:
            return ScheduleResult(ok=False, reason="Booking site not found")
        booking = await bookings.get_booking(owner_id, booking_id)
        if booking is None or (booking.site_id and booking.site_id != site.id):
            return ScheduleResult(ok=False, reason="Booking not found")
        if booking.status != "SCHEDULED":
            return ScheduleResult(ok=True)

        async with self.documents.lock(owner_id, self.slug):
            document = await self.load(owner_id)
            settings = document.settings
            if not settings.enabled:
                return ScheduleResult(ok=True)

            now_iso = to_iso(self.clock())
            previous = document.booking_meta.get(booking_id, {}).get("calendarId")
            calendar_id = calendar_id or previous or booking.calendar_id or None
            if calendar_id:
                document.booking_meta[booking_id] = {"calendarId": calendar_id, "updatedAtIso": now_iso}

            calendar = await self._calendar(owner_id, calendar_id)
            variables = await self._variables(owner_id, site, booking, calendar, settings)
            desired = self._desired_items(owner_id, booking, site, calendar, calendar_id, settings, variables)
            result = self._reconcile(document, booking.id, desired, now_iso)

            document.queue = trim_queue(document.queue)
            document.booking_meta = trim_booking_meta(document.booking_meta)
            await self.save(owner_id, document)

        log.info(
            "Follow-ups for booking %s owner %s: scheduled=%d created=%d canceled=%d",
            booking_id, owner_id, result.scheduled, result.created, result.canceled,
        )
        return result

    async def _calendar(self, owner_id: str, calendar_id: str | None) -> CalendarConfig | None:
        if not calendar_id:
            return None
        try:
            return await self.collaborators.bookings.get_calendar(owner_id, calendar_id)
        except Exception:
            log.warning("Calendar %s lookup failed for owner %s", calendar_id, owner_id, exc_info=True)
            return None

    async def _variables(
        self,
        owner_id: str,
        site: BookingSite,
        booking: Booking,
        calendar: CalendarConfig | None,
        settings: FollowUpSettings,
    ) -> dict[str, str]:
        try:
            profile = await self.collaborators.directory.get_profile(owner_id)
            business_name = profile.business_name.strip()
        except Exception:
            log.warning("Tenant profile lookup failed for %s", owner_id, exc_info=True)
            business_name = ""
        calendar_title = (calendar.title if calendar else "").strip()
        booking_title = calendar_title or site.title
        return {
            "contactName": booking.contact_name.strip(),
            "contactEmail": booking.contact_email.strip(),
            "contactPhone": booking.contact_phone.strip(),
            "businessName": business_name or config.DEFAULT_FROM_NAME,
            "bookingTitle": booking_title,
            "calendarTitle": calendar_title or booking_title,
            "timeZone": site.time_zone,
            "startAt": to_iso(booking.start_at),
            "endAt": to_iso(booking.end_at),
            "when": format_when(booking.start_at, site.time_zone),
            **settings.custom_variables,
        }

    def _desired_items(
        self,
        owner_id: str,
        booking: Booking,
        site: BookingSite,
        calendar: CalendarConfig | None,
        calendar_id: str | None,
        settings: FollowUpSettings,
        variables: dict[str, str],
    ) -> list[FollowUpQueueItem]:
        site_emails = [email.lower() for email in site.notification_emails][:MAX_RECIPIENTS]
        items: list[FollowUpQueueItem] = []

        for step in settings.steps_for(calendar_id):
            if not step.enabled:
                continue
            delay = clamp_int(step.delay_minutes, 0, 0, config.FOLLOW_UP_MAX_DELAY_MINUTES)
            send_at_iso = to_iso(booking.end_at + timedelta(minutes=delay))

            if step.audience == AUDIENCE_INTERNAL:
                recipients = step.internal_recipients or InternalRecipients()
                if recipients.mode == RECIPIENTS_CUSTOM:
                    emails, phones = list(recipients.emails), list(recipients.phones)
                else:
                    emails = list(calendar.notification_emails) if calendar and calendar.notification_emails else site_emails
                    phones = []
            else:
                emails = [booking.contact_email] if booking.contact_email else []
                phones = [booking.contact_phone] if booking.contact_phone else []

            def _item(channel: str, to: str, body: str, subject: str | None = None) -> FollowUpQueueItem:
                return FollowUpQueueItem(
                    id="",
                    booking_id=booking.id,
                    owner_id=owner_id,
                    step_id=step.id,
                    step_name=step.name,
                    calendar_id=calendar_id or None,
                    channel=channel,
                    to=to,
                    subject=subject,
                    body=body,
                    send_at_iso=send_at_iso,
                    created_at_iso="",
                )

            if step.email_enabled:
                subject = render_template(step.subject_template, variables)[:SUBJECT_MAX_CHARS]
                body = render_template(step.email_body_template, variables)[:EMAIL_BODY_MAX_CHARS]
                items.extend(_item(CHANNEL_EMAIL, email, body, subject) for email in emails)
            if step.sms_enabled:
                body = render_template(step.sms_body_template, variables)[:SMS_BODY_MAX_CHARS]
                items.extend(_item(CHANNEL_SMS, phone, body) for phone in phones)
        return items

    @staticmethod
    def _reconcile(
        document: FollowUpDocument,
        booking_id: str,
        desired: list[FollowUpQueueItem],
        now_iso: str,
    ) -> ScheduleResult:
        result = ScheduleResult(ok=True)
        pending = {
            item.key: index
            for index, item in enumerate(document.queue)
            if item.status == STATUS_PENDING
        }
        desired_keys = set()

        for item in desired:
            desired_keys.add(item.key)
            index = pending.get(item.key)
            if index is not None:
                existing = document.queue[index]
                item.id = existing.id
                item.attempts = existing.attempts
                item.created_at_iso = existing.created_at_iso
                document.queue[index] = item
            else:
                item.id = f"fu_{uuid.uuid4().hex[:16]}"
                item.created_at_iso = now_iso
                pending[item.key] = len(document.queue)
                document.queue.append(item)
                result.created += 1

        for item in document.queue:
            if item.booking_id == booking_id and item.status == STATUS_PENDING and item.key not in desired_keys:
                item.status = STATUS_CANCELED
                result.canceled += 1

        # Duplicate desired tuples collapse onto one item.
        result.scheduled = len(desired_keys)
        return result
