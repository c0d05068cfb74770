"""Action node execution.

``ActionDispatcher.dispatch`` runs one action node against the mutable
``ExecutionContext`` and always returns an ``ActionOutcome``.  A failing
collaborator is recorded as ``status="failed"`` and never stops the walk.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import config
from automation_graph import ActionConfig, Node
from automation_triggers import TriggerEvent
from collaborators import Collaborators, Contact, Member, TenantProfile
from contacts import looks_like_email
from templates import build_template_vars, render_json_template, render_template

log = logging.getLogger(__name__)

SERVICE_OUTBOUND_CALLS = "ai-outbound-calls"
SERVICE_NURTURE = "nurture-campaigns"

DEFAULT_REVIEW_REQUEST_BODY = (
    "Hi {contact.firstName}, thanks for choosing {business.name}! "
    "Would you mind leaving us a quick review? {link}"
)
DEFAULT_BOOKING_LINK_BODY = (
    "Hi {contact.firstName}, you can book your next appointment with {business.name} here: {link}"
)


@dataclass
class ActionOutcome:
    node_id: str
    action_kind: str
    status: str  # success | failed | skipped
    detail: str = ""
    fan_out: list[Contact] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "actionKind": self.action_kind,
            "status": self.status,
            "detail": self.detail,
        }


@dataclass
class ExecutionContext:
    """Mutable state shared by every node of one automation run.

    Template variables are derived from the contact, assignee and message
    and rebuilt lazily after any mutation.
    """

    owner_id: str
    trigger_kind: str
    event: TriggerEvent
    profile: TenantProfile
    now: datetime
    contact: Contact = field(default_factory=Contact)
    assignee_user_id: str = ""
    assignee: Member | None = None
    custom_variables: dict[str, str] = field(default_factory=dict)
    members: list[Member] | None = None
    _variables: dict[str, str] | None = field(default=None, repr=False)

    @property
    def message(self) -> dict[str, str]:
        return self.event.message

    def variables(self) -> dict[str, str]:
        if self._variables is None:
            user: dict[str, str] = {}
            if self.assignee is not None:
                user = {
                    "name": self.assignee.name,
                    "email": self.assignee.email,
                    "phone": self.assignee.phone,
                }
            self._variables = build_template_vars(
                contact=self.contact,
                profile=self.profile,
                user=user,
                message=self.message,
                now=self.now,
                custom_variables=self.custom_variables,
            )
        return self._variables

    def render(self, template: str, **extra: str) -> str:
        variables = self.variables()
        if extra:
            variables = {**variables, **extra}
        return render_template(template, variables)

    def set_contact(self, contact: Contact) -> None:
        self.contact = contact
        self._variables = None

    def set_assignee(self, user_id: str, member: Member | None) -> None:
        self.assignee_user_id = user_id
        self.assignee = member
        self._variables = None

    def snapshot(self) -> tuple[Contact, str, Member | None]:
        return (self.contact, self.assignee_user_id, self.assignee)

    def restore(self, state: tuple[Contact, str, Member | None]) -> None:
        self.contact, self.assignee_user_id, self.assignee = state
        self._variables = None


def _valid_webhook_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


class ActionDispatcher:
    def __init__(self, collaborators: Collaborators):
        self.c = collaborators

    async def dispatch(self, node: Node, ctx: ExecutionContext, *, depth: int = 0) -> ActionOutcome:
        cfg = node.config
        if not isinstance(cfg, ActionConfig):
            return ActionOutcome(node.id, "", "skipped", "not an action node")

        handler = getattr(self, f"_action_{cfg.action_kind}", None)
        if handler is None:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "unsupported action")

        try:
            outcome = await handler(node, cfg, ctx, depth)
        except Exception as exc:
            log.warning(
                "Action %s (%s) failed for owner %s",
                node.id, cfg.action_kind, ctx.owner_id, exc_info=True,
            )
            outcome = ActionOutcome(node.id, cfg.action_kind, "failed", str(exc)[:400])

        level = logging.WARNING if outcome.status == "failed" else logging.INFO
        log.log(
            level,
            "Action %s [%s] owner=%s status=%s %s",
            node.id, cfg.action_kind, ctx.owner_id, outcome.status, outcome.detail,
        )
        return outcome

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def _members(self, ctx: ExecutionContext) -> list[Member]:
        if ctx.members is None:
            try:
                ctx.members = await self.c.directory.list_members(ctx.owner_id)
            except Exception:
                log.warning("Failed to list members for owner %s", ctx.owner_id, exc_info=True)
                ctx.members = []
        return ctx.members

    def _owner_member(self, ctx: ExecutionContext) -> Member:
        return Member(
            user_id=ctx.owner_id,
            email=ctx.profile.owner_email,
            name=ctx.profile.owner_name,
            phone=ctx.profile.owner_phone,
        )

    async def _validate_user(self, ctx: ExecutionContext, user_id: str) -> Member | None:
        """The tenant owner or an active account member, else None."""
        if not user_id:
            return None
        if user_id == ctx.owner_id:
            return self._owner_member(ctx)
        for member in await self._members(ctx):
            if member.user_id == user_id and member.active:
                return member
        return None

    async def _calendar_assignee(self, ctx: ExecutionContext) -> Member | None:
        """First active member whose email is on the event calendar's notification list."""
        calendar_id = ctx.event.calendar_id
        if not calendar_id and ctx.event.booking_id:
            booking = await self.c.bookings.get_booking(ctx.owner_id, ctx.event.booking_id)
            calendar_id = booking.calendar_id if booking else ""
        if not calendar_id:
            return None
        calendar = await self.c.bookings.get_calendar(ctx.owner_id, calendar_id)
        if calendar is None:
            return None
        emails = {email.strip().lower() for email in calendar.notification_emails}
        owner_listed = bool(ctx.profile.owner_email) and ctx.profile.owner_email.lower() in emails
        for member in await self._members(ctx):
            if member.active and member.email and member.email.lower() in emails:
                return member
        return self._owner_member(ctx) if owner_listed else None

    async def _assigned_lead(self, ctx: ExecutionContext) -> Member | None:
        if ctx.assignee_user_id:
            return ctx.assignee or await self._validate_user(ctx, ctx.assignee_user_id)
        return await self._calendar_assignee(ctx)

    # ------------------------------------------------------------------
    # Recipients
    # ------------------------------------------------------------------

    async def _sms_recipient(self, cfg: ActionConfig, ctx: ExecutionContext, default: str) -> str:
        target = cfg.sms_to or default
        if target == "inbound_sender":
            return ctx.message.get("from", "")
        if target == "event_contact":
            return ctx.contact.phone or ctx.message.get("from", "")
        if target == "internal_notification":
            return ctx.profile.owner_phone or ctx.profile.business_phone
        if target == "assigned_lead":
            member = await self._assigned_lead(ctx)
            return member.phone if member else ""
        if target == "custom":
            return ctx.render(cfg.sms_to_number).strip()
        return ""

    async def _email_recipient(self, cfg: ActionConfig, ctx: ExecutionContext) -> str:
        target = cfg.email_to or "internal_notification"
        if target == "inbound_sender":
            sender = ctx.message.get("from", "")
            return sender if looks_like_email(sender) else ""
        if target == "event_contact":
            return ctx.contact.email
        if target == "internal_notification":
            return ctx.profile.owner_email or ctx.profile.business_email
        if target == "assigned_lead":
            member = await self._assigned_lead(ctx)
            return member.email if member else ""
        if target == "custom":
            return ctx.render(cfg.email_to_address).strip()
        return ""

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def _action_send_sms(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        to = await self._sms_recipient(cfg, ctx, "inbound_sender")
        if not to:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no sms recipient")
        body = ctx.render(cfg.body).strip() or config.DEFAULT_SMS_BODY
        await self.c.sms.send_sms(ctx.owner_id, to, body[:config.SMS_BODY_MAX_CHARS])
        return ActionOutcome(node.id, cfg.action_kind, "success", f"sms to {to}")

    async def _action_send_email(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        to = await self._email_recipient(cfg, ctx)
        if not to:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no email recipient")
        subject = ctx.render(cfg.subject).strip() or config.DEFAULT_EMAIL_SUBJECT
        text = ctx.render(cfg.body).strip()
        from_name = ctx.profile.business_name.strip() or config.DEFAULT_FROM_NAME
        await self.c.email.send_email(
            ctx.owner_id,
            to,
            subject[:config.EMAIL_SUBJECT_MAX_CHARS],
            text[:config.EMAIL_TEXT_MAX_CHARS] or " ",
            from_name=from_name,
        )
        return ActionOutcome(node.id, cfg.action_kind, "success", f"email to {to}")

    async def _send_link(
        self,
        node: Node,
        cfg: ActionConfig,
        ctx: ExecutionContext,
        link: str | None,
        default_body: str,
        missing: str,
    ) -> ActionOutcome:
        if not link:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", missing)
        to = await self._sms_recipient(cfg, ctx, "event_contact")
        if not to:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no sms recipient")
        template = cfg.body.strip() or default_body
        if "{link}" not in template:
            template = f"{template} {{link}}"
        body = ctx.render(template, link=link).strip()
        await self.c.sms.send_sms(ctx.owner_id, to, body[:config.SMS_BODY_MAX_CHARS])
        return ActionOutcome(node.id, cfg.action_kind, "success", f"sms to {to}")

    async def _action_send_review_request(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        link = await self.c.directory.get_review_link(ctx.owner_id)
        return await self._send_link(node, cfg, ctx, link, DEFAULT_REVIEW_REQUEST_BODY, "no review link configured")

    async def _action_send_booking_link(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        link = await self.c.directory.get_booking_link(ctx.owner_id)
        return await self._send_link(node, cfg, ctx, link, DEFAULT_BOOKING_LINK_BODY, "no booking link configured")

    async def _action_send_webhook(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        url = ctx.render(cfg.webhook_url).strip()
        if not _valid_webhook_url(url):
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "invalid webhook url")

        payload: dict[str, Any] = {
            "ownerId": ctx.owner_id,
            "triggerKind": ctx.trigger_kind,
            "contact": ctx.contact.to_dict(),
            "message": dict(ctx.message),
            "event": ctx.event.event_dict(),
        }
        detail = ""
        if cfg.webhook_body.strip():
            rendered = render_json_template(cfg.webhook_body, ctx.variables())
            try:
                custom = json.loads(rendered)
            except json.JSONDecodeError:
                custom = None
            if isinstance(custom, dict):
                payload = custom
            else:
                detail = " (body template invalid, sent default envelope)"

        status_code = await self.c.webhooks.post_json(url, payload)
        return ActionOutcome(node.id, cfg.action_kind, "success", f"POST {url} -> {status_code}{detail}")

    # ------------------------------------------------------------------
    # Contacts, tags, tasks, leads
    # ------------------------------------------------------------------

    async def _action_add_tag(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        if not cfg.tag_id:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no tag configured")
        if not ctx.contact.id:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no contact")
        added = await self.c.tags.assign_tag(ctx.owner_id, ctx.contact.id, cfg.tag_id)
        return ActionOutcome(
            node.id, cfg.action_kind, "success",
            f"tag {cfg.tag_id} {'added' if added else 'already present'}",
        )

    async def _task_assignees(self, cfg: ActionConfig, ctx: ExecutionContext) -> list[str | None]:
        mode = cfg.task_assignee
        if mode == "owner":
            return [ctx.owner_id]
        if mode == "member":
            member = await self._validate_user(ctx, cfg.assignee_user_id)
            return [member.user_id if member else None]
        if mode == "assigned_lead":
            member = await self._assigned_lead(ctx)
            return [member.user_id if member else None]
        if mode == "all_members":
            ids = [member.user_id for member in await self._members(ctx) if member.active]
            return ids or [ctx.owner_id]
        return [None]

    async def _action_create_task(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        title = ctx.render(cfg.task_title).strip()
        if not title:
            title = f"Follow up with {ctx.contact.name or 'contact'}"
        description = ctx.render(cfg.body).strip()
        created: list[str] = []
        for user_id in await self._task_assignees(cfg, ctx):
            task_id = await self.c.tasks.create_task(
                ctx.owner_id,
                title[:200],
                description[:5000],
                assigned_to_user_id=user_id,
                contact_id=ctx.contact.id or None,
            )
            created.append(task_id)
        return ActionOutcome(node.id, cfg.action_kind, "success", f"created {len(created)} task(s)")

    async def _action_assign_lead(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        if cfg.lead_assignee == "owner":
            member: Member | None = self._owner_member(ctx)
        elif cfg.lead_assignee == "member":
            member = await self._validate_user(ctx, cfg.assignee_user_id)
        else:
            member = await self._calendar_assignee(ctx)
        if member is None:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no valid assignee")

        ctx.set_assignee(member.user_id, member)
        if not ctx.event.lead_id:
            return ActionOutcome(node.id, cfg.action_kind, "success", f"assignee {member.user_id} (no lead)")
        saved = await self.c.leads.set_assignee(ctx.owner_id, ctx.event.lead_id, member.user_id)
        status = "success" if saved else "failed"
        return ActionOutcome(node.id, cfg.action_kind, status, f"lead {ctx.event.lead_id} -> {member.user_id}")

    async def _action_find_contact(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        if cfg.tag_id:
            fan_out = cfg.find_mode == "all" and depth == 0
            limit = config.FIND_CONTACT_FAN_OUT_LIMIT if fan_out else 1
            contact_ids = await self.c.tags.find_contacts_by_tag(ctx.owner_id, cfg.tag_id, limit=limit)
            found: list[Contact] = []
            for contact_id in contact_ids[:limit]:
                contact = await self.c.contacts.get_by_id(ctx.owner_id, contact_id)
                if contact is not None:
                    found.append(contact)
            if found:
                if fan_out:
                    return ActionOutcome(
                        node.id, cfg.action_kind, "success",
                        f"fan-out over {len(found)} contact(s)", fan_out=found,
                    )
                ctx.set_contact(found[0])
                return ActionOutcome(node.id, cfg.action_kind, "success", f"contact {found[0].id}")

        name = ctx.render(cfg.contact_name).strip()
        email = ctx.render(cfg.contact_email).strip()
        phone = ctx.render(cfg.contact_phone).strip()
        if not (name or email or phone):
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no matching contact")

        display_name = name or phone or email
        contact_id = await self.c.contacts.find_or_create(
            ctx.owner_id, display_name, email or None, phone or None,
        )
        if not contact_id:
            return ActionOutcome(node.id, cfg.action_kind, "failed", "contact could not be resolved")
        contact = await self.c.contacts.get_by_id(ctx.owner_id, contact_id)
        ctx.set_contact(contact or Contact(id=contact_id, name=display_name, email=email, phone=phone))
        return ActionOutcome(node.id, cfg.action_kind, "success", f"contact {contact_id}")

    async def _action_update_contact(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        if not ctx.contact.id:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no contact")
        fields = {
            "name": ctx.render(cfg.contact_name).strip(),
            "email": ctx.render(cfg.contact_email).strip(),
            "phone": ctx.render(cfg.contact_phone).strip(),
        }
        fields = {key: value for key, value in fields.items() if value}
        if not fields:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "nothing to update")
        updated = await self.c.contacts.update(ctx.owner_id, ctx.contact.id, **fields)
        ctx.set_contact(updated or replace(ctx.contact, **fields))
        return ActionOutcome(node.id, cfg.action_kind, "success", f"updated {', '.join(sorted(fields))}")

    async def _action_trigger_service(self, node: Node, cfg: ActionConfig, ctx: ExecutionContext, depth: int) -> ActionOutcome:
        if not ctx.contact.id:
            return ActionOutcome(node.id, cfg.action_kind, "skipped", "no contact")
        campaign_id = cfg.campaign_id or None
        if cfg.service_slug == SERVICE_OUTBOUND_CALLS:
            count = await self.c.campaigns.enqueue_outbound_call(ctx.owner_id, ctx.contact.id, campaign_id)
            return ActionOutcome(node.id, cfg.action_kind, "success", f"queued {count} call(s)")
        if cfg.service_slug == SERVICE_NURTURE:
            count = await self.c.campaigns.enroll_in_nurture_campaign(ctx.owner_id, ctx.contact.id, campaign_id)
            return ActionOutcome(node.id, cfg.action_kind, "success", f"enrolled in {count} campaign(s)")
        return ActionOutcome(node.id, cfg.action_kind, "skipped", f"unknown service {cfg.service_slug!r}")
