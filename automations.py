import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import config
from automation_actions import ActionDispatcher, ActionOutcome, ExecutionContext
from automation_graph import (
    ActionConfig,
    Automation,
    AutomationsDocument,
    ConditionConfig,
    parse_automations_document,
)
from automation_triggers import TriggerEvent, select_trigger_nodes
from collaborators import Collaborators, Contact, TenantProfile
from conditions import evaluate_condition
from contacts import looks_like_email, looks_like_phone
from database import ServiceDataStore
from utils import utc_now

log = logging.getLogger(__name__)


class WalkReason(str, Enum):
    COMPLETED = "completed"
    STEP_BUDGET_EXCEEDED = "step_budget_exceeded"
    VISIT_LIMIT_EXCEEDED = "visit_limit_exceeded"
    MISSING_NODE = "missing_node"
    FANNED_OUT = "fanned_out"


@dataclass
class WalkResult:
    start_node_id: str
    depth: int = 0
    reason: WalkReason = WalkReason.COMPLETED
    steps: int = 0
    outcomes: list[ActionOutcome] = field(default_factory=list)
    children: list["WalkResult"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startNodeId": self.start_node_id,
            "depth": self.depth,
            "reason": self.reason.value,
            "steps": self.steps,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class RunResult:
    automation_id: str
    trigger_kind: str
    contact_id: str = ""
    walks: list[WalkResult] = field(default_factory=list)
    error: str = ""

    @property
    def matched(self) -> bool:
        return bool(self.walks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "automationId": self.automation_id,
            "triggerKind": self.trigger_kind,
            "contactId": self.contact_id,
            "walks": [walk.to_dict() for walk in self.walks],
            "error": self.error,
        }


class AutomationEngine:
    """Interprets tenant automation graphs for incoming business events.

    Each matched trigger node starts an independent walk.  Walks are bounded
    by a step budget and a per-node visit cap, so cyclic graphs terminate.
    Delay nodes pass straight through; real delays belong to the follow-up
    scheduler.
    """

    def __init__(
        self,
        documents: ServiceDataStore,
        collaborators: Collaborators,
        *,
        clock: Callable[[], datetime] = utc_now,
        max_steps: int | None = None,
        max_node_visits: int | None = None,
    ):
        self.documents = documents
        self.collaborators = collaborators
        self.dispatcher = ActionDispatcher(collaborators)
        self.clock = clock
        self.max_steps = max_steps or config.WALK_MAX_STEPS
        self.max_node_visits = max_node_visits or config.WALK_MAX_NODE_VISITS

    async def load_document(self, owner_id: str) -> AutomationsDocument:
        raw = await self.documents.load(owner_id, config.AUTOMATIONS_SERVICE_SLUG)
        return parse_automations_document(raw or {})

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_for_event(
        self,
        owner_id: str,
        trigger_kind: str,
        *,
        message: dict | None = None,
        contact: dict | Contact | None = None,
        event: dict | None = None,
    ) -> list[RunResult]:
        """Run every automation of the tenant concurrently for one event."""
        try:
            document = await self.load_document(owner_id)
        except Exception:
            log.error("Failed to load automations for owner %s", owner_id, exc_info=True)
            return []
        if not document.automations:
            return []

        trigger_event = TriggerEvent.build(message=message, contact=contact, event=event)
        results = await asyncio.gather(*(
            self.run_isolated(
                owner_id, automation, trigger_kind, trigger_event, custom_variables=document.custom_variables,
            )
            for automation in document.automations
        ))
        return list(results)

    async def run_by_id(
        self,
        owner_id: str,
        automation_id: str,
        trigger_kind: str,
        *,
        message: dict | None = None,
        contact: dict | Contact | None = None,
        event: dict | None = None,
    ) -> RunResult | None:
        try:
            document = await self.load_document(owner_id)
        except Exception:
            log.error("Failed to load automations for owner %s", owner_id, exc_info=True)
            return None
        automation = document.get(automation_id)
        if automation is None:
            log.info("Automation %s not found for owner %s", automation_id, owner_id)
            return None
        trigger_event = TriggerEvent.build(message=message, contact=contact, event=event)
        return await self.run_isolated(
            owner_id, automation, trigger_kind, trigger_event, custom_variables=document.custom_variables,
        )

    async def run_isolated(
        self,
        owner_id: str,
        automation: Automation,
        trigger_kind: str,
        event: TriggerEvent,
        *,
        custom_variables: dict[str, str] | None = None,
    ) -> RunResult:
        """Like ``run`` but a crash becomes ``RunResult.error`` instead of raising."""
        try:
            return await self.run(
                owner_id, automation, trigger_kind, event, custom_variables=custom_variables,
            )
        except Exception as exc:
            log.error("Automation %s crashed for owner %s", automation.id, owner_id, exc_info=True)
            return RunResult(automation_id=automation.id, trigger_kind=trigger_kind, error=str(exc))

    async def run(
        self,
        owner_id: str,
        automation: Automation,
        trigger_kind: str,
        event: TriggerEvent,
        *,
        custom_variables: dict[str, str] | None = None,
    ) -> RunResult:
        result = RunResult(automation_id=automation.id, trigger_kind=trigger_kind)
        triggers = select_trigger_nodes(automation, trigger_kind, event)
        if not triggers:
            return result

        contact = await self._resolve_contact(owner_id, event)
        ctx = ExecutionContext(
            owner_id=owner_id,
            trigger_kind=trigger_kind,
            event=event,
            profile=await self._profile(owner_id),
            now=self.clock(),
            contact=contact,
            custom_variables=dict(custom_variables or {}),
        )
        result.contact_id = contact.id

        for trigger in triggers:
            walk = await self._walk(automation, trigger.id, ctx, depth=0)
            result.walks.append(walk)
            log.info(
                "Automation %s owner=%s trigger=%s walk=%s steps=%d actions=%d",
                automation.id, owner_id, trigger.id, walk.reason.value, walk.steps, len(walk.outcomes),
            )
        return result

    # ------------------------------------------------------------------
    # Graph walk
    # ------------------------------------------------------------------

    async def _walk(self, automation: Automation, start_id: str, ctx: ExecutionContext, *, depth: int) -> WalkResult:
        walk = WalkResult(start_node_id=start_id, depth=depth)
        visits: Counter[str] = Counter()
        current: str | None = start_id

        while current:
            if walk.steps >= self.max_steps:
                walk.reason = WalkReason.STEP_BUDGET_EXCEEDED
                break
            walk.steps += 1
            visits[current] += 1
            if visits[current] > self.max_node_visits:
                walk.reason = WalkReason.VISIT_LIMIT_EXCEEDED
                break

            node = automation.nodes.get(current)
            if node is None:
                walk.reason = WalkReason.MISSING_NODE
                break

            if isinstance(node.config, ConditionConfig):
                cfg = node.config
                ok = evaluate_condition(cfg.left, cfg.op, cfg.right, ctx.variables())
                current = automation.next_node_id(node.id, "true" if ok else "false")
                continue

            if isinstance(node.config, ActionConfig):
                outcome = await self.dispatcher.dispatch(node, ctx, depth=depth)
                walk.outcomes.append(outcome)
                if outcome.fan_out and depth == 0:
                    await self._fan_out(automation, node.id, outcome.fan_out, ctx, walk)
                    walk.reason = WalkReason.FANNED_OUT
                    break

            current = automation.next_node_id(node.id, "out")

        return walk

    async def _fan_out(
        self,
        automation: Automation,
        node_id: str,
        contacts: list[Contact],
        ctx: ExecutionContext,
        walk: WalkResult,
    ) -> None:
        next_id = automation.next_node_id(node_id, "out")
        if not next_id:
            return
        for contact in contacts[:config.FIND_CONTACT_FAN_OUT_LIMIT]:
            saved = ctx.snapshot()
            ctx.set_contact(contact)
            try:
                walk.children.append(await self._walk(automation, next_id, ctx, depth=walk.depth + 1))
            finally:
                ctx.restore(saved)

    # ------------------------------------------------------------------
    # Context resolution
    # ------------------------------------------------------------------

    async def _profile(self, owner_id: str) -> TenantProfile:
        try:
            return await self.collaborators.directory.get_profile(owner_id)
        except Exception:
            log.warning("Failed to load tenant profile for %s", owner_id, exc_info=True)
            return TenantProfile(owner_id=owner_id)

    async def _resolve_contact(self, owner_id: str, event: TriggerEvent) -> Contact:
        """Resolve the event contact once per run; never raises."""
        store = self.collaborators.contacts
        given = event.contact
        sender = event.message.get("from", "")

        try:
            if given.id:
                row = await store.get_by_id(owner_id, given.id)
                if row is not None and event.lead_id:
                    linked = await self.collaborators.leads.get_linked_contact(owner_id, event.lead_id)
                    if linked != row.id:
                        await self.collaborators.leads.link_contact(owner_id, event.lead_id, row.id)
                return row or given

            email = given.email or (sender if looks_like_email(sender) else "")
            phone = given.phone or (sender if looks_like_phone(sender) else "")
            if given.name or email or phone:
                name = given.name or phone or email or sender or "Contact"
                contact_id = await store.find_or_create(owner_id, name, email or None, phone or None)
                if not contact_id:
                    return Contact(name=name, email=email, phone=phone)
                if event.lead_id:
                    await self.collaborators.leads.link_contact(owner_id, event.lead_id, contact_id)
                row = await store.get_by_id(owner_id, contact_id)
                return row or Contact(id=contact_id, name=name, email=email, phone=phone)

            if event.lead_id:
                contact_id = await self.collaborators.leads.get_linked_contact(owner_id, event.lead_id)
                if contact_id:
                    row = await store.get_by_id(owner_id, contact_id)
                    return row or Contact(id=contact_id)
        except Exception:
            log.warning("Contact resolution failed for owner %s", owner_id, exc_info=True)
        return given
