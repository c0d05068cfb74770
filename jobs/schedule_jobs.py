"""Schedule Jobs - fire due ``scheduled_time`` triggers."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

import config
from automation_graph import migrate_automations_document, parse_automations_document
from automation_triggers import TriggerEvent, schedule_is_due, schedule_state_key
from utils import clamp_int, parse_iso, to_iso

if TYPE_CHECKING:
    from automations import AutomationEngine

log = logging.getLogger(__name__)


async def process_due_scheduled_automations(
    engine: AutomationEngine,
    *,
    owners_limit: int | None = None,
    per_owner_max_runs: int | None = None,
) -> dict[str, int]:
    """Run every due scheduled trigger once and record when it fired.

    Each trigger node is debounced by ``scheduleState["automationId:nodeId"]``.
    Only the touched ``scheduleState`` keys are written back, so automations
    edited while the pass runs are not clobbered.
    """
    owners_limit = clamp_int(owners_limit, config.SCHEDULED_OWNERS_LIMIT, 1, 10000)
    per_owner_max_runs = clamp_int(per_owner_max_runs, config.SCHEDULED_PER_OWNER_MAX_RUNS, 1, 100)
    slug = config.AUTOMATIONS_SERVICE_SLUG
    totals = {"owners": 0, "fired": 0, "failed": 0}

    try:
        rows = await engine.documents.list_documents(slug, owners_limit)
    except Exception:
        log.error("Failed to list automation documents", exc_info=True)
        return totals

    for owner_id, raw in rows:
        totals["owners"] += 1
        fired_at = await _run_owner(engine, owner_id, raw, per_owner_max_runs, totals)
        if fired_at:
            await _record_fires(engine, owner_id, fired_at)

    if totals["fired"]:
        log.info(
            "Scheduled sweep: owners=%d fired=%d failed=%d",
            totals["owners"], totals["fired"], totals["failed"],
        )
    return totals


async def _run_owner(
    engine: AutomationEngine,
    owner_id: str,
    raw: Any,
    max_runs: int,
    totals: dict[str, int],
) -> dict[str, str]:
    try:
        document = parse_automations_document(raw)
    except Exception:
        log.warning("Unreadable automations document for owner %s", owner_id, exc_info=True)
        return {}

    fired_at: dict[str, str] = {}
    for automation in document.automations:
        for node in automation.trigger_nodes("scheduled_time"):
            if len(fired_at) >= max_runs:
                return fired_at
            spec = node.config.schedule
            if spec is None:
                continue
            key = schedule_state_key(automation.id, node.id)
            now = engine.clock()
            if not schedule_is_due(spec, _last_fired(document.schedule_state, key), now):
                continue

            event = TriggerEvent.build(event={"triggerNodeId": node.id})
            result = await engine.run_isolated(
                owner_id, automation, "scheduled_time", event,
                custom_variables=document.custom_variables,
            )
            fired_at[key] = to_iso(now)
            totals["fired"] += 1
            if result.error:
                totals["failed"] += 1
    return fired_at


def _last_fired(state: dict[str, str], key: str) -> datetime | None:
    return parse_iso(state.get(key))


async def _record_fires(engine: AutomationEngine, owner_id: str, fired_at: dict[str, str]) -> None:
    slug = config.AUTOMATIONS_SERVICE_SLUG
    try:
        async with engine.documents.lock(owner_id, slug):
            data = migrate_automations_document(await engine.documents.load(owner_id, slug))
            state = data.get("scheduleState")
            data["scheduleState"] = {**(state if isinstance(state, dict) else {}), **fired_at}
            await engine.documents.save(owner_id, slug, data)
    except Exception:
        log.error("Failed to record schedule state for owner %s", owner_id, exc_info=True)
