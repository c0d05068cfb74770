"""Follow-up Jobs - deliver due follow-up queue items."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

import config
from channels.base import ProviderError, ProviderNotConfigured
from followups import (
    CHANNEL_EMAIL,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    SUBJECT_MAX_CHARS,
    FollowUpQueueItem,
    FollowUpScheduler,
    parse_document,
)
from utils import clamp_int, to_iso

if TYPE_CHECKING:
    from automations import AutomationEngine

log = logging.getLogger(__name__)


@dataclass
class SweepCounts:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


async def process_due_followups(
    scheduler: FollowUpScheduler,
    engine: AutomationEngine | None = None,
    *,
    limit: int | None = None,
) -> dict[str, int]:
    """Send PENDING items whose ``sendAtIso`` has passed, oldest first.

    At most *limit* items (1..100) are attempted across all tenants.  Every
    item is re-read from the stored document right before sending and its
    outcome is persisted before the next item, so overlapping sweeps never
    send the same item twice.  Failed items stay FAILED.
    """
    limit = clamp_int(limit, config.FOLLOW_UP_SWEEP_LIMIT, 1, 100)
    counts = SweepCounts()
    try:
        rows = await scheduler.documents.list_documents(
            scheduler.slug, config.FOLLOW_UP_SWEEP_MAX_DOCUMENTS,
        )
    except Exception:
        log.error("Failed to list follow-up documents", exc_info=True)
        return counts.to_dict()

    now = scheduler.clock()
    for owner_id, raw in rows:
        if counts.processed >= limit:
            break
        document = parse_document(raw, now=now)
        due = sorted(
            (
                item for item in document.queue
                if item.status == STATUS_PENDING and item.send_at is not None and item.send_at <= now
            ),
            key=lambda item: item.send_at_iso,
        )
        if not due:
            continue

        from_name = await _from_name(scheduler, owner_id)
        for item in due:
            if counts.processed >= limit:
                break
            sent = await _deliver(scheduler, owner_id, item.id, from_name, counts)
            if sent is not None and engine is not None:
                await _emit_sent(scheduler, engine, owner_id, sent)

    if counts.processed:
        log.info(
            "Follow-up sweep: processed=%d sent=%d skipped=%d failed=%d",
            counts.processed, counts.sent, counts.skipped, counts.failed,
        )
    return counts.to_dict()


async def _from_name(scheduler: FollowUpScheduler, owner_id: str) -> str:
    try:
        profile = await scheduler.collaborators.directory.get_profile(owner_id)
    except Exception:
        log.debug("Profile lookup failed for %s", owner_id, exc_info=True)
        return config.DEFAULT_FROM_NAME
    return profile.business_name.strip() or config.DEFAULT_FROM_NAME


async def _deliver(
    scheduler: FollowUpScheduler,
    owner_id: str,
    item_id: str,
    from_name: str,
    counts: SweepCounts,
) -> FollowUpQueueItem | None:
    """Attempt one item under the tenant lock; returns it when sent."""
    async with scheduler.documents.lock(owner_id, scheduler.slug):
        document = await scheduler.load(owner_id)
        item = document.find(item_id)
        if item is None or item.status != STATUS_PENDING:
            return None
        # rescheduling rewrites sendAtIso in place
        if item.send_at is None or item.send_at > scheduler.clock():
            return None

        counts.processed += 1
        senders = scheduler.collaborators
        try:
            if item.channel == CHANNEL_EMAIL:
                await senders.email.send_email(
                    owner_id,
                    item.to,
                    (item.subject or "Follow-up")[:SUBJECT_MAX_CHARS],
                    item.body,
                    from_name=from_name,
                )
            else:
                await senders.sms.send_sms(owner_id, item.to, item.body)
        except ProviderNotConfigured as exc:
            counts.skipped += 1
            _mark_failed(item, str(exc))
        except ProviderError as exc:
            counts.failed += 1
            _mark_failed(item, str(exc))
        except Exception as exc:
            log.warning("Follow-up %s for owner %s raised", item.id, owner_id, exc_info=True)
            counts.failed += 1
            _mark_failed(item, str(exc) or "Unknown error")
        else:
            counts.sent += 1
            item.status = STATUS_SENT
            item.sent_at_iso = to_iso(scheduler.clock())
            item.last_error = None

        await scheduler.save(owner_id, document)

    if item.status == STATUS_SENT:
        log.info("Follow-up %s sent to %s via %s (owner %s)", item.id, item.to, item.channel, owner_id)
        return item
    log.warning("Follow-up %s for owner %s failed: %s", item.id, owner_id, item.last_error)
    return None


def _mark_failed(item: FollowUpQueueItem, error: str) -> None:
    item.status = STATUS_FAILED
    item.attempts += 1
    item.last_error = error[:500]


async def _emit_sent(
    scheduler: FollowUpScheduler,
    engine: AutomationEngine,
    owner_id: str,
    item: FollowUpQueueItem,
) -> None:
    if item.channel == CHANNEL_EMAIL:
        sender = scheduler.collaborators.email.from_address
        contact = {"name": item.to, "email": item.to}
    else:
        sender = scheduler.collaborators.sms.from_address
        contact = {"name": item.to, "phone": item.to}
    try:
        await engine.run_for_event(
            owner_id,
            "follow_up_sent",
            message={"from": sender or "", "to": item.to, "body": item.body},
            contact=contact,
        )
    except Exception:
        log.warning("follow_up_sent automations failed for owner %s", owner_id, exc_info=True)
