import asyncio
import hmac
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

import config
from jobs.appointment_jobs import process_due_missed_appointments
from jobs.followup_jobs import process_due_followups
from jobs.schedule_jobs import process_due_scheduled_automations
from utils import atomic_write_json, load_json

log = logging.getLogger(__name__)

PREVIEW_CHARS = 500


@dataclass(frozen=True)
class SweepJob:
    job_id: str
    name: str
    cron_expr: str
    handler: str
    timezone_name: str = "UTC"

    def next_fire(self, after: datetime) -> datetime:
        """First cron slot strictly after *after*, as an aware local datetime."""
        local = after.astimezone(ZoneInfo(self.timezone_name)).replace(second=0, microsecond=0)
        return croniter(self.cron_expr, local).get_next(datetime)


@dataclass
class SweepJobState:
    enabled: bool = True
    last_run: str = ""
    last_status: str = "never"
    last_result_preview: str = ""
    next_run: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "SweepJobState":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            enabled=bool(raw.get("enabled", True)),
            last_run=str(raw.get("last_run") or ""),
            last_status=str(raw.get("last_status") or "never"),
            last_result_preview=str(raw.get("last_result_preview") or ""),
            next_run=str(raw.get("next_run") or ""),
        )

    def next_run_at(self) -> datetime | None:
        try:
            return datetime.fromisoformat(self.next_run) if self.next_run else None
        except ValueError:
            return None


class SweepGateway:
    """In-process cron for the three periodic sweeps.

    Each job keeps its ``next_run`` in a JSON state file; a tick launches every
    enabled job whose slot has passed and that is not already running.  The
    same sweeps are exposed over HTTP (see ``attach_gateway_routes``) for
    external cron callers, and both paths are safe to overlap.
    """

    def __init__(self, runtime, *, state_path: Path | None = None):
        self.runtime = runtime
        self._state_path = Path(state_path or config.GATEWAY_STATE_FILE)
        self._jobs: dict[str, SweepJob] = {
            job.job_id: job
            for job in (
                SweepJob("follow-ups", "Follow-up delivery", config.GATEWAY_FOLLOW_UPS_CRON,
                         "follow_ups", config.TIMEZONE),
                SweepJob("scheduled-automations", "Scheduled automations", config.GATEWAY_SCHEDULED_CRON,
                         "scheduled_automations", config.TIMEZONE),
                SweepJob("missed-appointments", "Missed appointments", config.GATEWAY_MISSED_CRON,
                         "missed_appointments", config.TIMEZONE),
            )
        }
        self._states: dict[str, SweepJobState] = {}
        self._lock = asyncio.Lock()
        self._loaded = False
        self._last_tick: datetime | None = None
        self._running: set[str] = set()

    async def initialize(self):
        if self._loaded:
            return
        raw = load_json(self._state_path, {})
        jobs_raw = raw.get("jobs", {}) if isinstance(raw, dict) else {}
        self._states = {job_id: SweepJobState.from_dict(jobs_raw.get(job_id)) for job_id in self._jobs}
        self._loaded = True
        log.info("Gateway initialized with %d sweep jobs", len(self._jobs))

    async def tick(self):
        await self.initialize()
        now = datetime.now(timezone.utc)
        if self._last_tick and (now - self._last_tick).total_seconds() < config.GATEWAY_TICK_INTERVAL:
            return
        if self._lock.locked():
            return
        self._last_tick = now

        for job in await self._claim_due(now):
            self._running.add(job.job_id)
            task = asyncio.create_task(self._execute(job, now), name=f"gateway:{job.job_id}")
            task.add_done_callback(lambda _task, job_id=job.job_id: self._running.discard(job_id))

    async def _claim_due(self, now: datetime) -> list[SweepJob]:
        due: list[SweepJob] = []
        dirty = False
        async with self._lock:
            for job_id, job in self._jobs.items():
                state = self._states[job_id]
                if not state.enabled or job_id in self._running:
                    continue
                next_run = state.next_run_at()
                if next_run is None:
                    # first sighting: the current minute counts as a slot
                    next_run = job.next_fire(now - timedelta(minutes=1))
                    state.next_run = next_run.isoformat()
                    dirty = True
                if now >= next_run:
                    due.append(job)
            if dirty:
                await self._persist()
        return due

    async def _execute(self, job: SweepJob, started: datetime):
        try:
            result = await self.run_job(job.job_id)
        except Exception as exc:
            log.error("Gateway sweep %s failed", job.job_id, exc_info=True)
            status, preview = "failed", str(exc)
        else:
            status, preview = "success", json.dumps(result, default=str)

        async with self._lock:
            state = self._states[job.job_id]
            state.last_run = started.isoformat()
            state.last_status = status
            state.last_result_preview = preview[:PREVIEW_CHARS]
            state.next_run = job.next_fire(started).isoformat()
            await self._persist()

    async def _persist(self):
        snapshot = {"jobs": {job_id: asdict(state) for job_id, state in self._states.items()}}
        await asyncio.to_thread(atomic_write_json, self._state_path, snapshot)

    async def run_forever(self, stop: asyncio.Event):
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                log.error("Gateway tick failed", exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=config.GATEWAY_TICK_INTERVAL)
            except asyncio.TimeoutError:
                pass
        await self.drain()

    async def drain(self, timeout: float = 30.0):
        """Wait for running sweeps to finish."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._running and loop.time() < deadline:
            await asyncio.sleep(0.1)

    def has_job(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def run_job(self, job_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown gateway job: {job_id}")
        handler = getattr(self, f"_job_{job.handler}")
        return await handler(payload=payload or {})

    async def _job_follow_ups(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await process_due_followups(
            self.runtime.scheduler,
            self.runtime.engine,
            limit=payload.get("limit"),
        )

    async def _job_scheduled_automations(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await process_due_scheduled_automations(
            self.runtime.engine,
            owners_limit=payload.get("ownersLimit"),
            per_owner_max_runs=payload.get("perOwnerMaxRuns"),
        )

    async def _job_missed_appointments(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await process_due_missed_appointments(
            self.runtime.engine,
            lookback_hours=payload.get("lookbackHours"),
            grace_minutes=payload.get("graceMinutes"),
            limit=payload.get("limit"),
        )

    async def get_status_rows(self) -> list[dict[str, Any]]:
        await self.initialize()
        async with self._lock:
            states = {job_id: asdict(state) for job_id, state in self._states.items()}

        rows = [
            {
                "id": job_id,
                "name": job.name,
                "cron": job.cron_expr,
                "running": job_id in self._running,
                **states[job_id],
            }
            for job_id, job in self._jobs.items()
        ]
        for row in rows:
            row["last_run"] = row["last_run"] or "-"
            row["next_run"] = row["next_run"] or "-"
        return sorted(rows, key=lambda row: row["name"].lower())


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------

def cron_authorized(authorization: str = "", cron_secret: str = "", query_secret: str = "") -> bool:
    """Accept ``Authorization: Bearer``, ``x-cron-secret`` or ``?secret=``.

    With no configured secret every caller is accepted.
    """
    expected = config.CRON_SECRET
    if not expected:
        return True
    provided = ""
    if authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    provided = provided or cron_secret.strip() or query_secret.strip()
    return bool(provided) and hmac.compare_digest(provided, expected)


def attach_gateway_routes(app, runtime, gateway: SweepGateway) -> None:
    """Attach cron, event and booking endpoints to the FastAPI app."""
    from fastapi import Body, Header, Query
    from fastapi.responses import JSONResponse

    def _unauthorized():
        return JSONResponse({"ok": False, "error": "Unauthorized"}, status_code=401)

    async def _run_cron(job_id: str, authorization: str, cron_secret: str, secret: str, payload: dict):
        if not cron_authorized(authorization, cron_secret, secret):
            return _unauthorized()
        try:
            result = await gateway.run_job(job_id, payload if isinstance(payload, dict) else {})
        except Exception as exc:
            log.error("Cron job %s failed", job_id, exc_info=True)
            return JSONResponse({"ok": False, "error": str(exc)}, status_code=500)
        return {"ok": True, "job": job_id, "result": result}

    @app.get("/gateway/status")
    async def gateway_status_endpoint():
        return {"ok": True, "jobs": await gateway.get_status_rows()}

    @app.post("/cron/{job_id}")
    async def cron_endpoint(
        job_id: str,
        payload: dict[str, Any] = Body(default={}),  # type: ignore[misc]
        authorization: str = Header(default=""),
        x_cron_secret: str = Header(default=""),
        secret: str = Query(default=""),
    ):
        if not gateway.has_job(job_id):
            return JSONResponse({"ok": False, "error": f"unknown job: {job_id}"}, status_code=404)
        return await _run_cron(job_id, authorization, x_cron_secret, secret, payload)

    @app.post("/events/{owner_id}")
    async def event_endpoint(
        owner_id: str,
        payload: dict[str, Any] = Body(default={}),  # type: ignore[misc]
        authorization: str = Header(default=""),
        x_cron_secret: str = Header(default=""),
    ):
        if not cron_authorized(authorization, x_cron_secret):
            return _unauthorized()
        trigger_kind = str(payload.get("triggerKind") or "").strip()
        if not trigger_kind:
            return JSONResponse({"ok": False, "error": "missing triggerKind"}, status_code=400)
        results = await runtime.engine.run_for_event(
            owner_id,
            trigger_kind,
            message=payload.get("message"),
            contact=payload.get("contact"),
            event=payload.get("event"),
        )
        return {"ok": True, "runs": [result.to_dict() for result in results if result.matched]}

    @app.post("/webhooks/{token}/{webhook_key}")
    async def inbound_webhook_endpoint(
        token: str,
        webhook_key: str,
        payload: dict[str, Any] = Body(default={}),  # type: ignore[misc]
    ):
        owner_id = await runtime.collaborators.directory.find_owner_by_webhook_token(token)
        if owner_id is None:
            log.info("Inbound webhook with unknown token ignored")
            return {"ok": True, "matched": 0}
        contact = payload.get("contact") if isinstance(payload.get("contact"), dict) else None
        results = await runtime.engine.run_for_event(
            owner_id,
            "inbound_webhook",
            message=payload.get("message"),
            contact=contact,
            event={"webhookKey": webhook_key, "payload": payload},
        )
        return {"ok": True, "matched": sum(1 for result in results if result.matched)}

    @app.get("/owners/{owner_id}/webhook-token")
    async def webhook_token_endpoint(
        owner_id: str,
        authorization: str = Header(default=""),
        x_cron_secret: str = Header(default=""),
    ):
        if not cron_authorized(authorization, x_cron_secret):
            return _unauthorized()
        token = await runtime.collaborators.directory.get_webhook_token(owner_id)
        return {"ok": True, "token": token, "path": f"/webhooks/{token}/{{key}}"}

    @app.post("/bookings/{owner_id}/{booking_id}/follow-ups")
    async def schedule_follow_ups_endpoint(
        owner_id: str,
        booking_id: str,
        payload: dict[str, Any] = Body(default={}),  # type: ignore[misc]
        authorization: str = Header(default=""),
        x_cron_secret: str = Header(default=""),
    ):
        if not cron_authorized(authorization, x_cron_secret):
            return _unauthorized()
        calendar_id = str(payload.get("calendarId") or "").strip() or None
        result = await runtime.scheduler.schedule_for_booking(owner_id, booking_id, calendar_id)
        return result.to_dict()

    @app.delete("/bookings/{owner_id}/{booking_id}/follow-ups")
    async def cancel_follow_ups_endpoint(
        owner_id: str,
        booking_id: str,
        authorization: str = Header(default=""),
        x_cron_secret: str = Header(default=""),
    ):
        if not cron_authorized(authorization, x_cron_secret):
            return _unauthorized()
        canceled = await runtime.scheduler.cancel_for_booking(owner_id, booking_id)
        return {"ok": True, "canceled": canceled}

    @app.get("/owners/{owner_id}/follow-ups")
    async def follow_up_queue_endpoint(
        owner_id: str,
        limit: int = Query(default=60),
        authorization: str = Header(default=""),
        x_cron_secret: str = Header(default=""),
    ):
        if not cron_authorized(authorization, x_cron_secret):
            return _unauthorized()
        items = await runtime.scheduler.list_queue(owner_id, limit)
        return {"ok": True, "queue": [item.to_dict() for item in items]}


__all__ = [
    "SweepJob",
    "SweepJobState",
    "SweepGateway",
    "cron_authorized",
    "attach_gateway_routes",
]
