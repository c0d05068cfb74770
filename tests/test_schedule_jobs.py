import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from automations import RunResult
from jobs.schedule_jobs import process_due_scheduled_automations
from portal_fakes import (
    OWNER,
    FixedClock,
    action,
    add_tenant,
    automation,
    edge,
    load_automations_raw,
    make_runtime,
    save_automations,
    trigger,
)


def _hourly(automation_id: str = "hourly", node_id: str = "t1") -> dict:
    return automation(
        automation_id,
        [
            trigger(node_id, "scheduled_time", scheduleMode="every", everyValue=60, everyUnit="minutes"),
            action("a1", "send_sms", smsTo="internal_notification", body="Tick {now.time}"),
        ],
        [edge(node_id, "a1")],
    )


class TestScheduledSweep(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FixedClock(datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc))
        self.runtime = make_runtime(self.clock)
        add_tenant(self.runtime.db)
        self.sms = self.runtime.collaborators.sms

    def tearDown(self):
        self.runtime.close()

    async def test_fires_once_per_interval(self):
        save_automations(self.runtime, [_hourly()])

        first = await process_due_scheduled_automations(self.runtime.engine)
        self.clock.advance(minutes=30)
        second = await process_due_scheduled_automations(self.runtime.engine)
        self.clock.advance(minutes=30)
        third = await process_due_scheduled_automations(self.runtime.engine)

        self.assertEqual([first["fired"], second["fired"], third["fired"]], [1, 0, 1])
        self.assertEqual([body for _, _, body in self.sms.sent], ["Tick 10:00", "Tick 11:00"])
        state = load_automations_raw(self.runtime)["scheduleState"]
        self.assertEqual(state, {"hourly:t1": "2026-03-03T11:00:00.000Z"})

    async def test_only_schedule_state_is_written_back(self):
        save_automations(self.runtime, [_hourly()], customVariables={"promo": "SPRING"}, extra="keep")

        await process_due_scheduled_automations(self.runtime.engine)

        raw = load_automations_raw(self.runtime)
        self.assertEqual(raw["extra"], "keep")
        self.assertEqual(raw["customVariables"], {"promo": "SPRING"})
        self.assertEqual(raw["automations"][0]["id"], "hourly")

    async def test_per_owner_cap(self):
        save_automations(self.runtime, [_hourly("a"), _hourly("b"), _hourly("c")])

        totals = await process_due_scheduled_automations(self.runtime.engine, per_owner_max_runs=2)

        self.assertEqual(totals, {"owners": 1, "fired": 2, "failed": 0})
        self.assertEqual(len(load_automations_raw(self.runtime)["scheduleState"]), 2)

    async def test_crashing_run_counts_failed_and_sweep_continues(self):
        save_automations(self.runtime, [_hourly("a"), _hourly("b")])
        crash = AsyncMock(side_effect=[
            RuntimeError("graph exploded"),
            RunResult(automation_id="b", trigger_kind="scheduled_time"),
        ])

        with patch.object(self.runtime.engine, "run", crash):
            totals = await process_due_scheduled_automations(self.runtime.engine)

        self.assertEqual(totals, {"owners": 1, "fired": 2, "failed": 1})
        self.assertEqual(crash.await_count, 2)
        state = load_automations_raw(self.runtime)["scheduleState"]
        self.assertEqual(sorted(state), ["a:t1", "b:t1"])

    async def test_each_trigger_node_fires_only_its_own_walk(self):
        graph = automation(
            "two",
            [
                trigger("daily", "scheduled_time", scheduleMode="specific", specificKind="daily", specificTime="09:00"),
                trigger("never", "scheduled_time", scheduleMode="cron", cron="0 0 1 1 *"),
                action("a1", "send_sms", smsTo="internal_notification", body="daily"),
                action("a2", "send_sms", smsTo="internal_notification", body="yearly"),
            ],
            [edge("daily", "a1"), edge("never", "a2")],
        )
        save_automations(self.runtime, [graph], scheduleState={"two:never": "2026-01-01T00:00:00.000Z"})

        totals = await process_due_scheduled_automations(self.runtime.engine)

        self.assertEqual(totals["fired"], 1)
        self.assertEqual([body for _, _, body in self.sms.sent], ["daily"])


if __name__ == "__main__":
    unittest.main()
