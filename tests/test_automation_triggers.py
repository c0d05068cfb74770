import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from automation_graph import ScheduleSpec, TriggerConfig, parse_automations_document
from automation_triggers import (
    TriggerEvent,
    add_months,
    most_recent_cron_occurrence,
    most_recent_specific_occurrence,
    schedule_is_due,
    schedule_state_key,
    select_trigger_nodes,
    trigger_matches,
)

UTC = timezone.utc


class TestTriggerEvent(unittest.TestCase):
    def test_build_normalizes_inputs(self):
        event = TriggerEvent.build(
            message={"from": " +15551230000 ", "body": None},
            contact={"name": "Ada", "email": ["not", "a", "string"]},
            event={"tagId": "vip", "bookingId": "bk_1", "payload": {"x": 1}},
        )
        self.assertEqual(event.message, {"from": "+15551230000", "to": "", "body": ""})
        self.assertEqual(event.contact.name, "Ada")
        self.assertEqual(event.contact.email, "")
        self.assertEqual(event.event_dict(), {"tagId": "vip", "bookingId": "bk_1", "payload": {"x": 1}})

    def test_build_tolerates_garbage(self):
        event = TriggerEvent.build(message="nope", contact=None, event=[1, 2])
        self.assertTrue(event.contact.is_blank())
        self.assertEqual(event.event_dict(), {})


class TestTriggerMatching(unittest.TestCase):
    def test_tag_filter(self):
        cfg = TriggerConfig(trigger_kind="tag_added", tag_id="vip")
        self.assertTrue(trigger_matches(cfg, "tag_added", TriggerEvent(tag_id="vip")))
        self.assertFalse(trigger_matches(cfg, "tag_added", TriggerEvent(tag_id="other")))
        self.assertFalse(trigger_matches(cfg, "tag_added", TriggerEvent()))
        self.assertTrue(trigger_matches(TriggerConfig(trigger_kind="tag_added"), "tag_added", TriggerEvent()))

    def test_webhook_key_filter(self):
        cfg = TriggerConfig(trigger_kind="inbound_webhook", webhook_key="zapier")
        self.assertTrue(trigger_matches(cfg, "inbound_webhook", TriggerEvent(webhook_key="zapier")))
        self.assertFalse(trigger_matches(cfg, "inbound_webhook", TriggerEvent(webhook_key="make")))

    def test_kind_must_match(self):
        cfg = TriggerConfig(trigger_kind="inbound_sms")
        self.assertFalse(trigger_matches(cfg, "inbound_email", TriggerEvent()))

    def test_trigger_node_id_restricts_selection(self):
        document = parse_automations_document({"version": 2, "automations": [{
            "id": "a1",
            "nodes": [
                {"id": "t1", "type": "trigger", "config": {"kind": "trigger", "triggerKind": "scheduled_time"}},
                {"id": "t2", "type": "trigger", "config": {"kind": "trigger", "triggerKind": "scheduled_time"}},
            ],
            "edges": [],
        }]})
        automation = document.automations[0]
        self.assertEqual(len(select_trigger_nodes(automation, "scheduled_time", TriggerEvent())), 2)
        picked = select_trigger_nodes(automation, "scheduled_time", TriggerEvent(trigger_node_id="t2"))
        self.assertEqual([node.id for node in picked], ["t2"])
        self.assertEqual(schedule_state_key("a1", "t2"), "a1:t2")


class TestAddMonths(unittest.TestCase):
    def test_clamps_to_month_end(self):
        self.assertEqual(add_months(datetime(2026, 1, 31, tzinfo=UTC), 1), datetime(2026, 2, 28, tzinfo=UTC))
        self.assertEqual(add_months(datetime(2026, 3, 31, tzinfo=UTC), -1), datetime(2026, 2, 28, tzinfo=UTC))

    def test_crosses_year(self):
        self.assertEqual(add_months(datetime(2026, 11, 15, 9, 30, tzinfo=UTC), 3), datetime(2027, 2, 15, 9, 30, tzinfo=UTC))


class TestScheduleDue(unittest.TestCase):
    def setUp(self):
        self.now = datetime(2026, 3, 3, 10, 0, tzinfo=UTC)  # Tuesday

    def test_every_minutes(self):
        spec = ScheduleSpec(mode="every", every_value=30, every_unit="minutes")
        self.assertTrue(schedule_is_due(spec, None, self.now))
        self.assertFalse(schedule_is_due(spec, self.now - timedelta(minutes=10), self.now))
        self.assertTrue(schedule_is_due(spec, self.now - timedelta(minutes=30), self.now))

    def test_every_months(self):
        spec = ScheduleSpec(mode="every", every_value=1, every_unit="months")
        self.assertFalse(schedule_is_due(spec, datetime(2026, 2, 10, tzinfo=UTC), self.now))
        self.assertTrue(schedule_is_due(spec, datetime(2026, 2, 3, 10, 0, tzinfo=UTC), self.now))

    def test_specific_daily(self):
        spec = ScheduleSpec(mode="specific", specific_kind="daily", specific_time="09:00")
        self.assertTrue(schedule_is_due(spec, None, self.now))
        self.assertFalse(schedule_is_due(spec, datetime(2026, 3, 3, 9, 0, tzinfo=UTC), self.now))
        self.assertTrue(schedule_is_due(spec, datetime(2026, 3, 2, 9, 0, tzinfo=UTC), self.now))

        early = datetime(2026, 3, 3, 8, 0, tzinfo=UTC)
        self.assertFalse(schedule_is_due(spec, datetime(2026, 3, 2, 9, 0, tzinfo=UTC), early))

    def test_specific_weekly_uses_sunday_zero(self):
        spec = ScheduleSpec(mode="specific", specific_kind="weekly", specific_time="09:00", specific_weekday=1)
        self.assertEqual(
            most_recent_specific_occurrence(spec, self.now),
            datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
        )

    def test_specific_monthly_clamps_short_months(self):
        spec = ScheduleSpec(mode="specific", specific_kind="monthly", specific_time="09:00", specific_day_of_month=31)
        now = datetime(2026, 2, 28, 10, 0, tzinfo=UTC)
        self.assertEqual(most_recent_specific_occurrence(spec, now), datetime(2026, 2, 28, 9, 0, tzinfo=UTC))
        before = datetime(2026, 2, 28, 8, 0, tzinfo=UTC)
        self.assertEqual(most_recent_specific_occurrence(spec, before), datetime(2026, 1, 31, 9, 0, tzinfo=UTC))

    def test_cron(self):
        spec = ScheduleSpec(mode="cron", cron="0 * * * *")
        now = datetime(2026, 3, 3, 10, 30, tzinfo=UTC)
        self.assertFalse(schedule_is_due(spec, datetime(2026, 3, 3, 10, 5, tzinfo=UTC), now))
        self.assertTrue(schedule_is_due(spec, datetime(2026, 3, 3, 9, 59, tzinfo=UTC), now))

    def test_cron_respects_timezone(self):
        spec = ScheduleSpec(mode="cron", cron="0 9 * * *", timezone="America/New_York")
        now = datetime(2026, 3, 3, 14, 30, tzinfo=UTC)
        self.assertEqual(most_recent_cron_occurrence(spec, now), datetime(2026, 3, 3, 14, 0, tzinfo=UTC))

    def test_invalid_cron_never_fires(self):
        spec = ScheduleSpec(mode="cron", cron="not a cron")
        self.assertFalse(schedule_is_due(spec, None, self.now))
        self.assertFalse(schedule_is_due(ScheduleSpec(mode="cron", cron=""), None, self.now))


if __name__ == "__main__":
    unittest.main()
