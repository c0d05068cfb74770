"""Graph walk tests for AutomationEngine against the sqlite stores."""
from __future__ import annotations

import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from automation_graph import parse_automation
from automation_triggers import TriggerEvent
from automations import WalkReason
from channels.base import ProviderError
from portal_fakes import (
    OWNER,
    action,
    add_tenant,
    automation,
    condition,
    edge,
    make_runtime,
    note,
    save_automations,
    trigger,
)

SENDER = "+15551230000"


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.runtime = make_runtime()
        add_tenant(self.runtime.db)
        self.sms = self.runtime.collaborators.sms

    def tearDown(self):
        self.runtime.close()

    async def inbound_sms(self, body: str = "hello", **kwargs):
        return await self.runtime.engine.run_for_event(
            OWNER,
            "inbound_sms",
            message={"from": SENDER, "to": "+15550001111", "body": body},
            **kwargs,
        )


class TestEngineWalk(EngineTestCase):
    async def test_reply_to_inbound_sender_with_resolved_contact(self):
        save_automations(self.runtime, [automation(
            "reply",
            [trigger("t1", "inbound_sms"), action("a1", "send_sms", body="Hi {contact.firstName} from {business.name}")],
            [edge("t1", "a1")],
        )])

        results = await self.inbound_sms(contact={"name": "Ada Lovelace"})

        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].matched)
        self.assertTrue(results[0].contact_id.startswith("ct_"))
        self.assertEqual(self.sms.sent, [(OWNER, SENDER, "Hi Ada from Acme Dental")])

    async def test_other_trigger_kinds_do_not_run(self):
        save_automations(self.runtime, [automation(
            "email-only",
            [trigger("t1", "inbound_email"), action("a1", "send_sms", body="nope")],
            [edge("t1", "a1")],
        )])

        results = await self.inbound_sms()

        self.assertFalse(results[0].matched)
        self.assertEqual(self.sms.sent, [])

    async def test_tenant_without_document_runs_nothing(self):
        self.assertEqual(await self.inbound_sms(), [])

    async def test_self_loop_stops_at_visit_limit(self):
        save_automations(self.runtime, [automation(
            "loop",
            [trigger("t1", "inbound_sms"), action("a1", "send_sms", body="again")],
            [edge("t1", "a1"), edge("a1", "a1")],
        )])

        results = await self.inbound_sms()

        walk = results[0].walks[0]
        self.assertEqual(walk.reason, WalkReason.VISIT_LIMIT_EXCEEDED)
        self.assertEqual(len(self.sms.sent), 5)

    async def test_step_budget_bounds_long_cycles(self):
        runtime = make_runtime(max_steps=7, max_node_visits=100)
        self.addCleanup(runtime.close)
        graph = parse_automation(automation(
            "cycle",
            [trigger("t1", "new_lead"), note("n1"), note("n2")],
            [edge("t1", "n1"), edge("n1", "n2"), edge("n2", "n1")],
        ))

        result = await runtime.engine.run(OWNER, graph, "new_lead", TriggerEvent())

        self.assertEqual(result.walks[0].reason, WalkReason.STEP_BUDGET_EXCEEDED)
        self.assertEqual(result.walks[0].steps, 7)

    async def test_every_matching_trigger_starts_its_own_walk(self):
        save_automations(self.runtime, [automation(
            "two-entries",
            [
                trigger("t1", "inbound_sms"),
                trigger("t2", "inbound_sms"),
                action("a1", "send_sms", body="one"),
                action("a2", "send_sms", body="two"),
            ],
            [edge("t1", "a1"), edge("t2", "a2")],
        )])

        results = await self.inbound_sms()

        self.assertEqual(len(results[0].walks), 2)
        self.assertEqual(sorted(body for _, _, body in self.sms.sent), ["one", "two"])

    async def test_condition_routes_true_and_false_ports(self):
        save_automations(self.runtime, [automation(
            "router",
            [
                trigger("t1", "inbound_sms"),
                condition("c1", "message.body", "contains", "price"),
                action("yes", "send_sms", body="Pricing is on our site"),
                action("no", "send_sms", body="Thanks!"),
            ],
            [edge("t1", "c1"), edge("c1", "yes", "true"), edge("c1", "no", "false")],
        )])

        await self.inbound_sms("What is the PRICE?")
        await self.inbound_sms("hello")

        self.assertEqual([body for _, _, body in self.sms.sent], ["Pricing is on our site", "Thanks!"])

    async def test_failed_action_does_not_stop_the_walk(self):
        self.runtime.collaborators.sms.error = ProviderError("Twilio said no", status_code=400)
        save_automations(self.runtime, [automation(
            "resilient",
            [
                trigger("t1", "inbound_sms"),
                action("a1", "send_sms", body="hi"),
                action("a2", "create_task", taskTitle="Call {contact.name}"),
            ],
            [edge("t1", "a1"), edge("a1", "a2")],
        )])

        results = await self.inbound_sms(contact={"name": "Ada Lovelace"})

        statuses = [outcome.status for outcome in results[0].walks[0].outcomes]
        self.assertEqual(statuses, ["failed", "success"])
        row = self.runtime.db.query_one("SELECT title, assigned_to_user_id FROM tasks")
        self.assertEqual(row["title"], "Call Ada Lovelace")
        self.assertEqual(row["assigned_to_user_id"], OWNER)

    async def test_document_custom_variables_are_available(self):
        save_automations(
            self.runtime,
            [automation(
                "promo",
                [trigger("t1", "inbound_sms"), action("a1", "send_sms", body="Use code {promo}")],
                [edge("t1", "a1")],
            )],
            customVariables={"promo": "SPRING"},
        )

        await self.inbound_sms()

        self.assertEqual(self.sms.sent[0][2], "Use code SPRING")

    async def test_run_by_id(self):
        save_automations(self.runtime, [automation(
            "solo",
            [trigger("t1", "new_lead"), action("a1", "send_sms", smsTo="internal_notification", body="New lead")],
            [edge("t1", "a1")],
        )])

        self.assertIsNone(await self.runtime.engine.run_by_id(OWNER, "missing", "new_lead"))
        result = await self.runtime.engine.run_by_id(OWNER, "solo", "new_lead")

        self.assertTrue(result.matched)
        self.assertEqual(self.sms.sent, [(OWNER, "+15550002222", "New lead")])

    async def test_known_contact_is_linked_to_the_lead(self):
        save_automations(self.runtime, [automation(
            "lead",
            [trigger("t1", "new_lead"), action("a1", "create_task", taskTitle="Call {contact.name}")],
            [edge("t1", "a1")],
        )])
        self.runtime.db.execute(
            "INSERT INTO leads (id, owner_id, created_at) VALUES ('lead_1', ?, '2026-03-01T00:00:00.000Z')",
            (OWNER,),
        )
        contacts = self.runtime.collaborators.contacts
        contact_id = await contacts.find_or_create(OWNER, "Ada Lovelace", "ada@example.com", None)

        results = await self.runtime.engine.run_for_event(
            OWNER, "new_lead", contact={"id": contact_id}, event={"leadId": "lead_1"},
        )

        self.assertEqual(results[0].contact_id, contact_id)
        self.assertEqual(await self.runtime.collaborators.leads.get_linked_contact(OWNER, "lead_1"), contact_id)
        task = self.runtime.db.query_one("SELECT title FROM tasks")
        self.assertEqual(task["title"], "Call Ada Lovelace")


class TestFindContactFanOut(EngineTestCase):
    async def asyncSetUp(self):
        store = self.runtime.collaborators.contacts
        self.tag_id = store.create_tag(OWNER, "VIP")
        self.phones = ["+15557770001", "+15557770002", "+15557770003"]
        for index, phone in enumerate(self.phones):
            contact_id = await store.find_or_create(OWNER, f"Vip {index}", None, phone)
            await store.assign_tag(OWNER, contact_id, self.tag_id)

    def graph(self, mode: str):
        return automation(
            "blast",
            [
                trigger("t1", "inbound_webhook"),
                action("find", "find_contact", tagId=self.tag_id, findMode=mode),
                action("text", "send_sms", smsTo="event_contact", body="Hi {contact.name}"),
            ],
            [edge("t1", "find"), edge("find", "text")],
        )

    async def test_all_mode_fans_out_over_every_tagged_contact(self):
        save_automations(self.runtime, [self.graph("all")])

        results = await self.runtime.engine.run_for_event(OWNER, "inbound_webhook")

        walk = results[0].walks[0]
        self.assertEqual(walk.reason, WalkReason.FANNED_OUT)
        self.assertEqual(len(walk.children), 3)
        self.assertTrue(all(child.depth == 1 for child in walk.children))
        self.assertEqual(sorted(to for _, to, _ in self.sms.sent), self.phones)
        self.assertEqual(results[0].contact_id, "")

    async def test_latest_mode_uses_one_contact(self):
        save_automations(self.runtime, [self.graph("latest")])

        results = await self.runtime.engine.run_for_event(OWNER, "inbound_webhook")

        walk = results[0].walks[0]
        self.assertEqual(walk.reason, WalkReason.COMPLETED)
        self.assertEqual(walk.children, [])
        self.assertEqual(len(self.sms.sent), 1)
        self.assertIn(self.sms.sent[0][1], self.phones)


if __name__ == "__main__":
    unittest.main()
