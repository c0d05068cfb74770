import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import config
from automation_actions import ActionDispatcher, ExecutionContext
from automation_graph import parse_node
from automation_triggers import TriggerEvent
from collaborators import Contact, TenantProfile
from portal_fakes import OWNER, action, add_calendar, add_member, add_tenant, make_runtime

NOW = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)


class ActionTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.runtime = make_runtime()
        add_tenant(self.runtime.db, review_link="https://g.page/acme/review")
        self.dispatcher = ActionDispatcher(self.runtime.collaborators)
        self.c = self.runtime.collaborators

    def tearDown(self):
        self.runtime.close()

    def context(self, *, message=None, contact=None, event=None, **kwargs) -> ExecutionContext:
        return ExecutionContext(
            owner_id=OWNER,
            trigger_kind="inbound_sms",
            event=TriggerEvent.build(message=message, event=event),
            profile=TenantProfile(
                owner_id=OWNER,
                owner_name="Olivia Owner",
                owner_email="olivia@acme.test",
                owner_phone="+15550002222",
                business_name="Acme Dental",
            ),
            now=NOW,
            contact=contact or Contact(id="ct_1", name="Ada Lovelace", email="ada@example.com", phone="+15551230000"),
            **kwargs,
        )

    async def dispatch(self, node_raw, ctx=None):
        return await self.dispatcher.dispatch(parse_node(node_raw), ctx or self.context())


class TestWebhookAction(ActionTestCase):
    async def test_default_envelope(self):
        outcome = await self.dispatch(action(
            "w1", "send_webhook", webhookUrl="https://hooks.example.com/{contact.id}",
        ), self.context(message={"from": "+15551230000", "body": "hi"}, event={"tagId": "vip"}))

        self.assertEqual(outcome.status, "success")
        url, payload = self.c.webhooks.posts[0]
        self.assertEqual(url, "https://hooks.example.com/ct_1")
        self.assertEqual(payload["ownerId"], OWNER)
        self.assertEqual(payload["triggerKind"], "inbound_sms")
        self.assertEqual(payload["contact"]["name"], "Ada Lovelace")
        self.assertEqual(payload["message"]["body"], "hi")
        self.assertEqual(payload["event"], {"tagId": "vip"})

    async def test_custom_body_is_json_escaped(self):
        outcome = await self.dispatch(action(
            "w1", "send_webhook",
            webhookUrl="https://hooks.example.com/in",
            webhookBody='{"who": "{contact.name}", "text": "{message.body}"}',
        ), self.context(message={"body": 'She said "call me"\nASAP'}))

        self.assertEqual(outcome.status, "success")
        self.assertEqual(
            self.c.webhooks.posts[0][1],
            {"who": "Ada Lovelace", "text": 'She said "call me"\nASAP'},
        )

    async def test_invalid_custom_body_falls_back_to_envelope(self):
        outcome = await self.dispatch(action(
            "w1", "send_webhook", webhookUrl="https://hooks.example.com/in", webhookBody="not json {contact.name}",
        ))

        self.assertIn("body template invalid", outcome.detail)
        self.assertEqual(self.c.webhooks.posts[0][1]["ownerId"], OWNER)

    async def test_invalid_url_is_skipped(self):
        for url in ("ftp://hooks.example.com", "hooks.example.com/path", ""):
            outcome = await self.dispatch(action("w1", "send_webhook", webhookUrl=url))
            self.assertEqual(outcome.status, "skipped")
        self.assertEqual(self.c.webhooks.posts, [])


class TestMessagingActions(ActionTestCase):
    async def test_sms_recipient_modes(self):
        cases = [
            ({}, "+15559990000"),
            ({"smsTo": "event_contact"}, "+15551230000"),
            ({"smsTo": "internal_notification"}, "+15550002222"),
            ({"smsTo": "custom", "smsToNumber": " {owner.phone} "}, "+15550002222"),
        ]
        for cfg, expected in cases:
            self.c.sms.sent.clear()
            outcome = await self.dispatch(
                action("s1", "send_sms", body="Hi {contact.firstName}", **cfg),
                self.context(message={"from": "+15559990000"}),
            )
            self.assertEqual(outcome.status, "success", msg=cfg)
            self.assertEqual(self.c.sms.sent, [(OWNER, expected, "Hi Ada")])

    async def test_sms_without_recipient_is_skipped(self):
        outcome = await self.dispatch(action("s1", "send_sms", body="Hi"))
        self.assertEqual(outcome.status, "skipped")
        self.assertEqual(self.c.sms.sent, [])

    async def test_sms_blank_body_uses_default(self):
        await self.dispatch(action("s1", "send_sms", smsTo="event_contact", body="  "))
        self.assertEqual(self.c.sms.sent[0][2], config.DEFAULT_SMS_BODY)

    async def test_email_defaults(self):
        outcome = await self.dispatch(action("e1", "send_email", body="Lead: {contact.email}"))

        self.assertEqual(outcome.status, "success")
        sent = self.c.email.sent[0]
        self.assertEqual(sent["to"], "olivia@acme.test")
        self.assertEqual(sent["subject"], config.DEFAULT_EMAIL_SUBJECT)
        self.assertEqual(sent["text"], "Lead: ada@example.com")
        self.assertEqual(sent["from_name"], "Acme Dental")

    async def test_email_to_inbound_sender_requires_an_address(self):
        outcome = await self.dispatch(
            action("e1", "send_email", emailTo="inbound_sender", body="x"),
            self.context(message={"from": "+15559990000"}),
        )
        self.assertEqual(outcome.status, "skipped")

    async def test_review_request_appends_link(self):
        outcome = await self.dispatch(action("r1", "send_review_request", body="Thanks {contact.firstName}!"))

        self.assertEqual(outcome.status, "success")
        self.assertEqual(
            self.c.sms.sent,
            [(OWNER, "+15551230000", "Thanks Ada! https://g.page/acme/review")],
        )

    async def test_booking_link_missing_is_skipped(self):
        outcome = await self.dispatch(action("b1", "send_booking_link"))
        self.assertEqual(outcome.status, "skipped")
        self.assertEqual(outcome.detail, "no booking link configured")


class TestPeopleActions(ActionTestCase):
    async def test_task_for_inactive_member_is_unassigned(self):
        add_member(self.runtime.db, "u_gone", email="gone@acme.test", active=False)

        outcome = await self.dispatch(action(
            "t1", "create_task", taskAssignee="member", assigneeUserId="u_gone", taskTitle="",
        ))

        self.assertEqual(outcome.status, "success")
        row = self.runtime.db.query_one("SELECT title, assigned_to_user_id, contact_id FROM tasks")
        self.assertEqual(row["title"], "Follow up with Ada Lovelace")
        self.assertIsNone(row["assigned_to_user_id"])
        self.assertEqual(row["contact_id"], "ct_1")

    async def test_task_for_all_members(self):
        add_member(self.runtime.db, "u_1", email="a@acme.test")
        add_member(self.runtime.db, "u_2", email="b@acme.test")
        add_member(self.runtime.db, "u_3", email="c@acme.test", active=False)

        outcome = await self.dispatch(action("t1", "create_task", taskAssignee="all_members", taskTitle="Call"))

        self.assertEqual(outcome.detail, "created 2 task(s)")
        rows = self.runtime.db.query("SELECT assigned_to_user_id FROM tasks ORDER BY assigned_to_user_id")
        self.assertEqual([row["assigned_to_user_id"] for row in rows], ["u_1", "u_2"])

    async def test_assign_lead_from_calendar_then_text_assigned_lead(self):
        add_member(self.runtime.db, "u_1", email="Sam@Acme.test", phone="+15554440000")
        add_calendar(self.runtime.db, "cal_1", emails=["sam@acme.test"])
        self.runtime.db.execute(
            "INSERT INTO leads (id, owner_id, created_at) VALUES ('lead_1', ?, '2026-03-01T00:00:00.000Z')",
            (OWNER,),
        )
        ctx = self.context(event={"leadId": "lead_1", "calendarId": "cal_1"})

        assigned = await self.dispatch(action("l1", "assign_lead", leadAssignee="assigned_lead"), ctx)
        texted = await self.dispatch(action("s1", "send_sms", smsTo="assigned_lead", body="New lead"), ctx)

        self.assertEqual(assigned.status, "success")
        self.assertEqual(ctx.assignee_user_id, "u_1")
        row = self.runtime.db.query_one("SELECT assigned_to_user_id FROM leads WHERE id = 'lead_1'")
        self.assertEqual(row["assigned_to_user_id"], "u_1")
        self.assertEqual(texted.status, "success")
        self.assertEqual(self.c.sms.sent, [(OWNER, "+15554440000", "New lead")])

    async def test_assign_lead_without_valid_member_is_skipped(self):
        outcome = await self.dispatch(action("l1", "assign_lead", leadAssignee="member", assigneeUserId="nobody"))
        self.assertEqual(outcome.status, "skipped")


class TestContactActions(ActionTestCase):
    async def test_find_contact_by_fields_creates_and_switches_context(self):
        ctx = self.context(message={"body": "Name: Grace Hopper"}, contact=Contact())

        outcome = await self.dispatch(action(
            "f1", "find_contact", contactName="Grace Hopper", contactEmail="grace@example.com",
        ), ctx)

        self.assertEqual(outcome.status, "success")
        self.assertTrue(ctx.contact.id.startswith("ct_"))
        self.assertEqual(ctx.contact.email, "grace@example.com")
        self.assertEqual(ctx.variables()["contact.firstName"], "Grace")

    async def test_find_contact_with_nothing_to_match(self):
        outcome = await self.dispatch(action("f1", "find_contact"), self.context(contact=Contact()))
        self.assertEqual(outcome.status, "skipped")

    async def test_update_contact(self):
        store = self.c.contacts
        contact_id = await store.find_or_create(OWNER, "Ada Lovelace", "ada@example.com", None)
        ctx = self.context(contact=await store.get_by_id(OWNER, contact_id))

        outcome = await self.dispatch(action("u1", "update_contact", contactPhone="(555) 123-0000"), ctx)

        self.assertEqual(outcome.status, "success")
        self.assertEqual(ctx.contact.phone, "+15551230000")

    async def test_add_tag_requires_contact(self):
        tag_id = self.c.contacts.create_tag(OWNER, "VIP")
        skipped = await self.dispatch(action("g1", "add_tag", tagId=tag_id), self.context(contact=Contact()))
        self.assertEqual(skipped.status, "skipped")

        contact_id = await self.c.contacts.find_or_create(OWNER, "Ada Lovelace", "ada@example.com", None)
        added = await self.dispatch(action("g1", "add_tag", tagId=tag_id), self.context(contact=Contact(id=contact_id)))
        again = await self.dispatch(action("g1", "add_tag", tagId=tag_id), self.context(contact=Contact(id=contact_id)))
        self.assertIn("added", added.detail)
        self.assertIn("already present", again.detail)

    async def test_trigger_service(self):
        self.runtime.db.execute(
            "INSERT INTO nurture_campaigns (id, owner_id, name, created_at) VALUES ('nc_1', ?, 'Spring', '2026-03-01')",
            (OWNER,),
        )
        enrolled = await self.dispatch(action("ts", "trigger_service", serviceSlug="nurture-campaigns"))
        unknown = await self.dispatch(action("ts", "trigger_service", serviceSlug="carrier-pigeon"))

        self.assertEqual(enrolled.detail, "enrolled in 1 campaign(s)")
        self.assertEqual(unknown.status, "skipped")


if __name__ == "__main__":
    unittest.main()
