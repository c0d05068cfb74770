import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from contacts import (
    SqliteContactStore,
    looks_like_email,
    looks_like_phone,
    normalize_name_key,
    normalize_phone,
)
from database import Database

OWNER = "owner_1"


class TestNormalization(unittest.TestCase):
    def test_normalize_phone(self):
        self.assertEqual(normalize_phone("(555) 123-4567"), "+15551234567")
        self.assertEqual(normalize_phone("1-555-123-4567"), "+15551234567")
        self.assertEqual(normalize_phone("+44 20 7946 0958"), "+442079460958")
        self.assertIsNone(normalize_phone("12345"))
        self.assertIsNone(normalize_phone(""))

    def test_name_key(self):
        self.assertEqual(normalize_name_key("  Ada   LOVELACE!! "), "ada lovelace")
        self.assertEqual(normalize_name_key("***"), "unknown")

    def test_sender_shapes(self):
        self.assertTrue(looks_like_email("ada@example.com"))
        self.assertFalse(looks_like_email("+15551234567"))
        self.assertTrue(looks_like_phone("+1 (555) 123-4567"))
        self.assertFalse(looks_like_phone("ada@example.com"))


class TestContactStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = Database(":memory:")
        self.db.initialize()
        self.store = SqliteContactStore(self.db)

    def tearDown(self):
        self.db.close()

    async def test_two_matching_keys_reuse_the_contact(self):
        first = await self.store.find_or_create(OWNER, "Ada Lovelace", "ada@example.com", None)
        again = await self.store.find_or_create(OWNER, "ada lovelace", "ADA@example.com", "555-123-4567")

        self.assertEqual(first, again)
        contact = await self.store.get_by_id(OWNER, first)
        self.assertEqual(contact.phone, "+15551234567")

    async def test_single_matching_key_creates_a_new_contact(self):
        first = await self.store.find_or_create(OWNER, "Ada", "ada@example.com", None)
        other = await self.store.find_or_create(OWNER, "Ada", "ada.l@example.com", None)
        self.assertNotEqual(first, other)

    async def test_contacts_are_scoped_per_owner(self):
        mine = await self.store.find_or_create(OWNER, "Ada Lovelace", "ada@example.com", None)
        theirs = await self.store.find_or_create("owner_2", "Ada Lovelace", "ada@example.com", None)

        self.assertNotEqual(mine, theirs)
        self.assertIsNone(await self.store.get_by_id("owner_2", mine))

    async def test_blank_name_is_rejected(self):
        self.assertIsNone(await self.store.find_or_create(OWNER, "   ", "ada@example.com", None))

    async def test_tags_newest_first(self):
        tag_id = self.store.create_tag(OWNER, "VIP")
        first = await self.store.find_or_create(OWNER, "First", None, "+15550000001")
        second = await self.store.find_or_create(OWNER, "Second", None, "+15550000002")
        self.db.execute(
            "INSERT INTO contact_tag_assignments (owner_id, contact_id, tag_id, created_at) VALUES (?, ?, ?, ?)",
            (OWNER, first, tag_id, "2026-03-01T00:00:00.000Z"),
        )
        self.db.execute(
            "INSERT INTO contact_tag_assignments (owner_id, contact_id, tag_id, created_at) VALUES (?, ?, ?, ?)",
            (OWNER, second, tag_id, "2026-03-02T00:00:00.000Z"),
        )

        self.assertEqual(await self.store.find_contacts_by_tag(OWNER, tag_id), [second])
        self.assertEqual(await self.store.find_contacts_by_tag(OWNER, tag_id, limit=5), [second, first])
        self.assertFalse(await self.store.assign_tag(OWNER, first, tag_id))
        self.assertFalse(await self.store.assign_tag(OWNER, first, "tag_missing"))

    async def test_lead_links(self):
        self.db.execute(
            "INSERT INTO leads (id, owner_id, created_at) VALUES ('lead_1', ?, '2026-03-01T00:00:00.000Z')",
            (OWNER,),
        )
        contact_id = await self.store.find_or_create(OWNER, "Ada Lovelace", "ada@example.com", None)

        self.assertIsNone(await self.store.get_linked_contact(OWNER, "lead_1"))
        await self.store.link_contact(OWNER, "lead_1", contact_id)
        self.assertEqual(await self.store.get_linked_contact(OWNER, "lead_1"), contact_id)
        self.assertTrue(await self.store.set_assignee(OWNER, "lead_1", "u_1"))
        self.assertFalse(await self.store.set_assignee(OWNER, "lead_missing", "u_1"))


if __name__ == "__main__":
    unittest.main()
