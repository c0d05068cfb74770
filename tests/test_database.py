import sqlite3
import sys
import tempfile
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import Database

SLUG = "follow-up"


class TestListDocuments(unittest.TestCase):
    def setUp(self):
        self.db = Database(":memory:")
        self.db.initialize()
        for owner_id in ("owner_a", "owner_b", "owner_c"):
            self.db.put_document(owner_id, SLUG, {"owner": owner_id})

    def tearDown(self):
        self.db.close()

    def owners(self, limit):
        return [owner_id for owner_id, _ in self.db.list_documents(SLUG, limit)]

    def test_consecutive_listings_rotate_through_every_owner(self):
        first = self.owners(2)
        second = self.owners(2)

        self.assertEqual(len(first), 2)
        self.assertEqual(set(first) | set(second), {"owner_a", "owner_b", "owner_c"})
        self.assertNotIn(second[0], first)

    def test_recently_updated_owner_does_not_jump_the_queue(self):
        self.assertEqual(self.owners(1), ["owner_a"])
        self.db.put_document("owner_c", SLUG, {"owner": "owner_c", "touched": True})

        self.assertEqual(self.owners(1), ["owner_b"])
        self.assertEqual(self.owners(1), ["owner_c"])
        self.assertEqual(self.owners(1), ["owner_a"])

    def test_other_slugs_are_not_listed(self):
        self.db.put_document("owner_a", "automations", {"automations": []})
        self.assertEqual(sorted(self.owners(10)), ["owner_a", "owner_b", "owner_c"])


class TestSchemaUpgrade(unittest.TestCase):
    def test_older_tables_gain_new_columns(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "portal.db"
            conn = sqlite3.connect(path)
            conn.executescript(
                """
                CREATE TABLE service_data (
                    owner_id TEXT NOT NULL,
                    service_slug TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (owner_id, service_slug)
                );
                INSERT INTO service_data VALUES ('owner_a', 'follow-up', '{}', '2026-03-01T00:00:00.000Z');
                """
            )
            conn.close()

            db = Database(path)
            db.initialize()
            try:
                self.assertEqual(db.list_documents(SLUG, 5), [("owner_a", {})])
                row = db.query_one("SELECT sweep_seq FROM service_data WHERE owner_id = 'owner_a'")
                self.assertEqual(row["sweep_seq"], 1)
                columns = {row["name"] for row in db.query("PRAGMA table_info(bookings)")}
                self.assertIn("contact_id", columns)
            finally:
                db.close()


if __name__ == "__main__":
    unittest.main()
