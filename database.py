import asyncio
import contextlib
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterator

from utils import to_iso, utc_now

log = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def connect(db_path: Path | str) -> sqlite3.Connection:
    """Open a connection shared across worker threads.

    File databases run in WAL mode with a busy timeout.
    """
    target = str(db_path)
    if target != ":memory:" and not target.startswith("file:"):
        target = str(Path(target).expanduser())
    conn = sqlite3.connect(target, check_same_thread=False, timeout=BUSY_TIMEOUT_MS / 1000)
    conn.row_factory = sqlite3.Row
    if target != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    return conn


class Database:
    """Single sqlite file holding tenant documents and the portal tables.

    One connection is shared across worker threads; every statement runs
    under ``_lock`` so callers may use ``asyncio.to_thread`` freely.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def initialize(self):
        if self.conn is not None:
            return
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = connect(self.db_path)
        self._create_tables()
        log.info("Database initialized at %s", self.db_path)

    def close(self):
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS service_data (
                owner_id TEXT NOT NULL,
                service_slug TEXT NOT NULL,
                data_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                sweep_seq INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (owner_id, service_slug)
            );

            CREATE TABLE IF NOT EXISTS tenants (
                owner_id TEXT PRIMARY KEY,
                owner_name TEXT,
                owner_email TEXT,
                owner_phone TEXT,
                business_name TEXT,
                business_email TEXT,
                business_phone TEXT,
                review_link TEXT,
                booking_link TEXT
            );

            CREATE TABLE IF NOT EXISTS webhook_tokens (
                token TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS members (
                owner_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                email TEXT,
                name TEXT,
                phone TEXT,
                active INTEGER DEFAULT 1,
                PRIMARY KEY (owner_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                name_key TEXT NOT NULL,
                email TEXT,
                email_key TEXT,
                phone TEXT,
                phone_key TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_contacts_owner_name ON contacts(owner_id, name_key);
            CREATE INDEX IF NOT EXISTS idx_contacts_owner_email ON contacts(owner_id, email_key);
            CREATE INDEX IF NOT EXISTS idx_contacts_owner_phone ON contacts(owner_id, phone_key);

            CREATE TABLE IF NOT EXISTS contact_tags (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS contact_tag_assignments (
                owner_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                tag_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (owner_id, contact_id, tag_id)
            );
            CREATE INDEX IF NOT EXISTS idx_tag_assignments_tag
                ON contact_tag_assignments(owner_id, tag_id, created_at);

            CREATE TABLE IF NOT EXISTS leads (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                business_name TEXT,
                email TEXT,
                phone TEXT,
                contact_id TEXT,
                assigned_to_user_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'OPEN',
                assigned_to_user_id TEXT,
                contact_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS booking_sites (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL UNIQUE,
                title TEXT,
                time_zone TEXT DEFAULT 'UTC',
                notification_emails TEXT DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS calendars (
                owner_id TEXT NOT NULL,
                id TEXT NOT NULL,
                title TEXT,
                notification_emails TEXT DEFAULT '[]',
                PRIMARY KEY (owner_id, id)
            );

            CREATE TABLE IF NOT EXISTS bookings (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                site_id TEXT,
                calendar_id TEXT,
                status TEXT NOT NULL,
                start_at TEXT NOT NULL,
                end_at TEXT NOT NULL,
                contact_name TEXT,
                contact_email TEXT,
                contact_phone TEXT,
                contact_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_bookings_status_end ON bookings(status, end_at);

            CREATE TABLE IF NOT EXISTS nurture_campaigns (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                first_step_delay_minutes INTEGER DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS nurture_enrollments (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                campaign_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                step_index INTEGER DEFAULT 0,
                next_send_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (campaign_id, contact_id)
            );

            CREATE TABLE IF NOT EXISTS outbound_call_campaigns (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS outbound_call_enrollments (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                campaign_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'QUEUED',
                next_call_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (campaign_id, contact_id)
            );
        """)
        self._add_missing_column("service_data", "sweep_seq", "INTEGER NOT NULL DEFAULT 0")
        self._add_missing_column("bookings", "contact_id", "TEXT")
        self.conn.commit()

    def _add_missing_column(self, table: str, column: str, decl: str):
        columns = {row[1] for row in self.conn.execute(f"PRAGMA table_info({table})")}
        if column not in columns:
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
            log.info("Added column %s.%s", table, column)

    # ------------------------------------------------------------------
    # Statement helpers
    # ------------------------------------------------------------------

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("Database not initialized")
        return self.conn

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchone()

    def execute(self, sql: str, params: tuple | list = ()) -> int:
        with self._lock:
            conn = self._require_conn()
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require_conn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Service documents
    # ------------------------------------------------------------------

    def get_document(self, owner_id: str, service_slug: str) -> Any:
        row = self.query_one(
            "SELECT data_json FROM service_data WHERE owner_id = ? AND service_slug = ?",
            (owner_id, service_slug),
        )
        if row is None:
            return None
        try:
            return json.loads(row["data_json"])
        except (json.JSONDecodeError, TypeError):
            log.warning("Corrupt %s document for owner %s; treating as empty", service_slug, owner_id)
            return None

    def put_document(self, owner_id: str, service_slug: str, data: Any) -> None:
        self.execute(
            """
            INSERT INTO service_data (owner_id, service_slug, data_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(owner_id, service_slug) DO UPDATE SET
                data_json = excluded.data_json,
                updated_at = excluded.updated_at
            """,
            (owner_id, service_slug, json.dumps(data, default=str), to_iso(utc_now())),
        )

    def list_documents(self, service_slug: str, limit: int) -> list[tuple[str, Any]]:
        """Return up to *limit* documents, least recently listed first.

        Each call stamps the returned rows with a fresh ``sweep_seq`` so
        repeated sweeps rotate through every tenant, however many there are.
        """
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT owner_id, data_json FROM service_data
                WHERE service_slug = ?
                ORDER BY sweep_seq ASC, updated_at ASC, owner_id ASC
                LIMIT ?
                """,
                (service_slug, max(1, int(limit))),
            ).fetchall()
            if rows:
                (current,) = conn.execute(
                    "SELECT COALESCE(MAX(sweep_seq), 0) FROM service_data WHERE service_slug = ?",
                    (service_slug,),
                ).fetchone()
                conn.executemany(
                    "UPDATE service_data SET sweep_seq = ? WHERE owner_id = ? AND service_slug = ?",
                    [(current + 1, row["owner_id"], service_slug) for row in rows],
                )
        out: list[tuple[str, Any]] = []
        for row in rows:
            try:
                out.append((row["owner_id"], json.loads(row["data_json"])))
            except (json.JSONDecodeError, TypeError):
                log.warning("Skipping corrupt %s document for owner %s", service_slug, row["owner_id"])
        return out


class ServiceDataStore:
    """Async access to per-tenant, per-subsystem JSON documents.

    ``lock(owner_id, slug)`` serializes read-modify-write cycles within this
    process; there is no cross-process exclusion.
    """

    def __init__(self, db: Database):
        self.db = db
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def lock(self, owner_id: str, service_slug: str) -> asyncio.Lock:
        key = (owner_id, service_slug)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def load(self, owner_id: str, service_slug: str) -> Any:
        return await asyncio.to_thread(self.db.get_document, owner_id, service_slug)

    async def save(self, owner_id: str, service_slug: str, data: Any) -> None:
        await asyncio.to_thread(self.db.put_document, owner_id, service_slug, data)

    async def list_documents(self, service_slug: str, limit: int) -> list[tuple[str, Any]]:
        return await asyncio.to_thread(self.db.list_documents, service_slug, limit)
