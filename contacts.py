"""Contact normalization and the sqlite-backed contact, tag and lead stores.

Contacts are matched on three keys: a cleaned lowercase name, a lowercase
email, and an E.164 phone.  ``find_or_create`` reuses an existing contact
only when at least two keys agree, so two people who share a first name
never collapse into one record.
"""

import asyncio
import logging
import re
import uuid

from collaborators import Contact, ContactStore, LeadStore, TagStore
from database import Database
from utils import to_iso, utc_now

log = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D+")
_NAME_CLEAN_RE = re.compile(r"[^a-z0-9\s'-]")
_WHITESPACE_RE = re.compile(r"\s+")
_PHONE_LIKE_RE = re.compile(r"^[+0-9\s\-().]{7,}$")

MATCH_THRESHOLD = 2
CANDIDATE_LIMIT = 50


def normalize_phone(raw: str) -> str | None:
    """Normalize to E.164 (``+<digits>``), assuming US for bare 10/11 digits.

    Returns None when the input does not hold 10-15 digits.
    """
    text = str(raw or "").strip()
    if not text:
        return None
    digits = _NON_DIGITS.sub("", text)
    if len(digits) < 10 or len(digits) > 15:
        return None
    if not text.startswith("+"):
        if len(digits) == 10:
            return f"+1{digits}"
        if len(digits) == 11 and digits.startswith("1"):
            return f"+{digits}"
    return f"+{digits}"


def normalize_name_key(raw: str) -> str:
    name = str(raw or "").strip().lower()
    cleaned = _WHITESPACE_RE.sub(" ", _NAME_CLEAN_RE.sub(" ", name)).strip()
    return (cleaned or "unknown")[:80]


def normalize_email_key(raw: str) -> str | None:
    email = str(raw or "").strip().lower()
    if not email or "@" not in email:
        return None
    return email[:120]


def looks_like_email(value: str) -> bool:
    return bool(value) and "@" in value


def looks_like_phone(value: str) -> bool:
    return bool(value) and bool(_PHONE_LIKE_RE.match(value))


def _row_to_contact(row) -> Contact:
    return Contact(
        id=row["id"],
        name=row["name"] or "",
        email=row["email"] or "",
        phone=row["phone"] or "",
    )


class SqliteContactStore(ContactStore, TagStore, LeadStore):
    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def _find_or_create_sync(self, owner_id: str, name: str, email: str | None, phone: str | None) -> str | None:
        name = str(name or "").strip()[:80]
        if not name:
            return None
        name_key = normalize_name_key(name)
        email_key = normalize_email_key(email or "")
        phone_key = normalize_phone(phone or "") if phone else None
        email_value = str(email or "").strip()[:120] if email_key else None
        now = to_iso(utc_now())

        clauses = ["name_key = ?"]
        params: list = [owner_id, name_key]
        if email_key:
            clauses.append("email_key = ?")
            params.append(email_key)
        if phone_key:
            clauses.append("phone_key = ?")
            params.append(phone_key)
        params.append(CANDIDATE_LIMIT)

        with self.db.transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT id, name_key, email_key, phone_key FROM contacts
                WHERE owner_id = ? AND ({" OR ".join(clauses)})
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                params,
            ).fetchall()

            best = None
            best_score = 0
            for row in rows:
                score = 0
                if row["name_key"] == name_key:
                    score += 1
                if email_key and row["email_key"] == email_key:
                    score += 1
                if phone_key and row["phone_key"] == phone_key:
                    score += 1
                if best is None or score > best_score:
                    best, best_score = row, score

            if best is not None and best_score >= MATCH_THRESHOLD:
                sets = ["name = ?", "name_key = ?", "updated_at = ?"]
                values: list = [name, name_key, now]
                if not best["email_key"] and email_key:
                    sets += ["email = ?", "email_key = ?"]
                    values += [email_value, email_key]
                if not best["phone_key"] and phone_key:
                    sets += ["phone = ?", "phone_key = ?"]
                    values += [phone_key, phone_key]
                values.append(best["id"])
                conn.execute(f"UPDATE contacts SET {', '.join(sets)} WHERE id = ?", values)
                return best["id"]

            contact_id = f"ct_{uuid.uuid4().hex[:20]}"
            conn.execute(
                """
                INSERT INTO contacts
                    (id, owner_id, name, name_key, email, email_key, phone, phone_key, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (contact_id, owner_id, name, name_key, email_value, email_key,
                 phone_key, phone_key, now, now),
            )
            log.debug("Created contact %s for owner %s", contact_id, owner_id)
            return contact_id

    async def find_or_create(
        self,
        owner_id: str,
        name: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> str | None:
        return await asyncio.to_thread(self._find_or_create_sync, owner_id, name, email, phone)

    def _get_by_id_sync(self, owner_id: str, contact_id: str) -> Contact | None:
        row = self.db.query_one(
            "SELECT id, name, email, phone FROM contacts WHERE owner_id = ? AND id = ?",
            (owner_id, contact_id),
        )
        return _row_to_contact(row) if row else None

    async def get_by_id(self, owner_id: str, contact_id: str) -> Contact | None:
        if not contact_id:
            return None
        return await asyncio.to_thread(self._get_by_id_sync, owner_id, contact_id)

    def _update_sync(
        self,
        owner_id: str,
        contact_id: str,
        name: str | None,
        email: str | None,
        phone: str | None,
    ) -> Contact | None:
        sets: list[str] = []
        values: list = []
        if name and name.strip():
            sets += ["name = ?", "name_key = ?"]
            values += [name.strip()[:80], normalize_name_key(name)]
        email_key = normalize_email_key(email or "")
        if email_key:
            sets += ["email = ?", "email_key = ?"]
            values += [str(email).strip()[:120], email_key]
        phone_key = normalize_phone(phone or "")
        if phone_key:
            sets += ["phone = ?", "phone_key = ?"]
            values += [phone_key, phone_key]
        if sets:
            sets.append("updated_at = ?")
            values += [to_iso(utc_now()), owner_id, contact_id]
            self.db.execute(
                f"UPDATE contacts SET {', '.join(sets)} WHERE owner_id = ? AND id = ?",
                values,
            )
        return self._get_by_id_sync(owner_id, contact_id)

    async def update(
        self,
        owner_id: str,
        contact_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> Contact | None:
        return await asyncio.to_thread(self._update_sync, owner_id, contact_id, name, email, phone)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def _assign_tag_sync(self, owner_id: str, contact_id: str, tag_id: str) -> bool:
        tag = self.db.query_one(
            "SELECT id FROM contact_tags WHERE owner_id = ? AND id = ?",
            (owner_id, tag_id),
        )
        if tag is None:
            log.warning("Tag %s not found for owner %s", tag_id, owner_id)
            return False
        inserted = self.db.execute(
            """
            INSERT OR IGNORE INTO contact_tag_assignments (owner_id, contact_id, tag_id, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (owner_id, contact_id, tag_id, to_iso(utc_now())),
        )
        return inserted > 0

    async def assign_tag(self, owner_id: str, contact_id: str, tag_id: str) -> bool:
        return await asyncio.to_thread(self._assign_tag_sync, owner_id, contact_id, tag_id)

    async def find_contacts_by_tag(self, owner_id: str, tag_id: str, *, limit: int = 1) -> list[str]:
        rows = await asyncio.to_thread(
            self.db.query,
            """
            SELECT contact_id FROM contact_tag_assignments
            WHERE owner_id = ? AND tag_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (owner_id, tag_id, max(1, int(limit))),
        )
        return [row["contact_id"] for row in rows]

    def create_tag(self, owner_id: str, name: str) -> str:
        tag_id = f"tag_{uuid.uuid4().hex[:16]}"
        self.db.execute(
            "INSERT INTO contact_tags (id, owner_id, name, created_at) VALUES (?, ?, ?, ?)",
            (tag_id, owner_id, name.strip()[:60], to_iso(utc_now())),
        )
        return tag_id

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def get_linked_contact(self, owner_id: str, lead_id: str) -> str | None:
        row = await asyncio.to_thread(
            self.db.query_one,
            "SELECT contact_id FROM leads WHERE owner_id = ? AND id = ?",
            (owner_id, lead_id),
        )
        return row["contact_id"] if row and row["contact_id"] else None

    async def link_contact(self, owner_id: str, lead_id: str, contact_id: str) -> None:
        await asyncio.to_thread(
            self.db.execute,
            "UPDATE leads SET contact_id = ? WHERE owner_id = ? AND id = ?",
            (contact_id, owner_id, lead_id),
        )

    async def set_assignee(self, owner_id: str, lead_id: str, user_id: str) -> bool:
        updated = await asyncio.to_thread(
            self.db.execute,
            "UPDATE leads SET assigned_to_user_id = ? WHERE owner_id = ? AND id = ?",
            (user_id, owner_id, lead_id),
        )
        return updated > 0
