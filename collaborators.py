"""Narrow interfaces to the stores and services the automation engine drives.

The engine, dispatcher, follow-up scheduler and sweepers only talk to the
outside world through these abstract classes.  ``database.py``,
``contacts.py`` and ``tenants.py`` provide sqlite-backed implementations;
tests substitute in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from channels.base import EmailSender, SmsSender, WebhookSender


# ---------------------------------------------------------------------------
# Records exchanged with collaborators
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Contact:
    id: str = ""
    name: str = ""
    email: str = ""
    phone: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "Contact":
        if not isinstance(payload, dict):
            return cls()

        def _s(key: str) -> str:
            value = payload.get(key)
            return str(value).strip() if isinstance(value, (str, int, float)) else ""

        return cls(id=_s("id"), name=_s("name"), email=_s("email"), phone=_s("phone"))

    def is_blank(self) -> bool:
        return not (self.id or self.name or self.email or self.phone)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id or None,
            "name": self.name or None,
            "email": self.email or None,
            "phone": self.phone or None,
        }


@dataclass(frozen=True)
class TenantProfile:
    owner_id: str
    owner_name: str = ""
    owner_email: str = ""
    owner_phone: str = ""
    business_name: str = ""
    business_email: str = ""
    business_phone: str = ""


@dataclass(frozen=True)
class Member:
    user_id: str
    email: str = ""
    name: str = ""
    phone: str = ""
    active: bool = True


@dataclass(frozen=True)
class BookingSite:
    id: str
    owner_id: str
    title: str = ""
    time_zone: str = "UTC"
    notification_emails: tuple[str, ...] = ()


@dataclass(frozen=True)
class CalendarConfig:
    id: str
    title: str = ""
    notification_emails: tuple[str, ...] = ()


@dataclass(frozen=True)
class Booking:
    id: str
    owner_id: str
    status: str
    start_at: datetime
    end_at: datetime
    calendar_id: str = ""
    site_id: str = ""
    contact_name: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    contact_id: str = ""


# ---------------------------------------------------------------------------
# Store and service interfaces
# ---------------------------------------------------------------------------

class ContactStore(ABC):
    @abstractmethod
    async def find_or_create(
        self,
        owner_id: str,
        name: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> str | None:
        """Return the id of a matching contact, creating one when none matches."""

    @abstractmethod
    async def get_by_id(self, owner_id: str, contact_id: str) -> Contact | None:
        ...

    @abstractmethod
    async def update(
        self,
        owner_id: str,
        contact_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> Contact | None:
        ...


class TagStore(ABC):
    @abstractmethod
    async def assign_tag(self, owner_id: str, contact_id: str, tag_id: str) -> bool:
        ...

    @abstractmethod
    async def find_contacts_by_tag(
        self,
        owner_id: str,
        tag_id: str,
        *,
        limit: int = 1,
    ) -> list[str]:
        """Contact ids carrying *tag_id*, most recently tagged first."""


class LeadStore(ABC):
    @abstractmethod
    async def get_linked_contact(self, owner_id: str, lead_id: str) -> str | None:
        ...

    @abstractmethod
    async def link_contact(self, owner_id: str, lead_id: str, contact_id: str) -> None:
        ...

    @abstractmethod
    async def set_assignee(self, owner_id: str, lead_id: str, user_id: str) -> bool:
        ...


class TaskStore(ABC):
    @abstractmethod
    async def create_task(
        self,
        owner_id: str,
        title: str,
        description: str = "",
        *,
        assigned_to_user_id: str | None = None,
        contact_id: str | None = None,
    ) -> str:
        ...


class CampaignServices(ABC):
    @abstractmethod
    async def enroll_in_nurture_campaign(
        self,
        owner_id: str,
        contact_id: str,
        campaign_id: str | None = None,
    ) -> int:
        """Enroll a contact; returns the number of new enrollments."""

    @abstractmethod
    async def enqueue_outbound_call(
        self,
        owner_id: str,
        contact_id: str,
        campaign_id: str | None = None,
    ) -> int:
        """Queue an AI outbound call; returns the number of calls queued."""


class BookingProvider(ABC):
    @abstractmethod
    async def get_site(self, owner_id: str) -> BookingSite | None:
        ...

    @abstractmethod
    async def get_booking(self, owner_id: str, booking_id: str) -> Booking | None:
        ...

    @abstractmethod
    async def get_calendar(self, owner_id: str, calendar_id: str) -> CalendarConfig | None:
        ...

    @abstractmethod
    async def list_scheduled_bookings_ended(
        self,
        start: datetime,
        end: datetime,
        limit: int,
    ) -> list[Booking]:
        """SCHEDULED bookings across tenants with ``start <= end_at < end``, newest first."""


class TenantDirectory(ABC):
    @abstractmethod
    async def get_profile(self, owner_id: str) -> TenantProfile:
        ...

    @abstractmethod
    async def list_members(self, owner_id: str) -> list[Member]:
        ...

    @abstractmethod
    async def get_review_link(self, owner_id: str) -> str | None:
        ...

    @abstractmethod
    async def get_booking_link(self, owner_id: str) -> str | None:
        ...

    @abstractmethod
    async def get_webhook_token(self, owner_id: str) -> str:
        """The tenant's inbound-webhook token, minted on first use."""

    @abstractmethod
    async def find_owner_by_webhook_token(self, token: str) -> str | None:
        ...


@dataclass
class Collaborators:
    """Everything the engine and scheduler need from the outside world."""

    contacts: ContactStore
    tags: TagStore
    leads: LeadStore
    tasks: TaskStore
    sms: SmsSender
    email: EmailSender
    webhooks: WebhookSender
    campaigns: CampaignServices
    bookings: BookingProvider
    directory: TenantDirectory
