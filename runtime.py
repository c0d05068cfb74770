"""Wiring for the sqlite-backed stores, providers, engine and scheduler."""

import logging
from dataclasses import dataclass
from pathlib import Path

import config
from automations import AutomationEngine
from channels.email import SendGridEmailSender
from channels.sms import TwilioSmsSender
from channels.webhook import HttpWebhookSender
from collaborators import Collaborators
from contacts import SqliteContactStore
from database import Database, ServiceDataStore
from followups import FollowUpScheduler
from tenants import (
    SqliteBookingProvider,
    SqliteCampaignServices,
    SqliteTaskStore,
    SqliteTenantDirectory,
)

log = logging.getLogger(__name__)


@dataclass
class Runtime:
    db: Database
    documents: ServiceDataStore
    collaborators: Collaborators
    engine: AutomationEngine
    scheduler: FollowUpScheduler

    def close(self):
        self.db.close()


def build_collaborators(db: Database) -> Collaborators:
    contacts = SqliteContactStore(db)
    return Collaborators(
        contacts=contacts,
        tags=contacts,
        leads=contacts,
        tasks=SqliteTaskStore(db),
        sms=TwilioSmsSender(),
        email=SendGridEmailSender(),
        webhooks=HttpWebhookSender(),
        campaigns=SqliteCampaignServices(db),
        bookings=SqliteBookingProvider(db),
        directory=SqliteTenantDirectory(db),
    )


def build_runtime(
    db_path: Path | str | None = None,
    *,
    collaborators: Collaborators | None = None,
) -> Runtime:
    """Open the database and assemble the engine and follow-up scheduler."""
    db = Database(db_path or config.DATABASE_PATH)
    db.initialize()
    documents = ServiceDataStore(db)
    collaborators = collaborators or build_collaborators(db)
    engine = AutomationEngine(documents, collaborators)
    scheduler = FollowUpScheduler(documents, collaborators, clock=engine.clock)
    log.info("Runtime ready (database=%s)", db.db_path)
    return Runtime(
        db=db,
        documents=documents,
        collaborators=collaborators,
        engine=engine,
        scheduler=scheduler,
    )
