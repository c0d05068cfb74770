import logging as _logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(os.getenv("PORTAL_ENV_FILE", str(Path.home() / ".portal" / ".env"))))

_log = _logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """Parse an integer env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            _log.warning("Invalid integer for %s=%r; using %d", name, raw, default)
            value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_float(name: str, default: float) -> float:
    """Parse a float env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


# Paths
DATA_DIR = Path(os.getenv("PORTAL_DATA_DIR", str(Path.home() / ".portal"))).expanduser()
DATABASE_PATH = Path(os.getenv("PORTAL_DATABASE_PATH", str(DATA_DIR / "portal.db"))).expanduser()
LOG_DIR = DATA_DIR / "logs"
GATEWAY_STATE_FILE = DATA_DIR / "gateway_state.json"

# Identity
TIMEZONE = os.getenv("PORTAL_TIMEZONE", "UTC")
DEFAULT_FROM_NAME = os.getenv("PORTAL_DEFAULT_FROM_NAME", "Purely Automation")

# Web server
WEB_HOST = os.getenv("PORTAL_WEB_HOST", "127.0.0.1")
WEB_PORT = _env_int("PORTAL_WEB_PORT", 8080, minimum=1, maximum=65535)
# Shared secret for the sweep endpoints (Authorization: Bearer <token>).
CRON_SECRET = os.getenv("PORTAL_CRON_SECRET", "").strip()

# Outbound providers
HTTP_TIMEOUT_SECONDS = _env_float("PORTAL_HTTP_TIMEOUT_SECONDS", 20.0)
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "").strip()
SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL", "").strip()
SENDGRID_API_URL = os.getenv("SENDGRID_API_URL", "https://api.sendgrid.com/v3/mail/send")
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "").strip()
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "").strip()
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "").strip()
TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")

# Graph walk limits
WALK_MAX_STEPS = _env_int("PORTAL_WALK_MAX_STEPS", 120, minimum=1)
WALK_MAX_NODE_VISITS = _env_int("PORTAL_WALK_MAX_NODE_VISITS", 5, minimum=1)
FIND_CONTACT_FAN_OUT_LIMIT = _env_int("PORTAL_FIND_CONTACT_FAN_OUT_LIMIT", 50, minimum=1, maximum=50)

# Message limits
SMS_BODY_MAX_CHARS = 1200
EMAIL_SUBJECT_MAX_CHARS = 180
EMAIL_TEXT_MAX_CHARS = 8000
DEFAULT_SMS_BODY = "Got it - thanks!"
DEFAULT_EMAIL_SUBJECT = "Automated message"

# Follow-up scheduler
FOLLOW_UP_SERVICE_SLUG = "follow-up"
FOLLOW_UP_MAX_QUEUE_ITEMS = 400
FOLLOW_UP_MAX_DELAY_MINUTES = 60 * 24 * 365 * 10
FOLLOW_UP_MAX_STEPS = 30
FOLLOW_UP_MAX_TEMPLATES = 20
FOLLOW_UP_BOOKING_META_LIMIT = 200
FOLLOW_UP_SWEEP_LIMIT = _env_int("PORTAL_FOLLOW_UP_SWEEP_LIMIT", 25, minimum=1, maximum=100)
FOLLOW_UP_SWEEP_MAX_DOCUMENTS = 100

# Automations document
AUTOMATIONS_SERVICE_SLUG = "automations"

# Scheduled-trigger sweeper
SCHEDULED_OWNERS_LIMIT = _env_int("PORTAL_SCHEDULED_OWNERS_LIMIT", 1000, minimum=1, maximum=10000)
SCHEDULED_PER_OWNER_MAX_RUNS = _env_int("PORTAL_SCHEDULED_PER_OWNER_MAX_RUNS", 10, minimum=1, maximum=100)

# Missed-appointment sweeper
MISSED_APPOINTMENT_GRACE_MINUTES = _env_int("PORTAL_MISSED_GRACE_MINUTES", 15, minimum=5, maximum=1440)
MISSED_APPOINTMENT_LOOKBACK_HOURS = _env_int("PORTAL_MISSED_LOOKBACK_HOURS", 48, minimum=1, maximum=336)
MISSED_APPOINTMENT_LIMIT = _env_int("PORTAL_MISSED_LIMIT", 200, minimum=1, maximum=2000)
MISSED_APPOINTMENT_MAX_FIRES = 500
MISSED_APPOINTMENT_FIRED_IDS_CAP = 5000

# Gateway tick (in-process sweeps)
GATEWAY_ENABLED = _env_bool("PORTAL_GATEWAY_ENABLED", True)
GATEWAY_TICK_INTERVAL = _env_int("PORTAL_GATEWAY_TICK_INTERVAL", 60, minimum=5)
GATEWAY_FOLLOW_UPS_CRON = os.getenv("PORTAL_GATEWAY_FOLLOW_UPS_CRON", "* * * * *")
GATEWAY_SCHEDULED_CRON = os.getenv("PORTAL_GATEWAY_SCHEDULED_CRON", "*/5 * * * *")
GATEWAY_MISSED_CRON = os.getenv("PORTAL_GATEWAY_MISSED_CRON", "*/15 * * * *")
