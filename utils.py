import functools
import json
import logging
import math
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime.

    Naive values are taken as UTC.  Anything unparseable yields None.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Render a datetime as a millisecond-precision UTC string ending in Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def clamp_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    """Coerce *value* to an int within [minimum, maximum], else *default*."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(minimum, min(maximum, int(number)))


def clean_str(value: Any, max_len: int | None = None) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    text = str(value).strip()
    return text[:max_len] if max_len is not None else text


# ---------------------------------------------------------------------------
# JSON state files
# ---------------------------------------------------------------------------

def atomic_write_json(path: str | Path, data: Any, *, indent: int = 2) -> None:
    """Write *data* to a sibling temp file, then rename it over *path*."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f".{target.name}.{os.getpid()}.tmp")
    tmp_path.write_text(json.dumps(data, indent=indent, default=str), encoding="utf-8")
    os.replace(tmp_path, target)


def load_json(path: str | Path, default: Any = None) -> Any:
    fallback = {} if default is None else default
    target = Path(path)
    if not target.exists():
        return fallback
    try:
        return json.loads(target.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        log.warning("Unreadable state file %s, starting fresh", target, exc_info=True)
        return fallback


# ---------------------------------------------------------------------------
# Provider latency
# ---------------------------------------------------------------------------

def track_latency(provider: str, operation: str | None = None):
    """Log how long an async provider call took, success or not.

    Timings go to the ``latency.<provider>`` logger at DEBUG::

        @track_latency("twilio", "send_sms")
        async def send_sms(self, owner_id, to, body):
            ...
    """

    def decorator(fn):
        op = operation or fn.__name__
        logger = logging.getLogger(f"latency.{provider}")

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            started = time.monotonic()
            try:
                return await fn(*args, **kwargs)
            finally:
                logger.debug("%s.%s took %.1fms", provider, op, (time.monotonic() - started) * 1000)

        return wrapper

    return decorator
