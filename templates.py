"""Message template rendering.

Templates use ``{token}`` placeholders.  Tokens present in the variable map
are replaced with their value; unknown tokens are left exactly as written so
a typo stays visible in the delivered message instead of silently vanishing.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Mapping

from collaborators import Contact, TenantProfile

log = logging.getLogger(__name__)

_SIMPLE_RENDER_TOKEN_RE = re.compile(r"\{([a-zA-Z0-9_.-]+)\}")

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    if not template:
        return ""

    def _token_repl(match: re.Match) -> str:
        token = match.group(1)
        if token in variables:
            value = variables[token]
            return "" if value is None else str(value)
        return match.group(0)

    return _SIMPLE_RENDER_TOKEN_RE.sub(_token_repl, str(template))


def render_json_template(template: str, variables: Mapping[str, Any]) -> str:
    """Render a JSON body template with every value JSON-string-escaped."""
    escaped = {
        key: json.dumps("" if value is None else str(value))[1:-1]
        for key, value in variables.items()
    }
    return render_template(template, escaped)


def first_name(name: str) -> str:
    parts = str(name or "").strip().split()
    return parts[0] if parts else ""


def now_vars(now: datetime) -> dict[str, str]:
    return {
        "now.iso": now.isoformat(),
        "now.date": now.date().isoformat(),
        "now.time": now.strftime("%H:%M"),
        "now.hour": str(now.hour),
        "now.minute": str(now.minute),
        "now.weekday": _WEEKDAYS[now.weekday()],
        "now.dayOfWeek": str((now.weekday() + 1) % 7),
        "now.dayOfMonth": str(now.day),
        "now.month": str(now.month),
        "now.year": str(now.year),
    }


def build_template_vars(
    *,
    contact: Contact | None = None,
    profile: TenantProfile | None = None,
    user: Mapping[str, str] | None = None,
    message: Mapping[str, Any] | None = None,
    now: datetime | None = None,
    custom_variables: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the flat portal variable map.

    Canonical dotted keys (``contact.name``, ``business.phone`` ...) come
    with the legacy camelCase aliases older templates still use
    (``contactName``, ``businessName`` ...).  Custom variables are added
    last but never shadow a built-in key.
    """
    contact = contact or Contact()
    user = user or {}
    message = message or {}

    def _s(value: Any) -> str:
        return "" if value is None else str(value).strip()

    contact_name = _s(contact.name)
    business_name = _s(profile.business_name) if profile else ""
    business_email = _s(profile.business_email) if profile else ""
    business_phone = _s(profile.business_phone) if profile else ""
    owner_name = _s(profile.owner_name) if profile else ""
    owner_email = _s(profile.owner_email) if profile else ""
    owner_phone = _s(profile.owner_phone) if profile else ""
    user_name = _s(user.get("name"))
    message_from = _s(message.get("from"))
    message_to = _s(message.get("to"))
    message_body = "" if message.get("body") is None else str(message.get("body"))

    variables: dict[str, str] = {
        "contact.id": _s(contact.id),
        "contact.name": contact_name,
        "contact.firstName": first_name(contact_name),
        "contact.email": _s(contact.email),
        "contact.phone": _s(contact.phone),
        "business.name": business_name,
        "business.email": business_email,
        "business.phone": business_phone,
        "owner.name": owner_name,
        "owner.email": owner_email,
        "owner.phone": owner_phone,
        "user.name": user_name,
        "user.email": _s(user.get("email")),
        "user.phone": _s(user.get("phone")),
        "message.from": message_from,
        "message.to": message_to,
        "message.body": message_body,
        # legacy aliases
        "name": contact_name,
        "business": business_name,
        "contactName": contact_name,
        "contactFirstName": first_name(contact_name),
        "contactEmail": _s(contact.email),
        "contactPhone": _s(contact.phone),
        "businessName": business_name,
        "businessEmail": business_email,
        "businessPhone": business_phone,
        "ownerName": owner_name,
        "ownerEmail": owner_email,
        "ownerPhone": owner_phone,
        "userName": user_name,
        "messageBody": message_body,
        "messageFrom": message_from,
        "messageTo": message_to,
    }
    if now is not None:
        variables.update(now_vars(now))

    for key, value in (custom_variables or {}).items():
        if key in variables:
            continue
        variables[key] = _s(value)
    return variables
