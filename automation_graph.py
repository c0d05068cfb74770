"""Automation graph model and the per-tenant automations document.

A tenant's automations live in one JSON document::

    {
      "version": 2,
      "automations": [{"id", "name", "nodes": [...], "edges": [...]}],
      "scheduleState": {"<automationId>:<nodeId>": "<last fired ISO>"},
      "missedAppointmentFiredIds": ["<bookingId>", ...],
      "customVariables": {"key": "value"}
    }

Node configs are a tagged union keyed by ``config.kind``, which must equal
the node ``type``.  Nodes with an unknown kind, a mismatched kind, or an
unknown trigger/action kind are dropped here so the engine never sees them.
Older documents are upgraded by ``migrate_automations_document``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Union

import yaml

from conditions import CONDITION_OPS
from utils import clamp_int, clean_str

log = logging.getLogger(__name__)

SCHEMA_VERSION = 2

TRIGGER_KINDS = frozenset({
    "inbound_sms",
    "inbound_mms",
    "inbound_call",
    "inbound_email",
    "new_lead",
    "tag_added",
    "contact_created",
    "task_added",
    "inbound_webhook",
    "scheduled_time",
    "missed_appointment",
    "appointment_booked",
    "missed_call",
    "review_received",
    "follow_up_sent",
    "outbound_sent",
})

ACTION_KINDS = frozenset({
    "send_sms",
    "send_email",
    "add_tag",
    "create_task",
    "assign_lead",
    "find_contact",
    "update_contact",
    "send_webhook",
    "send_review_request",
    "send_booking_link",
    "trigger_service",
})

NODE_TYPES = ("trigger", "action", "delay", "condition", "note")
EDGE_PORTS = ("out", "true", "false")

MESSAGE_TARGETS = frozenset({
    "inbound_sender",
    "event_contact",
    "internal_notification",
    "assigned_lead",
    "custom",
})
TASK_ASSIGNEE_MODES = frozenset({"none", "owner", "member", "assigned_lead", "all_members"})
LEAD_ASSIGNEE_MODES = frozenset({"owner", "member", "assigned_lead"})
FIND_CONTACT_MODES = frozenset({"latest", "all"})

SCHEDULE_MODES = frozenset({"every", "specific", "cron"})
EVERY_UNITS = frozenset({"minutes", "days", "weeks", "months"})
SPECIFIC_KINDS = frozenset({"daily", "weekly", "monthly"})

CUSTOM_VARIABLE_KEY_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
CUSTOM_VARIABLES_MAX = 30
CUSTOM_VARIABLE_VALUE_MAX_CHARS = 800
_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class ConfigError(ValueError):
    """A node config that cannot be represented by any known variant."""


# ---------------------------------------------------------------------------
# Node config variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduleSpec:
    mode: str = "every"
    every_value: int = 60
    every_unit: str = "minutes"
    specific_kind: str = "daily"
    specific_time: str = "09:00"
    specific_weekday: int = 1
    specific_day_of_month: int = 1
    cron: str = ""
    timezone: str = "UTC"


@dataclass(frozen=True)
class TriggerConfig:
    kind: ClassVar[str] = "trigger"

    trigger_kind: str
    tag_id: str = ""
    webhook_key: str = ""
    schedule: ScheduleSpec | None = None


@dataclass(frozen=True)
class ActionConfig:
    kind: ClassVar[str] = "action"

    action_kind: str
    body: str = ""
    subject: str = ""
    tag_id: str = ""
    sms_to: str = ""
    sms_to_number: str = ""
    email_to: str = ""
    email_to_address: str = ""
    task_title: str = ""
    task_assignee: str = "owner"
    assignee_user_id: str = ""
    lead_assignee: str = "owner"
    find_mode: str = "latest"
    contact_name: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    webhook_url: str = ""
    webhook_body: str = ""
    service_slug: str = ""
    campaign_id: str = ""


@dataclass(frozen=True)
class DelayConfig:
    kind: ClassVar[str] = "delay"

    minutes: int = 0


@dataclass(frozen=True)
class ConditionConfig:
    kind: ClassVar[str] = "condition"

    left: str
    op: str
    right: str = ""


@dataclass(frozen=True)
class NoteConfig:
    kind: ClassVar[str] = "note"

    text: str = ""


NodeConfig = Union[TriggerConfig, ActionConfig, DelayConfig, ConditionConfig, NoteConfig]


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    label: str
    config: NodeConfig


@dataclass(frozen=True)
class Edge:
    id: str
    from_id: str
    to_id: str
    port: str = "out"


@dataclass
class Automation:
    id: str
    name: str
    nodes: dict[str, Node]
    edges: list[Edge]
    _outgoing: dict[tuple[str, str], list[str]] = field(init=False, repr=False, default_factory=dict)

    def __post_init__(self):
        for edge in self.edges:
            self._outgoing.setdefault((edge.from_id, edge.port), []).append(edge.to_id)

    def next_node_id(self, node_id: str, port: str = "out") -> str | None:
        """First edge wins when several leave the same port."""
        targets = self._outgoing.get((node_id, port)) or []
        return targets[0] if targets else None

    def trigger_nodes(self, trigger_kind: str | None = None) -> list[Node]:
        rows: list[Node] = []
        for node in self.nodes.values():
            if not isinstance(node.config, TriggerConfig):
                continue
            if trigger_kind and node.config.trigger_kind != trigger_kind:
                continue
            rows.append(node)
        return rows


@dataclass
class AutomationsDocument:
    version: int
    automations: list[Automation]
    schedule_state: dict[str, str]
    missed_appointment_fired_ids: list[str]
    custom_variables: dict[str, str]

    def get(self, automation_id: str) -> Automation | None:
        for automation in self.automations:
            if automation.id == automation_id:
                return automation
        return None


# ---------------------------------------------------------------------------
# Config parsing
# ---------------------------------------------------------------------------

def _as_dict(raw: Any) -> dict[str, Any]:
    return raw if isinstance(raw, dict) else {}


def _choice(raw: Any, allowed: frozenset[str], default: str) -> str:
    value = clean_str(raw)
    return value if value in allowed else default


def parse_schedule(cfg: dict[str, Any]) -> ScheduleSpec:
    mode = _choice(cfg.get("scheduleMode"), SCHEDULE_MODES, "every")
    if "everyValue" in cfg or "everyUnit" in cfg:
        every_value = clamp_int(cfg.get("everyValue"), 1, 1, 10_000)
        every_unit = _choice(cfg.get("everyUnit"), EVERY_UNITS, "minutes")
    else:
        every_value = clamp_int(parse_interval_minutes(cfg.get("intervalMinutes")), 1, 1, 10_000)
        every_unit = "minutes"

    specific_time = clean_str(cfg.get("specificTime")) or "09:00"
    if not _HHMM_RE.match(specific_time):
        specific_time = "09:00"

    return ScheduleSpec(
        mode=mode,
        every_value=every_value,
        every_unit=every_unit,
        specific_kind=_choice(cfg.get("specificKind"), SPECIFIC_KINDS, "daily"),
        specific_time=specific_time,
        specific_weekday=clamp_int(cfg.get("specificWeekday"), 1, 0, 6),
        specific_day_of_month=clamp_int(cfg.get("specificDayOfMonth"), 1, 1, 31),
        cron=clean_str(cfg.get("cron"), 120),
        timezone=clean_str(cfg.get("timezone"), 64) or "UTC",
    )


def parse_interval_minutes(raw: Any) -> int:
    """Legacy ``intervalMinutes``: default 60, clamped to 5..43200."""
    value = clamp_int(raw, 0, -1, 10**9)
    if value <= 0:
        return 60
    return max(5, min(43_200, value))


def _parse_trigger(cfg: dict[str, Any]) -> TriggerConfig:
    trigger_kind = clean_str(cfg.get("triggerKind"))
    if trigger_kind not in TRIGGER_KINDS:
        raise ConfigError(f"unknown trigger kind: {trigger_kind!r}")
    schedule = parse_schedule(cfg) if trigger_kind == "scheduled_time" else None
    return TriggerConfig(
        trigger_kind=trigger_kind,
        tag_id=clean_str(cfg.get("tagId"), 120),
        webhook_key=clean_str(cfg.get("webhookKey"), 120),
        schedule=schedule,
    )


def _parse_action(cfg: dict[str, Any]) -> ActionConfig:
    action_kind = clean_str(cfg.get("actionKind"))
    if action_kind not in ACTION_KINDS:
        raise ConfigError(f"unknown action kind: {action_kind!r}")

    def _text(key: str, max_len: int = 8000) -> str:
        value = cfg.get(key)
        return str(value)[:max_len] if isinstance(value, (str, int, float)) else ""

    return ActionConfig(
        action_kind=action_kind,
        body=_text("body"),
        subject=_text("subject", 500),
        tag_id=clean_str(cfg.get("tagId"), 120),
        sms_to=_choice(cfg.get("smsTo"), MESSAGE_TARGETS, ""),
        sms_to_number=_text("smsToNumber", 200),
        email_to=_choice(cfg.get("emailTo"), MESSAGE_TARGETS, ""),
        email_to_address=_text("emailToAddress", 300),
        task_title=_text("taskTitle", 500),
        task_assignee=_choice(cfg.get("taskAssignee"), TASK_ASSIGNEE_MODES, "owner"),
        assignee_user_id=clean_str(cfg.get("assigneeUserId"), 120),
        lead_assignee=_choice(cfg.get("leadAssignee"), LEAD_ASSIGNEE_MODES, "owner"),
        find_mode=_choice(cfg.get("findMode"), FIND_CONTACT_MODES, "latest"),
        contact_name=_text("contactName", 300),
        contact_email=_text("contactEmail", 300),
        contact_phone=_text("contactPhone", 300),
        webhook_url=_text("webhookUrl", 2000),
        webhook_body=_text("webhookBody", 20000),
        service_slug=clean_str(cfg.get("serviceSlug"), 60),
        campaign_id=clean_str(cfg.get("campaignId"), 120),
    )


def _parse_delay(cfg: dict[str, Any]) -> DelayConfig:
    return DelayConfig(minutes=clamp_int(cfg.get("minutes"), 0, 0, 60 * 24 * 365))


def _parse_condition(cfg: dict[str, Any]) -> ConditionConfig:
    op = clean_str(cfg.get("op"))
    if op not in CONDITION_OPS:
        raise ConfigError(f"unknown condition operator: {op!r}")
    right = cfg.get("right")
    return ConditionConfig(
        left=clean_str(cfg.get("left"), 500),
        op=op,
        right="" if right is None else str(right)[:2000],
    )


def _parse_note(cfg: dict[str, Any]) -> NoteConfig:
    return NoteConfig(text=clean_str(cfg.get("text"), 5000))


_CONFIG_PARSERS: dict[str, Callable[[dict[str, Any]], NodeConfig]] = {
    "trigger": _parse_trigger,
    "action": _parse_action,
    "delay": _parse_delay,
    "condition": _parse_condition,
    "note": _parse_note,
}

# Types whose config may be omitted entirely.
_OPTIONAL_CONFIG_TYPES = frozenset({"delay", "note"})


def parse_node(raw: Any) -> Node | None:
    if not isinstance(raw, dict):
        return None
    node_id = clean_str(raw.get("id"), 120)
    node_type = clean_str(raw.get("type"))
    if not node_id or node_type not in NODE_TYPES:
        return None

    cfg = raw.get("config")
    if cfg is None and node_type in _OPTIONAL_CONFIG_TYPES:
        cfg = {"kind": node_type}
    cfg = _as_dict(cfg)
    if clean_str(cfg.get("kind")) != node_type:
        log.warning("Dropping node %s: config kind %r does not match type %r", node_id, cfg.get("kind"), node_type)
        return None

    try:
        config = _CONFIG_PARSERS[node_type](cfg)
    except ConfigError as exc:
        log.warning("Dropping node %s: %s", node_id, exc)
        return None

    return Node(id=node_id, type=node_type, label=clean_str(raw.get("label"), 200), config=config)


def parse_automation(raw: Any) -> Automation | None:
    if not isinstance(raw, dict):
        return None
    automation_id = clean_str(raw.get("id"), 120)
    if not automation_id:
        return None
    raw_nodes = raw.get("nodes")
    raw_edges = raw.get("edges")
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        return None

    nodes: dict[str, Node] = {}
    for raw_node in raw_nodes:
        node = parse_node(raw_node)
        if node is not None and node.id not in nodes:
            nodes[node.id] = node

    edges: list[Edge] = []
    for idx, raw_edge in enumerate(raw_edges):
        if not isinstance(raw_edge, dict):
            continue
        from_id = clean_str(raw_edge.get("from"), 120)
        to_id = clean_str(raw_edge.get("to"), 120)
        port = clean_str(raw_edge.get("fromPort")) or "out"
        if port not in EDGE_PORTS or from_id not in nodes or to_id not in nodes:
            continue
        edge_id = clean_str(raw_edge.get("id"), 120) or f"e{idx}"
        edges.append(Edge(id=edge_id, from_id=from_id, to_id=to_id, port=port))

    return Automation(
        id=automation_id,
        name=clean_str(raw.get("name"), 200),
        nodes=nodes,
        edges=edges,
    )


def parse_custom_variables(raw: Any) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in _as_dict(raw).items():
        name = str(key).strip()
        if not CUSTOM_VARIABLE_KEY_RE.match(name):
            continue
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            continue
        out[name] = str(value)[:CUSTOM_VARIABLE_VALUE_MAX_CHARS]
        if len(out) >= CUSTOM_VARIABLES_MAX:
            break
    return out


# ---------------------------------------------------------------------------
# Document versions
# ---------------------------------------------------------------------------

def _migrate_v0_to_v1(raw: Any) -> dict[str, Any]:
    """Unversioned documents: a bare automation list or a dict without version."""
    if isinstance(raw, list):
        return {"version": 1, "automations": raw}
    data = dict(_as_dict(raw))
    data["version"] = 1
    return data


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Fill config kinds from node types and expand legacy interval schedules."""
    automations = []
    for raw_automation in data.get("automations") or []:
        if not isinstance(raw_automation, dict):
            continue
        automation = dict(raw_automation)
        nodes = []
        for raw_node in automation.get("nodes") or []:
            if not isinstance(raw_node, dict):
                continue
            node = dict(raw_node)
            cfg = dict(_as_dict(node.get("config")))
            if not cfg.get("kind") and node.get("type") in NODE_TYPES:
                cfg["kind"] = node.get("type")
            if (
                cfg.get("kind") == "trigger"
                and cfg.get("triggerKind") == "scheduled_time"
                and "everyValue" not in cfg
                and "everyUnit" not in cfg
            ):
                cfg["scheduleMode"] = cfg.get("scheduleMode") or "every"
                cfg["everyValue"] = parse_interval_minutes(cfg.get("intervalMinutes"))
                cfg["everyUnit"] = "minutes"
            node["config"] = cfg
            nodes.append(node)
        automation["nodes"] = nodes
        automations.append(automation)
    data = dict(data)
    data["automations"] = automations
    data["version"] = 2
    return data


_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
}


def migrate_automations_document(raw: Any) -> dict[str, Any]:
    """Upgrade a stored document to ``SCHEMA_VERSION``, keeping unknown keys."""
    if isinstance(raw, dict) and isinstance(raw.get("version"), int):
        data = dict(raw)
    else:
        data = _migrate_v0_to_v1(raw)

    version = data.get("version", 1)
    if version > SCHEMA_VERSION:
        log.warning("Automations document version %s is newer than %s", version, SCHEMA_VERSION)
        return data
    while version < SCHEMA_VERSION:
        migrate = _MIGRATIONS.get(version)
        if migrate is None:
            data["version"] = version + 1
        else:
            data = migrate(data)
        version = data["version"]
    return data


def parse_automations_document(raw: Any) -> AutomationsDocument:
    data = migrate_automations_document(raw)

    automations: list[Automation] = []
    seen: set[str] = set()
    for raw_automation in data.get("automations") or []:
        automation = parse_automation(raw_automation)
        if automation is None or automation.id in seen:
            continue
        seen.add(automation.id)
        automations.append(automation)

    schedule_state = {
        str(key): str(value)
        for key, value in _as_dict(data.get("scheduleState")).items()
        if isinstance(value, str) and value.strip()
    }
    fired_ids_raw = data.get("missedAppointmentFiredIds")
    fired_ids = [
        str(item).strip()
        for item in (fired_ids_raw if isinstance(fired_ids_raw, list) else [])
        if isinstance(item, str) and item.strip()
    ]

    return AutomationsDocument(
        version=int(data.get("version") or SCHEMA_VERSION),
        automations=automations,
        schedule_state=schedule_state,
        missed_appointment_fired_ids=fired_ids,
        custom_variables=parse_custom_variables(data.get("customVariables")),
    )


# ---------------------------------------------------------------------------
# File import
# ---------------------------------------------------------------------------

def load_automation_file(path: str | Path) -> list[dict[str, Any]]:
    """Read automations from a YAML or JSON file (one automation or a list).

    Entries that do not parse into an automation are skipped with a warning.
    """
    target = Path(path)
    data = yaml.safe_load(target.read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("automations"), list):
        entries = data["automations"]
    elif isinstance(data, list):
        entries = data
    elif isinstance(data, dict):
        entries = [data]
    else:
        entries = []

    rows: list[dict[str, Any]] = []
    for entry in entries:
        upgraded = migrate_automations_document({"version": 1, "automations": [entry]})
        raw_automation = (upgraded.get("automations") or [None])[0]
        if parse_automation(raw_automation) is None:
            log.warning("Skipping invalid automation entry in %s", target)
            continue
        rows.append(raw_automation)
    return rows
