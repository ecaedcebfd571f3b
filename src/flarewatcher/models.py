"""Data model shared by the providers, stores and the reconciliation loop."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from flarewatcher.errors import SettingsValidationError

MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 120
DEFAULT_INTERVAL_MINUTES = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


# =============================================================================
# Enums
# =============================================================================


class Trigger(str, Enum):
    """Cause of a DNS write attempt."""

    MANUAL = "manual"
    AUTO = "auto"
    ROLLBACK = "rollback"


class UpdateStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# =============================================================================
# DNS provider shapes
# =============================================================================


@dataclass(frozen=True)
class MonitoredRecord:
    """A DNS record kept in sync with the public IP."""

    zone_id: str
    record_id: str

    @property
    def key(self) -> str:
        return f"{self.zone_id}:{self.record_id}"

    @classmethod
    def from_dict(cls, data: Any) -> "MonitoredRecord":
        if isinstance(data, MonitoredRecord):
            return data
        if not isinstance(data, dict):
            raise SettingsValidationError(f"Monitored record must be a mapping, got {data!r}")
        zone_id = str(data.get("zoneId") or data.get("zone_id") or "").strip()
        record_id = str(data.get("recordId") or data.get("record_id") or "").strip()
        if not zone_id or not record_id:
            raise SettingsValidationError(
                f"Monitored record requires zoneId and recordId, got {data!r}"
            )
        return cls(zone_id=zone_id, record_id=record_id)

    def to_dict(self) -> Dict[str, str]:
        return {"zoneId": self.zone_id, "recordId": self.record_id}


@dataclass(frozen=True)
class Zone:
    id: str
    name: str
    status: str = ""
    token_id: str = ""


@dataclass(frozen=True)
class DnsRecord:
    """Snapshot of one record as the DNS provider reports it."""

    id: str
    zone_id: str
    name: str
    type: str
    content: str
    ttl: int = 1
    proxied: bool = False
    comment: Optional[str] = None


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a record write as classified from the provider response."""

    success: bool
    message: str
    response: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PropagationResult:
    propagated: Optional[bool]
    note: str


# =============================================================================
# Operators and runtime state
# =============================================================================


@dataclass(frozen=True)
class Operator:
    """The account owning a settings row and a set of monitored records."""

    id: str
    email: str
    is_admin: bool = False

    def owns(self, actor: Optional[str]) -> bool:
        if not isinstance(actor, str):
            return False
        return actor.strip().lower() == self.email.strip().lower()


@dataclass
class RuntimeIpState:
    """Process-local view of the public IP. Not authoritative."""

    current_ip: Optional[str] = None
    previous_ip: Optional[str] = None

    def advance(self, ip: str) -> bool:
        """Record ``ip`` as current. Returns True when it differs from before."""
        if ip == self.current_ip:
            return False
        self.previous_ip = self.current_ip
        self.current_ip = ip
        return True


@dataclass(frozen=True)
class AlertPayload:
    title: str
    body: str
    previous_ip: Optional[str] = None
    current_ip: Optional[str] = None


@dataclass(frozen=True)
class ActivityEntry:
    created_at: datetime
    level: str
    message: str
    title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "createdAt": self.created_at.isoformat(),
            "level": self.level,
            "message": self.message,
            "title": self.title,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityEntry":
        return cls(
            created_at=parse_timestamp(data["createdAt"]),
            level=str(data.get("level") or "info"),
            message=str(data.get("message") or ""),
            title=str(data.get("title") or ""),
        )


@dataclass(frozen=True)
class AuditEvent:
    """One operator action, e.g. ``dns.update`` on a record."""

    id: str
    user_id: str
    action: str
    created_at: datetime
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "targetType": self.target_type,
            "targetId": self.target_id,
            "detail": self.detail,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            id=str(data["id"]),
            user_id=str(data["userId"]),
            action=str(data["action"]),
            created_at=parse_timestamp(data["createdAt"]),
            target_type=data.get("targetType"),
            target_id=data.get("targetId"),
            detail=data.get("detail"),
        )


# =============================================================================
# Settings
# =============================================================================

# Stored key -> attribute name. Stored keys stay camelCase so a settings file
# reads the same as the payload the operator edits.
SETTINGS_KEYS: Dict[str, str] = {
    "intervalMinutes": "interval_minutes",
    "monitoredRecords": "monitored_records",
    "discordWebhookUrl": "discord_webhook_url",
    "discordMarkdown": "discord_markdown",
    "discordEnabled": "discord_enabled",
    "smtpHost": "smtp_host",
    "smtpPort": "smtp_port",
    "smtpUser": "smtp_user",
    "smtpPass": "smtp_pass",
    "smtpFrom": "smtp_from",
    "smtpTo": "smtp_to",
    "smtpMessage": "smtp_message",
    "smtpEnabled": "smtp_enabled",
    "notifyOnIpChange": "notify_on_ip_change",
    "notifyOnFailure": "notify_on_failure",
}

_BOOL_FIELDS = {"discord_enabled", "smtp_enabled", "notify_on_ip_change", "notify_on_failure"}
_TEXT_FIELDS = {
    "discord_webhook_url",
    "discord_markdown",
    "smtp_host",
    "smtp_user",
    "smtp_pass",
    "smtp_from",
    "smtp_to",
    "smtp_message",
}


def _dedupe_records(records: List[MonitoredRecord]) -> List[MonitoredRecord]:
    seen = set()
    unique: List[MonitoredRecord] = []
    for record in records:
        if record.key in seen:
            continue
        seen.add(record.key)
        unique.append(record)
    return unique


@dataclass(frozen=True)
class Settings:
    """Per-operator configuration.

    Always constructed through :meth:`from_dict` or :meth:`merged`, both of
    which validate, so an instance in hand satisfies every field constraint.
    """

    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    monitored_records: List[MonitoredRecord] = field(default_factory=list)
    discord_webhook_url: Optional[str] = None
    discord_markdown: Optional[str] = None
    discord_enabled: bool = True
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_from: Optional[str] = None
    smtp_to: Optional[str] = None
    smtp_message: Optional[str] = None
    smtp_enabled: bool = True
    notify_on_ip_change: bool = True
    notify_on_failure: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        return cls().merged(data or {})

    def merged(self, partial: Dict[str, Any]) -> "Settings":
        """Return a copy with the keys present in ``partial`` applied.

        Keys may be camelCase (stored form) or snake_case. A key present with
        a ``None`` value clears a nullable field and resets a non-nullable one
        to its default.
        """
        attribute_names = {f.name for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, value in partial.items():
            name = SETTINGS_KEYS.get(key, key)
            if name not in attribute_names:
                raise SettingsValidationError(f"Unknown settings field: {key}")
            changes[name] = _coerce_setting(name, value)
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def validate(self) -> None:
        interval = self.interval_minutes
        if (
            isinstance(interval, bool)
            or not isinstance(interval, int)
            or not MIN_INTERVAL_MINUTES <= interval <= MAX_INTERVAL_MINUTES
        ):
            raise SettingsValidationError(
                f"intervalMinutes must be an integer in "
                f"[{MIN_INTERVAL_MINUTES}, {MAX_INTERVAL_MINUTES}], got {interval!r}"
            )
        if self.smtp_port is not None and not 1 <= self.smtp_port <= 65535:
            raise SettingsValidationError(f"smtpPort out of range: {self.smtp_port}")
        if self.discord_webhook_url and not self.discord_webhook_url.startswith(
            ("http://", "https://")
        ):
            raise SettingsValidationError("discordWebhookUrl must be an http(s) URL")
        keys = [r.key for r in self.monitored_records]
        if len(keys) != len(set(keys)):
            raise SettingsValidationError("monitoredRecords contains duplicates")

    def is_monitored(self, zone_id: str, record_id: str) -> bool:
        key = MonitoredRecord(zone_id, record_id).key
        return any(r.key == key for r in self.monitored_records)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key, name in SETTINGS_KEYS.items():
            value = getattr(self, name)
            if name == "monitored_records":
                value = [r.to_dict() for r in value]
            data[key] = value
        return data


def _coerce_setting(name: str, value: Any) -> Any:
    if name == "monitored_records":
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise SettingsValidationError("monitoredRecords must be a list")
        return _dedupe_records([MonitoredRecord.from_dict(item) for item in value])
    if name == "interval_minutes":
        if value is None:
            return DEFAULT_INTERVAL_MINUTES
        return _coerce_int("intervalMinutes", value)
    if name == "smtp_port":
        if value is None or value == "":
            return None
        return _coerce_int("smtpPort", value)
    if name in _BOOL_FIELDS:
        return _coerce_bool(name, value)
    if name in _TEXT_FIELDS:
        if value is None:
            return None
        text = str(value).strip()
        if text and name == "smtp_to" and not _EMAIL_RE.match(text):
            raise SettingsValidationError(f"smtpTo must be an email address, got {text!r}")
        return text or None
    return value


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TRUE_STRINGS = {"1", "true", "yes", "y", "on"}
_FALSE_STRINGS = {"0", "false", "no", "n", "off"}


def _coerce_int(label: str, value: Any) -> int:
    """Whole numbers only; ``5.5`` and ``"5.5"`` are rejected rather than truncated."""
    if isinstance(value, bool):
        raise SettingsValidationError(f"{label} must be an integer, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise SettingsValidationError(f"{label} must be an integer, got {value!r}")
        return int(value)
    try:
        return int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        raise SettingsValidationError(f"{label} must be an integer, got {value!r}")


def _coerce_bool(name: str, value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    key = next(k for k, v in SETTINGS_KEYS.items() if v == name)
    raise SettingsValidationError(f"{key} must be a boolean, got {value!r}")


# =============================================================================
# Update ledger
# =============================================================================

_LEDGER_KEYS: Dict[str, str] = {
    "id": "id",
    "zoneId": "zone_id",
    "tokenId": "token_id",
    "recordId": "record_id",
    "name": "name",
    "type": "type",
    "previousContent": "previous_content",
    "previousTtl": "previous_ttl",
    "previousProxied": "previous_proxied",
    "content": "content",
    "ttl": "ttl",
    "proxied": "proxied",
    "comment": "comment",
    "status": "status",
    "trigger": "trigger",
    "actor": "actor",
    "propagated": "propagated",
    "propagationNote": "propagation_note",
    "response": "response",
    "createdAt": "created_at",
}


@dataclass(frozen=True)
class UpdateLedgerEntry:
    """Audit row for one attempted DNS write, with the pre-write snapshot."""

    id: str
    zone_id: str
    token_id: Optional[str]
    record_id: str
    name: str
    type: str
    previous_content: Optional[str]
    previous_ttl: Optional[int]
    previous_proxied: Optional[bool]
    content: str
    ttl: int
    proxied: bool
    comment: Optional[str]
    status: UpdateStatus
    trigger: Trigger
    actor: str
    propagated: Optional[bool]
    propagation_note: Optional[str]
    response: str
    created_at: datetime

    @property
    def record_key(self) -> str:
        return f"{self.zone_id}:{self.record_id}"

    @property
    def can_rollback(self) -> bool:
        return bool(self.token_id) and bool(self.previous_content)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key, name in _LEDGER_KEYS.items():
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateLedgerEntry":
        values = {name: data.get(key) for key, name in _LEDGER_KEYS.items()}
        values["status"] = UpdateStatus(values["status"])
        values["trigger"] = Trigger(values["trigger"])
        values["created_at"] = parse_timestamp(values["created_at"])
        values["response"] = values["response"] or ""
        return cls(**values)
