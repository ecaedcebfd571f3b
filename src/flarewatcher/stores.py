"""JSON-file persistence: settings, the update ledger and runtime side channels.

Every store keeps one JSON document on disk. Writes go to a uniquely named
temp file that is renamed over the target, and every read-modify-write holds
an advisory ``flock`` on a sidecar ``.lock`` file, so a ``run`` daemon and a
one-shot command sharing a state directory never interleave their writes.
A single ``upsert``/``append`` call is the unit of consistency.
"""

from __future__ import annotations

import calendar
import fcntl
import json
import logging
import os
import tempfile
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from flarewatcher.errors import LedgerWriteError
from flarewatcher.models import (
    ActivityEntry,
    AuditEvent,
    RuntimeIpState,
    Settings,
    UpdateLedgerEntry,
    UpdateStatus,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_TAKE = 15
MAX_TAKE = 2000
AUDIT_TAKE = 200

ACTIVITY_MAX_ENTRIES = 100
ACTIVITY_RETENTION = timedelta(days=7)


# =============================================================================
# Base JSON Store
# =============================================================================


class JsonFileStore:
    """Whole-document JSON persistence with atomic replace.

    A missing file yields ``default()``. An unreadable file also yields the
    default unless ``strict`` is set, in which case the error propagates so
    the caller never overwrites data it failed to read.

    :meth:`locked` serializes read-modify-write cycles across threads and
    processes. It is re-entrant within one store instance.
    """

    def __init__(self, path: str, default: Callable[[], Dict[str, Any]], *, strict: bool = False):
        self.path = Path(path)
        self._default = default
        self._strict = strict
        self._lock = threading.RLock()
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_depth = 0
        self._lock_handle = None

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            if self._lock_depth == 0:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                handle = open(self._lock_path, "a+")
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                except OSError:
                    handle.close()
                    raise
                self._lock_handle = handle
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0:
                    handle = self._lock_handle
                    self._lock_handle = None
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                    handle.close()

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return self._default()
        try:
            data = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as e:
            if self._strict:
                raise
            logger.warning(f"Failed to load state file {self.path}: {e}")
            return self._default()
        if not isinstance(data, dict):
            if self._strict:
                raise ValueError(f"{self.path} does not contain a JSON object")
            logger.warning(f"Ignoring malformed state file {self.path}")
            return self._default()
        return data

    def save(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            ) as tmp:
                tmp_path = tmp.name
                tmp.write(json.dumps(state, indent=2, sort_keys=True))
            os.replace(tmp_path, self.path)
        except Exception:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


# =============================================================================
# Settings Store
# =============================================================================


class SettingsStore(JsonFileStore):
    """One validated :class:`Settings` row per operator."""

    def __init__(self, path: str):
        super().__init__(path, lambda: {"version": 1, "operators": {}})

    def get(self, operator_id: str) -> Optional[Settings]:
        with self._lock:
            raw = self.load().get("operators", {}).get(operator_id)
        if raw is None:
            return None
        return Settings.from_dict(raw)

    def upsert(self, operator_id: str, partial: Dict[str, Any]) -> Settings:
        """Create or partially update an operator's settings in one write."""
        with self.locked():
            state = self.load()
            operators = state.setdefault("operators", {})
            existing = operators.get(operator_id)
            base = Settings.from_dict(existing) if existing is not None else Settings()
            saved = base.merged(partial)
            operators[operator_id] = saved.to_dict()
            self.save(state)
        logger.debug(f"Saved settings for operator '{operator_id}': {sorted(partial)}")
        return saved

    def seed(self, operator_id: str, initial: Dict[str, Any]) -> Optional[Settings]:
        """Store ``initial`` only if the operator has no settings yet."""
        with self.locked():
            if self.get(operator_id) is not None:
                return None
            return self.upsert(operator_id, initial)


# =============================================================================
# Update Ledger
# =============================================================================


def months_ago(now: datetime, months: int) -> datetime:
    """Shift ``now`` back by calendar months, clamping the day of month."""
    index = now.year * 12 + (now.month - 1) - months
    year, month0 = divmod(index, 12)
    day = min(now.day, calendar.monthrange(year, month0 + 1)[1])
    return now.replace(year=year, month=month0 + 1, day=day)


def _same_actor(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


@dataclass(frozen=True)
class LedgerQuery:
    """Filter for :meth:`UpdateLedger.query`.

    ``take`` defaults to 15 rows, or 2000 when a ``months`` window is given,
    and is never larger than 2000.
    """

    actor: Optional[str] = None
    months: Optional[int] = None
    take: Optional[int] = None
    zone_id: Optional[str] = None
    record_id: Optional[str] = None

    def limit(self) -> int:
        if self.take is not None and self.take > 0:
            return min(int(self.take), MAX_TAKE)
        if self.months is not None and self.months > 0:
            return MAX_TAKE
        return DEFAULT_TAKE


class UpdateLedger(JsonFileStore):
    """Append-only audit log of DNS write attempts."""

    def __init__(self, path: str):
        super().__init__(path, lambda: {"version": 1, "entries": []}, strict=True)

    @staticmethod
    def new_entry_id() -> str:
        return uuid.uuid4().hex

    def _entries(self) -> List[UpdateLedgerEntry]:
        with self._lock:
            try:
                raw = self.load().get("entries", [])
            except (OSError, ValueError) as e:
                raise LedgerWriteError(f"Update ledger {self.path} is unreadable: {e}") from e
        return [UpdateLedgerEntry.from_dict(item) for item in raw]

    def _write(self, mutate: Callable[[List[Dict[str, Any]]], Any]) -> Any:
        try:
            with self.locked():
                state = self.load()
                entries = state.setdefault("entries", [])
                result = mutate(entries)
                self.save(state)
        except (OSError, ValueError) as e:
            raise LedgerWriteError(f"Update ledger {self.path} could not be written: {e}") from e
        return result

    def append(self, entry: UpdateLedgerEntry) -> str:
        """Persist ``entry`` and return its id.

        ``createdAt`` is nudged forward when needed so entries for one record
        stay strictly increasing in attempt order.
        """

        def _append(entries: List[Dict[str, Any]]) -> str:
            stored = entry
            latest = None
            # Only the matching record's timestamps are parsed.
            for raw in entries:
                if raw.get("recordId") != entry.record_id or raw.get("zoneId") != entry.zone_id:
                    continue
                created = parse_timestamp(raw.get("createdAt"))
                if latest is None or created > latest:
                    latest = created
            if latest is not None and stored.created_at <= latest:
                stored = replace(stored, created_at=latest + timedelta(microseconds=1))
            entries.append(stored.to_dict())
            return stored.id

        return self._write(_append)

    def get(self, entry_id: str) -> Optional[UpdateLedgerEntry]:
        for entry in self._entries():
            if entry.id == entry_id:
                return entry
        return None

    def mark_error(self, entry_id: str, message: str) -> bool:
        """Backfill ``status=error`` on an entry whose request crashed later."""

        def _mark(entries: List[Dict[str, Any]]) -> bool:
            for raw in entries:
                if raw.get("id") == entry_id:
                    raw["status"] = UpdateStatus.ERROR.value
                    raw["response"] = json.dumps({"error": message})
                    return True
            return False

        return self._write(_mark)

    def query(
        self, query: Optional[LedgerQuery] = None, *, now: Optional[datetime] = None
    ) -> List[UpdateLedgerEntry]:
        """Entries matching ``query``, newest ``createdAt`` first."""
        query = query or LedgerQuery()
        since = None
        if query.months is not None and query.months > 0:
            since = months_ago(now or utcnow(), int(query.months))

        matched = []
        for entry in self._entries():
            if query.actor is not None and not _same_actor(entry.actor, query.actor):
                continue
            if query.zone_id is not None and entry.zone_id != query.zone_id:
                continue
            if query.record_id is not None and entry.record_id != query.record_id:
                continue
            if since is not None and entry.created_at < since:
                continue
            matched.append(entry)
        matched.sort(key=lambda e: e.created_at, reverse=True)
        return matched[: query.limit()]

    def latest_per_zone(self, actor: Optional[str] = None) -> Dict[str, UpdateLedgerEntry]:
        """Most recent entry per zone, used to show a zone's last run."""
        latest: Dict[str, UpdateLedgerEntry] = {}
        for entry in self._entries():
            if actor is not None and not _same_actor(entry.actor, actor):
                continue
            current = latest.get(entry.zone_id)
            if current is None or entry.created_at > current.created_at:
                latest[entry.zone_id] = entry
        return latest

    def latest_rollback_candidates(
        self, actor: Optional[str] = None
    ) -> Dict[Tuple[str, str], UpdateLedgerEntry]:
        """Most recent reversible entry per ``(zone_id, record_id)``."""
        latest: Dict[Tuple[str, str], UpdateLedgerEntry] = {}
        for entry in self._entries():
            if not entry.can_rollback:
                continue
            if actor is not None and not _same_actor(entry.actor, actor):
                continue
            key = (entry.zone_id, entry.record_id)
            current = latest.get(key)
            if current is None or entry.created_at > current.created_at:
                latest[key] = entry
        return latest

    def delete_all(self, actor: str) -> int:
        """Purge every entry written by ``actor``. Returns the count removed."""

        def _purge(entries: List[Dict[str, Any]]) -> int:
            kept = [raw for raw in entries if not _same_actor(raw.get("actor"), actor)]
            removed = len(entries) - len(kept)
            entries[:] = kept
            return removed

        removed = self._write(_purge)
        logger.info(f"Purged {removed} ledger entries for {actor}")
        return removed


# =============================================================================
# Runtime Side Channels
# =============================================================================


class IpStateCache(JsonFileStore):
    """Last observed IPs plus the pending alert-suppression flag.

    Shared by every process working for one operator: a manual ``update``
    run records its IP advance and suppression here, and the ``run`` daemon
    re-reads it before each observation. Not authoritative.
    """

    def __init__(self, path: str):
        super().__init__(
            path, lambda: {"current": None, "previous": None, "suppressNext": False}
        )

    def restore(self) -> RuntimeIpState:
        with self._lock:
            data = self.load()
        return RuntimeIpState(current_ip=data.get("current"), previous_ip=data.get("previous"))

    def suppress_next(self) -> bool:
        with self._lock:
            return bool(self.load().get("suppressNext"))

    def persist(self, state: Optional[RuntimeIpState], suppress_next: Optional[bool] = None) -> None:
        """Store ``state`` and/or the suppression flag.

        ``None`` for either argument keeps what is already stored.
        """
        try:
            with self.locked():
                data = self.load()
                if state is not None:
                    data["current"] = state.current_ip
                    data["previous"] = state.previous_ip
                if suppress_next is not None:
                    data["suppressNext"] = bool(suppress_next)
                self.save(data)
        except OSError as e:
            logger.warning(f"Failed to persist IP history to {self.path}: {e}")


class AuditLog(JsonFileStore):
    """Per-operator stream of audit events (updates, rollbacks, settings).

    Recording is best effort: a failure is logged and never reaches the
    caller.
    """

    def __init__(self, path: str):
        super().__init__(path, lambda: {"version": 1, "events": []})

    def record(
        self,
        user_id: str,
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        event = AuditEvent(
            id=uuid.uuid4().hex,
            user_id=user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            detail=detail,
            created_at=utcnow(),
        )
        try:
            with self.locked():
                state = self.load()
                state.setdefault("events", []).append(event.to_dict())
                self.save(state)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Audit event '{action}' for '{user_id}' was not recorded: {e}")
            return None
        return event.id

    def events(
        self,
        user_id: str,
        *,
        take: int = AUDIT_TAKE,
        months: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        """The user's events, newest first."""
        since = months_ago(now or utcnow(), int(months)) if months and months > 0 else None
        with self._lock:
            raw_events = self.load().get("events", [])
        matched = []
        for raw in raw_events:
            if raw.get("userId") != user_id:
                continue
            try:
                event = AuditEvent.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                continue
            if since is not None and event.created_at < since:
                continue
            matched.append(event)
        matched.sort(key=lambda e: e.created_at, reverse=True)
        limit = min(int(take), MAX_TAKE) if take and take > 0 else AUDIT_TAKE
        return matched[:limit]

    def delete_all(self, user_id: str) -> int:
        with self.locked():
            state = self.load()
            events = state.get("events", [])
            kept = [raw for raw in events if raw.get("userId") != user_id]
            removed = len(events) - len(kept)
            state["events"] = kept
            self.save(state)
        logger.info(f"Purged {removed} audit events for '{user_id}'")
        return removed


class ActivityLog:
    """Operator-facing activity feed, newest first.

    Capped at 100 entries and 7 days. Persistence is best effort; with no
    path the feed lives in memory only.
    """

    LEVELS = ("info", "success", "warning", "error")

    def __init__(self, path: Optional[str] = None):
        self._store = JsonFileStore(path, lambda: {"entries": []}) if path else None
        self._entries: Deque[ActivityEntry] = deque(maxlen=ACTIVITY_MAX_ENTRIES)
        self._lock = threading.Lock()
        if self._store is not None:
            loaded = []
            for raw in self._store.load().get("entries", []):
                try:
                    loaded.append(ActivityEntry.from_dict(raw))
                except (KeyError, TypeError, ValueError):
                    continue
            self._entries.extend(loaded[:ACTIVITY_MAX_ENTRIES])
            self._prune(utcnow())

    def _prune(self, now: datetime) -> None:
        cutoff = now - ACTIVITY_RETENTION
        kept = [e for e in self._entries if e.created_at >= cutoff]
        self._entries.clear()
        self._entries.extend(kept)

    def add(self, level: str, message: str, title: str = "") -> ActivityEntry:
        if level not in self.LEVELS:
            raise ValueError(f"Unknown activity level: {level}")
        entry = ActivityEntry(created_at=utcnow(), level=level, message=message, title=title)
        with self._lock:
            self._entries.appendleft(entry)
            self._prune(entry.created_at)
            snapshot = [e.to_dict() for e in self._entries]
        if self._store is not None:
            try:
                self._store.save({"entries": snapshot})
            except OSError as e:
                logger.warning(f"Failed to persist activity log: {e}")
        return entry

    def entries(self, level: Optional[str] = None) -> List[ActivityEntry]:
        with self._lock:
            items = list(self._entries)
        if level is not None:
            items = [e for e in items if e.level == level]
        return items
