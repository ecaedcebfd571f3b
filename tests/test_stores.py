"""Unit tests for the JSON-file stores."""

import json
import multiprocessing
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from flarewatcher.errors import LedgerWriteError, SettingsValidationError
from flarewatcher.models import (
    RuntimeIpState,
    Trigger,
    UpdateLedgerEntry,
    UpdateStatus,
    parse_timestamp,
)
from flarewatcher.stores import (
    MAX_TAKE,
    ActivityLog,
    AuditLog,
    IpStateCache,
    JsonFileStore,
    LedgerQuery,
    SettingsStore,
    UpdateLedger,
    months_ago,
)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def make_entry(**overrides) -> UpdateLedgerEntry:
    values = dict(
        id=UpdateLedger.new_entry_id(),
        zone_id="zone-1",
        token_id="main",
        record_id="rec-1",
        name="home.example.com",
        type="A",
        previous_content="203.0.113.10",
        previous_ttl=300,
        previous_proxied=False,
        content="203.0.113.20",
        ttl=300,
        proxied=False,
        comment=None,
        status=UpdateStatus.SUCCESS,
        trigger=Trigger.AUTO,
        actor="ops@example.com",
        propagated=True,
        propagation_note="DNS record matches the new content.",
        response="{}",
        created_at=NOW,
    )
    values.update(overrides)
    return UpdateLedgerEntry(**values)


# =============================================================================
# JsonFileStore
# =============================================================================


class TestJsonFileStore:
    """Tests for the atomic JSON document store."""

    def test_load_returns_default_when_file_missing(self, tmp_path: Path) -> None:
        """Test load returns the default document when the file doesn't exist."""
        store = JsonFileStore(str(tmp_path / "missing" / "state.json"), lambda: {"version": 1})

        assert store.load() == {"version": 1}

    def test_load_returns_default_on_invalid_json(self, tmp_path: Path) -> None:
        """Test a corrupt file falls back to the default in lenient mode."""
        state_file = tmp_path / "state.json"
        state_file.write_text("not valid json {{{")
        store = JsonFileStore(str(state_file), lambda: {"version": 1})

        assert store.load() == {"version": 1}

    def test_strict_load_raises_on_invalid_json(self, tmp_path: Path) -> None:
        """Test a corrupt file raises in strict mode."""
        state_file = tmp_path / "state.json"
        state_file.write_text("not valid json {{{")
        store = JsonFileStore(str(state_file), lambda: {"version": 1}, strict=True)

        with pytest.raises(ValueError):
            store.load()

    def test_save_creates_parent_directories(self, tmp_path: Path) -> None:
        """Test save creates parent directories if they don't exist."""
        state_file = tmp_path / "nested" / "path" / "state.json"
        store = JsonFileStore(str(state_file), dict)

        store.save({"version": 1})

        assert state_file.exists()

    def test_save_atomic_via_temp_file(self, tmp_path: Path) -> None:
        """Test save leaves no temp file behind."""
        state_file = tmp_path / "state.json"
        store = JsonFileStore(str(state_file), dict)

        store.save({"version": 1})
        store.save({"version": 2})

        assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]
        assert json.loads(state_file.read_text()) == {"version": 2}

    def test_failed_save_removes_temp_file(self, tmp_path: Path) -> None:
        """Test an unserializable document leaves the old file and no temp file."""
        state_file = tmp_path / "state.json"
        store = JsonFileStore(str(state_file), dict)
        store.save({"version": 1})

        with pytest.raises(TypeError):
            store.save({"version": object()})

        assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]
        assert json.loads(state_file.read_text()) == {"version": 1}

    def test_locked_is_reentrant(self, tmp_path: Path) -> None:
        store = JsonFileStore(str(tmp_path / "state.json"), dict)

        with store.locked():
            with store.locked():
                store.save({"version": 1})

        assert (tmp_path / "state.json.lock").exists()
        assert store.load() == {"version": 1}

    def test_save_sorts_keys_for_deterministic_output(self, tmp_path: Path) -> None:
        """Test saved JSON is indented with sorted keys."""
        state_file = tmp_path / "state.json"
        store = JsonFileStore(str(state_file), dict)

        store.save({"zeta": 1, "alpha": 2})

        content = state_file.read_text()
        assert "\n" in content
        assert content.find('"alpha"') < content.find('"zeta"')


# =============================================================================
# SettingsStore
# =============================================================================


class TestSettingsStore:
    """Tests for per-operator settings persistence."""

    def test_get_missing_operator(self, tmp_path: Path) -> None:
        """Test an operator without settings reads as None."""
        store = SettingsStore(str(tmp_path / "settings.json"))

        assert store.get("home") is None

    def test_upsert_creates_with_defaults(self, tmp_path: Path) -> None:
        """Test the first upsert fills unspecified fields with defaults."""
        store = SettingsStore(str(tmp_path / "settings.json"))

        settings = store.upsert("home", {"intervalMinutes": 10})

        assert settings.interval_minutes == 10
        assert settings.notify_on_ip_change is True
        assert store.get("home") == settings

    def test_upsert_is_partial(self, tmp_path: Path) -> None:
        """Test an upsert only touches the keys it names."""
        store = SettingsStore(str(tmp_path / "settings.json"))
        store.upsert("home", {"intervalMinutes": 10, "smtpHost": "mail.example.com"})

        settings = store.upsert("home", {"smtpHost": None})

        assert settings.interval_minutes == 10
        assert settings.smtp_host is None

    def test_invalid_upsert_is_not_persisted(self, tmp_path: Path) -> None:
        """Test a rejected payload leaves stored settings untouched."""
        store = SettingsStore(str(tmp_path / "settings.json"))
        store.upsert("home", {"intervalMinutes": 10})

        with pytest.raises(SettingsValidationError):
            store.upsert("home", {"intervalMinutes": 0})

        assert store.get("home").interval_minutes == 10

    def test_stored_keys_are_camel_case(self, tmp_path: Path) -> None:
        """Test the on-disk document uses the camelCase field names."""
        settings_file = tmp_path / "settings.json"
        store = SettingsStore(str(settings_file))

        store.upsert("home", {"monitored_records": [{"zone_id": "z", "record_id": "r"}]})

        stored = json.loads(settings_file.read_text())["operators"]["home"]
        assert stored["monitoredRecords"] == [{"zoneId": "z", "recordId": "r"}]
        assert "intervalMinutes" in stored

    def test_seed_only_applies_once(self, tmp_path: Path) -> None:
        """Test seeding never overwrites stored settings."""
        store = SettingsStore(str(tmp_path / "settings.json"))

        assert store.seed("home", {"intervalMinutes": 15}) is not None
        assert store.seed("home", {"intervalMinutes": 30}) is None
        assert store.get("home").interval_minutes == 15


# =============================================================================
# UpdateLedger
# =============================================================================


class TestMonthsAgo:
    def test_clamps_day_of_month(self) -> None:
        """Test the day is clamped to the target month's length."""
        now = datetime(2024, 3, 31, tzinfo=timezone.utc)

        assert months_ago(now, 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_crosses_year_boundary(self) -> None:
        now = datetime(2024, 2, 10, tzinfo=timezone.utc)

        assert months_ago(now, 3) == datetime(2023, 11, 10, tzinfo=timezone.utc)


class TestLedgerQueryLimit:
    """Tests for row limits on ledger listings."""

    def test_default_take(self) -> None:
        assert LedgerQuery().limit() == 15

    def test_take_is_capped(self) -> None:
        assert LedgerQuery(take=5000).limit() == 2000

    def test_months_without_take(self) -> None:
        """Test a month window without a limit returns up to the maximum."""
        assert LedgerQuery(months=3).limit() == 2000

    def test_explicit_take_with_months(self) -> None:
        assert LedgerQuery(months=3, take=50).limit() == 50


class TestUpdateLedger:
    """Tests for the append-only update ledger."""

    def test_append_and_get(self, tmp_path: Path) -> None:
        """Test an appended entry can be read back by id."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        entry = make_entry()

        entry_id = ledger.append(entry)

        assert entry_id == entry.id
        assert ledger.get(entry_id) == entry
        assert ledger.get("missing") is None

    def test_query_newest_first_with_default_limit(self, tmp_path: Path) -> None:
        """Test listings are newest first and capped at 15 rows."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        for i in range(20):
            ledger.append(make_entry(record_id=f"rec-{i}", created_at=NOW + timedelta(minutes=i)))

        entries = ledger.query()

        assert len(entries) == 15
        assert entries[0].record_id == "rec-19"
        assert entries[-1].record_id == "rec-5"

    def test_query_filters_actor_case_insensitively(self, tmp_path: Path) -> None:
        """Test the actor filter ignores case and surrounding whitespace."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        ledger.append(make_entry(actor="Ops@Example.com"))
        ledger.append(make_entry(actor="other@example.com", record_id="rec-2"))

        entries = ledger.query(LedgerQuery(actor=" ops@example.com "))

        assert [e.record_id for e in entries] == ["rec-1"]

    def test_query_month_window(self, tmp_path: Path) -> None:
        """Test entries older than the window are excluded."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        ledger.append(make_entry(record_id="recent", created_at=NOW - timedelta(days=40)))
        ledger.append(make_entry(record_id="old", created_at=NOW - timedelta(days=200)))

        entries = ledger.query(LedgerQuery(months=3), now=NOW)

        assert [e.record_id for e in entries] == ["recent"]

    def test_query_by_zone_and_record(self, tmp_path: Path) -> None:
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        ledger.append(make_entry(zone_id="zone-1", record_id="rec-1"))
        ledger.append(make_entry(zone_id="zone-2", record_id="rec-1"))

        entries = ledger.query(LedgerQuery(zone_id="zone-2", record_id="rec-1"))

        assert len(entries) == 1
        assert entries[0].zone_id == "zone-2"

    def test_created_at_strictly_increases_per_record(self, tmp_path: Path) -> None:
        """Test entries for one record keep attempt order even with equal clocks."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        first = ledger.append(make_entry())
        second = ledger.append(make_entry())

        assert ledger.get(second).created_at > ledger.get(first).created_at
        assert ledger.query()[0].id == second

    def test_other_records_are_not_nudged(self, tmp_path: Path) -> None:
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        ledger.append(make_entry())
        other = ledger.append(make_entry(record_id="rec-2"))

        assert ledger.get(other).created_at == NOW

    def test_append_parses_only_matching_record_timestamps(self, tmp_path: Path) -> None:
        """Test appending does not decode every stored entry."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        ledger.append(make_entry())
        for n in range(20):
            ledger.append(make_entry(record_id=f"other-{n}"))

        with patch("flarewatcher.stores.parse_timestamp", wraps=parse_timestamp) as parse:
            ledger.append(make_entry())

        assert parse.call_count == 1

    def test_mark_error_backfills_status(self, tmp_path: Path) -> None:
        """Test a crashed request can be recorded as failed after the fact."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        entry_id = ledger.append(make_entry())

        assert ledger.mark_error(entry_id, "boom") is True

        entry = ledger.get(entry_id)
        assert entry.status is UpdateStatus.ERROR
        assert json.loads(entry.response) == {"error": "boom"}
        assert ledger.mark_error("missing", "boom") is False

    def test_latest_per_zone(self, tmp_path: Path) -> None:
        """Test each zone reports its most recent entry."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        ledger.append(make_entry(zone_id="zone-1", record_id="a", created_at=NOW))
        newest = ledger.append(
            make_entry(zone_id="zone-1", record_id="b", created_at=NOW + timedelta(hours=1))
        )
        other = ledger.append(make_entry(zone_id="zone-2", record_id="c"))

        latest = ledger.latest_per_zone()

        assert latest["zone-1"].id == newest
        assert latest["zone-2"].id == other

    def test_latest_rollback_candidates_skip_irreversible(self, tmp_path: Path) -> None:
        """Test entries without snapshot or token never become candidates."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        reversible = ledger.append(make_entry(created_at=NOW))
        ledger.append(make_entry(previous_content=None, created_at=NOW + timedelta(hours=1)))
        ledger.append(make_entry(record_id="rec-2", token_id=None))

        candidates = ledger.latest_rollback_candidates()

        assert list(candidates) == [("zone-1", "rec-1")]
        assert candidates[("zone-1", "rec-1")].id == reversible

    def test_delete_all_only_removes_actor(self, tmp_path: Path) -> None:
        """Test purging is scoped to one actor and reports the count."""
        ledger = UpdateLedger(str(tmp_path / "ledger.json"))
        ledger.append(make_entry(actor="ops@example.com"))
        ledger.append(make_entry(actor="OPS@example.com", record_id="rec-2"))
        kept = ledger.append(make_entry(actor="other@example.com", record_id="rec-3"))

        assert ledger.delete_all("ops@example.com") == 2
        assert [e.id for e in ledger.query()] == [kept]

    def test_corrupt_file_is_never_overwritten(self, tmp_path: Path) -> None:
        """Test an unreadable ledger raises instead of starting over."""
        ledger_file = tmp_path / "ledger.json"
        ledger_file.write_text("{{{")
        ledger = UpdateLedger(str(ledger_file))

        with pytest.raises(LedgerWriteError):
            ledger.append(make_entry())
        with pytest.raises(LedgerWriteError):
            ledger.query()

        assert ledger_file.read_text() == "{{{"


def _append_entries(path: str, actor: str, count: int) -> None:
    ledger = UpdateLedger(path)
    for index in range(count):
        ledger.append(make_entry(actor=actor, record_id=f"{actor}-{index}"))


class TestConcurrentWriters:
    """Tests for several writers sharing one ledger file."""

    def test_appends_from_separate_processes(self, tmp_path: Path) -> None:
        """Test a daemon and a one-shot command appending at once lose nothing."""
        path = str(tmp_path / "ledger.json")
        workers = [
            multiprocessing.Process(target=_append_entries, args=(path, f"p{n}@example.com", 40))
            for n in range(2)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=120)

        assert [w.exitcode for w in workers] == [0, 0]
        entries = UpdateLedger(path).query(LedgerQuery(take=MAX_TAKE))
        assert len(entries) == 80
        assert len({e.id for e in entries}) == 80
        assert sorted(p.name for p in tmp_path.iterdir()) == ["ledger.json", "ledger.json.lock"]

    def test_appends_from_separate_store_instances(self, tmp_path: Path) -> None:
        """Test two store objects on one file are serialized by the file lock."""
        path = str(tmp_path / "ledger.json")
        threads = [
            threading.Thread(target=_append_entries, args=(path, f"t{n}@example.com", 25))
            for n in range(3)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert len(UpdateLedger(path).query(LedgerQuery(take=MAX_TAKE))) == 75

    def test_settings_upserts_from_separate_instances(self, tmp_path: Path) -> None:
        """Test partial upserts for different operators do not overwrite each other."""
        path = str(tmp_path / "settings.json")

        def save(operator_id: str) -> None:
            store = SettingsStore(path)
            for minutes in range(1, 21):
                store.upsert(operator_id, {"intervalMinutes": minutes})

        threads = [threading.Thread(target=save, args=(f"op-{n}",)) for n in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        store = SettingsStore(path)
        assert [store.get(f"op-{n}").interval_minutes for n in range(3)] == [20, 20, 20]


# =============================================================================
# Side channels
# =============================================================================


class TestIpStateCache:
    def test_round_trip(self, tmp_path: Path) -> None:
        """Test the last observed IPs survive a restart."""
        cache = IpStateCache(str(tmp_path / "ip-state.json"))
        cache.persist(RuntimeIpState(current_ip="203.0.113.20", previous_ip="203.0.113.10"))

        restored = IpStateCache(str(tmp_path / "ip-state.json")).restore()

        assert restored == RuntimeIpState(current_ip="203.0.113.20", previous_ip="203.0.113.10")

    def test_missing_file_is_empty_state(self, tmp_path: Path) -> None:
        assert IpStateCache(str(tmp_path / "none.json")).restore() == RuntimeIpState()
        assert IpStateCache(str(tmp_path / "none.json")).suppress_next() is False

    def test_suppression_flag_shared_between_instances(self, tmp_path: Path) -> None:
        """Test a flag set by one process is visible to another and survives IP writes."""
        writer = IpStateCache(str(tmp_path / "ip-state.json"))
        reader = IpStateCache(str(tmp_path / "ip-state.json"))

        writer.persist(None, suppress_next=True)
        writer.persist(RuntimeIpState(current_ip="203.0.113.20"))

        assert reader.suppress_next() is True
        assert reader.restore().current_ip == "203.0.113.20"

        reader.persist(None, suppress_next=False)

        assert writer.suppress_next() is False
        assert writer.restore().current_ip == "203.0.113.20"


class TestAuditLog:
    """Tests for the per-operator audit event stream."""

    def test_record_and_list_newest_first(self, tmp_path: Path) -> None:
        audit = AuditLog(str(tmp_path / "audit.json"))
        audit.record("home", "dns.update", "record", "rec-1", {"status": "success"})
        audit.record("home", "dns.rollback", "record", "rec-1")
        audit.record("lab", "settings.update", "settings")

        events = AuditLog(str(tmp_path / "audit.json")).events("home")

        assert [e.action for e in events] == ["dns.rollback", "dns.update"]
        assert events[1].target_id == "rec-1"
        assert events[1].detail == {"status": "success"}

    def test_default_take_is_two_hundred(self, tmp_path: Path) -> None:
        audit = AuditLog(str(tmp_path / "audit.json"))
        for _ in range(205):
            audit.record("home", "dns.update")

        assert len(audit.events("home")) == 200
        assert len(audit.events("home", take=5)) == 5

    def test_month_window(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.json"
        path.write_text(
            json.dumps(
                {
                    "events": [
                        {"id": "old", "userId": "home", "action": "dns.update",
                         "createdAt": "2023-01-01T00:00:00+00:00"},
                        {"id": "new", "userId": "home", "action": "dns.update",
                         "createdAt": "2024-06-01T00:00:00+00:00"},
                    ]
                }
            )
        )

        events = AuditLog(str(path)).events("home", months=3, now=NOW)

        assert [e.id for e in events] == ["new"]

    def test_delete_all_scoped_to_user(self, tmp_path: Path) -> None:
        audit = AuditLog(str(tmp_path / "audit.json"))
        audit.record("home", "dns.update")
        audit.record("lab", "dns.update")

        assert audit.delete_all("home") == 1
        assert audit.events("home") == []
        assert len(audit.events("lab")) == 1

    def test_record_failure_is_swallowed(self, tmp_path: Path) -> None:
        """Test an unwritable audit file never reaches the caller."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        audit = AuditLog(str(blocker / "audit.json"))

        assert audit.record("home", "dns.update") is None


class TestActivityLog:
    """Tests for the capped operator activity feed."""

    def test_newest_first(self) -> None:
        log = ActivityLog()
        log.add("info", "first")
        log.add("success", "second")

        assert [e.message for e in log.entries()] == ["second", "first"]

    def test_capped_at_one_hundred(self) -> None:
        """Test the oldest entries fall off past 100."""
        log = ActivityLog()
        for i in range(105):
            log.add("info", str(i))

        entries = log.entries()
        assert len(entries) == 100
        assert entries[0].message == "104"
        assert entries[-1].message == "5"

    def test_level_filter(self) -> None:
        log = ActivityLog()
        log.add("info", "a")
        log.add("error", "b")

        assert [e.message for e in log.entries("error")] == ["b"]

    def test_unknown_level_rejected(self) -> None:
        with pytest.raises(ValueError):
            ActivityLog().add("fatal", "nope")

    def test_persisted_and_pruned_on_load(self, tmp_path: Path) -> None:
        """Test entries older than seven days are dropped when reloaded."""
        path = tmp_path / "activity.json"
        stale = (datetime.now(timezone.utc) - timedelta(days=8)).isoformat()
        path.write_text(
            json.dumps(
                {"entries": [{"createdAt": stale, "level": "info", "message": "old", "title": ""}]}
            )
        )

        log = ActivityLog(str(path))
        log.add("warning", "fresh", title="Auto-update disabled")
        reloaded = ActivityLog(str(path))

        assert [e.message for e in reloaded.entries()] == ["fresh"]
        assert reloaded.entries()[0].title == "Auto-update disabled"
