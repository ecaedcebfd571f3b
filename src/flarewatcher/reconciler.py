"""Monitored-record reconciliation.

One :class:`ReconciliationLoop` per operator keeps that operator's monitored
DNS records pointed at the current public IP. A tick runs three steps:

    1. Resolve   - ask the PublicIpResolver for the current IP. On failure the
                   tick ends and nothing else changes.
    2. Detect    - compare against RuntimeIpState. A change is announced
                   (activity log + optional alert) unless a manual action set
                   the suppression flag, which is consumed by the first
                   observation after it was set.
    3. Reconcile - every monitored record whose DNS content differs from the
                   IP is rewritten with trigger=auto, one record at a time.

Every write attempt, successful or not, lands in the UpdateLedger with the
pre-write snapshot so it can be rolled back. An auto-triggered failure removes
the record from the monitored set.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from flarewatcher.alerts import AlertDispatcher
from flarewatcher.credentials import CredentialResolver
from flarewatcher.errors import (
    CredentialMissing,
    FlarewatcherError,
    IpResolutionFailed,
    LedgerWriteError,
    PropagationCheckFailed,
    ProviderError,
    RollbackUnavailable,
)
from flarewatcher.models import (
    AlertPayload,
    DnsRecord,
    MonitoredRecord,
    Operator,
    PropagationResult,
    RuntimeIpState,
    Settings,
    Trigger,
    UpdateLedgerEntry,
    UpdateStatus,
    utcnow,
)
from flarewatcher.providers import DnsRecordGateway, PublicIpResolver
from flarewatcher.stores import ActivityLog, AuditLog, IpStateCache, SettingsStore, UpdateLedger

logger = logging.getLogger(__name__)

ROLLBACK_COMMENT = "Flarewatcher rollback"
ROLLBACK_LEDGER_COMMENT = "Rollback"
IP_CHANGE_ALERT_TITLE = "Flarewatcher IP change"
AUTO_DISABLED_ALERT_TITLE = "Flarewatcher auto-update disabled"
PROPAGATION_RECORD_TYPES = ("A", "AAAA")


@dataclass(frozen=True)
class UpdateOutcome:
    status: UpdateStatus
    message: str
    entry_id: Optional[str] = None
    propagation: Optional[PropagationResult] = None
    auto_disabled: bool = False

    @property
    def ok(self) -> bool:
        return self.status is UpdateStatus.SUCCESS


@dataclass(frozen=True)
class RollbackOutcome:
    status: UpdateStatus
    message: str
    entry_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is UpdateStatus.SUCCESS


@dataclass(frozen=True)
class TickResult:
    """What a single tick observed and did."""

    ip: Optional[str]
    changed: bool = False
    suppressed: bool = False
    reconciled: bool = False
    error: Optional[str] = None
    outcomes: List[UpdateOutcome] = field(default_factory=list)


class ReconciliationLoop:
    """Per-operator IP change detection and DNS reconciliation.

    Ticks, manual updates, rollbacks and monitored-set edits are serialized
    on one re-entrant lock, so at most one pass touches the provider at a
    time and ledger order within a tick is deterministic.

    With an ``ip_cache`` the IP history and the suppression flag are shared
    with other processes for the same operator, so a manual ``update`` run
    next to the daemon is not re-announced by the daemon's next tick.
    """

    def __init__(
        self,
        *,
        operator: Operator,
        resolver: PublicIpResolver,
        gateway: DnsRecordGateway,
        settings_store: SettingsStore,
        ledger: UpdateLedger,
        alerts: AlertDispatcher,
        credentials: CredentialResolver,
        activity: Optional[ActivityLog] = None,
        ip_cache: Optional[IpStateCache] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.operator = operator
        self.resolver = resolver
        self.gateway = gateway
        self.settings_store = settings_store
        self.ledger = ledger
        self.alerts = alerts
        self.credentials = credentials
        self.activity = activity or ActivityLog()
        self.audit = audit
        self._ip_cache = ip_cache
        self.ip_state = ip_cache.restore() if ip_cache else RuntimeIpState()
        self._suppress_next_alert = False
        self._pass_lock = threading.RLock()
        self._zone_tokens: Dict[str, str] = {}
        self._records: Dict[str, DnsRecord] = {}

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def suppressed(self) -> bool:
        return self._suppress_next_alert

    def suppress_next_alert(self) -> None:
        """Keep the next observed transition from being announced."""
        self._set_suppression(True)

    def cached_record(self, zone_id: str, record_id: str) -> Optional[DnsRecord]:
        return self._records.get(MonitoredRecord(zone_id, record_id).key)

    def _settings(self) -> Optional[Settings]:
        return self.settings_store.get(self.operator.id)

    def _set_suppression(self, value: bool) -> None:
        self._suppress_next_alert = value
        if self._ip_cache is not None:
            self._ip_cache.persist(None, suppress_next=value)

    def _persist_ip_state(self, suppress_next: Optional[bool] = None) -> None:
        if self._ip_cache is not None:
            self._ip_cache.persist(self.ip_state, suppress_next=suppress_next)

    def _sync_shared_state(self) -> None:
        """Adopt IP advances and suppression recorded by other processes."""
        if self._ip_cache is None:
            return
        shared = self._ip_cache.restore()
        if shared.current_ip is not None:
            self.ip_state = shared
        if self._ip_cache.suppress_next():
            self._suppress_next_alert = True

    def _audit(
        self,
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        detail: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> None:
        if self.audit is not None:
            self.audit.record(user_id or self.operator.id, action, target_type, target_id, detail)

    def _dispatch(self, payload: AlertPayload) -> None:
        try:
            self.alerts.notify(self.operator.id, payload)
        except Exception as e:
            logger.warning(f"Alert '{payload.title}' could not be dispatched: {e}")

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def prime(self) -> Optional[str]:
        """Resolve once at startup and adopt the result without announcing it."""
        with self._pass_lock:
            try:
                ip = self.resolver.resolve()
            except IpResolutionFailed as e:
                logger.warning(f"Initial IP check for '{self.operator.id}' failed: {e}")
                return None
            if self.ip_state.advance(ip):
                self._persist_ip_state()
            logger.info(
                f"Operator '{self.operator.id}': public IP {ip} "
                f"(previous: {self.ip_state.previous_ip or '-'})"
            )
            return ip

    def tick(self, reconcile: bool = True) -> TickResult:
        """Run one resolve/detect pass, followed by reconciliation if asked."""
        with self._pass_lock:
            try:
                ip = self.resolver.resolve()
            except IpResolutionFailed as e:
                logger.error(f"IP check failed for '{self.operator.id}': {e}")
                self.activity.add("error", str(e), title="IP check failed")
                return TickResult(ip=None, error=str(e))

            changed, suppressed = self._observe(ip)
            result = TickResult(ip=ip, changed=changed, suppressed=suppressed)
            if reconcile:
                result = replace(result, reconciled=True, outcomes=self.reconcile(ip))
            return result

    def _observe(self, ip: str):
        self._sync_shared_state()
        suppressed = self._suppress_next_alert
        previous = self.ip_state.current_ip

        if ip == previous:
            if suppressed:
                self._set_suppression(False)
            return False, suppressed

        self._suppress_next_alert = False
        self.ip_state.advance(ip)
        self._persist_ip_state(suppress_next=False if suppressed else None)

        if previous is None:
            logger.info(f"Public IP detected: {ip}")
            self.activity.add("info", f"Public IP detected: {ip}")
        elif suppressed:
            logger.debug(f"IP change {previous} -> {ip} already reported by a manual action")
        else:
            logger.info(f"IP change detected: {previous} -> {ip}")
            self.activity.add("info", f"{previous} -> {ip}", title="IP change detected")
            settings = self._settings()
            if settings is not None and settings.notify_on_ip_change:
                self._dispatch(
                    AlertPayload(
                        title=IP_CHANGE_ALERT_TITLE,
                        body=f"Previous IP: {previous}\nCurrent IP: {ip}",
                        previous_ip=previous,
                        current_ip=ip,
                    )
                )
        return True, suppressed

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    def refresh_zone_tokens(self) -> Dict[str, str]:
        """Map every visible zone to the first configured token that sees it."""
        mapping: Dict[str, str] = {}
        for token_id in self.credentials.token_ids(self.operator.id):
            try:
                credential = self.credentials.resolve(self.operator.id, token_id)
                zones = self.gateway.list_zones(credential)
            except (CredentialMissing, ProviderError) as e:
                logger.warning(f"Could not list zones for token '{token_id}': {e}")
                self.activity.add("error", str(e), title="Zone sync failed")
                for zone_id, owner in self._zone_tokens.items():
                    if owner == token_id:
                        mapping.setdefault(zone_id, token_id)
                continue
            for zone in zones:
                mapping.setdefault(zone.id, token_id)
        self._zone_tokens = mapping
        return dict(mapping)

    def token_for_zone(self, zone_id: str) -> Optional[str]:
        if zone_id not in self._zone_tokens:
            self.refresh_zone_tokens()
        return self._zone_tokens.get(zone_id)

    def reconcile(self, ip: str) -> List[UpdateOutcome]:
        """Rewrite every monitored record whose content differs from ``ip``."""
        with self._pass_lock:
            settings = self._settings()
            monitored = list(settings.monitored_records) if settings else []
            if not ip or not monitored:
                return []

            self.refresh_zone_tokens()
            zone_records: Dict[str, Dict[str, DnsRecord]] = {}
            outcomes: List[UpdateOutcome] = []

            for item in monitored:
                try:
                    outcome = self._reconcile_record(item, ip, zone_records)
                except LedgerWriteError as e:
                    logger.critical(f"Reconciling {item.key}: {e}")
                    continue
                except FlarewatcherError as e:
                    logger.error(f"Skipping {item.key} this tick: {e}")
                    self.activity.add("error", str(e), title="Auto-update skipped")
                    continue
                except Exception as e:
                    logger.error(f"Unexpected error reconciling {item.key}: {e}", exc_info=True)
                    self.activity.add("error", str(e), title="Auto-update skipped")
                    continue
                if outcome is not None:
                    outcomes.append(outcome)
            return outcomes

    def _reconcile_record(
        self,
        item: MonitoredRecord,
        ip: str,
        zone_records: Dict[str, Dict[str, DnsRecord]],
    ) -> Optional[UpdateOutcome]:
        token_id = self._zone_tokens.get(item.zone_id)
        if token_id is None:
            logger.warning(f"No token can access zone {item.zone_id}; skipping {item.record_id}")
            return None

        if item.zone_id not in zone_records:
            zone_records[item.zone_id] = {}
            credential = self.credentials.resolve(self.operator.id, token_id)
            records = self.gateway.list_records(item.zone_id, credential)
            zone_records[item.zone_id] = {r.id: r for r in records}
            for record in records:
                self._records[MonitoredRecord(record.zone_id, record.id).key] = record

        record = zone_records[item.zone_id].get(item.record_id)
        if record is None:
            logger.debug(f"Monitored record {item.key} not found in zone listing")
            return None
        if record.content == ip:
            return None
        return self.update_record(item.zone_id, record, ip, token_id, Trigger.AUTO)

    # -------------------------------------------------------------------------
    # UpdateRecord
    # -------------------------------------------------------------------------

    def update_record(
        self,
        zone_id: str,
        record: DnsRecord,
        new_content: str,
        token_id: str,
        trigger: Trigger = Trigger.MANUAL,
        *,
        comment: Optional[str] = None,
        trusted_snapshot: bool = False,
    ) -> UpdateOutcome:
        """Write ``new_content`` to a record and log the attempt.

        The live record is re-read first unless ``trusted_snapshot`` is set,
        so the ledger's "previous" values reflect what was actually replaced.
        ``comment`` defaults to the record's existing comment.

        Raises CredentialMissing when the token is unusable (nothing is
        written or disabled) and LedgerWriteError when the audit entry could
        not be stored; in that case the DNS write is kept.
        """
        trigger = Trigger(trigger)
        if trigger is Trigger.ROLLBACK:
            raise ValueError("Rollbacks go through rollback()")

        with self._pass_lock:
            if trigger is Trigger.MANUAL:
                self._set_suppression(True)
            logger.info(f"Updating {record.name} -> {new_content} ({trigger.value})")
            self.activity.add("info", f"Updating {record.name} -> {new_content}")

            credential = self.credentials.resolve(self.operator.id, token_id)
            if trusted_snapshot:
                current = record
            else:
                try:
                    current = self.gateway.read_record(zone_id, record.id, credential)
                except ProviderError as e:
                    return self._handle_failure(zone_id, record, trigger, str(e), None)

            comment_value = comment if comment is not None else current.comment
            result = self.gateway.write_record(
                zone_id,
                current.id,
                credential,
                name=current.name,
                type=current.type,
                content=new_content,
                ttl=current.ttl,
                proxied=current.proxied,
                comment=comment_value,
            )
            propagation = self._check_propagation(current, new_content) if result.success else None

            entry = UpdateLedgerEntry(
                id=self.ledger.new_entry_id(),
                zone_id=zone_id,
                token_id=token_id,
                record_id=current.id,
                name=current.name,
                type=current.type.upper(),
                previous_content=current.content,
                previous_ttl=current.ttl,
                previous_proxied=current.proxied,
                content=new_content,
                ttl=current.ttl,
                proxied=current.proxied,
                comment=comment_value,
                status=UpdateStatus.SUCCESS if result.success else UpdateStatus.ERROR,
                trigger=trigger,
                actor=self.operator.email,
                propagated=propagation.propagated if propagation else None,
                propagation_note=propagation.note if propagation else None,
                response=json.dumps(result.response),
                created_at=utcnow(),
            )
            entry_id, ledger_error = self._append_entry(entry)
            self._audit(
                "dns.update",
                "record",
                current.id,
                {
                    "zoneId": zone_id,
                    "name": current.name,
                    "type": entry.type,
                    "status": entry.status.value,
                    "trigger": trigger.value,
                },
            )

            if not result.success:
                outcome = self._handle_failure(zone_id, current, trigger, result.message, entry_id)
            else:
                try:
                    self._after_success(current, new_content, comment_value)
                except Exception as e:
                    if entry_id is not None:
                        self._backfill_error(entry_id, str(e))
                    raise
                logger.info(f"Record updated: {current.name}")
                self.activity.add("success", f"{current.name} -> {new_content}", title="Record updated")
                outcome = UpdateOutcome(
                    status=UpdateStatus.SUCCESS,
                    message=result.message or "DNS record updated.",
                    entry_id=entry_id,
                    propagation=propagation,
                )

            if ledger_error is not None:
                raise ledger_error
            return outcome

    def update_by_id(
        self,
        zone_id: str,
        record_id: str,
        content: Optional[str] = None,
        token_id: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> UpdateOutcome:
        """Manual update addressed by ids; content defaults to the public IP."""
        with self._pass_lock:
            token_id = token_id or self.token_for_zone(zone_id)
            if not token_id:
                raise CredentialMissing(f"No configured token can access zone {zone_id}.")
            credential = self.credentials.resolve(self.operator.id, token_id)
            record = self.gateway.read_record(zone_id, record_id, credential)
            if content is None:
                content = self.resolver.resolve()
            return self.update_record(
                zone_id,
                record,
                content,
                token_id,
                Trigger.MANUAL,
                comment=comment,
                trusted_snapshot=True,
            )

    def _check_propagation(self, record: DnsRecord, content: str) -> PropagationResult:
        record_type = record.type.upper()
        if record_type not in PROPAGATION_RECORD_TYPES:
            return PropagationResult(None, f"Propagation check skipped for {record_type} record.")
        try:
            matched = self.gateway.check_propagation(record.name, content, record_type)
        except PropagationCheckFailed as e:
            logger.debug(f"Propagation check for {record.name} failed: {e}")
            return PropagationResult(None, "Propagation check failed.")
        if matched:
            return PropagationResult(True, "DNS record matches the new content.")
        return PropagationResult(False, "DNS record has not propagated yet.")

    def _append_entry(self, entry: UpdateLedgerEntry):
        try:
            return self.ledger.append(entry), None
        except LedgerWriteError as e:
            logger.critical(
                f"Audit entry for {entry.name} ({entry.trigger.value}, {entry.status.value}) "
                f"was NOT recorded: {e}"
            )
            self.activity.add("error", f"Audit entry for {entry.name} was not recorded.", title="Ledger write failed")
            return None, e

    def _backfill_error(self, entry_id: str, message: str) -> None:
        try:
            self.ledger.mark_error(entry_id, message)
        except LedgerWriteError as e:
            logger.critical(f"Could not backfill error status on ledger entry {entry_id}: {e}")

    def _after_success(self, record: DnsRecord, content: str, comment: Optional[str]) -> None:
        self._records[MonitoredRecord(record.zone_id, record.id).key] = replace(
            record, content=content, comment=comment
        )
        try:
            ip = self.resolver.resolve()
        except IpResolutionFailed as e:
            logger.warning(f"Could not refresh public IP after update: {e}")
            return
        if self.ip_state.advance(ip):
            self._persist_ip_state()

    def _handle_failure(
        self,
        zone_id: str,
        record: DnsRecord,
        trigger: Trigger,
        message: str,
        entry_id: Optional[str],
    ) -> UpdateOutcome:
        logger.error(f"Update of {record.name} failed: {message}")
        self.activity.add("error", message, title="Update failed")
        auto_disabled = False
        if trigger is Trigger.AUTO:
            auto_disabled = self._auto_disable(zone_id, record, message)
        return UpdateOutcome(
            status=UpdateStatus.ERROR,
            message=message,
            entry_id=entry_id,
            auto_disabled=auto_disabled,
        )

    def _auto_disable(self, zone_id: str, record: DnsRecord, message: str) -> bool:
        settings = self._settings()
        if settings is None or not settings.is_monitored(zone_id, record.id):
            return False
        key = MonitoredRecord(zone_id, record.id).key
        remaining = [r.to_dict() for r in settings.monitored_records if r.key != key]
        self.settings_store.upsert(self.operator.id, {"monitoredRecords": remaining})
        self._audit(
            "settings.update",
            "settings",
            detail={"fields": ["monitoredRecords"], "monitoredCount": len(remaining)},
        )

        reason = f"Auto-update disabled: {record.name} failed to update ({message})."
        logger.warning(reason)
        self.activity.add("warning", reason, title="Auto-update disabled")
        if settings.notify_on_failure:
            self._dispatch(
                AlertPayload(
                    title=AUTO_DISABLED_ALERT_TITLE,
                    body=reason,
                    previous_ip=self.ip_state.previous_ip,
                    current_ip=self.ip_state.current_ip,
                )
            )
        return True

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def rollback(self, entry_id: str, requester: Optional[Operator] = None) -> RollbackOutcome:
        """Write an entry's pre-update values back and log that as a new entry.

        Raises RollbackUnavailable when the entry is unknown, has no snapshot
        or token, or belongs to someone else and ``requester`` is not an
        administrator. No ledger entry is created in those cases.
        """
        requester = requester or self.operator
        with self._pass_lock:
            entry = self.ledger.get(entry_id)
            if entry is None:
                raise RollbackUnavailable("Update not found.")
            if not entry.can_rollback:
                raise RollbackUnavailable("Rollback not available for this update.")
            if not requester.is_admin and not requester.owns(entry.actor):
                raise RollbackUnavailable("Update not found.")

            credential = self.credentials.resolve(requester.id, entry.token_id)
            current = self.gateway.read_record(entry.zone_id, entry.record_id, credential)
            ttl = entry.previous_ttl if entry.previous_ttl is not None else current.ttl
            proxied = entry.previous_proxied if entry.previous_proxied is not None else current.proxied

            result = self.gateway.write_record(
                entry.zone_id,
                entry.record_id,
                credential,
                name=current.name,
                type=current.type,
                content=entry.previous_content,
                ttl=ttl,
                proxied=proxied,
                comment=ROLLBACK_COMMENT,
            )
            status = UpdateStatus.SUCCESS if result.success else UpdateStatus.ERROR
            reverse = UpdateLedgerEntry(
                id=self.ledger.new_entry_id(),
                zone_id=entry.zone_id,
                token_id=entry.token_id,
                record_id=entry.record_id,
                name=current.name,
                type=current.type.upper(),
                previous_content=current.content,
                previous_ttl=current.ttl,
                previous_proxied=current.proxied,
                content=entry.previous_content,
                ttl=ttl,
                proxied=proxied,
                comment=ROLLBACK_LEDGER_COMMENT,
                status=status,
                trigger=Trigger.ROLLBACK,
                actor=requester.email,
                propagated=None,
                propagation_note=None,
                response=json.dumps(result.response),
                created_at=utcnow(),
            )
            new_id, ledger_error = self._append_entry(reverse)
            self._audit(
                "dns.rollback",
                "record",
                entry.record_id,
                {"zoneId": entry.zone_id, "name": current.name, "status": status.value},
                user_id=requester.id,
            )

            if result.success:
                message = "DNS record rolled back."
                self._records[MonitoredRecord(entry.zone_id, entry.record_id).key] = replace(
                    current, content=entry.previous_content, ttl=ttl, proxied=proxied,
                    comment=ROLLBACK_COMMENT,
                )
                logger.info(f"Rolled back {current.name} to {entry.previous_content}")
                self.activity.add("success", f"{current.name} -> {entry.previous_content}", title="Rollback complete")
            else:
                message = result.message or "Cloudflare rejected the rollback."
                logger.error(f"Rollback of {current.name} failed: {message}")
                self.activity.add("error", message, title="Rollback failed")

            if ledger_error is not None:
                raise ledger_error
            return RollbackOutcome(status=status, message=message, entry_id=new_id)

    # -------------------------------------------------------------------------
    # Monitored set
    # -------------------------------------------------------------------------

    def set_monitored(self, zone_id: str, record_id: str, enabled: bool) -> Settings:
        return self.bulk_set_monitored(zone_id, [record_id], enabled)

    def bulk_set_monitored(self, zone_id: str, record_ids: Sequence[str], enabled: bool) -> Settings:
        """Add or remove records from the monitored set in a single save.

        The next observed IP is not announced, since enabling a record is
        immediately followed by an operator-initiated write. The flag is
        cleared again if the save fails.
        """
        with self._pass_lock:
            settings = self._settings() or Settings()
            records = list(settings.monitored_records)
            targets = [MonitoredRecord(zone_id, record_id) for record_id in record_ids]
            target_keys = {t.key for t in targets}
            if enabled:
                existing = {r.key for r in records}
                records.extend(t for t in targets if t.key not in existing)
            else:
                records = [r for r in records if r.key not in target_keys]

            was_suppressed = self._suppress_next_alert
            self._set_suppression(True)
            try:
                saved = self.settings_store.upsert(
                    self.operator.id, {"monitoredRecords": [r.to_dict() for r in records]}
                )
            except Exception:
                self._set_suppression(was_suppressed)
                self.activity.add(
                    "error",
                    f"Could not {'enable' if enabled else 'disable'} auto-update for "
                    f"{len(targets)} record(s).",
                    title="Auto-update unchanged",
                )
                raise
            self._audit(
                "settings.update",
                "settings",
                detail={"fields": ["monitoredRecords"], "monitoredCount": len(records)},
            )
            logger.info(
                f"Auto-update {'enabled' if enabled else 'disabled'} for "
                f"{', '.join(sorted(target_keys))}"
            )
            return saved
