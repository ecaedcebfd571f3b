#!/usr/bin/env python3
"""flarewatcher - Cloudflare Dynamic DNS

Watches the public IP of the host and keeps monitored Cloudflare DNS records
pointed at it. Every write is recorded in an update ledger that supports
rollback. IP changes and auto-update failures can be announced over Discord
and email.

Environment variables:

    Files:
        FLAREWATCHER_CONFIG        YAML file with operators and API tokens
                                   (default: /config/flarewatcher.yaml)
                                   Example config file:
                                     operators:
                                       - id: "home"
                                         email: "ops@example.com"
                                         admin: true
                                         tokens:
                                           - id: "main"
                                             name: "Main account"
                                             token_env: "CLOUDFLARE_API_TOKEN"
                                         settings:
                                           intervalMinutes: 5
                                           monitoredRecords:
                                             - {zoneId: "abc", recordId: "def"}
                                   The settings block is only a seed; it is
                                   applied when the operator has no stored
                                   settings yet.
        STATE_DIR                  Directory for settings, ledger, audit, IP history and
                                   activity files (default: /data)

    Runtime:
        SYNC_MODE                  "once" or "watch" (default: watch)
        IP_CHECK_INTERVAL_SECONDS  Public IP check cadence in watch mode, minimum 5
                                   (default: 10)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)

    Endpoints:
        IP_LOOKUP_URL              Public IP service (default: https://api.ipify.org?format=json)
        CLOUDFLARE_API_URL         Cloudflare API base (default: https://api.cloudflare.com/client/v4)
        DOH_URL                    DNS-over-HTTPS resolver used for propagation checks
                                   (default: https://cloudflare-dns.com/dns-query)
        HTTP_TIMEOUT_SECONDS       Timeout for outbound HTTP calls (default: 10)

Commands:
    run          Detect IP changes and reconcile monitored records (default)
    update       Point one record at the public IP (or --content)
    rollback     Restore the values an update ledger entry replaced
    history      List update ledger entries
    purge        Delete the operator's update ledger entries
    monitor      Enable or disable auto-update for records
    settings     Show or change operator settings
    activity     Show the operator's activity feed
    audit        List or purge the operator's audit events
    test-alert   Send a sample alert over discord or smtp
"""

import argparse
import json
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from flarewatcher.alerts import ChannelAlertDispatcher
from flarewatcher.credentials import ConfigCredentialResolver, TokenConfig
from flarewatcher.errors import ConfigError, FlarewatcherError, SettingsValidationError
from flarewatcher.models import Operator, UpdateLedgerEntry, _parse_bool
from flarewatcher.providers import (
    DEFAULT_CLOUDFLARE_API_URL,
    DEFAULT_DOH_URL,
    DEFAULT_IP_LOOKUP_URL,
    CloudflareGateway,
    IpifyResolver,
)
from flarewatcher.reconciler import ReconciliationLoop, TickResult
from flarewatcher.scheduler import MIN_DETECT_INTERVAL_SECONDS, OperatorScheduler
from flarewatcher.stores import (
    AUDIT_TAKE,
    ActivityLog,
    AuditLog,
    IpStateCache,
    LedgerQuery,
    SettingsStore,
    UpdateLedger,
)

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("FLAREWATCHER_CONFIG", "/config/flarewatcher.yaml")
STATE_DIR = os.getenv("STATE_DIR", "/data")

SYNC_MODE = os.getenv("SYNC_MODE", "watch")
IP_CHECK_INTERVAL_SECONDS = int(os.getenv("IP_CHECK_INTERVAL_SECONDS", "10"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

IP_LOOKUP_URL = os.getenv("IP_LOOKUP_URL", DEFAULT_IP_LOOKUP_URL)
CLOUDFLARE_API_URL = os.getenv("CLOUDFLARE_API_URL", DEFAULT_CLOUDFLARE_API_URL)
DOH_URL = os.getenv("DOH_URL", DEFAULT_DOH_URL)
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


# =============================================================================
# Config File
# =============================================================================


@dataclass(frozen=True)
class OperatorConfig:
    operator: Operator
    tokens: List[TokenConfig] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)


def _parse_tokens(raw: Any, operator_id: str) -> List[TokenConfig]:
    tokens: List[TokenConfig] = []
    seen = set()
    for item in raw or []:
        if not isinstance(item, dict):
            logger.warning(f"Operator '{operator_id}': ignoring malformed token entry")
            continue
        token_id = str(item.get("id") or "").strip()
        token = str(item.get("token") or "").strip()
        token_env = str(item.get("token_env") or "").strip()
        if not token_id or not (token or token_env):
            logger.warning(f"Operator '{operator_id}': token entry needs id and token or token_env")
            continue
        if token_id in seen:
            logger.warning(f"Operator '{operator_id}': duplicate token id '{token_id}' ignored")
            continue
        seen.add(token_id)
        tokens.append(
            TokenConfig(
                id=token_id,
                name=str(item.get("name") or token_id).strip(),
                token=token,
                token_env=token_env,
            )
        )
    return tokens


def load_operator_configs(config_path: str) -> List[OperatorConfig]:
    """Read operators and tokens from the YAML config file.

    Malformed operator or token entries are skipped with a warning. A missing
    or unparsable file raises ConfigError.
    """
    path = Path(config_path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with open(path, "r") as f:
            config_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    if not isinstance(config_data, dict) or "operators" not in config_data:
        raise ConfigError(f"Config file {config_path} missing 'operators' key")

    configs: List[OperatorConfig] = []
    seen = set()
    for item in config_data["operators"] or []:
        if not isinstance(item, dict):
            logger.warning("Ignoring malformed operator entry")
            continue
        operator_id = str(item.get("id") or "").strip()
        email = str(item.get("email") or "").strip()
        if not operator_id or not email:
            logger.warning("Operator entry needs both id and email, skipping")
            continue
        if operator_id in seen:
            logger.warning(f"Duplicate operator id '{operator_id}' ignored")
            continue
        seen.add(operator_id)

        settings = item.get("settings") or {}
        if not isinstance(settings, dict):
            logger.warning(f"Operator '{operator_id}': settings must be a mapping, ignoring")
            settings = {}

        configs.append(
            OperatorConfig(
                operator=Operator(
                    id=operator_id,
                    email=email,
                    is_admin=_parse_bool(item.get("admin"), default=False),
                ),
                tokens=_parse_tokens(item.get("tokens"), operator_id),
                settings=settings,
            )
        )

    logger.debug(f"Loaded {len(configs)} operator(s) from {config_path}")
    return configs


def validate_config(configs: List[OperatorConfig]) -> bool:
    """Validate configuration."""
    errors = []

    if not configs:
        errors.append("At least one operator is required (check FLAREWATCHER_CONFIG)")
    for cfg in configs:
        if not cfg.tokens:
            logger.warning(
                f"⚠️  Operator '{cfg.operator.id}' has no API tokens. No records will be updated."
            )

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
    if IP_CHECK_INTERVAL_SECONDS < MIN_DETECT_INTERVAL_SECONDS:
        logger.warning(
            f"⚠️  IP_CHECK_INTERVAL_SECONDS={IP_CHECK_INTERVAL_SECONDS} is below "
            f"{MIN_DETECT_INTERVAL_SECONDS}; using {MIN_DETECT_INTERVAL_SECONDS}"
        )

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


# =============================================================================
# Wiring
# =============================================================================


def _safe_filename(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", value)


@dataclass
class Runtime:
    """Shared stores plus one reconciliation loop per operator."""

    settings_store: SettingsStore
    ledger: UpdateLedger
    audit: AuditLog
    alerts: ChannelAlertDispatcher
    loops: Dict[str, ReconciliationLoop]

    def loop_for(self, operator_id: Optional[str] = None) -> ReconciliationLoop:
        if operator_id is None:
            return next(iter(self.loops.values()))
        try:
            return self.loops[operator_id]
        except KeyError:
            raise ConfigError(f"Unknown operator: '{operator_id}'") from None


def build_runtime(configs: List[OperatorConfig], state_dir: str = STATE_DIR) -> Runtime:
    state = Path(state_dir)
    settings_store = SettingsStore(str(state / "settings.json"))
    ledger = UpdateLedger(str(state / "ledger.json"))
    audit = AuditLog(str(state / "audit.json"))
    alerts = ChannelAlertDispatcher(settings_store, HTTP_TIMEOUT_SECONDS)
    credentials = ConfigCredentialResolver({cfg.operator.id: cfg.tokens for cfg in configs})

    loops: Dict[str, ReconciliationLoop] = {}
    for cfg in configs:
        operator = cfg.operator
        if cfg.settings:
            try:
                if settings_store.seed(operator.id, cfg.settings) is not None:
                    logger.info(f"Seeded settings for operator '{operator.id}'")
            except SettingsValidationError as e:
                raise ConfigError(f"Invalid settings for operator '{operator.id}': {e}") from e

        slug = _safe_filename(operator.id)
        loops[operator.id] = ReconciliationLoop(
            operator=operator,
            resolver=IpifyResolver(IP_LOOKUP_URL, HTTP_TIMEOUT_SECONDS),
            gateway=CloudflareGateway(CLOUDFLARE_API_URL, DOH_URL, HTTP_TIMEOUT_SECONDS),
            settings_store=settings_store,
            ledger=ledger,
            alerts=alerts,
            credentials=credentials,
            activity=ActivityLog(str(state / f"activity-{slug}.json")),
            ip_cache=IpStateCache(str(state / f"ip-state-{slug}.json")),
            audit=audit,
        )

    return Runtime(
        settings_store=settings_store, ledger=ledger, audit=audit, alerts=alerts, loops=loops
    )


# =============================================================================
# Commands
# =============================================================================


def _format_entry(entry: UpdateLedgerEntry) -> str:
    propagated = {True: "yes", False: "no", None: "-"}[entry.propagated]
    return (
        f"{entry.created_at:%Y-%m-%d %H:%M:%S}  {entry.status.value:<7} {entry.trigger.value:<8} "
        f"{entry.name} ({entry.type}) {entry.previous_content or '-'} -> {entry.content}  "
        f"propagated={propagated}  [{entry.id}]"
    )


def _log_tick(operator_id: str, result: TickResult) -> None:
    if result.error:
        return
    updated = sum(1 for o in result.outcomes if o.ok)
    failed = len(result.outcomes) - updated
    logger.info(
        f"Operator '{operator_id}': ip={result.ip} changed={result.changed} "
        f"updated={updated} failed={failed}"
    )


def cmd_run(runtime: Runtime, args: argparse.Namespace) -> int:
    mode = "once" if args.once else SYNC_MODE
    for loop in runtime.loops.values():
        loop.prime()

    if mode == "once":
        for operator_id, loop in runtime.loops.items():
            _log_tick(operator_id, loop.tick())
        return 0

    logger.info(f"IP check interval: {max(MIN_DETECT_INTERVAL_SECONDS, IP_CHECK_INTERVAL_SECONDS)}s")
    schedulers = [
        OperatorScheduler(loop, IP_CHECK_INTERVAL_SECONDS) for loop in runtime.loops.values()
    ]
    for scheduler in schedulers:
        scheduler.start()
    try:
        while any(s.is_alive() for s in schedulers):
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        for scheduler in schedulers:
            scheduler.stop(timeout=HTTP_TIMEOUT_SECONDS * 3)
    return 0


def cmd_update(runtime: Runtime, args: argparse.Namespace) -> int:
    loop = runtime.loop_for(args.operator)
    outcome = loop.update_by_id(
        args.zone,
        args.record,
        content=args.content,
        token_id=args.token,
        comment=args.comment,
    )
    print(outcome.message)
    if outcome.propagation is not None:
        print(outcome.propagation.note)
    if outcome.entry_id:
        print(f"Ledger entry: {outcome.entry_id}")
    return 0 if outcome.ok else 1


def cmd_rollback(runtime: Runtime, args: argparse.Namespace) -> int:
    loop = runtime.loop_for(args.operator)
    outcome = loop.rollback(args.entry)
    print(outcome.message)
    if outcome.entry_id:
        print(f"Ledger entry: {outcome.entry_id}")
    return 0 if outcome.ok else 1


def cmd_history(runtime: Runtime, args: argparse.Namespace) -> int:
    operator = runtime.loop_for(args.operator).operator
    actor = None if (args.all and operator.is_admin) else operator.email
    if args.all and not operator.is_admin:
        logger.warning(f"Operator '{operator.id}' is not an admin; showing own entries only")

    if args.last_runs:
        entries = sorted(
            runtime.ledger.latest_per_zone(actor).values(),
            key=lambda e: e.created_at,
            reverse=True,
        )
    elif args.rollback_candidates:
        entries = sorted(
            runtime.ledger.latest_rollback_candidates(actor).values(),
            key=lambda e: e.created_at,
            reverse=True,
        )
    else:
        query = LedgerQuery(
            actor=actor,
            months=args.months,
            take=args.take,
            zone_id=args.zone,
            record_id=args.record,
        )
        entries = runtime.ledger.query(query)

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return 0
    if not entries:
        print("No updates recorded.")
    for entry in entries:
        print(_format_entry(entry))
    return 0


def cmd_purge(runtime: Runtime, args: argparse.Namespace) -> int:
    operator = runtime.loop_for(args.operator).operator
    if not args.yes:
        logger.error("Refusing to purge the update ledger without --yes")
        return 1
    removed = runtime.ledger.delete_all(operator.email)
    print(f"Deleted {removed} ledger entries.")
    return 0


def cmd_monitor(runtime: Runtime, args: argparse.Namespace) -> int:
    loop = runtime.loop_for(args.operator)
    enabled = not args.disable
    if len(args.records) == 1:
        settings = loop.set_monitored(args.zone, args.records[0], enabled)
    else:
        settings = loop.bulk_set_monitored(args.zone, args.records, enabled)
    state = "enabled" if enabled else "disabled"
    print(f"Auto-update {state} for {len(args.records)} record(s).")
    print(f"Monitored records: {len(settings.monitored_records)}")
    return 0


def _parse_assignment(text: str) -> tuple:
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        raise ConfigError(f"Expected key=value, got '{text}'")
    return key.strip(), yaml.safe_load(value) if value.strip() else None


def cmd_settings(runtime: Runtime, args: argparse.Namespace) -> int:
    operator = runtime.loop_for(args.operator).operator
    if args.set:
        partial = dict(_parse_assignment(item) for item in args.set)
        settings = runtime.settings_store.upsert(operator.id, partial)
        runtime.audit.record(
            operator.id, "settings.update", "settings", detail={"fields": sorted(partial)}
        )
        logger.info(f"Updated settings for '{operator.id}': {', '.join(sorted(partial))}")
    else:
        settings = runtime.settings_store.get(operator.id)
        if settings is None:
            print("No settings stored.")
            return 0
    data = settings.to_dict()
    if data.get("smtpPass"):
        data["smtpPass"] = "********"
    print(yaml.safe_dump(data, sort_keys=False, default_flow_style=False).rstrip())
    return 0


def cmd_activity(runtime: Runtime, args: argparse.Namespace) -> int:
    loop = runtime.loop_for(args.operator)
    entries = loop.activity.entries(args.level)
    if not entries:
        print("No activity.")
    for entry in entries:
        title = f"{entry.title}: " if entry.title else ""
        print(f"{entry.created_at:%Y-%m-%d %H:%M:%S}  {entry.level:<7} {title}{entry.message}")
    return 0


def cmd_audit(runtime: Runtime, args: argparse.Namespace) -> int:
    operator = runtime.loop_for(args.operator).operator
    if args.purge:
        if not args.yes:
            logger.error("Refusing to purge audit events without --yes")
            return 1
        removed = runtime.audit.delete_all(operator.id)
        print(f"Deleted {removed} audit events.")
        return 0

    events = runtime.audit.events(operator.id, take=args.take, months=args.months)
    if args.json:
        print(json.dumps([e.to_dict() for e in events], indent=2))
        return 0
    if not events:
        print("No audit events.")
    for event in events:
        target = f" {event.target_type}:{event.target_id or '-'}" if event.target_type else ""
        detail = f"  {json.dumps(event.detail, sort_keys=True)}" if event.detail else ""
        print(f"{event.created_at:%Y-%m-%d %H:%M:%S}  {event.action}{target}{detail}")
    return 0


def cmd_test_alert(runtime: Runtime, args: argparse.Namespace) -> int:
    operator = runtime.loop_for(args.operator).operator
    runtime.alerts.send_test_alert(operator.id, args.channel)
    print(f"Test alert sent via {args.channel}.")
    return 0


COMMANDS: Dict[str, Callable[[Runtime, argparse.Namespace], int]] = {
    "run": cmd_run,
    "update": cmd_update,
    "rollback": cmd_rollback,
    "history": cmd_history,
    "purge": cmd_purge,
    "monitor": cmd_monitor,
    "settings": cmd_settings,
    "activity": cmd_activity,
    "audit": cmd_audit,
    "test-alert": cmd_test_alert,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flarewatcher",
        description="Keep Cloudflare DNS records pointed at the current public IP.",
    )
    parser.add_argument("--config", default=CONFIG_PATH, help="YAML config file")
    parser.add_argument("--state-dir", default=STATE_DIR, help="Directory for state files")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--operator", help="Operator id (default: first configured)")

    sub = parser.add_subparsers(dest="command")
    parser.set_defaults(command="run", once=False)

    run = sub.add_parser("run", parents=[common], help="Detect and reconcile")
    run.add_argument("--once", action="store_true", help="Single pass, then exit")

    update = sub.add_parser("update", parents=[common], help="Update one record")
    update.add_argument("--zone", required=True)
    update.add_argument("--record", required=True)
    update.add_argument("--content", help="New content (default: current public IP)")
    update.add_argument("--token", help="Token id (default: first token that sees the zone)")
    update.add_argument("--comment", help="Record comment (default: keep existing)")

    rollback = sub.add_parser("rollback", parents=[common], help="Roll back a ledger entry")
    rollback.add_argument("entry", help="Ledger entry id")

    history = sub.add_parser("history", parents=[common], help="List ledger entries")
    history.add_argument("--months", type=int)
    history.add_argument("--take", type=int)
    history.add_argument("--zone")
    history.add_argument("--record")
    history.add_argument("--all", action="store_true", help="Every operator's entries (admin)")
    history.add_argument("--json", action="store_true")
    view = history.add_mutually_exclusive_group()
    view.add_argument("--last-runs", action="store_true", help="Latest entry per zone")
    view.add_argument(
        "--rollback-candidates", action="store_true", help="Latest reversible entry per record"
    )

    purge = sub.add_parser("purge", parents=[common], help="Delete own ledger entries")
    purge.add_argument("--yes", action="store_true", help="Confirm deletion")

    monitor = sub.add_parser("monitor", parents=[common], help="Toggle auto-update")
    monitor.add_argument("--zone", required=True)
    monitor.add_argument("records", nargs="+", metavar="RECORD_ID")
    toggle = monitor.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true", default=True)
    toggle.add_argument("--disable", action="store_true")

    settings = sub.add_parser("settings", parents=[common], help="Show or change settings")
    settings.add_argument(
        "--set", action="append", metavar="KEY=VALUE", help="e.g. intervalMinutes=10"
    )

    activity = sub.add_parser("activity", parents=[common], help="Show activity feed")
    activity.add_argument("--level", choices=ActivityLog.LEVELS)

    audit = sub.add_parser("audit", parents=[common], help="List or purge audit events")
    audit.add_argument("--months", type=int)
    audit.add_argument("--take", type=int, default=AUDIT_TAKE)
    audit.add_argument("--json", action="store_true")
    audit.add_argument("--purge", action="store_true", help="Delete own audit events")
    audit.add_argument("--yes", action="store_true", help="Confirm --purge")

    test_alert = sub.add_parser("test-alert", parents=[common], help="Send a test alert")
    test_alert.add_argument("channel", choices=["discord", "smtp"])

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "operator"):
        args.operator = None

    try:
        configs = load_operator_configs(args.config)
        if not validate_config(configs):
            logger.error("Configuration validation failed")
            sys.exit(1)
        runtime = build_runtime(configs, args.state_dir)
        if args.command == "run":
            logger.info(f"flarewatcher: {len(runtime.loops)} operator(s), mode={SYNC_MODE}")
        code = COMMANDS[args.command](runtime, args)
    except FlarewatcherError as e:
        logger.error(str(e))
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
