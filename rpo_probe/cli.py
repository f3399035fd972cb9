"""Command-line entry point for the DR validation harness."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pymysql
from sqlalchemy.exc import SQLAlchemyError

from . import failover, harness, stress
from .config import HarnessConfig, Role, load_config
from .errors import ConfigurationError, HarnessError
from .load import BackgroundLoad
from .markers import MarkerStore
from .pools import EndpointRegistry

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Commands that write to the cluster or load it.
STRESS_COMMANDS = frozenset(
    {"rpo", "global-rpo", "write-marker", "db-stress", "db-cleanup", "warm-up"}
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_FORBIDDEN = 3


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="rpo-probe", description=__doc__)
    parser.add_argument("--config", help="Path to a TOML config (DB_* environment variables override it).")
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Log level (default: config or INFO).")
    parser.add_argument("--log-file", help="Also write logs to this file.")
    sub = parser.add_subparsers(dest="command", required=True)

    rpo = sub.add_parser("rpo", help="Measure writer -> regional reader replication lag.")
    rpo.add_argument("--iterations", type=int, default=10, help="Trials to run, 1-100 (default: %(default)s).")

    global_rpo = sub.add_parser("global-rpo", help="Measure writer -> remote-region reader replication lag.")
    global_rpo.add_argument("--iterations", type=int, default=5, help="Trials to run, 1-50 (default: %(default)s).")

    sub.add_parser("health", help="Round-trip check against every configured endpoint.")

    sub.add_parser("write-marker", help="Write one marker on the primary and print its id.")
    read = sub.add_parser("read-marker", help="Look a marker up on a reader.")
    read.add_argument("--id", required=True, dest="marker_id")
    read.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.REGIONAL_READER.value,
        help="Endpoint to read from (default: %(default)s).",
    )
    delete = sub.add_parser("delete-marker", help="Delete a marker on the primary.")
    delete.add_argument("--id", required=True, dest="marker_id")

    sub.add_parser("failover-read", help="Lightweight SELECT against the regional reader.")
    fo_write = sub.add_parser("failover-write", help="Lightweight INSERT through the primary endpoint.")
    fo_write.add_argument("--region", required=True, help="Region label stored with the row.")

    db_stress = sub.add_parser("db-stress", help="Generate database read/write load.")
    db_stress.add_argument("--operations", type=int, default=1000)
    db_stress.add_argument("--concurrency", type=int, default=10)
    db_stress.add_argument("--type", dest="kind", choices=stress.STRESS_KINDS, default="mixed")

    db_cleanup = sub.add_parser("db-cleanup", help="Delete stress rows (one test, or older than an hour).")
    db_cleanup.add_argument("--test-id")

    cleanup = sub.add_parser("cleanup", help="Sweep orphaned markers and failover rows.")
    cleanup.add_argument(
        "--older-than",
        type=int,
        default=None,
        help="Age threshold in seconds (default: harness.marker_max_age_seconds).",
    )

    warm_up = sub.add_parser("warm-up", help="Hold background CPU load for a while.")
    warm_up.add_argument("--target-cpu", type=int, default=60)
    warm_up.add_argument("--cores", type=int, default=1)
    warm_up.add_argument("--seconds", type=float, default=60.0)
    return parser.parse_args(argv)


def configure_logging(level: str, log_file: Optional[str]) -> Optional[Path]:
    """Set up logging to stdout and, when requested, tee the stream to a log file."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_path: Optional[Path] = None
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )
    return log_path


def emit(payload: Dict[str, object]) -> None:
    payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    print(json.dumps(payload, indent=2), flush=True)


def run_rpo(registry: EndpointRegistry, target: str, iterations: int) -> int:
    stop_event = threading.Event()

    def request_stop(signum: int, frame: object) -> None:
        logging.warning("Interrupt received; finishing the current trial before stopping")
        stop_event.set()

    previous = signal.signal(signal.SIGINT, request_stop)
    try:
        report = harness.run_replication_lag_trial(registry, target, iterations, stop_event=stop_event)
    finally:
        signal.signal(signal.SIGINT, previous)
    payload = report.to_dict()
    payload["writerHost"] = registry.config.role(Role.PRIMARY).host
    payload["readerHost"] = registry.config.role(harness.resolve_settings(target).reader_role).host
    emit(payload)
    return EXIT_OK if report.ok else EXIT_FAILED


def run_warm_up(target_cpu: int, cores: int, seconds: float) -> int:
    load = BackgroundLoad()
    emit(load.start(target_cpu, cores))
    try:
        time.sleep(max(0.0, seconds))
    except KeyboardInterrupt:
        logging.warning("Interrupt received; stopping background load")
    finally:
        emit(load.stop())
    return EXIT_OK


def dispatch(args: argparse.Namespace, config: HarnessConfig) -> int:
    if args.command == "warm-up":
        return run_warm_up(args.target_cpu, args.cores, args.seconds)

    registry = EndpointRegistry(config)
    try:
        if args.command == "rpo":
            return run_rpo(registry, "regional", args.iterations)
        if args.command == "global-rpo":
            return run_rpo(registry, "remote-region", args.iterations)
        if args.command == "health":
            report = harness.health_report(registry)
            emit(report)
            return EXIT_OK if report["status"] == "ok" else EXIT_FAILED

        store = MarkerStore(registry)
        if args.command == "write-marker":
            emit({"status": "ok", **harness.write_marker(store)})
        elif args.command == "read-marker":
            emit({"status": "ok", **harness.read_marker(store, args.marker_id, args.role)})
        elif args.command == "delete-marker":
            emit({"status": "ok", **harness.delete_marker(store, args.marker_id)})
        elif args.command == "failover-read":
            emit(failover.perform_read(registry).to_dict())
        elif args.command == "failover-write":
            emit(failover.perform_write(registry, args.region).to_dict())
        elif args.command == "db-stress":
            stress_report = stress.run_db_stress(registry, args.operations, args.concurrency, args.kind)
            emit({"status": "ok", **stress_report.to_dict()})
        elif args.command == "db-cleanup":
            emit({"status": "ok", "deleted": stress.cleanup_stress_data(registry, args.test_id)})
        elif args.command == "cleanup":
            older_than = config.marker_max_age_seconds if args.older_than is None else args.older_than
            emit({"status": "ok", "deleted": harness.sweep_orphans(registry, older_than)})
        else:  # pragma: no cover - argparse restricts choices
            raise SystemExit(f"Unknown command {args.command}")
        return EXIT_OK
    finally:
        registry.dispose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(Path(args.config).expanduser() if args.config else None)
    except FileNotFoundError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except ValueError as exc:
        # Covers TOML syntax errors and non-numeric DB_PORT and friends.
        emit({"status": "error", "message": f"invalid configuration: {exc}"})
        return EXIT_USAGE
    configure_logging(args.log_level or config.log_level, args.log_file or config.log_file)

    if args.command in STRESS_COMMANDS and not config.allow_stress:
        emit({"status": "forbidden", "message": f"{args.command} disabled (set ALLOW_STRESS=true)"})
        return EXIT_FORBIDDEN

    try:
        return dispatch(args, config)
    except ConfigurationError as exc:
        logging.error("[%s] configuration incomplete: %s", exc.role, exc)
        emit({"status": "error", "role": exc.role, "missing": exc.missing, "message": str(exc)})
        return EXIT_USAGE
    except ValueError as exc:
        emit({"status": "bad_request", "message": str(exc)})
        return EXIT_USAGE
    except (HarnessError, pymysql.MySQLError, SQLAlchemyError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        emit({"status": "error", "message": str(exc)})
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
