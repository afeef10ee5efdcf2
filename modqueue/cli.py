"""
modqueue CLI — queue bootstrap and maintenance commands.

Commands:
- modqueue init         — Create the queue tables
- modqueue recalculate  — Rescore all pending tasks with the current scoring config
- modqueue sweep        — Return expired leases to the pending pool
- modqueue stats        — Task counts per queue and status
- modqueue logs         — Show structured log entries (JSON lines)
- modqueue validate     — Validate modqueue.yaml
- modqueue health       — Check store and broker connectivity
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger("modqueue.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    from modqueue.engine.logging import OBJECT_TYPE_CATEGORIES

    parser = argparse.ArgumentParser(
        prog="modqueue",
        description="modqueue — moderation task queue",
    )
    parser.add_argument(
        "--config", default=None, help="Path to modqueue.yaml (default: discovered from CWD)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init", help="Create the queue tables")

    subparsers.add_parser("recalculate", help="Recalculate priorities of all pending tasks")

    sweep_parser = subparsers.add_parser("sweep", help="Release expired leases")
    sweep_parser.add_argument("--limit", type=int, default=None, help="Release at most N tasks")

    stats_parser = subparsers.add_parser("stats", help="Show task counts per queue")
    stats_parser.add_argument("--pending", type=int, default=0, metavar="N",
                              help="Also list the next N pending tasks")

    logs_parser = subparsers.add_parser("logs", help="Show structured log entries")
    logs_parser.add_argument("object_type", choices=sorted(OBJECT_TYPE_CATEGORIES))
    logs_parser.add_argument("--category", default="execution", help="Log category (default: execution)")
    logs_parser.add_argument("--days", type=int, default=7, help="Look back N days (default: 7)")
    logs_parser.add_argument("--limit", type=int, default=100, help="Show at most N entries")
    logs_parser.add_argument("--event", default=None, help="Only entries with this event name")
    logs_parser.add_argument("--task-id", default=None, help="Only entries for this task")
    logs_parser.add_argument("--user-id", default=None, help="Only entries for this user")

    subparsers.add_parser("validate", help="Validate modqueue.yaml")

    subparsers.add_parser("health", help="Check store and broker connectivity")

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "recalculate":
        return cmd_recalculate(args)
    elif args.command == "sweep":
        return cmd_sweep(args)
    elif args.command == "stats":
        return cmd_stats(args)
    elif args.command == "logs":
        return cmd_logs(args)
    elif args.command == "validate":
        return cmd_validate(args)
    elif args.command == "health":
        return cmd_health(args)
    else:
        parser.print_help()
        return 0


def _load(args: argparse.Namespace):
    """Load settings for a command; prints the error and returns None on failure."""
    from modqueue.engine.config import load_settings
    from modqueue.engine.errors import ConfigError

    if args.config and not Path(args.config).exists():
        print(f"[ERROR] Config file not found: {args.config}")
        return None
    try:
        return load_settings(args.config)
    except ConfigError as e:
        print(f"[ERROR] {e.message}")
        return None


def _open_store(settings, create_tables: bool = False):
    from modqueue.db.session import init_from_settings

    return init_from_settings(settings, create_tables=create_tables)


def _start_logging(settings) -> None:
    from modqueue.engine.logging import init_logging

    logging.basicConfig(level=settings.logging.level)
    cfg = settings.logging
    init_logging(
        log_dir=cfg.directory,
        flush_interval_ms=cfg.async_queue.flush_interval_ms,
        flush_batch_size=cfg.async_queue.flush_batch_size,
        max_queue_size=cfg.async_queue.max_queue_size,
    )


def _stop() -> None:
    from modqueue.db.session import close_all_sessions
    from modqueue.engine.logging import shutdown_logging

    shutdown_logging()
    close_all_sessions()


# ---------------------------------------------------------------------------
# modqueue init
# ---------------------------------------------------------------------------

def cmd_init(args: argparse.Namespace) -> int:
    """Create every queue table (idempotent)."""
    settings = _load(args)
    if settings is None:
        return 1

    try:
        _open_store(settings, create_tables=True)
        print(f"[OK] Tables created ({settings.environment})")
        print(f"[OK] Queues: {', '.join(sorted(settings.task_queues))}")
        return 0
    except Exception as e:
        print(f"[ERROR] Failed to initialize database: {e}")
        return 1
    finally:
        _stop()


# ---------------------------------------------------------------------------
# modqueue recalculate / sweep
# ---------------------------------------------------------------------------

def cmd_recalculate(args: argparse.Namespace) -> int:
    from modqueue.process.scheduler import recalculate_priorities_job

    settings = _load(args)
    if settings is None:
        return 1

    _start_logging(settings)
    try:
        result = recalculate_priorities_job(settings, _open_store(settings))
        print(f"[OK] Updated {result['updated']} task(s), {result['errors']} error(s)")
        return 0
    except Exception as e:
        print(f"[ERROR] Recalculation failed: {e}")
        return 1
    finally:
        _stop()


def cmd_sweep(args: argparse.Namespace) -> int:
    from modqueue.process.scheduler import release_expired_leases_job

    settings = _load(args)
    if settings is None:
        return 1

    _start_logging(settings)
    try:
        result = release_expired_leases_job(settings, _open_store(settings), limit=args.limit)
        print(f"[OK] Released {result['released']} expired lease(s)")
        return 0
    except Exception as e:
        print(f"[ERROR] Sweep failed: {e}")
        return 1
    finally:
        _stop()


# ---------------------------------------------------------------------------
# modqueue stats
# ---------------------------------------------------------------------------

def cmd_stats(args: argparse.Namespace) -> int:
    from modqueue.moderation.leasing import TaskQueue
    from modqueue.moderation.scoring import priority_label

    settings = _load(args)
    if settings is None:
        return 1

    try:
        queue = TaskQueue(_open_store(settings), settings)
        stats = queue.queue_stats()
        if not stats:
            print("No tasks.")
        for task_type, counts in sorted(stats.items()):
            summary = ", ".join(f"{status}={count}" for status, count in counts.items())
            print(f"{task_type}: {summary}")

        if args.pending:
            print(f"\nNext {args.pending} pending:")
            for task in queue.list_pending(limit=args.pending):
                label = priority_label(task["priority"], settings.priority_thresholds)
                print(f"  [{label}] {task['priority']:g}  {task['id']}  {task['summary']}")
        return 0
    except Exception as e:
        print(f"[ERROR] {e}")
        return 1
    finally:
        _stop()


# ---------------------------------------------------------------------------
# modqueue logs
# ---------------------------------------------------------------------------

def cmd_logs(args: argparse.Namespace) -> int:
    """Print structured log entries, oldest first, one JSON object per line."""
    import json
    from datetime import date, timedelta

    from modqueue.engine.logging import OBJECT_TYPE_CATEGORIES, FileLogger

    settings = _load(args)
    if settings is None:
        return 1

    categories = OBJECT_TYPE_CATEGORIES[args.object_type]
    if args.category not in categories:
        print(f"[ERROR] No '{args.category}' logs for {args.object_type} (choose from: {', '.join(categories)})")
        return 1

    filters = {}
    if args.event:
        filters["event"] = args.event
    if args.task_id:
        filters["task_id"] = args.task_id
    if args.user_id:
        filters["user_id"] = args.user_id

    today = date.today()
    entries = FileLogger(settings.logging.directory).query(
        args.object_type,
        args.category,
        start_date=today - timedelta(days=max(0, args.days)),
        end_date=today,
        filters=filters or None,
        limit=args.limit,
    )
    if not entries:
        print("No log entries.")
    for entry in entries:
        print(json.dumps(entry, default=str))
    return 0


# ---------------------------------------------------------------------------
# modqueue validate / health
# ---------------------------------------------------------------------------

def cmd_validate(args: argparse.Namespace) -> int:
    """Validate configuration: schema, queues, schedules."""
    settings = _load(args)
    if settings is None:
        return 1

    errors = 0
    print(f"[OK] Config valid ({settings.name} {settings.version}, {settings.environment})")
    for task_type, queue_cfg in sorted(settings.task_queues.items()):
        print(
            f"[OK] Queue {task_type}: checkout {queue_cfg.default_checkout_minutes}m, "
            f"work later {queue_cfg.work_later_minutes}m (max {queue_cfg.max_work_later_minutes}m)"
        )

    for name, cron in (("sweep.cron", settings.sweep.cron),
                       ("logging.cleanup_schedule", settings.logging.cleanup_schedule)):
        if len(cron.split()) != 5:
            print(f"[ERROR] {name}: expected 5 cron fields, got '{cron}'")
            errors += 1

    print(f"\n{'Configuration valid!' if errors == 0 else f'{errors} error(s) found.'}")
    return 1 if errors else 0


def cmd_health(args: argparse.Namespace) -> int:
    from modqueue.db.base import DEFAULT_ENGINE, engine_registry
    from modqueue.process.scheduler import check_broker

    settings = _load(args)
    if settings is None:
        return 1

    try:
        _open_store(settings)
        db_ok = engine_registry.health_check(DEFAULT_ENGINE)
        print(f"[{'OK' if db_ok else 'ERROR'}] Database")

        broker_ok = check_broker(settings.celery.broker)
        print(f"[{'OK' if broker_ok else 'ERROR'}] Broker {settings.celery.broker}")
        return 0 if db_ok and broker_ok else 1
    finally:
        _stop()
