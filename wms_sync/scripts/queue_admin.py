"""
Operator commands for the webhook queue.

Usage:
    python -m wms_sync.scripts.queue_admin init-db
    python -m wms_sync.scripts.queue_admin stats
    python -m wms_sync.scripts.queue_admin recent --limit 20
    python -m wms_sync.scripts.queue_admin retry-failed [--ids 1 2 3]
    python -m wms_sync.scripts.queue_admin process
    python -m wms_sync.scripts.queue_admin cleanup
    python -m wms_sync.scripts.queue_admin reconcile stock
"""
import argparse
import json

from wms_sync.models import db
from wms_sync.runtime import get_runtime, processing_options
from wms_sync.services.event_store import EventStore
from wms_sync.services.reconciliation import ReconciliationCategory


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def init_db():
    db.create_all()
    print("Tables created.")


def show_stats():
    _print(EventStore.get_stats())


def show_recent(limit):
    for event in EventStore.get_recent_activity(limit):
        row = event.to_dict()
        print(f"{row['id']:>6}  {row['status']:<10} {row['type']:<22} {row['entity_key']:<20} "
              f"attempts={row['attempts']}  {row['error_message'] or ''}")


def retry_failed(ids=None):
    count = EventStore.retry_failed(ids)
    print(f"Reset {count} failed event(s) to pending.")


def process():
    summary = get_runtime().runner.process_batch(processing_options())
    _print(summary.to_dict())


def cleanup():
    _print(get_runtime().maintenance.run_cleanup())


def reconcile(category):
    summary = get_runtime().reconciliation.run(ReconciliationCategory(category), processing_options())
    _print(summary.to_dict())


def build_parser():
    parser = argparse.ArgumentParser(description="Inspect and operate the WMS webhook queue")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("stats", help="Event counts per status")

    recent = sub.add_parser("recent", help="Recently updated events")
    recent.add_argument("--limit", type=int, default=20)

    retry = sub.add_parser("retry-failed", help="Reset failed events to pending")
    retry.add_argument("--ids", type=int, nargs="+", help="Only these event ids (default: all failed)")

    sub.add_parser("process", help="Run one queue pass now")
    sub.add_parser("cleanup", help="Purge old events and time out stale deferred events")

    rec = sub.add_parser("reconcile", help="Poll the WMS for one category")
    rec.add_argument("category", choices=[c.value for c in ReconciliationCategory])
    return parser


def run_command(args):
    if args.command == "init-db":
        init_db()
    elif args.command == "stats":
        show_stats()
    elif args.command == "recent":
        show_recent(args.limit)
    elif args.command == "retry-failed":
        retry_failed(args.ids)
    elif args.command == "process":
        process()
    elif args.command == "cleanup":
        cleanup()
    elif args.command == "reconcile":
        reconcile(args.category)


if __name__ == "__main__":
    from wms_sync import create_app
    from wms_sync.config import get_config

    args = build_parser().parse_args()

    class ScriptConfig(get_config()):
        SCHEDULER_ENABLED = False

    app = create_app(ScriptConfig)
    with app.app_context():
        run_command(args)
