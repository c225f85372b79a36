#!/usr/bin/env python3
"""Inspect and clean up workflow threads in the checkpoint store.

Usage:
    python scripts/inspect_threads.py list
    python scripts/inspect_threads.py show THREAD_ID
    python scripts/inspect_threads.py delete THREAD_ID [--dry-run]

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Inspect an empty in-memory store (useful only for smoke tests)
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def list_threads(store) -> List[Dict[str, Any]]:
    rows = []
    for thread_id in store.list():
        checkpoint = store.get(thread_id)
        session = store.get_session(thread_id)
        rows.append({
            "thread_id": thread_id,
            "status": session.status.value if session else None,
            "version": checkpoint.version if checkpoint else None,
            "updated_at": checkpoint.updated_at.isoformat() if checkpoint else None,
        })
    return rows


def show_thread(store, thread_id: str) -> Optional[Dict[str, Any]]:
    checkpoint = store.get(thread_id)
    session = store.get_session(thread_id)
    if checkpoint is None and session is None:
        return None
    return {
        "thread_id": thread_id,
        "status": session.status.value if session else None,
        "user_id": session.user_id if session else None,
        "component": session.component if session else None,
        "version": checkpoint.version if checkpoint else None,
        "versions": store.list_versions(thread_id),
        "metadata": checkpoint.metadata.to_dict() if checkpoint else None,
        "state": checkpoint.state if checkpoint else None,
        "resource_usage": store.get_resource_usage(thread_id),
    }


def delete_thread(store, thread_id: str, dry_run: bool = False) -> Dict[str, Any]:
    if store.get(thread_id) is None and store.get_session(thread_id) is None:
        return {"thread_id": thread_id, "status": "not_found"}
    if dry_run:
        print(f"[DRY RUN] Would delete thread {thread_id}")
        return {"thread_id": thread_id, "status": "dry_run"}
    store.delete(thread_id)
    return {"thread_id": thread_id, "status": "deleted"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect flowguard workflow threads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List thread ids, most recently updated first")
    show = sub.add_parser("show", help="Show the current checkpoint of a thread")
    show.add_argument("thread_id")
    delete = sub.add_parser("delete", help="Delete a thread and its records")
    delete.add_argument("thread_id")
    delete.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    return parser


def main(argv: Optional[List[str]] = None, store=None) -> int:
    args = build_parser().parse_args(argv)

    if store is None:
        # Import here to avoid loading config before env vars are set
        from flowguard.config import Settings
        from flowguard.service.runtime import build_checkpoint_store

        store = build_checkpoint_store(Settings.from_env())
    if not store.persisted:
        print("Note: checkpoint store is in-memory; nothing persisted will be shown", file=sys.stderr)

    try:
        if args.command == "list":
            result: Any = list_threads(store)
        elif args.command == "show":
            result = show_thread(store, args.thread_id)
            if result is None:
                print(f"Error: thread {args.thread_id} not found")
                return 1
        else:
            result = delete_thread(store, args.thread_id, args.dry_run)
            if result["status"] == "not_found":
                print(f"Error: thread {args.thread_id} not found")
                return 1
        print(json.dumps(result, indent=2, default=str))
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
