"""Command-line front end for the schoolsync local store and sync engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from schoolsync.config import Settings
from schoolsync.database import LocalDatabase
from schoolsync.exceptions import SyncEngineError
from schoolsync.logging_config import configure_logging
from schoolsync.models.sync import QueueStatus
from schoolsync.remote.http import HttpRemoteAPI
from schoolsync.services import conflict_log, local_store, offline_service, sync_queue
from schoolsync.services.connectivity import (
    ConnectivityMonitor,
    ConnectivityStatus,
    HttpHealthProbe,
)
from schoolsync.services.sync_engine import LAST_SYNC_AT, SyncEngine
from schoolsync.services.sync_queue import RetryPolicy

if TYPE_CHECKING:
    from schoolsync.remote.base import RemoteAPI

_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def parse_payload(raw: str) -> dict[str, Any]:
    """Parse a ``--data`` argument; it must be a JSON object."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"--data is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ValueError("--data must be a JSON object")
    return data


def build_clients(settings: Settings) -> tuple[RemoteAPI, HttpHealthProbe]:
    """Create the remote API client and the health probe for ``settings``."""
    return HttpRemoteAPI.from_settings(settings), HttpHealthProbe.from_settings(settings)


@dataclass
class Runtime:
    db: LocalDatabase
    remote: RemoteAPI
    probe: HttpHealthProbe
    monitor: ConnectivityMonitor
    engine: SyncEngine

    async def close(self) -> None:
        await self.engine.stop()
        await self.remote.close()
        await self.probe.close()
        await self.db.close()


async def open_runtime(settings: Settings) -> Runtime:
    db = LocalDatabase(settings)
    await db.open()
    remote, probe = build_clients(settings)
    monitor = ConnectivityMonitor(probe, check_interval=settings.health_check_interval_seconds)
    # One-shot commands sync explicitly; no periodic timer.
    engine = SyncEngine(
        db,
        remote,
        monitor,
        policy=RetryPolicy.from_settings(settings),
        max_concurrent_entities=settings.max_concurrent_entities,
        pull_changes=settings.pull_remote_changes,
    )
    return Runtime(db=db, remote=remote, probe=probe, monitor=monitor, engine=engine)


# ── Commands ─────────────────────────────────────────


async def cmd_status(rt: Runtime, args: argparse.Namespace) -> None:
    await rt.monitor.check()
    snapshot = await rt.engine.status()
    conflicts = await conflict_log.count_conflicts(rt.db)
    async with rt.db.transaction() as session:
        records = await local_store.count_records(session)
        last_sync = await local_store.get_metadata(session, LAST_SYNC_AT)
    print("Sync Status:")
    print(f"  Indicator:    {snapshot.indicator}")
    print(f"  Connectivity: {snapshot.connectivity}")
    print(f"  Records:      {records}")
    print(f"  Pending:      {snapshot.pending_count}")
    print(f"  Failed:       {snapshot.error_count}")
    print(f"  Conflicts:    {conflicts}")
    print(f"  Last sync:    {last_sync or 'never'}")


async def cmd_sync(rt: Runtime, args: argparse.Namespace) -> None:
    if await rt.monitor.check() != ConnectivityStatus.ONLINE:
        print("Server unreachable; changes stay queued.")
        return
    result = await rt.engine.trigger_manual_sync()
    _print_result(result.synced, result.failed, result.conflicts, result.pulled)
    if result.error:
        print(f"Error: {result.error}")


async def cmd_retry(rt: Runtime, args: argparse.Namespace) -> None:
    rearmed = await sync_queue.retry_failed(rt.db, args.id)
    print(f"Re-armed {rearmed} failed item(s)")
    if rearmed and await rt.monitor.check() == ConnectivityStatus.ONLINE:
        result = await rt.engine.trigger_manual_sync()
        _print_result(result.synced, result.failed, result.conflicts, result.pulled)


async def cmd_queue(rt: Runtime, args: argparse.Namespace) -> None:
    status = QueueStatus(args.status) if args.status else None
    items = await sync_queue.list_items(rt.db, status=status, entity=args.entity)
    if not items:
        print("Queue is empty")
        return
    for item in items:
        line = (
            f"  #{item.id} {item.operation:<6} {item.entity}/{item.entity_id} "
            f"[{item.status}] attempts={item.attempts}"
        )
        if item.last_error:
            line += f" error={item.last_error}"
        print(line)


async def cmd_conflicts(rt: Runtime, args: argparse.Namespace) -> None:
    conflicts = await conflict_log.list_conflicts(rt.db, entity=args.entity)
    if not conflicts:
        print("No conflicts")
        return
    for conflict in conflicts:
        print(
            f"  ! {conflict.entity}/{conflict.entity_id} "
            f"local v{conflict.local_version} vs server v{conflict.server_version} "
            f"({conflict.resolution})"
        )


async def cmd_create(rt: Runtime, args: argparse.Namespace) -> None:
    record = await offline_service.create_offline(rt.db, args.entity, parse_payload(args.data))
    print(f"Created {record.entity}/{record.id} (queued)")


async def cmd_update(rt: Runtime, args: argparse.Namespace) -> None:
    record = await offline_service.update_offline(
        rt.db, args.entity, args.id, parse_payload(args.data)
    )
    print(f"Updated {record.entity}/{record.id} to v{record.version} (queued)")


async def cmd_delete(rt: Runtime, args: argparse.Namespace) -> None:
    await offline_service.delete_offline(rt.db, args.entity, args.id)
    print(f"Deleted {args.entity}/{args.id}")


async def cmd_clear(rt: Runtime, args: argparse.Namespace) -> None:
    await rt.engine.reset()
    print("Local store cleared")


def _print_result(synced: int, failed: int, conflicts: int, pulled: int) -> None:
    print("Sync complete:")
    print(f"  Synced:    {synced}")
    print(f"  Failed:    {failed}")
    print(f"  Conflicts: {conflicts}")
    print(f"  Pulled:    {pulled}")


COMMANDS = {
    "status": cmd_status,
    "sync": cmd_sync,
    "retry": cmd_retry,
    "queue": cmd_queue,
    "conflicts": cmd_conflicts,
    "create": cmd_create,
    "update": cmd_update,
    "delete": cmd_delete,
    "clear": cmd_clear,
}


async def run_command(settings: Settings, args: argparse.Namespace) -> None:
    rt = await open_runtime(settings)
    try:
        await COMMANDS[args.command](rt, args)
    finally:
        await rt.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schoolsync",
        description="Inspect and sync the offline schoolsync store",
    )
    parser.add_argument("--server", "-s", help="Server URL (default: SCHOOLSYNC_SERVER_URL)")
    parser.add_argument("--database", help="SQLAlchemy URL of the local store")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("status", help="Show connectivity and queue counts")
    subparsers.add_parser("sync", help="Replay the queue now")

    retry = subparsers.add_parser("retry", help="Re-arm failed items and sync")
    retry.add_argument("--id", type=int, help="Only this queue item")

    queue = subparsers.add_parser("queue", help="List queued mutations")
    queue.add_argument("--status", choices=[s.value for s in QueueStatus])
    queue.add_argument("--entity")

    conflicts = subparsers.add_parser("conflicts", help="List resolved conflicts")
    conflicts.add_argument("--entity")

    create = subparsers.add_parser("create", help="Create a record offline")
    create.add_argument("--entity", required=True)
    create.add_argument("--data", required=True, help="JSON object payload")

    update = subparsers.add_parser("update", help="Change fields of a record offline")
    update.add_argument("--entity", required=True)
    update.add_argument("--id", required=True)
    update.add_argument("--data", required=True, help="JSON object of changed fields")

    delete = subparsers.add_parser("delete", help="Delete a record offline")
    delete.add_argument("--entity", required=True)
    delete.add_argument("--id", required=True)

    subparsers.add_parser("clear", help="Erase the local store (logout)")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    overrides: dict[str, Any] = {}
    if args.debug:
        overrides["debug"] = True
    if args.database:
        overrides["database_url"] = args.database
    try:
        if args.server:
            overrides["server_url"] = validate_server_url(args.server, args.allow_insecure_http)
        settings = Settings(**overrides)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if settings.debug:
        configure_logging(debug=True)
    try:
        asyncio.run(run_command(settings, args))
    except (ValueError, SyncEngineError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
