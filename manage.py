#!/usr/bin/env python3
"""Utility CLI for operating the Penpal sync layer."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent
ENV_FILE = PROJECT_ROOT / ".env"

T = TypeVar("T")


@dataclass(slots=True)
class CheckResult:
    """Single diagnostic result entry."""

    title: str
    message: str
    status: str  # ok | warn | fail

    @property
    def icon(self) -> str:
        return {"ok": "[ok]", "warn": "[warn]", "fail": "[fail]"}.get(self.status, "[?]")

    def colorize(self, text: str) -> str:
        colors = {"ok": "\033[32m", "warn": "\033[33m", "fail": "\033[31m"}
        prefix = colors.get(self.status, "")
        suffix = "\033[0m" if prefix else ""
        return f"{prefix}{text}{suffix}"

    def formatted(self) -> str:
        return self.colorize(f"{self.icon} {self.title}: {self.message}")


def _load_env() -> None:
    """Load .env values without overriding existing environment variables."""

    load_dotenv(ENV_FILE, override=False)


def _with_runtime(action: Callable[..., Awaitable[T]]) -> T:
    from penpal.config import load_config
    from penpal.main import build_runtime

    async def _run() -> T:
        runtime = build_runtime(load_config(str(ENV_FILE) if ENV_FILE.exists() else None))
        await runtime.open(background=False)
        try:
            return await action(runtime)
        finally:
            await runtime.close()

    return asyncio.run(_run())


def _command_run() -> int:
    from penpal.main import main as app_main  # Local import to avoid heavy deps for other cmds

    asyncio.run(app_main())
    return 0


def _command_check() -> int:
    _load_env()
    from penpal.config import load_config

    results: List[CheckResult] = []

    def add_result(title: str, status: str, message: str) -> None:
        results.append(CheckResult(title=title, status=status, message=message))

    try:
        config = load_config()
    except RuntimeError as exc:
        add_result("Configuration", "fail", str(exc))
        config = None
    else:
        add_result(
            "Configuration",
            "ok",
            f"backend={config.remote_backend}, daily swipes={config.daily_swipe_limit}",
        )

    if config is not None:
        db_dir = config.local_db_path.parent
        try:
            db_dir.mkdir(parents=True, exist_ok=True)
            probe = db_dir / ".selftest"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            add_result("Local cache", "fail", f"Directory not writable: {exc}")
        else:
            add_result("Local cache", "ok", f"Directory available: {db_dir}")

        if config.remote_backend == "firestore":
            if config.firebase_credentials_json is None:
                add_result(
                    "Firebase credentials",
                    "warn",
                    "FIREBASE_CREDENTIALS_JSON not set, using application default credentials",
                )
            else:
                add_result(
                    "Firebase credentials", "ok", f"File found: {config.firebase_credentials_json}"
                )
        else:
            add_result("Remote store", "warn", "In-memory backend: data is not persisted")

    log_dir = Path(os.getenv("LOG_DIR", "logs"))
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        add_result("Logs", "fail", f"Cannot create {log_dir}: {exc}")
    else:
        add_result("Logs", "ok", f"Directory available: {log_dir}")

    print("\n=== Self-check report ===")
    for item in results:
        print(item.formatted())

    has_fail = any(item.status == "fail" for item in results)
    has_warn = any(item.status == "warn" for item in results)
    if has_fail:
        summary = CheckResult(title="Summary", status="fail", message="critical problems found")
    elif has_warn:
        summary = CheckResult(title="Summary", status="warn", message="warnings only")
    else:
        summary = CheckResult(title="Summary", status="ok", message="ready to run")
    print(summary.formatted())
    return 1 if has_fail else 0


def _command_quota_status(user_id: str) -> int:
    async def action(runtime) -> int:
        status = await runtime.ledger.status(user_id, runtime.config.daily_swipe_limit)
        ends = status.window_ends_at.isoformat()
        print(f"{user_id}: remaining={status.remaining} window_ends_at={ends}")
        return 0

    return _with_runtime(action)


def _command_set_max(user_id: str, new_max: int) -> int:
    async def action(runtime) -> int:
        record = await runtime.ledger.set_max(user_id, new_max)
        print(f"{user_id}: max={record.max_per_day} used={record.used} day={record.day}")
        return 0

    return _with_runtime(action)


def _command_purge() -> int:
    async def action(runtime) -> int:
        removed = await runtime.janitor.purge_expired()
        for collection, count in removed.items():
            print(f"{collection}: {count} rows removed")
        return 0

    return _with_runtime(action)


def _command_clear() -> int:
    async def action(runtime) -> int:
        await runtime.local.clear_all()
        print("Local cache cleared")
        return 0

    return _with_runtime(action)


def _command_pending(collection: str) -> int:
    async def action(runtime) -> int:
        for coordinator in runtime.coordinators.values():
            if coordinator.codec.collection == collection:
                break
        else:
            print(f"Unknown collection: {collection}", file=sys.stderr)
            return 2
        entities = await coordinator.pending()
        for entity in entities:
            print(f"{entity.id}\t{entity.updated_at.isoformat()}")
        print(f"{len(entities)} unsynced rows")
        return 0

    return _with_runtime(action)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Penpal sync management CLI")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the sync runtime")
    run_parser.set_defaults(func=lambda _args: _command_run())

    check_parser = subparsers.add_parser("check", help="Validate the environment")
    check_parser.set_defaults(func=lambda _args: _command_check())

    status_parser = subparsers.add_parser("quota-status", help="Show a user's remaining swipes")
    status_parser.add_argument("user_id")
    status_parser.set_defaults(func=lambda args: _command_quota_status(args.user_id))

    max_parser = subparsers.add_parser("set-max", help="Override a user's daily swipe cap")
    max_parser.add_argument("user_id")
    max_parser.add_argument("new_max", type=int)
    max_parser.set_defaults(func=lambda args: _command_set_max(args.user_id, args.new_max))

    purge_parser = subparsers.add_parser("purge", help="Evict expired cache rows")
    purge_parser.set_defaults(func=lambda _args: _command_purge())

    clear_parser = subparsers.add_parser("clear", help="Wipe every cached collection")
    clear_parser.set_defaults(func=lambda _args: _command_clear())

    pending_parser = subparsers.add_parser("pending", help="List unsynced rows of a collection")
    pending_parser.add_argument("collection")
    pending_parser.set_defaults(func=lambda args: _command_pending(args.collection))

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
