"""Operator commands for encryption keys and token refresh."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

import httpx
from arq import create_pool

from channelhub.core.config import AppSettings
from channelhub.core.db.session import create_engine_from_settings
from channelhub.core.errors import CoreError
from channelhub.core.logging import configure_logging
from channelhub.credentials.store import build_credential_store
from channelhub.refresh.engine import RefreshService, TokenRefresher
from channelhub.security.encryption import (
    MAX_MASTER_KEY_LENGTH,
    MIN_MASTER_KEY_LENGTH,
    generate_master_key,
    hash_key_for_logging,
    validate_master_key,
)

OLD_KEY_ENV = "ENCRYPTION_OLD_MASTER_KEY"
NEW_KEY_ENV = "ENCRYPTION_MASTER_KEY"


def _key_length(value: str) -> int:
    length = int(value)
    if not MIN_MASTER_KEY_LENGTH <= length <= MAX_MASTER_KEY_LENGTH:
        raise argparse.ArgumentTypeError(
            f"length must be between {MIN_MASTER_KEY_LENGTH} and {MAX_MASTER_KEY_LENGTH}"
        )
    return length


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="channelhub",
        description="Maintenance commands for channel credentials.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate-key", help="Print a new random master key.")
    generate.add_argument(
        "--length",
        type=_key_length,
        default=64,
        help="Key length in characters (default: %(default)s).",
    )

    commands.add_parser("check-key", help=f"Validate the key in {NEW_KEY_ENV}.")

    rotate = commands.add_parser(
        "rotate-key",
        help=f"Re-seal a tenant's credentials from {OLD_KEY_ENV} to {NEW_KEY_ENV}.",
    )
    rotate.add_argument("--tenant-id", required=True)
    rotate.add_argument("--user-id", required=True, help="OWNER or ADMIN of the tenant.")

    sweep = commands.add_parser(
        "refresh-sweep", help="Refresh every expiring token of a tenant."
    )
    sweep.add_argument("--tenant-id", required=True)
    sweep.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Minutes before expiry that count as expiring (default: from settings).",
    )
    sweep.add_argument(
        "--enqueue",
        action="store_true",
        help="Hand the sweep to the refresh worker instead of running it here.",
    )
    return parser


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _generate_key(args: argparse.Namespace) -> int:
    key = generate_master_key(args.length)
    print(key)
    print(f"fingerprint: {hash_key_for_logging(key)}", file=sys.stderr)
    return 0


def _check_key(_: argparse.Namespace) -> int:
    key = os.environ.get(NEW_KEY_ENV)
    try:
        validate_master_key(key)
    except CoreError as exc:
        print(f"invalid master key: {exc.message}", file=sys.stderr)
        return 1
    print(f"master key ok (fingerprint {hash_key_for_logging(key or '')})")
    return 0


async def _rotate_key(args: argparse.Namespace, settings: AppSettings) -> int:
    old_key = os.environ.get(OLD_KEY_ENV)
    new_key = os.environ.get(NEW_KEY_ENV)
    if not old_key or not new_key:
        print(f"both {OLD_KEY_ENV} and {NEW_KEY_ENV} must be set", file=sys.stderr)
        return 2
    store = build_credential_store(settings, create_engine_from_settings(settings))
    report = await store.rotate_key(
        args.tenant_id, user_id=args.user_id, old_key=old_key, new_key=new_key
    )
    _print(
        {
            "success": report.success,
            "migrated": report.migrated_count,
            "skipped": report.skipped_count,
            "errors": report.errors,
        }
    )
    return 0 if report.success else 1


async def _refresh_sweep(args: argparse.Namespace, settings: AppSettings) -> int:
    if args.enqueue:
        pool = await create_pool(settings.redis.arq_settings())
        try:
            job = await pool.enqueue_job(
                "sweep_tenant",
                args.tenant_id,
                args.threshold,
                _queue_name=settings.refresh.queue_name,
            )
        finally:
            await pool.close()
        _print({"enqueued": job.job_id if job else None, "tenant_id": args.tenant_id})
        return 0

    store = build_credential_store(settings, create_engine_from_settings(settings))
    async with httpx.AsyncClient(timeout=settings.http.send_timeout_seconds) as client:
        service = RefreshService(
            store,
            TokenRefresher(client, settings.meta, settings.tiktok),
            settings.refresh,
        )
        expiring = await service.channels_needing_refresh(args.tenant_id, args.threshold)
        report = await service.refresh_batch(
            args.tenant_id, [info.channel_id for info in expiring]
        )
    _print(
        {
            "expiring": [info.to_dict() for info in expiring],
            "processed": report.processed,
            "succeeded": report.succeeded,
            "failed": report.failed,
            "skipped": report.skipped,
            "errors": report.errors,
        }
    )
    return 0 if report.success else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    if args.command == "generate-key":
        return _generate_key(args)
    if args.command == "check-key":
        return _check_key(args)

    settings = AppSettings.load()
    try:
        if args.command == "rotate-key":
            return asyncio.run(_rotate_key(args, settings))
        return asyncio.run(_refresh_sweep(args, settings))
    except CoreError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
