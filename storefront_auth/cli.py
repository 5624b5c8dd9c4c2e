"""CLI entrypoints for operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from alembic import command
from alembic.config import Config

from storefront_auth.config import configure_structlog, get_settings
from storefront_auth.core.sessions import get_session_store
from storefront_auth.services.credentials import StaticCredentialVerifier


async def _run_sweep_sessions() -> int:
    """Purge expired sessions from the configured store."""
    removed = await get_session_store().sweep_expired()
    print(json.dumps({"removed_sessions": removed}))
    return 0


def _run_migrate(config_path: str, revision: str) -> int:
    """Upgrade the enrollment database to the given revision."""
    command.upgrade(Config(config_path), revision)
    print(json.dumps({"migrated_to": revision}))
    return 0


def _run_hash_password(password: str) -> int:
    """Print a hash usable in IDENTITY__STATIC_IDENTITIES for local development."""
    print(StaticCredentialVerifier(identities=[]).hash_password(password))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m storefront_auth.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("sweep-sessions", help="Delete sessions past their idle or absolute age.")
    migrate_parser = subcommands.add_parser("migrate", help="Apply alembic migrations.")
    migrate_parser.add_argument("--config", default="alembic.ini")
    migrate_parser.add_argument("--revision", default="head")
    hash_parser = subcommands.add_parser("hash-password", help="Hash a password for the static verifier.")
    hash_parser.add_argument("password")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "hash-password":
        return _run_hash_password(args.password)

    configure_structlog(get_settings())
    if args.command == "sweep-sessions":
        return asyncio.run(_run_sweep_sessions())
    if args.command == "migrate":
        return _run_migrate(args.config, args.revision)
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
