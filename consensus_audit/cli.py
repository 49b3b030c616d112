"""
Consensus Audit maintenance commands.

Usage:
    # Refresh model_prices from the gateway catalogue (for cron)
    consensus-audit sync-prices

    # Use a different catalogue endpoint
    consensus-audit sync-prices --catalogue-url https://openrouter.ai/api/v1/models

    # Apply pending migrations
    consensus-audit migrate

    # Exit 1 if migrations are pending (deploy gate)
    consensus-audit migrate --check
"""

import argparse
import asyncio
import sys

import httpx

from consensus_audit.db.migration_runner import migration_status, run_migrations
from consensus_audit.db.session import close_engines, get_session
from consensus_audit.observability import get_logger, setup_logging
from consensus_audit.services.pricing import PriceSyncResult, PriceSyncService

logger = get_logger(__name__)


async def sync_prices(catalogue_url: str | None = None) -> PriceSyncResult:
    """Fetch the model catalogue and upsert prices."""
    try:
        async with get_session() as session:
            return await PriceSyncService(session, catalogue_url=catalogue_url).sync()
    finally:
        await close_engines()


def migrate(check_only: bool = False) -> int:
    """Apply migrations, or with check_only report whether any are pending."""
    if not check_only:
        run_migrations()
        return 0

    current, head = migration_status()
    if current == head:
        print(f"Database is at head ({head})")
        return 0

    print(f"Migrations pending: {current} -> {head}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="consensus-audit",
        description="Consensus audit maintenance commands",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync-prices", help="Refresh per-token model prices")
    sync_parser.add_argument(
        "--catalogue-url",
        default=None,
        help="Model catalogue URL (default: {LLM_BASE_URL}/models)",
    )

    migrate_parser = subparsers.add_parser("migrate", help="Apply pending database migrations")
    migrate_parser.add_argument(
        "--check",
        action="store_true",
        help="Only report whether migrations are pending",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    setup_logging()
    args = build_parser().parse_args(argv)

    if args.command == "migrate":
        return migrate(check_only=args.check)

    try:
        result = asyncio.run(sync_prices(args.catalogue_url))
    except (httpx.HTTPError, ValueError) as e:
        logger.error("model_price_sync_failed", error=str(e))
        return 1

    print(
        f"Synced {result.upserted} of {result.fetched} models "
        f"({result.skipped} skipped) at {result.synced_at.isoformat()}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
