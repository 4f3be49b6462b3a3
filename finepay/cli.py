"""
Online payment monitor.

Background sweeps over payments that were paid but never registered with
the ILS. Meant to be run from cron.

Usage:
    finepay-monitor retry
    finepay-monitor retry --min-paid-age 300 --expire-hours 48
    finepay-monitor report --interval 8

Commands:
    retry    Retry registration of REGISTRATION_FAILED and stalled PAID
             transactions; give up on ones paid too long ago.
    report   Report FINES_UPDATED and REGISTRATION_EXPIRED transactions to
             operators, grouped by ILS driver.
"""

import argparse
import asyncio
import json
import sys

import structlog

from finepay.config import settings
from finepay.database import AsyncSessionLocal, engine
from finepay.logging_config import setup_logging
from finepay.services import monitor_service
from finepay.services.ils_client import HttpILSConnector

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="finepay-monitor",
        description="Retry and report online payments stuck between the gateway and the ILS",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    retry = commands.add_parser("retry", help="Retry failed registrations")
    retry.add_argument(
        "--min-paid-age",
        type=int,
        default=settings.FAILED_TRANSACTION_MIN_PAID_AGE,
        help="Seconds a PAID transaction must wait before it is retried",
    )
    retry.add_argument(
        "--expire-hours",
        type=int,
        default=settings.REGISTRATION_EXPIRE_HOURS,
        help="Hours after payment when retries are given up",
    )

    report = commands.add_parser("report", help="Report unresolved transactions")
    report.add_argument(
        "--interval",
        type=int,
        default=settings.UNRESOLVED_REPORT_INTERVAL_HOURS,
        help="Minimum hours between reports of the same transaction",
    )
    return parser


async def run(args: argparse.Namespace) -> dict:
    structlog.contextvars.bind_contextvars(
        server_name=settings.SERVER_NAME,
        request_uri=f"cli:{args.command}",
    )
    try:
        if args.command == "retry":
            ils = HttpILSConnector()
            try:
                result = await monitor_service.retry_failed_transactions(
                    AsyncSessionLocal,
                    ils,
                    minimum_paid_age=args.min_paid_age,
                    expire_hours=args.expire_hours,
                )
            finally:
                await ils.aclose()
            return {
                "processed": result.processed,
                "registered": result.registered,
                "failed": result.failed,
                "expired": result.expired,
            }

        result = await monitor_service.report_unresolved_transactions(
            AsyncSessionLocal, interval=args.interval
        )
        return {"total": result.total, "by_driver": result.by_driver}
    finally:
        structlog.contextvars.clear_contextvars()
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging()
    try:
        summary = asyncio.run(run(args))
    except Exception:
        logger.exception("monitor_failed", command=args.command)
        return 1
    print(json.dumps(summary, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
