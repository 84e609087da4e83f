"""
Payment reconciliation sweep.
Resolves pending orders whose gateway outcome is unknown and retries
enrollment for paid orders. Run it periodically (cron, scheduler).

Usage:
    python reconcile.py
    python reconcile.py --stale-minutes 30
    python reconcile.py --batch-size 500
"""
import argparse
import json
import sys
from datetime import timedelta

from config import get_settings
from database import SessionLocal
from gateways import build_gateways
from services.reconciliation_service import PaymentReconciler
from utils.logger import configure_logging


def main(argv=None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Course payments reconciliation sweep")
    parser.add_argument(
        "--stale-minutes",
        type=float,
        default=settings.reconcile_stale_minutes,
        help=f"Age after which an unresolved attempt is reconciled (default: {settings.reconcile_stale_minutes:g})",
    )
    parser.add_argument("--batch-size", type=int, default=100, help="Max orders per step (default: 100)")

    args = parser.parse_args(argv)
    configure_logging(settings.log_dir, settings.log_level)

    reconciler = PaymentReconciler(
        SessionLocal,
        build_gateways(settings),
        stale_after=timedelta(minutes=args.stale_minutes),
        batch_size=args.batch_size,
    )
    report = reconciler.run()
    print(json.dumps(report.as_dict()))
    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(main())
