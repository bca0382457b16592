"""Entry point for the external scheduler: run one billing clock pass and exit"""

import argparse
import asyncio
import logging
import sys
from datetime import date
from typing import List, Optional

from lease_billing.config import settings
from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.infrastructure.clients.notifications import NotificationClient
from lease_billing.infrastructure.observability.logging import setup_logging
from lease_billing.services.billing_clock import BillingClock
from lease_billing.services.dispatcher import BillingEventDispatcher


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one billing clock pass")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Billing date (YYYY-MM-DD), defaults to today",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(settings.log_level)

    clock = BillingClock(GatewayClient(), BillingEventDispatcher(NotificationClient()))
    summary = asyncio.run(clock.run_once(args.date))
    if summary.errors:
        logging.error("Billing clock finished with errors", extra={"errors": summary.errors})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
