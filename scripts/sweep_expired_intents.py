"""Fail unpaid payment intents past their expiry and queue release of their stock."""

import argparse
import json

from orderpipe.common.db import SessionLocal
from orderpipe.common.logging import configure_logging
from orderpipe.services.checkout.service import CheckoutService


def main() -> None:
    """CLI entrypoint, meant for cron next to the order worker."""

    parser = argparse.ArgumentParser(description="Expire stale pending payment intents.")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    configure_logging()
    expired = CheckoutService(SessionLocal).expire_stale_intents(limit=args.limit)
    print(json.dumps({"expired": expired}))


if __name__ == "__main__":
    main()
