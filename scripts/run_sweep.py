"""Run one billing-cycle sweep in the foreground.

Pass --pull to refresh every subscription from Stripe first.
"""

import argparse

from dotenv import load_dotenv

from creditledger.db import SessionLocal
from creditledger.logging import configure_logging
from creditledger.services.billing import build_billing_services


def main() -> None:
    load_dotenv()
    configure_logging()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--pull", action="store_true", help="refresh from Stripe first")
    args = parser.parse_args()

    services = build_billing_services()
    db = SessionLocal()
    try:
        report = services.reconciler.sweep(db, pull=args.pull)
        print(
            f"Checked {report.checked}, granted {report.granted}, "
            f"stale {report.stale}, failed {report.failed}."
        )
    finally:
        db.close()
        services.close()


if __name__ == "__main__":
    main()
