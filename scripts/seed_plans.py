"""Seed the billing plan catalog.

Provider price ids are taken from STRIPE_PRICE_<SLUG> (e.g. STRIPE_PRICE_PRO).
"""

import os

from dotenv import load_dotenv

from creditledger.db import SessionLocal
from creditledger.services.plans import seed_default_plans


def main() -> None:
    load_dotenv()
    db = SessionLocal()
    try:
        seeded = seed_default_plans(db)
        for plan in seeded:
            price_id = os.getenv(f"STRIPE_PRICE_{plan.slug.upper()}")
            if price_id:
                plan.provider_price_id = price_id
        db.commit()
        print(f"Seeded {len(seeded)} billing plans.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
