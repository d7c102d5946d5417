"""
Seed the Plan Catalog

Inserts the default free and premium plans when they are missing. Existing
plans are left alone unless --reset is given, in which case the named plans
are restored to their default price, features and active flag (audited as a
normal plan update).

Usage (from backend/):
  python -m scripts.seed_plans
  python -m scripts.seed_plans --reset premium
  python -m scripts.seed_plans --reset free premium
"""

import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from models import PlanName, PlanUpdate
from services.plan_registry import DEFAULT_PLANS, plan_registry
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed_plans(reset=None) -> bool:
    await database.connect()
    try:
        inserted = await plan_registry.ensure_defaults()
        logger.info("Inserted plans: %s", ", ".join(inserted) or "none")

        ok = True
        for name in reset or []:
            defaults = {k: v for k, v in DEFAULT_PLANS[PlanName(name)].items() if k != "name"}
            success, message, _ = await plan_registry.update_plan(
                name, PlanUpdate(**defaults), actor_id="SYSTEM"
            )
            logger.info("Reset %s: %s", name, message)
            ok = ok and success
        return ok
    finally:
        await database.close()


def main():
    parser = argparse.ArgumentParser(description="Seed the subscription plan catalog")
    parser.add_argument(
        "--reset",
        nargs="+",
        choices=[p.value for p in PlanName],
        help="Restore these plans to their default definition",
    )
    args = parser.parse_args()
    ok = asyncio.run(seed_plans(args.reset))
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
