"""
Batch jobs, run by an external scheduler:

    python jobs.py cart-cleanup     # hourly
    python jobs.py subscriptions    # daily at 05:00
    python jobs.py low-stock        # daily at 08:00
"""
import argparse
import logging
import sys
from datetime import timedelta

from pymongo.database import Database

import config
import inventory
import site_settings
import subscriptions
from database import get_db, utcnow
from notifications import NotificationDispatcher
from schemas import ROLE_ADMIN

logger = logging.getLogger(__name__)

CART_TTL_MINUTES = 60


def clear_inactive_carts(db: Database, notifier: NotificationDispatcher = None, now=None) -> dict:
    now = now or utcnow()
    cutoff = now - timedelta(minutes=CART_TTL_MINUTES)
    result = db["user"].update_many(
        {"cart.0": {"$exists": True}, "last_cart_update": {"$lt": cutoff}},
        {"$set": {"cart": [], "last_cart_update": now}},
    )
    if result.modified_count:
        logger.info("Inactive carts cleared: %d users affected", result.modified_count)
    else:
        logger.info("No inactive carts found to clear")
    return {"cleared": result.modified_count}


def run_subscriptions(db: Database, notifier: NotificationDispatcher, now=None) -> dict:
    result = subscriptions.process_due_subscriptions(db, notifier, now)
    logger.info("Subscription job finished: %d orders created, %d failed", result["created"], result["failed"])
    return result


def send_low_stock_alerts(db: Database, notifier: NotificationDispatcher, now=None) -> dict:
    threshold = site_settings.get_settings(db).get("low_stock_threshold", 10)
    rows = inventory.low_stock_entries(db, threshold)
    if not rows:
        logger.info("No low stock products found")
        return {"products": 0, "notified": 0}

    admins = list(db["user"].find({"role": ROLE_ADMIN}, {"email": 1, "name": 1}))
    if not admins:
        logger.warning("%d products are low on stock but there is no admin to alert", len(rows))
        return {"products": len(rows), "notified": 0}

    lines = [f"- {r['name']} (Stock: {r['stock']} at {r['store_name']})" for r in rows]
    body = (
        f"Hi Admin,\n\nThe following products are running low on stock (Threshold: {threshold} units):\n\n"
        + "\n".join(lines)
        + "\n\nPlease restock them soon.\n\nQuickKart System Alert"
    )
    subject = f"QuickKart Low Stock Alert - {len(rows)} Products"
    notified = 0
    for admin in admins:
        if admin.get("email") and notifier.send_email(admin["email"], subject, body):
            notified += 1
    logger.info("Low stock alert for %d products sent to %d admins", len(rows), notified)
    return {"products": len(rows), "notified": notified}


JOBS = {
    "cart-cleanup": clear_inactive_carts,
    "subscriptions": run_subscriptions,
    "low-stock": send_low_stock_alerts,
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a QuickKart batch job once.")
    parser.add_argument("job", choices=sorted(JOBS))
    args = parser.parse_args(argv)

    config.configure_logging()
    db = get_db()
    logger.info("Running scheduled job: %s", args.job)
    try:
        JOBS[args.job](db, NotificationDispatcher.from_config())
    except Exception:
        logger.exception("Job %s failed", args.job)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
