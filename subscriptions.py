"""
Recurring orders.

Subscriptions are embedded in the user document. ``process_due_subscriptions``
is run once a day by ``jobs.py`` and turns every due subscription into a Cash on
Delivery order; a subscription that cannot be fulfilled is switched off and the
customer is told why.
"""
import calendar
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from bson import ObjectId
from pymongo.database import Database

import inventory
import pricing
import stores
from catalog import effective_price, get_product
from database import to_object_id, utcnow
from errors import ConflictError, NotFoundError
from inventory import StockLine
from notifications import NotificationDispatcher
from orders import select_address, short_id
from schemas import COD, PLACED, Order, OrderItem, ShippingAddress, Subscription, SubscriptionCreate

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_delivery(current: datetime, frequency: str) -> datetime:
    if frequency == "Daily":
        return current + timedelta(days=1)
    if frequency == "Weekly":
        return current + timedelta(days=7)
    if frequency == "Monthly":
        return add_months(current, 1)
    raise ValueError(f"Unknown subscription frequency: {frequency}")


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


# ------------ Customer operations ------------

def create_subscription(db: Database, user: dict, payload: SubscriptionCreate) -> dict:
    user = db["user"].find_one({"_id": user["_id"]})
    if not user:
        raise NotFoundError("User not found")
    store = stores.resolve_store_for_pincode(db, payload.pincode)
    product = get_product(db, payload.product_id)
    if not product.get("is_available"):
        raise NotFoundError("Product not found or is unavailable")
    address = select_address(user, payload.shipping_address_id)

    for sub in user.get("subscriptions") or []:
        if sub.get("is_active") and sub["product"] == product["_id"] and sub["store"] == store["_id"]:
            raise ConflictError("You already have an active subscription for this product")

    subscription = Subscription(
        product=product["_id"],
        store=store["_id"],
        quantity=payload.quantity,
        frequency=payload.frequency,
        next_delivery_date=_start_of_day(utcnow()) + timedelta(days=1),
        shipping_address={k: address.get(k) for k in
                          ("address_line1", "address_line2", "city", "state", "pincode")},
    )
    doc = subscription.model_dump(by_alias=True)
    db["user"].update_one({"_id": user["_id"]}, {"$push": {"subscriptions": doc}})
    logger.info("User %s subscribed to product %s (%s)", user["_id"], product["_id"], payload.frequency)
    return doc


def list_subscriptions(db: Database, user: dict) -> List[dict]:
    user = db["user"].find_one({"_id": user["_id"]}, {"subscriptions": 1})
    subs = (user or {}).get("subscriptions") or []
    products = {p["_id"]: p for p in db["product"].find(
        {"_id": {"$in": [s["product"] for s in subs]}}, {"name": 1, "image": 1, "price": 1})}
    for s in subs:
        s["product_details"] = products.get(s["product"])
    return subs


def cancel_subscription(db: Database, user: dict, subscription_id) -> None:
    sub_oid = to_object_id(subscription_id, "subscription id")
    result = db["user"].update_one(
        {"_id": user["_id"], "subscriptions._id": sub_oid},
        {"$set": {"subscriptions.$.is_active": False}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Subscription not found")


# ------------ Runner ------------

def _deactivate(db: Database, user_id: ObjectId, subscription_id: ObjectId):
    db["user"].update_one(
        {"_id": user_id, "subscriptions._id": subscription_id},
        {"$set": {"subscriptions.$.is_active": False}},
    )


def fulfil_subscription(db: Database, user: dict, sub: dict, now: datetime) -> dict:
    """Place the order for one due subscription and move it to its next date."""
    address = sub["shipping_address"]
    if not stores.is_serviceable(db, address["pincode"]):
        raise ConflictError(stores.NOT_SERVICEABLE)
    product = db["product"].find_one({"_id": sub["product"]})
    if not product or not product.get("is_available"):
        raise ConflictError("The subscribed product is no longer available")

    line = StockLine(product=product["_id"], store=sub["store"], qty=sub["quantity"], name=product["name"])
    if not inventory.check_availability(db, line.product, line.store, line.qty):
        raise ConflictError(f'Not enough stock for "{product["name"]}"')

    item = OrderItem(product=product["_id"], name=product["name"], qty=sub["quantity"],
                     price=effective_price(product, now), image=product.get("image", ""))
    totals = pricing.compute_totals([item.model_dump()], now=now)
    order = Order(
        user=user["_id"],
        order_items=[item],
        shipping_address=ShippingAddress(**address),
        payment_method=COD,
        items_price=totals.items_price,
        discount_amount=totals.discount_amount,
        tax_price=totals.tax_price,
        shipping_price=totals.shipping_price,
        total_price=totals.total_price,
        order_status=PLACED,
        dark_store=sub["store"],
        source="subscription",
    )

    inventory.reserve(db, [line])
    doc = order.model_dump()
    doc.update({"created_at": now, "updated_at": now})
    try:
        order_id = db["order"].insert_one(doc).inserted_id
    except Exception:
        inventory.release(db, [line])
        raise
    db["user"].update_one(
        {"_id": user["_id"], "subscriptions._id": sub["_id"]},
        {"$set": {"subscriptions.$.next_delivery_date": next_delivery(sub["next_delivery_date"], sub["frequency"])}},
    )
    doc["_id"] = order_id
    return doc


def process_due_subscriptions(db: Database, notifier: NotificationDispatcher,
                              now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    users = list(db["user"].find({
        "subscriptions": {"$elemMatch": {"is_active": True, "next_delivery_date": {"$lte": now}}},
    }))

    created, failed = 0, 0
    for user in users:
        for sub in user.get("subscriptions") or []:
            if not sub.get("is_active") or sub["next_delivery_date"] > now:
                continue
            try:
                order = fulfil_subscription(db, user, sub, now)
            except Exception as e:
                failed += 1
                logger.warning("Subscription %s for user %s failed: %s", sub["_id"], user["_id"], e)
                _deactivate(db, user["_id"], sub["_id"])
                if user.get("email"):
                    notifier.send_email(
                        user["email"],
                        "Your QuickKart subscription has been paused",
                        f"We could not place your scheduled order: {e}. "
                        "Your subscription has been paused; you can set it up again from the app.",
                    )
                continue
            created += 1
            logger.info("Subscription %s created order %s", sub["_id"], order["_id"])
            notifier.notify_user(user, f"Subscription Order Placed (#{short_id(order['_id'])})",
                                 f"Your scheduled order for ₹{order['total_price']:.2f} is on its way to being packed.",
                                 {"order_id": str(order["_id"])})
    return {"created": created, "failed": failed}
