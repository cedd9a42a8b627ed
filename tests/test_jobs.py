from datetime import datetime, timedelta

import pytest
from bson import ObjectId

import jobs
import subscriptions
from database import utcnow
from errors import ConflictError, NotFoundError
from schemas import PLACED, SubscriptionCreate
from conftest import make_admin, make_product, make_store, make_user, put_in_cart, stock_of


def test_clear_inactive_carts(db):
    store = make_store(db)
    product = make_product(db, stock=5, store=store)
    stale, fresh = make_user(db), make_user(db)
    put_in_cart(db, stale, product, store, 1)
    put_in_cart(db, fresh, product, store, 1)
    db["user"].update_one({"_id": stale["_id"]}, {"$set": {"last_cart_update": utcnow() - timedelta(minutes=61)}})

    assert jobs.clear_inactive_carts(db) == {"cleared": 1}
    assert db["user"].find_one({"_id": stale["_id"]})["cart"] == []
    assert len(db["user"].find_one({"_id": fresh["_id"]})["cart"]) == 1


def test_low_stock_alert_emails_admins(db, notifier):
    store = make_store(db)
    make_product(db, name="Milk", stock=3, store=store)
    make_product(db, name="Rice", stock=80, store=store)
    admin = make_admin(db)

    assert jobs.send_low_stock_alerts(db, notifier) == {"products": 1, "notified": 1}
    to, subject, body = notifier.emails[0]
    assert to == admin["email"]
    assert subject == "QuickKart Low Stock Alert - 1 Products"
    assert f"- Milk (Stock: 3 at {store['name']})" in body


def test_low_stock_alert_nothing_low(db, notifier):
    store = make_store(db)
    make_product(db, stock=80, store=store)
    make_admin(db)
    assert jobs.send_low_stock_alerts(db, notifier) == {"products": 0, "notified": 0}
    assert notifier.emails == []


def test_cli_rejects_unknown_job():
    with pytest.raises(SystemExit):
        jobs.main(["reindex"])


# ------------ Subscriptions ------------

@pytest.mark.parametrize("current, frequency, expected", [
    (datetime(2024, 3, 10, 5), "Daily", datetime(2024, 3, 11, 5)),
    (datetime(2024, 3, 10, 5), "Weekly", datetime(2024, 3, 17, 5)),
    (datetime(2024, 1, 31, 5), "Monthly", datetime(2024, 2, 29, 5)),
    (datetime(2024, 12, 15, 5), "Monthly", datetime(2025, 1, 15, 5)),
])
def test_next_delivery(current, frequency, expected):
    assert subscriptions.next_delivery(current, frequency) == expected


def subscribe(db, user, product, quantity=2, frequency="Daily"):
    payload = SubscriptionCreate(product_id=str(product["_id"]), quantity=quantity, frequency=frequency,
                                 shipping_address_id=str(user["addresses"][0]["_id"]), pincode="560001")
    return subscriptions.create_subscription(db, user, payload)


def test_create_subscription(db):
    store = make_store(db)
    product = make_product(db, stock=10, store=store)
    user = make_user(db)

    sub = subscribe(db, user, product)
    assert sub["store"] == store["_id"]
    assert sub["next_delivery_date"] > utcnow()
    assert sub["shipping_address"]["pincode"] == "560001"

    with pytest.raises(ConflictError):
        subscribe(db, user, product)

    subscriptions.cancel_subscription(db, user, str(sub["_id"]))
    listed = subscriptions.list_subscriptions(db, user)
    assert listed[0]["is_active"] is False
    assert listed[0]["product_details"]["name"] == product["name"]


def test_due_subscriptions_become_orders(db, notifier):
    store = make_store(db)
    product = make_product(db, price=40.0, stock=10, store=store)
    user = make_user(db)
    sub = subscribe(db, user, product, quantity=2)
    run_at = sub["next_delivery_date"] + timedelta(hours=5)

    assert subscriptions.process_due_subscriptions(db, notifier, run_at) == {"created": 1, "failed": 0}

    order = db["order"].find_one({"user": user["_id"]})
    assert order["order_status"] == PLACED
    assert order["source"] == "subscription"
    assert order["payment_method"] == "Cash on Delivery"
    assert order["items_price"] == 80.0
    assert order["total_price"] == 104.0
    assert stock_of(db, product, store) == 8
    stored = db["user"].find_one({"_id": user["_id"]})["subscriptions"][0]
    assert stored["next_delivery_date"] == sub["next_delivery_date"] + timedelta(days=1)
    assert stored["is_active"] is True

    assert subscriptions.process_due_subscriptions(db, notifier, run_at) == {"created": 0, "failed": 0}


def test_failing_subscription_is_paused_and_batch_continues(db, notifier):
    store = make_store(db)
    scarce = make_product(db, name="Saffron", stock=1, store=store)
    plenty = make_product(db, name="Rice", stock=10, store=store)
    unlucky, lucky = make_user(db), make_user(db)
    first = subscribe(db, unlucky, scarce, quantity=5)
    subscribe(db, lucky, plenty, quantity=1)
    run_at = first["next_delivery_date"] + timedelta(hours=5)

    assert subscriptions.process_due_subscriptions(db, notifier, run_at) == {"created": 1, "failed": 1}

    assert db["user"].find_one({"_id": unlucky["_id"]})["subscriptions"][0]["is_active"] is False
    assert notifier.emails[0][0] == unlucky["email"]
    assert stock_of(db, scarce, store) == 1
    assert stock_of(db, plenty, store) == 9
    assert db["order"].count_documents({"user": lucky["_id"]}) == 1


def test_not_yet_due_subscription_is_skipped(db, notifier):
    store = make_store(db)
    product = make_product(db, stock=10, store=store)
    sub = subscribe(db, make_user(db), product)
    early = sub["next_delivery_date"] - timedelta(hours=1)
    assert subscriptions.process_due_subscriptions(db, notifier, early) == {"created": 0, "failed": 0}


def test_unknown_subscription_cancel(db):
    with pytest.raises(NotFoundError):
        subscriptions.cancel_subscription(db, make_user(db), ObjectId())
