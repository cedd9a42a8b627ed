"""
Read-only admin dashboard roll-ups.
"""
from collections import OrderedDict
from datetime import timedelta
from typing import List

from pymongo.database import Database

import inventory
import site_settings
from database import utcnow
from pricing import round2
from schemas import DELIVERED, ROLE_DELIVERY_PARTNER


def summary(db: Database) -> dict:
    sales = list(db["order"].aggregate([
        {"$match": {"order_status": DELIVERED}},
        {"$group": {"_id": None, "total_sales": {"$sum": "$total_price"}}},
    ]))
    return {
        "total_users": db["user"].count_documents({}),
        "total_products": db["product"].count_documents({"is_available": True}),
        "total_orders": db["order"].count_documents({}),
        "total_sales": round2(sales[0]["total_sales"]) if sales else 0.0,
    }


def sales_by_day(db: Database) -> List[dict]:
    days = OrderedDict()
    cursor = db["order"].find({"order_status": DELIVERED}, {"created_at": 1, "total_price": 1}).sort("created_at", 1)
    for order in cursor:
        day = order["created_at"].strftime("%Y-%m-%d")
        row = days.setdefault(day, {"date": day, "total_sales": 0.0, "count": 0})
        row["total_sales"] = round2(row["total_sales"] + order["total_price"])
        row["count"] += 1
    return list(days.values())


def popular_products(db: Database, limit: int = 10) -> List[dict]:
    rows = db["order"].aggregate([
        {"$match": {"order_status": DELIVERED}},
        {"$unwind": "$order_items"},
        {"$group": {
            "_id": "$order_items.product",
            "name": {"$first": "$order_items.name"},
            "total_quantity_sold": {"$sum": "$order_items.qty"},
        }},
        {"$sort": {"total_quantity_sold": -1}},
        {"$limit": limit},
    ])
    return [{"product": r["_id"], "name": r["name"], "total_quantity_sold": r["total_quantity_sold"]} for r in rows]


def status_counts(db: Database) -> dict:
    rows = db["order"].aggregate([
        {"$group": {"_id": "$order_status", "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ])
    return {r["_id"]: r["count"] for r in rows}


def partner_performance(db: Database) -> List[dict]:
    rows = list(db["order"].aggregate([
        {"$match": {"delivery_partner": {"$ne": None}, "order_status": DELIVERED}},
        {"$group": {
            "_id": "$delivery_partner",
            "total_deliveries": {"$sum": 1},
            "average_rating": {"$avg": "$delivery_rating"},
        }},
        {"$sort": {"total_deliveries": -1}},
    ]))
    partners = {p["_id"]: p for p in db["user"].find(
        {"_id": {"$in": [r["_id"] for r in rows]}, "role": ROLE_DELIVERY_PARTNER}, {"name": 1, "email": 1, "phone": 1})}
    report = []
    for r in rows:
        partner = partners.get(r["_id"])
        if not partner:
            continue
        report.append({
            "partner_id": r["_id"],
            "name": partner.get("name"),
            "email": partner.get("email"),
            "phone": partner.get("phone"),
            "total_deliveries": r["total_deliveries"],
            "average_rating": round(r["average_rating"], 1) if r.get("average_rating") is not None else None,
        })
    return report


def abandoned_carts(db: Database, hours: int = 24) -> dict:
    cutoff = utcnow() - timedelta(hours=hours)
    count = db["user"].count_documents({"cart.0": {"$exists": True}, "last_cart_update": {"$lt": cutoff}})
    return {"abandoned_cart_count": count}


def low_stock(db: Database) -> dict:
    threshold = site_settings.get_settings(db).get("low_stock_threshold", 10)
    rows = inventory.low_stock_entries(db, threshold)
    return {"threshold": threshold, "product_count": len(rows), "products": rows}


def store_inventory(db: Database) -> List[dict]:
    stores = list(db["darkstore"].find({}, {"name": 1, "pincode": 1}).sort("name", 1))
    products = {p["_id"]: p.get("name") for p in db["product"].find({}, {"name": 1})}
    by_store = {s["_id"]: {"store": s["_id"], "name": s["name"], "pincode": s.get("pincode"), "products": []}
                for s in stores}
    for entry in db["inventory"].find({"store": {"$in": list(by_store)}}):
        if entry["product"] not in products:
            continue
        by_store[entry["store"]]["products"].append({
            "product": entry["product"],
            "name": products[entry["product"]],
            "stock": entry.get("stock", 0),
        })
    return list(by_store.values())


def active_users(db: Database, days: int = 7) -> dict:
    since = utcnow() - timedelta(days=days)
    recent_logins = list(db["user"].find({"last_login": {"$gte": since}},
                                         {"name": 1, "email": 1, "role": 1, "last_login": 1}).sort("last_login", -1))
    order_users = db["order"].distinct("user", {"created_at": {"$gte": since}})
    logged_in = {u["_id"] for u in recent_logins}
    ordering_only = list(db["user"].find({"_id": {"$in": [u for u in order_users if u not in logged_in]}},
                                         {"name": 1, "email": 1, "role": 1}))
    return {
        "recent_logins": recent_logins,
        "users_with_recent_orders": ordering_only,
        "active_user_login_count": len(recent_logins),
        "active_user_order_count": len(order_users),
    }
