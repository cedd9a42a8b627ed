"""
Per-store stock ledger.

One document per (product, dark store) in the ``inventory`` collection holds the
units available at that store. Every change is a single conditional update on
that document, so concurrent checkouts against the same product and store can
never push ``stock`` below zero.
"""
import logging
from typing import Iterable, List, NamedTuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import utcnow
from errors import ConflictError

logger = logging.getLogger(__name__)


class StockLine(NamedTuple):
    product: ObjectId
    store: ObjectId
    qty: int
    name: str = ""


def check_availability(db: Database, product_id: ObjectId, store_id: ObjectId, qty: int) -> bool:
    product = db["product"].find_one({"_id": product_id}, {"is_available": 1})
    if not product or not product.get("is_available"):
        return False
    entry = db["inventory"].find_one({"product": product_id, "store": store_id})
    return bool(entry) and entry.get("stock", 0) >= qty


def available_stock(db: Database, product_id: ObjectId, store_id: ObjectId) -> int:
    entry = db["inventory"].find_one({"product": product_id, "store": store_id})
    return entry.get("stock", 0) if entry else 0


def _decrement(db: Database, line: StockLine) -> bool:
    result = db["inventory"].update_one(
        {"product": line.product, "store": line.store, "stock": {"$gte": line.qty}},
        {"$inc": {"stock": -line.qty}, "$set": {"updated_at": utcnow()}},
    )
    return result.matched_count == 1


def reserve(db: Database, items: Iterable[StockLine]) -> None:
    """Take stock for every line or for none of them.

    Lines already taken in this call are put back before ConflictError is raised.
    """
    taken: List[StockLine] = []
    for line in items:
        if not _decrement(db, line):
            if taken:
                release(db, taken)
            logger.info("Reservation failed for product %s at store %s (qty %d)", line.product, line.store, line.qty)
            raise ConflictError(f'Not enough stock for "{line.name or line.product}"')
        taken.append(line)


def release(db: Database, items: Iterable[StockLine]) -> None:
    now = utcnow()
    for line in items:
        result = db["inventory"].update_one(
            {"product": line.product, "store": line.store},
            {"$inc": {"stock": line.qty}, "$set": {"updated_at": now}},
        )
        if result.matched_count == 0:
            logger.warning("No inventory entry to release product %s at store %s", line.product, line.store)


def set_stock(db: Database, product_id: ObjectId, store_id: ObjectId, stock: int) -> dict:
    now = utcnow()
    return db["inventory"].find_one_and_update(
        {"product": product_id, "store": store_id},
        {"$set": {"stock": stock, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def stock_by_product(db: Database, product_ids: List[ObjectId]) -> dict:
    totals = {pid: 0 for pid in product_ids}
    for entry in db["inventory"].find({"product": {"$in": list(product_ids)}}, {"product": 1, "stock": 1}):
        totals[entry["product"]] = totals.get(entry["product"], 0) + entry.get("stock", 0)
    return totals


def low_stock_entries(db: Database, threshold: int) -> List[dict]:
    """Ledger entries at or below ``threshold`` for available products, lowest first."""
    entries = list(db["inventory"].find({"stock": {"$lte": threshold}}).sort("stock", 1))
    if not entries:
        return []
    products = {p["_id"]: p for p in db["product"].find(
        {"_id": {"$in": [e["product"] for e in entries]}, "is_available": True}, {"name": 1})}
    stores = {s["_id"]: s for s in db["darkstore"].find(
        {"_id": {"$in": [e["store"] for e in entries]}}, {"name": 1})}
    rows = []
    for e in entries:
        if e["product"] in products and e["store"] in stores:
            rows.append({
                "name": products[e["product"]]["name"],
                "stock": e.get("stock", 0),
                "store_name": stores[e["store"]]["name"],
            })
    return rows


def remove_store_entries(db: Database, store_id: ObjectId) -> int:
    return db["inventory"].delete_many({"store": store_id}).deleted_count


def remove_product_entries(db: Database, product_id: ObjectId) -> int:
    return db["inventory"].delete_many({"product": product_id}).deleted_count
