"""
Product catalog: public listing, admin CRUD and customer reviews.

Products do not store a stock count of their own; the ``stock`` shown here is
the total across all dark stores in the inventory ledger.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

import inventory
from database import create_document, to_naive_utc, to_object_id, utcnow
from errors import ConflictError, NotFoundError
from schemas import ProductCreate, ProductUpdate, ReviewCreate

logger = logging.getLogger(__name__)


def effective_price(product: dict, now=None) -> float:
    now = now or utcnow()
    sale_price = product.get("sale_price")
    sale_end = product.get("sale_end_date")
    if sale_price is not None and sale_end and sale_end > now:
        return sale_price
    return product["price"]


def _with_stock(db: Database, products: List[dict]) -> List[dict]:
    totals = inventory.stock_by_product(db, [p["_id"] for p in products])
    for p in products:
        p["stock"] = totals.get(p["_id"], 0)
        p["effective_price"] = effective_price(p)
    return products


def get_product(db: Database, product_id) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def product_detail(db: Database, product_id) -> dict:
    return _with_stock(db, [get_product(db, product_id)])[0]


def list_products(db: Database, q: Optional[str] = None, category: Optional[str] = None,
                  brand: Optional[str] = None, page: int = 1, page_size: int = 20) -> dict:
    filt: Dict[str, Any] = {"is_available": True}
    if q:
        filt["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category:
        filt["category"] = category
    if brand:
        filt["brand"] = brand
    total = db["product"].count_documents(filt)
    cursor = db["product"].find(filt, {"reviews": 0}).sort("created_at", -1)
    cursor = cursor.skip((page - 1) * page_size).limit(page_size)
    return {"items": _with_stock(db, list(cursor)), "page": page, "page_size": page_size, "total": total}


def create_product(db: Database, payload: ProductCreate, admin: dict) -> dict:
    doc = payload.model_dump()
    doc["sale_end_date"] = to_naive_utc(doc.get("sale_end_date"))
    doc.update({"user": admin["_id"], "reviews": [], "rating": 0.0, "num_reviews": 0})
    product_id = create_document(db, "product", doc)
    logger.info("Product %s created by %s", product_id, admin["_id"])
    return product_detail(db, product_id)


def update_product(db: Database, product_id, payload: ProductUpdate) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    if "sale_end_date" in changes:
        changes["sale_end_date"] = to_naive_utc(changes["sale_end_date"])
    changes["updated_at"] = utcnow()
    product = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id, "product id")},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFoundError("Product not found")
    return _with_stock(db, [product])[0]


def delete_product(db: Database, product_id) -> None:
    product = get_product(db, product_id)
    db["product"].delete_one({"_id": product["_id"]})
    inventory.remove_product_entries(db, product["_id"])


def add_review(db: Database, product_id, user: dict, payload: ReviewCreate) -> dict:
    product = get_product(db, product_id)
    reviews = product.get("reviews") or []
    if any(r["user"] == user["_id"] for r in reviews):
        raise ConflictError("Product already reviewed")
    review = {
        "_id": ObjectId(),
        "user": user["_id"],
        "name": user.get("name", ""),
        "rating": payload.rating,
        "comment": payload.comment,
        "created_at": utcnow(),
    }
    reviews.append(review)
    rating = round(sum(r["rating"] for r in reviews) / len(reviews), 1)
    # Conditional on the review count read above so a concurrent review cannot skew the mean.
    result = db["product"].update_one(
        {"_id": product["_id"], "num_reviews": product.get("num_reviews", 0)},
        {"$set": {"reviews": reviews, "rating": rating, "num_reviews": len(reviews), "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise ConflictError("Product was reviewed concurrently, please retry")
    return review
