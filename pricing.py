"""
Order totals and coupon rules.

``compute_totals`` is a pure function of the cart snapshot, the coupon document
and the clock. Coupon usage is recorded separately by ``claim_coupon``, once per
successfully placed order.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from pymongo.database import Database

from database import create_document, to_naive_utc, to_object_id, utcnow
from errors import ConflictError, NotFoundError
from schemas import Coupon, CouponCreate

logger = logging.getLogger(__name__)

TAX_RATE = Decimal("0.05")
SHIPPING_PRICE = 20.00


def round2(value) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Totals:
    items_price: float
    discount_amount: float
    tax_price: float
    shipping_price: float
    total_price: float
    coupon_code: Optional[str] = None


def items_subtotal(lines: Iterable[dict]) -> float:
    return round2(sum(Decimal(str(line["price"])) * line["qty"] for line in lines))


def coupon_problem(coupon: Optional[dict], items_price: float, now: Optional[datetime] = None) -> Optional[str]:
    """Why ``coupon`` cannot be applied to a cart worth ``items_price``, or None if it can."""
    now = now or utcnow()
    if not coupon or not coupon.get("is_active"):
        return "Invalid or inactive coupon code"
    if coupon["expiry_date"] < now:
        return "Coupon code has expired"
    limit = coupon.get("usage_limit")
    if limit is not None and coupon.get("used_count", 0) >= limit:
        return "Coupon usage limit reached"
    if items_price < coupon.get("min_order_amount", 0):
        return f"Minimum order amount of ₹{coupon.get('min_order_amount', 0)} required"
    return None


def discount_for(coupon: dict, items_price: float) -> float:
    if coupon["discount_type"] == "Percentage":
        discount = Decimal(str(items_price)) * Decimal(str(coupon["discount_value"])) / 100
    else:
        discount = Decimal(str(coupon["discount_value"]))
    return round2(min(discount, Decimal(str(items_price))))


def compute_totals(lines: Iterable[dict], coupon: Optional[dict] = None, now: Optional[datetime] = None,
                   coupon_requested: bool = False) -> Totals:
    """Price a cart snapshot.

    ``lines`` are cart or order lines carrying the price captured when they were
    added. Passing ``coupon_requested=True`` with ``coupon=None`` means the
    customer asked for a code that does not exist, which rejects the order.
    """
    lines = list(lines)
    items_price = items_subtotal(lines)
    discount = 0.0
    if coupon is not None or coupon_requested:
        problem = coupon_problem(coupon, items_price, now)
        if problem:
            raise ConflictError(problem)
        discount = discount_for(coupon, items_price)

    after_discount = Decimal(str(items_price)) - Decimal(str(discount))
    tax = round2(after_discount * TAX_RATE)
    total = round2(after_discount + Decimal(str(tax)) + Decimal(str(SHIPPING_PRICE)))
    return Totals(
        items_price=items_price,
        discount_amount=discount,
        tax_price=tax,
        shipping_price=SHIPPING_PRICE,
        total_price=total,
        coupon_code=coupon["code"] if coupon else None,
    )


# ------------ Coupon persistence ------------

def normalize_code(code: str) -> str:
    return code.strip().upper()


def find_coupon(db: Database, code: Optional[str]) -> Optional[dict]:
    if not code:
        return None
    return db["coupon"].find_one({"code": normalize_code(code)})


def claim_coupon(db: Database, coupon: dict) -> bool:
    """Count one use of ``coupon``; False if it was exhausted or disabled meanwhile."""
    limit = coupon.get("usage_limit")
    query = {"_id": coupon["_id"], "is_active": True}
    if limit is not None:
        query["used_count"] = {"$lt": limit}
    result = db["coupon"].update_one(query, {"$inc": {"used_count": 1}, "$set": {"updated_at": utcnow()}})
    if result.matched_count == 0:
        return False
    if limit is not None:
        exhausted = db["coupon"].update_one(
            {"_id": coupon["_id"], "used_count": {"$gte": limit}, "is_active": True},
            {"$set": {"is_active": False}},
        )
        if exhausted.modified_count:
            logger.info("Coupon %s reached its usage limit of %d", coupon["code"], limit)
    return True


def create_coupon(db: Database, payload: CouponCreate) -> dict:
    code = normalize_code(payload.code)
    if db["coupon"].find_one({"code": code}):
        raise ConflictError("Coupon code already exists")
    coupon = Coupon(
        code=code,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        min_order_amount=payload.min_order_amount,
        expiry_date=to_naive_utc(payload.expiry_date),
        usage_limit=payload.usage_limit,
    )
    coupon_id = create_document(db, "coupon", coupon)
    return db["coupon"].find_one({"_id": coupon_id})


def list_coupons(db: Database):
    return list(db["coupon"].find({}).sort("created_at", -1))


def delete_coupon(db: Database, coupon_id) -> None:
    result = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "coupon id")})
    if result.deleted_count == 0:
        raise NotFoundError("Coupon not found")


def validate_coupon_for_cart(db: Database, code: str, cart: list) -> dict:
    coupon = find_coupon(db, code)
    items_price = items_subtotal(cart)
    problem = coupon_problem(coupon, items_price)
    if problem:
        if coupon is None or not coupon.get("is_active"):
            raise NotFoundError(problem)
        raise ConflictError(problem)
    return {
        "message": "Coupon is valid!",
        "code": coupon["code"],
        "discount_amount": discount_for(coupon, items_price),
        "discount_type": coupon["discount_type"],
        "discount_value": coupon["discount_value"],
    }
