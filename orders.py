"""
Order placement and the order lifecycle.

    Pending Payment -> Placed -> Packed -> Out for Delivery -> Delivered
                       Placed/Packed -> Cancelled

Every status change is a conditional update on the status the order is
expected to be in, so a transition (and its inventory side effect) is applied
at most once even when two requests race for it. Notifications go out after the
change is committed and never fail the request.
"""
import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

import delivery
import inventory
import payments
import pricing
import stores
from database import to_object_id, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from inventory import StockLine
from notifications import NotificationDispatcher
from payments import PaymentVerifier
from schemas import (
    CANCELLED, COD, DELIVERED, ONLINE, OUT_FOR_DELIVERY, PACKED, PENDING_PAYMENT, PLACED,
    ROLE_ADMIN, ROLE_DELIVERY_PARTNER, FeedbackRequest, GeoPoint, IssueReportRequest, Order,
    OrderItem, PaymentResult, PlaceOrderRequest, ResolveIssueRequest, ShippingAddress,
    VerifyPaymentRequest,
)

logger = logging.getLogger(__name__)

CANCELLABLE = [PLACED, PACKED]


def short_id(order_id) -> str:
    return str(order_id)[-6:]


def stock_lines(items: List[dict], store_id: ObjectId) -> List[StockLine]:
    return [StockLine(product=i["product"], store=store_id, qty=i["qty"], name=i.get("name", "")) for i in items]


def notify(db: Database, notifier: NotificationDispatcher, user_id, title: str, message: str, order_id):
    try:
        user = db["user"].find_one({"_id": user_id})
        notifier.notify_user(user, title, message, {"order_id": str(order_id)})
    except Exception:
        logger.exception("Could not notify user %s about order %s", user_id, order_id)


def _load_order(db: Database, order_id) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def _is_admin(user: dict) -> bool:
    return user.get("role") == ROLE_ADMIN


# ------------ Placement ------------

def cart_store(cart: List[dict]) -> ObjectId:
    store_ids = {line["store"] for line in cart}
    if len(store_ids) != 1:
        raise ConflictError("All items in your cart must come from the same store")
    return store_ids.pop()


def select_address(user: dict, address_id: Optional[str]) -> dict:
    addresses = user.get("addresses") or []
    if address_id:
        oid = to_object_id(address_id, "address id")
        address = next((a for a in addresses if a.get("_id") == oid), None)
    else:
        address = next((a for a in addresses if a.get("is_default")), addresses[0] if addresses else None)
    if not address:
        raise ValidationError("Shipping address not found")
    return address


def place_order(db: Database, user: dict, payload: PlaceOrderRequest, verifier: PaymentVerifier,
                notifier: NotificationDispatcher) -> dict:
    user = db["user"].find_one({"_id": user["_id"]})
    if not user:
        raise AuthorizationError("User not found", status_code=401)
    cart = user.get("cart") or []
    if not cart:
        raise ValidationError("Your cart is empty")

    address = select_address(user, payload.shipping_address_id)
    location = None
    if (payload.latitude is None) != (payload.longitude is None):
        raise ValidationError("Both latitude and longitude are required")
    if payload.latitude is not None:
        location = GeoPoint.from_lat_lng(payload.latitude, payload.longitude)

    store_id = cart_store(cart)
    store = stores.resolve_store_for_point(db, location) if location else \
        stores.resolve_store_for_pincode(db, address["pincode"])
    if store["_id"] != store_id:
        raise ConflictError("Your cart was filled from a different store than the one serving this address. "
                            "Please refresh your cart.")
    if not stores.is_serviceable(db, address["pincode"]):
        raise ConflictError(stores.NOT_SERVICEABLE)

    coupon = pricing.find_coupon(db, payload.coupon_code)
    totals = pricing.compute_totals(cart, coupon, coupon_requested=bool(payload.coupon_code))

    for line in cart:
        if not inventory.check_availability(db, line["product"], store_id, line["qty"]):
            raise ConflictError(f'Not enough stock for "{line["name"]}"')

    order = Order(
        user=user["_id"],
        order_items=[OrderItem(product=l["product"], name=l["name"], qty=l["qty"], price=l["price"],
                               image=l.get("image") or "") for l in cart],
        shipping_address=ShippingAddress(
            address_line1=address["address_line1"],
            address_line2=address.get("address_line2"),
            city=address["city"],
            state=address["state"],
            pincode=address["pincode"],
            location=location,
        ),
        payment_method=payload.payment_method,
        coupon_code=totals.coupon_code,
        items_price=totals.items_price,
        discount_amount=totals.discount_amount,
        tax_price=totals.tax_price,
        shipping_price=totals.shipping_price,
        total_price=totals.total_price,
        dark_store=store_id,
    )

    if payload.payment_method == COD:
        return _place_cod(db, user, order, coupon, notifier)
    if payload.payment_method == ONLINE:
        return _place_online(db, order, verifier)
    raise ValidationError("Invalid payment method")


def _insert(db: Database, order: Order, order_id: Optional[ObjectId] = None) -> dict:
    now = utcnow()
    doc = order.model_dump()
    doc.update({"created_at": now, "updated_at": now})
    if order_id is not None:
        doc["_id"] = order_id
    inserted = db["order"].insert_one(doc).inserted_id
    return db["order"].find_one({"_id": inserted})


def _place_cod(db: Database, user: dict, order: Order, coupon: Optional[dict],
               notifier: NotificationDispatcher) -> dict:
    lines = stock_lines([i.model_dump() for i in order.order_items], order.dark_store)
    inventory.reserve(db, lines)
    if coupon and not pricing.claim_coupon(db, coupon):
        inventory.release(db, lines)
        raise ConflictError("Coupon usage limit reached")

    order.order_status = PLACED
    created = _insert(db, order)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"cart": [], "last_cart_update": utcnow()}})
    logger.info("COD order %s placed by user %s for %.2f", created["_id"], user["_id"], created["total_price"])

    notify(db, notifier, user["_id"], f"Order Placed! (#{short_id(created['_id'])})",
            f"Your COD order for ₹{created['total_price']:.2f} is confirmed.", created["_id"])
    return created


def _place_online(db: Database, order: Order, verifier: PaymentVerifier) -> dict:
    order_id = ObjectId()
    gateway = verifier.initiate(order_id, order.total_price)
    order.order_status = PENDING_PAYMENT
    order.payment_result = PaymentResult(order_id=gateway["razorpay_order_id"], status="Created")
    created = _insert(db, order, order_id)
    logger.info("Online order %s awaiting payment, gateway order %s", order_id, gateway["razorpay_order_id"])
    return {**created, **gateway}


def confirm_online_payment(db: Database, user: dict, payload: VerifyPaymentRequest, verifier: PaymentVerifier,
                           notifier: NotificationDispatcher) -> dict:
    order = payments.find_order(db, payload.razorpay_order_id)
    if order["user"] != user["_id"] and not _is_admin(user):
        raise AuthorizationError("Not authorized", status_code=401)
    if order["order_status"] != PENDING_PAYMENT:
        raise ConflictError("Payment has already been processed for this order")
    verifier.verify(db, order, payload.razorpay_payment_id, payload.razorpay_signature)

    payment_result = {
        "id": payload.razorpay_payment_id,
        "order_id": payload.razorpay_order_id,
        "signature": payload.razorpay_signature,
        "status": "Success",
    }
    lines = stock_lines(order["order_items"], order["dark_store"])
    try:
        inventory.reserve(db, lines)
    except ConflictError:
        now = utcnow()
        db["order"].update_one(
            {"_id": order["_id"], "order_status": PENDING_PAYMENT},
            {"$set": {"is_paid": True, "paid_at": now, "updated_at": now,
                      "payment_result": {**payment_result, "status": "Refund Pending"}}},
        )
        logger.error("Paid order %s could not be fulfilled, stock ran out; refund pending", order["_id"])
        raise ConflictError("Items in your order went out of stock. Your payment will be refunded.")

    now = utcnow()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "order_status": PENDING_PAYMENT},
        {"$set": {"order_status": PLACED, "is_paid": True, "paid_at": now, "updated_at": now,
                  "payment_result": payment_result}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        inventory.release(db, lines)
        raise ConflictError("Payment has already been processed for this order")

    if updated.get("coupon_code"):
        coupon = pricing.find_coupon(db, updated["coupon_code"])
        if not coupon or not pricing.claim_coupon(db, coupon):
            logger.warning("Coupon %s could not be counted for paid order %s", updated["coupon_code"], updated["_id"])

    db["user"].update_one({"_id": updated["user"]}, {"$set": {"cart": [], "last_cart_update": now}})
    logger.info("Payment verified for order %s", updated["_id"])
    notify(db, notifier, updated["user"], f"Payment Received (#{short_id(updated['_id'])})",
            f"Your payment of ₹{updated['total_price']:.2f} is confirmed and your order is placed.", updated["_id"])
    return {"message": "Payment verified", "order": updated}


# ------------ Lifecycle transitions ------------

def _transition(db: Database, order: dict, query: dict, changes: dict, error: str) -> dict:
    changes["updated_at"] = utcnow()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], **query},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = db["order"].find_one({"_id": order["_id"]}, {"order_status": 1})
        raise ConflictError(error.format(status=current["order_status"] if current else order["order_status"]))
    return updated


def pack_order(db: Database, order_id, notifier: NotificationDispatcher) -> dict:
    order = _load_order(db, order_id)
    updated = _transition(db, order, {"order_status": PLACED}, {"order_status": PACKED},
                          "Order cannot be packed while it is {status}")

    partner = None
    if not updated.get("delivery_partner"):
        try:
            partner = delivery.auto_assign(db, updated)
        except Exception:
            logger.warning("Auto-assignment failed for order %s", updated["_id"], exc_info=True)
        if partner:
            updated = db["order"].find_one({"_id": updated["_id"]})

    notify(db, notifier, updated["user"], f"Order Packed (#{short_id(updated['_id'])})",
            "Your order has been packed and will be on its way soon.", updated["_id"])
    if partner:
        notify(db, notifier, partner["_id"], "New Delivery Assigned",
                f"Order #{short_id(updated['_id'])} has been assigned to you.", updated["_id"])
    return updated


def _require_delivery_actor(user: dict):
    if user.get("role") not in (ROLE_ADMIN, ROLE_DELIVERY_PARTNER):
        raise AuthorizationError("Not authorized as a delivery partner or admin")


def mark_out_for_delivery(db: Database, order_id, actor: dict, notifier: NotificationDispatcher) -> dict:
    _require_delivery_actor(actor)
    order = _load_order(db, order_id)
    query = {"order_status": PACKED}
    changes = {"order_status": OUT_FOR_DELIVERY}
    if actor["role"] == ROLE_DELIVERY_PARTNER:
        assigned = order.get("delivery_partner")
        if assigned is None:
            query["delivery_partner"] = None
            changes["delivery_partner"] = actor["_id"]
        elif assigned != actor["_id"]:
            raise AuthorizationError("This order is assigned to another delivery partner")
        else:
            query["delivery_partner"] = actor["_id"]
    updated = _transition(db, order, query, changes, "Order cannot go out for delivery while it is {status}")
    notify(db, notifier, updated["user"], f"Out for Delivery (#{short_id(updated['_id'])})",
            "Your order is out for delivery.", updated["_id"])
    return updated


def mark_delivered(db: Database, order_id, actor: dict, notifier: NotificationDispatcher) -> dict:
    _require_delivery_actor(actor)
    order = _load_order(db, order_id)
    query = {"order_status": OUT_FOR_DELIVERY}
    if actor["role"] == ROLE_DELIVERY_PARTNER and order.get("delivery_partner") is not None:
        if order["delivery_partner"] != actor["_id"]:
            raise AuthorizationError("This order is assigned to another delivery partner")
        query["delivery_partner"] = actor["_id"]
    now = utcnow()
    changes = {"order_status": DELIVERED, "is_delivered": True, "delivered_at": now}
    if order["payment_method"] == COD:
        changes.update({"is_paid": True, "paid_at": now})
    updated = _transition(db, order, query, changes, "Order cannot be delivered while it is {status}")
    logger.info("Order %s delivered", updated["_id"])
    notify(db, notifier, updated["user"], f"Order Delivered (#{short_id(updated['_id'])})",
            "Your order has been delivered. Enjoy!", updated["_id"])
    return updated


def cancel_order(db: Database, order_id, actor: dict, notifier: NotificationDispatcher) -> dict:
    order = _load_order(db, order_id)
    if order["user"] != actor["_id"] and not _is_admin(actor):
        raise AuthorizationError("Not authorized to cancel this order", status_code=401)
    updated = _transition(db, order, {"order_status": {"$in": CANCELLABLE}}, {"order_status": CANCELLED},
                          "Order cannot be cancelled at this stage")
    inventory.release(db, stock_lines(updated["order_items"], updated["dark_store"]))
    logger.info("Order %s cancelled by %s, stock released", updated["_id"], actor["_id"])
    notify(db, notifier, updated["user"], f"Order Cancelled (#{short_id(updated['_id'])})",
            "Your order has been cancelled.", updated["_id"])
    return updated


# ------------ Post-delivery side channels ------------

def _delivered_order_of(db: Database, order_id, user: dict) -> dict:
    order = _load_order(db, order_id)
    if order["user"] != user["_id"]:
        raise AuthorizationError("Not authorized", status_code=401)
    if order["order_status"] != DELIVERED:
        raise ConflictError("This is only available once the order has been delivered")
    return order


def add_feedback(db: Database, order_id, user: dict, payload: FeedbackRequest) -> dict:
    order = _delivered_order_of(db, order_id, user)
    return _transition(
        db, order, {"delivery_rating": None},
        {"delivery_rating": payload.rating, "delivery_feedback": (payload.feedback or "").strip()},
        "Feedback has already been submitted for this order",
    )


def report_issue(db: Database, order_id, user: dict, payload: IssueReportRequest) -> dict:
    order = _delivered_order_of(db, order_id, user)
    amount = 0.0
    if payload.request_refund:
        amount = payload.refund_amount if payload.refund_amount is not None else order["total_price"]
        if amount > order["total_price"]:
            raise ValidationError("Refund amount cannot exceed the order total")
    report = {
        "issue_type": payload.issue_type,
        "description": payload.description.strip(),
        "status": "Pending",
        "resolution": None,
        "reported_at": utcnow(),
        "refund_details": {
            "is_requested": payload.request_refund,
            "request_amount": amount,
            "status": "Pending",
            "processed_at": None,
        },
    }
    return _transition(db, order, {"issue_report": None}, {"issue_report": report},
                       "An issue has already been reported for this order")


def resolve_issue(db: Database, order_id, payload: ResolveIssueRequest) -> dict:
    order = _load_order(db, order_id)
    report = order.get("issue_report")
    if not report:
        raise NotFoundError("No issue has been reported for this order")
    changes = {"issue_report.status": payload.status}
    if payload.resolution is not None:
        changes["issue_report.resolution"] = payload.resolution.strip()
    if payload.refund_status is not None:
        if not report.get("refund_details", {}).get("is_requested"):
            raise ConflictError("No refund was requested for this order")
        changes["issue_report.refund_details.status"] = payload.refund_status
        if payload.refund_status in ("Approved", "Rejected"):
            changes["issue_report.refund_details.processed_at"] = utcnow()
    return _transition(db, order, {}, changes, "Order could not be updated")


# ------------ Reads ------------

def get_order(db: Database, order_id, user: dict) -> dict:
    order = _load_order(db, order_id)
    allowed = (
        order["user"] == user["_id"]
        or _is_admin(user)
        or (user.get("role") == ROLE_DELIVERY_PARTNER and order.get("delivery_partner") == user["_id"])
    )
    if not allowed:
        raise AuthorizationError("Not authorized", status_code=401)
    customer = db["user"].find_one({"_id": order["user"]}, {"name": 1, "email": 1})
    order["customer"] = customer
    return order


def list_my_orders(db: Database, user: dict) -> List[dict]:
    return list(db["order"].find({"user": user["_id"]}).sort("created_at", -1))


def list_all_orders(db: Database) -> List[dict]:
    orders = list(db["order"].find({}).sort("created_at", -1))
    names = {u["_id"]: u.get("name") for u in db["user"].find(
        {"_id": {"$in": list({o["user"] for o in orders})}}, {"name": 1})}
    for o in orders:
        o["customer_name"] = names.get(o["user"])
    return orders
