"""
Shopping cart, stored on the user document.

Each line is pinned to the dark store that served the customer's pincode when
it was added and carries the price in effect at that moment. Lines from
different stores are allowed here and rejected at checkout.
"""
from typing import List

from pymongo.database import Database

import inventory
import stores
from catalog import effective_price, get_product
from database import to_object_id, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import CartItemIn, CartLine


def get_cart(db: Database, user: dict) -> List[dict]:
    user = db["user"].find_one({"_id": user["_id"]}, {"cart": 1})
    if not user:
        raise NotFoundError("User not found")
    cart = user.get("cart") or []
    store_map = {s["_id"]: s for s in db["darkstore"].find(
        {"_id": {"$in": list({line["store"] for line in cart})}}, {"name": 1, "pincode": 1})}
    products = {p["_id"]: p for p in db["product"].find(
        {"_id": {"$in": [line["product"] for line in cart]}}, {"is_available": 1})}
    for line in cart:
        line["store_details"] = store_map.get(line["store"])
        line["is_available"] = bool(products.get(line["product"], {}).get("is_available"))
    return cart


def add_item(db: Database, user: dict, payload: CartItemIn) -> List[dict]:
    user = db["user"].find_one({"_id": user["_id"]}, {"cart": 1})
    if not user:
        raise NotFoundError("User not found")
    store = stores.resolve_store_for_pincode(db, payload.pincode)
    product = get_product(db, payload.product_id)
    if not product.get("is_available"):
        raise NotFoundError("Product not found or is unavailable")

    available = inventory.available_stock(db, product["_id"], store["_id"])
    if available < payload.qty:
        raise ConflictError(
            f"Not enough stock for {product['name']}. Only {available} available at your nearest store.")

    cart = user.get("cart") or []
    existing = next((l for l in cart if l["product"] == product["_id"] and l["store"] == store["_id"]), None)
    if existing:
        existing["qty"] = payload.qty
    else:
        line = CartLine(
            product=product["_id"],
            name=product["name"],
            image=product.get("image", ""),
            price=effective_price(product),
            qty=payload.qty,
            store=store["_id"],
        )
        cart.append(line.model_dump(by_alias=True))

    db["user"].update_one({"_id": user["_id"]}, {"$set": {"cart": cart, "last_cart_update": utcnow()}})
    return get_cart(db, user)


def remove_item(db: Database, user: dict, line_id) -> None:
    line_oid = to_object_id(line_id, "cart item id")
    result = db["user"].update_one(
        {"_id": user["_id"], "cart._id": line_oid},
        {"$pull": {"cart": {"_id": line_oid}}, "$set": {"last_cart_update": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Item not found in cart")


def quick_reorder(db: Database, user: dict, order_id) -> dict:
    """Refill the cart from a past order, at the store that fulfilled it.

    Lines whose product is gone, unavailable or short of stock are skipped; a
    line already in the cart grows by the ordered qty, capped at the stock.
    """
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order or order["user"] != user["_id"]:
        raise NotFoundError("Order not found or not authorized")
    store_id = order.get("dark_store")
    if not store_id:
        raise ValidationError("Cannot reorder: Order not linked to a store.")
    stored = db["user"].find_one({"_id": user["_id"]}, {"cart": 1})
    if not stored:
        raise NotFoundError("User not found")

    cart = stored.get("cart") or []
    products = {p["_id"]: p for p in db["product"].find(
        {"_id": {"$in": [i["product"] for i in order["order_items"]]}})}
    skipped = 0
    for item in order["order_items"]:
        product = products.get(item["product"])
        stock = inventory.available_stock(db, item["product"], store_id) if product else 0
        if not product or not product.get("is_available") or stock < item["qty"]:
            skipped += 1
            continue
        existing = next((l for l in cart if l["product"] == product["_id"] and l["store"] == store_id), None)
        if existing:
            existing["qty"] = min(existing["qty"] + item["qty"], stock)
        else:
            cart.append(CartLine(
                product=product["_id"],
                name=product["name"],
                image=product.get("image", ""),
                price=effective_price(product),
                qty=item["qty"],
                store=store_id,
            ).model_dump(by_alias=True))

    db["user"].update_one({"_id": user["_id"]}, {"$set": {"cart": cart, "last_cart_update": utcnow()}})
    message = "Items added to cart successfully."
    if skipped:
        message = f"{skipped} item(s) skipped due to unavailability/stock. {message}"
    return {"message": message, "cart": get_cart(db, user)}
