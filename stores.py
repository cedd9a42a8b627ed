"""
Dark store resolution and administration.

A dark store is the fulfillment location for an order. Checkout resolves it from
the delivery geo-point when one is supplied, cart and subscription flows from
the customer's pincode.
"""
import logging
from typing import List

from pymongo.database import Database
from pymongo.errors import PyMongoError

import inventory
import site_settings
from database import create_document, to_object_id
from errors import ConflictError, NotFoundError
from schemas import GeoPoint, StoreCreate

logger = logging.getLogger(__name__)

NOT_SERVICEABLE = "Sorry, delivery is not available in your pincode yet."


def resolve_store_for_point(db: Database, point: GeoPoint) -> dict:
    store = db["darkstore"].find_one({
        "location": {"$near": {"$geometry": point.model_dump()}},
    })
    if not store:
        raise NotFoundError("No dark store is available near this location")
    return store


def resolve_store_for_pincode(db: Database, pincode: str) -> dict:
    store = db["darkstore"].find_one({"pincode": pincode})
    if not store:
        raise NotFoundError(NOT_SERVICEABLE)
    return store


def is_serviceable(db: Database, pincode: str) -> bool:
    allowed = site_settings.get_settings(db).get("allowed_pincodes") or []
    return not allowed or pincode in allowed


def get_store(db: Database, store_id) -> dict:
    store = db["darkstore"].find_one({"_id": to_object_id(store_id, "store id")})
    if not store:
        raise NotFoundError("Dark store not found")
    return store


def create_store(db: Database, payload: StoreCreate) -> dict:
    if db["darkstore"].find_one({"pincode": payload.pincode}):
        raise ConflictError("A dark store in this pincode already exists")
    doc = {
        "name": payload.name,
        "pincode": payload.pincode,
        "address": payload.address,
        "location": GeoPoint.from_lat_lng(payload.latitude, payload.longitude).model_dump(),
    }
    store_id = create_document(db, "darkstore", doc)
    logger.info("Dark store %s created for pincode %s", store_id, payload.pincode)
    return db["darkstore"].find_one({"_id": store_id})


def list_stores(db: Database) -> List[dict]:
    return list(db["darkstore"].find({}).sort("name", 1))


def delete_store(db: Database, store_id) -> None:
    store = get_store(db, store_id)
    try:
        removed = inventory.remove_store_entries(db, store["_id"])
        logger.info("Removed %d inventory entries for dark store %s", removed, store["_id"])
    except PyMongoError:
        logger.exception("Failed to clean up inventory for dark store %s", store["_id"])
    db["darkstore"].delete_one({"_id": store["_id"]})


def set_store_stock(db: Database, store_id, product_id, stock: int) -> dict:
    store = get_store(db, store_id)
    product_oid = to_object_id(product_id, "product id")
    if not db["product"].find_one({"_id": product_oid}, {"_id": 1}):
        raise NotFoundError("Product not found")
    return inventory.set_stock(db, product_oid, store["_id"], stock)
