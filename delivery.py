"""
Delivery partner availability, assignment, tracking and ETA.
"""
import logging
from typing import List, Optional

import requests
from pymongo import ReturnDocument
from pymongo.database import Database

import config
import site_settings
from database import to_object_id, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, UpstreamError, ValidationError
from schemas import OUT_FOR_DELIVERY, PACKED, PLACED, ROLE_DELIVERY_PARTNER, GeoPoint

logger = logging.getLogger(__name__)

DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
DEFAULT_SEARCH_RADIUS = 5000

ASSIGNABLE = [PLACED, PACKED]

PARTNER_FIELDS = {"name": 1, "email": 1, "phone": 1, "current_location": 1, "fcm_token": 1}


def find_nearest_partners(db: Database, location: dict, radius_m: int) -> List[dict]:
    return list(db["user"].find(
        {
            "role": ROLE_DELIVERY_PARTNER,
            "is_online": True,
            "current_location": {
                "$near": {"$geometry": location, "$maxDistance": radius_m},
            },
        },
        PARTNER_FIELDS,
    ))


def search_radius(db: Database) -> int:
    return site_settings.get_settings(db).get("delivery_search_radius") or DEFAULT_SEARCH_RADIUS


def order_location(order: dict) -> Optional[dict]:
    location = (order.get("shipping_address") or {}).get("location")
    if not location or not location.get("coordinates"):
        return None
    return location


def auto_assign(db: Database, order: dict) -> Optional[dict]:
    """Give ``order`` to the nearest online partner in range; None if there is nobody."""
    location = order_location(order)
    if location is None:
        return None
    partners = find_nearest_partners(db, location, search_radius(db))
    if not partners:
        return None
    partner = partners[0]
    db["order"].update_one(
        {"_id": order["_id"], "delivery_partner": None},
        {"$set": {"delivery_partner": partner["_id"], "updated_at": utcnow()}},
    )
    logger.info("Order %s auto-assigned to partner %s", order["_id"], partner["_id"])
    return partner


def partners_for_order(db: Database, order_id) -> List[dict]:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    location = order_location(order)
    if location is None:
        raise ValidationError("Order does not have location data")
    partners = find_nearest_partners(db, location, search_radius(db))
    if not partners:
        raise NotFoundError("No available delivery partners found within the radius")
    return partners


def manual_assign(db: Database, order_id, partner_id) -> dict:
    order_oid = to_object_id(order_id, "order id")
    if not db["order"].find_one({"_id": order_oid}, {"_id": 1}):
        raise NotFoundError("Order not found")
    partner = db["user"].find_one({"_id": to_object_id(partner_id, "partner id")})
    if not partner or partner.get("role") != ROLE_DELIVERY_PARTNER:
        raise NotFoundError("Delivery partner not found or user is not a delivery partner")
    order = db["order"].find_one_and_update(
        {"_id": order_oid, "order_status": {"$in": ASSIGNABLE}},
        {"$set": {"delivery_partner": partner["_id"], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        raise ConflictError("Only placed or packed orders can be assigned")
    logger.info("Order %s manually assigned to partner %s", order_oid, partner["_id"])
    return {"message": f"Order assigned to {partner['name']}", "order": order}


# ------------ Partner self-service ------------

def set_online(db: Database, partner: dict, is_online: bool) -> dict:
    db["user"].update_one({"_id": partner["_id"]}, {"$set": {"is_online": is_online, "updated_at": utcnow()}})
    return {"id": partner["_id"], "is_online": is_online}


def update_location(db: Database, partner: dict, latitude: float, longitude: float) -> None:
    point = GeoPoint.from_lat_lng(latitude, longitude).model_dump()
    db["user"].update_one({"_id": partner["_id"]}, {"$set": {"current_location": point, "updated_at": utcnow()}})


def assigned_orders(db: Database, partner: dict) -> List[dict]:
    orders = list(db["order"].find({"delivery_partner": partner["_id"]}).sort("created_at", -1))
    customers = {u["_id"]: u for u in db["user"].find(
        {"_id": {"$in": [o["user"] for o in orders]}}, {"name": 1, "phone": 1})}
    for o in orders:
        o["customer"] = customers.get(o["user"])
    return orders


# ------------ Customer tracking ------------

def _owned_order(db: Database, order_id, user: dict) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order or order["user"] != user["_id"]:
        raise AuthorizationError("Not authorized to view this order", status_code=401)
    return order


def track_order(db: Database, order_id, user: dict) -> dict:
    order = _owned_order(db, order_id, user)
    if not order.get("delivery_partner"):
        raise NotFoundError("Delivery partner not yet assigned")
    partner = db["user"].find_one({"_id": order["delivery_partner"]}, PARTNER_FIELDS)
    if not partner or not partner.get("current_location"):
        raise NotFoundError("Delivery partner location not available yet")
    return {
        "order_status": order["order_status"],
        "partner_name": partner.get("name"),
        "partner_phone": partner.get("phone"),
        "location": partner["current_location"],
    }


class RoutingClient:
    """Driving-time estimates from the Google Distance Matrix API."""

    def __init__(self, api_key: Optional[str], session: Optional[requests.Session] = None, timeout: float = 2.0):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> "RoutingClient":
        return cls(config.GOOGLE_MAPS_API_KEY)

    def eta(self, origin: List[float], destination: List[float]) -> dict:
        """``origin``/``destination`` are GeoJSON ``[lng, lat]`` pairs."""
        if not self.api_key:
            raise UpstreamError("ETA service is currently unavailable.", status_code=503)
        params = {
            "origins": f"{origin[1]},{origin[0]}",
            "destinations": f"{destination[1]},{destination[0]}",
            "key": self.api_key,
            "units": "metric",
            "mode": "driving",
        }
        try:
            response = self.session.get(DISTANCE_MATRIX_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Distance Matrix request failed: %s", e)
            raise UpstreamError("Failed to fetch delivery ETA from Google Maps.")
        try:
            element = data["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError):
            logger.error("Unexpected Distance Matrix response: %s", data.get("status") if isinstance(data, dict) else data)
            raise UpstreamError("Failed to fetch delivery ETA from Google Maps.")
        if element.get("status") != "OK":
            logger.info("Distance Matrix found no route, status %s", element.get("status"))
            raise UpstreamError("Could not calculate ETA. The destination might be unreachable.")
        return {"eta": element["duration"]["text"], "seconds": element["duration"]["value"]}


def order_eta(db: Database, order_id, user: dict, routing: RoutingClient) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order or order["user"] != user["_id"]:
        raise NotFoundError("Order not found or not authorized")
    if order["order_status"] != OUT_FOR_DELIVERY:
        raise ConflictError(f"Order is currently {order['order_status']}, not Out for Delivery.")
    partner = db["user"].find_one({"_id": order["delivery_partner"]}, PARTNER_FIELDS) if order.get("delivery_partner") else None
    destination = order_location(order)
    if not partner or not partner.get("current_location") or destination is None:
        raise ConflictError("Cannot calculate ETA: Required location data is missing.")
    return routing.eta(partner["current_location"]["coordinates"], destination["coordinates"])
