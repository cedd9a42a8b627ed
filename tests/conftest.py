from datetime import timedelta

import mongomock
import pytest
import requests
from bson import ObjectId
from fastapi.testclient import TestClient

import auth
import inventory
from database import get_db, utcnow
from main import app, get_notifier, get_routing, get_verifier
from payments import PaymentVerifier
from schemas import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_DELIVERY_PARTNER

GATEWAY_SECRET = "test_secret"


class FakeNotifier:
    def __init__(self):
        self.emails = []
        self.sms = []
        self.pushes = []
        self.user_messages = []

    def send_email(self, to, subject, body):
        self.emails.append((to, subject, body))
        return True

    def send_sms(self, to, body):
        self.sms.append((to, body))
        return True

    def send_push(self, token, title, body, data=None):
        self.pushes.append((token, title, body, data))
        return True

    def notify_user(self, user, title, message, data=None):
        if user:
            self.user_messages.append((user["_id"], title, message))


class FakeRazorpay:
    key_id = "rzp_test_key"
    key_secret = GATEWAY_SECRET

    def __init__(self):
        self.created = []

    def create_order(self, amount, currency, receipt, notes=None):
        gateway_id = f"order_G{len(self.created) + 1}"
        self.created.append({"id": gateway_id, "amount": amount, "receipt": receipt})
        return {"id": gateway_id, "amount": amount, "currency": currency}


class FakeRouting:
    def __init__(self, result=None):
        self.result = result or {"eta": "12 mins", "seconds": 720}
        self.calls = []

    def eta(self, origin, destination):
        self.calls.append((origin, destination))
        return self.result


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response

    get = post


@pytest.fixture
def db():
    return mongomock.MongoClient()["quickkart_test"]


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakeRazorpay()


@pytest.fixture
def verifier(gateway):
    return PaymentVerifier(gateway)


@pytest.fixture
def routing():
    return FakeRouting()


@pytest.fixture
def client(db, notifier, verifier, routing):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_verifier] = lambda: verifier
    app.dependency_overrides[get_routing] = lambda: routing
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(user):
    return {"Authorization": f"Bearer {auth.create_token(user)}"}


def make_user(db, role=ROLE_CUSTOMER, email=None, pincode="560001", **extra):
    doc = {
        "name": extra.pop("name", role.title()),
        "email": email or f"{ObjectId()}@example.com",
        "phone": "+919999999999",
        "password_hash": "",
        "role": role,
        "addresses": [{
            "_id": ObjectId(),
            "address_line1": "12 MG Road",
            "address_line2": None,
            "city": "Bengaluru",
            "state": "KA",
            "pincode": pincode,
            "is_default": True,
        }],
        "cart": [],
        "subscriptions": [],
        "is_online": False,
    }
    doc.update(extra)
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


def make_admin(db):
    return make_user(db, role=ROLE_ADMIN, name="Admin")


def make_partner(db, online=True, lat=12.97, lng=77.59):
    return make_user(db, role=ROLE_DELIVERY_PARTNER, name="Ravi", is_online=online,
                     current_location={"type": "Point", "coordinates": [lng, lat]})


def make_store(db, pincode="560001", name="Indiranagar Hub"):
    doc = {"name": name, "pincode": pincode, "address": "100ft Road",
           "location": {"type": "Point", "coordinates": [77.64, 12.97]}}
    doc["_id"] = db["darkstore"].insert_one(doc).inserted_id
    return doc


def make_product(db, name="Milk", price=50.0, stock=None, store=None, **extra):
    doc = {"name": name, "description": "Fresh", "brand": "Amul", "category": "Dairy", "image": "milk.png",
           "features": [], "price": price, "is_available": True, "reviews": [], "rating": 0.0, "num_reviews": 0,
           "created_at": utcnow()}
    doc.update(extra)
    doc["_id"] = db["product"].insert_one(doc).inserted_id
    if stock is not None and store is not None:
        inventory.set_stock(db, doc["_id"], store["_id"], stock)
    return doc


def put_in_cart(db, user, product, store, qty, price=None):
    line = {"_id": ObjectId(), "product": product["_id"], "name": product["name"], "image": product.get("image", ""),
            "price": product["price"] if price is None else price, "qty": qty, "store": store["_id"]}
    db["user"].update_one({"_id": user["_id"]}, {"$push": {"cart": line}, "$set": {"last_cart_update": utcnow()}})
    return line


def make_coupon(db, code="SAVE10", discount_type="Percentage", value=10, min_order=0, limit=None, used=0,
                active=True, expires_in_days=30):
    doc = {"code": code, "discount_type": discount_type, "discount_value": value, "min_order_amount": min_order,
           "expiry_date": utcnow() + timedelta(days=expires_in_days), "is_active": active,
           "usage_limit": limit, "used_count": used}
    doc["_id"] = db["coupon"].insert_one(doc).inserted_id
    return doc


def stock_of(db, product, store):
    return inventory.available_stock(db, product["_id"], store["_id"])
