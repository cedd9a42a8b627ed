import inspect
import threading
import time
from datetime import timedelta

from fastapi.routing import APIRoute

import delivery
from database import utcnow
from main import app, get_notifier
from payments import sign
from conftest import (
    GATEWAY_SECRET, FakeNotifier, bearer, make_admin, make_coupon, make_partner, make_product, make_store, make_user,
    put_in_cart, stock_of,
)


def test_health(client):
    assert client.get("/").json() == {"message": "QuickKart API running"}


def test_register_login_and_me(client):
    created = client.post("/api/auth/register", json={
        "name": "Asha", "email": "Asha@Example.com", "password": "secret123", "phone": "+919000000000"})
    assert created.status_code == 201
    body = created.json()
    assert body["user"]["email"] == "asha@example.com"
    assert body["user"]["role"] == "customer"
    assert "password_hash" not in body["user"]

    duplicate = client.post("/api/auth/register", json={"name": "A", "email": "asha@example.com", "password": "secret123"})
    assert duplicate.status_code == 400
    assert duplicate.json()["message"] == "User already exists"

    bad = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401

    login = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "secret123"})
    token = login.json()["token"]
    me = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["name"] == "Asha"


def test_missing_and_bad_tokens(client):
    response = client.get("/api/orders/myorders")
    assert response.status_code == 401
    assert response.json()["message"] == "Not authorized, no token"
    assert "stack" in response.json()

    response = client.get("/api/orders/myorders", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401


def test_admin_routes_forbid_customers(client, db):
    response = client.get("/api/orders/admin/all", headers=bearer(make_user(db)))
    assert response.status_code == 403
    assert response.json()["message"] == "Not authorized as an admin"


def test_request_validation_error_shape(client, db):
    response = client.post("/api/orders", json={"payment_method": "Bitcoin"}, headers=bearer(make_user(db)))
    assert response.status_code == 400
    assert "payment_method" in response.json()["message"]


def test_unknown_route_uses_error_shape(client):
    response = client.get("/api/nowhere")
    assert response.status_code == 404
    assert response.json()["message"] == "Not Found"


def test_add_address_first_is_default(client, db):
    user = make_user(db, addresses=[])
    response = client.post("/api/users/addresses", headers=bearer(user), json={
        "address_line1": "1 Residency Rd", "city": "Bengaluru", "state": "KA", "pincode": "560025"})
    assert response.status_code == 201
    assert response.json()[0]["is_default"] is True

    response = client.post("/api/users/addresses", headers=bearer(user), json={
        "address_line1": "1 Residency Rd", "city": "Bengaluru", "state": "KA", "pincode": "5600"})
    assert response.status_code == 400


def test_cart_pins_store_and_price(client, db):
    store = make_store(db)
    product = make_product(db, price=60.0, sale_price=45.0, sale_end_date=utcnow() + timedelta(days=1),
                           stock=5, store=store)
    user = make_user(db)
    headers = bearer(user)

    response = client.post("/api/cart", headers=headers,
                           json={"product_id": str(product["_id"]), "qty": 2, "pincode": "560001"})
    assert response.status_code == 200
    lines = response.json()
    assert lines[0]["price"] == 45.0
    assert lines[0]["store"] == str(store["_id"])
    assert lines[0]["store_details"]["name"] == store["name"]

    response = client.post("/api/cart", headers=headers,
                           json={"product_id": str(product["_id"]), "qty": 3, "pincode": "560001"})
    assert len(response.json()) == 1
    assert response.json()[0]["qty"] == 3

    too_many = client.post("/api/cart", headers=headers,
                           json={"product_id": str(product["_id"]), "qty": 6, "pincode": "560001"})
    assert too_many.status_code == 400

    no_store = client.post("/api/cart", headers=headers,
                           json={"product_id": str(product["_id"]), "qty": 1, "pincode": "999999"})
    assert no_store.status_code == 404

    removed = client.delete(f"/api/cart/{lines[0]['id']}", headers=headers)
    assert removed.status_code == 200
    assert client.get("/api/cart", headers=headers).json() == []


def test_checkout_and_payment_over_http(client, db, notifier):
    store = make_store(db)
    product = make_product(db, price=50.0, stock=3, store=store)
    user = make_user(db)
    make_coupon(db, code="SAVE10", limit=5, used=2)
    put_in_cart(db, user, product, store, 2)
    headers = bearer(user)

    placed = client.post("/api/orders", headers=headers, json={"payment_method": "Online", "coupon_code": "SAVE10"})
    assert placed.status_code == 201
    body = placed.json()
    assert body["order_status"] == "Pending Payment"
    assert body["razorpay_key_id"] == "rzp_test_key"
    assert body["amount"] == 11450

    tampered = client.post("/api/orders/verify-payment", headers=headers, json={
        "razorpay_order_id": body["razorpay_order_id"], "razorpay_payment_id": "pay_P1",
        "razorpay_signature": sign(body["razorpay_order_id"], "pay_P1", "not-the-secret")})
    assert tampered.status_code == 400
    assert tampered.json()["message"] == "Invalid signature"

    verified = client.post("/api/orders/verify-payment", headers=headers, json={
        "razorpay_order_id": body["razorpay_order_id"], "razorpay_payment_id": "pay_P1",
        "razorpay_signature": sign(body["razorpay_order_id"], "pay_P1", GATEWAY_SECRET)})
    assert verified.status_code == 200
    assert verified.json()["order"]["order_status"] == "Placed"
    assert stock_of(db, product, store) == 1

    mine = client.get("/api/orders/myorders", headers=headers).json()
    assert [o["id"] for o in mine] == [body["id"]]

    cancelled = client.put(f"/api/orders/{body['id']}/cancel", headers=headers)
    assert cancelled.json()["order_status"] == "Cancelled"
    assert stock_of(db, product, store) == 3


def test_staff_lifecycle_over_http(client, db, monkeypatch):
    store = make_store(db)
    product = make_product(db, price=50.0, stock=3, store=store)
    user = make_user(db)
    put_in_cart(db, user, product, store, 1)
    order = client.post("/api/orders", headers=bearer(user), json={"payment_method": "Cash on Delivery"}).json()

    partner = make_partner(db)
    monkeypatch.setattr(delivery, "find_nearest_partners", lambda _db, location, radius: [])
    admin_headers = bearer(make_admin(db))

    assert client.put(f"/api/orders/{order['id']}/pack", headers=bearer(user)).status_code == 403
    assert client.put(f"/api/orders/{order['id']}/pack", headers=admin_headers).json()["order_status"] == "Packed"

    assigned = client.put(f"/api/delivery/assign/{order['id']}", headers=admin_headers,
                          json={"partner_id": str(partner["_id"])})
    assert assigned.json()["order"]["delivery_partner"] == str(partner["_id"])

    partner_headers = bearer(partner)
    assert client.get("/api/delivery/my-orders", headers=partner_headers).json()[0]["id"] == order["id"]
    assert client.put(f"/api/orders/{order['id']}/out-for-delivery", headers=partner_headers).status_code == 200

    eta = client.get(f"/api/delivery/eta/{order['id']}", headers=bearer(user))
    assert eta.status_code == 400

    delivered = client.put(f"/api/orders/{order['id']}/deliver", headers=partner_headers).json()
    assert delivered["order_status"] == "Delivered"
    assert delivered["is_paid"] is True

    feedback = client.post(f"/api/orders/{order['id']}/feedback", headers=bearer(user), json={"rating": 5})
    assert feedback.status_code == 200


def test_catalog_and_reviews(client, db):
    s1, s2 = make_store(db), make_store(db, pincode="560002")
    admin_headers = bearer(make_admin(db))
    created = client.post("/api/products", headers=admin_headers, json={
        "name": "Paneer", "description": "Fresh paneer", "brand": "Milky Mist", "category": "Dairy",
        "image": "paneer.png", "price": 90})
    assert created.status_code == 201
    product_id = created.json()["id"]

    client.put(f"/api/stores/{s1['_id']}/inventory", headers=admin_headers, json={"product_id": product_id, "stock": 4})
    client.put(f"/api/stores/{s2['_id']}/inventory", headers=admin_headers, json={"product_id": product_id, "stock": 6})
    listed = client.get("/api/products", params={"q": "paneer"}).json()
    assert listed["total"] == 1
    assert listed["items"][0]["stock"] == 10

    a, b = make_user(db), make_user(db)
    assert client.post(f"/api/products/{product_id}/reviews", headers=bearer(a),
                       json={"rating": 5, "comment": "Great"}).status_code == 201
    assert client.post(f"/api/products/{product_id}/reviews", headers=bearer(a),
                       json={"rating": 1, "comment": "Again"}).status_code == 400
    client.post(f"/api/products/{product_id}/reviews", headers=bearer(b), json={"rating": 4, "comment": "Good"})
    detail = client.get(f"/api/products/{product_id}").json()
    assert detail["rating"] == 4.5
    assert detail["num_reviews"] == 2

    assert client.delete(f"/api/products/{product_id}", headers=admin_headers).status_code == 200
    assert db["inventory"].count_documents({}) == 0
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_stores_and_settings(client, db):
    admin_headers = bearer(make_admin(db))
    store = client.post("/api/stores", headers=admin_headers, json={
        "name": "Koramangala Hub", "pincode": "560034", "address": "80ft Rd", "latitude": 12.93, "longitude": 77.62})
    assert store.status_code == 201
    assert store.json()["location"] == {"type": "Point", "coordinates": [77.62, 12.93]}

    duplicate = client.post("/api/stores", headers=admin_headers, json={
        "name": "Other", "pincode": "560034", "address": "x", "latitude": 12.9, "longitude": 77.6})
    assert duplicate.status_code == 400

    assert client.get("/api/settings").json()["delivery_search_radius"] == 5000
    updated = client.put("/api/settings", headers=admin_headers,
                         json={"allowed_pincodes": ["560034", " 560034 ", "560001"], "delivery_search_radius": 3000})
    assert updated.json()["allowed_pincodes"] == ["560034", "560001"]
    assert updated.json()["delivery_search_radius"] == 3000

    assert client.delete(f"/api/stores/{store.json()['id']}", headers=admin_headers).status_code == 200
    assert client.get("/api/stores", headers=admin_headers).json() == []


def test_coupon_admin_and_validation(client, db):
    admin_headers = bearer(make_admin(db))
    created = client.post("/api/coupons", headers=admin_headers, json={
        "code": "welcome", "discount_type": "FixedAmount", "discount_value": 25,
        "expiry_date": (utcnow() + timedelta(days=7)).isoformat()})
    assert created.status_code == 201
    assert created.json()["code"] == "WELCOME"

    store = make_store(db)
    product = make_product(db, price=100.0, stock=5, store=store)
    user = make_user(db)
    put_in_cart(db, user, product, store, 1)
    valid = client.post("/api/coupons/validate", headers=bearer(user), json={"code": "welcome"})
    assert valid.json()["discount_amount"] == 25.0

    assert client.delete(f"/api/coupons/{created.json()['id']}", headers=admin_headers).status_code == 200
    missing = client.post("/api/coupons/validate", headers=bearer(user), json={"code": "welcome"})
    assert missing.status_code == 404


def test_dashboard(client, db):
    store = make_store(db)
    product = make_product(db, name="Milk", price=50.0, stock=5, store=store)
    user = make_user(db)
    partner = make_partner(db)
    now = utcnow()
    db["order"].insert_many([
        {"user": user["_id"], "order_status": "Delivered", "total_price": 125.0, "created_at": now,
         "order_items": [{"product": product["_id"], "name": "Milk", "qty": 2, "price": 50.0}],
         "delivery_partner": partner["_id"], "delivery_rating": 4},
        {"user": user["_id"], "order_status": "Placed", "total_price": 72.5, "created_at": now,
         "order_items": [{"product": product["_id"], "name": "Milk", "qty": 1, "price": 50.0}],
         "delivery_partner": None},
    ])
    headers = bearer(make_admin(db))

    summary = client.get("/api/dashboard/summary", headers=headers).json()
    assert summary["total_orders"] == 2
    assert summary["total_sales"] == 125.0
    assert client.get("/api/dashboard/delivery-report", headers=headers).json() == {"Delivered": 1, "Placed": 1}
    popular = client.get("/api/dashboard/popular-products", headers=headers).json()
    assert popular == [{"product": str(product["_id"]), "name": "Milk", "total_quantity_sold": 2}]
    sales = client.get("/api/dashboard/sales-report", headers=headers).json()
    assert sales == [{"date": now.strftime("%Y-%m-%d"), "total_sales": 125.0, "count": 1}]
    partners = client.get("/api/dashboard/partner-performance", headers=headers).json()
    assert partners[0]["total_deliveries"] == 1
    assert partners[0]["average_rating"] == 4.0
    low = client.get("/api/dashboard/low-stock", headers=headers).json()
    assert low["product_count"] == 1
    inventory_report = client.get("/api/dashboard/store-inventory", headers=headers).json()
    assert inventory_report[0]["products"][0]["stock"] == 5


def test_account_self_service_over_http(client, db, notifier):
    store = make_store(db)
    product = make_product(db, price=50.0, stock=5, store=store)
    user = make_user(db, allow_email_promotions=True)
    headers = bearer(user)
    db["order"].insert_one({"user": user["_id"], "dark_store": store["_id"], "order_status": "Delivered",
                            "order_items": [{"product": product["_id"], "name": product["name"], "qty": 2,
                                             "price": 50.0, "image": ""}]})
    order_id = str(db["order"].find_one({"user": user["_id"]})["_id"])

    reorder = client.post(f"/api/users/reorder/{order_id}", headers=headers)
    assert reorder.status_code == 200
    assert reorder.json()["cart"][0]["qty"] == 2

    address_id = str(user["addresses"][0]["_id"])
    updated = client.put(f"/api/users/addresses/{address_id}", headers=headers, json={"city": "Mysuru"})
    assert updated.json()[0]["city"] == "Mysuru"
    assert client.get("/api/users/addresses", headers=headers).json()[0]["city"] == "Mysuru"
    assert client.delete(f"/api/users/addresses/{address_id}", headers=headers).json() == []

    profile = client.put("/api/users/profile", headers=headers, json={"name": "Asha"})
    assert profile.json()["name"] == "Asha"
    wrong = client.put("/api/users/profile/password", headers=headers,
                       json={"current_password": "nope", "new_password": "fresh456"})
    assert wrong.status_code == 401

    admin_headers = bearer(make_admin(db))
    partner = make_partner(db)
    assert client.get("/api/users/delivery-partners", headers=headers).status_code == 403
    listed = client.get("/api/users/delivery-partners", headers=admin_headers).json()
    assert [p["id"] for p in listed] == [str(partner["_id"])]

    promo = client.post("/api/notifications/promo", headers=admin_headers,
                        json={"subject": "Sale", "message": "Half price", "type": "Email"})
    assert promo.json()["emails_sent"] == 1
    assert notifier.emails[-1][0] == user["email"]

    active = client.get("/api/dashboard/active-users", headers=admin_headers).json()
    assert active["active_user_order_count"] == 0


def test_routes_run_in_the_threadpool():
    blocking = [r.path for r in app.routes if isinstance(r, APIRoute) and inspect.iscoroutinefunction(r.endpoint)]
    assert blocking == []


class SlowNotifier(FakeNotifier):
    def notify_user(self, user, title, message, data=None):
        time.sleep(1)
        super().notify_user(user, title, message, data)


def test_slow_notification_does_not_stall_other_requests(client, db):
    store = make_store(db)
    product = make_product(db, stock=3, store=store)
    user = make_user(db)
    put_in_cart(db, user, product, store, 1)
    order = client.post("/api/orders", headers=bearer(user), json={"payment_method": "Cash on Delivery"}).json()
    app.dependency_overrides[get_notifier] = lambda: SlowNotifier()

    with client:
        responses = []
        worker = threading.Thread(target=lambda: responses.append(
            client.put(f"/api/orders/{order['id']}/cancel", headers=bearer(user))))
        worker.start()
        time.sleep(0.1)
        started = time.monotonic()
        assert client.get("/").status_code == 200
        elapsed = time.monotonic() - started
        worker.join()

    assert elapsed < 0.5
    assert responses[0].json()["order_status"] == "Cancelled"
