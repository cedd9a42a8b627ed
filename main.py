import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database

import auth
import cart
import catalog
import config
import database
import delivery
import notifications
import orders
import pricing
import reports
import site_settings
import stores
import subscriptions
from auth import get_current_user, require_admin, require_delivery_actor, require_delivery_partner
from database import get_db, serialize
from delivery import RoutingClient
from errors import register_exception_handlers
from notifications import NotificationDispatcher
from payments import PaymentVerifier
from schemas import (
    AddressIn, AddressUpdate, AssignPartnerRequest, CartItemIn, CouponCreate, CouponValidateRequest,
    DeliveryStatusRequest, FcmTokenRequest, FeedbackRequest, IssueReportRequest, LocationRequest, LoginRequest,
    PasswordChange, PlaceOrderRequest, ProductCreate, ProductUpdate, ProfileUpdate, PromoRequest, RegisterRequest,
    ResolveIssueRequest, ReviewCreate, SettingsUpdate, StoreCreate, StoreStockUpdate, SubscriptionCreate,
    VerifyPaymentRequest,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    app.state.verifier = PaymentVerifier.from_config()
    app.state.routing = RoutingClient.from_config()
    app.state.notifier = NotificationDispatcher.from_config()
    if database.db is not None:
        database.ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
    logger.info("QuickKart API starting in %s mode", config.ENVIRONMENT)
    yield


# App setup
app = FastAPI(title="QuickKart API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


# External clients, built once in ``lifespan``
def get_verifier(request: Request) -> PaymentVerifier:
    return request.app.state.verifier


def get_routing(request: Request) -> RoutingClient:
    return request.app.state.routing


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifier


def serialize_all(docs):
    return [serialize(d) for d in docs]


# Health
@app.get("/")
def root():
    return {"message": "QuickKart API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth & users
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    return serialize(auth.register(db, payload))


@app.post("/api/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    return serialize(auth.login(db, payload))


@app.get("/api/users/me")
def me(user: dict = Depends(get_current_user)):
    return serialize(auth.public_user(user))


@app.put("/api/users/profile")
def update_profile(payload: ProfileUpdate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(auth.update_profile(db, user, payload))


@app.put("/api/users/profile/password")
def change_password(payload: PasswordChange, user: dict = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    auth.change_password(db, user, payload)
    return {"message": "Password updated successfully."}


@app.get("/api/users/addresses")
def list_addresses(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_all(auth.list_addresses(db, user))


@app.post("/api/users/addresses", status_code=201)
def add_address(payload: AddressIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_all(auth.add_address(db, user, payload))


@app.put("/api/users/addresses/{address_id}")
def update_address(address_id: str, payload: AddressUpdate, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return serialize_all(auth.update_address(db, user, address_id, payload))


@app.delete("/api/users/addresses/{address_id}")
def delete_address(address_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_all(auth.delete_address(db, user, address_id))


@app.post("/api/users/reorder/{order_id}")
def quick_reorder(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(cart.quick_reorder(db, user, order_id))


@app.get("/api/users/delivery-partners")
def list_delivery_partners(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(auth.delivery_partners(db))


@app.put("/api/users/fcm-token")
def update_fcm_token(payload: FcmTokenRequest, user: dict = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    auth.set_fcm_token(db, user, payload.fcm_token)
    return {"message": "FCM token updated"}


# Products
@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, brand: Optional[str] = None,
                  page: int = 1, page_size: int = 20, db: Database = Depends(get_db)):
    return serialize(catalog.list_products(db, q, category, brand, max(page, 1), min(max(page_size, 1), 100)))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return serialize(catalog.product_detail(db, product_id))


@app.post("/api/products", status_code=201)
def create_product(payload: ProductCreate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(catalog.create_product(db, payload, admin))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, admin: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    return serialize(catalog.update_product(db, product_id, payload))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    catalog.delete_product(db, product_id)
    return {"message": "Product removed"}


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewCreate, user: dict = Depends(get_current_user),
               db: Database = Depends(get_db)):
    catalog.add_review(db, product_id, user, payload)
    return {"message": "Review added"}


# Cart
@app.get("/api/cart")
def get_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_all(cart.get_cart(db, user))


@app.post("/api/cart")
def add_to_cart(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_all(cart.add_item(db, user, item))


@app.delete("/api/cart/{line_id}")
def remove_from_cart(line_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart.remove_item(db, user, line_id)
    return {"message": "Item removed from cart"}


# Orders
@app.post("/api/orders", status_code=201)
def place_order(payload: PlaceOrderRequest, user: dict = Depends(get_current_user),
                db: Database = Depends(get_db), verifier: PaymentVerifier = Depends(get_verifier),
                notifier: NotificationDispatcher = Depends(get_notifier)):
    return serialize(orders.place_order(db, user, payload, verifier, notifier))


@app.post("/api/orders/verify-payment")
def verify_payment(payload: VerifyPaymentRequest, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db), verifier: PaymentVerifier = Depends(get_verifier),
                   notifier: NotificationDispatcher = Depends(get_notifier)):
    return serialize(orders.confirm_online_payment(db, user, payload, verifier, notifier))


@app.get("/api/orders/myorders")
def my_orders(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_all(orders.list_my_orders(db, user))


@app.get("/api/orders/admin/all")
def all_orders(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(orders.list_all_orders(db))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(orders.get_order(db, order_id, user))


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                 notifier: NotificationDispatcher = Depends(get_notifier)):
    return serialize(orders.cancel_order(db, order_id, user, notifier))


@app.put("/api/orders/{order_id}/pack")
def pack_order(order_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db),
               notifier: NotificationDispatcher = Depends(get_notifier)):
    return serialize(orders.pack_order(db, order_id, notifier))


@app.put("/api/orders/{order_id}/out-for-delivery")
def out_for_delivery(order_id: str, actor: dict = Depends(require_delivery_actor),
                     db: Database = Depends(get_db), notifier: NotificationDispatcher = Depends(get_notifier)):
    return serialize(orders.mark_out_for_delivery(db, order_id, actor, notifier))


@app.put("/api/orders/{order_id}/deliver")
def deliver_order(order_id: str, actor: dict = Depends(require_delivery_actor),
                  db: Database = Depends(get_db), notifier: NotificationDispatcher = Depends(get_notifier)):
    return serialize(orders.mark_delivered(db, order_id, actor, notifier))


@app.post("/api/orders/{order_id}/feedback")
def order_feedback(order_id: str, payload: FeedbackRequest, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    orders.add_feedback(db, order_id, user, payload)
    return {"message": "Thank you for your feedback!"}


@app.post("/api/orders/{order_id}/report-issue", status_code=201)
def report_issue(order_id: str, payload: IssueReportRequest, user: dict = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    order = orders.report_issue(db, order_id, user, payload)
    return {"message": "Issue reported successfully", "issue_report": serialize(order["issue_report"])}


@app.put("/api/orders/{order_id}/resolve-issue")
def resolve_issue(order_id: str, payload: ResolveIssueRequest, admin: dict = Depends(require_admin),
                  db: Database = Depends(get_db)):
    return serialize(orders.resolve_issue(db, order_id, payload))


# Delivery
@app.put("/api/delivery/status")
def delivery_status(payload: DeliveryStatusRequest, partner: dict = Depends(require_delivery_partner),
                    db: Database = Depends(get_db)):
    return serialize(delivery.set_online(db, partner, payload.is_online))


@app.put("/api/delivery/location")
def delivery_location(payload: LocationRequest, partner: dict = Depends(require_delivery_partner),
                      db: Database = Depends(get_db)):
    delivery.update_location(db, partner, payload.latitude, payload.longitude)
    return {"message": "Location updated"}


@app.get("/api/delivery/find-partners/{order_id}")
def find_partners(order_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(delivery.partners_for_order(db, order_id))


@app.put("/api/delivery/assign/{order_id}")
def assign_partner(order_id: str, payload: AssignPartnerRequest, admin: dict = Depends(require_admin),
                   db: Database = Depends(get_db), notifier: NotificationDispatcher = Depends(get_notifier)):
    result = delivery.manual_assign(db, order_id, payload.partner_id)
    order = result["order"]
    orders.notify(db, notifier, order["delivery_partner"], "New Delivery Assigned",
                  f"Order #{orders.short_id(order['_id'])} has been assigned to you.", order["_id"])
    return serialize(result)


@app.get("/api/delivery/my-orders")
def partner_orders(partner: dict = Depends(require_delivery_partner), db: Database = Depends(get_db)):
    return serialize_all(delivery.assigned_orders(db, partner))


@app.get("/api/delivery/track/{order_id}")
def track_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(delivery.track_order(db, order_id, user))


@app.get("/api/delivery/eta/{order_id}")
def delivery_eta(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                 routing: RoutingClient = Depends(get_routing)):
    return delivery.order_eta(db, order_id, user, routing)


# Coupons
@app.post("/api/coupons/validate")
def validate_coupon(payload: CouponValidateRequest, user: dict = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    return pricing.validate_coupon_for_cart(db, payload.code, cart.get_cart(db, user))


@app.post("/api/coupons", status_code=201)
def create_coupon(payload: CouponCreate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(pricing.create_coupon(db, payload))


@app.get("/api/coupons")
def list_coupons(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(pricing.list_coupons(db))


@app.delete("/api/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    pricing.delete_coupon(db, coupon_id)
    return {"message": "Coupon removed"}


# Dark stores
@app.post("/api/stores", status_code=201)
def create_store(payload: StoreCreate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(stores.create_store(db, payload))


@app.get("/api/stores")
def list_stores(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(stores.list_stores(db))


@app.delete("/api/stores/{store_id}")
def delete_store(store_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    stores.delete_store(db, store_id)
    return {"message": "Dark store removed"}


@app.put("/api/stores/{store_id}/inventory")
def update_store_stock(store_id: str, payload: StoreStockUpdate, admin: dict = Depends(require_admin),
                       db: Database = Depends(get_db)):
    return serialize(stores.set_store_stock(db, store_id, payload.product_id, payload.stock))


# Subscriptions
@app.post("/api/subscriptions", status_code=201)
def create_subscription(payload: SubscriptionCreate, user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    return serialize(subscriptions.create_subscription(db, user, payload))


@app.get("/api/subscriptions")
def list_subscriptions(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_all(subscriptions.list_subscriptions(db, user))


@app.delete("/api/subscriptions/{subscription_id}")
def cancel_subscription(subscription_id: str, user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    subscriptions.cancel_subscription(db, user, subscription_id)
    return {"message": "Subscription cancelled"}


# Settings
@app.get("/api/settings")
def get_settings(db: Database = Depends(get_db)):
    return serialize(site_settings.get_settings(db))


@app.put("/api/settings")
def update_settings(payload: SettingsUpdate, admin: dict = Depends(require_admin),
                    db: Database = Depends(get_db)):
    return serialize(site_settings.update_settings(db, payload))


# Admin dashboard
@app.get("/api/dashboard/summary")
def dashboard_summary(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.summary(db)


@app.get("/api/dashboard/sales-report")
def dashboard_sales(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.sales_by_day(db)


@app.get("/api/dashboard/popular-products")
def dashboard_popular(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(reports.popular_products(db))


@app.get("/api/dashboard/delivery-report")
def dashboard_statuses(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.status_counts(db)


@app.get("/api/dashboard/partner-performance")
def dashboard_partners(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(reports.partner_performance(db))


@app.get("/api/dashboard/abandoned-carts")
def dashboard_abandoned(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.abandoned_carts(db)


@app.get("/api/dashboard/low-stock")
def dashboard_low_stock(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return reports.low_stock(db)


@app.get("/api/dashboard/store-inventory")
def dashboard_store_inventory(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_all(reports.store_inventory(db))


@app.get("/api/dashboard/active-users")
def dashboard_active_users(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(reports.active_users(db))


# Notifications
@app.post("/api/notifications/promo")
def send_promotion(payload: PromoRequest, admin: dict = Depends(require_admin), db: Database = Depends(get_db),
                   notifier: NotificationDispatcher = Depends(get_notifier)):
    return notifications.send_promotion(db, notifier, payload)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
