"""
Online payment through Razorpay.

``RazorpayClient`` is created once when the app starts and handed to
``PaymentVerifier``; nothing here reads credentials from the environment.
"""
import hashlib
import hmac
import logging
from typing import Optional

import requests
from pymongo.database import Database

import config
from errors import NotFoundError, SignatureMismatch, UpstreamError

logger = logging.getLogger(__name__)

RAZORPAY_ORDERS_URL = "https://api.razorpay.com/v1/orders"
CURRENCY = "INR"


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, session: Optional[requests.Session] = None, timeout: int = 10):
        self.key_id = key_id
        self.key_secret = key_secret
        self.session = session or requests.Session()
        self.timeout = timeout

    def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[dict] = None) -> dict:
        payload = {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}}
        try:
            response = self.session.post(
                RAZORPAY_ORDERS_URL,
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error("Razorpay order creation failed for %s: %s", receipt, e)
            raise UpstreamError("Could not start online payment. Please try again.")


def sign(gateway_order_id: str, payment_id: str, secret: str) -> str:
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class PaymentVerifier:
    def __init__(self, client: Optional[RazorpayClient]):
        self.client = client

    @classmethod
    def from_config(cls) -> "PaymentVerifier":
        if config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET:
            return cls(RazorpayClient(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET))
        logger.warning("Razorpay keys not found, online payment disabled")
        return cls(None)

    def _require_client(self) -> RazorpayClient:
        if self.client is None:
            raise UpstreamError("Online payment is not configured", status_code=503)
        return self.client

    def initiate(self, order_id, total_price: float) -> dict:
        """Open a gateway order for ``total_price`` rupees, charged in paise."""
        client = self._require_client()
        gateway_order = client.create_order(
            amount=int(round(total_price * 100)),
            currency=CURRENCY,
            receipt=f"receipt_{order_id}",
            notes={"order_db_id": str(order_id)},
        )
        return {
            "razorpay_order_id": gateway_order["id"],
            "razorpay_key_id": client.key_id,
            "amount": gateway_order.get("amount", int(round(total_price * 100))),
            "currency": gateway_order.get("currency", CURRENCY),
        }

    def check_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        expected = sign(gateway_order_id, payment_id, self._require_client().key_secret)
        return hmac.compare_digest(expected.encode(), signature.encode())

    def verify(self, db: Database, order: dict, payment_id: str, signature: str) -> dict:
        """Check the gateway signature for an order the caller is allowed to pay.

        A bad signature marks the payment Failed and raises SignatureMismatch; the
        order itself stays in Pending Payment so the customer can retry.
        """
        gateway_order_id = order["payment_result"]["order_id"]
        if not self.check_signature(gateway_order_id, payment_id, signature):
            db["order"].update_one(
                {"_id": order["_id"], "is_paid": False},
                {"$set": {"payment_result.status": "Failed", "payment_result.id": payment_id}},
            )
            logger.warning("Signature mismatch for gateway order %s", gateway_order_id)
            raise SignatureMismatch()
        return order


def find_order(db: Database, gateway_order_id: str) -> dict:
    order = db["order"].find_one({"payment_result.order_id": gateway_order_id})
    if not order:
        raise NotFoundError("Order not found")
    return order
