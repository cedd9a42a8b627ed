"""
Best-effort customer notifications over email (SendGrid), SMS (Twilio) and
push (Firebase Cloud Messaging).

Nothing in here raises: a provider that is not configured is skipped and a
provider error is logged. Order mutations are committed before any of these
calls are made.
"""
import logging
from typing import Optional

import requests
from pymongo.database import Database

import config
from schemas import PromoRequest

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
FCM_URL = "https://fcm.googleapis.com/fcm/send"
TIMEOUT = 5


class NotificationDispatcher:
    def __init__(self, sendgrid_api_key: Optional[str] = None, from_email: Optional[str] = None,
                 twilio_sid: Optional[str] = None, twilio_token: Optional[str] = None,
                 twilio_number: Optional[str] = None, fcm_server_key: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.sendgrid_api_key = sendgrid_api_key
        self.from_email = from_email
        self.twilio_sid = twilio_sid
        self.twilio_token = twilio_token
        self.twilio_number = twilio_number
        self.fcm_server_key = fcm_server_key
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls) -> "NotificationDispatcher":
        return cls(
            sendgrid_api_key=config.SENDGRID_API_KEY,
            from_email=config.SENDGRID_FROM_EMAIL,
            twilio_sid=config.TWILIO_ACCOUNT_SID,
            twilio_token=config.TWILIO_AUTH_TOKEN,
            twilio_number=config.TWILIO_PHONE_NUMBER,
            fcm_server_key=config.FCM_SERVER_KEY,
        )

    def send_email(self, to: str, subject: str, body: str) -> bool:
        if not (self.sendgrid_api_key and self.from_email):
            logger.debug("SendGrid not configured, skipping email to %s", to)
            return False
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        try:
            response = self.session.post(
                SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.sendgrid_api_key}"},
                timeout=TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Error sending email to %s: %s", to, e)
            return False
        logger.info("Email sent to %s", to)
        return True

    def send_sms(self, to: str, body: str) -> bool:
        if not (self.twilio_sid and self.twilio_token and self.twilio_number):
            logger.debug("Twilio not configured, skipping SMS to %s", to)
            return False
        try:
            response = self.session.post(
                TWILIO_URL.format(sid=self.twilio_sid),
                data={"To": to, "From": self.twilio_number, "Body": body},
                auth=(self.twilio_sid, self.twilio_token),
                timeout=TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Failed to send SMS to %s: %s", to, e)
            return False
        logger.info("SMS sent to %s", to)
        return True

    def send_push(self, token: str, title: str, body: str, data: Optional[dict] = None) -> bool:
        if not token:
            return False
        if not self.fcm_server_key:
            logger.debug("FCM not configured, skipping push notification")
            return False
        payload = {
            "to": token,
            "notification": {"title": title, "body": body, "sound": "default"},
            "data": {k: str(v) for k, v in (data or {}).items()},
            "priority": "high",
        }
        try:
            response = self.session.post(
                FCM_URL,
                json=payload,
                headers={"Authorization": f"key={self.fcm_server_key}"},
                timeout=TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Error sending push notification: %s", e)
            return False
        return True

    def notify_user(self, user: Optional[dict], title: str, message: str, data: Optional[dict] = None):
        """Fan a message out to every channel the user can be reached on."""
        if not user:
            return
        try:
            if user.get("email"):
                self.send_email(user["email"], f"QuickKart: {title}", message)
            if user.get("phone") and user.get("allow_sms_notifications", True):
                self.send_sms(user["phone"], message)
            if user.get("fcm_token"):
                self.send_push(user["fcm_token"], title, message, data)
        except Exception:
            logger.exception("Notification to user %s failed", user.get("_id"))


def send_promotion(db: Database, notifier: NotificationDispatcher, payload: PromoRequest) -> dict:
    """Send an admin promotion to every user who opted in on the chosen channel."""
    emails_sent = sms_sent = 0
    if payload.type in ("Email", "All"):
        recipients = list(db["user"].find({"allow_email_promotions": True, "email": {"$exists": True}},
                                          {"email": 1, "name": 1}))
        logger.info("Sending promo email to %d users", len(recipients))
        for user in recipients:
            body = f"Hi {user.get('name', '')},\n\n{payload.message}\n\nBest,\nThe QuickKart Team"
            if notifier.send_email(user["email"], payload.subject, body):
                emails_sent += 1
    if payload.type in ("SMS", "All"):
        recipients = list(db["user"].find({"allow_sms_notifications": True, "phone": {"$nin": [None, ""]}},
                                          {"phone": 1}))
        logger.info("Sending promo SMS to %d users", len(recipients))
        for user in recipients:
            if notifier.send_sms(user["phone"], payload.message):
                sms_sent += 1
    return {"message": "Promotional notifications sent!", "emails_sent": emails_sent, "sms_sent": sms_sent}
