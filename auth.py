from datetime import timedelta

import jwt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import create_document, get_db, to_object_id, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError
from schemas import (
    ROLE_ADMIN, ROLE_DELIVERY_PARTNER, AddressIn, AddressUpdate, LoginRequest, PasswordChange, ProfileUpdate,
    RegisterRequest,
)

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

PUBLIC_FIELDS = ("name", "email", "phone", "role", "addresses", "is_online", "fcm_token",
                 "allow_email_promotions", "allow_sms_notifications")
PARTNER_FIELDS = {"name": 1, "email": 1, "phone": 1, "is_online": 1, "current_location": 1}


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return bool(hashed) and password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role"),
        "exp": now + timedelta(minutes=config.JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthorizationError("Not authorized, token expired", status_code=401)
    except jwt.InvalidTokenError:
        raise AuthorizationError("Not authorized, token failed", status_code=401)


def public_user(user: dict) -> dict:
    return {"_id": user["_id"], **{k: user.get(k) for k in PUBLIC_FIELDS}}


def register(db: Database, payload: RegisterRequest) -> dict:
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise ConflictError("User already exists")
    doc = {
        "name": payload.name.strip(),
        "email": email,
        "phone": payload.phone,
        "password_hash": hash_password(payload.password),
        "role": payload.role,
        "addresses": [],
        "cart": [],
        "subscriptions": [],
        "is_online": False,
        "allow_sms_notifications": True,
        "allow_email_promotions": True,
    }
    user_id = create_document(db, "user", doc)
    user = db["user"].find_one({"_id": user_id})
    return {"token": create_token(user), "user": public_user(user)}


def login(db: Database, payload: LoginRequest) -> dict:
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise AuthorizationError("Invalid email or password", status_code=401)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}})
    return {"token": create_token(user), "user": public_user(user)}


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     db: Database = Depends(get_db)) -> dict:
    if credentials is None:
        raise AuthorizationError("Not authorized, no token", status_code=401)
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise AuthorizationError("Not authorized, token failed", status_code=401)
    user = db["user"].find_one({"_id": ObjectId(uid)}, {"password_hash": 0})
    if not user:
        raise AuthorizationError("User not found", status_code=401)
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != ROLE_ADMIN:
        raise AuthorizationError("Not authorized as an admin")
    return user


def require_delivery_partner(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != ROLE_DELIVERY_PARTNER:
        raise AuthorizationError("Not authorized as a delivery partner")
    return user


def require_delivery_actor(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") not in (ROLE_ADMIN, ROLE_DELIVERY_PARTNER):
        raise AuthorizationError("Not authorized as a delivery partner or admin")
    return user


def update_profile(db: Database, user: dict, payload: ProfileUpdate) -> dict:
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
    changes["updated_at"] = utcnow()
    updated = db["user"].find_one_and_update({"_id": user["_id"]}, {"$set": changes},
                                             return_document=ReturnDocument.AFTER)
    if not updated:
        raise NotFoundError("User not found")
    return public_user(updated)


def change_password(db: Database, user: dict, payload: PasswordChange) -> None:
    stored = db["user"].find_one({"_id": user["_id"]}, {"password_hash": 1})
    if not stored:
        raise NotFoundError("User not found")
    if not verify_password(payload.current_password, stored.get("password_hash", "")):
        raise AuthorizationError("Invalid current password.", status_code=401)
    db["user"].update_one({"_id": user["_id"]},
                          {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}})


# ------------ Address book ------------

def _addresses(db: Database, user: dict) -> list:
    stored = db["user"].find_one({"_id": user["_id"]}, {"addresses": 1})
    if not stored:
        raise NotFoundError("User not found")
    return stored.get("addresses") or []


def _save_addresses(db: Database, user: dict, addresses: list) -> list:
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return addresses


def list_addresses(db: Database, user: dict) -> list:
    return _addresses(db, user)


def add_address(db: Database, user: dict, payload: AddressIn) -> list:
    address = {"_id": ObjectId(), **payload.model_dump()}
    addresses = _addresses(db, user)
    if not addresses:
        address["is_default"] = True
    elif address["is_default"]:
        for a in addresses:
            a["is_default"] = False
    addresses.append(address)
    return _save_addresses(db, user, addresses)


def update_address(db: Database, user: dict, address_id, payload: AddressUpdate) -> list:
    oid = to_object_id(address_id, "address id")
    addresses = _addresses(db, user)
    address = next((a for a in addresses if a["_id"] == oid), None)
    if address is None:
        raise NotFoundError("Address not found")
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None or field == "address_line2":
            address[field] = value
    if address.get("is_default"):
        for a in addresses:
            if a["_id"] != oid:
                a["is_default"] = False
    return _save_addresses(db, user, addresses)


def delete_address(db: Database, user: dict, address_id) -> list:
    oid = to_object_id(address_id, "address id")
    addresses = _addresses(db, user)
    remaining = [a for a in addresses if a["_id"] != oid]
    if len(remaining) == len(addresses):
        raise NotFoundError("Address not found")
    if remaining and not any(a.get("is_default") for a in remaining):
        remaining[0]["is_default"] = True
    return _save_addresses(db, user, remaining)


def set_fcm_token(db: Database, user: dict, token: str) -> None:
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"fcm_token": token, "updated_at": utcnow()}})


def delivery_partners(db: Database) -> list:
    return list(db["user"].find({"role": ROLE_DELIVERY_PARTNER}, PARTNER_FIELDS).sort("name", 1))
