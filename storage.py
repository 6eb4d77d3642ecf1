"""
Storage access layer

Per-entity CRUD over the MongoDB collections. Functions return plain
documents and raise the typed errors from ``errors`` instead of returning
empty sentinels, so callers can tell "no data" from "store unreachable".
"""
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, get_db, get_documents, now_utc
from errors import AuthenticationError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from schemas import Product as ProductSchema
from schemas import User as UserSchema
from schemas import VendorProfile as VendorProfileSchema

logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@softshop.com")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

USER_FIELDS = {"name", "avatar_url", "password"}
ADMIN_USER_FIELDS = {"name", "avatar_url", "role", "is_active"}
VENDOR_PROFILE_FIELDS = {
    "brand_name",
    "business_name",
    "business_type",
    "business_address",
    "phone_number",
    "logo_url",
    "contact_email",
    "bio",
}
PRODUCT_FIELDS = {"name", "description", "price", "image_url", "category", "stock", "is_active"}

DEFAULT_SETTINGS: Dict[str, str] = {
    "site_name": "SoftShop",
    "site_description": "Modern E-commerce Platform",
    "contact_email": "admin@softshop.com",
    "maintenance_mode": "false",
    "allow_user_registration": "true",
    "require_vendor_approval": "true",
    "enable_notifications": "true",
    "platform_commission": "5",
    "minimum_order_amount": "10.00",
    "default_currency": "USD",
    "tax_rate": "0",
    "shipping_fee": "5.00",
    "free_shipping_threshold": "50.00",
    "max_upload_size": "10485760",
    "smtp_host": "smtp.gmail.com",
    "smtp_port": "587",
    "smtp_username": "",
    "smtp_password": "",
    "from_email": "noreply@softshop.com",
}


# Utils
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def to_object_id(value: str, what: str = "Record") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise NotFoundError(f"{what} not found")
    return ObjectId(value)


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = as_utc(v).isoformat()
    return doc


def _pick(updates: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    return {k: v for k, v in updates.items() if k in allowed and v is not None}


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid input")


# Users
def get_user(user_id: str) -> Dict[str, Any]:
    user = get_db()["user"].find_one({"_id": to_object_id(user_id, "User")})
    if not user:
        raise NotFoundError("User not found")
    return user


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    return get_db()["user"].find_one({"email": email.lower()})


def create_user(email: str, password: str, name: Optional[str] = None, role: str = "user") -> Dict[str, Any]:
    if not get_bool_setting("allow_user_registration", True):
        raise ForbiddenError("Registration is currently disabled")
    email = email.lower()
    if email == ADMIN_EMAIL.lower() or get_user_by_email(email):
        raise ConflictError("Email already registered")
    try:
        user = UserSchema(name=name, email=email, password_hash=hash_password(password), role=role)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e))
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    if role == "vendor":
        _create_vendor_profile(user_id, name, email)
    logger.info("Registered %s %s", role, user_id)
    return get_user(user_id)


def _create_vendor_profile(user_id: str, name: Optional[str], email: str):
    profile = VendorProfileSchema(
        user_id=user_id,
        brand_name=name or "New Vendor",
        contact_email=email,
        bio="New vendor on SoftShop",
        is_approved=False,
    )
    create_document("vendor_profile", profile)


def authenticate_user(email: str, password: str) -> Dict[str, Any]:
    user = get_user_by_email(email)
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid credentials")
    if not user.get("is_active", True):
        raise ForbiddenError("Account is disabled")
    return user


def update_user(user_id: str, updates: Dict[str, Any], allowed: Iterable[str] = USER_FIELDS) -> Dict[str, Any]:
    user = get_user(user_id)
    changes = _pick(updates, allowed)
    if not changes:
        raise ValidationError("No updates provided")
    if "password" in changes:
        password = changes.pop("password")
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        changes["password_hash"] = hash_password(password)
    if "role" in changes and changes["role"] not in ("user", "vendor"):
        raise ValidationError("Role must be user or vendor")
    changes["updated_at"] = now_utc()
    get_db()["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    if changes.get("role") == "vendor" and not get_db()["vendor_profile"].find_one({"user_id": user_id}):
        _create_vendor_profile(user_id, user.get("name"), user["email"])
    return get_user(user_id)


def list_users() -> List[Dict[str, Any]]:
    return get_documents("user")


def delete_user(user_id: str):
    """Delete a user and everything hanging off it. Orders are kept."""
    database = get_db()
    user = get_user(user_id)
    product_ids = [str(p["_id"]) for p in database["product"].find({"vendor_id": user_id}, {"_id": 1})]
    if product_ids:
        database["cart"].delete_many({"product_id": {"$in": product_ids}})
        database["rating"].delete_many({"product_id": {"$in": product_ids}})
        database["product"].delete_many({"vendor_id": user_id})
    database["cart"].delete_many({"user_id": user_id})
    database["rating"].delete_many({"user_id": user_id})
    database["vendor_profile"].delete_many({"user_id": user_id})
    database["user"].delete_one({"_id": user["_id"]})
    logger.info("Deleted user %s with %d products", user_id, len(product_ids))


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(user)
    out.pop("password_hash", None)
    if out.get("role") == "vendor":
        profile = get_db()["vendor_profile"].find_one({"user_id": out["id"]})
        out["vendor_profile"] = serialize_doc(profile) if profile else None
    return out


# Vendor profiles
def get_vendor_profile(user_id: str) -> Dict[str, Any]:
    profile = get_db()["vendor_profile"].find_one({"user_id": user_id})
    if not profile:
        raise NotFoundError("Vendor profile not found")
    return profile


def update_vendor_profile(user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    changes = _pick(updates, VENDOR_PROFILE_FIELDS)
    if not changes:
        raise ValidationError("No updates provided")
    if "brand_name" in changes and not str(changes["brand_name"]).strip():
        raise ValidationError("brand_name must not be empty")
    stamp = now_utc()
    on_insert = {"is_approved": False, "created_at": stamp}
    if "brand_name" not in changes:
        on_insert["brand_name"] = get_user(user_id).get("name") or "New Vendor"
    get_db()["vendor_profile"].update_one(
        {"user_id": user_id},
        {"$set": {**changes, "updated_at": stamp}, "$setOnInsert": on_insert},
        upsert=True,
    )
    return get_vendor_profile(user_id)


def set_vendor_approval(vendor_id: str, is_approved: bool) -> Dict[str, Any]:
    user = get_user(vendor_id)
    if user.get("role") != "vendor":
        raise NotFoundError("Vendor not found")
    stamp = now_utc()
    profile = get_db()["vendor_profile"].find_one_and_update(
        {"user_id": vendor_id},
        {
            "$set": {"is_approved": bool(is_approved), "updated_at": stamp},
            "$setOnInsert": {"brand_name": user.get("name") or "New Vendor", "created_at": stamp},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Vendor %s approval set to %s", vendor_id, bool(is_approved))
    return profile


def list_vendors() -> List[Dict[str, Any]]:
    vendors = []
    for user in get_documents("user", {"role": "vendor"}):
        out = public_user(user)
        profile = out.get("vendor_profile") or {}
        out["brand_name"] = profile.get("brand_name")
        out["is_approved"] = bool(profile.get("is_approved", False))
        vendors.append(out)
    return vendors


# Products
def list_products(category: Optional[str] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"is_active": True}
    if category and category != "All":
        query["category"] = category
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return get_documents("product", query)


def list_categories() -> List[str]:
    categories = get_db()["product"].distinct("category", {"is_active": True})
    return sorted(c for c in categories if c)


def get_product(product_id: str) -> Dict[str, Any]:
    product = get_db()["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def list_vendor_products(vendor_id: str) -> List[Dict[str, Any]]:
    return get_documents("product", {"vendor_id": vendor_id})


def list_all_products() -> List[Dict[str, Any]]:
    return get_documents("product")


def create_product(vendor_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        product = ProductSchema(vendor_id=vendor_id, **_pick(data, PRODUCT_FIELDS))
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e))
    product_id = create_document("product", product)
    logger.info("Vendor %s created product %s", vendor_id, product_id)
    return get_product(product_id)


def update_product(product_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    existing = get_product(product_id)
    changes = _pick(updates, PRODUCT_FIELDS)
    if not changes:
        raise ValidationError("No updates provided")
    current = {k: existing.get(k) for k in PRODUCT_FIELDS if existing.get(k) is not None}
    try:
        ProductSchema(vendor_id=existing["vendor_id"], **{**current, **changes})
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e))
    changes["updated_at"] = now_utc()
    get_db()["product"].update_one({"_id": existing["_id"]}, {"$set": changes})
    return get_product(product_id)


def delete_product(product_id: str):
    database = get_db()
    result = database["product"].delete_one({"_id": to_object_id(product_id, "Product")})
    if result.deleted_count == 0:
        raise NotFoundError("Product not found")
    database["cart"].delete_many({"product_id": product_id})
    database["rating"].delete_many({"product_id": product_id})


def get_product_rating(product_id: str) -> Dict[str, Any]:
    get_product(product_id)
    values = [r["rating"] for r in get_db()["rating"].find({"product_id": product_id}, {"rating": 1})]
    if not values:
        return {"average_rating": 0, "review_count": 0}
    return {"average_rating": round(sum(values) / len(values), 1), "review_count": len(values)}


# Cart
def get_cart(user_id: str) -> List[Dict[str, Any]]:
    database = get_db()
    lines = list(database["cart"].find({"user_id": user_id}).sort("created_at", 1))
    if not lines:
        return []
    ids = [ObjectId(line["product_id"]) for line in lines if ObjectId.is_valid(line["product_id"])]
    products = {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": ids}})}
    out = []
    for line in lines:
        product = products.get(line["product_id"])
        if product is None:
            continue
        out.append({
            "user_id": line["user_id"],
            "product_id": line["product_id"],
            "quantity": line["quantity"],
            "product": serialize_doc(product),
        })
    return out


def get_cart_count(user_id: str) -> int:
    return sum(line.get("quantity", 0) for line in get_db()["cart"].find({"user_id": user_id}, {"quantity": 1}))


def add_to_cart(user_id: str, product_id: str, quantity: int = 1):
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product = get_product(product_id)
    if not product.get("is_active", True):
        raise NotFoundError("Product not available")
    # $inc upsert keeps concurrent adds from losing quantity
    for attempt in range(2):
        try:
            get_db()["cart"].update_one(
                {"user_id": user_id, "product_id": product_id},
                {"$inc": {"quantity": quantity}, "$setOnInsert": {"created_at": now_utc()}},
                upsert=True,
            )
            return
        except DuplicateKeyError:
            # lost an upsert race on the unique index; the row exists now
            if attempt:
                raise


def update_cart_item(user_id: str, product_id: str, quantity: int):
    if quantity is None or quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    result = get_db()["cart"].update_one(
        {"user_id": user_id, "product_id": product_id},
        {"$set": {"quantity": quantity}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Cart item not found")


def remove_from_cart(user_id: str, product_id: str):
    result = get_db()["cart"].delete_one({"user_id": user_id, "product_id": product_id})
    if result.deleted_count == 0:
        raise NotFoundError("Cart item not found")


def clear_cart(user_id: str) -> int:
    return get_db()["cart"].delete_many({"user_id": user_id}).deleted_count


# Settings
def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def get_settings() -> Dict[str, str]:
    return {doc["key"]: doc["value"] for doc in get_db()["setting"].find({}).sort("key", 1)}


def get_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    doc = get_db()["setting"].find_one({"key": key})
    return doc["value"] if doc else default


def get_bool_setting(key: str, default: bool = False) -> bool:
    value = get_setting(key)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def update_settings(values: Dict[str, Any]) -> Dict[str, str]:
    if not values:
        raise ValidationError("No settings provided")
    stamp = now_utc()
    for key, value in values.items():
        if not key:
            raise ValidationError("Setting key must not be empty")
        get_db()["setting"].update_one(
            {"key": key},
            {"$set": {"value": _stringify(value), "updated_at": stamp}},
            upsert=True,
        )
    return get_settings()


def seed_default_settings() -> int:
    created = 0
    stamp = now_utc()
    for key, value in DEFAULT_SETTINGS.items():
        result = get_db()["setting"].update_one(
            {"key": key},
            {"$setOnInsert": {"value": value, "updated_at": stamp}},
            upsert=True,
        )
        if result.upserted_id is not None:
            created += 1
    return created


# Stats
def get_vendor_stats(vendor_id: str) -> Dict[str, Any]:
    database = get_db()
    product_ids = [str(p["_id"]) for p in database["product"].find({"vendor_id": vendor_id}, {"_id": 1})]
    orders = list(database["order"].find({"vendor_id": vendor_id, "status": "fulfilled"}, {"total": 1}))
    revenue = sum(float(o.get("total", 0)) for o in orders)
    ratings = []
    if product_ids:
        ratings = [r["rating"] for r in database["rating"].find({"product_id": {"$in": product_ids}}, {"rating": 1})]
    average = sum(ratings) / len(ratings) if ratings else 0
    return {
        "revenue": f"{revenue:.2f}",
        "orders": len(orders),
        "products": len(product_ids),
        "rating": f"{average:.1f}",
    }


def get_admin_stats() -> Dict[str, Any]:
    database = get_db()
    revenue = sum(float(o.get("total", 0)) for o in database["order"].find({"status": "fulfilled"}, {"total": 1}))
    return {
        "users": database["user"].count_documents({"is_active": True}),
        "vendors": database["user"].count_documents({"role": "vendor", "is_active": True}),
        "products": database["product"].count_documents({"is_active": True}),
        "orders": database["order"].count_documents({}),
        "revenue": f"{revenue:.2f}",
    }


def get_recent_activity(limit: int = 10) -> List[Dict[str, Any]]:
    activity = []
    for order in get_documents("order", limit=5):
        activity.append({
            "type": "order",
            "message": f"Order placed: ${order.get('total', 0):.2f}",
            "timestamp": as_utc(order.get("created_at")),
        })
    for user in get_documents("user", limit=5):
        activity.append({
            "type": "user",
            "message": f"New user registration: {user.get('name') or user.get('email')}",
            "timestamp": as_utc(user.get("created_at")),
        })
    activity = [a for a in activity if a["timestamp"] is not None]
    activity.sort(key=lambda a: a["timestamp"], reverse=True)
    return [serialize_doc(a) for a in activity[:limit]]
