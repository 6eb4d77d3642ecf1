import asyncio
import contextlib
import logging
import os
import sys
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import database
import orders
import storage
from auth import create_token, login, require_admin, require_customer, require_vendor, user_id_of
from errors import ForbiddenError, SoftShopError, TransientStoreError, classify_store_error
from schemas import CartLine, Order, Product, Rating, Setting, ShippingInfo, User, VendorProfile

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FULFILLMENT_WORKER_ENABLED = os.getenv("FULFILLMENT_WORKER_ENABLED", "true").lower() == "true"
FULFILLMENT_POLL_SECONDS = float(os.getenv("FULFILLMENT_POLL_SECONDS", "5"))
SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "true").lower() == "true"

logger = logging.getLogger("softshop")


def setup_logging():
    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"))
        root.addHandler(handler)


setup_logging()

# App init
app = FastAPI(title="SoftShop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling
@app.exception_handler(SoftShopError)
async def softshop_error_handler(request: Request, exc: SoftShopError):
    headers = None
    if isinstance(exc, TransientStoreError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Data store error on %s %s: %r", request.method, request.url.path, exc)
    return await softshop_error_handler(request, classify_store_error(exc))


# Request models
class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password: str = Field(min_length=6)
    role: Literal["user", "vendor"] = "user"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    password: Optional[str] = None


class AdminUserUpdateRequest(BaseModel):
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Optional[Literal["user", "vendor"]] = None
    is_active: Optional[bool] = None


class VendorProfileUpdateRequest(BaseModel):
    brand_name: Optional[str] = None
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_address: Optional[str] = None
    phone_number: Optional[str] = None
    logo_url: Optional[str] = None
    contact_email: Optional[str] = None
    bio: Optional[str] = None


class VendorApprovalRequest(BaseModel):
    is_approved: bool


class ProductCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    image_url: Optional[str] = None
    category: str
    stock: int = Field(0, ge=0)
    is_active: bool = True


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    image_url: Optional[str] = None
    category: Optional[str] = None
    stock: Optional[int] = None
    is_active: Optional[bool] = None


class CartAddRequest(BaseModel):
    product_id: str
    quantity: int = 1


class CartUpdateRequest(BaseModel):
    quantity: int


class CheckoutRequest(ShippingInfo):
    payment_method: str = Field("dummy", validation_alias=AliasChoices("payment_method", "paymentMethod"))


class RatingRequest(BaseModel):
    rating: int
    comment: Optional[str] = None


class OrderRatingRequest(RatingRequest):
    order_id: str = Field(..., validation_alias=AliasChoices("order_id", "orderId"))


# Routes
@app.get("/")
def root():
    return {"message": "SoftShop API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        db = database.db
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


@app.get("/schema")
def get_schema():
    return {
        "user": User.model_json_schema(),
        "vendor_profile": VendorProfile.model_json_schema(),
        "product": Product.model_json_schema(),
        "cart": CartLine.model_json_schema(),
        "order": Order.model_json_schema(),
        "rating": Rating.model_json_schema(),
        "setting": Setting.model_json_schema(),
    }


# Auth
@app.post("/api/auth/register")
def register(req: RegisterRequest):
    user = storage.create_user(req.email, req.password, name=req.name, role=req.role)
    return {"token": create_token(user), "user": storage.public_user(user)}


@app.post("/api/auth/login")
def login_route(req: LoginRequest):
    user = login(req.email, req.password)
    public = storage.serialize_doc(user) if user.get("role") == "admin" else storage.public_user(user)
    return {"token": create_token(user), "user": public}


# Products
@app.get("/api/products")
def list_products(category: Optional[str] = None, search: Optional[str] = None):
    return [storage.serialize_doc(p) for p in storage.list_products(category, search)]


@app.get("/api/categories")
def list_categories():
    return storage.list_categories()


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return storage.serialize_doc(storage.get_product(product_id))


@app.get("/api/products/{product_id}/rating")
def get_product_rating(product_id: str):
    return storage.get_product_rating(product_id)


# Cart
@app.get("/api/cart")
def get_cart(user=Depends(require_customer)):
    return storage.get_cart(user_id_of(user))


@app.get("/api/cart/count")
def get_cart_count(user=Depends(require_customer)):
    return storage.get_cart_count(user_id_of(user))


@app.post("/api/cart")
def add_to_cart(req: CartAddRequest, user=Depends(require_customer)):
    storage.add_to_cart(user_id_of(user), req.product_id, req.quantity)
    return {"message": "Item added to cart"}


@app.patch("/api/cart/{product_id}")
def update_cart_item(product_id: str, req: CartUpdateRequest, user=Depends(require_customer)):
    storage.update_cart_item(user_id_of(user), product_id, req.quantity)
    return {"message": "Cart updated"}


@app.delete("/api/cart")
def clear_cart(user=Depends(require_customer)):
    removed = storage.clear_cart(user_id_of(user))
    return {"message": "Cart cleared", "removed": removed}


@app.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, user=Depends(require_customer)):
    storage.remove_from_cart(user_id_of(user), product_id)
    return {"message": "Item removed from cart"}


# Orders
@app.post("/api/orders/checkout")
def checkout(req: Optional[CheckoutRequest] = None, user=Depends(require_customer)):
    shipping = ShippingInfo(**req.model_dump()) if req else None
    placed = orders.checkout(user_id_of(user), shipping)
    return {
        "checkout_id": placed[0]["checkout_id"],
        "total": round(sum(o["total"] for o in placed), 2),
        "orders": [storage.serialize_doc(o) for o in placed],
    }


@app.get("/api/orders/user")
def my_orders(user=Depends(require_customer)):
    return [storage.serialize_doc(o) for o in orders.get_user_orders(user_id_of(user))]


@app.get("/api/user/orders")
def my_orders_alias(user=Depends(require_customer)):
    return my_orders(user)


@app.post("/api/orders/rate")
def rate_order(req: OrderRatingRequest, user=Depends(require_customer)):
    orders.rate_order(user_id_of(user), req.order_id, req.rating, req.comment)
    return {"message": "Rating submitted successfully"}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(require_customer)):
    return storage.serialize_doc(orders.get_order(user_id_of(user), order_id))


@app.post("/api/orders/{order_id}/rate")
def rate_order_by_path(order_id: str, req: RatingRequest, user=Depends(require_customer)):
    orders.rate_order(user_id_of(user), order_id, req.rating, req.comment)
    return {"message": "Rating submitted successfully"}


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(require_customer)):
    return storage.serialize_doc(orders.cancel_order(user_id_of(user), order_id))


# User profile
@app.get("/api/user/profile")
def get_profile(user=Depends(require_customer)):
    return storage.public_user(user)


@app.patch("/api/user/profile")
def update_profile(req: ProfileUpdateRequest, user=Depends(require_customer)):
    updated = storage.update_user(user_id_of(user), req.model_dump(exclude_none=True))
    return storage.public_user(updated)


@app.get("/api/users/{user_id}")
def get_user(user_id: str):
    return storage.public_user(storage.get_user(user_id))


# Vendor
@app.get("/api/vendor/stats")
def vendor_stats(vendor=Depends(require_vendor)):
    return storage.get_vendor_stats(user_id_of(vendor))


@app.get("/api/vendor/profile")
def get_vendor_profile(vendor=Depends(require_vendor)):
    return storage.serialize_doc(storage.get_vendor_profile(user_id_of(vendor)))


@app.put("/api/vendor/profile")
def update_vendor_profile(req: VendorProfileUpdateRequest, vendor=Depends(require_vendor)):
    profile = storage.update_vendor_profile(user_id_of(vendor), req.model_dump(exclude_none=True))
    return storage.serialize_doc(profile)


@app.get("/api/vendor/products")
def vendor_products(vendor=Depends(require_vendor)):
    return [storage.serialize_doc(p) for p in storage.list_vendor_products(user_id_of(vendor))]


@app.post("/api/vendor/products")
def create_product(req: ProductCreateRequest, vendor=Depends(require_vendor)):
    product = storage.create_product(user_id_of(vendor), req.model_dump())
    return storage.serialize_doc(product)


def _owned_product(product_id: str, vendor: Dict[str, Any]) -> Dict[str, Any]:
    product = storage.get_product(product_id)
    if product.get("vendor_id") != user_id_of(vendor):
        raise ForbiddenError("Not authorized to modify this product")
    return product


@app.patch("/api/vendor/products/{product_id}")
def update_product(product_id: str, req: ProductUpdateRequest, vendor=Depends(require_vendor)):
    _owned_product(product_id, vendor)
    product = storage.update_product(product_id, req.model_dump(exclude_none=True))
    return storage.serialize_doc(product)


@app.delete("/api/vendor/products/{product_id}")
def delete_product(product_id: str, vendor=Depends(require_vendor)):
    _owned_product(product_id, vendor)
    storage.delete_product(product_id)
    return {"message": "Product deleted successfully"}


# Admin
@app.get("/api/admin/stats")
def admin_stats(admin=Depends(require_admin)):
    return storage.get_admin_stats()


@app.get("/api/admin/activity")
def admin_activity(admin=Depends(require_admin)):
    return storage.get_recent_activity()


@app.get("/api/admin/users")
def admin_users(admin=Depends(require_admin)):
    return [storage.public_user(u) for u in storage.list_users()]


@app.patch("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, req: AdminUserUpdateRequest, admin=Depends(require_admin)):
    updated = storage.update_user(user_id, req.model_dump(exclude_none=True), allowed=storage.ADMIN_USER_FIELDS)
    return storage.public_user(updated)


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin=Depends(require_admin)):
    storage.delete_user(user_id)
    return {"message": "User deleted successfully"}


@app.get("/api/admin/vendors")
def admin_vendors(admin=Depends(require_admin)):
    return storage.list_vendors()


@app.patch("/api/admin/vendors/{vendor_id}/approval")
def admin_vendor_approval(vendor_id: str, req: VendorApprovalRequest, admin=Depends(require_admin)):
    return storage.serialize_doc(storage.set_vendor_approval(vendor_id, req.is_approved))


@app.get("/api/admin/products")
def admin_products(admin=Depends(require_admin)):
    return [storage.serialize_doc(p) for p in storage.list_all_products()]


@app.get("/api/admin/settings")
def admin_settings(admin=Depends(require_admin)):
    return storage.get_settings()


@app.put("/api/admin/settings")
def admin_update_settings(values: Dict[str, Any], admin=Depends(require_admin)):
    return storage.update_settings(values)


# Seed demo catalogue on startup
DEMO_VENDOR = {"name": "SoftShop Demo Store", "email": "demo-vendor@softshop.com", "password": "vendor123"}

DEMO_PRODUCTS: List[dict] = [
    {
        "name": "Organic Cotton T-shirt",
        "description": "Soft organic cotton, modern fit",
        "price": 24.90,
        "category": "Fashion",
        "image_url": "https://images.unsplash.com/photo-1521572163474-6864f9cf17ab?q=80&w=1200&auto=format&fit=crop",
        "stock": 120,
    },
    {
        "name": "Wireless Headphones",
        "description": "Active noise cancelling, 30h battery",
        "price": 129.00,
        "category": "Electronics",
        "image_url": "https://images.unsplash.com/photo-1518441902110-9d8f13635159?q=80&w=1200&auto=format&fit=crop",
        "stock": 42,
    },
    {
        "name": "Insulated Water Bottle",
        "description": "Double-walled steel, keeps drinks cold for 24h",
        "price": 19.90,
        "category": "Sports",
        "image_url": "https://images.unsplash.com/photo-1602143407151-7111542de6e8?q=80&w=1200&auto=format&fit=crop",
        "stock": 300,
    },
    {
        "name": "Mechanical Keyboard",
        "description": "Hot-swappable switches with RGB backlight",
        "price": 79.99,
        "category": "Electronics",
        "image_url": "https://images.unsplash.com/photo-1516382799247-87df95d790b5?q=80&w=1200&auto=format&fit=crop",
        "stock": 30,
    },
    {
        "name": "Canvas Backpack",
        "description": "Everyday backpack with padded laptop sleeve",
        "price": 59.00,
        "category": "Fashion",
        "image_url": "https://images.unsplash.com/photo-1553062407-98eeb64c6a62?q=80&w=1200&auto=format&fit=crop",
        "stock": 80,
    },
]


def seed_demo_data():
    db = database.get_db()
    if db["product"].count_documents({}) > 0:
        return
    vendor = storage.get_user_by_email(DEMO_VENDOR["email"])
    if vendor is None:
        vendor = storage.create_user(DEMO_VENDOR["email"], DEMO_VENDOR["password"], name=DEMO_VENDOR["name"], role="vendor")
    vendor_id = user_id_of(vendor)
    storage.set_vendor_approval(vendor_id, True)
    for prod in DEMO_PRODUCTS:
        storage.create_product(vendor_id, prod)
    logger.info("Seeded %d demo products", len(DEMO_PRODUCTS))


def setup_database():
    try:
        database.ensure_indexes()
        storage.seed_default_settings()
        if SEED_DEMO_DATA:
            seed_demo_data()
    except (PyMongoError, SoftShopError) as e:
        logger.warning("Database setup skipped: %s", e)


@app.on_event("startup")
async def on_startup():
    await asyncio.to_thread(setup_database)
    if FULFILLMENT_WORKER_ENABLED:
        app.state.fulfillment_task = asyncio.create_task(orders.fulfillment_worker(FULFILLMENT_POLL_SECONDS))


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "fulfillment_task", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
