"""
Order lifecycle

Checkout turns a user's cart into one order per vendor. Status changes after
checkout are not timers: each order carries its next status and the time it
becomes due, and ``advance_due_orders`` applies whatever is due with a
compare-and-swap update. Running it twice, or after a restart, never applies
a transition more than once.

    pending --(PAYMENT_DELAY_SECONDS)--> paid --(FULFILLMENT_DELAY_SECONDS)--> fulfilled
    pending | paid --(cancel_order)--> cancelled
"""
import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import get_db, get_documents, now_utc, utc_naive
from errors import (
    EmptyCartError,
    NotCancellableError,
    NotFoundError,
    NotRatableError,
    ValidationError,
    classify_store_error,
)
from schemas import Order as OrderSchema
from schemas import OrderItem, ShippingInfo
from schemas import Rating as RatingSchema

logger = logging.getLogger(__name__)

ORDER_INITIAL_STATUS = os.getenv("ORDER_INITIAL_STATUS", "paid")
PAYMENT_DELAY_SECONDS = float(os.getenv("PAYMENT_DELAY_SECONDS", "2"))
FULFILLMENT_DELAY_SECONDS = float(os.getenv("FULFILLMENT_DELAY_SECONDS", "30"))

if ORDER_INITIAL_STATUS not in ("pending", "paid"):
    raise RuntimeError(f"ORDER_INITIAL_STATUS must be pending or paid, got {ORDER_INITIAL_STATUS!r}")

CANCELLABLE_STATUSES = ("pending", "paid")


def next_transition(status: str) -> Tuple[Optional[str], Optional[float]]:
    if status == "pending":
        return "paid", PAYMENT_DELAY_SECONDS
    if status == "paid":
        return "fulfilled", FULFILLMENT_DELAY_SECONDS
    return None, None


def _schedule(status: str, now: datetime) -> Dict[str, Any]:
    next_status, delay = next_transition(status)
    return {
        "next_status": next_status,
        "status_due_at": utc_naive(now + timedelta(seconds=delay)) if next_status else None,
    }


# Checkout
def _claim_cart_lines(user_id: str) -> List[Dict[str, Any]]:
    # each line is removed with its own find-and-delete, so a line can be
    # claimed by one checkout only
    cart = get_db()["cart"]
    claimed = []
    for line in list(cart.find({"user_id": user_id})):
        taken = cart.find_one_and_delete({"_id": line["_id"]})
        if taken is not None:
            claimed.append(taken)
    return claimed


def _restore_cart_lines(lines: List[Dict[str, Any]]):
    cart = get_db()["cart"]
    for line in lines:
        cart.update_one(
            {"user_id": line["user_id"], "product_id": line["product_id"]},
            {"$inc": {"quantity": line["quantity"]}, "$setOnInsert": {"created_at": line.get("created_at") or now_utc()}},
            upsert=True,
        )


def _snapshot_items(lines: List[Dict[str, Any]]) -> List[OrderItem]:
    ids = [ObjectId(line["product_id"]) for line in lines if ObjectId.is_valid(line["product_id"])]
    products = {str(p["_id"]): p for p in get_db()["product"].find({"_id": {"$in": ids}})}
    items = []
    for line in lines:
        product = products.get(line["product_id"])
        if product is None or not product.get("is_active", True):
            logger.warning("Dropping unavailable product %s from checkout", line["product_id"])
            continue
        items.append(OrderItem(
            product_id=line["product_id"],
            vendor_id=product["vendor_id"],
            name=product["name"],
            price=float(product["price"]),
            quantity=line["quantity"],
            image_url=product.get("image_url"),
        ))
    return items


def split_by_vendor(items: List[OrderItem]) -> Dict[str, List[OrderItem]]:
    groups: Dict[str, List[OrderItem]] = {}
    for item in items:
        groups.setdefault(item.vendor_id, []).append(item)
    return groups


def order_total(items: List[OrderItem]) -> float:
    return round(sum(item.price * item.quantity for item in items), 2)


def checkout(user_id: str, shipping: Optional[ShippingInfo] = None, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Create one order per vendor from the user's cart and empty the cart.

    Prices are copied from the products at this moment. Raises EmptyCartError
    when there is nothing to order. On any failure after the cart lines are
    claimed, the lines are put back before the error propagates.
    """
    now = now or now_utc()
    claimed = _claim_cart_lines(user_id)
    if not claimed:
        raise EmptyCartError()

    checkout_id = uuid.uuid4().hex
    database = get_db()
    try:
        items = _snapshot_items(claimed)
        if not items:
            raise EmptyCartError("No purchasable items in cart")
        docs = []
        for vendor_id, vendor_items in split_by_vendor(items).items():
            order = OrderSchema(
                user_id=user_id,
                vendor_id=vendor_id,
                checkout_id=checkout_id,
                items=vendor_items,
                total=order_total(vendor_items),
                status=ORDER_INITIAL_STATUS,
                shipping=shipping or ShippingInfo(),
                **_schedule(ORDER_INITIAL_STATUS, now),
            )
            docs.append({"_id": ObjectId(), **order.model_dump(), "created_at": now, "updated_at": now})
        database["order"].insert_many(docs)
    except Exception as exc:
        logger.error("Checkout %s for user %s failed, restoring cart: %s", checkout_id, user_id, exc)
        try:
            database["order"].delete_many({"checkout_id": checkout_id})
            _restore_cart_lines(claimed)
        except PyMongoError:
            logger.exception("Could not restore cart for user %s", user_id)
        if isinstance(exc, PyMongoError):
            raise classify_store_error(exc) from exc
        raise

    logger.info(
        "Checkout %s: user %s placed %d order(s), total %.2f",
        checkout_id, user_id, len(docs), sum(d["total"] for d in docs),
    )
    return docs


# Transitions
def apply_transition(order_id: ObjectId, from_status: str, to_status: str, now: Optional[datetime] = None) -> bool:
    """Move one order from ``from_status`` to ``to_status`` if it is still there."""
    now = now or now_utc()
    result = get_db()["order"].update_one(
        {"_id": order_id, "status": from_status, "next_status": to_status},
        {"$set": {"status": to_status, "updated_at": now, **_schedule(to_status, now)}},
    )
    return result.modified_count == 1


def advance_due_orders(now: Optional[datetime] = None) -> int:
    """Apply every scheduled transition that is due. Returns how many were applied."""
    now = now or now_utc()
    applied = 0
    due = {"next_status": {"$ne": None}, "status_due_at": {"$lte": utc_naive(now)}}
    for order in list(get_db()["order"].find(due)):
        if apply_transition(order["_id"], order["status"], order["next_status"], now):
            logger.info("Order %s: %s -> %s", order["_id"], order["status"], order["next_status"])
            applied += 1
    return applied


async def fulfillment_worker(interval: float):
    logger.info("Order fulfillment worker started, polling every %.1fs", interval)
    while True:
        try:
            await asyncio.to_thread(advance_due_orders)
        except Exception:
            logger.exception("Order reconciliation pass failed")
        await asyncio.sleep(interval)


# Queries
def get_user_orders(user_id: str) -> List[Dict[str, Any]]:
    return get_documents("order", {"user_id": user_id})


def _find_order(order_id: str) -> Optional[Dict[str, Any]]:
    if not ObjectId.is_valid(order_id):
        return None
    return get_db()["order"].find_one({"_id": ObjectId(order_id)})


def get_order(user_id: str, order_id: str) -> Dict[str, Any]:
    order = _find_order(order_id)
    if not order or order.get("user_id") != user_id:
        raise NotFoundError("Order not found")
    return order


# Cancellation
def cancel_order(user_id: str, order_id: str) -> Dict[str, Any]:
    order = get_order(user_id, order_id)
    now = now_utc()
    updated = get_db()["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": {"status": "cancelled", "next_status": None, "status_due_at": None, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = get_db()["order"].find_one({"_id": order["_id"]}, {"status": 1}) or order
        raise NotCancellableError(f"Order is already {current.get('status')}")
    logger.info("Order %s cancelled by user %s", order_id, user_id)
    return updated


# Ratings
def rate_order(user_id: str, order_id: str, rating: int, comment: Optional[str] = None) -> List[Dict[str, Any]]:
    """Rate every product of a fulfilled order. Re-rating overwrites."""
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    order = _find_order(order_id)
    if not order or order.get("user_id") != user_id:
        raise NotRatableError("Order not found")
    if order.get("status") != "fulfilled":
        raise NotRatableError("Only fulfilled orders can be rated")

    product_ids = list(dict.fromkeys(item["product_id"] for item in order.get("items", [])))
    ratings = get_db()["rating"]
    now = now_utc()
    for product_id in product_ids:
        ratings.update_one(
            {"user_id": user_id, "product_id": product_id},
            {
                "$set": {
                    **RatingSchema(
                        user_id=user_id, product_id=product_id, order_id=order_id, rating=rating, comment=comment
                    ).model_dump(),
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
    logger.info("User %s rated order %s (%d products) %d/5", user_id, order_id, len(product_ids), rating)
    return list(ratings.find({"user_id": user_id, "product_id": {"$in": product_ids}}))
