from __future__ import annotations
from typing import Any, Optional

import structlog
from bson import ObjectId

from config import settings
from database import get_documents, serialize, to_object_id, utcnow
from errors import AuthorizationError, InvalidTransition, OrderNotFound, PaymentGatewayError, ValidationError
from inventory import increment_stock
from notifications import ArtworkReviewData, ShippingNotificationData, Template, dispatch
from schemas import ArtworkStatus, OrderStatus

logger = structlog.get_logger(__name__)

# pending_payment -> paid -> shipped -> delivered, pending_payment -> cancelled
ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

ARTWORK_TRANSITIONS: dict[ArtworkStatus, set[ArtworkStatus]] = {
    ArtworkStatus.SUBMITTED: {
        ArtworkStatus.APPROVED_MOCKUP,
        ArtworkStatus.CHANGES_REQUESTED,
        ArtworkStatus.REJECTED,
    },
    ArtworkStatus.CHANGES_REQUESTED: {ArtworkStatus.SUBMITTED},
    ArtworkStatus.APPROVED_MOCKUP: set(),
    ArtworkStatus.REJECTED: set(),
}

# Artwork is reviewed before dispatch; a rejection cancels the order even once paid
ARTWORK_REVIEWABLE = {OrderStatus.PENDING_PAYMENT, OrderStatus.PAID}

ARTWORK_TEMPLATES = {
    ArtworkStatus.APPROVED_MOCKUP: Template.CUSTOM_ARTWORK_MOCKUP,
    ArtworkStatus.CHANGES_REQUESTED: Template.CUSTOM_ARTWORK_CHANGES_REQUESTED,
    ArtworkStatus.REJECTED: Template.CUSTOM_ARTWORK_REJECTED,
}

TIMESTAMP_FIELDS = {
    OrderStatus.PAID: "paid_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())


def customer_name(order: dict[str, Any]) -> str:
    return (order.get("shipping_address") or {}).get("name") or order.get("email", "")


async def get_order(db, order_id: str) -> dict[str, Any]:
    if not order_id or not ObjectId.is_valid(order_id):
        raise OrderNotFound(order_id)
    doc = await db["order"].find_one({"_id": ObjectId(order_id)})
    if not doc:
        raise OrderNotFound(order_id)
    return serialize(doc)


async def get_order_for(db, order_id: str, email: str, is_admin: bool = False) -> dict[str, Any]:
    order = await get_order(db, order_id)
    if not is_admin and order.get("email", "").lower() != email.lower():
        raise AuthorizationError("This order belongs to another customer")
    return order


async def list_orders(db, email: Optional[str] = None, status: Optional[str] = None,
                      page: int = 1, limit: int = 20) -> list[dict[str, Any]]:
    query: dict[str, Any] = {}
    if email:
        query["email"] = email.lower()
    if status:
        query["status"] = status
    page = max(page, 1)
    return await get_documents(db, "order", query, limit=limit, skip=(page - 1) * limit,
                               sort=[("created_at", -1)])


async def transition(db, order_id: str, target: OrderStatus,
                     extra: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Move an order to ``target``; raises InvalidTransition for anything not forward.

    While a payment confirmation holds the ``confirming`` claim only that
    confirmation may move the order, and it may only move it to paid.
    """
    order = await get_order(db, order_id)
    current = OrderStatus(order["status"])
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)

    now = utcnow()
    update = {"status": target.value, "updated_at": now, **(extra or {})}
    if target in TIMESTAMP_FIELDS:
        update[TIMESTAMP_FIELDS[target]] = now
    query: dict[str, Any] = {"_id": to_object_id(order_id, "Order"), "status": current.value}
    if target != OrderStatus.PAID:
        query["confirming"] = {"$ne": True}
    result = await db["order"].update_one(query, {"$set": update})
    if result.modified_count == 0:
        # moved or claimed by someone else between our read and write
        latest = await get_order(db, order_id)
        raise InvalidTransition(latest["status"], target.value)
    logger.info("order_transition", order_id=order_id, previous=current.value, status=target.value)
    return {**order, **update}


async def mark_shipped(db, order_id: str, tracking_number: str, carrier: Optional[str] = None) -> dict[str, Any]:
    tracking_number = (tracking_number or "").strip()
    if not tracking_number:
        raise ValidationError("A tracking number is required to ship an order")
    carrier = carrier or "Royal Mail"
    order = await transition(db, order_id, OrderStatus.SHIPPED,
                             {"tracking_number": tracking_number, "carrier": carrier})
    await dispatch(db, Template.SHIPPING_NOTIFICATION, order["email"], ShippingNotificationData(
        order_id=order_id,
        customer_name=customer_name(order),
        tracking_number=tracking_number,
        carrier=carrier,
    ))
    return order


async def mark_delivered(db, order_id: str) -> dict[str, Any]:
    return await transition(db, order_id, OrderStatus.DELIVERED)


async def cancel_order(db, order_id: str, reason: Optional[str] = None, gateway=None) -> dict[str, Any]:
    order = await transition(db, order_id, OrderStatus.CANCELLED, {"cancel_reason": reason})
    return await release_payment(db, gateway, order, was_paid=False)


async def release_payment(db, gateway, order: dict[str, Any], was_paid: bool) -> dict[str, Any]:
    """Refund a paid intent, or cancel one still awaiting payment.

    A gateway failure is recorded on the order for manual follow-up instead of
    undoing the cancellation.
    """
    intent_id = order.get("payment_intent_id")
    if not intent_id or gateway is None:
        return order
    try:
        if was_paid:
            refund_id = await gateway.refund(intent_id)
            update: dict[str, Any] = {"refund_id": refund_id, "refunded_at": utcnow()}
        else:
            await gateway.cancel_intent(intent_id)
            update = {"payment_status": "canceled"}
    except PaymentGatewayError as exc:
        logger.error("payment_release_failed", order_id=order["id"], intent_id=intent_id, refund=was_paid)
        update = {"refund_failed" if was_paid else "intent_cancel_failed": True, "payment_error": exc.message}
    await db["order"].update_one({"_id": to_object_id(order["id"], "Order")}, {"$set": update})
    return {**order, **update}


# Custom artwork

async def _move_artwork(db, order: dict[str, Any], target: ArtworkStatus,
                        extra: dict[str, Any]) -> dict[str, Any]:
    if not order.get("has_custom_artwork"):
        raise ValidationError("This order has no custom artwork")
    current = ArtworkStatus(order.get("artwork_status") or ArtworkStatus.SUBMITTED.value)
    if target not in ARTWORK_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)
    status = OrderStatus(order["status"])
    if status not in ARTWORK_REVIEWABLE:
        raise InvalidTransition(status.value, target.value)

    now = utcnow()
    update = {"artwork_status": target.value, "updated_at": now, **extra}
    query: dict[str, Any] = {"_id": to_object_id(order["id"], "Order"), "artwork_status": current.value}
    if target == ArtworkStatus.REJECTED:
        # artwork and order status change in the same write
        query.update({"status": status.value, "confirming": {"$ne": True}})
        update.update({"status": OrderStatus.CANCELLED.value, "cancelled_at": now,
                       "cancel_reason": "artwork_rejected"})
    result = await db["order"].update_one(query, {"$set": update, "$push": {"artwork_history": {
        "status": target.value, "notes": extra.get("artwork_notes"), "at": now,
    }}})
    if result.modified_count == 0:
        latest = await get_order(db, order["id"])
        if latest["status"] != status.value or latest.get("confirming"):
            raise InvalidTransition(latest["status"], OrderStatus.CANCELLED.value)
        raise InvalidTransition(latest.get("artwork_status") or "", target.value)
    logger.info("artwork_transition", order_id=order["id"], previous=current.value, status=target.value)
    return {**order, **update}


async def review_artwork(db, gateway, order_id: str, decision: str, notes: str = "",
                         mockup_url: Optional[str] = None) -> dict[str, Any]:
    target = ArtworkStatus(decision)
    if target == ArtworkStatus.APPROVED_MOCKUP and not mockup_url:
        raise ValidationError("A mockup URL is required to approve artwork")
    order = await get_order(db, order_id)
    was_paid = order["status"] == OrderStatus.PAID.value
    order = await _move_artwork(db, order, target, {"artwork_notes": notes, "mockup_url": mockup_url})

    if target == ArtworkStatus.REJECTED:
        logger.info("order_transition", order_id=order_id, status=OrderStatus.CANCELLED.value,
                    reason="artwork_rejected")
        if was_paid:
            items = [(item["product_id"], int(item["quantity"])) for item in order.get("items", [])]
            if items:
                await increment_stock(db, items, reason="artwork_rejected", reference=order_id)
        order = await release_payment(db, gateway, order, was_paid=was_paid)

    await dispatch(db, ARTWORK_TEMPLATES[target], order["email"], ArtworkReviewData(
        order_id=order_id,
        customer_name=customer_name(order),
        notes=notes,
        mockup_url=mockup_url or "",
    ))
    return order


async def resubmit_artwork(db, order_id: str, email: str, artwork_url: str) -> dict[str, Any]:
    order = await get_order_for(db, order_id, email)
    return await _move_artwork(db, order, ArtworkStatus.SUBMITTED, {"custom_artwork_url": artwork_url})


def order_url(order_id: str) -> str:
    return f"{settings.FRONTEND_URL}/order-confirmation.html?order={order_id}"
