from __future__ import annotations
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import stripe
import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from starlette.concurrency import run_in_threadpool

from config import settings
from database import serialize, utcnow
from errors import (
    InsufficientStock,
    InvalidTransition,
    PaymentGatewayError,
    PaymentVerificationFailed,
    ProductNotFound,
    ValidationError,
)
from inventory import decrement_stock, increment_stock
from notifications import LineData, OrderConfirmationData, Template, dispatch
from orders import customer_name, get_order, order_url, transition
from schemas import ArtworkStatus, CheckoutItem, CheckoutRequest, Order, OrderItem, OrderStatus, Pricing

logger = structlog.get_logger(__name__)

PENNY = Decimal("0.01")
PAID_OR_LATER = {OrderStatus.PAID.value, OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value}


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(PENNY, rounding=ROUND_HALF_UP)


def to_pence(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value())


class PaymentGateway:
    """Thin async wrapper over the Stripe SDK."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.secret_key = secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET

    def _key(self) -> str:
        if not self.secret_key:
            raise PaymentGatewayError("Payments are not configured")
        return self.secret_key

    async def create_intent(self, amount: int, currency: str, metadata: dict[str, str],
                            idempotency_key: Optional[str] = None) -> dict[str, Any]:
        try:
            intent = await run_in_threadpool(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self._key(),
            )
        except stripe.StripeError as exc:
            logger.error("stripe_create_intent_failed", error=str(exc))
            raise PaymentGatewayError("Could not start the payment") from exc
        return {"id": intent["id"], "client_secret": intent["client_secret"]}

    async def retrieve_intent(self, intent_id: str) -> dict[str, Any]:
        try:
            intent = await run_in_threadpool(stripe.PaymentIntent.retrieve, intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            logger.error("stripe_retrieve_intent_failed", intent_id=intent_id, error=str(exc))
            raise PaymentVerificationFailed("Could not verify the payment with the provider") from exc
        return {"id": intent["id"], "status": intent["status"], "amount": intent["amount"]}

    async def refund(self, intent_id: str) -> str:
        try:
            refund = await run_in_threadpool(stripe.Refund.create, payment_intent=intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            logger.error("stripe_refund_failed", intent_id=intent_id, error=str(exc))
            raise PaymentGatewayError("Refund failed") from exc
        return refund["id"]

    async def cancel_intent(self, intent_id: str) -> None:
        try:
            await run_in_threadpool(stripe.PaymentIntent.cancel, intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            logger.error("stripe_cancel_intent_failed", intent_id=intent_id, error=str(exc))
            raise PaymentGatewayError("Could not cancel the payment") from exc

    def construct_event(self, payload: bytes, signature: str) -> Any:
        if not self.webhook_secret:
            raise PaymentGatewayError("Webhook secret is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("stripe_webhook_rejected", error=str(exc))
            raise PaymentVerificationFailed("Invalid webhook signature") from exc


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway()
    return _gateway


# Pricing

def compute_pricing(subtotal: Decimal) -> Pricing:
    subtotal = to_money(subtotal)
    shipping = Decimal("0.00") if subtotal > settings.FREE_SHIPPING_THRESHOLD else to_money(settings.SHIPPING_FLAT_FEE)
    tax = to_money(subtotal * settings.VAT_RATE)
    return Pricing(subtotal=subtotal, shipping=shipping, tax=tax, total=subtotal + shipping + tax)


async def price_items(db, items: list[CheckoutItem]) -> tuple[list[OrderItem], Pricing]:
    if not items:
        raise ValidationError("Cart is empty")
    order_items: list[OrderItem] = []
    subtotal = Decimal("0")
    for item in items:
        if not ObjectId.is_valid(item.product_id):
            raise ProductNotFound(item.product_id)
        product = await db["product"].find_one({"_id": ObjectId(item.product_id), "is_active": {"$ne": False}})
        if not product:
            raise ProductNotFound(item.product_id)
        available = int(product.get("stock", 0))
        if item.quantity > available:
            raise InsufficientStock(item.product_id, available, item.quantity, product.get("name"))

        unit_price = to_money(product.get("price", 0))
        line_total = unit_price * item.quantity
        subtotal += line_total
        order_items.append(OrderItem(
            product_id=item.product_id,
            name=product.get("name", "Product"),
            unit_price=unit_price,
            quantity=item.quantity,
            line_total=line_total,
            customization=item.customization,
            custom_artwork_url=item.custom_artwork_url,
        ))
    return order_items, compute_pricing(subtotal)


def _money_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {k: float(v) if isinstance(v, Decimal) else v for k, v in data.items()}


async def create_checkout(db, gateway: PaymentGateway, request: CheckoutRequest) -> dict[str, Any]:
    order_items, pricing = await price_items(db, request.items)
    order_id = ObjectId()
    amount = to_pence(pricing.total)

    intent = await gateway.create_intent(
        amount=amount,
        currency=settings.CURRENCY,
        metadata={"order_id": str(order_id), "cart_id": request.cart_id or ""},
        idempotency_key=f"order-{order_id}",
    )

    has_artwork = any(item.custom_artwork_url for item in order_items)
    order = Order(
        email=request.email.lower(),
        items=order_items,
        pricing=pricing,
        shipping_address=request.shipping_address,
        payment_intent_id=intent["id"],
        cart_id=request.cart_id,
        has_custom_artwork=has_artwork,
        artwork_status=ArtworkStatus.SUBMITTED if has_artwork else None,
    ).model_dump()
    # BSON has no Decimal
    order["items"] = [_money_fields(item) for item in order["items"]]
    order["pricing"] = _money_fields(order["pricing"])
    now = utcnow()
    await db["order"].insert_one({"_id": order_id, **order, "created_at": now, "updated_at": now})
    if request.cart_id:
        await db["cart"].update_one({"_id": request.cart_id}, {"$set": {"converted": True, "order_id": str(order_id)}})

    logger.info("checkout_created", order_id=str(order_id), amount=amount, intent_id=intent["id"])
    return {
        "order_id": str(order_id),
        "client_secret": intent["client_secret"],
        "pricing": _money_fields(pricing.model_dump()),
    }


async def find_order_by_intent(db, payment_intent_id: str) -> dict[str, Any]:
    doc = await db["order"].find_one({"payment_intent_id": payment_intent_id})
    if not doc:
        raise PaymentVerificationFailed("No order matches this payment")
    return serialize(doc)


async def refund_cancelled_order(db, gateway: PaymentGateway, order: dict[str, Any]) -> dict[str, Any]:
    """A cancelled order whose intent was still paid gets its money back, once."""
    if order.get("refund_id"):
        return order
    intent = await gateway.retrieve_intent(order["payment_intent_id"])
    if intent.get("status") != "succeeded":
        raise PaymentVerificationFailed("This order is no longer awaiting payment")

    claimed = await db["order"].find_one_and_update(
        {"_id": ObjectId(order["id"]), "refund_id": None, "refunding": {"$ne": True}},
        {"$set": {"refunding": True}},
    )
    if not claimed:
        return await get_order(db, order["id"])
    try:
        refund_id = await gateway.refund(order["payment_intent_id"])
    except PaymentGatewayError:
        await db["order"].update_one({"_id": ObjectId(order["id"])},
                                     {"$set": {"refunding": False, "refund_failed": True}})
        raise
    update = {"refunding": False, "refund_id": refund_id, "refunded_at": utcnow()}
    await db["order"].update_one({"_id": ObjectId(order["id"])}, {"$set": update})
    logger.warning("cancelled_order_refunded", order_id=order["id"], refund_id=refund_id)
    return {**order, **update}


async def confirm_payment(db, gateway: PaymentGateway, payment_intent_id: str) -> dict[str, Any]:
    order = await find_order_by_intent(db, payment_intent_id)
    order_id = order["id"]

    if order["status"] in PAID_OR_LATER:
        return order
    if order["status"] == OrderStatus.CANCELLED.value:
        return await refund_cancelled_order(db, gateway, order)
    if order["status"] != OrderStatus.PENDING_PAYMENT.value:
        logger.warning("payment_for_closed_order", order_id=order_id, status=order["status"])
        raise PaymentVerificationFailed("This order is no longer awaiting payment")

    intent = await gateway.retrieve_intent(payment_intent_id)
    if intent.get("status") != "succeeded":
        raise PaymentVerificationFailed("Payment has not completed")
    if int(intent.get("amount", -1)) != to_pence(Decimal(str(order["pricing"]["total"]))):
        logger.error("payment_amount_mismatch", order_id=order_id, amount=intent.get("amount"))
        raise PaymentVerificationFailed("Payment amount does not match the order total")

    claimed = await db["order"].find_one_and_update(
        {"_id": ObjectId(order_id), "status": OrderStatus.PENDING_PAYMENT.value, "confirming": {"$ne": True}},
        {"$set": {"confirming": True}},
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        # another confirmation (client or webhook) is handling it
        return await get_order(db, order_id)

    items = [(item["product_id"], int(item["quantity"])) for item in order["items"]]
    try:
        await decrement_stock(db, items, reason="order", reference=order_id)
    except InsufficientStock as exc:
        await db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {
            "confirming": False, "stock_conflict": True, "stock_conflict_product": exc.product_id,
        }})
        logger.error("paid_order_stock_conflict", order_id=order_id, product_id=exc.product_id)
        raise
    except Exception:
        await db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"confirming": False}})
        raise

    try:
        order = await transition(db, order_id, OrderStatus.PAID,
                                 {"confirming": False, "payment_status": "succeeded"})
    except InvalidTransition:
        await increment_stock(db, items, reason="order_reverted", reference=order_id)
        await db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"confirming": False}})
        logger.error("paid_transition_failed", order_id=order_id)
        raise
    if order.get("cart_id"):
        await db["cart"].update_one({"_id": order["cart_id"]}, {"$set": {"converted": True}})

    pricing = order["pricing"]
    await dispatch(db, Template.ORDER_CONFIRMATION, order["email"], OrderConfirmationData(
        order_id=order_id,
        customer_name=customer_name(order),
        items=[LineData(name=i["name"], quantity=i["quantity"], unit_price=to_money(i["unit_price"]),
                        line_total=to_money(i["line_total"])) for i in order["items"]],
        subtotal=to_money(pricing["subtotal"]),
        shipping=to_money(pricing["shipping"]),
        tax=to_money(pricing["tax"]),
        total=to_money(pricing["total"]),
        order_url=order_url(order_id),
    ))
    return order


async def handle_webhook(db, gateway: PaymentGateway, payload: bytes, signature: str) -> dict[str, Any]:
    event = gateway.construct_event(payload, signature)
    event_type = event["type"]
    intent = event["data"]["object"]
    logger.info("stripe_webhook", event_type=event_type, intent_id=intent.get("id"))

    if event_type == "payment_intent.succeeded":
        try:
            order = await confirm_payment(db, gateway, intent["id"])
        except InsufficientStock:
            # already flagged on the order; acknowledging stops Stripe retrying
            return {"event": event_type, "handled": False, "stock_conflict": True}
        return {"event": event_type, "handled": True, "order_id": order["id"], "status": order["status"]}

    if event_type == "payment_intent.payment_failed":
        error = (intent.get("last_payment_error") or {}).get("message")
        await db["order"].update_one(
            {"payment_intent_id": intent["id"]},
            {"$set": {"last_payment_error": error, "updated_at": utcnow()}},
        )
        return {"event": event_type, "handled": True}

    return {"event": event_type, "handled": False}
