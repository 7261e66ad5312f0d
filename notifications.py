"""Notification templates rendered into the mail queue collection."""

from __future__ import annotations
import re
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Type

import structlog
from pydantic import BaseModel

from config import settings
from database import utcnow

logger = structlog.get_logger(__name__)


class Template(str, Enum):
    ORDER_CONFIRMATION = "order-confirmation"
    SHIPPING_NOTIFICATION = "shipping-notification"
    LOW_STOCK_ALERT = "low-stock-alert"
    RESTOCK_NOTIFICATION = "restock-notification"
    ABANDONED_CART = "abandoned-cart"
    ABANDONED_CART_DISCOUNT = "abandoned-cart-discount"
    REVIEW_REQUEST = "review-request"
    CUSTOM_ARTWORK_MOCKUP = "custom-artwork-mockup"
    CUSTOM_ARTWORK_CHANGES_REQUESTED = "custom-artwork-changes-requested"
    CUSTOM_ARTWORK_REJECTED = "custom-artwork-rejected"


# Template data

class LineData(BaseModel):
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderConfirmationData(BaseModel):
    order_id: str
    customer_name: str
    items: List[LineData]
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    order_url: str


class ShippingNotificationData(BaseModel):
    order_id: str
    customer_name: str
    tracking_number: str
    carrier: str = "Royal Mail"


class LowStockAlertData(BaseModel):
    product_id: str
    product_name: str
    stock: int
    threshold: int


class RestockNotificationData(BaseModel):
    product_id: str
    product_name: str
    stock: int
    product_url: str


class CartLineData(BaseModel):
    name: str
    quantity: int


class AbandonedCartData(BaseModel):
    cart_id: str
    items: List[CartLineData]
    cart_url: str


class AbandonedCartDiscountData(BaseModel):
    cart_id: str
    items: List[CartLineData]
    cart_url: str
    discount_code: str


class ReviewRequestData(BaseModel):
    order_id: str
    customer_name: str
    product_id: str
    product_name: str
    review_url: str


class ArtworkReviewData(BaseModel):
    order_id: str
    customer_name: str
    notes: str = ""
    mockup_url: str = ""


# (subject, body) pairs. Bodies are plain text; HTML layout belongs to the mail extension.
TEMPLATES: dict[Template, tuple[Type[BaseModel], str, str]] = {
    Template.ORDER_CONFIRMATION: (
        OrderConfirmationData,
        "Order Confirmation - {{order_id}}",
        "Hi {{customer_name}},\n\n"
        "Thanks for your order! We'll email you again when it ships.\n\n"
        "{{#each items}}{{quantity}} x {{name}} @ £{{unit_price}} = £{{line_total}}\n{{/each}}\n"
        "Subtotal: £{{subtotal}}\nShipping: £{{shipping}}\nTax (VAT): £{{tax}}\nTotal: £{{total}}\n\n"
        "View your order: {{order_url}}\n",
    ),
    Template.SHIPPING_NOTIFICATION: (
        ShippingNotificationData,
        "Your order {{order_id}} has shipped",
        "Hi {{customer_name}},\n\nGood news, your order is on its way with {{carrier}}.\n"
        "Tracking number: {{tracking_number}}\n",
    ),
    Template.LOW_STOCK_ALERT: (
        LowStockAlertData,
        "Low stock: {{product_name}}",
        "{{product_name}} ({{product_id}}) is down to {{stock}} units, below the threshold of {{threshold}}.\n",
    ),
    Template.RESTOCK_NOTIFICATION: (
        RestockNotificationData,
        "{{product_name}} is back in stock",
        "Good news! {{product_name}} is back in stock.\n\nGrab it before it goes again: {{product_url}}\n",
    ),
    Template.ABANDONED_CART: (
        AbandonedCartData,
        "You left something in your cart",
        "Still thinking it over? Your cart is saved:\n\n"
        "{{#each items}}{{quantity}} x {{name}}\n{{/each}}\nPick up where you left off: {{cart_url}}\n",
    ),
    Template.ABANDONED_CART_DISCOUNT: (
        AbandonedCartDiscountData,
        "Here's 10% off the items in your cart",
        "Your cart is still waiting:\n\n"
        "{{#each items}}{{quantity}} x {{name}}\n{{/each}}\n"
        "Use code {{discount_code}} at checkout: {{cart_url}}\n",
    ),
    Template.REVIEW_REQUEST: (
        ReviewRequestData,
        "How was your {{product_name}}?",
        "Hi {{customer_name}},\n\nWe hope you're enjoying your {{product_name}}. "
        "Would you leave a quick review?\n\n{{review_url}}\n",
    ),
    Template.CUSTOM_ARTWORK_MOCKUP: (
        ArtworkReviewData,
        "Your mockup for order {{order_id}} is ready",
        "Hi {{customer_name}},\n\nOur designers approved your artwork. Here's your mockup: {{mockup_url}}\n\n"
        "Notes from the designer:\n{{notes}}\n",
    ),
    Template.CUSTOM_ARTWORK_CHANGES_REQUESTED: (
        ArtworkReviewData,
        "Changes needed for your artwork on order {{order_id}}",
        "Hi {{customer_name}},\n\nOur designers need a few changes before we can print your artwork:\n"
        "{{notes}}\n\nPlease upload a revised file from your order page.\n",
    ),
    Template.CUSTOM_ARTWORK_REJECTED: (
        ArtworkReviewData,
        "We can't print the artwork for order {{order_id}}",
        "Hi {{customer_name}},\n\nUnfortunately we can't print the artwork you sent, so your order "
        "has been cancelled and any payment refunded.\n\nReason:\n{{notes}}\n",
    ),
}

_EACH = re.compile(r"\{\{#each ([\w.]+)\}\}(.*?)\{\{/each\}\}", re.DOTALL)
_FIELD = re.compile(r"\{\{([\w.]+)\}\}")
_MISSING = object()


def _lookup(context: dict[str, Any], path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _format(value: Any) -> str:
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _substitute(text: str, context: dict[str, Any]) -> str:
    def replace(match: re.Match) -> str:
        value = _lookup(context, match.group(1))
        if value is _MISSING or isinstance(value, (dict, list)):
            return match.group(0)
        return _format(value)

    return _FIELD.sub(replace, text)


def render_text(text: str, context: dict[str, Any], max_repeat: Optional[int] = None) -> str:
    limit = settings.MAX_TEMPLATE_REPEAT if max_repeat is None else max_repeat

    def expand(match: re.Match) -> str:
        entries = _lookup(context, match.group(1))
        if not isinstance(entries, list):
            return match.group(0)
        parts = []
        for entry in entries[:limit]:
            scope = {**context, **entry} if isinstance(entry, dict) else {**context, "this": entry}
            parts.append(_substitute(match.group(2), scope))
        return "".join(parts)

    # expanded blocks are never scanned again, so stored values cannot inject placeholders
    parts = []
    pos = 0
    for match in _EACH.finditer(text):
        parts.append(_substitute(text[pos:match.start()], context))
        parts.append(expand(match))
        pos = match.end()
    parts.append(_substitute(text[pos:], context))
    return "".join(parts)


def render(template: Template, data: BaseModel) -> tuple[str, str]:
    model, subject, body = TEMPLATES[template]
    if not isinstance(data, model):
        raise TypeError(f"{template.value} expects {model.__name__}, got {type(data).__name__}")
    context = data.model_dump()
    return render_text(subject, context), render_text(body, context)


async def dispatch(db, template: Template, recipient: str, data: BaseModel) -> Optional[str]:
    """Queue a rendered message for ``recipient``; returns the mail id or None on failure."""
    try:
        subject, text = render(template, data)
        result = await db[settings.MAIL_COLLECTION].insert_one({
            "to": recipient,
            "message": {"subject": subject, "text": text},
            "template": {"name": template.value, "data": data.model_dump(mode="json")},
            "created_at": utcnow(),
        })
    except Exception:
        logger.exception("notification_dispatch_failed", template=template.value, recipient=recipient)
        return None
    logger.info("notification_queued", template=template.value, recipient=recipient)
    return str(result.inserted_id)
