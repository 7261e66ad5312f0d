# Sweeps flag a document only after its mail is queued (at least once delivery).

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import settings
from database import get_db, utcnow
from notifications import (
    AbandonedCartData,
    AbandonedCartDiscountData,
    CartLineData,
    ReviewRequestData,
    Template,
    dispatch,
)
from orders import customer_name
from schemas import OrderStatus

logger = structlog.get_logger(__name__)


def _cart_lines(cart: dict) -> list[CartLineData]:
    return [CartLineData(name=i.get("name", "Item"), quantity=int(i.get("quantity", 1)))
            for i in cart.get("items", [])]


def _cart_url(cart_id: str) -> str:
    return f"{settings.FRONTEND_URL}/cart.html?cart={cart_id}"


async def sweep_abandoned_carts(db, now: Optional[datetime] = None) -> dict[str, int]:
    now = now or utcnow()
    reminded = followed_up = 0

    idle_cutoff = now - timedelta(minutes=settings.ABANDONED_CART_MINUTES)
    cursor = db["cart"].find({
        "email": {"$nin": [None, ""]},
        "items": {"$ne": []},
        "converted": {"$ne": True},
        "reminder_sent": {"$ne": True},
        "updated_at": {"$lte": idle_cutoff},
    })
    async for cart in cursor:
        cart_id = str(cart["_id"])
        try:
            queued = await dispatch(db, Template.ABANDONED_CART, cart["email"], AbandonedCartData(
                cart_id=cart_id, items=_cart_lines(cart), cart_url=_cart_url(cart_id),
            ))
            if queued:
                await db["cart"].update_one({"_id": cart["_id"]},
                                            {"$set": {"reminder_sent": True, "reminder_sent_at": now}})
                reminded += 1
        except Exception:
            logger.exception("abandoned_cart_reminder_failed", cart_id=cart_id)

    followup_cutoff = now - timedelta(hours=settings.ABANDONED_CART_FOLLOWUP_HOURS)
    cursor = db["cart"].find({
        "converted": {"$ne": True},
        "reminder_sent": True,
        "discount_sent": {"$ne": True},
        "reminder_sent_at": {"$lte": followup_cutoff},
    })
    async for cart in cursor:
        cart_id = str(cart["_id"])
        try:
            queued = await dispatch(db, Template.ABANDONED_CART_DISCOUNT, cart["email"], AbandonedCartDiscountData(
                cart_id=cart_id,
                items=_cart_lines(cart),
                cart_url=_cart_url(cart_id),
                discount_code=settings.ABANDONED_CART_DISCOUNT_CODE,
            ))
            if queued:
                await db["cart"].update_one({"_id": cart["_id"]},
                                            {"$set": {"discount_sent": True, "discount_sent_at": now}})
                followed_up += 1
        except Exception:
            logger.exception("abandoned_cart_followup_failed", cart_id=cart_id)

    logger.info("abandoned_cart_sweep", reminded=reminded, followed_up=followed_up)
    return {"reminded": reminded, "followed_up": followed_up}


async def sweep_review_requests(db, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.REVIEW_REQUEST_DELAY_DAYS)
    requested = 0

    cursor = db["order"].find({
        "status": OrderStatus.DELIVERED.value,
        "delivered_at": {"$lte": cutoff},
        "review_requested": {"$ne": True},
    })
    async for order in cursor:
        order_id = str(order["_id"])
        try:
            items = order.get("items") or []
            if not items:
                # nothing to review; flag it so later sweeps skip it
                await db["order"].update_one({"_id": order["_id"]}, {"$set": {
                    "review_requested": True, "review_skipped": True, "review_requested_at": now,
                }})
                continue
            first = items[0]
            queued = await dispatch(db, Template.REVIEW_REQUEST, order["email"], ReviewRequestData(
                order_id=order_id,
                customer_name=customer_name(order),
                product_id=first["product_id"],
                product_name=first.get("name", "order"),
                review_url=f"{settings.FRONTEND_URL}/product.html?id={first['product_id']}#reviews",
            ))
            if queued:
                await db["order"].update_one({"_id": order["_id"]},
                                             {"$set": {"review_requested": True, "review_requested_at": now}})
                requested += 1
        except Exception:
            logger.exception("review_request_failed", order_id=order_id)

    logger.info("review_request_sweep", requested=requested)
    return requested


async def run_abandoned_cart_sweep() -> None:
    await sweep_abandoned_carts(await get_db())


async def run_review_request_sweep() -> None:
    await sweep_review_requests(await get_db())


def create_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(run_abandoned_cart_sweep, "interval", minutes=settings.ABANDONED_CART_MINUTES,
                      id="abandoned_cart_sweep", max_instances=1, coalesce=True)
    scheduler.add_job(run_review_request_sweep, "cron", hour=settings.REVIEW_SWEEP_HOUR,
                      id="review_request_sweep", max_instances=1, coalesce=True)
    return scheduler
