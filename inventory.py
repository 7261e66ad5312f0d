# All stock counter changes go through here.

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional

import structlog
from bson import ObjectId
from pymongo import ReturnDocument

from config import settings
from database import to_object_id, transaction, utcnow
from errors import InsufficientStock, ProductNotFound, ValidationError
from notifications import LowStockAlertData, RestockNotificationData, Template, dispatch

logger = structlog.get_logger(__name__)


@dataclass
class StockChange:
    product_id: str
    name: str
    before: int
    after: int

    @property
    def crossed_low_stock(self) -> bool:
        threshold = settings.LOW_STOCK_THRESHOLD
        return self.before >= threshold > self.after

    @property
    def restocked(self) -> bool:
        return self.before == 0 and self.after > 0


def _merge(items: Iterable[tuple[str, int]]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for product_id, quantity in items:
        if not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive whole number")
        merged[product_id] = merged.get(product_id, 0) + quantity
    if not merged:
        raise ValidationError("No items given")
    return merged


async def _load(db, merged: dict[str, int]) -> dict[str, dict]:
    products = {}
    for product_id in merged:
        if not ObjectId.is_valid(product_id):
            raise ProductNotFound(product_id)
        doc = await db["product"].find_one({"_id": ObjectId(product_id)})
        if not doc:
            raise ProductNotFound(product_id)
        products[product_id] = doc
    return products


async def _log(db, change: StockChange, reason: str, reference: Optional[str]) -> None:
    await db["inventory_log"].insert_one({
        "product_id": change.product_id,
        "change": change.after - change.before,
        "stock_after": change.after,
        "reason": reason,
        "reference": reference,
        "created_at": utcnow(),
    })


async def decrement_stock(db, items: Iterable[tuple[str, int]], reason: str = "order",
                          reference: Optional[str] = None) -> list[StockChange]:
    merged = _merge(items)
    products = await _load(db, merged)
    for product_id, quantity in merged.items():
        available = int(products[product_id].get("stock", 0))
        if available < quantity:
            raise InsufficientStock(product_id, available, quantity, products[product_id].get("name"))

    changes: list[StockChange] = []
    async with transaction() as session:
        for product_id, quantity in merged.items():
            before = await db["product"].find_one_and_update(
                {"_id": ObjectId(product_id), "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.BEFORE,
                session=session,
            )
            if before is None:
                await _revert(db, changes, session)
                current = await db["product"].find_one({"_id": ObjectId(product_id)}, session=session)
                available = int(current.get("stock", 0)) if current else 0
                raise InsufficientStock(product_id, available, quantity, products[product_id].get("name"))
            changes.append(StockChange(product_id, before.get("name", ""), before["stock"],
                                       before["stock"] - quantity))

    for change in changes:
        await _log(db, change, reason, reference)
    logger.info("stock_decremented", reason=reason, reference=reference,
                products={c.product_id: c.after for c in changes})
    await _notify(db, changes)
    return changes


async def _revert(db, applied: list[StockChange], session) -> None:
    for change in applied:
        await db["product"].update_one(
            {"_id": ObjectId(change.product_id)},
            {"$inc": {"stock": change.before - change.after}},
            session=session,
        )
    if applied:
        logger.warning("stock_decrement_reverted", products=[c.product_id for c in applied])


async def increment_stock(db, items: Iterable[tuple[str, int]], reason: str = "restock",
                          reference: Optional[str] = None) -> list[StockChange]:
    merged = _merge(items)
    await _load(db, merged)

    changes: list[StockChange] = []
    async with transaction() as session:
        for product_id, quantity in merged.items():
            before = await db["product"].find_one_and_update(
                {"_id": ObjectId(product_id)},
                {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.BEFORE,
                session=session,
            )
            if before is None:
                raise ProductNotFound(product_id)
            changes.append(StockChange(product_id, before.get("name", ""), before["stock"],
                                       before["stock"] + quantity))

    for change in changes:
        await _log(db, change, reason, reference)
    logger.info("stock_incremented", reason=reason, reference=reference,
                products={c.product_id: c.after for c in changes})
    await _notify(db, changes)
    return changes


async def set_stock(db, product_id: str, quantity: int, reason: str = "admin_set") -> StockChange:
    if quantity < 0:
        raise ValidationError("Stock cannot be negative")
    oid = to_object_id(product_id, "Product")
    before = await db["product"].find_one_and_update(
        {"_id": oid},
        {"$set": {"stock": quantity, "updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        raise ProductNotFound(product_id)
    change = StockChange(product_id, before.get("name", ""), int(before.get("stock", 0)), quantity)
    await _log(db, change, reason, None)
    logger.info("stock_set", product_id=product_id, before=change.before, after=change.after)
    await _notify(db, [change])
    return change


async def adjust_stock(db, product_id: str, operation: str, quantity: int) -> StockChange:
    if operation == "set":
        return await set_stock(db, product_id, quantity)
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    if operation == "add":
        changes = await increment_stock(db, [(product_id, quantity)], reason="admin_add")
    elif operation == "subtract":
        changes = await decrement_stock(db, [(product_id, quantity)], reason="admin_subtract")
    else:
        raise ValidationError(f"Unknown stock operation: {operation}")
    return changes[0]


# Alerts

async def _notify(db, changes: list[StockChange]) -> None:
    for change in changes:
        if change.crossed_low_stock:
            logger.warning("low_stock", product_id=change.product_id, stock=change.after)
            await dispatch(db, Template.LOW_STOCK_ALERT, settings.ADMIN_EMAIL, LowStockAlertData(
                product_id=change.product_id,
                product_name=change.name,
                stock=change.after,
                threshold=settings.LOW_STOCK_THRESHOLD,
            ))
        if change.restocked:
            await notify_restock(db, change)


async def notify_restock(db, change: StockChange) -> int:
    emails = await drain_waitlist(db, change.product_id)
    data = RestockNotificationData(
        product_id=change.product_id,
        product_name=change.name,
        stock=change.after,
        product_url=f"{settings.FRONTEND_URL}/product.html?id={change.product_id}",
    )
    for email in emails:
        await dispatch(db, Template.RESTOCK_NOTIFICATION, email, data)
    logger.info("restock_notified", product_id=change.product_id, subscribers=len(emails))
    return len(emails)


# Waitlist

async def join_waitlist(db, product_id: str, email: str) -> None:
    oid = to_object_id(product_id, "Product")
    if not await db["product"].find_one({"_id": oid}):
        raise ProductNotFound(product_id)
    await db["waitlist"].update_one(
        {"product_id": product_id},
        {"$addToSet": {"emails": email.lower()}, "$set": {"updated_at": utcnow()}},
        upsert=True,
    )


async def drain_waitlist(db, product_id: str) -> list[str]:
    doc = await db["waitlist"].find_one_and_delete({"product_id": product_id})
    if not doc:
        return []
    return list(doc.get("emails", []))
