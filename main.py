import csv
import io
import os
import re
from contextlib import asynccontextmanager
from typing import Any, List, Optional

import structlog
from bson import ObjectId
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from auth import Customer, form_rate_limit, get_current_customer, get_optional_customer, require_admin
from config import settings
from database import close_db, create_document, get_db, get_document, get_documents, to_object_id, utcnow
from errors import AppError, AuthorizationError, Conflict, NotFound, ProductNotFound
from inventory import adjust_stock, join_waitlist
from logging_config import configure_logging
from orders import cancel_order, get_order_for, list_orders, mark_delivered, mark_shipped, resubmit_artwork, review_artwork
from payments import PaymentGateway, confirm_payment, create_checkout, find_order_by_intent, get_gateway, handle_webhook
from scheduler import create_scheduler
from schemas import (
    ArtworkResubmission,
    ArtworkReview,
    CancelOrder,
    Cart,
    CheckoutRequest,
    ContactMessage,
    ContactStatusUpdate,
    DesignConfigIn,
    DesignConfigUpdate,
    NewsletterRequest,
    OrderStatus,
    PaymentConfirmation,
    Product as ProductSchema,
    ProductUpdate,
    ReviewIn,
    ReviewUpdate,
    ShipOrder,
    StockAdjustment,
    WaitlistJoin,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = create_scheduler()
        scheduler.start()
    logger.info("startup", environment=settings.ENVIRONMENT, scheduler=bool(scheduler))
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    close_db()


app = FastAPI(title="Creative Merch UK API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

PAID_STATUSES = [OrderStatus.PAID.value, OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value]

# Utils

def envelope(data: Any = None, message: str = "", success: bool = True) -> dict[str, Any]:
    return {"success": success, "message": message, "data": jsonable_encoder(data)}


def created(data: Any = None, message: str = "") -> JSONResponse:
    return JSONResponse(status_code=201, content=envelope(data, message))


def pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit if limit else 0}


def product_to_client(doc: dict) -> dict:
    return {
        "id": str(doc.get("_id") or doc.get("id")),
        "name": doc.get("name"),
        "slug": doc.get("slug"),
        "description": doc.get("description"),
        "price": float(doc.get("price", 0)),
        "stock": int(doc.get("stock", 0)),
        "in_stock": int(doc.get("stock", 0)) > 0,
        "category": doc.get("category"),
        "subcategory": doc.get("subcategory"),
        "images": doc.get("images", []),
        "customization": doc.get("customization", {"enabled": False, "options": {}}),
        "featured": bool(doc.get("featured", False)),
        "rating": doc.get("rating", {"average": 0, "count": 0}),
    }


async def find_product(db, product_id: str) -> dict:
    if not ObjectId.is_valid(product_id):
        raise ProductNotFound(product_id)
    doc = await db["product"].find_one({"_id": ObjectId(product_id), "is_active": {"$ne": False}})
    if not doc:
        raise ProductNotFound(product_id)
    return doc


# Error handling

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=envelope(exc.data, exc.message, success=False))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", []) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content=envelope({"errors": jsonable_encoder(errors)}, message, success=False))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    data = None if settings.is_production else {"error": str(exc)}
    return JSONResponse(status_code=500, content=envelope(data, "Internal server error", success=False))


# Health

@app.get("/")
async def root():
    return {"message": "Creative Merch UK Backend Running"}


@app.get("/test")
async def test(db=Depends(get_db)):
    try:
        colls = []
        try:
            colls = await db.list_collection_names()
        except Exception:
            pass
        return {
            "backend": "✅ Running",
            "database": "✅ Available" if db is not None else "❌ Not Available",
            "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
            "database_name": settings.DATABASE_NAME,
            "connection_status": "Connected" if colls else "Not Connected",
            "collections": colls,
        }
    except Exception as e:
        return {"backend": "Error", "error": str(e)}


SEED_PRODUCTS: List[dict] = [
    {"name": "Custom Printed T-Shirt", "slug": "custom-printed-t-shirt", "price": 15.99, "stock": 120,
     "category": "apparel", "subcategory": "t-shirts", "featured": True,
     "customization": {"enabled": True, "options": {"size": ["S", "M", "L", "XL"], "colour": ["Black", "White", "Navy"]}}},
    {"name": "Embroidered Hoodie", "slug": "embroidered-hoodie", "price": 34.99, "stock": 45,
     "category": "apparel", "subcategory": "hoodies", "featured": True,
     "customization": {"enabled": True, "options": {"size": ["S", "M", "L", "XL"], "colour": ["Black", "Grey"]}}},
    {"name": "Personalised Mug", "slug": "personalised-mug", "price": 9.99, "stock": 200,
     "category": "homeware", "subcategory": "mugs",
     "customization": {"enabled": True, "options": {"finish": ["Gloss", "Matte"]}}},
    {"name": "Printed Tote Bag", "slug": "printed-tote-bag", "price": 12.50, "stock": 8,
     "category": "accessories", "subcategory": "bags"},
    {"name": "Custom Cap", "slug": "custom-cap", "price": 14.00, "stock": 0,
     "category": "accessories", "subcategory": "headwear",
     "customization": {"enabled": True, "options": {"colour": ["Black", "Red"]}}},
]


@app.post("/seed")
async def seed(db=Depends(get_db), admin: Customer = Depends(require_admin)):
    if await db["product"].count_documents({}) > 0:
        return envelope({"seeded": False}, "Products already exist")
    for p in SEED_PRODUCTS:
        await create_document(db, "product", ProductSchema(**p).model_dump())
    return envelope({"seeded": True, "count": len(SEED_PRODUCTS)}, "Catalog seeded")


# Products

SORT_FIELDS = {"price", "name", "created_at", "stock"}


def parse_sort(sort: str) -> list[tuple[str, int]]:
    direction = -1 if sort.startswith("-") else 1
    field = sort.lstrip("-")
    if field not in SORT_FIELDS:
        field, direction = "created_at", -1
    return [(field, direction)]


@app.get("/api/products")
async def get_products(
    category: Optional[str] = Query(None),
    subcategory: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    in_stock: bool = Query(False),
    featured: bool = Query(False),
    sort: str = Query("-created_at"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
):
    filt: dict[str, Any] = {"is_active": {"$ne": False}}
    if category:
        filt["category"] = category.lower()
    if subcategory:
        filt["subcategory"] = subcategory
    if search:
        filt["name"] = {"$regex": re.escape(search), "$options": "i"}
    if min_price is not None or max_price is not None:
        filt["price"] = {}
        if min_price is not None:
            filt["price"]["$gte"] = min_price
        if max_price is not None:
            filt["price"]["$lte"] = max_price
    if in_stock:
        filt["stock"] = {"$gt": 0}
    if featured:
        filt["featured"] = True

    total = await db["product"].count_documents(filt)
    docs = await get_documents(db, "product", filt, limit=limit, skip=(page - 1) * limit, sort=parse_sort(sort))
    return envelope({"products": [product_to_client(d) for d in docs], "pagination": pagination(page, limit, total)})


@app.get("/api/products/categories")
async def get_categories(db=Depends(get_db)):
    rows = await db["product"].aggregate([
        {"$match": {"is_active": {"$ne": False}}},
        {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ]).to_list(length=None)
    return envelope({"categories": [{"name": r["_id"], "count": r["count"]} for r in rows]})


@app.get("/api/products/featured")
async def get_featured(limit: int = Query(4, ge=1, le=20), db=Depends(get_db)):
    docs = await get_documents(db, "product", {"featured": True, "is_active": {"$ne": False}, "stock": {"$gt": 0}},
                               limit=limit, sort=[("created_at", -1)])
    return envelope({"products": [product_to_client(d) for d in docs]})


@app.get("/api/products/slug/{slug}")
async def get_product_by_slug(slug: str, db=Depends(get_db)):
    doc = await db["product"].find_one({"slug": slug, "is_active": {"$ne": False}})
    if not doc:
        raise NotFound("Product not found")
    return envelope({"product": product_to_client(doc)})


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, db=Depends(get_db)):
    return envelope({"product": product_to_client(await find_product(db, product_id))})


@app.post("/api/products/{product_id}/waitlist")
async def waitlist_join(product_id: str, payload: WaitlistJoin, db=Depends(get_db)):
    await join_waitlist(db, product_id, payload.email)
    return envelope(None, "We'll email you when it's back in stock")


# Reviews

@app.get("/api/products/{product_id}/reviews")
async def get_reviews(product_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50),
                      db=Depends(get_db)):
    await find_product(db, product_id)
    total = await db["review"].count_documents({"product_id": product_id})
    docs = await get_documents(db, "review", {"product_id": product_id}, limit=limit, skip=(page - 1) * limit,
                               sort=[("created_at", -1)])
    return envelope({"reviews": docs, "pagination": pagination(page, limit, total)})


@app.post("/api/products/{product_id}/reviews")
async def add_review(product_id: str, payload: ReviewIn, db=Depends(get_db),
                     customer: Customer = Depends(get_current_customer)):
    await find_product(db, product_id)
    if await db["review"].find_one({"product_id": product_id, "email": customer.email}):
        raise Conflict("You have already reviewed this product")
    purchased = await db["order"].find_one({
        "email": customer.email,
        "items.product_id": product_id,
        "status": {"$in": PAID_STATUSES},
    })
    if not purchased:
        raise AuthorizationError("You can only review products you have purchased")

    review = await create_document(db, "review", {
        "product_id": product_id,
        "email": customer.email,
        "rating": payload.rating,
        "comment": payload.comment.strip(),
    })
    rating = await refresh_rating(db, product_id)
    return created({"review": review, "rating": rating}, "Review added successfully")


async def refresh_rating(db, product_id: str) -> dict:
    ratings = [r["rating"] async for r in db["review"].find({"product_id": product_id})]
    average = round(sum(ratings) / len(ratings), 2) if ratings else 0
    rating = {"average": average, "count": len(ratings)}
    if ObjectId.is_valid(product_id):
        await db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"rating": rating}})
    return rating


async def find_review(db, product_id: str, review_id: str) -> dict:
    if not ObjectId.is_valid(review_id):
        raise NotFound("Review not found")
    doc = await db["review"].find_one({"_id": ObjectId(review_id), "product_id": product_id})
    if not doc:
        raise NotFound("Review not found")
    return doc


@app.put("/api/products/{product_id}/reviews/{review_id}")
async def update_review(product_id: str, review_id: str, payload: ReviewUpdate, db=Depends(get_db),
                        customer: Customer = Depends(get_current_customer)):
    doc = await find_review(db, product_id, review_id)
    if doc["email"] != customer.email:
        raise AuthorizationError("You can only edit your own reviews")
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "comment" in changes:
        changes["comment"] = changes["comment"].strip()
    await db["review"].update_one({"_id": doc["_id"]}, {"$set": {**changes, "updated_at": utcnow()}})
    rating = await refresh_rating(db, product_id)
    review = await get_document(db, "review", review_id)
    return envelope({"review": review, "rating": rating}, "Review updated successfully")


@app.delete("/api/products/{product_id}/reviews/{review_id}")
async def delete_review(product_id: str, review_id: str, db=Depends(get_db),
                        customer: Customer = Depends(get_current_customer)):
    doc = await find_review(db, product_id, review_id)
    if doc["email"] != customer.email and not customer.is_admin:
        raise AuthorizationError("You can only delete your own reviews")
    await db["review"].delete_one({"_id": doc["_id"]})
    rating = await refresh_rating(db, product_id)
    return envelope({"rating": rating}, "Review deleted successfully")


@app.get("/api/reviews/mine")
async def my_reviews(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50), db=Depends(get_db),
                     customer: Customer = Depends(get_current_customer)):
    filt = {"email": customer.email}
    total = await db["review"].count_documents(filt)
    docs = await get_documents(db, "review", filt, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    return envelope({"reviews": docs, "pagination": pagination(page, limit, total)})


# Carts (abandoned-cart tracking)

@app.put("/api/carts/{cart_id}")
async def save_cart(cart_id: str, payload: Cart, db=Depends(get_db)):
    now = utcnow()
    await db["cart"].update_one(
        {"_id": cart_id},
        {
            "$set": {
                "email": payload.email.lower() if payload.email else None,
                "items": [i.model_dump() for i in payload.items],
                "updated_at": now,
            },
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
    return envelope({"cart_id": cart_id}, "Cart saved")


# Checkout / payments

@app.post("/api/checkout/payment-intent")
async def checkout(payload: CheckoutRequest, db=Depends(get_db), gateway: PaymentGateway = Depends(get_gateway)):
    result = await create_checkout(db, gateway, payload)
    return created(result, "Payment intent created")


@app.post("/api/payments/confirm")
async def payments_confirm(payload: PaymentConfirmation, db=Depends(get_db),
                           gateway: PaymentGateway = Depends(get_gateway)):
    if payload.order_id:
        owner = await find_order_by_intent(db, payload.payment_intent_id)
        if owner["id"] != payload.order_id:
            raise AuthorizationError("Payment does not belong to this order")
    order = await confirm_payment(db, gateway, payload.payment_intent_id)
    return envelope({"order": order}, "Payment confirmed")


@app.post("/api/payments/webhook")
async def payments_webhook(request: Request, stripe_signature: str = Header("", alias="Stripe-Signature"),
                           db=Depends(get_db), gateway: PaymentGateway = Depends(get_gateway)):
    payload = await request.body()
    result = await handle_webhook(db, gateway, payload, stripe_signature)
    return envelope(result, "Webhook received")


# Orders (customer)

@app.get("/api/orders")
async def my_orders(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100), db=Depends(get_db),
                    customer: Customer = Depends(get_current_customer)):
    return envelope({"orders": await list_orders(db, email=customer.email, page=page, limit=limit)})


@app.get("/api/orders/{order_id}")
async def order_detail(order_id: str, db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    order = await get_order_for(db, order_id, customer.email, customer.is_admin)
    return envelope({"order": order})


@app.post("/api/orders/{order_id}/artwork")
async def order_artwork_resubmit(order_id: str, payload: ArtworkResubmission, db=Depends(get_db),
                                 customer: Customer = Depends(get_current_customer)):
    order = await resubmit_artwork(db, order_id, customer.email, payload.artwork_url)
    return envelope({"order": order}, "Artwork resubmitted for review")


# Wishlist

@app.get("/api/wishlist")
async def get_wishlist(db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    doc = await db["wishlist"].find_one({"_id": customer.email}) or {}
    ids = [ObjectId(pid) for pid in doc.get("product_ids", []) if ObjectId.is_valid(pid)]
    products = [product_to_client(p) async for p in db["product"].find({"_id": {"$in": ids}})] if ids else []
    return envelope({"products": products, "count": len(products)})


@app.post("/api/wishlist/{product_id}")
async def add_to_wishlist(product_id: str, db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    await find_product(db, product_id)
    if await db["wishlist"].find_one({"_id": customer.email, "product_ids": product_id}):
        raise Conflict("Product already in wishlist")
    await db["wishlist"].update_one(
        {"_id": customer.email},
        {"$addToSet": {"product_ids": product_id}, "$set": {"updated_at": utcnow()}},
        upsert=True,
    )
    return created({"product_id": product_id}, "Added to wishlist")


@app.delete("/api/wishlist/{product_id}")
async def remove_from_wishlist(product_id: str, db=Depends(get_db),
                               customer: Customer = Depends(get_current_customer)):
    result = await db["wishlist"].update_one({"_id": customer.email}, {"$pull": {"product_ids": product_id}})
    if result.modified_count == 0:
        raise NotFound("Product not in wishlist")
    return envelope({"product_id": product_id}, "Removed from wishlist")


@app.post("/api/wishlist/move-to-cart/{product_id}")
async def move_to_cart(product_id: str, db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    # the cart lives client side; hand back the product for it to add
    if not await db["wishlist"].find_one({"_id": customer.email, "product_ids": product_id}):
        raise NotFound("Product not in wishlist")
    product = product_to_client(await find_product(db, product_id))
    await db["wishlist"].update_one({"_id": customer.email}, {"$pull": {"product_ids": product_id}})
    doc = await db["wishlist"].find_one({"_id": customer.email}) or {}
    return envelope({"product": product, "wishlist_count": len(doc.get("product_ids", []))},
                    "Moved to cart")


@app.delete("/api/wishlist")
async def clear_wishlist(db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    await db["wishlist"].delete_one({"_id": customer.email})
    return envelope(None, "Wishlist cleared")


@app.get("/api/wishlist/check/{product_id}")
async def check_wishlist(product_id: str, db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    doc = await db["wishlist"].find_one({"_id": customer.email, "product_ids": product_id})
    return envelope({"in_wishlist": doc is not None})


# Newsletter / contact

@app.post("/api/newsletter/subscribe", dependencies=[Depends(form_rate_limit)])
async def newsletter_subscribe(payload: NewsletterRequest, db=Depends(get_db)):
    email = payload.email.lower()
    existing = await db["newsletter"].find_one({"email": email})
    if existing and existing.get("subscribed"):
        return envelope(None, "You are already subscribed to our newsletter")
    if existing:
        await db["newsletter"].update_one({"_id": existing["_id"]}, {
            "$set": {"subscribed": True, "subscribed_at": utcnow()},
            "$unset": {"unsubscribed_at": ""},
        })
        return envelope(None, "Welcome back! You have been re-subscribed")
    await create_document(db, "newsletter", {"email": email, "subscribed": True, "subscribed_at": utcnow()})
    return created(None, "Thank you for subscribing to our newsletter!")


@app.post("/api/newsletter/unsubscribe", dependencies=[Depends(form_rate_limit)])
async def newsletter_unsubscribe(payload: NewsletterRequest, db=Depends(get_db)):
    email = payload.email.lower()
    result = await db["newsletter"].update_one(
        {"email": email}, {"$set": {"subscribed": False, "unsubscribed_at": utcnow()}}
    )
    if result.matched_count == 0:
        raise NotFound("Email not found in our newsletter list")
    return envelope(None, "You have been unsubscribed from our newsletter")


@app.post("/api/contact", dependencies=[Depends(form_rate_limit)])
async def contact_submit(payload: ContactMessage, db=Depends(get_db)):
    doc = await create_document(db, "contact", {**payload.model_dump(), "email": payload.email.lower(), "status": "pending"})
    logger.info("contact_received", contact_id=doc.get("id"))
    return created({"id": doc.get("id")}, "Message sent successfully. We'll get back to you within 24 hours.")


# Admin

@app.post("/api/admin/products")
async def admin_create_product(payload: ProductSchema, db=Depends(get_db), admin: Customer = Depends(require_admin)):
    doc = await create_document(db, "product", payload.model_dump())
    return created({"product": product_to_client(doc)}, "Product created")


@app.put("/api/admin/products/{product_id}")
async def admin_update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db),
                               admin: Customer = Depends(require_admin)):
    changes = payload.model_dump(exclude_unset=True)
    oid = to_object_id(product_id, "Product")
    result = await db["product"].update_one({"_id": oid}, {"$set": {**changes, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise ProductNotFound(product_id)
    doc = await get_document(db, "product", product_id)
    return envelope({"product": product_to_client(doc)}, "Product updated")


@app.delete("/api/admin/products/{product_id}")
async def admin_delete_product(product_id: str, db=Depends(get_db), admin: Customer = Depends(require_admin)):
    # soft delete; orders and reviews keep pointing at it
    oid = to_object_id(product_id, "Product")
    result = await db["product"].update_one({"_id": oid}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise ProductNotFound(product_id)
    logger.info("product_deactivated", product_id=product_id, admin=admin.email)
    return envelope({"product_id": product_id}, "Product deleted")


@app.delete("/api/admin/products/{product_id}/reviews/{review_id}")
async def admin_delete_review(product_id: str, review_id: str, db=Depends(get_db),
                              admin: Customer = Depends(require_admin)):
    doc = await find_review(db, product_id, review_id)
    await db["review"].delete_one({"_id": doc["_id"]})
    rating = await refresh_rating(db, product_id)
    logger.info("review_removed", review_id=review_id, product_id=product_id, admin=admin.email)
    return envelope({"rating": rating}, "Review deleted by admin")


@app.patch("/api/admin/products/{product_id}/stock")
async def admin_update_stock(product_id: str, payload: StockAdjustment, db=Depends(get_db),
                             admin: Customer = Depends(require_admin)):
    change = await adjust_stock(db, product_id, payload.operation, payload.quantity)
    return envelope({"product": {"id": product_id, "name": change.name, "stock": change.after}},
                    "Stock updated successfully")


@app.get("/api/admin/orders")
async def admin_orders(status: Optional[OrderStatus] = Query(None), email: Optional[str] = Query(None),
                       page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                       db=Depends(get_db), admin: Customer = Depends(require_admin)):
    orders = await list_orders(db, email=email, status=status.value if status else None, page=page, limit=limit)
    return envelope({"orders": orders})


@app.post("/api/admin/orders/{order_id}/ship")
async def admin_ship(order_id: str, payload: ShipOrder, db=Depends(get_db), admin: Customer = Depends(require_admin)):
    order = await mark_shipped(db, order_id, payload.tracking_number, payload.carrier)
    return envelope({"order": order}, "Order marked as shipped")


@app.post("/api/admin/orders/{order_id}/deliver")
async def admin_deliver(order_id: str, db=Depends(get_db), admin: Customer = Depends(require_admin)):
    order = await mark_delivered(db, order_id)
    return envelope({"order": order}, "Order marked as delivered")


@app.post("/api/admin/orders/{order_id}/cancel")
async def admin_cancel(order_id: str, payload: CancelOrder, db=Depends(get_db),
                       gateway: PaymentGateway = Depends(get_gateway),
                       admin: Customer = Depends(require_admin)):
    order = await cancel_order(db, order_id, payload.reason, gateway=gateway)
    return envelope({"order": order}, "Order cancelled")


@app.post("/api/admin/orders/{order_id}/artwork")
async def admin_artwork_review(order_id: str, payload: ArtworkReview, db=Depends(get_db),
                               gateway: PaymentGateway = Depends(get_gateway),
                               admin: Customer = Depends(require_admin)):
    order = await review_artwork(db, gateway, order_id, payload.decision, payload.notes, payload.mockup_url)
    return envelope({"order": order}, "Artwork review recorded")


@app.get("/api/admin/newsletter")
async def admin_newsletter(subscribed: Optional[bool] = Query(None), page: int = Query(1, ge=1),
                           limit: int = Query(50, ge=1, le=200), db=Depends(get_db),
                           admin: Customer = Depends(require_admin)):
    filt = {} if subscribed is None else {"subscribed": subscribed}
    total = await db["newsletter"].count_documents(filt)
    docs = await get_documents(db, "newsletter", filt, limit=limit, skip=(page - 1) * limit,
                               sort=[("created_at", -1)])
    return envelope({"subscribers": docs, "pagination": pagination(page, limit, total)})


@app.get("/api/admin/newsletter/export")
async def admin_newsletter_export(db=Depends(get_db), admin: Customer = Depends(require_admin)):
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(["Email", "Subscribed At"])
    async for doc in db["newsletter"].find({"subscribed": True}).sort([("subscribed_at", -1)]):
        subscribed_at = doc.get("subscribed_at")
        writer.writerow([doc["email"], subscribed_at.isoformat() if subscribed_at else ""])
    return Response(
        content=out.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=newsletter-subscribers.csv"},
    )


@app.get("/api/admin/contact")
async def admin_contact(status: Optional[str] = Query(None), page: int = Query(1, ge=1),
                        limit: int = Query(20, ge=1, le=100), db=Depends(get_db),
                        admin: Customer = Depends(require_admin)):
    filt = {"status": status} if status else {}
    total = await db["contact"].count_documents(filt)
    docs = await get_documents(db, "contact", filt, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    return envelope({"messages": docs, "pagination": pagination(page, limit, total)})


@app.patch("/api/admin/contact/{contact_id}/status")
async def admin_contact_status(contact_id: str, payload: ContactStatusUpdate, db=Depends(get_db),
                               admin: Customer = Depends(require_admin)):
    now = utcnow()
    changes: dict[str, Any] = {"status": payload.status, "updated_at": now}
    if payload.notes is not None:
        changes["notes"] = payload.notes
    if payload.status in ("resolved", "closed"):
        changes["replied"] = True
        changes["replied_at"] = now
    result = await db["contact"].update_one({"_id": to_object_id(contact_id, "Message")}, {"$set": changes})
    if result.matched_count == 0:
        raise NotFound("Message not found")
    return envelope({"message": await get_document(db, "contact", contact_id)}, "Status updated successfully")


# Saved designs

async def find_design(db, design_id: str) -> dict:
    doc = await get_document(db, "design", design_id)
    if not doc:
        raise NotFound("Design configuration not found")
    return doc


def require_design_owner(design: dict, customer: Customer, action: str) -> None:
    if not design.get("user") or design["user"] != customer.email:
        raise AuthorizationError(f"Not authorized to {action} this design")


@app.post("/api/designs/save")
async def save_design(payload: DesignConfigIn, db=Depends(get_db),
                      customer: Optional[Customer] = Depends(get_optional_customer)):
    doc = await create_document(db, "design", {
        **payload.model_dump(),
        "user": customer.email if customer else None,
        "is_saved": True,
    })
    return created({"id": doc["id"], "name": doc["name"], "saved_at": doc["created_at"]},
                   "Design configuration saved")


@app.get("/api/designs/mine")
async def my_designs(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100), db=Depends(get_db),
                     customer: Customer = Depends(get_current_customer)):
    filt = {"user": customer.email, "is_saved": True}
    total = await db["design"].count_documents(filt)
    docs = await get_documents(db, "design", filt, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    return envelope({"designs": docs, "pagination": pagination(page, limit, total)})


@app.get("/api/designs/product/{product_id}")
async def product_designs(product_id: str, db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    docs = await get_documents(db, "design", {"user": customer.email, "product_id": product_id, "is_saved": True},
                               sort=[("created_at", -1)])
    return envelope({"designs": docs, "count": len(docs)})


@app.get("/api/designs/{design_id}")
async def get_design(design_id: str, db=Depends(get_db),
                     customer: Optional[Customer] = Depends(get_optional_customer)):
    design = await find_design(db, design_id)
    if design.get("user") and (customer is None or customer.email != design["user"]):
        raise AuthorizationError("Not authorized to view this design")
    return envelope({"design": design})


@app.put("/api/designs/{design_id}")
async def update_design(design_id: str, payload: DesignConfigUpdate, db=Depends(get_db),
                        customer: Customer = Depends(get_current_customer)):
    design = await find_design(db, design_id)
    require_design_owner(design, customer, "update")
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    await db["design"].update_one({"_id": ObjectId(design_id)}, {"$set": {**changes, "updated_at": utcnow()}})
    return envelope({"design": await find_design(db, design_id)}, "Design updated successfully")


@app.delete("/api/designs/{design_id}")
async def delete_design(design_id: str, db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    design = await find_design(db, design_id)
    require_design_owner(design, customer, "delete")
    await db["design"].delete_one({"_id": ObjectId(design_id)})
    return envelope(None, "Design deleted successfully")


@app.post("/api/designs/{design_id}/duplicate")
async def duplicate_design(design_id: str, db=Depends(get_db), customer: Customer = Depends(get_current_customer)):
    design = await find_design(db, design_id)
    require_design_owner(design, customer, "duplicate")
    copy = await create_document(db, "design", {
        "user": customer.email,
        "product_id": design.get("product_id"),
        "name": f"{design['name']} (Copy)",
        "configuration": design["configuration"],
        "screenshot": design.get("screenshot"),
        "is_saved": True,
    })
    return created({"design": copy}, "Design duplicated successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
