import json
from datetime import datetime
from typing import Any, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import create_access_token, form_rate_limit
from database import get_db
from errors import PaymentGatewayError, PaymentVerificationFailed
from main import app
from payments import get_gateway


# mongomock is synchronous; these wrappers give it the awaitable surface motor has.

class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, n):
        self._cursor = self._cursor.skip(n)
        return self

    def limit(self, n):
        self._cursor = self._cursor.limit(n)
        return self

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in list(self._cursor):
            yield doc

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        kwargs.pop("session", None)
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline, **kwargs):
        kwargs.pop("session", None)
        return AsyncCursor(self._collection.aggregate(pipeline, **kwargs))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            kwargs.pop("session", None)
            return method(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, database):
        self._database = database
        self.name = database.name

    def __getitem__(self, name):
        return AsyncCollection(self._database[name])

    async def list_collection_names(self):
        return self._database.list_collection_names()


class FakeGateway:
    def __init__(self):
        self.intents: dict[str, dict[str, Any]] = {}
        self.refunds: list[str] = []
        self.cancelled: list[str] = []
        self.fail_refunds = False

    async def create_intent(self, amount, currency, metadata, idempotency_key=None):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {"id": intent_id, "status": "requires_payment_method",
                                   "amount": amount, "currency": currency, "metadata": metadata}
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def succeed(self, intent_id, amount: Optional[int] = None):
        self.intents[intent_id]["status"] = "succeeded"
        if amount is not None:
            self.intents[intent_id]["amount"] = amount

    async def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise PaymentVerificationFailed("Could not verify the payment with the provider")
        return dict(self.intents[intent_id])

    async def refund(self, intent_id):
        if self.fail_refunds:
            raise PaymentGatewayError("Refund failed")
        self.refunds.append(intent_id)
        return f"re_{intent_id}"

    async def cancel_intent(self, intent_id):
        if self.intents.get(intent_id, {}).get("status") == "succeeded":
            raise PaymentGatewayError("Could not cancel the payment")
        if intent_id in self.intents:
            self.intents[intent_id]["status"] = "canceled"
        self.cancelled.append(intent_id)

    def construct_event(self, payload, signature):
        if signature != "valid-signature":
            raise PaymentVerificationFailed("Invalid webhook signature")
        return json.loads(payload)


@pytest.fixture
def raw_db():
    return mongomock.MongoClient().creative_merch_test


@pytest.fixture
def db(raw_db):
    return AsyncDatabase(raw_db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def add_product(raw_db):
    def _add(name="Custom Printed T-Shirt", price=10.00, stock=20, **extra) -> str:
        doc = {"name": name, "price": price, "stock": stock, "category": "apparel",
               "is_active": True, "created_at": datetime(2026, 1, 1), **extra}
        return str(raw_db["product"].insert_one(doc).inserted_id)
    return _add


@pytest.fixture
def stock_of(raw_db):
    def _stock(product_id: str) -> int:
        return raw_db["product"].find_one({"_id": ObjectId(product_id)})["stock"]
    return _stock


@pytest.fixture
def mail(raw_db):
    def _mail(template: Optional[str] = None) -> list[dict]:
        query = {"template.name": template} if template else {}
        return list(raw_db["mail"].find(query))
    return _mail


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    form_rate_limit.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def customer_headers():
    return {"Authorization": f"Bearer {create_access_token('jane@example.com')}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('info@customisemeuk.com', role='admin')}"}


@pytest.fixture
def address():
    return {"name": "Jane Smith", "street": "1 High Street", "city": "Manchester", "postcode": "M1 1AA"}


@pytest.fixture
def add_order(raw_db):
    def _add(product_id: str, status: str = "pending_payment", quantity: int = 1, email: str = "jane@example.com",
             **extra) -> str:
        doc = {
            "email": email,
            "items": [{"product_id": product_id, "name": "Custom Printed T-Shirt", "unit_price": 10.0,
                       "quantity": quantity, "line_total": 10.0 * quantity, "customization": {}}],
            "pricing": {"subtotal": 10.0 * quantity, "shipping": 4.99, "tax": 0.0, "total": 10.0 * quantity + 4.99},
            "shipping_address": {"name": "Jane Smith", "street": "1 High Street", "city": "Manchester",
                                 "postcode": "M1 1AA", "country": "United Kingdom"},
            "status": status,
            "payment_intent_id": None,
            "has_custom_artwork": False,
            "artwork_status": None,
            "review_requested": False,
            "created_at": datetime(2026, 1, 1),
            **extra,
        }
        return str(raw_db["order"].insert_one(doc).inserted_id)
    return _add
