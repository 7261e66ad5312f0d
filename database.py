from __future__ import annotations
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from config import settings
from errors import NotFound

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db


def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


def utcnow() -> datetime:
    # MongoDB hands datetimes back naive, in UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(id_str: str, what: str = "Document") -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise NotFound(f"{what} not found")
    return ObjectId(id_str)


def serialize(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


@asynccontextmanager
async def transaction() -> AsyncIterator[Any]:
    """Yield a session inside a multi-document transaction, or None.

    Transactions need a replica set, so they are opt-in through
    MONGO_TRANSACTIONS. Callers pass the yielded value as ``session=``.
    """
    if not settings.MONGO_TRANSACTIONS or _client is None:
        yield None
        return
    async with await _client.start_session() as session:
        async with session.start_transaction():
            yield session


async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    now = utcnow()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return serialize(inserted) or {}


async def get_document(db: AsyncIOMotorDatabase, collection_name: str, doc_id: str) -> Optional[dict[str, Any]]:
    if not ObjectId.is_valid(doc_id):
        return None
    return serialize(await db[collection_name].find_one({"_id": ObjectId(doc_id)}))


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    skip: int = 0,
    sort: list[tuple[str, int]] | None = None,
) -> list[dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip(skip).limit(limit)
    docs = []
    async for d in cursor:
        docs.append(serialize(d))
    return docs
