import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from cache import (
    CATEGORIES_KEY,
    FEATURED_KEY,
    PRODUCTS_PATTERN,
    Cache,
    product_key,
    products_info_key,
    products_list_key,
)
from config import Settings
from database import now, serialize_doc, to_object_id
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from security import can_mutate

logger = logging.getLogger(__name__)

DUPLICATE_KEY = 11000
SORT_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "product"


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


class CatalogService:
    def __init__(self, db: Database, cache: Cache, settings: Settings):
        self.products = db["product"]
        self.cache = cache
        self.settings = settings

    # Reads

    def list_products(self, page: int = 1, limit: int = 10, search: Optional[str] = None,
                      category: Optional[str] = None, sort_by: str = "created_at",
                      order: str = "desc") -> Dict[str, Any]:
        if not SORT_FIELD.match(sort_by):
            raise ValidationError(f"Cannot sort by '{sort_by}'")
        if order not in ("asc", "desc"):
            raise ValidationError("order must be 'asc' or 'desc'")

        key = products_list_key(page, limit, search, category, sort_by, order)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        filter_q: Dict[str, Any] = {"is_active": True}
        if search:
            pattern = re.escape(search)
            filter_q["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if category:
            filter_q["category"] = category

        direction = 1 if order == "asc" else -1
        cursor = (
            self.products.find(filter_q)
            .sort([(sort_by, direction), ("_id", direction)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        products = [serialize_doc(doc) for doc in cursor]
        total = self.products.count_documents(filter_q)

        data = {
            "products": products,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }
        self.cache.set(key, data, ttl=self.settings.product_cache_ttl)
        return data

    def get_product(self, product_id: str) -> Dict[str, Any]:
        key = product_key(product_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        doc = self.products.find_one({"_id": to_object_id(product_id, "Product")})
        if not doc or not doc.get("is_active", True):
            raise NotFoundError("Product not found")
        product = serialize_doc(doc)
        self.cache.set(key, product, ttl=self.settings.product_cache_ttl)
        return product

    def categories(self) -> List[Dict[str, Any]]:
        cached = self.cache.get(CATEGORIES_KEY)
        if cached is not None:
            return cached

        pipeline = [
            {"$match": {"is_active": True}},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]
        data = [{"name": row["_id"], "count": row["count"]} for row in self.products.aggregate(pipeline)]
        # no TTL: writes invalidate it explicitly
        self.cache.set(CATEGORIES_KEY, data)
        return data

    def featured(self) -> List[Dict[str, Any]]:
        cached = self.cache.get(FEATURED_KEY)
        if cached is not None:
            return cached

        cursor = (
            self.products.find(
                {"is_active": True, "stock": {"$gt": 10}},
                {"name": 1, "price": 1, "images": 1, "stock": 1, "created_at": 1},
            )
            .sort([("created_at", -1), ("_id", -1)])
            .limit(10)
        )
        data = [serialize_doc(doc) for doc in cursor]
        self.cache.set(FEATURED_KEY, data)
        return data

    def products_info(self, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        key = products_info_key(ids)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        object_ids = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
        cursor = self.products.find(
            {"_id": {"$in": object_ids}, "is_active": True},
            {"name": 1, "price": 1, "images": 1, "stock": 1},
        )
        data = {}
        for doc in cursor:
            pid = str(doc["_id"])
            images = doc.get("images") or []
            data[pid] = {
                "id": pid,
                "name": doc.get("name"),
                "price": doc.get("price"),
                "image": images[0] if images else None,
                "stock": doc.get("stock", 0),
            }
        self.cache.set(key, data, ttl=self.settings.product_cache_ttl)
        return data

    # Mutations

    def create_product(self, actor: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        document = self._new_document(actor, data)
        try:
            result = self.products.insert_one(document)
        except DuplicateKeyError:
            raise ConflictError("A product with this slug already exists")
        document["_id"] = result.inserted_id
        self.invalidate()
        return serialize_doc(document)

    def update_product(self, actor: Dict[str, Any], product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        self._owned(actor, product_id, "update")
        updates = {k: v for k, v in changes.items() if v is not None}
        updates["updated_at"] = now()
        doc = self.products.find_one_and_update(
            {"_id": to_object_id(product_id, "Product")},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        self.invalidate(product_id)
        return serialize_doc(doc)

    def delete_product(self, actor: Dict[str, Any], product_id: str) -> None:
        self._owned(actor, product_id, "delete")
        self.products.update_one(
            {"_id": to_object_id(product_id, "Product")},
            {"$set": {"is_active": False, "updated_at": now()}},
        )
        self.invalidate(product_id)

    def bulk_create(self, actor: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        Insert products in fixed-size chunks. Chunks are inserted concurrently
        and unordered, so one bad item never blocks the others; failures are
        counted per item. Duplicate slugs are counted as both failed and
        duplicates.
        """
        documents = [self._new_document(actor, item) for item in items]
        chunks = chunked(documents, self.settings.product_chunk)
        summary = {"total": len(documents), "uploaded": 0, "failed": 0, "duplicates": 0}

        with ThreadPoolExecutor(max_workers=max(1, self.settings.bulk_max_workers)) as pool:
            futures = [(pool.submit(self._insert_chunk, chunk), chunk) for chunk in chunks]
            for future, chunk in futures:
                exc = future.exception()
                if exc is None:
                    summary["uploaded"] += future.result()
                elif isinstance(exc, BulkWriteError):
                    write_errors = exc.details.get("writeErrors", [])
                    summary["uploaded"] += exc.details.get("nInserted", len(chunk) - len(write_errors))
                    summary["failed"] += len(write_errors)
                    summary["duplicates"] += sum(1 for e in write_errors if e.get("code") == DUPLICATE_KEY)
                elif isinstance(exc, PyMongoError):
                    logger.error("Bulk product chunk of %d failed: %s", len(chunk), exc)
                    summary["failed"] += len(chunk)
                else:
                    raise exc

        self.invalidate()
        logger.info("Bulk product upload completed: %s", summary)
        return summary

    def invalidate(self, product_id: Optional[str] = None) -> None:
        """Drop the product's own entry and every listing-style key."""
        if product_id:
            self.cache.delete(product_key(product_id))
        self.cache.delete_pattern(PRODUCTS_PATTERN)

    # Internals

    def _insert_chunk(self, chunk: List[Dict[str, Any]]) -> int:
        result = self.products.insert_many(chunk, ordered=False)
        return len(result.inserted_ids)

    def _new_document(self, actor: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        stamp = now()
        document = {
            "name": data["name"],
            "slug": data.get("slug") or slugify(data["name"]),
            "description": data.get("description") or "",
            "price": float(data["price"]),
            "stock": int(data.get("stock") or 0),
            "images": list(data.get("images") or []),
            "category": data["category"],
            "owner_id": str(actor["id"]),
            "is_active": True,
            "created_at": stamp,
            "updated_at": stamp,
        }
        return document

    def _owned(self, actor: Dict[str, Any], product_id: str, action: str) -> Dict[str, Any]:
        doc = self.products.find_one({"_id": to_object_id(product_id, "Product")})
        if not doc:
            raise NotFoundError("Product not found")
        if not can_mutate(actor, doc):
            raise AuthorizationError(f"Not authorized to {action} this product")
        return doc
