"""
Cart lifecycle

Reads are cache-first: a miss loads the durable cart, populates product
fields, and promotes the result into the cache for the inactivity window.
The cache holds quantities; prices and totals are recomputed on every read.

Two write disciplines are supported, selected by ``CART_WRITE_MODE``:

- ``sync`` (default): every mutation is written to MongoDB immediately and
  the cached copy is dropped, so the next read rebuilds it.
- ``write_back``: mutations update the cached working copy and re-arm a
  per-user debounce timer. When the user has been idle for the inactivity
  window the working copy is flushed to MongoDB and dropped from the cache.
  A working copy that is evicted, or a process that dies before the flush,
  loses the pending edit. ``settle`` and application shutdown flush early.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from cache import Cache, cart_key
from config import Settings
from database import now, serialize_value, to_object_id
from errors import NotFoundError, ValidationError
from scheduler import DebounceScheduler

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = {"name": 1, "price": 1, "images": 1, "stock": 1, "is_active": 1}


def empty_cart(user_id: str) -> Dict[str, Any]:
    return {"id": None, "user_id": user_id, "items": [], "total_amount": 0}


class CartService:
    def __init__(self, db: Database, cache: Cache, settings: Settings,
                 scheduler: Optional[DebounceScheduler] = None):
        self.carts = db["cart"]
        self.products = db["product"]
        self.cache = cache
        self.settings = settings
        self.scheduler = scheduler or DebounceScheduler()

    # Reads

    def get(self, user_id: str) -> Dict[str, Any]:
        key = cart_key(user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return self._repriced(cached)

        doc = self.carts.find_one({"user_id": user_id})
        if doc is None:
            return empty_cart(user_id)

        view = self._view(user_id, self._items_of(doc), doc)
        self.cache.set(key, view, ttl=self.settings.cart_inactivity_ttl)
        logger.info("Cart loaded from DB to cache for user: %s", user_id)
        return view

    # Mutations

    def add_item(self, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
        self._check_quantity(quantity)
        product = self._active_product(product_id)
        if product.get("stock", 0) < quantity:
            raise ValidationError("Insufficient stock")

        items = self._current(user_id) or {}
        new_quantity = items.get(product_id, 0) + quantity
        if product.get("stock", 0) < new_quantity:
            raise ValidationError("Insufficient stock")
        items[product_id] = new_quantity
        return self._commit(user_id, items)

    def update_item(self, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
        self._check_quantity(quantity)
        product = self._active_product(product_id)
        if product.get("stock", 0) < quantity:
            raise ValidationError("Insufficient stock")

        items = self._require_cart(user_id)
        if product_id not in items:
            raise NotFoundError("Item not found in cart")
        items[product_id] = quantity
        return self._commit(user_id, items)

    def remove_item(self, user_id: str, product_id: str) -> Dict[str, Any]:
        items = self._require_cart(user_id)
        items.pop(product_id, None)
        return self._commit(user_id, items)

    def clear(self, user_id: str) -> Dict[str, Any]:
        self._require_cart(user_id)
        return self._commit(user_id, {})

    # Synchronization

    def flush(self, user_id: str) -> bool:
        """Write the cached working copy back to MongoDB and drop it from the cache."""
        key = cart_key(user_id)
        working = self.cache.get(key)
        if working is None:
            logger.warning("No cached cart to sync for user: %s", user_id)
            return False
        items = {item["product_id"]: item["quantity"] for item in working.get("items", [])}
        self._persist(user_id, items, working.get("total_amount", 0))
        self.cache.delete(key)
        logger.info("Cart synced to DB for user: %s", user_id)
        return True

    def settle(self, user_id: str) -> None:
        """Flush a pending write-back edit now instead of waiting for the timer."""
        if self.scheduler.cancel(cart_key(user_id)):
            self.flush(user_id)

    def empty(self, user_id: str) -> None:
        self.scheduler.cancel(cart_key(user_id))
        self.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "total_amount": 0, "updated_at": now()}},
        )
        self.discard_cache(user_id)

    def discard_cache(self, user_id: str) -> None:
        self.cache.delete(cart_key(user_id))

    def shutdown(self) -> None:
        self.scheduler.shutdown(run_pending=True)

    # Internals

    @staticmethod
    def _check_quantity(quantity: int) -> None:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

    @staticmethod
    def _items_of(doc: Dict[str, Any]) -> Dict[str, int]:
        return {str(item["product_id"]): int(item["quantity"]) for item in doc.get("items", [])}

    def _active_product(self, product_id: str) -> Dict[str, Any]:
        product = self.products.find_one({"_id": to_object_id(product_id, "Product")})
        if not product or not product.get("is_active", True):
            raise NotFoundError("Product not found")
        return product

    def _current(self, user_id: str) -> Optional[Dict[str, int]]:
        if self.settings.write_back:
            working = self.cache.get(cart_key(user_id))
            if working is not None:
                return {item["product_id"]: item["quantity"] for item in working.get("items", [])}
        doc = self.carts.find_one({"user_id": user_id})
        return self._items_of(doc) if doc is not None else None

    def _require_cart(self, user_id: str) -> Dict[str, int]:
        items = self._current(user_id)
        if items is None:
            raise NotFoundError("Cart not found")
        return items

    def _price(self, items: Dict[str, int]) -> Tuple[List[Dict[str, Any]], float]:
        """Populate items with current product data and total them at current prices."""
        ids = [ObjectId(pid) for pid in items if ObjectId.is_valid(pid)]
        found = {
            str(p["_id"]): p
            for p in self.products.find({"_id": {"$in": ids}}, PRODUCT_FIELDS)
        } if ids else {}

        populated = []
        total = 0.0
        for product_id, quantity in items.items():
            product = found.get(product_id)
            if product is None:
                continue
            price = float(product.get("price", 0))
            total += price * quantity
            populated.append({
                "product_id": product_id,
                "quantity": quantity,
                "product": {
                    "id": product_id,
                    "name": product.get("name"),
                    "price": price,
                    "images": product.get("images", []),
                    "stock": product.get("stock", 0),
                    "is_active": product.get("is_active", True),
                },
            })
        return populated, round(total, 2)

    def _repriced(self, view: Dict[str, Any]) -> Dict[str, Any]:
        """A cached view with product fields and total refreshed from the store."""
        items = {item["product_id"]: item["quantity"] for item in view.get("items", [])}
        populated, total = self._price(items)
        return {**view, "items": populated, "total_amount": total}

    def _view(self, user_id: str, items: Dict[str, int], doc: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        populated, total = self._price(items)
        return {
            "id": str(doc["_id"]) if doc else None,
            "user_id": user_id,
            "items": populated,
            "total_amount": total,
            "updated_at": serialize_value(doc.get("updated_at")) if doc else None,
        }

    def _persist(self, user_id: str, items: Dict[str, int], total: float) -> Dict[str, Any]:
        stamp = now()
        return self.carts.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {
                    "items": [{"product_id": pid, "quantity": qty} for pid, qty in items.items()],
                    "total_amount": total,
                    "updated_at": stamp,
                },
                "$setOnInsert": {"created_at": stamp},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def _commit(self, user_id: str, items: Dict[str, int]) -> Dict[str, Any]:
        key = cart_key(user_id)
        if self.settings.write_back:
            view = self._view(user_id, items)
            self.cache.set(key, view, ttl=self.settings.cart_inactivity_ttl + self.settings.cart_flush_grace)
            self.scheduler.arm(key, self.settings.cart_inactivity_ttl, lambda: self.flush(user_id))
            return view

        populated, total = self._price(items)
        kept = {item["product_id"]: item["quantity"] for item in populated}
        doc = self._persist(user_id, kept, total)
        self.cache.delete(key)
        return self._view(user_id, kept, doc)
