import logging
import math
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from cache import PRODUCTS_PATTERN, Cache, orders_key, orders_pattern, product_key
from cart import CartService
from config import Settings
from database import create_document, now, serialize_doc, to_object_id
from errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CANCELLABLE = ("pending", "processing")
# forward moves only; cancellation is handled separately
TRANSITIONS = {
    "pending": "processing",
    "processing": "shipped",
    "shipped": "delivered",
}


class OrderService:
    def __init__(self, db: Database, cache: Cache, settings: Settings, carts: CartService):
        self.db = db
        self.orders = db["order"]
        self.products = db["product"]
        self.cart_docs = db["cart"]
        self.cache = cache
        self.settings = settings
        self.carts = carts

    def create_order(self, user_id: str, shipping_address: Dict[str, Any]) -> Dict[str, Any]:
        self.carts.settle(user_id)

        cart = self.cart_docs.find_one({"user_id": user_id})
        if not cart or not cart.get("items"):
            raise ValidationError("Cart is empty")

        lines = [(str(i["product_id"]), int(i["quantity"])) for i in cart["items"]]
        ids = [ObjectId(pid) for pid, _ in lines if ObjectId.is_valid(pid)]
        products = {str(p["_id"]): p for p in self.products.find({"_id": {"$in": ids}})}

        for product_id, quantity in lines:
            product = products.get(product_id)
            if not product or not product.get("is_active", True):
                name = product.get("name") if product else product_id
                raise ValidationError(f"Product {name} is no longer available")
            if product.get("stock", 0) < quantity:
                raise ValidationError(f"Insufficient stock for {product.get('name')}")

        items = self._reserve_stock(lines, products)
        total = round(sum(item["price"] * item["quantity"] for item in items), 2)

        order = {
            "user_id": user_id,
            "items": items,
            "total_amount": total,
            "shipping_address": shipping_address,
            "status": "pending",
            "payment_status": "pending",
        }
        order_id = create_document(self.db, "order", order)

        self.carts.empty(user_id)
        self._invalidate(user_id, [pid for pid, _ in lines])
        logger.info("Order %s created for user %s", order_id, user_id)
        return serialize_doc(self.orders.find_one({"_id": ObjectId(order_id)}))

    def list_orders(self, user_id: str, page: int = 1, limit: int = 10,
                    status: Optional[str] = None) -> Dict[str, Any]:
        key = orders_key(user_id, page, limit, status)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        filter_q: Dict[str, Any] = {"user_id": user_id}
        if status:
            filter_q["status"] = status
        cursor = (
            self.orders.find(filter_q)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        orders = [serialize_doc(doc) for doc in cursor]
        total = self.orders.count_documents(filter_q)
        data = {
            "orders": orders,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        }
        self.cache.set(key, data, ttl=self.settings.order_cache_ttl)
        return data

    def get_order(self, actor: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        doc = self.orders.find_one({"_id": to_object_id(order_id, "Order")})
        if not doc or (actor["role"] != "admin" and doc["user_id"] != actor["id"]):
            raise NotFoundError("Order not found")
        return serialize_doc(doc)

    def cancel_order(self, actor: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        oid = to_object_id(order_id, "Order")
        scope: Dict[str, Any] = {"_id": oid}
        if actor["role"] != "admin":
            scope["user_id"] = actor["id"]

        # the status guard makes concurrent cancels restore stock only once
        doc = self.orders.find_one_and_update(
            {**scope, "status": {"$in": list(CANCELLABLE)}},
            {"$set": {"status": "cancelled", "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            if self.orders.find_one(scope) is None:
                raise NotFoundError("Order not found")
            raise ValidationError("Order cannot be cancelled")

        for item in doc["items"]:
            self.products.update_one(
                {"_id": ObjectId(item["product_id"])},
                {"$inc": {"stock": item["quantity"]}},
            )
        self._invalidate(doc["user_id"], [item["product_id"] for item in doc["items"]])
        logger.info("Order %s cancelled, stock restored", order_id)
        return serialize_doc(doc)

    def update_status(self, actor: Dict[str, Any], order_id: str, status: str) -> Dict[str, Any]:
        if actor["role"] != "admin":
            raise AuthorizationError("Not authorized to update order status")
        if status == "cancelled":
            return self.cancel_order(actor, order_id)

        oid = to_object_id(order_id, "Order")
        current = self.orders.find_one({"_id": oid})
        if current is None:
            raise NotFoundError("Order not found")
        if TRANSITIONS.get(current["status"]) != status:
            raise ValidationError(f"Cannot move order from {current['status']} to {status}")

        doc = self.orders.find_one_and_update(
            {"_id": oid, "status": current["status"]},
            {"$set": {"status": status, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ValidationError("Order status changed concurrently, retry")
        self.cache.delete_pattern(orders_pattern(doc["user_id"]))
        return serialize_doc(doc)

    def _reserve_stock(self, lines, products) -> List[Dict[str, Any]]:
        """Decrement stock per line; undo earlier lines if a later one runs short."""
        reserved: List[Dict[str, Any]] = []
        for product_id, quantity in lines:
            updated = self.products.find_one_and_update(
                {"_id": ObjectId(product_id), "is_active": True, "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}},
            )
            if updated is None:
                self._release_stock(reserved)
                raise ValidationError(f"Insufficient stock for {products[product_id].get('name')}")
            reserved.append({
                "product_id": product_id,
                "name": updated.get("name"),
                "quantity": quantity,
                "price": float(updated.get("price", 0)),
            })
        return reserved

    def _release_stock(self, items: List[Dict[str, Any]]) -> None:
        for item in items:
            self.products.update_one(
                {"_id": ObjectId(item["product_id"])},
                {"$inc": {"stock": item["quantity"]}},
            )

    def _invalidate(self, user_id: str, product_ids: List[str]) -> None:
        self.cache.delete_pattern(orders_pattern(user_id))
        self.cache.delete(*[product_key(pid) for pid in product_ids])
        self.cache.delete_pattern(PRODUCTS_PATTERN)
