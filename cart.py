"""
Cart consistency engine.

One cartitem row per (user, product), enforced by a unique index. Adding a
product that is already in the cart increments its quantity. Every read is a
live query; there is no authoritative cache.
"""

import logging
from typing import List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from changefeed import ChangeFeed
from database import create_document, oid, utcnow
from errors import NotAuthenticated, NotFound, RemoteStoreError, ValidationError, returns_result
from inflight import InFlightGuard
from notifications import NotificationQueue
from schemas import CartItem

logger = logging.getLogger(__name__)

TABLE = "cartitem"


def _positive_int(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive whole number")
    return quantity


class CartService:
    def __init__(self, db, feed: ChangeFeed = None, notifications: NotificationQueue = None, guard: InFlightGuard = None):
        self.db = db
        self.feed = feed or ChangeFeed()
        self.notifications = notifications or NotificationQueue()
        self.guard = guard or InFlightGuard()

    def _changed(self, user_id: str, event: str, row_id: str = None) -> int:
        self.feed.publish(TABLE, user_id, event, row_id)
        return self.get_cart_count(user_id)

    @returns_result
    def add_to_cart(self, user_id: str, product_id: str, quantity: int = 1):
        if not user_id:
            raise NotAuthenticated("Please login to add items to cart")
        _positive_int(quantity)

        with self.guard.hold("add_to_cart", user_id):
            prod = self.db["product"].find_one({"_id": oid(product_id)})
            if not prod:
                raise NotFound("Product not found")
            pid = str(prod["_id"])

            try:
                item_id = create_document(self.db, TABLE, CartItem(user_id=user_id, product_id=pid, quantity=quantity))
                event, message = "insert", "Added to cart!"
            except DuplicateKeyError:
                doc = self.db[TABLE].find_one_and_update(
                    {"user_id": user_id, "product_id": pid},
                    {"$inc": {"quantity": quantity}, "$set": {"updated_at": utcnow()}},
                    return_document=ReturnDocument.AFTER,
                )
                if doc is None:
                    raise RemoteStoreError("Cart changed while updating, please retry")
                item_id = str(doc["_id"])
                event, message = "update", "Cart updated!"

        self.notifications.push(user_id, message)
        return {"item_id": item_id, "cart_count": self._changed(user_id, event, item_id)}

    @returns_result
    def remove_from_cart(self, user_id: str, item_id: str):
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        try:
            row_id = oid(item_id)
        except ValidationError:
            # an id that cannot exist names no row of this user
            return {"removed": False, "cart_count": self.get_cart_count(user_id)}
        res = self.db[TABLE].delete_one({"_id": row_id, "user_id": user_id})
        if res.deleted_count:
            self.notifications.push(user_id, "Removed from cart!")
            count = self._changed(user_id, "delete", item_id)
        else:
            count = self.get_cart_count(user_id)
        return {"removed": bool(res.deleted_count), "cart_count": count}

    @returns_result
    def update_quantity(self, user_id: str, item_id: str, quantity: int):
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Quantity must be a whole number")
        if quantity <= 0:
            raise ValidationError("Quantity must be at least 1; remove the item instead")

        res = self.db[TABLE].update_one(
            {"_id": oid(item_id), "user_id": user_id},
            {"$set": {"quantity": quantity, "updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            raise NotFound("Cart item not found")
        self.notifications.push(user_id, "Cart updated!")
        return {"item_id": item_id, "cart_count": self._changed(user_id, "update", item_id)}

    @returns_result
    def clear_cart(self, user_id: str):
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        res = self.db[TABLE].delete_many({"user_id": user_id})
        self.feed.publish(TABLE, user_id, "delete")
        return {"removed": res.deleted_count}

    # Reads

    def get_cart(self, user_id: str) -> List[dict]:
        items = list(self.db[TABLE].find({"user_id": user_id}).sort("created_at", 1))
        product_ids = [oid(i["product_id"]) for i in items]
        products_map = {}
        if product_ids:
            products_map = {str(p["_id"]): p for p in self.db["product"].find({"_id": {"$in": product_ids}})}

        result = []
        for item in items:
            prod = products_map.get(item["product_id"])
            result.append({
                "id": str(item["_id"]),
                "product_id": item["product_id"],
                "quantity": item.get("quantity", 1),
                "product": {
                    "id": str(prod["_id"]),
                    "title": prod.get("title"),
                    "price": prod.get("price"),
                    "image_url": prod.get("image_url"),
                    "category": prod.get("category"),
                    "stock_quantity": prod.get("stock_quantity"),
                } if prod else None,
            })
        return result

    def get_cart_total(self, user_id: str) -> float:
        total = 0.0
        for line in self.get_cart(user_id):
            product = line["product"]
            if product is None:
                logger.warning("Cart item %s for user %s references missing product %s", line["id"], user_id, line["product_id"])
                continue
            total += float(product.get("price") or 0) * line["quantity"]
        return round(total, 2)

    def get_cart_count(self, user_id: str) -> int:
        return sum(i.get("quantity", 1) for i in self.db[TABLE].find({"user_id": user_id}, {"quantity": 1}))

    def count_rows(self, user_id: str) -> int:
        return self.db[TABLE].count_documents({"user_id": user_id})
