from typing import List

from pymongo.errors import DuplicateKeyError

from changefeed import ChangeFeed
from database import create_document, oid, serialize_doc
from errors import NotAuthenticated, NotFound, ValidationError, returns_result
from notifications import NotificationQueue
from schemas import WishlistItem

TABLE = "wishlistitem"


class WishlistService:
    def __init__(self, db, feed: ChangeFeed = None, notifications: NotificationQueue = None):
        self.db = db
        self.feed = feed or ChangeFeed()
        self.notifications = notifications or NotificationQueue()

    @returns_result
    def add(self, user_id: str, product_id: str):
        if not user_id:
            raise NotAuthenticated("Please login to add items to wishlist")
        prod = self.db["product"].find_one({"_id": oid(product_id)})
        if not prod:
            raise NotFound("Product not found")

        try:
            item_id = create_document(self.db, TABLE, WishlistItem(user_id=user_id, product_id=str(prod["_id"])))
        except DuplicateKeyError:
            existing = self.db[TABLE].find_one({"user_id": user_id, "product_id": str(prod["_id"])})
            self.notifications.push(user_id, "This item is already in your wishlist!", kind="info")
            return {"item_id": str(existing["_id"]) if existing else None, "already_present": True}

        self.feed.publish(TABLE, user_id, "insert", item_id)
        self.notifications.push(user_id, "Added to wishlist!")
        return {"item_id": item_id, "already_present": False}

    @returns_result
    def remove(self, user_id: str, item_id: str):
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        try:
            row_id = oid(item_id)
        except ValidationError:
            return {"removed": False}
        res = self.db[TABLE].delete_one({"_id": row_id, "user_id": user_id})
        if res.deleted_count:
            self.feed.publish(TABLE, user_id, "delete", item_id)
            self.notifications.push(user_id, "Removed from wishlist!")
        return {"removed": bool(res.deleted_count)}

    def list(self, user_id: str) -> List[dict]:
        items = list(self.db[TABLE].find({"user_id": user_id}).sort("created_at", -1))
        out = []
        for item in items:
            prod = self.db["product"].find_one({"_id": oid(item["product_id"])})
            row = serialize_doc(item)
            row["product"] = serialize_doc(prod) if prod else None
            out.append(row)
        return out
