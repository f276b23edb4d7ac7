"""
Checkout and order finalization.

A checkout freezes the priced line items into one order row, then evaluates
the referral reward, then clears the cart. Prices always come from the
product table at checkout time; the amount the client says it paid is only
compared against them. Clearing the cart is best-effort: once the order row
exists the checkout has succeeded.
"""

import logging
import math
from collections import OrderedDict
from typing import Iterable, List, Optional

from pymongo.errors import PyMongoError

from cart import CartService
from changefeed import ChangeFeed
from database import create_document, get_documents, oid, serialize_doc, utcnow
from errors import (
    ActionInProgress,
    AmountMismatchError,
    NotAuthenticated,
    NotFound,
    StoreError,
    ValidationError,
    returns_result,
)
from inflight import InFlightGuard
from notifications import NotificationQueue
from referrals import ReferralLedger
from schemas import Order, OrderLine

logger = logging.getLogger(__name__)

AMOUNT_EPSILON = 0.01
MAX_PAYMENT_AMOUNT = 100000

PAYMENT_METHODS = {"upi", "phonepe", "card", "cod"}
ORDER_STATUSES = ["pending", "processing", "shipped", "delivered", "cancelled"]

# cancelled is reachable from any non-terminal state
ORDER_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}


def validate_payment_amount(amount) -> float:
    if amount is None or isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Payment amount is required")
    if not math.isfinite(amount):
        raise ValidationError("Payment amount must be a valid number")
    if amount <= 0:
        raise ValidationError("Invalid payment amount")
    if amount > MAX_PAYMENT_AMOUNT:
        raise ValidationError("Payment amount cannot exceed 100000")
    if abs(round(amount, 2) - amount) > 1e-9:
        raise ValidationError("Payment amount cannot have more than 2 decimal places")
    return float(amount)


def lines_total(lines: Iterable[OrderLine]) -> float:
    return round(sum(line.price * line.quantity for line in lines), 2)


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())


class CheckoutService:
    def __init__(
        self,
        db,
        cart: CartService = None,
        referrals: ReferralLedger = None,
        feed: ChangeFeed = None,
        notifications: NotificationQueue = None,
        guard: InFlightGuard = None,
    ):
        self.db = db
        self.feed = feed or ChangeFeed()
        self.notifications = notifications or NotificationQueue()
        self.cart = cart or CartService(db, self.feed, self.notifications)
        self.referrals = referrals or ReferralLedger(db)
        self.guard = guard or InFlightGuard()

    def _requested_items(self, user_id: str, items: Optional[List[dict]]) -> "OrderedDict[str, int]":
        if items is None:
            rows = self.db["cartitem"].find({"user_id": user_id}).sort("created_at", 1)
            items = [{"product_id": r["product_id"], "quantity": r.get("quantity", 1)} for r in rows]

        wanted: "OrderedDict[str, int]" = OrderedDict()
        for index, item in enumerate(items, start=1):
            product_id = item.get("product_id") or item.get("id")
            quantity = item.get("quantity")
            if not product_id:
                raise ValidationError(f"Item {index}: Product ID is required")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError(f"Item {index}: Valid quantity is required")
            wanted[str(product_id)] = wanted.get(str(product_id), 0) + quantity
        return wanted

    def snapshot_lines(self, user_id: str, items: Optional[List[dict]] = None) -> List[OrderLine]:
        """Price the requested items (or the user's cart) from the product table."""
        lines = []
        for product_id, quantity in self._requested_items(user_id, items).items():
            prod = self.db["product"].find_one({"_id": oid(product_id)})
            if not prod:
                raise ValidationError(f"Product not found: {product_id}")
            price = float(prod.get("price") or 0)
            if price <= 0:
                raise ValidationError(f"{prod.get('title', 'Product')} is not available for sale")
            stock = prod.get("stock_quantity")
            if stock is not None and stock < quantity:
                raise ValidationError(f"Insufficient stock for {prod.get('title', 'product')}")
            lines.append(OrderLine(
                product_id=product_id,
                title=prod.get("title", "Product"),
                price=price,
                quantity=quantity,
                image_url=prod.get("image_url"),
            ))
        return lines

    @returns_result
    def process_payment(
        self,
        user_id: str,
        amount: float,
        items: Optional[List[dict]] = None,
        payment_method: str = "upi",
        is_cod: bool = False,
        transaction_id: str = None,
    ):
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        validate_payment_amount(amount)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {payment_method}")
        # cash on delivery is one mode, whichever way the caller names it
        if payment_method == "cod" or is_cod:
            payment_method, is_cod = "cod", True
        if items is not None and len(items) == 0:
            raise ValidationError("No items in cart")

        with self.guard.hold("checkout", user_id):
            lines = self.snapshot_lines(user_id, items)
            if not lines:
                raise ValidationError("No items in cart")

            total = lines_total(lines)
            if is_cod:
                if amount - total > AMOUNT_EPSILON:
                    raise AmountMismatchError("Upfront amount exceeds order total")
            elif abs(total - amount) > AMOUNT_EPSILON:
                raise AmountMismatchError("Payment amount mismatch with cart total")

            order = Order(
                user_id=user_id,
                products=lines,
                total_amount=total,
                payment_method=payment_method,
                payment_status="partial" if is_cod else "paid",
                order_status="pending",
                transaction_id=transaction_id,
                is_cod=is_cod,
                cod_amount=round(total - amount, 2) if is_cod else None,
                upfront_amount=round(amount, 2) if is_cod else None,
            )
            order_id = create_document(self.db, "order", order)
            logger.info("Order %s created for %s: %.2f via %s", order_id, user_id, total, payment_method)

            self._decrement_stock(lines)
            referral_awarded, referral_error = self._evaluate_referral(user_id, total, order_id)

            cleared = self.cart.clear_cart(user_id)
            if not cleared.success:
                logger.warning("Order %s placed but cart for %s was not cleared: %s", order_id, user_id, cleared.error)

        self.feed.publish("order", user_id, "insert", order_id)
        self.notifications.push(user_id, "Order placed successfully!")
        return {
            "order_id": order_id,
            "total_amount": total,
            "payment_status": order.payment_status,
            "cart_cleared": cleared.success,
            "referral_awarded": referral_awarded,
            "referral_error": referral_error,
        }

    def _decrement_stock(self, lines: List[OrderLine]) -> None:
        for line in lines:
            self.db["product"].update_one(
                {"_id": oid(line.product_id), "stock_quantity": {"$gte": line.quantity}},
                {"$inc": {"stock_quantity": -line.quantity}},
            )

    def _evaluate_referral(self, user_id: str, total: float, order_id: str):
        try:
            return self.referrals.evaluate_referral(user_id, total, order_id), None
        except (StoreError, PyMongoError) as e:
            logger.exception("Referral evaluation failed for order %s", order_id)
            self.notifications.push(user_id, "Referral reward could not be processed, please retry", kind="error")
            return False, str(e)

    # Order history and admin

    def list_orders(self, user_id: str) -> List[dict]:
        return [serialize_doc(d) for d in get_documents(self.db, "order", {"user_id": user_id})]

    def list_all_orders(self, status: str = None, limit: int = None) -> List[dict]:
        filt = {"order_status": status} if status else {}
        return [serialize_doc(d) for d in get_documents(self.db, "order", filt, limit)]

    def get_order(self, user_id: str, order_id: str) -> dict:
        doc = self.db["order"].find_one({"_id": oid(order_id), "user_id": user_id})
        if not doc:
            raise NotFound("Order not found")
        return serialize_doc(doc)

    @returns_result
    def update_order_status(self, order_id: str, status: str):
        if status not in ORDER_TRANSITIONS:
            raise ValidationError(f"Unknown order status: {status}")
        doc = self.db["order"].find_one({"_id": oid(order_id)})
        if not doc:
            raise NotFound("Order not found")

        current = doc.get("order_status", "pending")
        if current == status:
            return {"order_id": order_id, "order_status": status}
        if not can_transition(current, status):
            raise ValidationError(f"Cannot move order from {current} to {status}")

        res = self.db["order"].update_one(
            {"_id": doc["_id"], "order_status": current},
            {"$set": {"order_status": status, "updated_at": utcnow()}},
        )
        if res.modified_count == 0:
            raise ActionInProgress("Order changed while updating, please retry")
        self.feed.publish("order", doc["user_id"], "update", order_id)
        return {"order_id": order_id, "order_status": status}

    @returns_result
    def delete_order(self, order_id: str):
        res = self.db["order"].delete_one({"_id": oid(order_id)})
        if res.deleted_count == 0:
            raise NotFound("Order not found")
        return {"order_id": order_id}
