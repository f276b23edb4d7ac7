"""
UPI payment sessions.

A session freezes the amount to collect, renders the UPI string and QR
endpoints and opens a payment window. No settlement callback exists: a
session is completed only through ``simulate_success``, which is disabled
unless PAYMENT_SIMULATION_ENABLED is set and refuses sessions whose window
has run out.
"""

import logging
from datetime import timedelta

from config import Settings
from checkout import AMOUNT_EPSILON, CheckoutService, validate_payment_amount
from database import as_utc, create_document, oid, utcnow
from errors import (
    ActionInProgress,
    ActionResult,
    AmountMismatchError,
    NotAuthenticated,
    NotAuthorized,
    NotFound,
    PaymentExpired,
    ValidationError,
    returns_result,
)
from schemas import PaymentSession
from upi import UPIPaymentData, generate_transaction_ref, qr_code_urls, validate_upi_data

logger = logging.getLogger(__name__)

TABLE = "paymentsession"


class PaymentService:
    def __init__(self, db, checkout: CheckoutService, settings: Settings = None):
        self.db = db
        self.checkout = checkout
        self.cart = checkout.cart
        self.settings = settings or Settings()

    @returns_result
    def start(self, user_id: str, is_cod: bool = False, upfront_amount: float = None):
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        total = self.cart.get_cart_total(user_id)
        if total <= 0:
            raise ValidationError("No items in cart")

        amount = total
        if is_cod:
            if upfront_amount is None:
                raise ValidationError("Upfront amount is required for cash on delivery")
            amount = validate_payment_amount(upfront_amount)
            if amount - total > AMOUNT_EPSILON:
                raise AmountMismatchError("Upfront amount exceeds order total")

        ref = generate_transaction_ref()
        validation = validate_upi_data(UPIPaymentData(
            payee_address=self.settings.merchant_upi_id,
            payee_name=self.settings.merchant_name,
            amount=amount,
            transaction_note=f"Payment to {self.settings.merchant_name} - Order {ref}",
            transaction_ref=ref,
            merchant_code=self.settings.merchant_code,
        ))
        if not validation.is_valid:
            raise ValidationError(f"UPI validation failed: {', '.join(validation.errors)}")

        expires_at = utcnow() + timedelta(seconds=self.settings.payment_window_seconds)
        session = PaymentSession(
            user_id=user_id,
            amount=amount,
            total_amount=total,
            is_cod=is_cod,
            upi_string=validation.upi_string,
            qr_urls=qr_code_urls(validation.upi_string),
            transaction_ref=ref,
            expires_at=expires_at,
        )
        session_id = create_document(self.db, TABLE, session)
        logger.info("Payment session %s opened for %s: %.2f", session_id, user_id, amount)
        return {
            "session_id": session_id,
            "amount": amount,
            "total_amount": total,
            "upi_string": session.upi_string,
            "qr_urls": session.qr_urls,
            "transaction_ref": ref,
            "expires_at": expires_at.isoformat(),
            "seconds_left": self.settings.payment_window_seconds,
        }

    def _load(self, user_id: str, session_id: str) -> dict:
        doc = self.db[TABLE].find_one({"_id": oid(session_id), "user_id": user_id})
        if not doc:
            raise NotFound("Payment session not found")
        return doc

    def _expire_if_due(self, doc: dict) -> dict:
        if doc["status"] == "pending" and utcnow() >= as_utc(doc["expires_at"]):
            self.db[TABLE].update_one(
                {"_id": doc["_id"], "status": "pending"},
                {"$set": {"status": "failed", "updated_at": utcnow()}},
            )
            doc["status"] = "failed"
        return doc

    def status(self, user_id: str, session_id: str) -> dict:
        doc = self._expire_if_due(self._load(user_id, session_id))
        left = (as_utc(doc["expires_at"]) - utcnow()).total_seconds()
        return {
            "session_id": session_id,
            "status": doc["status"],
            "amount": doc["amount"],
            "upi_string": doc["upi_string"],
            "qr_urls": doc["qr_urls"],
            "transaction_ref": doc["transaction_ref"],
            "order_id": doc.get("order_id"),
            "seconds_left": max(0, int(left)) if doc["status"] == "pending" else 0,
        }

    @returns_result
    def simulate_success(self, user_id: str, session_id: str):
        if not self.settings.payment_simulation_enabled:
            raise NotAuthorized("Payment simulation is disabled")
        if not user_id:
            raise NotAuthenticated("User not authenticated")

        doc = self._load(user_id, session_id)
        if doc["status"] == "completed":
            raise ValidationError("Payment already completed")
        doc = self._expire_if_due(doc)
        if doc["status"] == "failed":
            logger.warning("Late payment success for expired session %s ignored", session_id)
            raise PaymentExpired("Payment window expired; start a new payment")

        claimed = self.db[TABLE].update_one(
            {"_id": doc["_id"], "status": "pending"},
            {"$set": {"status": "processing", "updated_at": utcnow()}},
        )
        if claimed.modified_count == 0:
            raise ActionInProgress("Payment is already being processed")

        result = self.checkout.process_payment(
            user_id,
            doc["amount"],
            payment_method="cod" if doc.get("is_cod") else "upi",
            is_cod=doc.get("is_cod", False),
            transaction_id=doc["transaction_ref"],
        )
        if not result.success:
            self.db[TABLE].update_one({"_id": doc["_id"]}, {"$set": {"status": "pending", "updated_at": utcnow()}})
            return result

        order_id = result.data["order_id"]
        self.db[TABLE].update_one(
            {"_id": doc["_id"]},
            {"$set": {"status": "completed", "order_id": order_id, "updated_at": utcnow()}},
        )
        logger.info("Payment session %s completed as order %s", session_id, order_id)
        return ActionResult.ok(session_id=session_id, **result.data)
