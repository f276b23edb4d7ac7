"""
Referral reward ledger.

A referred shopper's first qualifying order credits their referrer once. The
referred profile's ``referral_activated`` flag is flipped with a single
conditional update, and only the caller that flips it pays out, so two
concurrent qualifying orders produce exactly one reward.
"""

import logging
from typing import Optional

from pymongo import ReturnDocument

from config import Settings
from database import create_document, serialize_doc, utcnow
from errors import ActionInProgress, NotAuthenticated, NotFound, ValidationError, returns_result
from schemas import RedemptionRequest, ReferralTransaction

logger = logging.getLogger(__name__)


def referral_code_for(user_id: str) -> str:
    return f"DK{user_id[-8:].upper()}"


class ReferralLedger:
    def __init__(self, db, settings: Settings = None):
        self.db = db
        self.settings = settings or Settings()

    def find_referrer(self, code: str) -> Optional[dict]:
        if not code:
            return None
        return self.db["profile"].find_one({"referral_code": code.strip().upper()})

    def evaluate_referral(self, referred_user_id: str, order_total: float, order_id: str = None) -> bool:
        """Credit the referrer if this order activates the referral. Returns True when a reward was granted."""
        if order_total < self.settings.referral_min_order:
            return False

        now = utcnow()
        profile = self.db["profile"].find_one_and_update(
            {"user_id": referred_user_id, "referred_by": {"$ne": None}, "referral_activated": False},
            {"$set": {"referral_activated": True, "referral_activated_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if profile is None:
            return False

        referrer_id = profile["referred_by"]
        bonus = self.settings.referral_bonus
        res = self.db["profile"].update_one(
            {"user_id": referrer_id},
            {"$inc": {"total_referral_rewards": bonus}, "$set": {"updated_at": now}},
        )
        if res.matched_count == 0:
            logger.warning("Referrer %s of user %s has no profile; ledger row kept", referrer_id, referred_user_id)

        create_document(self.db, "referraltransaction", ReferralTransaction(
            referrer_id=referrer_id,
            referred_id=referred_user_id,
            order_id=order_id,
            amount=bonus,
            status="completed",
            completed_at=now,
        ))
        logger.info("Referral reward %.2f granted to %s for order %s by %s", bonus, referrer_id, order_id, referred_user_id)
        return True

    @returns_result
    def request_redemption(self, user_id: str):
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        profile = self.db["profile"].find_one({"user_id": user_id})
        if not profile:
            raise NotFound("Profile not found")

        total = float(profile.get("total_referral_rewards", 0))
        pending = float(profile.get("pending_referral_rewards", 0))
        available = round(total - pending, 2)
        minimum = self.settings.referral_min_redemption
        if available < minimum:
            raise ValidationError(f"Minimum redemption is {minimum:.2f}; available balance is {available:.2f}")

        res = self.db["profile"].update_one(
            {"user_id": user_id, "pending_referral_rewards": profile.get("pending_referral_rewards", 0)},
            {"$inc": {"pending_referral_rewards": available}, "$set": {"updated_at": utcnow()}},
        )
        if res.modified_count == 0:
            raise ActionInProgress("Balance changed while redeeming, please retry")

        request_id = create_document(self.db, "redemptionrequest", RedemptionRequest(user_id=user_id, amount=available))
        logger.info("Redemption of %.2f requested by %s", available, user_id)
        return {"request_id": request_id, "amount": available}

    def summary(self, user_id: str) -> dict:
        profile = self.db["profile"].find_one({"user_id": user_id})
        if not profile:
            raise NotFound("Profile not found")

        history = []
        for tx in self.db["referraltransaction"].find({"referrer_id": user_id}).sort("created_at", -1):
            referred = self.db["profile"].find_one({"user_id": tx["referred_id"]})
            row = serialize_doc(tx)
            row["referred_email"] = referred.get("email") if referred else None
            history.append(row)

        total = float(profile.get("total_referral_rewards", 0))
        pending = float(profile.get("pending_referral_rewards", 0))
        return {
            "referral_code": profile["referral_code"],
            "referral_link": f"{self.settings.site_url}?ref={profile['referral_code']}",
            "referred_users": self.db["profile"].count_documents({"referred_by": user_id}),
            "total_rewards": total,
            "pending_rewards": pending,
            "available_rewards": round(total - pending, 2),
            "reward_per_referral": self.settings.referral_bonus,
            "history": history,
            "redemptions": [serialize_doc(r) for r in self.db["redemptionrequest"].find({"user_id": user_id}).sort("created_at", -1)],
        }
