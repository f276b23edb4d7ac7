"""
Authentication.

Shoppers sign up and sign in with email and password and receive a bearer
token stored in the ``session`` collection. The admin console is gated by a
single fixed credential pair from configuration; it is a plain comparison
and issues an admin-role token. Every request resolves its token into an
AuthSession which routes receive explicitly.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from changefeed import ChangeFeed
from config import Settings
from database import as_utc, create_document, serialize_doc, utcnow
from errors import NotAuthenticated, NotAuthorized, NotFound, UniquenessViolation, ValidationError, returns_result
from referrals import ReferralLedger, referral_code_for
from schemas import Profile, Session, User

logger = logging.getLogger(__name__)


def hash_password(password: str, salt: Optional[str] = None) -> tuple:
    if salt is None:
        salt = secrets.token_hex(16)
    pwd_hash = hashlib.pbkdf2_hmac(
        'sha256', password.encode('utf-8'), salt.encode('utf-8'), 100000
    ).hex()
    return pwd_hash, salt


class Anonymous(BaseModel):
    kind: Literal["anonymous"] = "anonymous"


class UserSession(BaseModel):
    kind: Literal["user"] = "user"
    token: str
    profile: Profile

    @property
    def user_id(self) -> str:
        return self.profile.user_id


class AdminSession(BaseModel):
    kind: Literal["admin"] = "admin"
    token: str
    email: str


AuthSession = Annotated[Union[Anonymous, UserSession, AdminSession], Field(discriminator="kind")]


def require_user(session) -> UserSession:
    if not isinstance(session, UserSession):
        raise NotAuthenticated("Please login to continue")
    return session


def require_admin(session):
    if isinstance(session, AdminSession):
        return session
    if isinstance(session, UserSession) and session.profile.is_admin:
        return session
    if isinstance(session, Anonymous):
        raise NotAuthenticated("Please login to continue")
    raise NotAuthorized("Admin access required")


class AuthService:
    def __init__(self, db, settings: Settings = None, feed: ChangeFeed = None, referrals: ReferralLedger = None):
        self.db = db
        self.settings = settings or Settings()
        self.feed = feed or ChangeFeed()
        self.referrals = referrals or ReferralLedger(db, self.settings)

    def _create_session(self, user_id: str = None, role: str = "user", email: str = None) -> str:
        token = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(days=self.settings.session_ttl_days)
        create_document(self.db, "session", Session(token=token, user_id=user_id, role=role, email=email, expires_at=expires_at))
        return token

    @returns_result
    def sign_up(self, email: str, password: str, full_name: str = None, referral_code: str = None):
        email = (email or "").strip().lower()
        if not password or len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")

        referrer = None
        if referral_code:
            referrer = self.referrals.find_referrer(referral_code)
            if not referrer:
                raise ValidationError("Invalid referral code")

        if self.db["user"].find_one({"email": email}):
            raise ValidationError("Email already registered")

        pwd_hash, salt = hash_password(password)
        try:
            user_id = create_document(self.db, "user", User(email=email, password_hash=pwd_hash, salt=salt))
        except DuplicateKeyError:
            raise ValidationError("Email already registered")

        profile = Profile(
            user_id=user_id,
            email=email,
            full_name=full_name,
            referral_code=referral_code_for(user_id),
            referred_by=referrer["user_id"] if referrer else None,
        )
        try:
            create_document(self.db, "profile", profile)
        except DuplicateKeyError:
            self.db["user"].delete_one({"email": email})
            raise UniquenessViolation("Could not allocate a referral code, please try again")

        token = self._create_session(user_id)
        self.feed.publish("auth", user_id, "sign_up")
        return {"token": token, "user": {"id": user_id, "email": email}, "referral_code": profile.referral_code}

    @returns_result
    def sign_in(self, email: str, password: str):
        user = self.db["user"].find_one({"email": (email or "").strip().lower()})
        if not user:
            raise NotAuthenticated("Invalid credentials")
        pwd_hash, _ = hash_password(password or "", user["salt"])
        if not hmac.compare_digest(pwd_hash, user["password_hash"]):
            raise NotAuthenticated("Invalid credentials")
        user_id = str(user["_id"])
        token = self._create_session(user_id)
        self.feed.publish("auth", user_id, "sign_in")
        return {"token": token, "user": {"id": user_id, "email": user["email"]}}

    @returns_result
    def sign_out(self, token: str):
        session = self.db["session"].find_one_and_delete({"token": token}) if token else None
        if session and session.get("user_id"):
            self.feed.publish("auth", session["user_id"], "sign_out")
        return {"signed_out": session is not None}

    @returns_result
    def admin_login(self, email: str, password: str):
        if email != self.settings.admin_email or password != self.settings.admin_password:
            raise NotAuthenticated("Invalid admin credentials")
        token = self._create_session(role="admin", email=email)
        self.feed.publish("auth", "admin", "admin_login")
        logger.info("Admin console login for %s", email)
        return {"token": token, "role": "admin"}

    def resolve(self, token: Optional[str]):
        if not token:
            return Anonymous()
        session = self.db["session"].find_one({"token": token})
        if not session or as_utc(session["expires_at"]) < utcnow():
            return Anonymous()
        if session.get("role") == "admin":
            return AdminSession(token=token, email=session.get("email") or self.settings.admin_email)

        profile = self.db["profile"].find_one({"user_id": session.get("user_id")})
        if not profile:
            return Anonymous()
        return UserSession(token=token, profile=Profile(**profile))

    def get_profile(self, user_id: str) -> dict:
        profile = self.db["profile"].find_one({"user_id": user_id})
        if not profile:
            raise NotFound("Profile not found")
        return serialize_doc(profile)

    @returns_result
    def update_profile(self, user_id: str, full_name: str = None, phone: str = None, address: str = None):
        to_set = {k: v for k, v in {"full_name": full_name, "phone": phone, "address": address}.items() if v is not None}
        if not to_set:
            return {"profile": self.get_profile(user_id)}
        to_set["updated_at"] = utcnow()
        res = self.db["profile"].update_one({"user_id": user_id}, {"$set": to_set})
        if res.matched_count == 0:
            raise NotFound("Profile not found")
        self.feed.publish("profile", user_id, "update")
        return {"profile": self.get_profile(user_id)}
