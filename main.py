import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

from auth import AuthService, UserSession, require_admin, require_user
from cart import CartService
from changefeed import ChangeFeed
from checkout import ORDER_STATUSES, CheckoutService
from config import Settings
from database import create_document, db, ensure_indexes, get_documents, oid, serialize_doc, utcnow
from errors import ActionResult, NotAuthorized, NotFound, RemoteStoreError, StoreError, ValidationError
from inflight import InFlightGuard
from notifications import NotificationQueue
from payments import PaymentService
from referrals import ReferralLedger
from schemas import CATEGORIES, Category
from schemas import Product as ProductSchema
from upi import resolve_qr_url
from wishlist import WishlistService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


app = FastAPI(title="DayKart API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Shared state and dependencies ----------

_settings = Settings.from_env()
_feed = ChangeFeed()
_notifications = NotificationQueue(default_ttl=_settings.notification_ttl_seconds)
_guard = InFlightGuard()


def get_db():
    if db is None:
        raise RemoteStoreError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def get_settings() -> Settings:
    return _settings


def get_feed() -> ChangeFeed:
    return _feed


def get_notifications() -> NotificationQueue:
    return _notifications


def get_guard() -> InFlightGuard:
    return _guard


def get_http_client():
    with httpx.Client(timeout=3.0, follow_redirects=True) as client:
        yield client


class Services:
    def __init__(self, database, settings: Settings, feed: ChangeFeed, notifications: NotificationQueue, guard: InFlightGuard):
        self.db = database
        self.notifications = notifications
        self.referrals = ReferralLedger(database, settings)
        self.auth = AuthService(database, settings, feed, self.referrals)
        self.cart = CartService(database, feed, notifications, guard)
        self.wishlist = WishlistService(database, feed, notifications)
        self.checkout = CheckoutService(database, self.cart, self.referrals, feed, notifications, guard)
        self.payments = PaymentService(database, self.checkout, settings)

    def respond(self, result: ActionResult, user_id: str = None):
        if result.success:
            return result.model_dump()
        if user_id:
            self.notifications.push(user_id, result.error, kind="error")
        return JSONResponse(status_code=result.status_code, content=result.model_dump())


def get_services(
    database=Depends(get_db),
    settings: Settings = Depends(get_settings),
    feed: ChangeFeed = Depends(get_feed),
    notifications: NotificationQueue = Depends(get_notifications),
    guard: InFlightGuard = Depends(get_guard),
) -> Services:
    return Services(database, settings, feed, notifications, guard)


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if authorization and authorization.startswith('Bearer '):
        return authorization.split(' ', 1)[1]
    return None


def current_session(token: Optional[str] = Depends(bearer_token), services: Services = Depends(get_services)):
    return services.auth.resolve(token)


def current_user(session=Depends(current_session)) -> UserSession:
    return require_user(session)


def current_admin(session=Depends(current_session)):
    return require_admin(session)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message, "code": exc.code})


@app.exception_handler(PyMongoError)
async def pymongo_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Store failure on %s", request.url.path)
    return JSONResponse(status_code=503, content={"success": False, "error": "Store unavailable, please retry", "code": RemoteStoreError.code})


# ---------- Request models ----------

class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None
    referral_code: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AdminLoginRequest(BaseModel):
    email: str
    password: str


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    image_urls: Optional[List[str]] = None
    price: Optional[float] = Field(None, gt=0)
    category: Optional[Category] = None
    is_featured: Optional[bool] = None
    stock_quantity: Optional[int] = Field(None, ge=0)


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateQuantityRequest(BaseModel):
    quantity: int


class WishlistRequest(BaseModel):
    product_id: str


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int
    title: Optional[str] = None
    price: Optional[float] = None


class CheckoutRequest(BaseModel):
    amount: float
    items: Optional[List[CheckoutItem]] = None
    payment_method: str = "upi"
    is_cod: bool = False
    transaction_id: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: str


class PaymentSessionRequest(BaseModel):
    is_cod: bool = False
    upfront_amount: Optional[float] = None


# ---------- Routes ----------

@app.get("/")
def read_root():
    return {"message": "DayKart API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            collections = db.list_collection_names()
            response["collections"] = collections[:10]
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


# Auth
@app.post('/api/auth/signup')
def signup(payload: SignupRequest, services: Services = Depends(get_services)):
    return services.respond(services.auth.sign_up(payload.email, payload.password, payload.full_name, payload.referral_code))


@app.post('/api/auth/login')
def login(payload: LoginRequest, services: Services = Depends(get_services)):
    return services.respond(services.auth.sign_in(payload.email, payload.password))


@app.post('/api/auth/logout')
def logout(token: Optional[str] = Depends(bearer_token), services: Services = Depends(get_services)):
    return services.respond(services.auth.sign_out(token))


@app.post('/api/auth/admin-login')
def admin_login(payload: AdminLoginRequest, services: Services = Depends(get_services)):
    return services.respond(services.auth.admin_login(payload.email, payload.password))


@app.get('/api/auth/session')
def get_session(session=Depends(current_session)):
    data = session.model_dump(mode="json")
    data.pop("token", None)
    return data


@app.get('/api/profile')
def get_profile(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.auth.get_profile(user.user_id)


@app.put('/api/profile')
def update_profile(payload: ProfileUpdate, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    result = services.auth.update_profile(user.user_id, payload.full_name, payload.phone, payload.address)
    return services.respond(result, user.user_id)


# Catalog
@app.get('/api/categories')
def list_categories():
    return {"items": CATEGORIES}


@app.get('/api/products')
def list_products(
    category: Optional[str] = None,
    featured: Optional[bool] = None,
    q: Optional[str] = None,
    limit: int = 100,
    database=Depends(get_db),
):
    filt = {}
    if category:
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown category: {category}")
        filt["category"] = category
    if featured is not None:
        filt["is_featured"] = featured
    if q:
        filt["title"] = {"$regex": re.escape(q), "$options": "i"}
    docs = get_documents(database, "product", filt, limit)
    return {"items": [serialize_doc(d) for d in docs]}


@app.get('/api/products/{product_id}')
def get_product(product_id: str, database=Depends(get_db)):
    doc = database["product"].find_one({"_id": oid(product_id)})
    if not doc:
        raise NotFound("Product not found")
    return serialize_doc(doc)


@app.post('/api/products')
def create_product(payload: ProductSchema, admin=Depends(current_admin), database=Depends(get_db)):
    new_id = create_document(database, "product", payload)
    return serialize_doc(database["product"].find_one({"_id": oid(new_id)}))


@app.post('/api/products/seed')
def seed_products(admin=Depends(current_admin), database=Depends(get_db)):
    existing = database["product"].count_documents({})
    if existing > 0:
        return {"message": "Products already exist", "count": existing}
    samples = [
        ProductSchema(title="Foldable Study Bed", description="Single folding bed for hostel rooms", price=3499, category="beds", stock_quantity=20, is_featured=True),
        ProductSchema(title="A4 Notebook Pack", description="Six ruled notebooks, 200 pages each", price=399, category="stationery", stock_quantity=200),
        ProductSchema(title="Engineering Mathematics", description="Standard first-year reference text", price=649, category="books", stock_quantity=50),
        ProductSchema(title="Bucket and Mug Set", description="Durable plastic bathware set", price=249, category="bathware", stock_quantity=80),
        ProductSchema(title="LED Desk Lamp", description="Rechargeable lamp with three brightness levels", price=899, category="dorm", is_featured=True),
    ]
    ids = [create_document(database, "product", s) for s in samples]
    return {"message": "Seeded products", "ids": ids}


@app.put('/api/products/{product_id}')
def update_product(product_id: str, payload: ProductUpdate, admin=Depends(current_admin), database=Depends(get_db)):
    nullable = {"stock_quantity", "image_url"}
    to_set = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None or k in nullable}
    to_set["updated_at"] = utcnow()
    res = database["product"].update_one({"_id": oid(product_id)}, {"$set": to_set})
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return get_product(product_id, database)


@app.delete('/api/products/{product_id}')
def delete_product(product_id: str, admin=Depends(current_admin), database=Depends(get_db)):
    res = database["product"].delete_one({"_id": oid(product_id)})
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    return {"success": True}


# Cart
@app.get('/api/cart')
def get_cart(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return {
        "items": services.cart.get_cart(user.user_id),
        "total": services.cart.get_cart_total(user.user_id),
        "count": services.cart.get_cart_count(user.user_id),
    }


@app.get('/api/cart/count')
def get_cart_count(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return {"count": services.cart.get_cart_count(user.user_id), "rows": services.cart.count_rows(user.user_id)}


@app.get('/api/cart/total')
def get_cart_total(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return {"total": services.cart.get_cart_total(user.user_id)}


@app.post('/api/cart')
def add_to_cart(payload: AddToCartRequest, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.cart.add_to_cart(user.user_id, payload.product_id, payload.quantity), user.user_id)


@app.put('/api/cart/{item_id}')
def update_cart_item(item_id: str, payload: UpdateQuantityRequest, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.cart.update_quantity(user.user_id, item_id, payload.quantity), user.user_id)


@app.delete('/api/cart/{item_id}')
def remove_cart_item(item_id: str, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.cart.remove_from_cart(user.user_id, item_id), user.user_id)


@app.delete('/api/cart')
def clear_cart(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.cart.clear_cart(user.user_id), user.user_id)


# Wishlist
@app.get('/api/wishlist')
def get_wishlist(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return {"items": services.wishlist.list(user.user_id)}


@app.post('/api/wishlist')
def add_to_wishlist(payload: WishlistRequest, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.wishlist.add(user.user_id, payload.product_id), user.user_id)


@app.delete('/api/wishlist/{item_id}')
def remove_wishlist_item(item_id: str, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.wishlist.remove(user.user_id, item_id), user.user_id)


# Checkout and orders
@app.post('/api/checkout')
def checkout(payload: CheckoutRequest, user: UserSession = Depends(current_user), services: Services = Depends(get_services), settings: Settings = Depends(get_settings)):
    # without simulation, orders come only from completed payment sessions
    if not settings.payment_simulation_enabled:
        raise NotAuthorized("Direct checkout is disabled; pay through a payment session")
    items = [i.model_dump() for i in payload.items] if payload.items is not None else None
    result = services.checkout.process_payment(
        user.user_id,
        payload.amount,
        items=items,
        payment_method=payload.payment_method,
        is_cod=payload.is_cod,
        transaction_id=payload.transaction_id,
    )
    return services.respond(result, user.user_id)


@app.get('/api/orders')
def list_orders(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return {"items": services.checkout.list_orders(user.user_id)}


@app.get('/api/orders/{order_id}')
def get_order(order_id: str, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.checkout.get_order(user.user_id, order_id)


@app.get('/api/admin/orders')
def admin_list_orders(status: Optional[str] = None, limit: int = 100, admin=Depends(current_admin), services: Services = Depends(get_services)):
    if status and status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {status}")
    return {"items": services.checkout.list_all_orders(status, limit)}


@app.put('/api/admin/orders/{order_id}/status')
def admin_update_order_status(order_id: str, payload: OrderStatusUpdate, admin=Depends(current_admin), services: Services = Depends(get_services)):
    return services.respond(services.checkout.update_order_status(order_id, payload.status))


@app.delete('/api/admin/orders/{order_id}')
def admin_delete_order(order_id: str, admin=Depends(current_admin), services: Services = Depends(get_services)):
    return services.respond(services.checkout.delete_order(order_id))


@app.get('/api/admin/stats')
def admin_stats(admin=Depends(current_admin), database=Depends(get_db)):
    revenue = 0
    for r in database["order"].aggregate([
        {"$match": {"order_status": {"$ne": "cancelled"}}},
        {"$group": {"_id": None, "sum": {"$sum": "$total_amount"}}},
    ]):
        revenue = r.get("sum", 0)
    return {
        "products": database["product"].count_documents({}),
        "orders": database["order"].count_documents({}),
        "pending_orders": database["order"].count_documents({"order_status": "pending"}),
        "customers": database["profile"].count_documents({}),
        "revenue": round(revenue, 2),
    }


# Referrals
@app.get('/api/referrals')
def referral_summary(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.referrals.summary(user.user_id)


@app.post('/api/referrals/redeem')
def redeem_referrals(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.referrals.request_redemption(user.user_id), user.user_id)


# Payments
@app.post('/api/payments/sessions')
def start_payment(payload: PaymentSessionRequest, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.payments.start(user.user_id, payload.is_cod, payload.upfront_amount), user.user_id)


@app.get('/api/payments/sessions/{session_id}')
def payment_status(session_id: str, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.payments.status(user.user_id, session_id)


@app.get('/api/payments/sessions/{session_id}/qr')
def payment_qr(session_id: str, user: UserSession = Depends(current_user), services: Services = Depends(get_services), client: httpx.Client = Depends(get_http_client)):
    status = services.payments.status(user.user_id, session_id)
    return {"qr_url": resolve_qr_url(status["upi_string"], client), "upi_string": status["upi_string"]}


@app.post('/api/payments/sessions/{session_id}/simulate-success')
def simulate_payment_success(session_id: str, user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return services.respond(services.payments.simulate_success(user.user_id, session_id), user.user_id)


# Notifications
@app.get('/api/notifications')
def drain_notifications(user: UserSession = Depends(current_user), services: Services = Depends(get_services)):
    return {"items": [n.model_dump(exclude={"created"}) for n in services.notifications.drain(user.user_id)]}


# Live changes
WATCHABLE_TABLES = {"cartitem", "wishlistitem", "order", "profile", "auth"}


@app.websocket('/ws/changes/{table}')
async def watch_changes(
    websocket: WebSocket,
    table: str,
    token: Optional[str] = None,
    services: Services = Depends(get_services),
    feed: ChangeFeed = Depends(get_feed),
):
    """Stream change events for one table of the caller's own rows."""
    session = services.auth.resolve(token)
    if not isinstance(session, UserSession) or table not in WATCHABLE_TABLES:
        await websocket.close(code=1008)
        return

    loop = asyncio.get_running_loop()
    events: asyncio.Queue = asyncio.Queue()
    unsubscribe = feed.subscribe(table, session.user_id, lambda change: loop.call_soon_threadsafe(events.put_nowait, change))
    await websocket.accept()

    async def forward():
        while True:
            change = await events.get()
            await websocket.send_json(change.model_dump())

    sender = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Change stream for %s/%s closed", table, session.user_id)
    finally:
        sender.cancel()
        unsubscribe()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
