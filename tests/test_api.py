import pytest
from fastapi import WebSocketDisconnect


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _signup(client, email="asha@daykart.in", referral_code=None):
    body = {"email": email, "password": "secret123", "full_name": "Asha"}
    if referral_code:
        body["referral_code"] = referral_code
    response = client.post("/api/auth/signup", json=body)
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


@pytest.fixture
def admin_token(client, settings):
    response = client.post("/api/auth/admin-login", json={"email": settings.admin_email, "password": settings.admin_password})
    return response.json()["data"]["token"]


@pytest.fixture
def seeded(client, admin_token):
    client.post("/api/products/seed", headers=bearer(admin_token))
    return {p["title"]: p for p in client.get("/api/products").json()["items"]}


def test_root(client):
    assert client.get("/").json() == {"message": "DayKart API"}


def test_catalog_filters(client, seeded):
    assert len(seeded) == 5
    beds = client.get("/api/products", params={"category": "beds"}).json()["items"]
    assert [p["title"] for p in beds] == ["Foldable Study Bed"]

    found = client.get("/api/products", params={"q": "lamp"}).json()["items"]
    assert [p["title"] for p in found] == ["LED Desk Lamp"]

    response = client.get("/api/products", params={"category": "gadgets"})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_product_admin_routes_are_gated(client, seeded):
    lamp = seeded["LED Desk Lamp"]
    user_token = _signup(client)

    assert client.post("/api/products/seed").status_code == 401
    assert client.delete(f"/api/products/{lamp['id']}", headers=bearer(user_token)).status_code == 403


def test_admin_product_crud(client, admin_token):
    headers = bearer(admin_token)
    created = client.post("/api/products", json={"title": "Bath Towel", "price": 299, "category": "bathware"}, headers=headers)
    assert created.status_code == 200
    product_id = created.json()["id"]

    updated = client.put(f"/api/products/{product_id}", json={"price": 349, "is_featured": True}, headers=headers)
    assert updated.json()["price"] == 349
    assert updated.json()["is_featured"] is True

    bad = client.post("/api/products", json={"title": "Bad", "price": 0, "category": "bathware"}, headers=headers)
    assert bad.status_code == 422

    assert client.delete(f"/api/products/{product_id}", headers=headers).json() == {"success": True}
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_cart_requires_login(client):
    response = client.get("/api/cart")
    assert response.status_code == 401
    assert response.json()["code"] == "not_authenticated"


def test_shopping_flow(client, seeded):
    token = _signup(client)
    headers = bearer(token)
    notebook = seeded["A4 Notebook Pack"]

    client.post("/api/cart", json={"product_id": notebook["id"]}, headers=headers)
    added = client.post("/api/cart", json={"product_id": notebook["id"]}, headers=headers)
    assert added.json()["data"]["cart_count"] == 2

    cart = client.get("/api/cart", headers=headers).json()
    assert cart["total"] == 798
    assert len(cart["items"]) == 1

    mismatch = client.post("/api/checkout", json={"amount": 399}, headers=headers)
    assert mismatch.status_code == 400
    assert mismatch.json()["code"] == "amount_mismatch"

    placed = client.post("/api/checkout", json={"amount": 798}, headers=headers)
    assert placed.status_code == 200
    order_id = placed.json()["data"]["order_id"]

    assert client.get("/api/cart/count", headers=headers).json() == {"count": 0, "rows": 0}
    orders = client.get("/api/orders", headers=headers).json()["items"]
    assert [o["id"] for o in orders] == [order_id]

    notes = client.get("/api/notifications", headers=headers).json()["items"]
    messages = [n["message"] for n in notes]
    assert "Order placed successfully!" in messages
    assert "Payment amount mismatch with cart total" in messages
    assert client.get("/api/notifications", headers=headers).json()["items"] == []


def test_admin_order_management(client, seeded, admin_token):
    headers = bearer(_signup(client))
    book = seeded["Engineering Mathematics"]
    client.post("/api/cart", json={"product_id": book["id"]}, headers=headers)
    order_id = client.post("/api/checkout", json={"amount": 649}, headers=headers).json()["data"]["order_id"]

    admin = bearer(admin_token)
    listed = client.get("/api/admin/orders", params={"status": "pending"}, headers=admin).json()["items"]
    assert [o["id"] for o in listed] == [order_id]

    moved = client.put(f"/api/admin/orders/{order_id}/status", json={"status": "processing"}, headers=admin)
    assert moved.json()["data"]["order_status"] == "processing"
    invalid = client.put(f"/api/admin/orders/{order_id}/status", json={"status": "pending"}, headers=admin)
    assert invalid.status_code == 400

    stats = client.get("/api/admin/stats", headers=admin).json()
    assert stats["orders"] == 1
    assert stats["revenue"] == 649
    assert stats["pending_orders"] == 0


def test_session_endpoint(client, admin_token):
    assert client.get("/api/auth/session").json() == {"kind": "anonymous"}
    assert client.get("/api/auth/session", headers=bearer(admin_token)).json()["kind"] == "admin"

    user = client.get("/api/auth/session", headers=bearer(_signup(client))).json()
    assert user["kind"] == "user"
    assert user["profile"]["email"] == "asha@daykart.in"


def test_referral_flow_over_http(client, seeded):
    referrer = bearer(_signup(client))
    code = client.get("/api/referrals", headers=referrer).json()["referral_code"]

    buyer = bearer(_signup(client, email="ben@daykart.in", referral_code=code))
    bed = seeded["Foldable Study Bed"]
    client.post("/api/cart", json={"product_id": bed["id"]}, headers=buyer)
    placed = client.post("/api/checkout", json={"amount": 3499}, headers=buyer).json()

    assert placed["data"]["referral_awarded"] is True
    summary = client.get("/api/referrals", headers=referrer).json()
    assert summary["total_rewards"] == 50
    assert summary["referred_users"] == 1


def test_payment_session_flow(client, seeded):
    headers = bearer(_signup(client))
    client.post("/api/cart", json={"product_id": seeded["Bucket and Mug Set"]["id"], "quantity": 2}, headers=headers)

    started = client.post("/api/payments/sessions", json={}, headers=headers).json()["data"]
    assert started["amount"] == 498

    session_id = started["session_id"]
    assert client.get(f"/api/payments/sessions/{session_id}", headers=headers).json()["status"] == "pending"

    done = client.post(f"/api/payments/sessions/{session_id}/simulate-success", headers=headers)
    assert done.status_code == 200
    assert done.json()["data"]["total_amount"] == 498
    assert client.get(f"/api/payments/sessions/{session_id}", headers=headers).json()["status"] == "completed"


@pytest.fixture
def simulation_off(client):
    import main
    from config import Settings

    main.app.dependency_overrides[main.get_settings] = lambda: Settings()
    return client


def test_direct_checkout_refused_without_simulation(client, seeded, simulation_off):
    headers = bearer(_signup(client))
    client.post("/api/cart", json={"product_id": seeded["LED Desk Lamp"]["id"]}, headers=headers)

    response = client.post("/api/checkout", json={"amount": 899, "transaction_id": "FAKE"}, headers=headers)

    assert response.status_code == 403
    assert response.json()["code"] == "not_authorized"
    assert client.get("/api/orders", headers=headers).json()["items"] == []
    assert client.get("/api/cart/count", headers=headers).json()["count"] == 1

    session_id = client.post("/api/payments/sessions", json={}, headers=headers).json()["data"]["session_id"]
    simulated = client.post(f"/api/payments/sessions/{session_id}/simulate-success", headers=headers)
    assert simulated.status_code == 403


def test_change_stream_delivers_own_cart_events(client, seeded):
    token = _signup(client)
    other = bearer(_signup(client, email="ben@daykart.in"))
    lamp = seeded["LED Desk Lamp"]["id"]

    with client.websocket_connect(f"/ws/changes/cartitem?token={token}") as ws:
        client.post("/api/cart", json={"product_id": lamp}, headers=other)
        item_id = client.post("/api/cart", json={"product_id": lamp}, headers=bearer(token)).json()["data"]["item_id"]
        event = ws.receive_json()

    assert event["table"] == "cartitem"
    assert event["event"] == "insert"
    assert event["row_id"] == item_id


def test_change_stream_requires_login_and_known_table(client):
    token = _signup(client)

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/changes/cartitem") as ws:
            ws.receive_json()
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/changes/user?token={token}") as ws:
            ws.receive_json()
