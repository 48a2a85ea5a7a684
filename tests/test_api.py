from decimal import Decimal

from conftest import bearer


async def test_cart_requires_user_or_session(client):
    resp = await client.get("/cart")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "User ID or Session ID required", "details": None}


async def test_guest_cart_flow(client, catalogue):
    resp = await client.post("/cart/items", json={"sku": "valve-1", "quantity": 2, "session_id": "guest-1"})
    assert resp.status_code == 200
    cart = resp.json()["data"]
    assert cart["session_id"] == "guest-1"
    assert cart["item_count"] == 2
    assert Decimal(cart["subtotal"]) == Decimal("240.00")
    assert Decimal(cart["total"]) == Decimal("274.00")
    assert Decimal(cart["items"][0]["line_total"]) == Decimal("240.00")

    resp = await client.put("/cart/items/VALVE-1", json={"quantity": 1, "session_id": "guest-1"})
    assert resp.json()["data"]["item_count"] == 1

    resp = await client.delete("/cart/items/VALVE-1", params={"session_id": "guest-1"})
    assert resp.json()["data"]["items"] == []

    resp = await client.delete("/cart/items/VALVE-1", params={"session_id": "guest-1"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "Item not found in cart"


async def test_quantity_validation(client, catalogue):
    for quantity in (0, -3, 101, 2.5, "2"):
        resp = await client.post("/cart/items", json={"sku": "VALVE-1", "quantity": quantity, "session_id": "g"})
        assert resp.status_code == 400, quantity
        assert resp.json()["success"] is False


async def test_token_identity_wins_over_session(client, catalogue):
    headers = bearer("cust-a")
    resp = await client.post(
        "/cart/items", json={"sku": "SEAL-1", "quantity": 1, "session_id": "guest-1"}, headers=headers
    )
    cart = resp.json()["data"]
    assert cart["customer_id"] == "cust-a"
    assert cart["session_id"] is None


async def test_invalid_token_is_rejected(client):
    resp = await client.get("/cart", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"

    resp = await client.get("/cart", headers={"Authorization": "Basic abc"})
    assert resp.status_code == 401


async def test_product_price_depends_on_reader(client, catalogue):
    admin = bearer("admin-1", role="admin")
    resp = await client.put("/admin/pricing/cust-a/VALVE-1", json={"price": "95.50"}, headers=admin)
    assert resp.status_code == 200
    assert resp.json()["data"]["id"] == "cust-a_prod-valve-1"

    anonymous = (await client.get("/products/VALVE-1")).json()["data"]
    customer = (await client.get("/products/VALVE-1", headers=bearer("cust-a"))).json()["data"]

    assert Decimal(anonymous["price"]) == Decimal("120.00")
    assert anonymous["has_custom_price"] is False
    assert Decimal(customer["price"]) == Decimal("95.50")
    assert customer["has_custom_price"] is True
    assert Decimal(customer["base_price"]) == Decimal("120.00")

    assert (await client.get("/products/NOPE")).status_code == 404


async def test_product_listing(client, catalogue):
    resp = await client.get("/products", params={"category": "valves"})
    assert [p["sku"] for p in resp.json()["data"]] == ["VALVE-1"]


async def test_admin_endpoints_require_admin(client, catalogue):
    resp = await client.put("/admin/pricing/cust-a/VALVE-1", json={"price": "1.00"}, headers=bearer("cust-a"))
    assert resp.status_code == 403

    resp = await client.get("/admin/cache/stats")
    assert resp.status_code == 401


async def test_admin_role_comes_from_customer_record(client, catalogue, db):
    await db.customers.insert_one({"_id": "ops-1", "role": "admin"})
    resp = await client.get("/admin/cache/stats", headers=bearer("ops-1", role="customer"))
    assert resp.status_code == 200


async def test_override_validation_errors(client, catalogue):
    admin = bearer("admin-1", role="admin")
    resp = await client.put("/admin/pricing/cust-a/VALVE-1", json={"price": "-1"}, headers=admin)
    assert resp.status_code == 400
    resp = await client.put("/admin/pricing/cust-a/NOPE", json={"price": "1"}, headers=admin)
    assert resp.status_code == 404


async def test_bulk_and_list_overrides(client, catalogue):
    admin = bearer("admin-1", role="admin")
    rows = [{"sku": "VALVE-1", "price": "100"}, {"sku": "NOPE", "price": "1"}]
    resp = await client.post("/admin/pricing/cust-a/bulk", json={"rows": rows}, headers=admin)
    result = resp.json()["data"]
    assert (result["successful_updates"], result["failed_updates"]) == (1, 1)

    resp = await client.get("/admin/pricing/cust-a", headers=admin)
    assert [o["sku"] for o in resp.json()["data"]] == ["VALVE-1"]

    resp = await client.delete("/admin/pricing/cust-a/VALVE-1", headers=admin)
    assert resp.json()["data"] == {"deactivated": 1}


async def test_admin_product_upsert(client, db):
    admin = bearer("admin-1", role="admin")
    resp = await client.put(
        "/admin/products/gasket-9", json={"name": "Gasket", "base_price": "3.50", "category": "seals"}, headers=admin
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["sku"] == "GASKET-9"

    resp = await client.put("/admin/products/GASKET-9", json={"stock": 5}, headers=admin)
    assert resp.status_code == 400


async def test_checkout_flow(client, catalogue):
    headers = bearer("cust-a")
    await client.post("/cart/items", json={"sku": "PUMP-1", "quantity": 2}, headers=headers)
    await client.post("/cart/items", json={"sku": "SEAL-1", "quantity": 1, "session_id": "guest-1"})

    resp = await client.post("/cart/merge", json={"session_id": "guest-1"}, headers=headers)
    assert resp.status_code == 200
    assert [i["sku"] for i in resp.json()["data"]["items"]] == ["PUMP-1", "SEAL-1"]

    order_payload = {
        "shipping_info": {
            "full_name": "Buyer",
            "address_line1": "1 Main St",
            "city": "Springfield",
            "postal_code": "12345",
            "country": "US",
        },
        "notes": "<b>ring twice</b>",
    }
    resp = await client.post("/orders", json=order_payload, headers=headers)
    assert resp.status_code == 200
    order = resp.json()["data"]
    assert order["status"] == "pending"
    assert order["payment_method"] == "invoice"
    assert order["notes"] == "&lt;b&gt;ring twice&lt;/b&gt;"
    assert Decimal(order["subtotal"]) == Decimal("903.25")
    # free shipping from 1000 onwards, not reached
    assert Decimal(order["shipping"]) == Decimal("10.00")

    cart = (await client.get("/cart", headers=headers)).json()["data"]
    assert cart["items"] == []

    orders = (await client.get("/orders", headers=headers)).json()["data"]
    assert [o["id"] for o in orders] == [order["id"]]
    assert (await client.get(f"/orders/{order['id']}", headers=bearer("cust-b"))).status_code == 404

    resp = await client.post("/orders", json={}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Cart is empty"


async def test_order_status_update(client, catalogue):
    headers = bearer("cust-a")
    admin = bearer("admin-1", role="admin")
    await client.post("/cart/items", json={"sku": "VALVE-1", "quantity": 1}, headers=headers)
    order_id = (await client.post("/orders", json={}, headers=headers)).json()["data"]["id"]

    resp = await client.put(f"/admin/orders/{order_id}/status", json={"status": "confirmed"}, headers=admin)
    assert resp.json()["data"]["status"] == "confirmed"

    resp = await client.put(f"/admin/orders/{order_id}/status", json={"status": "pending"}, headers=admin)
    assert resp.status_code == 400

    resp = await client.put(f"/admin/orders/{order_id}/status", json={"status": "lost"}, headers=admin)
    assert resp.status_code == 400

    resp = await client.get(f"/orders/{order_id}", headers=headers)
    assert resp.json()["data"]["status"] == "confirmed"


async def test_cache_admin(client, catalogue):
    admin = bearer("admin-1", role="admin")
    await client.get("/products/VALVE-1")

    stats = (await client.get("/admin/cache/stats", headers=admin)).json()["data"]
    assert stats["product_keys"] == 1

    resp = await client.put("/admin/cache/keys/custom:flag", json={"value": {"on": True}, "ttl": 60}, headers=admin)
    assert resp.status_code == 200
    resp = await client.get("/admin/cache/keys/custom:flag", headers=admin)
    assert resp.json()["data"] == {"key": "custom:flag", "value": {"on": True}}
    resp = await client.delete("/admin/cache/keys/custom:flag", headers=admin)
    assert resp.json()["data"] == {"deleted": 1}
    assert (await client.get("/admin/cache/keys/custom:flag", headers=admin)).status_code == 404

    resp = await client.post("/admin/cache/clear-pattern", json={"pattern": "product:*"}, headers=admin)
    assert resp.json()["data"]["deleted"] == 1
    resp = await client.post("/admin/cache/clear-pattern", json={"pattern": "a b"}, headers=admin)
    assert resp.status_code == 400

    resp = await client.post("/admin/cache/warm", json={"customer_ids": ["cust-a"]}, headers=admin)
    assert resp.json()["data"] == {"warmed": 6}

    resp = await client.post("/admin/cache/clear", headers=admin)
    assert resp.status_code == 200
    stats = (await client.get("/admin/cache/stats", headers=admin)).json()["data"]
    assert stats["total_keys"] == 0


async def test_new_product_shows_up_in_cached_listing(client, catalogue, db):
    admin = bearer("admin-1", role="admin")
    assert len((await client.get("/products")).json()["data"]) == 3

    await client.put("/admin/products/NEW-1", json={"name": "New", "base_price": "1.00"}, headers=admin)

    assert len((await client.get("/products")).json()["data"]) == 4


async def test_health(client, repo, monkeypatch):
    async def ping():
        return True

    monkeypatch.setattr(repo.store, "ping", ping)
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["dependencies"] == {"redis": "connected"}


async def test_responses_carry_request_id_and_security_headers(client):
    resp = await client.get("/cart", params={"session_id": "g"}, headers={"X-Request-ID": "req-1"})
    assert resp.headers["X-Request-ID"] == "req-1"
    assert resp.headers["Cache-Control"] == "no-store"
    assert resp.headers["X-Frame-Options"] == "DENY"
