from datetime import timedelta

import database
from database import utcnow

NEW_CUSTOMER = {
    "name": "Meera Iyer",
    "email": "Meera@Example.com",
    "mobile": "9988776655",
    "password": "secret123",
    "address": {"line1": "4 Park Street", "area": "Park Circus", "city": "Kolkata", "pincode": "700016"},
}

SHIRT = {
    "name": "Oxford Shirt",
    "description": "Cotton oxford shirt",
    "type": "top",
    "gender": "m",
    "activity": "office",
    "available_colors": ["White", "blue"],
    "available_sizes": ["M", "L"],
}


def test_root(client):
    assert client.get("/").status_code == 200


def test_register_then_login(client, db):
    res = client.post("/auth/register", json=NEW_CUSTOMER)
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    assert body["data"]["user"]["email"] == "meera@example.com"
    assert body["data"]["user"]["role"] == "customer"

    res = client.post("/auth/login", json={"email": "meera@example.com", "password": "secret123"})
    assert res.status_code == 200
    token = res.json()["data"]["token"]

    me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()["data"]
    assert me["name"] == "Meera Iyer"
    assert "hashed_password" not in me


def test_duplicate_email_conflicts(client, customer_doc):
    res = client.post("/auth/register", json={**NEW_CUSTOMER, "email": "asha@example.com"})
    assert res.status_code == 409
    assert res.json() == {"success": False, "message": "Email already registered"}


def test_bad_login(client, customer_doc):
    res = client.post("/auth/login", json={"email": "asha@example.com", "password": "wrong-one"})
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_seed_owner_needs_key(client):
    res = client.post("/auth/seed-owner", json={**NEW_CUSTOMER, "seed_key": "guess"})
    assert res.status_code == 403


def test_request_validation_is_400(client):
    res = client.post("/auth/register", json={**NEW_CUSTOMER, "mobile": "123"})
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["message"].startswith("mobile")


def test_owner_routes_are_gated(client, customer_headers):
    assert client.get("/orders").status_code == 401
    assert client.get("/orders", headers={"Authorization": "Bearer not-a-token"}).status_code == 401
    res = client.post("/collections", json={"name": "Monsoon", "image_url": "x.jpg"}, headers=customer_headers)
    assert res.status_code == 403
    assert res.json()["success"] is False


def test_catalog_reads_are_public(client, product, variants):
    res = client.get("/products")
    assert res.status_code == 200
    body = res.json()
    assert body["pagination"] == {"page": 1, "pages": 1, "total": 1}
    assert body["data"][0]["id"] == str(product["_id"])

    detail = client.get(f"/products/{product['_id']}").json()["data"]
    assert {q["size"] for q in detail["quantities"]} == {"S", "M"}
    assert len(client.get(f"/products/{product['_id']}/quantities").json()["data"]) == 2


def test_invalid_and_missing_ids(client):
    res = client.get("/collections/not-an-id")
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid collection ID"
    assert client.get(f"/collections/{'0' * 24}").status_code == 404


def test_collection_product_lifecycle(client, owner_headers):
    res = client.post("/collections", json={"name": "Summer", "image_url": "https://cdn/s.jpg"},
                      headers=owner_headers)
    assert res.status_code == 201
    cid = res.json()["data"]["id"]

    res = client.post("/products", json={**SHIRT, "collection_id": cid}, headers=owner_headers)
    assert res.status_code == 201
    pid = res.json()["data"]["id"]
    assert res.json()["data"]["available_colors"] == ["white", "blue"]
    assert client.get(f"/collections/{cid}").json()["data"]["products_count"] == 1

    assert client.delete(f"/collections/{cid}", headers=owner_headers).status_code == 409
    res = client.delete(f"/products/{pid}", headers=owner_headers)
    assert res.json() == {"success": True, "message": "Product deleted successfully"}
    assert client.get(f"/collections/{cid}").json()["data"]["products_count"] == 0
    assert client.delete(f"/collections/{cid}", headers=owner_headers).status_code == 200


def test_variant_batch_over_http(client, owner_headers, product):
    url = f"/products/{product['_id']}/quantities"
    rows = [{"size": "s", "color": "Red", "quantity": 4, "price": 999}]
    res = client.put(url, json={"quantities": rows}, headers=owner_headers)
    assert res.status_code == 200
    assert res.json()["data"][0]["size"] == "S"

    res = client.put(url, json={"quantities": [{"size": "L", "color": "red", "quantity": 1, "price": 1}]},
                     headers=owner_headers)
    assert res.status_code == 400


def test_customer_places_and_owner_ships_order(client, customer_headers, owner_headers, variants):
    res = client.post("/orders", json={"items": [{"variant_id": str(variants[0]["_id"]), "quantity": 2}]},
                      headers=customer_headers)
    assert res.status_code == 201
    order = res.json()["data"]
    assert order["final_amount"] == 1998

    assert client.get(f"/orders/{order['id']}", headers=customer_headers).status_code == 200
    mine = client.get("/me/orders", headers=customer_headers).json()
    assert [o["id"] for o in mine["data"]] == [order["id"]]

    res = client.put(f"/orders/{order['id']}/status", json={"status": "shipped"}, headers=owner_headers)
    assert res.status_code == 409

    res = client.put(f"/orders/{order['id']}/status", json={"status": "confirmed"}, headers=owner_headers)
    assert res.json()["data"]["status"] == "confirmed"

    res = client.put(f"/orders/{order['id']}/status", json={"status": "lost"}, headers=owner_headers)
    assert res.status_code == 400

    res = client.put(f"/orders/{order['id']}/status", json={"status": "confirmed"}, headers=customer_headers)
    assert res.status_code == 403


def test_coupon_check_over_http(client, owner_headers, customer_headers, customer_doc):
    expiry = (utcnow() + timedelta(days=10)).isoformat()
    res = client.post("/coupons", json={"coupon_code": "save20", "reduction_percent": 20, "expiry_date": expiry},
                      headers=owner_headers)
    assert res.status_code == 201
    coupon_id = res.json()["data"]["id"]

    res = client.post("/coupons/validate", json={"coupon_code": "SAVE20", "subtotal": 1000},
                      headers=customer_headers)
    assert res.json()["data"] == {"coupon_code": "SAVE20", "discount_amount": 200, "final_amount": 800}

    stats = client.get(f"/coupons/{coupon_id}/stats", headers=owner_headers).json()["data"]
    assert stats["total_used"] == 0

    res = client.patch(f"/coupons/{coupon_id}/toggle", headers=owner_headers)
    assert res.json()["data"]["is_active"] is False
    res = client.post("/coupons/validate", json={"coupon_code": "SAVE20", "subtotal": 1000},
                      headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Coupon is not active"


def test_packages_flow(client, owner_headers, customer_headers, variants):
    order = client.post("/orders", json={"items": [{"variant_id": str(variants[1]["_id"]), "quantity": 1}]},
                        headers=customer_headers).json()["data"]

    res = client.post("/packages", json={"order_ids": [order["id"]]}, headers=owner_headers)
    assert res.status_code == 400

    client.put(f"/orders/{order['id']}/status", json={"status": "confirmed"}, headers=owner_headers)
    res = client.post("/packages", json={"order_ids": [order["id"]], "courier_service": "BlueDart"},
                      headers=owner_headers)
    assert res.status_code == 201
    package = res.json()["data"]
    assert package["status"] == "packed"
    assert package["package_number"].startswith("PKG")

    assert client.post("/packages", json={"order_ids": [order["id"]]}, headers=owner_headers).status_code == 409

    res = client.put(f"/packages/{package['id']}/status", json={"status": "shipped", "tracking_id": "BD123"},
                     headers=owner_headers)
    assert res.json()["data"]["tracking_id"] == "BD123"
    res = client.put(f"/packages/{package['id']}/status", json={"status": "packed"}, headers=owner_headers)
    assert res.status_code == 409

    res = client.put(f"/packages/{package['id']}/status", json={"status": "delivered"}, headers=owner_headers)
    assert res.json()["data"]["actual_delivery"] is not None

    linked = client.get(f"/orders/{order['id']}/packages", headers=owner_headers).json()["data"]
    assert [p["id"] for p in linked] == [package["id"]]


def test_customer_admin(client, owner_headers, customer_doc):
    res = client.get("/customers", params={"search": "asha"}, headers=owner_headers)
    assert [c["email"] for c in res.json()["data"]] == ["asha@example.com"]

    res = client.patch(f"/customers/{customer_doc['_id']}/status", json={"is_active": False}, headers=owner_headers)
    assert res.json()["data"]["is_active"] is False
    res = client.post("/auth/login", json={"email": "asha@example.com", "password": "secret123"})
    assert res.status_code == 401


def test_analytics_routes(client, owner_headers):
    res = client.get("/analytics/orders-stats", params={"period": "month"}, headers=owner_headers)
    assert res.json()["data"]["total_stats"]["total_orders"] == 0
    assert client.get("/analytics/orders-stats", params={"period": "decade"},
                      headers=owner_headers).status_code == 400
    assert client.get("/analytics/top-products", headers=owner_headers).json()["data"] == []


def test_discount_prices_product(client, owner_headers, product, variants):
    start = (utcnow() - timedelta(days=1)).isoformat()
    end = (utcnow() + timedelta(days=1)).isoformat()
    res = client.post("/discounts", json={"name": "Flash", "discount_percent": 10, "start_date": start,
                                          "end_date": end, "products": [str(product["_id"])]},
                      headers=owner_headers)
    assert res.status_code == 201
    assert res.json()["data"]["products"] == [str(product["_id"])]

    detail = client.get(f"/products/{product['_id']}").json()["data"]
    assert detail["discount"]["name"] == "Flash"
    assert {q["size"]: q["sale_price"] for q in detail["quantities"]} == {"S": 899.1, "M": 1080}

    res = client.put(f"/discounts/{res.json()['data']['id']}", json={"end_date": start}, headers=owner_headers)
    assert res.status_code == 400


def test_update_own_profile(client, customer_headers):
    res = client.put("/me", json={"name": "Asha R"}, headers=customer_headers)
    assert res.status_code == 200
    assert res.json()["data"]["name"] == "Asha R"


def test_database_status_route(client, monkeypatch, db, customer_doc):
    monkeypatch.setattr(database, "db", None)
    assert client.get("/test").json()["database"] == "not configured"
    monkeypatch.setattr(database, "db", db)
    body = client.get("/test").json()
    assert body["database"] == "connected"
    assert body["documents"]["user"] == 1
