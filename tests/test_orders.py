import pytest
from bson import ObjectId

from cache import FEATURED_KEY, product_key
from errors import AuthorizationError, NotFoundError, ValidationError

ADDRESS = {"street": "1 Main St", "city": "Springfield", "state": "IL", "country": "US", "zip_code": "62701"}


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


def place_order(client, user, product_id, quantity):
    added = client.post("/api/cart/add", json={"product_id": product_id, "quantity": quantity},
                        headers=user["headers"])
    assert added.status_code == 200, added.text
    resp = client.post("/api/orders", json={"shipping_address": ADDRESS}, headers=user["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_checkout_and_cancel_end_to_end(client, db, make_user, make_product):
    user = make_user(email="a@x.com")
    login = client.post("/api/auth/login", json={"email": "a@x.com", "password": "password123"})
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['data']['access_token']}"}
    pid = make_product(price=12.5, stock=10)

    client.post("/api/cart/add", json={"product_id": pid, "quantity": 3}, headers=headers)
    created = client.post("/api/orders", json={"shipping_address": ADDRESS}, headers=headers)

    assert created.status_code == 201
    order = created.json()["data"]
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["total_amount"] == 37.5
    assert order["items"] == [{"product_id": pid, "name": "Product 1", "quantity": 3, "price": 12.5}]
    assert order["user_id"] == user["id"]
    assert stock_of(db, pid) == 7
    assert client.get("/api/cart", headers=headers).json()["data"]["items"] == []

    cancelled = client.post(f"/api/orders/{order['id']}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"
    assert stock_of(db, pid) == 10

    again = client.post(f"/api/orders/{order['id']}/cancel", headers=headers)
    assert again.status_code == 400
    assert stock_of(db, pid) == 10


def test_order_invalidates_product_and_featured_caches(services, cache, make_product):
    user_id = "64b000000000000000000001"
    pid = make_product(stock=30)
    services.catalog.get_product(pid)
    services.catalog.featured()
    services.carts.add_item(user_id, pid, 5)

    services.orders.create_order(user_id, ADDRESS)

    assert cache.get(product_key(pid)) is None
    assert cache.get(FEATURED_KEY) is None
    assert services.catalog.get_product(pid)["stock"] == 25


def test_listings_show_new_stock_after_checkout_and_cancel(client, make_user, make_product):
    user = make_user()
    pid = make_product(stock=10)
    assert client.get("/api/products").json()["data"]["products"][0]["stock"] == 10
    assert client.post("/api/products/info", json={"ids": [pid]}).json()["data"][pid]["stock"] == 10

    order = place_order(client, user, pid, 3)

    assert client.get("/api/products").json()["data"]["products"][0]["stock"] == 7
    assert client.post("/api/products/info", json={"ids": [pid]}).json()["data"][pid]["stock"] == 7

    client.post(f"/api/orders/{order['id']}/cancel", headers=user["headers"])

    assert client.get("/api/products").json()["data"]["products"][0]["stock"] == 10


def test_empty_cart_cannot_be_ordered(client, make_user):
    user = make_user()

    resp = client.post("/api/orders", json={"shipping_address": ADDRESS}, headers=user["headers"])

    assert resp.status_code == 400
    assert resp.json()["message"] == "Cart is empty"


def test_missing_address_fields_fail_validation(client, make_user):
    user = make_user()

    resp = client.post("/api/orders", json={"shipping_address": {"street": "x"}}, headers=user["headers"])

    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation failed"


def test_insufficient_stock_leaves_everything_untouched(services, db, make_product):
    user_id = "64b000000000000000000001"
    plenty = make_product(stock=10)
    scarce = make_product(stock=5)
    services.carts.add_item(user_id, plenty, 2)
    services.carts.add_item(user_id, scarce, 5)
    db["product"].update_one({"_id": ObjectId(scarce)}, {"$set": {"stock": 3}})

    with pytest.raises(ValidationError):
        services.orders.create_order(user_id, ADDRESS)

    assert stock_of(db, plenty) == 10
    assert stock_of(db, scarce) == 3
    assert db["order"].count_documents({}) == 0
    assert len(db["cart"].find_one({"user_id": user_id})["items"]) == 2


def test_reservation_rolls_back_earlier_lines(services, db, make_product):
    first = make_product(stock=10)
    second = make_product(stock=2)
    products = {str(p["_id"]): p for p in db["product"].find()}

    with pytest.raises(ValidationError):
        services.orders._reserve_stock([(first, 4), (second, 3)], products)

    assert stock_of(db, first) == 10
    assert stock_of(db, second) == 2


def test_deactivated_product_blocks_checkout(services, db, make_product):
    user_id = "64b000000000000000000001"
    pid = make_product()
    services.carts.add_item(user_id, pid, 1)
    db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"is_active": False}})

    with pytest.raises(ValidationError, match="no longer available"):
        services.orders.create_order(user_id, ADDRESS)


def test_order_list_is_cached_and_invalidated(client, services, make_user, make_product):
    user = make_user()
    pid = make_product(stock=50)
    place_order(client, user, pid, 1)

    first = client.get("/api/orders", headers=user["headers"]).json()["data"]
    hits = services.cache.stats["hits"]
    client.get("/api/orders", headers=user["headers"])
    assert services.cache.stats["hits"] == hits + 1
    assert first["pagination"]["total"] == 1

    place_order(client, user, pid, 2)
    second = client.get("/api/orders", headers=user["headers"]).json()["data"]
    assert second["pagination"]["total"] == 2

    order_id = second["orders"][0]["id"]
    client.post(f"/api/orders/{order_id}/cancel", headers=user["headers"])
    pending = client.get("/api/orders", params={"status": "pending"}, headers=user["headers"]).json()["data"]
    assert pending["pagination"]["total"] == 1


def test_orders_are_private_to_their_owner(client, make_user, make_product):
    owner = make_user()
    other = make_user()
    admin = make_user(role="admin")
    order = place_order(client, owner, make_product(), 1)

    assert client.get(f"/api/orders/{order['id']}", headers=owner["headers"]).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=other["headers"]).status_code == 404
    assert client.post(f"/api/orders/{order['id']}/cancel", headers=other["headers"]).status_code == 404
    assert client.get(f"/api/orders/{order['id']}", headers=admin["headers"]).status_code == 200
    assert client.get("/api/orders/not-an-id", headers=owner["headers"]).status_code == 404


def test_status_moves_forward_only_and_needs_admin(client, make_user, make_product):
    user = make_user()
    admin = make_user(role="admin")
    order = place_order(client, user, make_product(), 1)
    url = f"/api/orders/{order['id']}/status"

    assert client.put(url, json={"status": "processing"}, headers=user["headers"]).status_code == 403

    skipped = client.put(url, json={"status": "shipped"}, headers=admin["headers"])
    assert skipped.status_code == 400

    for status in ("processing", "shipped", "delivered"):
        resp = client.put(url, json={"status": status}, headers=admin["headers"])
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == status

    assert client.put(url, json={"status": "cancelled"}, headers=admin["headers"]).status_code == 400
    assert client.put(url, json={"status": "bogus"}, headers=admin["headers"]).status_code == 400


def test_admin_cancel_through_status_restores_stock(services, db, make_product):
    user_id = "64b000000000000000000001"
    admin = {"id": "64b0000000000000000000aa", "role": "admin"}
    pid = make_product(stock=10)
    services.carts.add_item(user_id, pid, 4)
    order = services.orders.create_order(user_id, ADDRESS)
    services.orders.update_status(admin, order["id"], "processing")

    cancelled = services.orders.update_status(admin, order["id"], "cancelled")

    assert cancelled["status"] == "cancelled"
    assert stock_of(db, pid) == 10


def test_shipped_orders_cannot_be_cancelled(services, make_product):
    user_id = "64b000000000000000000001"
    user = {"id": user_id, "role": "user"}
    admin = {"id": "64b0000000000000000000aa", "role": "admin"}
    services.carts.add_item(user_id, make_product(), 1)
    order = services.orders.create_order(user_id, ADDRESS)
    services.orders.update_status(admin, order["id"], "processing")
    services.orders.update_status(admin, order["id"], "shipped")

    with pytest.raises(ValidationError):
        services.orders.cancel_order(user, order["id"])


def test_non_admin_status_update_is_refused(services):
    with pytest.raises(AuthorizationError):
        services.orders.update_status({"id": "x", "role": "user"}, "64b000000000000000000009", "processing")


def test_unknown_order_is_not_found(services):
    admin = {"id": "64b0000000000000000000aa", "role": "admin"}
    with pytest.raises(NotFoundError):
        services.orders.update_status(admin, "64b000000000000000000009", "processing")
    with pytest.raises(NotFoundError):
        services.orders.cancel_order(admin, "64b000000000000000000009")
