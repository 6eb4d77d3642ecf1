from conftest import create_product


def test_vendor_creates_and_lists_products(client, vendor):
    headers, vendor_id = vendor
    product_id = create_product(client, headers, name="Lamp", category="Home")

    mine = client.get("/api/vendor/products", headers=headers).json()
    assert [p["id"] for p in mine] == [product_id]
    assert mine[0]["vendor_id"] == vendor_id

    res = client.get(f"/api/products/{product_id}")
    assert res.status_code == 200
    assert res.json()["name"] == "Lamp"


def test_product_requires_name_price_and_category(client, vendor):
    headers, _ = vendor
    res = client.post("/api/vendor/products", json={"name": "No price", "category": "Home"}, headers=headers)
    assert res.status_code == 422
    res = client.post("/api/vendor/products", json={"name": "", "price": 1, "category": "Home"}, headers=headers)
    assert res.status_code == 400


def test_listing_filters_and_ordering(client, vendor):
    headers, _ = vendor
    create_product(client, headers, name="Red Shirt", category="Fashion")
    create_product(client, headers, name="Blue Mug", description="Ceramic SHIRT-themed mug", category="Home")
    hidden = create_product(client, headers, name="Old Shirt", category="Fashion", is_active=False)

    names = [p["name"] for p in client.get("/api/products").json()]
    assert names == ["Blue Mug", "Red Shirt"]
    assert hidden not in [p["id"] for p in client.get("/api/products").json()]

    fashion = client.get("/api/products", params={"category": "Fashion"}).json()
    assert [p["name"] for p in fashion] == ["Red Shirt"]
    assert len(client.get("/api/products", params={"category": "All"}).json()) == 2

    search = client.get("/api/products", params={"search": "shirt"}).json()
    assert {p["name"] for p in search} == {"Red Shirt", "Blue Mug"}

    assert client.get("/api/products", params={"search": "(["}).json() == []


def test_categories_are_distinct_and_active_only(client, vendor):
    headers, _ = vendor
    create_product(client, headers, category="Home")
    create_product(client, headers, category="Home")
    create_product(client, headers, category="Toys")
    create_product(client, headers, category="Hidden", is_active=False)
    assert client.get("/api/categories").json() == ["Home", "Toys"]


def test_vendor_can_update_and_delete_own_product(client, vendor):
    headers, _ = vendor
    product_id = create_product(client, headers)
    res = client.patch(f"/api/vendor/products/{product_id}", json={"price": 12.5, "stock": 3}, headers=headers)
    assert res.status_code == 200
    assert res.json()["price"] == 12.5
    assert res.json()["stock"] == 3

    assert client.patch(f"/api/vendor/products/{product_id}", json={"price": -1}, headers=headers).status_code == 400
    assert client.patch(f"/api/vendor/products/{product_id}", json={}, headers=headers).status_code == 400

    assert client.delete(f"/api/vendor/products/{product_id}", headers=headers).status_code == 200
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_vendor_cannot_touch_other_vendors_products(client, vendor, second_vendor):
    headers, _ = vendor
    other_headers, _ = second_vendor
    product_id = create_product(client, headers)
    assert client.patch(f"/api/vendor/products/{product_id}", json={"price": 1}, headers=other_headers).status_code == 403
    assert client.delete(f"/api/vendor/products/{product_id}", headers=other_headers).status_code == 403


def test_missing_product_is_not_found(client, vendor):
    headers, _ = vendor
    assert client.get("/api/products/64b000000000000000000000").status_code == 404
    assert client.delete("/api/vendor/products/64b000000000000000000000", headers=headers).status_code == 404


def test_vendor_profile_update(client, vendor):
    headers, _ = vendor
    res = client.put("/api/vendor/profile", json={"brand_name": "Acme", "phone_number": "555"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["brand_name"] == "Acme"
    assert res.json()["phone_number"] == "555"
    assert res.json()["is_approved"] is False
