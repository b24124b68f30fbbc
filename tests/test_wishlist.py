from bson import ObjectId


def add(client, headers, product_id):
    return client.post("/api/wishlist", json={"productId": product_id}, headers=headers)


def test_add_twice_is_duplicate(client, shopper_headers):
    product_id = str(ObjectId())

    r = add(client, shopper_headers, product_id)
    assert r.status_code == 201
    item = r.get_json()
    assert item["productId"] == product_id
    assert item["notes"] == ""
    assert item["addedAt"] == item["updatedAt"]

    r = add(client, shopper_headers, product_id)
    assert r.status_code == 400
    assert r.get_json() == {"message": "Already in wishlist"}


def test_same_product_for_two_owners(client, shopper_headers, make_headers):
    product_id = str(ObjectId())
    assert add(client, shopper_headers, product_id).status_code == 201
    assert add(client, make_headers("friend@example.com"), product_id).status_code == 201


def test_add_requires_product_id(client, shopper_headers):
    r = client.post("/api/wishlist", json={}, headers=shopper_headers)
    assert r.status_code == 400


def test_check(client, shopper_headers):
    product_id = str(ObjectId())
    r = client.get(f"/api/wishlist/check/{product_id}", headers=shopper_headers)
    assert r.get_json() == {"exists": False, "itemId": None}

    item_id = add(client, shopper_headers, product_id).get_json()["id"]
    r = client.get(f"/api/wishlist/check/{product_id}", headers=shopper_headers)
    assert r.get_json() == {"exists": True, "itemId": item_id}


def test_list_enriches_with_products(client, shopper_headers, create_product, admin_headers):
    product = create_product(name="Glacier Sorbet")
    add(client, shopper_headers, product["id"])
    add(client, shopper_headers, "legacy-sku-42")

    r = client.get("/api/wishlist", headers=shopper_headers)
    assert r.status_code == 200
    entries = {entry["productId"]: entry for entry in r.get_json()}
    assert entries[product["id"]]["product"]["name"] == "Glacier Sorbet"
    assert entries["legacy-sku-42"]["product"] is None

    client.delete(f"/api/products/{product['id']}", headers=admin_headers)
    entries = client.get("/api/wishlist", headers=shopper_headers).get_json()
    assert all(entry["product"] is None for entry in entries)


def test_update_notes(client, database, shopper_headers, make_headers):
    item_id = add(client, shopper_headers, "sku-1").get_json()["id"]

    r = client.put(f"/api/wishlist/{item_id}", json={"notes": "for birthday"}, headers=shopper_headers)
    assert r.status_code == 200
    assert database.wishlist.find_one({"_id": ObjectId(item_id)})["notes"] == "for birthday"

    other = make_headers("other@example.com")
    r = client.put(f"/api/wishlist/{item_id}", json={"notes": "mine now"}, headers=other)
    assert r.status_code == 404

    r = client.put("/api/wishlist/garbage", json={"notes": "x"}, headers=shopper_headers)
    assert r.status_code == 400


def test_delete_not_owned_is_not_found(client, database, shopper_headers, make_headers):
    item_id = add(client, shopper_headers, "sku-2").get_json()["id"]

    r = client.delete(f"/api/wishlist/{item_id}", headers=make_headers("thief@example.com"))
    assert r.status_code == 404
    assert database.wishlist.count_documents({}) == 1

    r = client.delete(f"/api/wishlist/{item_id}", headers=shopper_headers)
    assert r.status_code == 200
    assert database.wishlist.count_documents({}) == 0

    r = client.delete("/api/wishlist/garbage", headers=shopper_headers)
    assert r.status_code == 400


def test_delete_by_product(client, shopper_headers, make_headers):
    product_id = str(ObjectId())
    add(client, shopper_headers, product_id)

    r = client.delete(f"/api/wishlist/by-product/{product_id}", headers=make_headers("x@example.com"))
    assert r.status_code == 404

    r = client.delete(f"/api/wishlist/by-product/{product_id}", headers=shopper_headers)
    assert r.status_code == 200
    assert r.get_json()["success"] is True

    r = client.delete(f"/api/wishlist/by-product/{product_id}", headers=shopper_headers)
    assert r.status_code == 404


def test_wishlist_requires_token(client):
    assert client.get("/api/wishlist").status_code == 401
