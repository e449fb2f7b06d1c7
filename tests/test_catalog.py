from bson import ObjectId

import config


def test_create_category_requires_staff(client, user_headers):
    res = client.post("/api/v1/categories", json={"name": "Books"})
    assert res.status_code == 401
    assert res.json()["status"] == "fail"

    res = client.post("/api/v1/categories", json={"name": "Books"}, headers=user_headers)
    assert res.status_code == 403


def test_category_crud(client, manager_headers, admin_headers, db):
    res = client.post("/api/v1/categories", json={"name": "Home Garden", "image": "cat.jpeg"}, headers=manager_headers)
    assert res.status_code == 201
    created = res.json()["data"]
    assert created["slug"] == "home-garden"
    assert created["image"] == f"{config.BASE_URL}/uploads/categories/cat.jpeg"
    assert created["created_at"] and created["updated_at"]
    # stored name stays relative
    assert db["category"].find_one({"_id": ObjectId(created["id"])})["image"] == "cat.jpeg"

    res = client.get(f"/api/v1/categories/{created['id']}")
    assert res.status_code == 200
    assert res.json()["data"]["name"] == "Home Garden"

    res = client.put(f"/api/v1/categories/{created['id']}", json={"name": "Garden"}, headers=manager_headers)
    assert res.status_code == 200
    assert res.json()["data"]["slug"] == "garden"
    assert res.json()["data"]["id"] == created["id"]

    res = client.delete(f"/api/v1/categories/{created['id']}", headers=manager_headers)
    assert res.status_code == 403

    res = client.delete(f"/api/v1/categories/{created['id']}", headers=admin_headers)
    assert res.status_code == 204
    assert client.get(f"/api/v1/categories/{created['id']}").status_code == 404


def test_missing_required_field_is_named(client, manager_headers):
    res = client.post("/api/v1/categories", json={"description": "no name"}, headers=manager_headers)
    assert res.status_code == 400
    body = res.json()
    assert body["message"] == "Validation failed"
    assert "name" in body["errors"]


def test_unknown_id_yields_404_with_id(client, manager_headers, admin_headers):
    missing = str(ObjectId())
    for method, headers in (("get", {}), ("put", manager_headers), ("delete", admin_headers)):
        kwargs = {"headers": headers}
        if method == "put":
            kwargs["json"] = {"name": "Whatever"}
        res = getattr(client, method)(f"/api/v1/categories/{missing}", **kwargs)
        assert res.status_code == 404
        assert missing in res.json()["message"]


def test_malformed_id_is_400(client):
    res = client.get("/api/v1/brands/not-an-id")
    assert res.status_code == 400
    assert "id" in res.json()["errors"]


def test_duplicate_name_is_409(client, manager_headers):
    assert client.post("/api/v1/brands", json={"name": "Acme"}, headers=manager_headers).status_code == 201
    res = client.post("/api/v1/brands", json={"name": "Acme"}, headers=manager_headers)
    assert res.status_code == 409


def test_nested_subcategories(client, manager_headers, category):
    res = client.post(
        f"/api/v1/categories/{category['_id']}/subcategories", json={"name": "Phones"}, headers=manager_headers
    )
    assert res.status_code == 201
    assert res.json()["data"]["category"] == str(category["_id"])

    res = client.post("/api/v1/subcategories", json={"name": "Orphan"}, headers=manager_headers)
    assert res.status_code == 400
    assert "category" in res.json()["errors"]

    res = client.get(f"/api/v1/categories/{category['_id']}/subcategories")
    assert [s["name"] for s in res.json()["data"]] == ["Phones"]


def test_product_references_are_validated(client, manager_headers, category):
    body = {
        "title": "Smart Watch",
        "description": "A watch that is smart enough for everyone",
        "quantity": 5,
        "price": 199,
        "category": str(ObjectId()),
    }
    res = client.post("/api/v1/products", json=body, headers=manager_headers)
    assert res.status_code == 400
    assert "category" in res.json()["errors"]

    body["category"] = str(category["_id"])
    body["price_after_discount"] = 250
    res = client.post("/api/v1/products", json=body, headers=manager_headers)
    assert res.status_code == 400
    assert "price_after_discount" in res.json()["errors"]

    body["price_after_discount"] = 150
    body["images"] = ["a.jpeg", "https://cdn.example.com/b.jpeg"]
    res = client.post("/api/v1/products", json=body, headers=manager_headers)
    assert res.status_code == 201
    product = res.json()["data"]
    assert product["slug"] == "smart-watch"
    assert product["sold"] == 0
    assert product["images"] == [
        f"{config.BASE_URL}/uploads/products/a.jpeg",
        "https://cdn.example.com/b.jpeg",
    ]


def test_reviews_update_product_ratings(client, make_user, headers_for, make_product, db):
    product = make_product()
    alice, bob = make_user("user"), make_user("user")

    res = client.post(
        f"/api/v1/products/{product['_id']}/reviews", json={"title": "Great", "ratings": 5}, headers=headers_for(alice)
    )
    assert res.status_code == 201
    review_id = res.json()["data"]["id"]
    client.post("/api/v1/reviews", json={"ratings": 2, "product": str(product["_id"])}, headers=headers_for(bob))

    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["ratings_quantity"] == 2
    assert stored["ratings_average"] == 3.5

    res = client.get(f"/api/v1/products/{product['_id']}")
    assert len(res.json()["data"]["reviews"]) == 2

    res = client.post(f"/api/v1/products/{product['_id']}/reviews", json={"ratings": 4}, headers=headers_for(alice))
    assert res.status_code == 409

    # bob cannot touch alice's review
    res = client.put(f"/api/v1/reviews/{review_id}", json={"ratings": 1}, headers=headers_for(bob))
    assert res.status_code == 403

    res = client.put(f"/api/v1/reviews/{review_id}", json={"ratings": 4}, headers=headers_for(alice))
    assert res.status_code == 200
    assert db["product"].find_one({"_id": product["_id"]})["ratings_average"] == 3.0

    res = client.delete(f"/api/v1/reviews/{review_id}", headers=headers_for(alice))
    assert res.status_code == 204
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["ratings_quantity"] == 1
    assert stored["ratings_average"] == 2.0


def test_product_reviews_listing(client, make_user, headers_for, make_product):
    first, second = make_product(title="First"), make_product(title="Second")
    user = make_user("user")
    client.post(f"/api/v1/products/{first['_id']}/reviews", json={"ratings": 5}, headers=headers_for(user))
    client.post(f"/api/v1/products/{second['_id']}/reviews", json={"ratings": 3}, headers=headers_for(user))

    res = client.get(f"/api/v1/products/{first['_id']}/reviews")
    assert res.json()["results"] == 1
    assert res.json()["data"][0]["ratings"] == 5


def test_coupons_are_staff_only(client, user_headers, manager_headers):
    body = {"name": "save20", "expire": "2099-12-31T23:59:59Z", "discount": 20}
    assert client.post("/api/v1/coupons", json=body, headers=user_headers).status_code == 403
    res = client.post("/api/v1/coupons", json=body, headers=manager_headers)
    assert res.status_code == 201
    assert res.json()["data"]["name"] == "SAVE20"
    assert client.get("/api/v1/coupons").status_code == 401

    res = client.post("/api/v1/coupons", json={**body, "discount": 150}, headers=manager_headers)
    assert res.status_code == 400
    assert "discount" in res.json()["errors"]


def test_update_cannot_null_required_fields(client, manager_headers, make_product, db, category):
    product = make_product()
    body = {"title": None, "category": None, "quantity": None, "price": None}
    res = client.put(f"/api/v1/products/{product['_id']}", json=body, headers=manager_headers)
    assert res.status_code == 400
    assert set(body) <= set(res.json()["errors"])
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["title"], stored["price"], stored["category"]) == ("Phone", 10.0, category["_id"])

    res = client.put(f"/api/v1/categories/{category['_id']}", json={"name": None}, headers=manager_headers)
    assert res.status_code == 400
    assert "name" in res.json()["errors"]

    # optional fields may still be cleared
    res = client.put(f"/api/v1/products/{product['_id']}", json={"brand": None}, headers=manager_headers)
    assert res.status_code == 200


def test_review_rating_cannot_be_nulled(client, make_user, headers_for, make_product, db):
    product = make_product()
    user = make_user("user")
    review_id = client.post(
        f"/api/v1/products/{product['_id']}/reviews", json={"ratings": 4}, headers=headers_for(user)
    ).json()["data"]["id"]

    res = client.put(f"/api/v1/reviews/{review_id}", json={"ratings": None}, headers=headers_for(user))
    assert res.status_code == 400
    assert "ratings" in res.json()["errors"]
    assert db["product"].find_one({"_id": product["_id"]})["ratings_average"] == 4.0


def test_ratings_ignore_reviews_without_a_rating(client, make_user, headers_for, make_product, db):
    product = make_product()
    db["review"].insert_one({"product": product["_id"], "user": make_user("user")["_id"], "ratings": None})

    res = client.post(
        f"/api/v1/products/{product['_id']}/reviews", json={"ratings": 5}, headers=headers_for(make_user("user"))
    )
    assert res.status_code == 201
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["ratings_average"], stored["ratings_quantity"]) == (5.0, 1)
