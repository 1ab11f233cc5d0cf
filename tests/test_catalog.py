import os
import time

import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from sapopsa import uploads
from conftest import image


def create_product(session, **fields):
    data = {"title": "Linen Shirt", "price": "19.99"}
    data.update(fields)
    return session.post("/product", data=data, content_type="multipart/form-data")


def seed_products(store, count):
    for index in range(1, count + 1):
        store.insert("products", {"title": f"p{index}", "price": float(index)})


def test_create_product_with_gallery(admin, client, upload_folder):
    response = create_product(
        admin,
        sizes='["S", "M"]',
        colors="red, blue",
        images=[image("Front View.png"), image("back.jpg")],
    )

    assert response.status_code == 201
    product_id = response.get_json()["product"]["id"]

    product = client.get(f"/get-product/{product_id}").get_json()["product"]
    assert product["price"] == 19.99
    assert isinstance(product["price"], float)
    assert len(product["images"]) == 2
    assert "/api/images/front-view-" in product["images"][0]
    assert "/api/images/back-" in product["images"][1]
    assert product["images"][0].startswith("http://shop.test/")
    assert product["sizes"] == ["S", "M"]
    assert product["colors"] == ["red", "blue"]
    assert "image_filenames" not in product
    assert len(os.listdir(upload_folder)) == 2


def test_uploaded_image_is_served(admin, client):
    response = create_product(admin, images=[image("front.png", b"pixels")])
    url = response.get_json()["product"]["images"][0]

    served = client.get(url.replace("http://shop.test", ""))

    assert served.status_code == 200
    assert served.data == b"pixels"


def test_failed_upload_inserts_nothing(admin, store, upload_folder, monkeypatch):
    write_image = uploads._write_image

    def flaky_write(image_file, folder, timestamp_ms):
        if image_file.filename == "broken.png":
            raise OSError("disk full")
        return write_image(image_file, folder, timestamp_ms)

    monkeypatch.setattr(uploads, "_write_image", flaky_write)

    response = create_product(admin, images=[image("front.png"), image("broken.png")])

    assert response.status_code == 503
    assert store.products.count_documents({}) == 0
    assert os.listdir(upload_folder) == []


def test_unsupported_image_type_is_rejected(admin, store, upload_folder):
    response = create_product(admin, images=[image("front.png"), image("notes.txt", b"hi")])

    assert response.status_code == 400
    assert store.products.count_documents({}) == 0
    assert os.listdir(upload_folder) == []


def test_invalid_price_is_rejected(admin, store):
    response = create_product(admin, price="cheap")

    assert response.status_code == 400
    assert store.products.count_documents({}) == 0


def test_latest_products_come_newest_first(client, store):
    seed_products(store, 5)

    latest = client.get("/products", query_string={"limit": 3}).get_json()
    everything = client.get("/products", query_string={"limit": 10}).get_json()
    second_page = client.get("/products", query_string={"limit": 2, "page": 2}).get_json()

    assert [p["title"] for p in latest["products"]] == ["p5", "p4", "p3"]
    assert len(everything["products"]) == 5
    assert [p["title"] for p in second_page["products"]] == ["p3", "p2"]
    assert latest["total"] == 5


def test_product_filters(client, store):
    store.insert("products", {"title": "Blue Denim Jacket", "price": 80.0, "category": "Jackets", "demographic": "men"})
    store.insert("products", {"title": "Summer Dress", "price": 40.0, "category": "Dresses", "demographic": "women", "description": "light denim look"})
    store.insert("products", {"title": "Wool Scarf", "price": 15.0, "category": "Accessories", "demographic": "women"})

    def titles(**params):
        body = client.get("/products", query_string=params).get_json()
        return sorted(product["title"] for product in body["products"])

    assert titles(search="DENIM") == ["Blue Denim Jacket", "Summer Dress"]
    assert titles(demographic="WOMEN") == ["Summer Dress", "Wool Scarf"]
    assert titles(category="jackets") == ["Blue Denim Jacket"]
    assert titles(demographic="women", search="scarf") == ["Wool Scarf"]
    assert titles(category="jack") == []


def test_search_route(client, store):
    store.insert("products", {"title": "Canvas Sneakers", "price": 55.0})

    response = client.get("/search", query_string={"q": "sneak"})

    assert [p["title"] for p in response.get_json()["products"]] == ["Canvas Sneakers"]
    assert client.get("/search").status_code == 400


def test_projection(client, store):
    store.insert("products", {"title": "Cap", "price": 9.5, "description": "cotton"})

    response = client.get("/products", query_string={"fields": "title,price"})

    assert set(response.get_json()["products"][0]) == {"id", "title", "price"}
    assert client.get("/products", query_string={"fields": "secret"}).status_code == 400


def test_get_product_errors(client):
    assert client.get("/get-product/not-an-id").status_code == 400
    missing = client.get("/get-product/64b7f0c2a1b2c3d4e5f60718")
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "NotFound"


def test_update_product_merges_fields(admin, store):
    product = store.insert("products", {"title": "Cap", "price": 9.5, "description": "cotton"})

    response = admin.patch(f"/product/{product['_id']}", json={"price": 12.499})

    assert response.status_code == 200
    stored = store.products.find_one({"_id": product["_id"]})
    assert stored["price"] == 12.5
    assert stored["description"] == "cotton"


def test_update_product_rejects_unknown_fields(admin, store):
    product = store.insert("products", {"title": "Cap", "price": 9.5})

    response = admin.patch(f"/product/{product['_id']}", json={"stock": 3})

    assert response.status_code == 400
    assert admin.patch("/product/64b7f0c2a1b2c3d4e5f60718", json={"price": 1}).status_code == 404


def test_delete_is_idempotent(admin, upload_folder):
    created = create_product(admin, images=[image("front.png")]).get_json()["product"]

    first = admin.delete(f"/product/{created['id']}")
    second = admin.delete(f"/product/{created['id']}")

    assert first.get_json()["deletedCount"] == 1
    assert second.status_code == 200
    assert second.get_json()["deletedCount"] == 0
    assert os.listdir(upload_folder) == []


def test_delete_with_malformed_id(admin):
    assert admin.delete("/product/123").status_code == 400


def test_category_lifecycle(admin, client, store):
    response = admin.post(
        "/categories",
        data={"title": "Summer Shoes", "demographic": "women", "image": image("shoes.jpeg")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    category = response.get_json()["category"]
    assert category["route"] == "summer-shoes"
    assert category["image"].startswith("http://shop.test/api/images/shoes-")

    listed = client.get("/categories", query_string={"demographic": "women"}).get_json()
    assert [c["title"] for c in listed["categories"]] == ["Summer Shoes"]

    updated = admin.patch(f"/category/{category['id']}", json={"route": "Shoes For Summer"})
    assert updated.get_json()["category"]["route"] == "shoes-for-summer"

    assert admin.delete(f"/category/{category['id']}").get_json()["deletedCount"] == 1
    assert client.get(f"/category/{category['id']}").status_code == 404


def test_slider_requires_image(admin, store):
    response = admin.post("/sliders", data={"title": "Sale"}, content_type="multipart/form-data")

    assert response.status_code == 400
    assert store.sliders.count_documents({}) == 0


def test_slider_lifecycle(admin, client):
    response = admin.post(
        "/sliders",
        data={"title": "Sale", "image": image("banner.png")},
        content_type="multipart/form-data",
    )
    slider = response.get_json()["slider"]

    assert response.status_code == 201
    assert client.get("/sliders").get_json()["sliders"][0]["title"] == "Sale"
    assert admin.delete(f"/slider/{slider['id']}").get_json()["deletedCount"] == 1


def test_web_heading_is_a_singleton(admin, client):
    assert client.get("/web-heading").get_json() == []

    admin.patch("/web-heading", json={"title": "Welcome"})
    admin.patch("/web-heading", json={"subtitle": "New arrivals"})

    headings = client.get("/web-heading").get_json()
    assert len(headings) == 1
    assert headings[0]["title"] == "Welcome"
    assert headings[0]["subtitle"] == "New arrivals"


@pytest.mark.parametrize(
    "error, status",
    [
        (ServerSelectionTimeoutError("no servers"), 408),
        (OperationFailure("boom"), 503),
    ],
)
def test_store_failures_become_json_errors(client, store, monkeypatch, error, status):
    def failing_latest(*args, **kwargs):
        raise error

    monkeypatch.setattr(store, "latest", failing_latest)

    response = client.get("/products")

    assert response.status_code == status
    assert "error" in response.get_json()


def test_unknown_route_returns_json(client):
    response = client.get("/nowhere")

    assert response.status_code == 404
    assert response.get_json()["error"] == "NotFound"


def test_upload_timeout_rolls_back_every_file(app, admin, store, upload_folder, monkeypatch):
    write_image = uploads._write_image

    def slow_write(image_file, folder, timestamp_ms):
        if image_file.filename == "slow.png":
            time.sleep(1)
        return write_image(image_file, folder, timestamp_ms)

    monkeypatch.setattr(uploads, "_write_image", slow_write)
    app.config["UPLOAD_TIMEOUT_SECONDS"] = 0.3

    response = create_product(admin, images=[image("front.png"), image("slow.png")])

    assert response.status_code == 408
    assert response.get_json()["retryable"] is True
    assert store.products.count_documents({}) == 0

    # the slow writer finishes after the response and removes its own file
    time.sleep(1.5)
    assert os.listdir(upload_folder) == []
