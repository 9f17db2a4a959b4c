from decimal import Decimal

from storefront.models import Product
from storefront.querying import Page, page_params


def seed(Session, n):
    with Session() as s:
        for i in range(n):
            s.add(Product(name=f"Part {i:02d}", brand="Bosch" if i % 2 else "Brembo",
                          category="Brakes" if i % 3 else "Filters", price=Decimal(10 + i), stock=i))
        s.commit()


def test_pagination_envelope(client, Session):
    seed(Session, 45)

    body = client.get("/products", params={"limit": 20}).json()
    assert body["status"] == "ok"
    assert body["total"] == 45
    assert body["total_pages"] == 3
    assert body["per_page"] == 20
    assert len(body["data"]) == 20

    body = client.get("/products", params={"limit": 20, "page": 3}).json()
    assert len(body["data"]) == 5

    body = client.get("/products", params={"limit": 20, "page": 4}).json()
    assert body["data"] == []
    assert body["total"] == 45
    assert body["total_pages"] == 3


def test_empty_listing_still_has_one_page(client):
    body = client.get("/products").json()
    assert body["total"] == 0
    assert body["total_pages"] == 1


def test_page_params_are_clamped():
    assert page_params({}) == (1, 20)
    assert page_params({"page": "-3", "limit": "0"}) == (1, 1)
    assert page_params({"limit": "1000"}) == (1, 100)
    assert page_params({"page": "x", "limit": "abc"}) == (1, 20)
    assert Page(items=[], total=41, page=1, per_page=20).total_pages == 3


def test_filters_and_sorting(client, Session):
    seed(Session, 12)

    body = client.get("/products", params={"brand": "Bosch", "min_price": "12", "max_price": "15",
                                           "sort": "price_desc"}).json()
    prices = [p["price"] for p in body["data"]]
    assert prices == [15, 13]

    body = client.get("/products", params={"category": "Filters", "sort": "name_asc"}).json()
    assert [p["name"] for p in body["data"]] == ["Part 00", "Part 03", "Part 06", "Part 09"]


def test_unusable_filter_values_are_ignored(client, Session):
    seed(Session, 5)
    body = client.get("/products", params={"min_price": "cheap", "id": "-1", "sort": "weird"}).json()
    assert body["total"] == 5


def test_search_escapes_wildcards(client, make_product):
    make_product(name="50% Off Pads")
    make_product(name="Brake Pads 500")
    body = client.get("/products", params={"q": "50%"}).json()
    assert [p["name"] for p in body["data"]] == ["50% Off Pads"]

    body = client.get("/products", params={"q": "pads"}).json()
    assert body["total"] == 2


def test_product_detail(client, make_product):
    pid = make_product(description="Front axle")
    resp = client.get(f"/products/{pid}")
    assert resp.status_code == 200
    assert resp.json()["data"]["description"] == "Front axle"

    assert client.get("/products/0").status_code == 400
    resp = client.get("/products/9999")
    assert resp.status_code == 404
    assert resp.json()["message"] == "Product not found"


def test_categories_and_health(client, Session):
    seed(Session, 6)
    data = client.get("/categories").json()["data"]
    assert data == [{"category": "Brakes", "product_count": 4}, {"category": "Filters", "product_count": 2}]

    assert client.get("/health").json() == {"status": "ok", "products": 6}
