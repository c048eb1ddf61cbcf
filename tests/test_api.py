from __future__ import annotations

import base64
from pathlib import Path

from starlette.testclient import TestClient

from conftest import completion, fake_extractor
from dishlog.dishdb import create_app


JOES = {
    "restaurantName": "Joe's Diner",
    "datetime": "2024-01-15T19:30:00Z",
    "total": 24.50,
    "lineItems": [
        {"dishName": "Burger", "price": 12.00},
        {"dishName": "Fries", "price": 5.00},
    ],
}


def _client(tmp_path: Path, reply=None) -> TestClient:
    extractor, _ = fake_extractor(reply or (lambda **_: completion(JOES)))
    app = create_app(str(tmp_path / "api.sqlite3"), extractor=extractor, allow_origins=["*"])
    return TestClient(app)


def test_health_and_empty_lists(tmp_path: Path) -> None:
    client = _client(tmp_path)
    health = client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert client.get("/api/receipts").json() == []
    assert client.get("/api/restaurants").json() == []
    assert client.get("/api/dish-photos/unlinked").json() == []


def test_parse_receipt_returns_parsed_receipt(tmp_path: Path) -> None:
    client = _client(tmp_path)
    image = base64.b64encode(b"\xff\xd8\xff\xe0fake").decode("ascii")
    resp = client.post("/api/parse-receipt", json={"image": image})
    assert resp.status_code == 200
    body = resp.json()
    assert body["restaurantName"] == "Joe's Diner"
    assert len(body["lineItems"]) == 2
    assert body["extractionDegraded"] is False


def test_parse_receipt_degrades_on_model_failure(tmp_path: Path) -> None:
    def boom(**_):
        raise RuntimeError("model down")

    client = _client(tmp_path, boom)
    resp = client.post("/api/parse-receipt", json={"image": "data:image/jpeg;base64,AAAA"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["restaurantName"] == ""
    assert body["lineItems"] == []
    assert body["total"] is None
    assert body["extractionDegraded"] is True


def test_parse_receipt_requires_image(tmp_path: Path) -> None:
    client = _client(tmp_path)
    resp = client.post("/api/parse-receipt", json={})
    assert resp.status_code == 400
    assert resp.json()["field"] == "image"


def test_malformed_json_body_is_400(tmp_path: Path) -> None:
    client = _client(tmp_path)
    resp = client.post("/api/receipts", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["field"] == "body"


def test_non_object_json_body_is_400(tmp_path: Path) -> None:
    client = _client(tmp_path)
    for body in (b"[1, 2]", b"null", b'"abc"', b"42"):
        resp = client.post("/api/receipts", content=body, headers={"content-type": "application/json"})
        assert resp.status_code == 400, body
        assert resp.json()["field"] == "body"
    assert client.get("/api/receipts").json() == []


def test_receipt_lifecycle(tmp_path: Path) -> None:
    client = _client(tmp_path)

    created = client.post("/api/receipts", json=JOES)
    assert created.status_code == 200
    body = created.json()
    receipt_id = body["receipt"]["id"]
    assert body["receipt"]["restaurant"]["name"] == "Joe's Diner"
    assert [i["dish"]["name"] for i in body["dishInstances"]] == ["Burger", "Fries"]
    assert [i["price"] for i in body["dishInstances"]] == ["12.00", "5.00"]
    instance_id = body["dishInstances"][0]["id"]

    detail = client.get(f"/api/receipts/{receipt_id}").json()
    assert detail["restaurant"]["name"] == "Joe's Diner"
    assert detail["totalAmount"] == "24.50"
    assert len(detail["dishInstances"]) == 2
    assert detail["dishInstances"][0]["photos"] == []

    recent = client.get("/api/receipts/recent").json()
    assert [r["id"] for r in recent] == [receipt_id]

    rated = client.patch(f"/api/dish-instances/{instance_id}", json={"rating": "Elite"})
    assert rated.status_code == 200
    assert rated.json()["rating"] == "Elite"
    assert rated.json()["dish"]["name"] == "Burger"

    bad_rating = client.patch(f"/api/dish-instances/{instance_id}", json={"rating": "meh"})
    assert bad_rating.status_code == 400
    assert bad_rating.json()["field"] == "rating"

    moved = client.patch(f"/api/receipts/{receipt_id}", json={"restaurantName": "Joe's Grill"})
    assert moved.status_code == 200
    assert moved.json()["restaurant"]["name"] == "Joe's Grill"
    assert {i["dish"]["restaurantId"] for i in moved.json()["dishInstances"]} == {moved.json()["restaurantId"]}

    restaurants = client.get("/api/restaurants").json()
    assert sorted(r["name"] for r in restaurants) == ["Joe's Diner", "Joe's Grill"]
    grill = next(r for r in restaurants if r["name"] == "Joe's Grill")
    grill_detail = client.get(f"/api/restaurants/{grill['id']}").json()
    assert sorted(d["name"] for d in grill_detail["dishes"]) == ["Burger", "Fries"]
    assert all(d["instanceCount"] == 1 for d in grill_detail["dishes"])

    stats = client.get("/api/stats").json()
    assert stats["totalReceipts"] == 1
    assert stats["totalSpend"] == "24.50"
    assert stats["ratingBreakdown"]["Elite"] == 1
    assert stats["dishesPerMonth"] == [{"month": "2024-01", "count": 2}]

    deleted = client.delete(f"/api/receipts/{receipt_id}")
    assert deleted.json() == {"success": True}
    assert client.get(f"/api/receipts/{receipt_id}").status_code == 404
    assert client.delete(f"/api/receipts/{receipt_id}").status_code == 404


def test_invalid_receipt_is_400_with_field(tmp_path: Path) -> None:
    client = _client(tmp_path)
    resp = client.post("/api/receipts", json=dict(JOES, lineItems=[{"dishName": "", "price": 1}]))
    assert resp.status_code == 400
    assert resp.json()["field"] == "lineItems[0].dishName"
    assert client.get("/api/receipts").json() == []


def test_dish_photo_flow(tmp_path: Path) -> None:
    client = _client(tmp_path)
    instance_id = client.post("/api/receipts", json=JOES).json()["dishInstances"][1]["id"]

    photo = client.post("/api/dish-photos", json={"imageUrl": "https://img/fries.jpg"}).json()
    assert photo["dishInstanceId"] is None
    assert [p["id"] for p in client.get("/api/dish-photos/unlinked").json()] == [photo["id"]]

    linked = client.patch(f"/api/dish-photos/{photo['id']}", json={"dishInstanceId": instance_id})
    assert linked.status_code == 200
    assert linked.json()["dishInstanceId"] == instance_id
    assert client.get("/api/dish-photos/unlinked").json() == []

    listed = client.get("/api/dish-photos").json()
    assert listed[0]["dishInstance"]["dish"]["name"] == "Fries"
    assert listed[0]["dishInstance"]["receipt"]["restaurant"]["name"] == "Joe's Diner"

    missing_target = client.patch(f"/api/dish-photos/{photo['id']}", json={"dishInstanceId": 9999})
    assert missing_target.status_code == 400
    assert client.patch("/api/dish-photos/9999", json={"dishInstanceId": None}).status_code == 404

    assert client.delete(f"/api/dish-instances/{instance_id}").json() == {"success": True}
    assert client.get(f"/api/dish-instances/{instance_id}").status_code == 404
    assert client.get("/api/dish-photos").json()[0]["dishInstanceId"] is None


def test_dishes_listing(tmp_path: Path) -> None:
    client = _client(tmp_path)
    client.post("/api/receipts", json=JOES)
    client.post("/api/receipts", json=dict(JOES, lineItems=[{"dishName": "burger", "price": 12}]))
    dishes = client.get("/api/dishes").json()
    assert sorted(d["name"] for d in dishes) == ["Burger", "Fries"]


def test_shutdown_closes_extractor(tmp_path: Path) -> None:
    extractor, _ = fake_extractor(lambda **_: completion(JOES))
    closed = []
    extractor.close = lambda: closed.append(True)
    app = create_app(str(tmp_path / "api.sqlite3"), extractor=extractor)

    with TestClient(app) as client:
        assert client.get("/api/health").status_code == 200
        assert closed == []
    assert closed == [True]
