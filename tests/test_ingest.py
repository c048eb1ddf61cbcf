from __future__ import annotations

import logging

import pytest

from conftest import receipt_payload
from dishlog.dishdb import DishDatabase, ReceiptIngestor
from dishlog.dishdb.errors import ValidationError
from dishlog.domain.models import ParsedLineItem, ParsedReceipt


JOES = {
    "restaurantName": "Joe's Diner",
    "datetime": "2024-01-15T19:30:00Z",
    "total": 24.50,
    "lineItems": [
        {"dishName": "Burger", "price": 12.00},
        {"dishName": "Fries", "price": 5.00},
    ],
}


def test_end_to_end_ingest_twice_reuses_restaurant_and_dishes(db: DishDatabase) -> None:
    ingestor = ReceiptIngestor(db)
    first = ingestor.ingest(JOES)

    assert first.restaurant.name == "Joe's Diner"
    assert first.receipt.restaurant_id == first.restaurant.restaurant_id
    assert first.receipt.datetime == "2024-01-15T19:30:00+00:00"
    assert first.receipt.total_amount == "24.50"
    assert [(i.dish.name, i.price) for i in first.dish_instances] == [("Burger", "12.00"), ("Fries", "5.00")]
    assert all(i.rating is None for i in first.dish_instances)

    second = ingestor.ingest(JOES)
    assert second.receipt.receipt_id != first.receipt.receipt_id
    assert second.restaurant.restaurant_id == first.restaurant.restaurant_id
    assert [i.dish_id for i in second.dish_instances] == [i.dish_id for i in first.dish_instances]

    assert len(db.list_receipts()) == 2
    assert len(db.list_restaurants()) == 1
    assert len(db.list_dishes()) == 2


def test_duplicate_line_items_share_one_dish(db: DishDatabase) -> None:
    payload = receipt_payload(
        "Joe's Diner",
        [
            {"dishName": "Fries", "price": 5},
            {"dishName": "fries", "price": 5},
            {"dishName": "Burger", "price": 12},
        ],
    )
    result = ReceiptIngestor(db).ingest(payload)
    assert len(result.dish_instances) == 3
    assert len({i.dish_id for i in result.dish_instances}) == 2
    assert result.dish_instances[0].dish_id == result.dish_instances[1].dish_id
    assert result.dish_instances[1].dish.name == "Fries"


def test_line_item_order_is_preserved(db: DishDatabase) -> None:
    names = ["Soup", "Bread", "Soup", "Wine", "Cake"]
    payload = receipt_payload(items=[{"dishName": n, "price": None} for n in names])
    result = ReceiptIngestor(db).ingest(payload)
    assert [i.dish.name for i in result.dish_instances] == names
    assert [i.price for i in result.dish_instances] == [None] * 5


def test_raw_payload_is_stored_verbatim(db: DishDatabase) -> None:
    payload = dict(JOES, extra={"model": "gpt-4o-mini"})
    result = ReceiptIngestor(db).ingest(payload)
    stored = db.get_receipt(result.receipt.receipt_id)
    assert stored.raw_extraction_output == payload


def test_accepts_parsed_receipt_instances(db: DishDatabase) -> None:
    receipt = ParsedReceipt(
        restaurant_name="Pho 99",
        restaurant_address="99 Broad St",
        datetime="2024-02-02",
        total=None,
        line_items=[ParsedLineItem("Pho Tai", 13.25)],
    )
    result = ReceiptIngestor(db).ingest(receipt)
    assert result.restaurant.address == "99 Broad St"
    # Date-only input means noon.
    assert result.receipt.datetime == "2024-02-02T12:00:00"
    assert result.receipt.total_amount is None
    assert result.dish_instances[0].price == "13.25"


def test_receipt_with_no_line_items(db: DishDatabase) -> None:
    result = ReceiptIngestor(db).ingest(receipt_payload(items=[]))
    assert result.dish_instances == []
    assert db.list_dishes() == []


@pytest.mark.parametrize(
    "payload, field",
    [
        (dict(JOES, restaurantName="   "), "restaurantName"),
        (dict(JOES, datetime="last tuesday"), "datetime"),
        (dict(JOES, datetime="0001-01-01T00:00:00+01:00"), "datetime"),
        ([1, 2], "body"),
        (None, "body"),
        ("abc", "body"),
        (dict(JOES, total="24.50"), "total"),
        (dict(JOES, lineItems=[{"dishName": "Burger", "price": 1}, {"dishName": "", "price": 2}]), "lineItems[1].dishName"),
        (dict(JOES, lineItems=[{"dishName": "Burger", "price": True}]), "lineItems[0].price"),
    ],
)
def test_invalid_payload_writes_nothing(db: DishDatabase, payload, field: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        ReceiptIngestor(db).ingest(payload)
    assert excinfo.value.field == field
    assert db.list_restaurants() == []
    assert db.list_receipts() == []


def test_failure_mid_ingest_rolls_back_everything(db: DishDatabase, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(db, "insert_dish_instances", broken)
    with pytest.raises(RuntimeError):
        ReceiptIngestor(db).ingest(JOES)
    assert db.list_restaurants() == []
    assert db.list_receipts() == []
    assert db.list_dishes() == []


def test_near_duplicate_restaurant_is_logged_not_merged(db: DishDatabase, caplog: pytest.LogCaptureFixture) -> None:
    ingestor = ReceiptIngestor(db)
    ingestor.ingest(JOES)
    logger = logging.getLogger("dishlog.dishdb-ingest")
    logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.WARNING, logger="dishlog.dishdb-ingest"):
            ingestor.ingest(dict(JOES, restaurantName="Joes Diner"))
    finally:
        logger.removeHandler(caplog.handler)
    assert len(db.list_restaurants()) == 2
    assert any("looks like existing" in r.getMessage() for r in caplog.records)
