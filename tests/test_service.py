from __future__ import annotations

import sqlite3

import pytest

from conftest import completion, fake_extractor, receipt_payload
from dishlog.config import ExtractionSettings
from dishlog.dishdb import DishDatabase, DishLogService, ReceiptExtractor
from dishlog.dishdb.errors import NotFoundError, StorageError


def test_scan_ingests_successful_extraction(db: DishDatabase) -> None:
    extractor, _ = fake_extractor(lambda **_: completion(receipt_payload("Joe's Diner")))
    service = DishLogService(db, extractor=extractor)

    outcome, result = service.scan(b"\xff\xd8\xff\xe0fake")

    assert outcome.degraded is False
    assert result is not None
    assert result.restaurant.name == "Joe's Diner"
    assert len(result.dish_instances) == 2


def test_scan_skips_ingest_when_degraded(db: DishDatabase) -> None:
    def boom(**_):
        raise TimeoutError("slow model")

    extractor, _ = fake_extractor(boom)
    outcome, result = DishLogService(db, extractor=extractor).scan(b"\xff\xd8\xff\xe0fake")
    assert outcome.degraded is True
    assert result is None
    assert db.list_receipts() == []


def test_recent_receipts_newest_visit_first(db: DishDatabase) -> None:
    service = DishLogService(db)
    for day in range(1, 13):
        service.ingest(receipt_payload(when=f"2024-03-{day:02d}T12:00:00Z"))

    recent = service.recent_receipts()
    assert len(recent) == 10
    assert recent[0]["datetime"].startswith("2024-03-12")
    assert recent[-1]["datetime"].startswith("2024-03-03")
    assert len(service.list_receipts()) == 12


def test_unlinked_photos_respect_age_window(db: DishDatabase) -> None:
    service = DishLogService(db)
    fresh = service.create_dish_photo({"imageUrl": "https://img/new.jpg"})
    old = db.insert_dish_photo("https://img/old.jpg")
    with db.transaction() as conn:
        conn.execute(
            "UPDATE dish_photos SET created_at = '2020-01-01T00:00:00Z' WHERE photo_id = ?;", (old.photo_id,)
        )

    assert [p["id"] for p in service.list_unlinked_photos()] == [fresh["id"]]
    assert {p["id"] for p in service.list_dish_photos()} == {fresh["id"], old.photo_id}


def test_reads_raise_not_found(db: DishDatabase) -> None:
    service = DishLogService(db)
    with pytest.raises(NotFoundError):
        service.get_receipt_detail(1)
    with pytest.raises(NotFoundError):
        service.get_restaurant_detail(1)
    with pytest.raises(NotFoundError):
        service.get_dish_instance(1)


def test_update_payloads_accept_wire_mappings(db: DishDatabase) -> None:
    service = DishLogService(db)
    result = service.ingest(receipt_payload("Joe's Diner"))
    instance_id = result.dish_instances[0].instance_id

    updated = service.update_dish_instance(instance_id, {"rating": "Should try once", "price": None})
    assert updated["rating"] == "Should try once"
    assert updated["price"] is None

    detail = service.update_receipt(result.receipt.receipt_id, {"total": 30})
    assert detail["totalAmount"] == "30.00"
    assert detail["restaurant"]["name"] == "Joe's Diner"


def test_sqlite_errors_surface_as_storage_error(db: DishDatabase, monkeypatch: pytest.MonkeyPatch) -> None:
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "fetch_stats", locked)
    with pytest.raises(StorageError):
        DishLogService(db).stats()


def test_close_only_touches_an_extractor_that_exists(db: DishDatabase) -> None:
    service = DishLogService(db)
    service.close()
    assert service._extractor is None

    extractor = ReceiptExtractor(ExtractionSettings(api_key="sk-test", base_url=None, timeout=5.0))
    extractor._get_client()
    http_client = extractor._http_client
    DishLogService(db, extractor=extractor).close()
    assert http_client.is_closed
