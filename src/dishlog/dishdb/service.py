from __future__ import annotations

import functools
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar, Union

from ..domain.models import ParsedReceipt
from ..logging import get_logger
from .constants import RECENT_RECEIPTS_LIMIT, UNLINKED_PHOTO_MAX_AGE_HOURS
from .corrections import ReceiptCorrections
from .db import DishDatabase
from .errors import NotFoundError, StorageError
from .extraction import ExtractionOutcome, ReceiptExtractor
from .ingest import ReceiptIngestor
from .models import (
    DishInstanceUpdate,
    DishPhotoCreate,
    DishPhotoUpdate,
    IngestResult,
    Receipt,
    ReceiptUpdate,
)
from .parser import (
    parse_dish_instance_update,
    parse_dish_photo_create,
    parse_dish_photo_update,
    parse_receipt_update,
)


LOG = get_logger("dishdb-service")

F = TypeVar("F", bound=Callable[..., Any])


def _storage_errors(func: F) -> F:
    """Surface driver errors as StorageError; the taxonomy passes through untouched."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as exc:
            LOG.error(f"{func.__name__} failed in storage: {exc}")
            raise StorageError(f"{func.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


class DishLogService:
    """High-level service coordinating extraction, ingestion, edits and reads.

    The HTTP API and the CLI both go through this class; it returns wire
    dicts (camelCase) for reads and dataclasses for writes.
    """

    def __init__(self, db: Optional[DishDatabase] = None, *, extractor: Optional[ReceiptExtractor] = None) -> None:
        self.db = db or DishDatabase()
        self._extractor = extractor
        self.ingestor = ReceiptIngestor(self.db)
        self.corrections = ReceiptCorrections(self.db)

    @property
    def extractor(self) -> ReceiptExtractor:
        if self._extractor is None:
            self._extractor = ReceiptExtractor()
        return self._extractor

    def close(self) -> None:
        """Release the extractor's HTTP connections, if one was ever built."""
        if self._extractor is not None:
            self._extractor.close()

    def init_database(self) -> str:
        """Ensure the database exists and return its path."""
        # The DishDatabase constructor ensures schema on creation.
        LOG.info("Dish database initialized.")
        return self.db.db_path

    # --------------- Pipeline ---------------
    def extract(self, image: Union[bytes, str]) -> ExtractionOutcome:
        return self.extractor.extract(image)

    @_storage_errors
    def ingest(self, payload: Union[ParsedReceipt, Mapping[str, Any]]) -> IngestResult:
        return self.ingestor.ingest(payload)

    def scan(self, image: Union[bytes, str]) -> Tuple[ExtractionOutcome, Optional[IngestResult]]:
        """Extract then ingest. A degraded extraction is returned without ingesting."""
        outcome = self.extract(image)
        if outcome.degraded:
            LOG.warning("Extraction degraded; skipping ingestion (manual entry required)")
            return outcome, None
        return outcome, self.ingest(outcome.receipt)

    # --------------- Corrections ---------------
    @_storage_errors
    def update_receipt(self, receipt_id: int, update: Union[ReceiptUpdate, Mapping[str, Any]]) -> Dict[str, Any]:
        if not isinstance(update, ReceiptUpdate):
            update = parse_receipt_update(update)
        receipt = self.corrections.update_receipt(receipt_id, update)
        return self._receipt_detail(receipt)

    @_storage_errors
    def delete_receipt(self, receipt_id: int) -> None:
        self.corrections.delete_receipt(receipt_id)

    @_storage_errors
    def update_dish_instance(
        self, instance_id: int, update: Union[DishInstanceUpdate, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        if not isinstance(update, DishInstanceUpdate):
            update = parse_dish_instance_update(update)
        return self.corrections.update_dish_instance(instance_id, update).as_dict()

    @_storage_errors
    def delete_dish_instance(self, instance_id: int) -> None:
        self.corrections.delete_dish_instance(instance_id)

    @_storage_errors
    def create_dish_photo(self, create: Union[DishPhotoCreate, Mapping[str, Any]]) -> Dict[str, Any]:
        if not isinstance(create, DishPhotoCreate):
            create = parse_dish_photo_create(create)
        return self.corrections.create_dish_photo(create).as_dict()

    @_storage_errors
    def update_dish_photo(self, photo_id: int, update: Union[DishPhotoUpdate, Mapping[str, Any]]) -> Dict[str, Any]:
        if not isinstance(update, DishPhotoUpdate):
            update = parse_dish_photo_update(update)
        return self.corrections.update_dish_photo(photo_id, update).as_dict()

    # --------------- Reads ---------------
    @_storage_errors
    def list_restaurants(self) -> List[Dict[str, Any]]:
        return [r.as_dict() for r in self.db.list_restaurants()]

    @_storage_errors
    def get_restaurant_detail(self, restaurant_id: int) -> Dict[str, Any]:
        with self.db.connect() as conn:
            restaurant = self.db.get_restaurant(restaurant_id, conn=conn)
            if restaurant is None:
                raise NotFoundError("restaurant", restaurant_id)
            dishes = self.db.dishes_for_restaurant(restaurant_id, conn=conn)
        out = restaurant.as_dict()
        out["dishes"] = [
            {**dish.as_dict(), "instanceCount": instances, "photoCount": photos}
            for dish, instances, photos in dishes
        ]
        return out

    @_storage_errors
    def list_dishes(self) -> List[Dict[str, Any]]:
        return [d.as_dict() for d in self.db.list_dishes()]

    def _receipt_detail(self, receipt: Receipt, conn: Optional[sqlite3.Connection] = None) -> Dict[str, Any]:
        restaurant = self.db.get_restaurant(receipt.restaurant_id, conn=conn)
        instances = self.db.dish_instances_for_receipt(receipt.receipt_id, conn=conn)
        photos = self.db.photos_for_instances([i.instance_id for i in instances], conn=conn)
        out = receipt.as_dict()
        out["restaurant"] = restaurant.as_dict() if restaurant else None
        out["dishInstances"] = [
            {**i.as_dict(), "photos": [p.as_dict() for p in photos.get(i.instance_id, [])]} for i in instances
        ]
        return out

    def _receipts_with_details(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            receipts = self.db.list_receipts(limit=limit, conn=conn)
            return [self._receipt_detail(r, conn) for r in receipts]

    @_storage_errors
    def list_receipts(self) -> List[Dict[str, Any]]:
        return self._receipts_with_details()

    @_storage_errors
    def recent_receipts(self, limit: int = RECENT_RECEIPTS_LIMIT) -> List[Dict[str, Any]]:
        return self._receipts_with_details(limit)

    @_storage_errors
    def get_receipt_detail(self, receipt_id: int) -> Dict[str, Any]:
        with self.db.connect() as conn:
            receipt = self.db.get_receipt(receipt_id, conn=conn)
            if receipt is None:
                raise NotFoundError("receipt", receipt_id)
            return self._receipt_detail(receipt, conn)

    @_storage_errors
    def get_dish_instance(self, instance_id: int) -> Dict[str, Any]:
        instance = self.db.get_dish_instance(instance_id)
        if instance is None:
            raise NotFoundError("dish instance", instance_id)
        return instance.as_dict()

    @_storage_errors
    def list_dish_photos(self) -> List[Dict[str, Any]]:
        return self.db.fetch_dish_photos_detail()

    @_storage_errors
    def list_unlinked_photos(self, max_age_hours: float = UNLINKED_PHOTO_MAX_AGE_HOURS) -> List[Dict[str, Any]]:
        since = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).strftime("%Y-%m-%dT%H:%M:%SZ")
        return [p.as_dict() for p in self.db.list_unlinked_photos(since=since)]

    @_storage_errors
    def stats(self) -> Dict[str, Any]:
        return self.db.fetch_stats()
