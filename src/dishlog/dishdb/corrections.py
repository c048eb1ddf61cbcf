from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from ..domain.normalize import name_key, normalize_amount, parse_iso_datetime, to_storage_datetime
from ..logging import get_logger
from .db import DishDatabase
from .errors import NotFoundError, StorageError, ValidationError
from .models import (
    UNSET,
    DishInstance,
    DishInstanceUpdate,
    DishPhoto,
    DishPhotoCreate,
    DishPhotoUpdate,
    Receipt,
    ReceiptUpdate,
)
from .parser import describe


LOG = get_logger("dishdb-corrections")


class ReceiptCorrections:
    """User edits applied after ingestion, one transaction per call."""

    def __init__(self, db: DishDatabase) -> None:
        self.db = db

    # --------------- Receipts ---------------
    def update_receipt(self, receipt_id: int, update: ReceiptUpdate) -> Receipt:
        """Apply a partial receipt update.

        Moving a receipt to another restaurant re-points every instance on it
        to the same-named dish under the new restaurant (created when
        missing). The dishes under the old restaurant are left in place.
        """
        changes: Dict[str, Any] = {}
        if update.datetime is not UNSET:
            try:
                changes["visited_at"] = to_storage_datetime(parse_iso_datetime(update.datetime))
            except (ValueError, OverflowError) as exc:
                raise ValidationError("datetime", str(exc))
        if update.total is not UNSET:
            changes["total_amount"] = normalize_amount(update.total)

        with self.db.transaction() as conn:
            current = self.db.get_receipt(receipt_id, conn=conn)
            if current is None:
                raise NotFoundError("receipt", receipt_id)

            if update.restaurant_name is not UNSET:
                restaurant, _ = self.db.resolve_restaurant(update.restaurant_name, conn=conn)
                if restaurant.restaurant_id != current.restaurant_id:
                    moved = self._migrate_instances(receipt_id, restaurant.restaurant_id, conn)
                    changes["restaurant_id"] = restaurant.restaurant_id
                    LOG.info(
                        f"Receipt {receipt_id} moved from restaurant_id={current.restaurant_id} "
                        f"to restaurant_id={restaurant.restaurant_id}; {moved} instance(s) re-pointed"
                    )

            updated = self.db.update_receipt(receipt_id, conn=conn, **changes)
        if updated is None:
            raise StorageError(f"Receipt {receipt_id} disappeared during update")
        LOG.debug(f"Updated receipt_id={receipt_id} with {describe(update)}")
        return updated

    def _migrate_instances(self, receipt_id: int, restaurant_id: int, conn: sqlite3.Connection) -> int:
        instances = self.db.dish_instances_for_receipt(receipt_id, conn=conn)
        if not instances:
            return 0
        names = [self._dish_name(instance) for instance in instances]
        targets = self.db.resolve_dishes(restaurant_id, names, conn=conn)
        moves: List[Tuple[int, int]] = [
            (instance.instance_id, targets[name_key(name)].dish_id) for instance, name in zip(instances, names)
        ]
        return self.db.repoint_dish_instances(moves, conn=conn)

    @staticmethod
    def _dish_name(instance: DishInstance) -> str:
        if instance.dish is None:
            raise StorageError(f"Dish instance {instance.instance_id} has no dish row")
        return instance.dish.name

    def delete_receipt(self, receipt_id: int) -> None:
        if not self.db.delete_receipt(receipt_id):
            raise NotFoundError("receipt", receipt_id)

    # --------------- Dish instances ---------------
    def update_dish_instance(self, instance_id: int, update: DishInstanceUpdate) -> DishInstance:
        """Rate, re-price or rename one instance.

        A new dish name is resolved under the restaurant of the instance's
        receipt; the previously linked dish is not modified.
        """
        changes: Dict[str, Any] = {}
        if update.rating is not UNSET:
            changes["rating"] = update.rating
        if update.price is not UNSET:
            changes["price"] = normalize_amount(update.price)

        with self.db.transaction() as conn:
            current = self.db.get_dish_instance(instance_id, conn=conn)
            if current is None:
                raise NotFoundError("dish instance", instance_id)

            if update.dish_name is not UNSET:
                receipt = self.db.get_receipt(current.receipt_id, conn=conn)
                if receipt is None:
                    raise StorageError(f"Receipt {current.receipt_id} of instance {instance_id} is missing")
                dish = self.db.resolve_dish(receipt.restaurant_id, update.dish_name, conn=conn)
                if dish.dish_id != current.dish_id:
                    changes["dish_id"] = dish.dish_id

            updated = self.db.update_dish_instance(instance_id, conn=conn, **changes)
        if updated is None:
            raise StorageError(f"Dish instance {instance_id} disappeared during update")
        LOG.debug(f"Updated instance_id={instance_id} with {describe(update)}")
        return updated

    def delete_dish_instance(self, instance_id: int) -> None:
        if not self.db.delete_dish_instance(instance_id):
            raise NotFoundError("dish instance", instance_id)

    # --------------- Dish photos ---------------
    def _require_instance(self, instance_id: Optional[int], conn: sqlite3.Connection) -> None:
        if instance_id is not None and self.db.get_dish_instance(instance_id, conn=conn) is None:
            raise ValidationError("dishInstanceId", f"dish instance {instance_id} does not exist")

    def create_dish_photo(self, create: DishPhotoCreate) -> DishPhoto:
        with self.db.transaction() as conn:
            self._require_instance(create.dish_instance_id, conn)
            photo = self.db.insert_dish_photo(create.image_url, create.dish_instance_id, conn=conn)
        LOG.info(f"Stored photo_id={photo.photo_id} linked_to={photo.dish_instance_id}")
        return photo

    def update_dish_photo(self, photo_id: int, update: DishPhotoUpdate) -> DishPhoto:
        """Link a photo to an instance, or unlink it with ``None``."""
        with self.db.transaction() as conn:
            if self.db.get_dish_photo(photo_id, conn=conn) is None:
                raise NotFoundError("dish photo", photo_id)
            self._require_instance(update.dish_instance_id, conn)
            photo = self.db.update_dish_photo(photo_id, update.dish_instance_id, conn=conn)
        if photo is None:
            raise StorageError(f"Dish photo {photo_id} disappeared during update")
        LOG.info(f"Photo {photo_id} linked_to={photo.dish_instance_id}")
        return photo
