from __future__ import annotations

from typing import Any, Dict, List, Mapping, Union

from ..domain.models import ParsedReceipt
from ..domain.normalize import name_key, normalize_amount, parse_iso_datetime, to_storage_datetime
from ..domain.similarity import find_similar_names
from ..logging import get_logger
from .db import DishDatabase
from .models import IngestResult, Restaurant
from .parser import parse_and_validate_receipt


LOG = get_logger("dishdb-ingest")


class ReceiptIngestor:
    """Turn one validated receipt into stored rows.

    Restaurant, receipt, dishes and dish instances are written in a single
    transaction; a failure anywhere leaves no partial receipt behind.
    """

    def __init__(self, db: DishDatabase) -> None:
        self.db = db

    def ingest(self, payload: Union[ParsedReceipt, Mapping[str, Any]]) -> IngestResult:
        receipt = parse_and_validate_receipt(payload)
        # Validation guarantees a mapping here.
        raw: Dict[str, Any] = payload.as_dict() if isinstance(payload, ParsedReceipt) else dict(payload)
        visited_at = to_storage_datetime(parse_iso_datetime(receipt.datetime))
        total = normalize_amount(receipt.total)
        names = [item.dish_name for item in receipt.line_items]

        with self.db.transaction() as conn:
            restaurant, created = self.db.resolve_restaurant(
                receipt.restaurant_name, receipt.restaurant_address, conn=conn
            )
            if created:
                self._warn_near_duplicates(restaurant, conn)

            stored = self.db.insert_receipt(restaurant.restaurant_id, visited_at, total, raw, conn=conn)
            dishes = self.db.resolve_dishes(restaurant.restaurant_id, names, conn=conn)
            lines = [
                (dishes[name_key(item.dish_name)].dish_id, normalize_amount(item.price))
                for item in receipt.line_items
            ]
            instances = self.db.insert_dish_instances(stored.receipt_id, lines, conn=conn)

        by_id = {dish.dish_id: dish for dish in dishes.values()}
        for instance in instances:
            instance.dish = by_id.get(instance.dish_id)

        LOG.info(
            f"Ingested receipt_id={stored.receipt_id} restaurant_id={restaurant.restaurant_id} "
            f"({'new' if created else 'existing'} restaurant, {len(instances)} line item(s), "
            f"{len(dishes)} distinct dish(es))"
        )
        return IngestResult(receipt=stored, restaurant=restaurant, dish_instances=instances)

    def _warn_near_duplicates(self, restaurant: Restaurant, conn: Any) -> None:
        others: List[str] = [
            r.name for r in self.db.list_restaurants(conn=conn) if r.restaurant_id != restaurant.restaurant_id
        ]
        similar = find_similar_names(restaurant.name, others)
        if similar:
            listed = ", ".join(f"{name!r} (distance {dist})" for name, dist in similar[:3])
            LOG.warning(f"New restaurant {restaurant.name!r} looks like existing {listed}; not merged")
