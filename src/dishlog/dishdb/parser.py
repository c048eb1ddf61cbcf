from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, Optional, Union

from ..domain.models import ParsedLineItem, ParsedReceipt
from ..domain.normalize import clean_name, parse_iso_datetime, to_storage_datetime
from ..logging import get_logger
from .constants import RATING_CHOICES
from .errors import ValidationError
from .models import (
    UNSET,
    DishInstanceUpdate,
    DishPhotoCreate,
    DishPhotoUpdate,
    ReceiptUpdate,
)


LOG = get_logger("dishdb-parser")


def _require_mapping(payload: Any, field: str = "body") -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError(field, "must be a JSON object")
    return payload


def _number_or_none(value: Any, field: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field, "must be a number or null")
    if not math.isfinite(value):
        raise ValidationError(field, "must be a finite number")
    return float(value)


def _required_name(value: Any, field: str, label: str) -> str:
    name = clean_name(value)
    if not name:
        raise ValidationError(field, f"{label} is required")
    return name


def _iso_datetime(value: Any, field: str = "datetime") -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must be an ISO-8601 date or datetime string")
    try:
        parsed = parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(field, f"invalid ISO-8601 date/time: {value!r}")
    try:
        to_storage_datetime(parsed)
    except OverflowError:
        raise ValidationError(field, f"date/time out of range in UTC: {value!r}")
    return value.strip()


def _id_or_none(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(field, "must be an integer id or null")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError(field, "must be an integer id or null")


def parse_and_validate_receipt(payload: Union[ParsedReceipt, Mapping[str, Any]]) -> ParsedReceipt:
    """Validate a ParsedReceipt-shaped payload before ingestion.

    Expected shape (camelCase wire names):
    - restaurantName: non-empty string
    - restaurantAddress: string (optional)
    - datetime: ISO-8601 date or datetime
    - total: number or null
    - lineItems: [{ dishName: non-empty string, price: number or null }]

    Raises ValidationError naming the first offending field.
    """
    if isinstance(payload, ParsedReceipt):
        payload = payload.as_dict()
    data = _require_mapping(payload)

    restaurant_name = _required_name(data.get("restaurantName"), "restaurantName", "Restaurant name")
    address_raw = data.get("restaurantAddress")
    if address_raw is not None and not isinstance(address_raw, str):
        raise ValidationError("restaurantAddress", "must be a string")
    restaurant_address = clean_name(address_raw)

    when = _iso_datetime(data.get("datetime"))
    total = _number_or_none(data.get("total"), "total")

    items_in = data.get("lineItems")
    if not isinstance(items_in, list):
        raise ValidationError("lineItems", "must be a list")
    items: List[ParsedLineItem] = []
    for idx, it in enumerate(items_in):
        if not isinstance(it, Mapping):
            raise ValidationError(f"lineItems[{idx}]", "must be an object")
        dish_name = _required_name(it.get("dishName"), f"lineItems[{idx}].dishName", "Dish name")
        price = _number_or_none(it.get("price"), f"lineItems[{idx}].price")
        items.append(ParsedLineItem(dish_name=dish_name, price=price))

    LOG.debug(f"Validated receipt payload for {restaurant_name!r} with {len(items)} line item(s)")
    return ParsedReceipt(
        restaurant_name=restaurant_name,
        restaurant_address=restaurant_address,
        datetime=when,
        total=total,
        line_items=items,
    )


def parse_receipt_update(payload: Any) -> ReceiptUpdate:
    data = _require_mapping(payload)
    update = ReceiptUpdate()
    if "datetime" in data:
        update.datetime = _iso_datetime(data["datetime"])
    if "total" in data:
        update.total = _number_or_none(data["total"], "total")
    if "restaurantName" in data:
        update.restaurant_name = _required_name(data["restaurantName"], "restaurantName", "Restaurant name")
    return update


def parse_dish_instance_update(payload: Any) -> DishInstanceUpdate:
    data = _require_mapping(payload)
    update = DishInstanceUpdate()
    if "rating" in data:
        rating = data["rating"]
        if rating is not None and rating not in RATING_CHOICES:
            raise ValidationError("rating", f"must be one of {', '.join(RATING_CHOICES)} or null")
        update.rating = rating
    if "price" in data:
        update.price = _number_or_none(data["price"], "price")
    if "dishName" in data:
        update.dish_name = _required_name(data["dishName"], "dishName", "Dish name")
    return update


def parse_dish_photo_create(payload: Any) -> DishPhotoCreate:
    data = _require_mapping(payload)
    image_url = _required_name(data.get("imageUrl"), "imageUrl", "Image URL")
    return DishPhotoCreate(
        image_url=image_url,
        dish_instance_id=_id_or_none(data.get("dishInstanceId"), "dishInstanceId"),
    )


def parse_dish_photo_update(payload: Any) -> DishPhotoUpdate:
    data = _require_mapping(payload)
    if "dishInstanceId" not in data:
        raise ValidationError("dishInstanceId", "is required (use null to unlink)")
    return DishPhotoUpdate(dish_instance_id=_id_or_none(data["dishInstanceId"], "dishInstanceId"))


def describe(update: Union[ReceiptUpdate, DishInstanceUpdate]) -> Dict[str, Any]:
    """Supplied fields of a partial update, for log lines."""
    return {k: v for k, v in vars(update).items() if v is not UNSET}
