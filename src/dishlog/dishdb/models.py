from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


class _Unset:
    """Marker for "field not supplied" in partial updates (distinct from None)."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


@dataclass
class Restaurant:
    restaurant_id: int
    name: str
    address: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Restaurant":
        return cls(restaurant_id=row["restaurant_id"], name=row["name"], address=row["address"])

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.restaurant_id, "name": self.name, "address": self.address}


@dataclass
class Dish:
    dish_id: int
    restaurant_id: int
    name: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Dish":
        return cls(dish_id=row["dish_id"], restaurant_id=row["restaurant_id"], name=row["name"])

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.dish_id, "restaurantId": self.restaurant_id, "name": self.name}


@dataclass
class Receipt:
    receipt_id: int
    restaurant_id: int
    datetime: str                       # ISO-8601, UTC when the source had an offset
    total_amount: Optional[str]         # two-decimal string, e.g. "24.50"
    raw_extraction_output: Optional[Any] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Receipt":
        raw = row["raw_extraction_output"]
        return cls(
            receipt_id=row["receipt_id"],
            restaurant_id=row["restaurant_id"],
            datetime=row["visited_at"],
            total_amount=row["total_amount"],
            raw_extraction_output=json.loads(raw) if raw else None,
            created_at=row["created_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.receipt_id,
            "restaurantId": self.restaurant_id,
            "datetime": self.datetime,
            "totalAmount": self.total_amount,
            "rawExtractionOutput": self.raw_extraction_output,
            "createdAt": self.created_at,
        }


@dataclass
class DishInstance:
    instance_id: int
    dish_id: int
    receipt_id: int
    price: Optional[str] = None
    rating: Optional[str] = None
    dish: Optional[Dish] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DishInstance":
        instance = cls(
            instance_id=row["instance_id"],
            dish_id=row["dish_id"],
            receipt_id=row["receipt_id"],
            price=row["price"],
            rating=row["rating"],
        )
        # Joined queries carry the dish columns alongside the instance.
        if "dish_name" in row.keys():
            instance.dish = Dish(
                dish_id=row["dish_id"],
                restaurant_id=row["dish_restaurant_id"],
                name=row["dish_name"],
            )
        return instance

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.instance_id,
            "dishId": self.dish_id,
            "receiptId": self.receipt_id,
            "price": self.price,
            "rating": self.rating,
        }
        if self.dish is not None:
            out["dish"] = self.dish.as_dict()
        return out


@dataclass
class DishPhoto:
    photo_id: int
    image_url: str
    dish_instance_id: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DishPhoto":
        return cls(
            photo_id=row["photo_id"],
            image_url=row["image_url"],
            dish_instance_id=row["dish_instance_id"],
            created_at=row["created_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.photo_id,
            "dishInstanceId": self.dish_instance_id,
            "imageUrl": self.image_url,
            "createdAt": self.created_at,
        }


# ---------------- partial updates ----------------


@dataclass
class ReceiptUpdate:
    datetime: Union[str, _Unset] = UNSET
    total: Union[float, None, _Unset] = UNSET
    restaurant_name: Union[str, _Unset] = UNSET


@dataclass
class DishInstanceUpdate:
    rating: Union[str, None, _Unset] = UNSET
    price: Union[float, None, _Unset] = UNSET
    dish_name: Union[str, _Unset] = UNSET


@dataclass
class DishPhotoCreate:
    image_url: str
    dish_instance_id: Optional[int] = None


@dataclass
class DishPhotoUpdate:
    dish_instance_id: Optional[int]


# ---------------- composite results ----------------


@dataclass
class IngestResult:
    receipt: Receipt
    restaurant: Restaurant
    dish_instances: List[DishInstance] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        receipt = self.receipt.as_dict()
        receipt["restaurant"] = self.restaurant.as_dict()
        return {
            "receipt": receipt,
            "dishInstances": [di.as_dict() for di in self.dish_instances],
        }
