from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ParsedLineItem:
    dish_name: str
    price: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"dishName": self.dish_name, "price": self.price}


@dataclass
class ParsedReceipt:
    """Structured fields read off a receipt image.

    Field names serialize to the camelCase wire shape used by the API:
    ``restaurantName``, ``restaurantAddress``, ``datetime``, ``total``,
    ``lineItems[{dishName, price}]``.
    """

    restaurant_name: str
    datetime: str
    total: Optional[float] = None
    line_items: List[ParsedLineItem] = field(default_factory=list)
    restaurant_address: Optional[str] = None

    @classmethod
    def empty(cls, now_iso: str) -> "ParsedReceipt":
        """The valid-but-empty receipt handed out when extraction fails."""
        return cls(restaurant_name="", datetime=now_iso, total=None, line_items=[])

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "restaurantName": self.restaurant_name,
            "datetime": self.datetime,
            "total": self.total,
            "lineItems": [item.as_dict() for item in self.line_items],
        }
        if self.restaurant_address:
            out["restaurantAddress"] = self.restaurant_address
        return out
