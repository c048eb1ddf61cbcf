from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, List

import pytest

from dishlog.config import ExtractionSettings
from dishlog.dishdb import DishDatabase, ReceiptExtractor


@pytest.fixture
def db(tmp_path: Path) -> DishDatabase:
    return DishDatabase(str(tmp_path / "dishlog.sqlite3"))


def receipt_payload(
    restaurant: str = "Luigi's",
    items: List[Dict[str, Any]] | None = None,
    *,
    when: str = "2024-03-01T19:30:00Z",
    total: Any = 24.5,
) -> Dict[str, Any]:
    return {
        "restaurantName": restaurant,
        "datetime": when,
        "total": total,
        "lineItems": items if items is not None else [
            {"dishName": "Margherita", "price": 12},
            {"dishName": "Tiramisu", "price": 7.5},
        ],
    }


class FakeCompletions:
    """Stands in for ``client.chat.completions``; records every call."""

    def __init__(self, reply: Callable[..., Any]) -> None:
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return self.reply(**kwargs)


def completion(content: Any) -> SimpleNamespace:
    text = content if isinstance(content, str) or content is None else json.dumps(content)
    return SimpleNamespace(
        id="chatcmpl-test",
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=20, total_tokens=30),
    )


def fake_extractor(reply: Callable[..., Any]) -> tuple[ReceiptExtractor, FakeCompletions]:
    completions = FakeCompletions(reply)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    settings = ExtractionSettings(api_key="sk-test", base_url=None, model="gpt-4o-mini", timeout=5.0)
    return ReceiptExtractor(settings, client=client, clock=lambda: "2024-05-05T12:00:00Z"), completions
