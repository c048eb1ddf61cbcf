"""Dish database package.

Stores restaurants, dishes, receipts, dish instances and dish photos in
SQLite and turns receipt images into those rows.

Modules:
- db: DB location, schema, and query helpers
- models: Dataclasses for stored records and partial updates
- parser: Payload validation for receipts and edits
- extraction: Vision-model receipt extraction with degrade-to-empty fallback
- ingest: Receipt ingestion (restaurant/dish resolution + persistence)
- corrections: Post-ingestion edits, deletes and photo linking
- service: Facade used by the API and the CLI
"""

from .db import DishDatabase
from .errors import DishLogError, NotFoundError, StorageError, ValidationError
from .extraction import ExtractionOutcome, ReceiptExtractor, extract_receipt
from .ingest import ReceiptIngestor
from .service import DishLogService
from .api.app import create_app

__all__ = [
    "DishDatabase",
    "DishLogError",
    "DishLogService",
    "ExtractionOutcome",
    "NotFoundError",
    "ReceiptExtractor",
    "ReceiptIngestor",
    "StorageError",
    "ValidationError",
    "create_app",
    "extract_receipt",
]
