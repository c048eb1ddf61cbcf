"""Error taxonomy shared by the store, pipeline and API layers."""

from __future__ import annotations

from typing import Any, Optional


class DishLogError(Exception):
    pass


class ValidationError(DishLogError):
    """Malformed or missing input; ``field`` names the first offending field."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class NotFoundError(DishLogError):
    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class ExtractionFailure(DishLogError):
    """External model call failed or its output was unusable.

    Never raised past the extraction adapter; it is carried on the
    ``ExtractionOutcome`` instead.
    """

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class ConstraintViolation(DishLogError):
    """Duplicate natural key on insert. Resolve-or-create paths re-fetch the winner."""

    def __init__(self, table: str, key: Any) -> None:
        super().__init__(f"duplicate key {key!r} in {table}")
        self.table = table
        self.key = key


class StorageError(DishLogError):
    pass
