from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, List, Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ...logging import get_logger
from ..db import DishDatabase
from ..errors import NotFoundError, StorageError, ValidationError
from ..extraction import ReceiptExtractor
from ..service import DishLogService


LOG = get_logger("dishdb-api")


async def _json_body(request: Request) -> Any:
    body = await request.body()
    if not body:
        raise ValidationError("body", "request body is required")
    try:
        return await request.json()
    except ValueError as exc:
        raise ValidationError("body", f"malformed JSON: {exc}") from exc


async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse({"error": exc.message, "field": exc.field}, status_code=400)


async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse({"error": f"{exc.entity.capitalize()} not found"}, status_code=404)


async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
    LOG.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"error": "Storage failure"}, status_code=500)


async def _http_error(_: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


def create_app(
    db_path: Optional[str] = None,
    *,
    extractor: Optional[ReceiptExtractor] = None,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing the dish DB API."""

    db = DishDatabase(db_path)
    service = DishLogService(db, extractor=extractor)

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": db.db_path})

    async def parse_receipt(request: Request) -> JSONResponse:
        data = await _json_body(request)
        image = data.get("image") if isinstance(data, dict) else None
        if not isinstance(image, str) or not image.strip():
            raise ValidationError("image", "Image is required")
        # The model call blocks; keep it off the event loop.
        outcome = await run_in_threadpool(service.extract, image)
        return JSONResponse(outcome.as_dict())

    async def restaurants(_: Request) -> JSONResponse:
        return JSONResponse(service.list_restaurants())

    async def restaurant_detail(request: Request) -> JSONResponse:
        return JSONResponse(service.get_restaurant_detail(request.path_params["restaurant_id"]))

    async def receipts(_: Request) -> JSONResponse:
        return JSONResponse(service.list_receipts())

    async def recent_receipts(_: Request) -> JSONResponse:
        return JSONResponse(service.recent_receipts())

    async def create_receipt(request: Request) -> JSONResponse:
        result = service.ingest(await _json_body(request))
        return JSONResponse(result.as_dict())

    async def receipt_detail(request: Request) -> JSONResponse:
        receipt_id = request.path_params["receipt_id"]
        if request.method == "PATCH":
            return JSONResponse(service.update_receipt(receipt_id, await _json_body(request)))
        if request.method == "DELETE":
            service.delete_receipt(receipt_id)
            return JSONResponse({"success": True})
        return JSONResponse(service.get_receipt_detail(receipt_id))

    async def dishes(_: Request) -> JSONResponse:
        return JSONResponse(service.list_dishes())

    async def dish_instance(request: Request) -> JSONResponse:
        instance_id = request.path_params["instance_id"]
        if request.method == "PATCH":
            return JSONResponse(service.update_dish_instance(instance_id, await _json_body(request)))
        if request.method == "DELETE":
            service.delete_dish_instance(instance_id)
            return JSONResponse({"success": True})
        return JSONResponse(service.get_dish_instance(instance_id))

    async def dish_photos(request: Request) -> JSONResponse:
        if request.method == "POST":
            return JSONResponse(service.create_dish_photo(await _json_body(request)))
        return JSONResponse(service.list_dish_photos())

    async def unlinked_photos(_: Request) -> JSONResponse:
        return JSONResponse(service.list_unlinked_photos())

    async def dish_photo(request: Request) -> JSONResponse:
        photo_id = request.path_params["photo_id"]
        return JSONResponse(service.update_dish_photo(photo_id, await _json_body(request)))

    async def stats(_: Request) -> JSONResponse:
        return JSONResponse(service.stats())

    @contextlib.asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        try:
            yield
        finally:
            service.close()
            LOG.info("Dish DB API shut down")

    # Static segments ("recent", "unlinked") are listed before the int converters.
    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/parse-receipt", parse_receipt, methods=["POST"]),
        Route("/api/restaurants", restaurants, methods=["GET"]),
        Route("/api/restaurants/{restaurant_id:int}", restaurant_detail, methods=["GET"]),
        Route("/api/receipts", receipts, methods=["GET"]),
        Route("/api/receipts", create_receipt, methods=["POST"]),
        Route("/api/receipts/recent", recent_receipts, methods=["GET"]),
        Route("/api/receipts/{receipt_id:int}", receipt_detail, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/dishes", dishes, methods=["GET"]),
        Route("/api/dish-instances/{instance_id:int}", dish_instance, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/dish-photos", dish_photos, methods=["GET", "POST"]),
        Route("/api/dish-photos/unlinked", unlinked_photos, methods=["GET"]),
        Route("/api/dish-photos/{photo_id:int}", dish_photo, methods=["PATCH"]),
        Route("/api/stats", stats, methods=["GET"]),
    ]

    app = Starlette(
        debug=False,
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            ValidationError: _validation_error,
            NotFoundError: _not_found,
            StorageError: _storage_error,
            HTTPException: _http_error,
        },
    )

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    LOG.info(f"Dish DB API ready (db={db.db_path})")
    return app


__all__ = ["create_app"]
