from __future__ import annotations

import base64
import binascii
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..config import ExtractionSettings, load_extraction_settings
from ..domain.models import ParsedLineItem, ParsedReceipt
from ..domain.normalize import clean_name, coerce_number, parse_iso_datetime, to_storage_datetime, utc_now_iso
from ..logging import enable_http_debug, get_logger
from .constants import UNKNOWN_ITEM, UNKNOWN_RESTAURANT
from .errors import ExtractionFailure, ValidationError


LOG = get_logger("dishdb-extraction")

MAX_COMPLETION_TOKENS = 2048

RECEIPT_PARSING_PROMPT = """You read restaurant receipts. Look at the receipt image and answer with a single JSON object of this shape:

{
  "restaurantName": "restaurant name as printed",
  "restaurantAddress": "street address if printed, otherwise null",
  "datetime": "ISO 8601 date-time of the visit, e.g. 2024-01-15T19:30:00Z",
  "total": 45.99,
  "lineItems": [
    {"dishName": "descriptive dish or drink name", "price": 12.99}
  ]
}

Rules:
- lineItems holds food and drink only. Leave out tax, tip, gratuity, service charges, subtotals and payment lines.
- Write dish names out in full; expand abbreviations printed on the receipt.
- Prices and the total are plain numbers. Use null when a value cannot be read.
- When only the date is printed use 12:00 as the time; when no date is printed use the current date.
- When the restaurant name is not printed, make a reasonable guess or use "Unknown Restaurant".
- Output only the JSON object, with no prose and no markdown fences."""

# (magic prefix, offset, mime)
_IMAGE_SIGNATURES: Tuple[Tuple[bytes, int, str], ...] = (
    (b"\xff\xd8\xff", 0, "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", 0, "image/png"),
    (b"GIF87a", 0, "image/gif"),
    (b"GIF89a", 0, "image/gif"),
    (b"WEBP", 8, "image/webp"),
    (b"ftypheic", 4, "image/heic"),
    (b"ftypheix", 4, "image/heic"),
    (b"ftypmif1", 4, "image/heif"),
)

_DATA_URL_RE = re.compile(r"^data:[\w.+-]+/[\w.+-]+;base64,", re.IGNORECASE)


def _sniff_mime(data: bytes) -> str:
    for magic, offset, mime in _IMAGE_SIGNATURES:
        if data[offset : offset + len(magic)] == magic:
            return mime
    return "image/jpeg"


def to_data_url(image: Union[bytes, bytearray, str]) -> str:
    """Turn raw bytes, a data URI or a bare base64 string into a data URI.

    Raises ValidationError on empty input or a string that is not base64.
    """
    if isinstance(image, (bytes, bytearray)):
        if not image:
            raise ValidationError("image", "Image is required")
        mime = _sniff_mime(bytes(image[:16]))
        return f"data:{mime};base64,{base64.b64encode(bytes(image)).decode('ascii')}"
    if not isinstance(image, str) or not image.strip():
        raise ValidationError("image", "Image is required")
    s = image.strip()
    if s.startswith("data:"):
        if not _DATA_URL_RE.match(s):
            raise ValidationError("image", "data URI must be base64-encoded")
        return s
    try:
        base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("image", "expected raw bytes, a data URI or base64 text")
    return f"data:image/jpeg;base64,{s}"


def _scavenge_json_block(s: str) -> Optional[Any]:
    if not s:
        return None

    candidates: List[str] = []

    # 1) Try fenced code blocks first (e.g., ```json ... ```)
    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    # 2) Try the full object slice
    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue

    return None


def parse_model_json(text: Optional[str]) -> Dict[str, Any]:
    """Parse the model's reply into a JSON object or raise ExtractionFailure."""
    if not text or not text.strip():
        raise ExtractionFailure("No response content from model")
    try:
        data = json.loads(text)
    except ValueError:
        data = _scavenge_json_block(text)
        if data is None:
            LOG.error(f"Model output not valid JSON; first 300 chars: {text[:300]!r}")
            raise ExtractionFailure("Model output is not valid JSON")
    if not isinstance(data, dict):
        raise ExtractionFailure(f"Model output is a JSON {type(data).__name__}, expected an object")
    return data


class ReceiptPayloadNormalizer:
    """Coerce model JSON into a well-typed ParsedReceipt.

    Every field of an unexpected type is replaced with a safe default, so the
    caller never sees a malformed shape:
    - restaurantName -> "Unknown Restaurant"
    - restaurantAddress -> None
    - datetime -> now (UTC)
    - total / price -> None unless a number or numeric string
    - lineItems -> [] unless a list; non-object entries are dropped
    - dishName -> "Unknown Item"
    """

    def __init__(self, clock: Callable[[], str] = utc_now_iso) -> None:
        self.clock = clock

    def normalize(self, raw: Dict[str, Any]) -> ParsedReceipt:
        items_raw = raw.get("lineItems")
        if not isinstance(items_raw, list):
            if items_raw is not None:
                LOG.debug(f"lineItems is a {type(items_raw).__name__}; using []")
            items_raw = []
        items = [item for item in (self._normalize_item(c) for c in items_raw) if item is not None]
        dropped = len(items_raw) - len(items)
        if dropped:
            LOG.debug(f"Dropped {dropped} non-object line item(s)")

        return ParsedReceipt(
            restaurant_name=clean_name(raw.get("restaurantName")) or UNKNOWN_RESTAURANT,
            restaurant_address=clean_name(raw.get("restaurantAddress")),
            datetime=self._normalize_datetime(raw.get("datetime")),
            total=coerce_number(raw.get("total")),
            line_items=items,
        )

    def _normalize_item(self, candidate: Any) -> Optional[ParsedLineItem]:
        if not isinstance(candidate, dict):
            return None
        return ParsedLineItem(
            dish_name=clean_name(candidate.get("dishName")) or UNKNOWN_ITEM,
            price=coerce_number(candidate.get("price")),
        )

    def _normalize_datetime(self, value: Any) -> str:
        if isinstance(value, str) and value.strip():
            try:
                to_storage_datetime(parse_iso_datetime(value))
                return value.strip()
            except (ValueError, OverflowError):
                LOG.warning(f"Model returned unusable datetime {value!r}; using current time")
        return self.clock()


@dataclass
class ExtractionOutcome:
    """Result of one extraction attempt.

    ``receipt`` is always structurally valid. When ``degraded`` is True the
    model call failed and ``receipt`` is the empty receipt; the caller should
    route the user to manual entry.
    """

    receipt: ParsedReceipt
    degraded: bool = False
    failure: Optional[ExtractionFailure] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        out = self.receipt.as_dict()
        out["extractionDegraded"] = self.degraded
        if self.failure is not None:
            out["extractionError"] = str(self.failure)
        return out


class ReceiptExtractor:
    """Vision-model receipt reader with a degrade-to-empty failure policy.

    ``client`` may be any object exposing ``chat.completions.create`` in the
    OpenAI SDK shape; when omitted an OpenAI client is built lazily from
    ``settings`` with a bounded httpx timeout and no SDK retries.
    """

    def __init__(
        self,
        settings: Optional[ExtractionSettings] = None,
        *,
        client: Any = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.settings = settings or load_extraction_settings()
        self.clock = clock
        self.normalizer = ReceiptPayloadNormalizer(clock=clock)
        self._client = client
        self._http_client: Optional[httpx.Client] = None

    @property
    def model(self) -> str:
        return self.settings.model

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self.settings.api_key:
            raise ExtractionFailure("OPENAI_API_KEY missing in env/.env; cannot run extraction")
        if self.settings.http_debug:
            enable_http_debug()
        timeout = self.settings.timeout
        self._http_client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )
        self._client = OpenAI(
            api_key=self.settings.api_key,
            base_url=self.settings.base_url,
            http_client=self._http_client,
            max_retries=0,
            timeout=timeout,
        )
        return self._client

    def close(self) -> None:
        """Close the httpx client built from settings; an injected client is left alone."""
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
            self._client = None

    def _request(self, data_url: str) -> Tuple[Optional[str], Any]:
        client = self._get_client()
        completion = client.chat.completions.create(
            model=self.model,
            max_completion_tokens=MAX_COMPLETION_TOKENS,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": RECEIPT_PARSING_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
            response_format={"type": "json_object"},
            timeout=self.settings.timeout,
        )
        choices = getattr(completion, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        return getattr(message, "content", None), completion

    def _degrade(self, failure: ExtractionFailure, meta: Dict[str, Any]) -> ExtractionOutcome:
        meta["status"] = "ERROR"
        LOG.warning(f"Receipt extraction degraded to empty receipt: {failure}")
        return ExtractionOutcome(
            receipt=ParsedReceipt.empty(self.clock()),
            degraded=True,
            failure=failure,
            meta=meta,
        )

    def extract(self, image: Union[bytes, bytearray, str]) -> ExtractionOutcome:
        """Read a receipt image. Only empty/undecodable input raises (ValidationError)."""
        data_url = to_data_url(image)
        approx_mb = round(len(data_url) / (1024 * 1024), 2)
        meta: Dict[str, Any] = {"model": self.model, "at": self.clock()}
        LOG.info(f"Calling chat completions (vision) model='{self.model}' payload≈{approx_mb} MiB")
        t0 = time.perf_counter()
        try:
            text, completion = self._request(data_url)
            meta["response_id"] = getattr(completion, "id", None)
            usage = getattr(completion, "usage", None)
            if usage is not None:
                meta["usage"] = {
                    k: getattr(usage, k, None) for k in ("prompt_tokens", "completion_tokens", "total_tokens")
                }
            receipt = self.normalizer.normalize(parse_model_json(text))
        except ExtractionFailure as exc:
            return self._degrade(exc, meta)
        except (APIConnectionError, APITimeoutError) as exc:
            LOG.error(f"Network/timeout while calling the model: {exc}")
            return self._degrade(ExtractionFailure(f"Model call failed: {exc}", cause=exc), meta)
        except APIStatusError as exc:
            body = getattr(getattr(exc, "response", None), "text", None)
            LOG.error(f"Model API returned {getattr(exc, 'status_code', '?')}. Body preview: {(body[:300] if body else None)!r}")
            return self._degrade(ExtractionFailure(f"Model API error: {exc}", cause=exc), meta)
        except Exception as exc:
            LOG.exception("Receipt extraction failed")
            return self._degrade(ExtractionFailure(f"Extraction failed: {exc}", cause=exc), meta)
        finally:
            meta["elapsed_s"] = round(time.perf_counter() - t0, 3)

        meta["status"] = "OK"
        LOG.info(
            f"Extraction finished in {meta['elapsed_s']}s id={meta.get('response_id')} "
            f"restaurant={receipt.restaurant_name!r} items={len(receipt.line_items)}"
        )
        return ExtractionOutcome(receipt=receipt, degraded=False, meta=meta)


def extract_receipt(image: Union[bytes, bytearray, str], *, extractor: Optional[ReceiptExtractor] = None) -> ParsedReceipt:
    """Convenience wrapper returning only the ParsedReceipt (empty on failure)."""
    return (extractor or ReceiptExtractor()).extract(image).receipt
