from __future__ import annotations

from typing import Tuple

# Closed rating scale for a dish instance, best first.
RATING_ELITE = "Elite"
RATING_ORDER_AGAIN = "Would order again"
RATING_TRY_ONCE = "Should try once"
RATING_NOT_FOR_ME = "Not for me"

RATING_CHOICES: Tuple[str, ...] = (
    RATING_ELITE,
    RATING_ORDER_AGAIN,
    RATING_TRY_ONCE,
    RATING_NOT_FOR_ME,
)

UNKNOWN_RESTAURANT = "Unknown Restaurant"
UNKNOWN_ITEM = "Unknown Item"

DEFAULT_DB_FOLDER = "dishdb"
DEFAULT_DB_FILENAME = "dishlog.sqlite3"

# Unlinked photos older than this are no longer offered for linking.
UNLINKED_PHOTO_MAX_AGE_HOURS = 24
RECENT_RECEIPTS_LIMIT = 10
