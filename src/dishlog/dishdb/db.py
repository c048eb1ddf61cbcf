from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..config import load_db_path
from ..domain.normalize import name_key
from ..logging import get_logger
from ..paths import expand_abs, find_project_root, var_dir
from .constants import DEFAULT_DB_FILENAME, DEFAULT_DB_FOLDER, RATING_CHOICES
from .errors import ConstraintViolation, StorageError
from .models import UNSET, Dish, DishInstance, DishPhoto, Receipt, Restaurant, _Unset


LOG = get_logger("dishdb-db")

RATING_ENUM_SQL = ", ".join("'{}'".format(value.replace("'", "''")) for value in RATING_CHOICES)

# Keep IN (...) lists well under SQLite's bound-parameter limit.
_IN_CHUNK = 500

_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%SZ', 'now')"

SCHEMA_SQL = f"""
PRAGMA foreign_keys = ON;

-- 1) Restaurants, unique by case-folded name
CREATE TABLE IF NOT EXISTS restaurants (
  restaurant_id  INTEGER PRIMARY KEY,
  name           TEXT NOT NULL CHECK(length(trim(name)) > 0),
  name_key       TEXT NOT NULL,
  address        TEXT,
  created_at     TEXT NOT NULL DEFAULT ({_NOW_SQL})
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_restaurants_name_key ON restaurants(name_key);

-- 2) Dishes, unique by case-folded name within a restaurant
CREATE TABLE IF NOT EXISTS dishes (
  dish_id        INTEGER PRIMARY KEY,
  restaurant_id  INTEGER NOT NULL REFERENCES restaurants(restaurant_id) ON DELETE RESTRICT,
  name           TEXT NOT NULL CHECK(length(trim(name)) > 0),
  name_key       TEXT NOT NULL,
  created_at     TEXT NOT NULL DEFAULT ({_NOW_SQL})
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_dishes_restaurant_name_key ON dishes(restaurant_id, name_key);

-- 3) Receipts (one per visit; never deduplicated)
CREATE TABLE IF NOT EXISTS receipts (
  receipt_id             INTEGER PRIMARY KEY,
  restaurant_id          INTEGER NOT NULL REFERENCES restaurants(restaurant_id) ON DELETE RESTRICT,
  visited_at             TEXT NOT NULL,
  total_amount           TEXT,            -- two-decimal string; NULL if unknown
  raw_extraction_output  TEXT,            -- JSON, written once
  created_at             TEXT NOT NULL DEFAULT ({_NOW_SQL})
);

-- 4) Dish instances (one per line item)
CREATE TABLE IF NOT EXISTS dish_instances (
  instance_id  INTEGER PRIMARY KEY,
  dish_id      INTEGER NOT NULL REFERENCES dishes(dish_id) ON DELETE RESTRICT,
  receipt_id   INTEGER NOT NULL REFERENCES receipts(receipt_id) ON DELETE RESTRICT,
  price        TEXT,
  rating       TEXT CHECK(rating IS NULL OR rating IN ({RATING_ENUM_SQL}))
);

-- 5) Dish photos; survive their instance
CREATE TABLE IF NOT EXISTS dish_photos (
  photo_id          INTEGER PRIMARY KEY,
  dish_instance_id  INTEGER REFERENCES dish_instances(instance_id) ON DELETE SET NULL,
  image_url         TEXT NOT NULL CHECK(length(trim(image_url)) > 0),
  created_at        TEXT NOT NULL DEFAULT ({_NOW_SQL})
);

CREATE INDEX IF NOT EXISTS idx_dishes_restaurant       ON dishes(restaurant_id);
CREATE INDEX IF NOT EXISTS idx_receipts_visited_at     ON receipts(visited_at);
CREATE INDEX IF NOT EXISTS idx_receipts_restaurant     ON receipts(restaurant_id);
CREATE INDEX IF NOT EXISTS idx_instances_receipt       ON dish_instances(receipt_id);
CREATE INDEX IF NOT EXISTS idx_instances_dish          ON dish_instances(dish_id);
CREATE INDEX IF NOT EXISTS idx_photos_instance         ON dish_photos(dish_instance_id);
"""

_INSTANCE_WITH_DISH_SQL = """
    SELECT
        di.instance_id,
        di.dish_id,
        di.receipt_id,
        di.price,
        di.rating,
        d.name AS dish_name,
        d.restaurant_id AS dish_restaurant_id
    FROM dish_instances di
    JOIN dishes d ON d.dish_id = di.dish_id
"""


def _chunks(values: Sequence[Any], size: int = _IN_CHUNK) -> Iterator[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


class DishDatabase:
    """SQLite-backed restaurant/dish/receipt store.

    - Places the DB under `<project-root>/var/dishdb/dishlog.sqlite3` unless a
      path is given or DISHLOG_DB_PATH is set.
    - Ensures schema on first use.
    - Natural keys are unique indexes; resolve-or-create calls lean on them
      instead of trusting an in-process check-then-insert.
    - Every query helper takes an optional ``conn`` so callers can compose
      several of them inside one ``transaction()``.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        root_dir: Optional[str] = None,
        busy_timeout: float = 30.0,
    ) -> None:
        if db_path is None:
            root = find_project_root(root_dir)
            configured = load_db_path(root)
            if configured:
                db_path = configured
            else:
                db_path = os.path.join(var_dir(root), DEFAULT_DB_FOLDER, DEFAULT_DB_FILENAME)
        self.db_path = expand_abs(db_path)
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        self.busy_timeout = busy_timeout
        LOG.info(f"Dish DB path: {self.db_path}")
        self._ensure_schema()

    # --------------- Connections ---------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        # Autocommit mode; transactions are opened explicitly by transaction().
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction; commit on success, roll back on any error."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    @contextmanager
    def _reading(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            yield own

    @contextmanager
    def _writing(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.OperationalError as exc:
                LOG.warning(f"Could not switch journal mode: {exc}")
            LOG.debug("Ensuring dish DB schema is present…")
            conn.executescript(SCHEMA_SQL)
            LOG.debug("Dish DB schema ensured.")

    # --------------- Restaurants ---------------
    def get_restaurant(self, restaurant_id: int, *, conn: Optional[sqlite3.Connection] = None) -> Optional[Restaurant]:
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT restaurant_id, name, address FROM restaurants WHERE restaurant_id = ?;",
                (int(restaurant_id),),
            ).fetchone()
        return Restaurant.from_row(row) if row else None

    def get_restaurant_by_name(self, name: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[Restaurant]:
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT restaurant_id, name, address FROM restaurants WHERE name_key = ?;",
                (name_key(name),),
            ).fetchone()
        return Restaurant.from_row(row) if row else None

    def list_restaurants(self, *, conn: Optional[sqlite3.Connection] = None) -> List[Restaurant]:
        with self._reading(conn) as c:
            rows = c.execute(
                "SELECT restaurant_id, name, address FROM restaurants ORDER BY name_key ASC, restaurant_id ASC;"
            ).fetchall()
        return [Restaurant.from_row(r) for r in rows]

    def insert_restaurant(
        self, name: str, address: Optional[str] = None, *, conn: Optional[sqlite3.Connection] = None
    ) -> Restaurant:
        """Plain insert; raises ConstraintViolation when the name is taken."""
        clean = name.strip()
        with self._writing(conn) as c:
            try:
                row = c.execute(
                    """
                    INSERT INTO restaurants (name, name_key, address)
                    VALUES (?, ?, ?)
                    RETURNING restaurant_id, name, address;
                    """,
                    (clean, name_key(clean), address),
                ).fetchone()
            except sqlite3.IntegrityError as exc:
                if _is_unique_violation(exc):
                    raise ConstraintViolation("restaurants", name_key(clean)) from exc
                raise StorageError(f"Failed to insert restaurant {clean!r}: {exc}") from exc
        return Restaurant.from_row(row)

    def resolve_restaurant(
        self, name: str, address: Optional[str] = None, *, conn: Optional[sqlite3.Connection] = None
    ) -> Tuple[Restaurant, bool]:
        """Return (restaurant, created). Case-insensitive exact name match."""
        with self._writing(conn) as c:
            existing = self.get_restaurant_by_name(name, conn=c)
            if existing is not None:
                return existing, False
            try:
                created = self.insert_restaurant(name, address, conn=c)
            except ConstraintViolation:
                # Another writer won the race; use its row.
                winner = self.get_restaurant_by_name(name, conn=c)
                if winner is None:
                    raise StorageError(f"Restaurant {name!r} vanished after a duplicate-key conflict")
                LOG.info(f"Restaurant {name!r} created concurrently; using restaurant_id={winner.restaurant_id}")
                return winner, False
            LOG.debug(f"Created restaurant_id={created.restaurant_id} name={created.name!r}")
            return created, True

    # --------------- Dishes ---------------
    def get_dish(self, dish_id: int, *, conn: Optional[sqlite3.Connection] = None) -> Optional[Dish]:
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT dish_id, restaurant_id, name FROM dishes WHERE dish_id = ?;", (int(dish_id),)
            ).fetchone()
        return Dish.from_row(row) if row else None

    def get_dish_by_restaurant_and_name(
        self, restaurant_id: int, name: str, *, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Dish]:
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT dish_id, restaurant_id, name FROM dishes WHERE restaurant_id = ? AND name_key = ?;",
                (int(restaurant_id), name_key(name)),
            ).fetchone()
        return Dish.from_row(row) if row else None

    def get_dishes_by_restaurant_and_names(
        self, restaurant_id: int, names: Sequence[str], *, conn: Optional[sqlite3.Connection] = None
    ) -> List[Dish]:
        """One lookup for many names (chunked only for very long lists)."""
        keys = list(dict.fromkeys(name_key(n) for n in names))
        if not keys:
            return []
        found: List[Dish] = []
        with self._reading(conn) as c:
            for chunk in _chunks(keys):
                placeholders = ", ".join("?" for _ in chunk)
                rows = c.execute(
                    f"""
                    SELECT dish_id, restaurant_id, name
                    FROM dishes
                    WHERE restaurant_id = ? AND name_key IN ({placeholders})
                    ORDER BY dish_id ASC;
                    """,
                    (int(restaurant_id), *chunk),
                ).fetchall()
                found.extend(Dish.from_row(r) for r in rows)
        return found

    def insert_dish(self, restaurant_id: int, name: str, *, conn: Optional[sqlite3.Connection] = None) -> Dish:
        """Plain insert; raises ConstraintViolation when (restaurant, name) exists."""
        clean = name.strip()
        with self._writing(conn) as c:
            try:
                row = c.execute(
                    """
                    INSERT INTO dishes (restaurant_id, name, name_key)
                    VALUES (?, ?, ?)
                    RETURNING dish_id, restaurant_id, name;
                    """,
                    (int(restaurant_id), clean, name_key(clean)),
                ).fetchone()
            except sqlite3.IntegrityError as exc:
                if _is_unique_violation(exc):
                    raise ConstraintViolation("dishes", (int(restaurant_id), name_key(clean))) from exc
                raise StorageError(f"Failed to insert dish {clean!r}: {exc}") from exc
        return Dish.from_row(row)

    def create_dishes(
        self, restaurant_id: int, names: Sequence[str], *, conn: Optional[sqlite3.Connection] = None
    ) -> List[Dish]:
        """Batch insert; rows that already exist (or are inserted concurrently) are kept.

        Returns one Dish per distinct name key, in first-seen order, whether it
        was inserted here or by someone else.
        """
        unique: Dict[str, str] = {}
        for n in names:
            unique.setdefault(name_key(n), n.strip())
        if not unique:
            return []
        with self._writing(conn) as c:
            try:
                c.executemany(
                    """
                    INSERT INTO dishes (restaurant_id, name, name_key)
                    VALUES (?, ?, ?)
                    ON CONFLICT(restaurant_id, name_key) DO NOTHING;
                    """,
                    [(int(restaurant_id), display, key) for key, display in unique.items()],
                )
            except sqlite3.IntegrityError as exc:
                raise StorageError(f"Failed to create dishes for restaurant_id={restaurant_id}: {exc}") from exc
            stored = self.get_dishes_by_restaurant_and_names(restaurant_id, list(unique.values()), conn=c)
        by_key = {name_key(d.name): d for d in stored}
        return [by_key[k] for k in unique if k in by_key]

    def resolve_dish(self, restaurant_id: int, name: str, *, conn: Optional[sqlite3.Connection] = None) -> Dish:
        with self._writing(conn) as c:
            existing = self.get_dish_by_restaurant_and_name(restaurant_id, name, conn=c)
            if existing is not None:
                return existing
            try:
                return self.insert_dish(restaurant_id, name, conn=c)
            except ConstraintViolation:
                winner = self.get_dish_by_restaurant_and_name(restaurant_id, name, conn=c)
                if winner is None:
                    raise StorageError(f"Dish {name!r} vanished after a duplicate-key conflict")
                LOG.info(f"Dish {name!r} created concurrently; using dish_id={winner.dish_id}")
                return winner

    def resolve_dishes(
        self, restaurant_id: int, names: Sequence[str], *, conn: Optional[sqlite3.Connection] = None
    ) -> Dict[str, Dish]:
        """Batch resolve-or-create. Returns {name_key: Dish} covering every name.

        One lookup for the existing dishes plus one batch insert for the
        missing ones.
        """
        with self._writing(conn) as c:
            resolved = {name_key(d.name): d for d in self.get_dishes_by_restaurant_and_names(restaurant_id, names, conn=c)}
            missing: List[str] = []
            seen = set(resolved)
            for n in names:
                key = name_key(n)
                if key not in seen:
                    seen.add(key)
                    missing.append(n)
            if missing:
                for dish in self.create_dishes(restaurant_id, missing, conn=c):
                    resolved[name_key(dish.name)] = dish
                LOG.debug(f"Created {len(missing)} dish(es) for restaurant_id={restaurant_id}")
        return resolved

    def list_dishes(self, *, conn: Optional[sqlite3.Connection] = None) -> List[Dish]:
        with self._reading(conn) as c:
            rows = c.execute(
                "SELECT dish_id, restaurant_id, name FROM dishes ORDER BY restaurant_id ASC, name_key ASC;"
            ).fetchall()
        return [Dish.from_row(r) for r in rows]

    def dishes_for_restaurant(
        self, restaurant_id: int, *, conn: Optional[sqlite3.Connection] = None
    ) -> List[Tuple[Dish, int, int]]:
        """Return (dish, instance_count, photo_count) for a restaurant's dishes."""
        with self._reading(conn) as c:
            rows = c.execute(
                """
                SELECT
                    d.dish_id,
                    d.restaurant_id,
                    d.name,
                    COUNT(DISTINCT di.instance_id) AS instance_count,
                    COUNT(DISTINCT p.photo_id) AS photo_count
                FROM dishes d
                LEFT JOIN dish_instances di ON di.dish_id = d.dish_id
                LEFT JOIN dish_photos p ON p.dish_instance_id = di.instance_id
                WHERE d.restaurant_id = ?
                GROUP BY d.dish_id
                ORDER BY d.name_key ASC;
                """,
                (int(restaurant_id),),
            ).fetchall()
        return [(Dish.from_row(r), int(r["instance_count"]), int(r["photo_count"])) for r in rows]

    # --------------- Receipts ---------------
    def insert_receipt(
        self,
        restaurant_id: int,
        visited_at: str,
        total_amount: Optional[str],
        raw_extraction_output: Optional[Any] = None,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Receipt:
        raw_json = json.dumps(raw_extraction_output, ensure_ascii=False) if raw_extraction_output is not None else None
        with self._writing(conn) as c:
            row = c.execute(
                """
                INSERT INTO receipts (restaurant_id, visited_at, total_amount, raw_extraction_output)
                VALUES (?, ?, ?, ?)
                RETURNING receipt_id, restaurant_id, visited_at, total_amount, raw_extraction_output, created_at;
                """,
                (int(restaurant_id), visited_at, total_amount, raw_json),
            ).fetchone()
        return Receipt.from_row(row)

    def get_receipt(self, receipt_id: int, *, conn: Optional[sqlite3.Connection] = None) -> Optional[Receipt]:
        with self._reading(conn) as c:
            row = c.execute(
                """
                SELECT receipt_id, restaurant_id, visited_at, total_amount, raw_extraction_output, created_at
                FROM receipts WHERE receipt_id = ?;
                """,
                (int(receipt_id),),
            ).fetchone()
        return Receipt.from_row(row) if row else None

    def list_receipts(
        self, *, limit: Optional[int] = None, conn: Optional[sqlite3.Connection] = None
    ) -> List[Receipt]:
        """Receipts ordered by visit time, newest first."""
        sql = """
            SELECT receipt_id, restaurant_id, visited_at, total_amount, raw_extraction_output, created_at
            FROM receipts
            ORDER BY visited_at DESC, receipt_id DESC
        """
        params: Tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._reading(conn) as c:
            rows = c.execute(sql + ";", params).fetchall()
        return [Receipt.from_row(r) for r in rows]

    def update_receipt(
        self,
        receipt_id: int,
        *,
        visited_at: Union[str, _Unset] = UNSET,
        total_amount: Union[str, None, _Unset] = UNSET,
        restaurant_id: Union[int, _Unset] = UNSET,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Receipt]:
        """Apply the supplied columns; None when the receipt does not exist."""
        assignments: List[str] = []
        params: List[Any] = []
        if visited_at is not UNSET:
            assignments.append("visited_at = ?")
            params.append(visited_at)
        if total_amount is not UNSET:
            assignments.append("total_amount = ?")
            params.append(total_amount)
        if restaurant_id is not UNSET:
            assignments.append("restaurant_id = ?")
            params.append(int(restaurant_id))
        with self._writing(conn) as c:
            if assignments:
                c.execute(
                    f"UPDATE receipts SET {', '.join(assignments)} WHERE receipt_id = ?;",
                    (*params, int(receipt_id)),
                )
            return self.get_receipt(receipt_id, conn=c)

    def delete_receipt(self, receipt_id: int, *, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Delete a receipt with its instances; their photos are unlinked, not deleted."""
        with self._writing(conn) as c:
            if c.execute("SELECT 1 FROM receipts WHERE receipt_id = ?;", (int(receipt_id),)).fetchone() is None:
                return False
            unlinked = c.execute(
                """
                UPDATE dish_photos SET dish_instance_id = NULL
                WHERE dish_instance_id IN (SELECT instance_id FROM dish_instances WHERE receipt_id = ?);
                """,
                (int(receipt_id),),
            ).rowcount
            removed = c.execute("DELETE FROM dish_instances WHERE receipt_id = ?;", (int(receipt_id),)).rowcount
            c.execute("DELETE FROM receipts WHERE receipt_id = ?;", (int(receipt_id),))
        LOG.info(f"Deleted receipt_id={receipt_id} ({removed} instance(s), {unlinked} photo(s) unlinked)")
        return True

    # --------------- Dish instances ---------------
    def insert_dish_instances(
        self,
        receipt_id: int,
        lines: Sequence[Tuple[int, Optional[str]]],
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[DishInstance]:
        """Insert one instance per (dish_id, price) pair, preserving order. Rating starts unset."""
        created: List[DishInstance] = []
        with self._writing(conn) as c:
            for dish_id, price in lines:
                row = c.execute(
                    """
                    INSERT INTO dish_instances (dish_id, receipt_id, price, rating)
                    VALUES (?, ?, ?, NULL)
                    RETURNING instance_id, dish_id, receipt_id, price, rating;
                    """,
                    (int(dish_id), int(receipt_id), price),
                ).fetchone()
                created.append(DishInstance.from_row(row))
        return created

    def get_dish_instance(
        self, instance_id: int, *, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[DishInstance]:
        """Instance annotated with its dish."""
        with self._reading(conn) as c:
            row = c.execute(_INSTANCE_WITH_DISH_SQL + " WHERE di.instance_id = ?;", (int(instance_id),)).fetchone()
        return DishInstance.from_row(row) if row else None

    def dish_instances_for_receipt(
        self, receipt_id: int, *, conn: Optional[sqlite3.Connection] = None
    ) -> List[DishInstance]:
        with self._reading(conn) as c:
            rows = c.execute(
                _INSTANCE_WITH_DISH_SQL + " WHERE di.receipt_id = ? ORDER BY di.instance_id ASC;",
                (int(receipt_id),),
            ).fetchall()
        return [DishInstance.from_row(r) for r in rows]

    def update_dish_instance(
        self,
        instance_id: int,
        *,
        dish_id: Union[int, _Unset] = UNSET,
        price: Union[str, None, _Unset] = UNSET,
        rating: Union[str, None, _Unset] = UNSET,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[DishInstance]:
        assignments: List[str] = []
        params: List[Any] = []
        if dish_id is not UNSET:
            assignments.append("dish_id = ?")
            params.append(int(dish_id))
        if price is not UNSET:
            assignments.append("price = ?")
            params.append(price)
        if rating is not UNSET:
            assignments.append("rating = ?")
            params.append(rating)
        with self._writing(conn) as c:
            if assignments:
                c.execute(
                    f"UPDATE dish_instances SET {', '.join(assignments)} WHERE instance_id = ?;",
                    (*params, int(instance_id)),
                )
            return self.get_dish_instance(instance_id, conn=c)

    def repoint_dish_instances(
        self, moves: Sequence[Tuple[int, int]], *, conn: Optional[sqlite3.Connection] = None
    ) -> int:
        """Apply (instance_id, new_dish_id) pairs; returns the number of rows touched."""
        if not moves:
            return 0
        with self._writing(conn) as c:
            cur = c.executemany(
                "UPDATE dish_instances SET dish_id = ? WHERE instance_id = ?;",
                [(int(dish_id), int(instance_id)) for instance_id, dish_id in moves],
            )
            return cur.rowcount

    def delete_dish_instance(self, instance_id: int, *, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Unlink the instance's photos, then delete it."""
        with self._writing(conn) as c:
            if c.execute("SELECT 1 FROM dish_instances WHERE instance_id = ?;", (int(instance_id),)).fetchone() is None:
                return False
            unlinked = c.execute(
                "UPDATE dish_photos SET dish_instance_id = NULL WHERE dish_instance_id = ?;", (int(instance_id),)
            ).rowcount
            c.execute("DELETE FROM dish_instances WHERE instance_id = ?;", (int(instance_id),))
        LOG.info(f"Deleted instance_id={instance_id} ({unlinked} photo(s) unlinked)")
        return True

    # --------------- Dish photos ---------------
    def insert_dish_photo(
        self, image_url: str, dish_instance_id: Optional[int] = None, *, conn: Optional[sqlite3.Connection] = None
    ) -> DishPhoto:
        with self._writing(conn) as c:
            row = c.execute(
                """
                INSERT INTO dish_photos (image_url, dish_instance_id)
                VALUES (?, ?)
                RETURNING photo_id, image_url, dish_instance_id, created_at;
                """,
                (image_url, int(dish_instance_id) if dish_instance_id is not None else None),
            ).fetchone()
        return DishPhoto.from_row(row)

    def get_dish_photo(self, photo_id: int, *, conn: Optional[sqlite3.Connection] = None) -> Optional[DishPhoto]:
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT photo_id, image_url, dish_instance_id, created_at FROM dish_photos WHERE photo_id = ?;",
                (int(photo_id),),
            ).fetchone()
        return DishPhoto.from_row(row) if row else None

    def update_dish_photo(
        self, photo_id: int, dish_instance_id: Optional[int], *, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[DishPhoto]:
        with self._writing(conn) as c:
            c.execute(
                "UPDATE dish_photos SET dish_instance_id = ? WHERE photo_id = ?;",
                (int(dish_instance_id) if dish_instance_id is not None else None, int(photo_id)),
            )
            return self.get_dish_photo(photo_id, conn=c)

    def photos_for_instances(
        self, instance_ids: Sequence[int], *, conn: Optional[sqlite3.Connection] = None
    ) -> Dict[int, List[DishPhoto]]:
        """Photos grouped by instance id, oldest first within each group."""
        grouped: Dict[int, List[DishPhoto]] = {}
        ids = [int(i) for i in instance_ids]
        if not ids:
            return grouped
        with self._reading(conn) as c:
            for chunk in _chunks(ids):
                placeholders = ", ".join("?" for _ in chunk)
                rows = c.execute(
                    f"""
                    SELECT photo_id, image_url, dish_instance_id, created_at
                    FROM dish_photos
                    WHERE dish_instance_id IN ({placeholders})
                    ORDER BY created_at ASC, photo_id ASC;
                    """,
                    tuple(chunk),
                ).fetchall()
                for r in rows:
                    grouped.setdefault(r["dish_instance_id"], []).append(DishPhoto.from_row(r))
        return grouped

    def list_unlinked_photos(
        self, *, since: Optional[str] = None, conn: Optional[sqlite3.Connection] = None
    ) -> List[DishPhoto]:
        """Unlinked photos, newest first; ``since`` is an inclusive created_at bound."""
        sql = "SELECT photo_id, image_url, dish_instance_id, created_at FROM dish_photos WHERE dish_instance_id IS NULL"
        params: Tuple[Any, ...] = ()
        if since:
            sql += " AND created_at >= ?"
            params = (since,)
        with self._reading(conn) as c:
            rows = c.execute(sql + " ORDER BY created_at DESC, photo_id DESC;", params).fetchall()
        return [DishPhoto.from_row(r) for r in rows]

    def fetch_dish_photos_detail(self, *, conn: Optional[sqlite3.Connection] = None) -> List[Dict[str, Any]]:
        """All photos newest first; linked ones carry instance, dish, receipt and restaurant."""
        with self._reading(conn) as c:
            rows = c.execute(
                """
                SELECT
                    p.photo_id,
                    p.image_url,
                    p.dish_instance_id,
                    p.created_at,
                    di.instance_id,
                    di.dish_id,
                    di.receipt_id,
                    di.price,
                    di.rating,
                    d.name AS dish_name,
                    d.restaurant_id AS dish_restaurant_id,
                    r.restaurant_id,
                    r.visited_at,
                    r.total_amount,
                    r.raw_extraction_output,
                    r.created_at AS receipt_created_at,
                    rs.name AS restaurant_name,
                    rs.address AS restaurant_address
                FROM dish_photos p
                LEFT JOIN dish_instances di ON di.instance_id = p.dish_instance_id
                LEFT JOIN dishes d ON d.dish_id = di.dish_id
                LEFT JOIN receipts r ON r.receipt_id = di.receipt_id
                LEFT JOIN restaurants rs ON rs.restaurant_id = r.restaurant_id
                ORDER BY p.created_at DESC, p.photo_id DESC;
                """
            ).fetchall()
        out: List[Dict[str, Any]] = []
        for row in rows:
            photo = DishPhoto.from_row(row).as_dict()
            if row["instance_id"] is not None:
                instance = DishInstance.from_row(row).as_dict()
                receipt = Receipt(
                    receipt_id=row["receipt_id"],
                    restaurant_id=row["restaurant_id"],
                    datetime=row["visited_at"],
                    total_amount=row["total_amount"],
                    raw_extraction_output=json.loads(row["raw_extraction_output"]) if row["raw_extraction_output"] else None,
                    created_at=row["receipt_created_at"],
                ).as_dict()
                receipt["restaurant"] = Restaurant(
                    restaurant_id=row["restaurant_id"],
                    name=row["restaurant_name"],
                    address=row["restaurant_address"],
                ).as_dict()
                instance["receipt"] = receipt
                photo["dishInstance"] = instance
            out.append(photo)
        return out

    # --------------- Aggregates ---------------
    def fetch_stats(self, *, conn: Optional[sqlite3.Connection] = None) -> Dict[str, Any]:
        """Counts, spend, rating breakdown and dish instances per month."""
        with self._reading(conn) as c:
            counts: Dict[str, int] = {}
            for table in ("restaurants", "dishes", "receipts", "dish_instances", "dish_photos"):
                counts[table] = int(c.execute(f"SELECT COUNT(*) AS count FROM {table};").fetchone()["count"])

            total_spend = Decimal("0")
            for row in c.execute("SELECT total_amount FROM receipts WHERE total_amount IS NOT NULL;"):
                try:
                    total_spend += Decimal(row["total_amount"])
                except InvalidOperation:
                    LOG.warning(f"Skipping non-decimal total_amount {row['total_amount']!r} in stats")

            breakdown = {rating: 0 for rating in RATING_CHOICES}
            for row in c.execute(
                "SELECT rating, COUNT(*) AS count FROM dish_instances WHERE rating IS NOT NULL GROUP BY rating;"
            ):
                if row["rating"] in breakdown:
                    breakdown[row["rating"]] = int(row["count"])

            per_month = [
                {"month": row["month"], "count": int(row["count"])}
                for row in c.execute(
                    """
                    SELECT substr(r.visited_at, 1, 7) AS month, COUNT(*) AS count
                    FROM dish_instances di
                    JOIN receipts r ON r.receipt_id = di.receipt_id
                    GROUP BY month
                    ORDER BY month ASC;
                    """
                )
            ]

        return {
            "totalDishes": counts["dish_photos"],
            "totalDishIdentities": counts["dishes"],
            "totalDishInstances": counts["dish_instances"],
            "totalReceipts": counts["receipts"],
            "totalRestaurants": counts["restaurants"],
            "totalSpend": f"{total_spend:.2f}",
            "ratingBreakdown": breakdown,
            "dishesPerMonth": per_month,
        }
