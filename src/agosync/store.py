"""Durable recipe store.

The engine talks to the store through :class:`RecipeStore`; the bundled
:class:`SqliteRecipeStore` keeps everything in one SQLite file. SQLite
calls are blocking, so each operation runs in a worker thread via
:func:`asyncio.to_thread` and is serialized by a lock.

Updates and deletes addressed to rows that no longer exist are silent
no-ops, so a late write for a deleted entity simply disappears.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar

from agosync._constants import DEFAULT_SETTINGS
from agosync.exceptions import AgoPersistenceError
from agosync.models.device import UploadRecord
from agosync.models.recipe import RECIPE_EDITABLE_FIELDS, STEP_EDITABLE_FIELDS, Recipe, Step

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecipeStore(Protocol):
    """CRUD surface the persistence engine depends on."""

    async def fetch_all_recipes(self) -> list[Recipe]: ...

    async def fetch_recipe(self, recipe_id: str) -> Recipe | None: ...

    async def insert_recipe(self, recipe: Recipe) -> None: ...

    async def update_recipe(self, recipe_id: str, fields: Mapping[str, Any], *, updated_at: datetime) -> None: ...

    async def delete_recipe(self, recipe_id: str) -> None: ...

    async def touch_recipe(self, recipe_id: str, *, updated_at: datetime) -> None: ...

    async def insert_step(self, step: Step) -> None: ...

    async def update_step(self, step_id: str, fields: Mapping[str, Any]) -> None: ...

    async def delete_step(self, step_id: str) -> None: ...

    async def update_step_orders(self, orders: Iterable[tuple[str, int]]) -> None: ...

    async def fetch_settings(self) -> dict[str, str]: ...

    async def ensure_default_settings(self) -> None: ...

    async def upsert_setting(self, key: str, value: str) -> None: ...

    async def insert_upload(self, record: UploadRecord) -> None: ...

    async def fetch_uploads(self) -> list[UploadRecord]: ...


# ------------------------------------------------------------------
# Schema
# ------------------------------------------------------------------

#: Ordered migrations; ``PRAGMA user_version`` records how many have run.
MIGRATIONS: tuple[tuple[str, str], ...] = (
    (
        "create initial tables",
        """
        CREATE TABLE IF NOT EXISTS recipes (
            id              TEXT PRIMARY KEY,
            name            TEXT NOT NULL,
            film_stock      TEXT NOT NULL DEFAULT '',
            developer       TEXT NOT NULL DEFAULT '',
            dilution        TEXT NOT NULL DEFAULT '',
            category        TEXT NOT NULL DEFAULT 'BW',
            notes           TEXT NOT NULL DEFAULT '',
            created_at      TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at      TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS steps (
            id                  TEXT PRIMARY KEY,
            recipe_id           TEXT NOT NULL REFERENCES recipes(id) ON DELETE CASCADE,
            sort_order          INTEGER NOT NULL DEFAULT 0,
            name                TEXT NOT NULL DEFAULT 'DEV',
            time_min            INTEGER NOT NULL DEFAULT 0,
            time_sec            INTEGER NOT NULL DEFAULT 0,
            agitation           TEXT NOT NULL DEFAULT 'Roll',
            compensation        TEXT NOT NULL DEFAULT 'Off',
            min_temperature     REAL NOT NULL DEFAULT 18,
            rated_temperature   REAL NOT NULL DEFAULT 20,
            max_temperature     REAL NOT NULL DEFAULT 24,
            formula_designator  TEXT NOT NULL DEFAULT '',
            logo_text           TEXT NOT NULL DEFAULT ''
        );

        CREATE INDEX IF NOT EXISTS idx_steps_recipe ON steps(recipe_id, sort_order);

        CREATE TABLE IF NOT EXISTS settings (
            key     TEXT PRIMARY KEY,
            value   TEXT NOT NULL
        );
        """,
    ),
    (
        "add dev_time_reduced flag to recipes",
        "ALTER TABLE recipes ADD COLUMN dev_time_reduced INTEGER NOT NULL DEFAULT 0;",
    ),
    (
        "track programs uploaded to AGO",
        """
        CREATE TABLE IF NOT EXISTS ago_uploads (
            id              TEXT PRIMARY KEY,
            recipe_id       TEXT REFERENCES recipes(id) ON DELETE SET NULL,
            filename        TEXT NOT NULL,
            display_name    TEXT NOT NULL,
            uploaded_at     TEXT NOT NULL DEFAULT (datetime('now'))
        );
        """,
    ),
)

_RECIPE_COLUMNS: tuple[str, ...] = (
    "id",
    "name",
    "film_stock",
    "developer",
    "dilution",
    "category",
    "notes",
    "dev_time_reduced",
    "created_at",
    "updated_at",
)

_STEP_COLUMNS: tuple[str, ...] = (
    "id",
    "recipe_id",
    "sort_order",
    "name",
    "time_min",
    "time_sec",
    "agitation",
    "compensation",
    "min_temperature",
    "rated_temperature",
    "max_temperature",
    "formula_designator",
    "logo_text",
)


def _iso(value: datetime) -> str:
    return value.isoformat()


def _assignments(fields: Mapping[str, Any], allowed: frozenset[str]) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"not an editable column: {', '.join(sorted(unknown))}")
    names = sorted(fields)
    return ", ".join(f"{name} = ?" for name in names), [fields[name] for name in names]


class SqliteRecipeStore:
    """SQLite implementation of :class:`RecipeStore`.

    Usage::

        store = SqliteRecipeStore("ago_recipes.db")
        await store.open()
        ...
        await store.close()

    Use ``":memory:"`` for an ephemeral database.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._thread_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._conn is not None:
            return
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await asyncio.to_thread(self._connect)
        await self._call(self._migrate)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def close(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    async def __aenter__(self) -> SqliteRecipeStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @staticmethod
    def _migrate(conn: sqlite3.Connection) -> None:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        for index, (description, sql) in enumerate(MIGRATIONS[version:], start=version + 1):
            _logger.debug("Applying migration %d: %s", index, description)
            conn.executescript(sql)
            conn.execute(f"PRAGMA user_version = {index}")
        conn.commit()

    async def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._conn
        if conn is None:
            raise AgoPersistenceError("Store not opened. Call 'await store.open()' first")

        def run() -> T:
            with self._thread_lock:
                try:
                    result = fn(conn)
                    conn.commit()
                    return result
                except BaseException:
                    conn.rollback()
                    raise

        async with self._lock:
            try:
                return await asyncio.to_thread(run)
            except sqlite3.Error as exc:
                raise AgoPersistenceError(f"Database operation failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Recipes
    # ------------------------------------------------------------------

    @staticmethod
    def _steps_for(conn: sqlite3.Connection, recipe_id: str) -> list[Step]:
        rows = conn.execute(
            "SELECT * FROM steps WHERE recipe_id = ? ORDER BY sort_order",
            (recipe_id,),
        ).fetchall()
        return [Step.model_validate(dict(row)) for row in rows]

    async def fetch_all_recipes(self) -> list[Recipe]:
        def query(conn: sqlite3.Connection) -> list[Recipe]:
            rows = conn.execute("SELECT * FROM recipes ORDER BY updated_at DESC").fetchall()
            return [
                Recipe.model_validate({**dict(row), "steps": self._steps_for(conn, row["id"])}) for row in rows
            ]

        return await self._call(query)

    async def fetch_recipe(self, recipe_id: str) -> Recipe | None:
        def query(conn: sqlite3.Connection) -> Recipe | None:
            row = conn.execute("SELECT * FROM recipes WHERE id = ?", (recipe_id,)).fetchone()
            if row is None:
                return None
            return Recipe.model_validate({**dict(row), "steps": self._steps_for(conn, recipe_id)})

        return await self._call(query)

    async def insert_recipe(self, recipe: Recipe) -> None:
        data = recipe.model_dump(include=set(_RECIPE_COLUMNS))
        data["created_at"] = _iso(recipe.created_at)
        data["updated_at"] = _iso(recipe.updated_at)
        values = [data[c] for c in _RECIPE_COLUMNS]
        sql = f"INSERT INTO recipes ({', '.join(_RECIPE_COLUMNS)}) VALUES ({', '.join('?' for _ in values)})"
        await self._call(lambda conn: conn.execute(sql, values))

    async def update_recipe(self, recipe_id: str, fields: Mapping[str, Any], *, updated_at: datetime) -> None:
        assignments, values = _assignments(fields, RECIPE_EDITABLE_FIELDS)
        clause = f"{assignments}, updated_at = ?" if assignments else "updated_at = ?"
        sql = f"UPDATE recipes SET {clause} WHERE id = ?"
        params = [*values, _iso(updated_at), recipe_id]
        await self._call(lambda conn: conn.execute(sql, params))

    async def delete_recipe(self, recipe_id: str) -> None:
        def run(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM steps WHERE recipe_id = ?", (recipe_id,))
            conn.execute("DELETE FROM recipes WHERE id = ?", (recipe_id,))

        await self._call(run)

    async def touch_recipe(self, recipe_id: str, *, updated_at: datetime) -> None:
        await self._call(
            lambda conn: conn.execute("UPDATE recipes SET updated_at = ? WHERE id = ?", (_iso(updated_at), recipe_id))
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def insert_step(self, step: Step) -> None:
        data = step.model_dump(include=set(_STEP_COLUMNS))
        values = [data[c] for c in _STEP_COLUMNS]
        sql = f"INSERT INTO steps ({', '.join(_STEP_COLUMNS)}) VALUES ({', '.join('?' for _ in values)})"
        await self._call(lambda conn: conn.execute(sql, values))

    async def update_step(self, step_id: str, fields: Mapping[str, Any]) -> None:
        if not fields:
            return
        assignments, values = _assignments(fields, STEP_EDITABLE_FIELDS)
        sql = f"UPDATE steps SET {assignments} WHERE id = ?"
        params = [*values, step_id]
        await self._call(lambda conn: conn.execute(sql, params))

    async def delete_step(self, step_id: str) -> None:
        await self._call(lambda conn: conn.execute("DELETE FROM steps WHERE id = ?", (step_id,)))

    async def update_step_orders(self, orders: Iterable[tuple[str, int]]) -> None:
        params = [(sort_order, step_id) for step_id, sort_order in orders]
        await self._call(lambda conn: conn.executemany("UPDATE steps SET sort_order = ? WHERE id = ?", params))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def fetch_settings(self) -> dict[str, str]:
        def query(conn: sqlite3.Connection) -> dict[str, str]:
            return {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM settings")}

        return await self._call(query)

    async def ensure_default_settings(self) -> None:
        params = list(DEFAULT_SETTINGS.items())
        await self._call(
            lambda conn: conn.executemany("INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)", params)
        )

    async def upsert_setting(self, key: str, value: str) -> None:
        await self._call(
            lambda conn: conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
        )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def insert_upload(self, record: UploadRecord) -> None:
        await self._call(
            lambda conn: conn.execute(
                "INSERT INTO ago_uploads (id, recipe_id, filename, display_name, uploaded_at) VALUES (?, ?, ?, ?, ?)",
                (record.id, record.recipe_id, record.filename, record.display_name, _iso(record.uploaded_at)),
            )
        )

    async def fetch_uploads(self) -> list[UploadRecord]:
        def query(conn: sqlite3.Connection) -> list[UploadRecord]:
            rows = conn.execute("SELECT * FROM ago_uploads ORDER BY uploaded_at DESC").fetchall()
            return [UploadRecord.model_validate(dict(row)) for row in rows]

        return await self._call(query)
