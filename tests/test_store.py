from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agosync.exceptions import AgoPersistenceError
from agosync.models import Recipe, Step, UploadRecord
from agosync.store import MIGRATIONS, SqliteRecipeStore


def _dt(offset: int = 0) -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=offset)


def _recipe(recipe_id: str, *, offset: int = 0, name: str = "Recipe") -> Recipe:
    return Recipe(id=recipe_id, name=name, film_stock="HP5", created_at=_dt(offset), updated_at=_dt(offset))


def _step(step_id: str, recipe_id: str, sort_order: int, name: str = "DEV") -> Step:
    return Step(id=step_id, recipe_id=recipe_id, sort_order=sort_order, name=name, time_min=sort_order + 1)


@pytest.mark.asyncio
async def test_round_trips_recipes_with_ordered_steps() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.insert_recipe(_recipe("r1"))
        await store.insert_step(_step("s2", "r1", 1, "FIX"))
        await store.insert_step(_step("s1", "r1", 0, "DEV"))

        recipe = await store.fetch_recipe("r1")

    assert recipe is not None
    assert recipe.film_stock == "HP5"
    assert recipe.created_at == _dt()
    assert [s.id for s in recipe.steps] == ["s1", "s2"]
    assert recipe.steps[1].time_min == 2


@pytest.mark.asyncio
async def test_fetch_all_orders_by_most_recently_updated() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.insert_recipe(_recipe("old", offset=0))
        await store.insert_recipe(_recipe("new", offset=5))
        await store.touch_recipe("old", updated_at=_dt(10))

        recipes = await store.fetch_all_recipes()

    assert [r.id for r in recipes] == ["old", "new"]


@pytest.mark.asyncio
async def test_update_recipe_sets_fields_and_timestamp() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.insert_recipe(_recipe("r1"))
        await store.update_recipe("r1", {"name": "X", "dev_time_reduced": 1}, updated_at=_dt(3))

        recipe = await store.fetch_recipe("r1")

    assert recipe is not None
    assert recipe.name == "X"
    assert recipe.dev_time_reduced == 1
    assert recipe.updated_at == _dt(3)


@pytest.mark.asyncio
async def test_updates_to_deleted_rows_are_silent_noops() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.insert_recipe(_recipe("r1"))
        await store.insert_step(_step("s1", "r1", 0))
        await store.delete_recipe("r1")

        await store.update_recipe("r1", {"name": "late"}, updated_at=_dt(1))
        await store.update_step("s1", {"name": "late"})
        await store.touch_recipe("r1", updated_at=_dt(2))
        await store.delete_step("s1")

        assert await store.fetch_recipe("r1") is None
        assert await store.fetch_all_recipes() == []


@pytest.mark.asyncio
async def test_unknown_columns_are_rejected() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.insert_recipe(_recipe("r1"))
        with pytest.raises(ValueError):
            await store.update_recipe("r1", {"id": "r2"}, updated_at=_dt())
        with pytest.raises(ValueError):
            await store.update_step("s1", {"recipe_id": "r2; DROP TABLE steps"})


@pytest.mark.asyncio
async def test_update_step_orders() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.insert_recipe(_recipe("r1"))
        await store.insert_step(_step("a", "r1", 0))
        await store.insert_step(_step("b", "r1", 1))
        await store.update_step_orders([("a", 1), ("b", 0)])

        recipe = await store.fetch_recipe("r1")

    assert recipe is not None
    assert [s.id for s in recipe.steps] == ["b", "a"]


@pytest.mark.asyncio
async def test_settings_defaults_are_seeded_without_overwriting() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.upsert_setting("ago_ip", "192.168.4.1")
        await store.ensure_default_settings()
        await store.upsert_setting("export_folder", "/tmp/ago")

        settings = await store.fetch_settings()

    assert settings["ago_ip"] == "192.168.4.1"
    assert settings["ago_ssid"] == "AGO"
    assert settings["export_folder"] == "/tmp/ago"


@pytest.mark.asyncio
async def test_uploads_survive_recipe_deletion() -> None:
    async with SqliteRecipeStore(":memory:") as store:
        await store.insert_recipe(_recipe("r1"))
        await store.insert_upload(
            UploadRecord(id="u1", recipe_id="r1", filename="_P_C0_0000abcd.txt", display_name="HP5", uploaded_at=_dt())
        )
        await store.delete_recipe("r1")

        uploads = await store.fetch_uploads()

    assert len(uploads) == 1
    assert uploads[0].recipe_id is None
    assert uploads[0].display_name == "HP5"


@pytest.mark.asyncio
async def test_migrations_are_recorded_and_reopen_is_idempotent(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "ago_recipes.db"
    async with SqliteRecipeStore(path) as store:
        await store.insert_recipe(_recipe("r1"))

    async with SqliteRecipeStore(path) as store:
        assert await store.fetch_recipe("r1") is not None

    conn = sqlite3.connect(path)
    try:
        assert conn.execute("PRAGMA user_version").fetchone()[0] == len(MIGRATIONS)
    finally:
        conn.close()


@pytest.mark.asyncio
async def test_operations_require_open_store_and_wrap_sqlite_errors() -> None:
    store = SqliteRecipeStore(":memory:")
    with pytest.raises(AgoPersistenceError):
        await store.fetch_all_recipes()

    async with store:
        await store.insert_recipe(_recipe("r1"))
        with pytest.raises(AgoPersistenceError):
            await store.insert_recipe(_recipe("r1"))
