"""Optimistic recipe projection backed by a durable store.

Writes are two-phase:

1. the edit is applied to the in-memory projection synchronously, so
   :attr:`PersistenceEngine.recipes` reflects it immediately;
2. the edit is coalesced per entity and flushed to the store after the
   debounce window, after which the projection is reloaded from the store.

The consistency contract is ``projection == durable (+) unflushed edits``:
a reload re-applies every pending or in-flight patch on top of what the
store returns, so a reconciliation never reverts an edit the user still
sees. A failed flush keeps the projection as-is, reports a warning and
puts the patch back so :meth:`PersistenceEngine.retry_failed_writes` or
the next edit of the same entity persists it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from agosync._constants import DEFAULT_SETTINGS, DEFAULT_TEMPLATE_STEPS, DEFAULT_WRITE_DEBOUNCE_S, default_step_minutes
from agosync._notify import NoticeSink, emit
from agosync.ago_format import ago_json_to_recipe_data, dumps_recipe, generate_ago_filename
from agosync.config import AgoConfig
from agosync.exceptions import AgoPersistenceError
from agosync.models._base import utcnow
from agosync.models.notice import NoticeLevel
from agosync.models.recipe import Recipe, Step, apply_recipe_patch, apply_step_patch
from agosync.state.coalescer import Scheduler, WriteCoalescer
from agosync.store import RecipeStore

_logger = logging.getLogger(__name__)

SettingsListener = Callable[[dict[str, str]], None]


def _new_id() -> str:
    return str(uuid.uuid4())


def template_step(recipe_id: str, sort_order: int, name: str, config: AgoConfig) -> Step:
    """Build a new step named *name* with the default timings for that name."""
    is_dev = name == "DEV"
    return Step(
        id=_new_id(),
        recipe_id=recipe_id,
        sort_order=sort_order,
        name=name,
        time_min=default_step_minutes(name),
        time_sec=0,
        agitation="Roll",
        compensation="On" if is_dev else "Off",
        min_temperature=config.default_min_temp,
        rated_temperature=config.default_rated_temp,
        max_temperature=config.default_max_temp,
        formula_designator="1.1.1" if is_dev else "",
        logo_text="B&W DEV" if is_dev else "",
    )


class PersistenceEngine:
    """Recipe projection, coalesced edit path and recipe lifecycle operations.

    Parameters
    ----------
    store : RecipeStore
        Durable store.
    notify : callable, optional
        Receives user-visible notices (saved, failed to save, ...).
    delay : float
        Debounce window of the coalesced write path.
    scheduler : Scheduler, optional
        Timer primitive shared by both coalescers.
    clock : callable
        Source of modification timestamps.
    """

    def __init__(
        self,
        store: RecipeStore,
        *,
        notify: NoticeSink | None = None,
        delay: float = DEFAULT_WRITE_DEBOUNCE_S,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._notify = notify
        self._clock = clock
        self._recipes: list[Recipe] = []
        self._settings: dict[str, str] = dict(DEFAULT_SETTINGS)
        self._settings_listeners: list[SettingsListener] = []
        self._reload_seq = 0
        self._applied_seq = 0
        self._recipe_writes: WriteCoalescer[str, Any] = WriteCoalescer(
            self._flush_recipe, delay=delay, scheduler=scheduler, name="recipe writes"
        )
        self._step_writes: WriteCoalescer[str, Any] = WriteCoalescer(
            self._flush_step, delay=delay, scheduler=scheduler, name="step writes"
        )

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    @property
    def recipes(self) -> list[Recipe]:
        """Current projection, most recently modified first."""
        return list(self._recipes)

    def get_recipe(self, recipe_id: str) -> Recipe | None:
        for recipe in self._recipes:
            if recipe.id == recipe_id:
                return recipe
        return None

    def _recipe_for_step(self, step_id: str) -> Recipe | None:
        for recipe in self._recipes:
            if recipe.step(step_id) is not None:
                return recipe
        return None

    def _replace(self, recipe: Recipe) -> None:
        self._recipes = [recipe if r.id == recipe.id else r for r in self._recipes]

    def has_pending_writes(self) -> bool:
        return bool(self._recipe_writes.pending_keys() or self._step_writes.pending_keys())

    async def load(self) -> list[Recipe]:
        """Load settings and the projection from the store."""
        await self.load_settings()
        return await self.reload()

    async def reload(self) -> list[Recipe]:
        """Replace the projection with durable state plus unflushed edits.

        A store failure keeps the current projection and emits a warning.
        """
        self._reload_seq += 1
        seq = self._reload_seq
        try:
            durable = await self._store.fetch_all_recipes()
        except AgoPersistenceError as exc:
            _logger.warning("Reloading recipes failed: %s", exc)
            emit(self._notify, "Failed to load recipes", NoticeLevel.WARNING)
            return self.recipes
        # A newer reload already applied a fresher snapshot.
        if seq < self._applied_seq:
            return self.recipes
        self._applied_seq = seq
        self._recipes = [self._overlay(recipe) for recipe in durable]
        return self.recipes

    def _overlay(self, recipe: Recipe) -> Recipe:
        steps = []
        for step in recipe.steps:
            patch = self._step_writes.pending(step.id)
            steps.append(apply_step_patch(step, patch) if patch else step)
        if any(new is not old for new, old in zip(steps, recipe.steps, strict=True)):
            recipe = recipe.model_copy(update={"steps": tuple(steps)})
        patch = self._recipe_writes.pending(recipe.id)
        if patch:
            recipe = apply_recipe_patch(recipe, patch)
        return recipe

    # ------------------------------------------------------------------
    # Coalesced edits
    # ------------------------------------------------------------------

    def edit_recipe(self, recipe_id: str, field_name: str, value: Any) -> Recipe | None:
        """Apply ``field_name=value`` to the projection and schedule the write.

        Returns the updated recipe, or ``None`` when *recipe_id* is not in
        the projection (the edit is dropped). Raises :class:`ValueError` for
        a field that is not editable or a value of the wrong type.
        """
        recipe = self.get_recipe(recipe_id)
        if recipe is None:
            _logger.debug("Dropping edit of %s for unknown recipe %s", field_name, recipe_id)
            return None
        updated = apply_recipe_patch(recipe, {field_name: value}, updated_at=self._clock())
        self._replace(updated)
        self._recipe_writes.record(recipe_id, field_name, getattr(updated, field_name))
        return updated

    def edit_step(self, step_id: str, field_name: str, value: Any) -> Step | None:
        """Apply ``field_name=value`` to a step in the projection and schedule the write."""
        recipe = self._recipe_for_step(step_id)
        if recipe is None:
            _logger.debug("Dropping edit of %s for unknown step %s", field_name, step_id)
            return None
        step = recipe.step(step_id)
        assert step is not None  # noqa: S101
        updated = apply_step_patch(step, {field_name: value})
        steps = tuple(updated if s.id == step_id else s for s in recipe.steps)
        self._replace(recipe.model_copy(update={"steps": steps, "updated_at": self._clock()}))
        self._step_writes.record(step_id, field_name, getattr(updated, field_name))
        return updated

    async def _flush_recipe(self, recipe_id: str, patch: dict[str, Any]) -> None:
        try:
            await self._store.update_recipe(recipe_id, patch, updated_at=self._clock())
        except AgoPersistenceError as exc:
            _logger.warning("Saving recipe %s failed: %s", recipe_id, exc)
            self._recipe_writes.requeue(recipe_id, patch)
            emit(self._notify, "Failed to save recipe changes", NoticeLevel.WARNING)
            return
        await self.reload()

    async def _flush_step(self, step_id: str, patch: dict[str, Any]) -> None:
        parent = self._recipe_for_step(step_id)
        try:
            await self._store.update_step(step_id, patch)
            if parent is not None:
                await self._store.touch_recipe(parent.id, updated_at=self._clock())
        except AgoPersistenceError as exc:
            _logger.warning("Saving step %s failed: %s", step_id, exc)
            self._step_writes.requeue(step_id, patch)
            emit(self._notify, "Failed to save step changes", NoticeLevel.WARNING)
            return
        await self.reload()

    def retry_failed_writes(self) -> int:
        """Reschedule patches whose flush failed; returns how many were rescheduled."""
        return self._recipe_writes.reschedule_idle() + self._step_writes.reschedule_idle()

    async def flush(self) -> None:
        """Persist every pending edit now."""
        await self._step_writes.flush_all()
        await self._recipe_writes.flush_all()

    # ------------------------------------------------------------------
    # Recipe lifecycle
    # ------------------------------------------------------------------

    @property
    def config(self) -> AgoConfig:
        return AgoConfig.from_settings(self._settings)

    async def create_recipe(self) -> Recipe | None:
        """Create a "New Recipe" with the template steps."""
        now = self._clock()
        recipe = Recipe(id=_new_id(), name="New Recipe", created_at=now, updated_at=now)
        config = self.config
        try:
            await self._store.insert_recipe(recipe)
            for index, name in enumerate(DEFAULT_TEMPLATE_STEPS):
                await self._store.insert_step(template_step(recipe.id, index, name, config))
        except AgoPersistenceError as exc:
            _logger.warning("Creating recipe failed: %s", exc)
            emit(self._notify, f"Failed to create recipe: {exc}", NoticeLevel.ERROR)
            return None
        await self.reload()
        return self.get_recipe(recipe.id)

    async def duplicate_recipe(self, recipe_id: str) -> Recipe | None:
        """Copy *recipe_id* (as currently shown) under a new id and "(copy)" name."""
        source = self.get_recipe(recipe_id)
        if source is None:
            emit(self._notify, "Recipe not found", NoticeLevel.ERROR)
            return None
        now = self._clock()
        duplicate = source.model_copy(
            update={
                "id": _new_id(),
                "name": f"{source.name} (copy)",
                "dev_time_reduced": 0,
                "created_at": now,
                "updated_at": now,
                "steps": (),
            }
        )
        try:
            await self._store.insert_recipe(duplicate)
            for step in source.steps:
                await self._store.insert_step(step.model_copy(update={"id": _new_id(), "recipe_id": duplicate.id}))
        except AgoPersistenceError as exc:
            _logger.warning("Duplicating recipe %s failed: %s", recipe_id, exc)
            emit(self._notify, f"Failed to duplicate recipe: {exc}", NoticeLevel.ERROR)
            return None
        await self.reload()
        emit(self._notify, "Recipe duplicated")
        return self.get_recipe(duplicate.id)

    async def delete_recipe(self, recipe_id: str) -> bool:
        """Delete *recipe_id* and its steps, discarding their unflushed edits first."""
        recipe = self.get_recipe(recipe_id)
        self._recipe_writes.cancel(recipe_id)
        if recipe is not None:
            self._step_writes.cancel_many([step.id for step in recipe.steps])
        try:
            await self._store.delete_recipe(recipe_id)
        except AgoPersistenceError as exc:
            _logger.warning("Deleting recipe %s failed: %s", recipe_id, exc)
            emit(self._notify, "Failed to delete recipe", NoticeLevel.ERROR)
            return False
        self._recipes = [r for r in self._recipes if r.id != recipe_id]
        await self.reload()
        emit(self._notify, "Recipe deleted")
        return True

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def add_step(self, recipe_id: str, name: str = "RINSE") -> Step | None:
        """Append a template step named *name* to *recipe_id*."""
        recipe = self.get_recipe(recipe_id)
        sort_order = len(recipe.steps) if recipe is not None else 0
        step = template_step(recipe_id, sort_order, name, self.config)
        try:
            await self._store.insert_step(step)
            await self._store.touch_recipe(recipe_id, updated_at=self._clock())
        except AgoPersistenceError as exc:
            _logger.warning("Adding step to %s failed: %s", recipe_id, exc)
            emit(self._notify, "Failed to add step", NoticeLevel.ERROR)
            return None
        await self.reload()
        return step

    async def delete_step(self, recipe_id: str, step_id: str) -> bool:
        self._step_writes.cancel(step_id)
        try:
            await self._store.delete_step(step_id)
            await self._store.touch_recipe(recipe_id, updated_at=self._clock())
        except AgoPersistenceError as exc:
            _logger.warning("Deleting step %s failed: %s", step_id, exc)
            emit(self._notify, "Failed to delete step", NoticeLevel.ERROR)
            return False
        await self.reload()
        return True

    async def reorder_steps(self, recipe_id: str, old_index: int, new_index: int) -> bool:
        """Move the step at *old_index* to *new_index* and renumber the recipe's steps.

        Raises :class:`IndexError` for an index outside the step list.
        """
        recipe = self.get_recipe(recipe_id)
        if recipe is None:
            return False
        steps = list(recipe.steps)
        if not (0 <= old_index < len(steps) and 0 <= new_index < len(steps)):
            raise IndexError(f"step index out of range: {old_index} -> {new_index} ({len(steps)} steps)")
        steps.insert(new_index, steps.pop(old_index))
        orders = [(step.id, index) for index, step in enumerate(steps)]
        try:
            await self._store.update_step_orders(orders)
            await self._store.touch_recipe(recipe_id, updated_at=self._clock())
        except AgoPersistenceError as exc:
            _logger.warning("Reordering steps of %s failed: %s", recipe_id, exc)
            emit(self._notify, "Failed to reorder steps", NoticeLevel.ERROR)
            return False
        await self.reload()
        return True

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    async def import_recipe(self, document: Mapping[str, Any] | str) -> Recipe | None:
        """Create a recipe from an exchange-format document (dict or JSON text)."""
        try:
            parsed = json.loads(document) if isinstance(document, str) else dict(document)
            if not isinstance(parsed, dict):
                raise ValueError("Recipe JSON must be an object")
            data = ago_json_to_recipe_data(parsed)
            now = self._clock()
            recipe = Recipe(
                id=_new_id(),
                name=data.name or "Imported Recipe",
                film_stock=data.film_stock,
                developer=data.developer,
                dilution=data.dilution,
                category=data.category,
                created_at=now,
                updated_at=now,
            )
            steps = [Step.model_validate({**raw, "id": _new_id(), "recipe_id": recipe.id}) for raw in data.steps]
        except ValueError as exc:
            emit(self._notify, f"Import failed: {exc}", NoticeLevel.ERROR)
            return None
        try:
            await self._store.insert_recipe(recipe)
            for step in steps:
                await self._store.insert_step(step)
        except AgoPersistenceError as exc:
            _logger.warning("Importing recipe failed: %s", exc)
            emit(self._notify, f"Import failed: {exc}", NoticeLevel.ERROR)
            return None
        await self.reload()
        emit(self._notify, "Recipe imported")
        return self.get_recipe(recipe.id)

    async def import_recipe_file(self, path: Path | str) -> Recipe | None:
        try:
            content = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        except OSError as exc:
            emit(self._notify, f"Import failed: Failed to read file: {exc}", NoticeLevel.ERROR)
            return None
        return await self.import_recipe(content)

    def export_recipe(self, recipe_id: str) -> tuple[str, str]:
        """Return ``(filename, json_text)`` of *recipe_id* in the exchange format.

        Raises :class:`KeyError` when the recipe is not in the projection.
        """
        recipe = self.get_recipe(recipe_id)
        if recipe is None:
            raise KeyError(recipe_id)
        return generate_ago_filename(recipe), dumps_recipe(recipe)

    async def export_recipe_file(self, recipe_id: str, folder: Path | str | None = None) -> Path | None:
        """Write *recipe_id* into *folder* (default: the ``export_folder`` setting)."""
        target_dir = folder or self._settings.get("export_folder") or ""
        if not target_dir:
            emit(self._notify, "Export failed: no export folder configured", NoticeLevel.ERROR)
            return None
        try:
            filename, content = self.export_recipe(recipe_id)
        except KeyError:
            emit(self._notify, "Export failed: recipe not found", NoticeLevel.ERROR)
            return None
        path = Path(target_dir) / filename
        try:
            await asyncio.to_thread(path.write_text, content, encoding="utf-8")
        except OSError as exc:
            emit(self._notify, f"Export failed: Failed to write file: {exc}", NoticeLevel.ERROR)
            return None
        emit(self._notify, "Recipe exported")
        return path

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def settings(self) -> dict[str, str]:
        return dict(self._settings)

    def add_settings_listener(self, listener: SettingsListener) -> Callable[[], None]:
        """Register *listener* for settings changes; returns an unsubscribe callable."""
        self._settings_listeners.append(listener)

        def _remove() -> None:
            if listener in self._settings_listeners:
                self._settings_listeners.remove(listener)

        return _remove

    def _publish_settings(self) -> None:
        snapshot = self.settings
        for listener in list(self._settings_listeners):
            try:
                listener(snapshot)
            except Exception:
                _logger.exception("Settings listener failed")

    async def load_settings(self) -> dict[str, str]:
        """Seed missing defaults and load the settings table."""
        try:
            await self._store.ensure_default_settings()
            stored = await self._store.fetch_settings()
        except AgoPersistenceError as exc:
            _logger.warning("Loading settings failed: %s", exc)
            emit(self._notify, "Failed to load settings", NoticeLevel.WARNING)
            return self.settings
        self._settings = {**DEFAULT_SETTINGS, **stored}
        self._publish_settings()
        return self.settings

    async def update_setting(self, key: str, value: str) -> bool:
        try:
            await self._store.upsert_setting(key, value)
        except AgoPersistenceError as exc:
            _logger.warning("Saving setting %s failed: %s", key, exc)
            emit(self._notify, "Failed to save settings", NoticeLevel.WARNING)
            return False
        self._settings[key] = value
        self._publish_settings()
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Flush pending edits and tear down both coalescers."""
        await self.flush()
        if self.has_pending_writes():
            _logger.warning(
                "Discarding unsaved edits for %d recipe(s) and %d step(s)",
                len(self._recipe_writes.pending_keys()),
                len(self._step_writes.pending_keys()),
            )
        self._step_writes.close()
        self._recipe_writes.close()
