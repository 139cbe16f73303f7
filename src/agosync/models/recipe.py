"""Recipe and step records."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from agosync.models._base import AgoBaseModel, AgoTimestamp, utcnow

#: Recipe columns a user may edit through the coalesced write path.
RECIPE_EDITABLE_FIELDS: frozenset[str] = frozenset(
    {"name", "film_stock", "developer", "dilution", "category", "notes", "dev_time_reduced"}
)

#: Step columns a user may edit through the coalesced write path.
STEP_EDITABLE_FIELDS: frozenset[str] = frozenset(
    {
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
    }
)


class Step(AgoBaseModel):
    """A single processing step of a recipe."""

    id: str
    recipe_id: str
    sort_order: int = 0
    name: str = "DEV"
    time_min: int = 0
    time_sec: int = 0
    agitation: str = "Roll"
    compensation: str = "Off"
    min_temperature: float = 18.0
    rated_temperature: float = 20.0
    max_temperature: float = 24.0
    formula_designator: str = ""
    logo_text: str = ""

    @property
    def total_seconds(self) -> int:
        return max(0, self.time_min * 60 + self.time_sec)


class Recipe(AgoBaseModel):
    """A development recipe and its ordered steps."""

    id: str
    name: str = "New Recipe"
    film_stock: str = ""
    developer: str = ""
    dilution: str = ""
    category: str = "BW"
    notes: str = ""
    dev_time_reduced: int = 0
    created_at: AgoTimestamp = Field(default_factory=utcnow)
    updated_at: AgoTimestamp = Field(default_factory=utcnow)
    steps: tuple[Step, ...] = ()

    @field_validator("steps", mode="after")
    @classmethod
    def _order_steps(cls, value: tuple[Step, ...]) -> tuple[Step, ...]:
        return tuple(sorted(value, key=lambda s: s.sort_order))

    def step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


def _check_fields(editable: frozenset[str], patch: dict[str, Any]) -> None:
    unknown = set(patch) - editable
    if unknown:
        raise ValueError(f"not an editable field: {', '.join(sorted(unknown))}")


def apply_recipe_patch(recipe: Recipe, patch: dict[str, Any], *, updated_at: datetime | None = None) -> Recipe:
    """Return *recipe* with *patch* applied and validated.

    Raises :class:`ValueError` (pydantic's ``ValidationError`` included) for
    unknown fields or values that do not coerce to the column type.
    """
    _check_fields(RECIPE_EDITABLE_FIELDS, patch)
    payload = recipe.model_dump(exclude={"steps"})
    payload.update(patch)
    if updated_at is not None:
        payload["updated_at"] = updated_at
    return Recipe.model_validate({**payload, "steps": recipe.steps})


def apply_step_patch(step: Step, patch: dict[str, Any]) -> Step:
    """Return *step* with *patch* applied and validated."""
    _check_fields(STEP_EDITABLE_FIELDS, patch)
    payload = step.model_dump()
    payload.update(patch)
    return Step.model_validate(payload)
