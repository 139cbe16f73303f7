"""AGO program exchange format.

Two JSON shapes exist:

* the *exchange* format written to and read from ``.json`` files
  (``category``, ``name``, ``expanded_title``, ``steps`` with minutes and
  seconds split), produced by :func:`recipe_to_ago_json`;
* the *custom program* format the device stores
  (``designator``, single ``time`` in seconds, temperatures only for
  compensated steps), produced by :func:`build_custom_program_payload`.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

from agosync._constants import DEVELOPERS
from agosync.models.recipe import Recipe

_DILUTION_RE = re.compile(r"(\d+[+:]\d+)\s*$")
_TITLE_PREFIX_RE = re.compile(r"^\s*-\s*")
_FILENAME_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")

# The device limits filenames to 31 characters including ".json".
_MAX_FILENAME_STEM = 26

_EXCHANGE_STEP_FIELDS: tuple[str, ...] = (
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


@dataclass(frozen=True, slots=True)
class UploadMetadata:
    """Recipe fields the device uses to title an uploaded program."""

    film_stock: str = ""
    developer: str = ""
    dilution: str = ""

    @classmethod
    def from_recipe(cls, recipe: Recipe) -> UploadMetadata:
        return cls(film_stock=recipe.film_stock, developer=recipe.developer, dilution=recipe.dilution)


@dataclass(slots=True)
class ImportedRecipe:
    """Recipe fields parsed from an exchange-format document."""

    name: str
    film_stock: str
    developer: str
    dilution: str
    category: str
    steps: list[dict[str, Any]] = field(default_factory=list)


def recipe_to_ago_json(recipe: Recipe) -> dict[str, Any]:
    """Serialize *recipe* into the exchange format."""
    return {
        "category": recipe.category,
        "name": "B&W" if recipe.category == "BW" else recipe.category,
        "expanded_title": f" - {recipe.film_stock} {recipe.developer} {recipe.dilution}".strip(),
        "steps": [{name: getattr(step, name) for name in _EXCHANGE_STEP_FIELDS} for step in recipe.steps],
    }


def dumps_recipe(recipe: Recipe) -> str:
    return json.dumps(recipe_to_ago_json(recipe), indent=2)


def _split_title(expanded_title: str) -> tuple[str, str, str]:
    """Split ``" - Retro 400S 510 Pyro 1+100"`` into film stock, developer, dilution."""
    title = _TITLE_PREFIX_RE.sub("", expanded_title).strip()
    dilution = ""
    match = _DILUTION_RE.search(title)
    if match:
        dilution = match.group(1)
        title = title[: match.start()].strip()

    lower = title.lower()
    for candidate in sorted(DEVELOPERS, key=len, reverse=True):
        if lower.endswith(candidate.lower()):
            return title[: len(title) - len(candidate)].strip(), candidate, dilution
    return title, "", dilution


def ago_json_to_recipe_data(document: dict[str, Any]) -> ImportedRecipe:
    """Parse an exchange-format document into recipe fields.

    Raises :class:`ValueError` when *document* has no ``steps`` list.
    """
    steps = document.get("steps")
    if not isinstance(steps, list):
        raise ValueError("Recipe JSON missing steps array")

    expanded_title = str(document.get("expanded_title") or "")
    film_stock, developer, dilution = _split_title(expanded_title) if expanded_title else ("", "", "")

    display = str(document.get("name") or "")
    category = "BW" if display == "B&W" else str(document.get("category") or "BW")

    parsed_steps: list[dict[str, Any]] = []
    for index, raw in enumerate(steps):
        if not isinstance(raw, dict):
            continue
        step = {name: raw[name] for name in _EXCHANGE_STEP_FIELDS if raw.get(name) is not None}
        step["sort_order"] = index
        parsed_steps.append(step)

    return ImportedRecipe(
        name=f"{display}{expanded_title}".strip(),
        film_stock=film_stock,
        developer=developer,
        dilution=dilution,
        category=category,
        steps=parsed_steps,
    )


def generate_ago_filename(recipe: Recipe) -> str:
    """Build the exported filename for *recipe* (device limit: 31 characters)."""
    base = _FILENAME_UNSAFE_RE.sub("_", f"{recipe.film_stock}_{recipe.developer}")
    base = re.sub(r"_+", "_", base)[:_MAX_FILENAME_STEM]
    return f"{base}.json"


def sanitize_name_from_filename(filename: str) -> str:
    stem = filename.removesuffix(".json")
    cleaned = "".join(c if c.isascii() and (c.isalnum() or c in "_-") else "_" for c in stem)
    cleaned = cleaned.strip("_").replace("_", " ")
    return cleaned or "Custom Program"


def build_custom_program_filename() -> str:
    """Return a fresh ``_P_C0_<8 hex>.txt`` device filename."""
    token = f"{time.time_ns():x}"[-8:].rjust(8, "0")
    return f"_P_C0_{token}.txt"


def _text(value: dict[str, Any], key: str) -> str:
    raw = value.get(key)
    return raw.strip() if isinstance(raw, str) else ""


def _int(value: dict[str, Any], key: str) -> int:
    raw = value.get(key)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return 0
    return int(raw)


def _float(value: dict[str, Any], key: str, default: float) -> float:
    raw = value.get(key)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return default if key not in value else 0.0
    return float(raw)


def build_custom_program_payload(json_content: str, filename: str, metadata: UploadMetadata) -> dict[str, Any]:
    """Convert exchange-format JSON into the device's custom program document.

    Raises :class:`ValueError` for invalid JSON or a missing ``steps`` array.
    """
    try:
        parsed = json.loads(json_content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid recipe JSON: {exc}") from exc
    if not isinstance(parsed, dict) or not isinstance(parsed.get("steps"), list):
        raise ValueError("Recipe JSON missing steps array")

    category = _text(parsed, "category") or "BW"
    name = metadata.film_stock.strip() or sanitize_name_from_filename(filename)

    developer = metadata.developer.strip()
    dilution = metadata.dilution.strip()
    if developer or dilution:
        expanded_title = " - " + " ".join(part for part in (developer, dilution) if part)
    else:
        existing = _text(parsed, "expanded_title")
        if not existing or existing.startswith(("-", " -")):
            expanded_title = existing
        else:
            expanded_title = f" - {existing}"

    steps: list[dict[str, Any]] = []
    for step in parsed["steps"]:
        if not isinstance(step, dict):
            continue
        seconds = _int(step, "time") if "time" in step else _int(step, "time_min") * 60 + _int(step, "time_sec")
        compensation = _text(step, "compensation") or "Off"
        out: dict[str, Any] = {
            "name": _text(step, "name"),
            "time": max(seconds, 0),
            "agitation": _text(step, "agitation") or "Roll",
            "compensation": compensation,
        }
        formula = _text(step, "formula_designator")
        if formula:
            out["formula_designator"] = formula
        if compensation != "Off":
            out["min_temperature"] = _float(step, "min_temperature", 18.0)
            out["max_temperature"] = _float(step, "max_temperature", 24.0)
        steps.append(out)

    return {
        "name": name,
        "designator": "C2",
        "category": category,
        "expanded_title": expanded_title,
        "steps": steps,
    }
