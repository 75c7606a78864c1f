"""Parsing of the recipe editor form.

Ingredient and step rows are submitted as parallel lists (``ingredient_name``,
``ingredient_qty_imperial``, ...). Besides "save", the editor's submit buttons
carry actions such as ``move-ingredient-2-up`` or ``remove-step-0``, which
rearrange the rows and re-render the form without saving.
"""

from __future__ import annotations

import re
from typing import List, Optional

from werkzeug.datastructures import FileStorage, MultiDict

from .models import Ingredient, Instruction
from .recipes import RecipeInput, move_item, renumber_steps, resort_ingredients, upload_image
from .storage import ImageStorage, StoredImage

_ACTION = re.compile(r"^(add|remove|move)-(ingredient|step)(?:-(\d+))?(?:-(up|down))?$")


def _text(form: MultiDict, name: str) -> str:
    return (form.get(name) or "").strip()


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except ValueError:
        return None


def _float_or_none(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except ValueError:
        return None


def _column(form: MultiDict, name: str, length: int) -> List[str]:
    values = form.getlist(name)
    return values + [""] * (length - len(values))


def parse_recipe_form(form: MultiDict) -> RecipeInput:
    names = form.getlist("ingredient_name")
    count = len(names)
    qty_imperial = _column(form, "ingredient_qty_imperial", count)
    unit_imperial = _column(form, "ingredient_unit_imperial", count)
    qty_metric = _column(form, "ingredient_qty_metric", count)
    unit_metric = _column(form, "ingredient_unit_metric", count)
    ingredient_notes = _column(form, "ingredient_notes", count)

    ingredients = [
        Ingredient(
            name=names[i].strip(),
            qty_imperial=_float_or_none(qty_imperial[i]),
            unit_imperial=unit_imperial[i] or None,
            qty_metric=_float_or_none(qty_metric[i]),
            unit_metric=unit_metric[i] or None,
            notes=ingredient_notes[i].strip() or None,
            sort_order=i,
        )
        for i in range(count)
    ]

    contents = form.getlist("step_content")
    steps = len(contents)
    durations = _column(form, "step_duration", steps)
    temperatures = _column(form, "step_temperature", steps)
    image_urls = _column(form, "step_image_url", steps)
    image_paths = _column(form, "step_image_path", steps)
    removed_images = set(form.getlist("step_remove_image"))

    instructions = []
    for i in range(steps):
        keep_image = str(i) not in removed_images and image_urls[i]
        instructions.append(
            Instruction(
                step_number=i + 1,
                content=contents[i].strip(),
                duration_minutes=_int_or_none(durations[i]),
                temperature=temperatures[i].strip() or None,
                image_url=image_urls[i] if keep_image else None,
                image_storage_path=image_paths[i] if keep_image else None,
            )
        )

    main_image = None
    if form.get("main_image_url") and not form.get("remove_main_image"):
        main_image = StoredImage(url=form["main_image_url"], storage_path=form.get("main_image_path", ""))

    servings = _int_or_none(form.get("servings"))
    return RecipeInput(
        title=_text(form, "title"),
        description=_text(form, "description"),
        category=_text(form, "category") or "cooking",
        visibility=_text(form, "visibility") or "household",
        prep_time_minutes=_int_or_none(form.get("prep_time_minutes")),
        cook_time_minutes=_int_or_none(form.get("cook_time_minutes")),
        servings=servings if servings is not None else 0,
        source_url=_text(form, "source_url"),
        parent_recipe_id=form.get("parent_recipe_id") or None,
        main_image=main_image,
        ingredients=ingredients,
        instructions=instructions,
    )


def apply_editor_action(recipe: RecipeInput, action: str) -> bool:
    """Apply an add/remove/move button to the form; False for anything else (save)."""

    match = _ACTION.match(action or "")
    if not match:
        return False

    verb, kind, index, direction = match.groups()
    rows = recipe.ingredients if kind == "ingredient" else recipe.instructions

    if verb == "add":
        if kind == "ingredient":
            rows = rows + [Ingredient(name="", sort_order=len(rows))]
        else:
            rows = rows + [Instruction(step_number=len(rows) + 1, content="")]
    elif index is not None and int(index) < len(rows):
        position = int(index)
        if verb == "remove":
            rows = rows[:position] + rows[position + 1:]
        elif direction:
            rows = move_item(rows, position, position - 1 if direction == "up" else position + 1)

    if kind == "ingredient":
        recipe.ingredients = resort_ingredients(rows)
    else:
        recipe.instructions = renumber_steps(rows)
    return True


def attach_uploads(recipe: RecipeInput, files: MultiDict, images: Optional[ImageStorage]) -> None:
    """Validate and upload any newly chosen main or step images."""

    main_file: Optional[FileStorage] = files.get("main_image")
    if main_file and main_file.filename:
        recipe.main_image = upload_image(images, main_file)

    step_files = files.getlist("step_image")
    for instruction, step_file in zip(recipe.instructions, step_files):
        if step_file and step_file.filename:
            stored = upload_image(images, step_file)
            instruction.image_url = stored.url
            instruction.image_storage_path = stored.storage_path


__all__ = ["apply_editor_action", "attach_uploads", "parse_recipe_form"]
