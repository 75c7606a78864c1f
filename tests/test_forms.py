from __future__ import annotations

import io

import pytest
from werkzeug.datastructures import FileStorage, MultiDict

from recipebox.forms import apply_editor_action, attach_uploads, parse_recipe_form

from conftest import InMemoryImages


def recipe_form(**extra) -> MultiDict:
    data = MultiDict(
        [
            ("title", "  Pancakes "),
            ("servings", "4"),
            ("category", "baking"),
            ("ingredient_name", "Flour"),
            ("ingredient_qty_imperial", "2"),
            ("ingredient_unit_imperial", "cup"),
            ("ingredient_qty_metric", "250"),
            ("ingredient_unit_metric", "g"),
            ("ingredient_notes", "sifted"),
            ("ingredient_name", "Milk"),
            ("ingredient_qty_imperial", "1.5"),
            ("ingredient_unit_imperial", "cup"),
            ("ingredient_qty_metric", ""),
            ("ingredient_unit_metric", ""),
            ("ingredient_notes", ""),
            ("step_content", "Mix"),
            ("step_duration", "5"),
            ("step_temperature", ""),
            ("step_image_url", "https://img.test/mix.png"),
            ("step_image_path", "recipes/mix.png"),
            ("step_content", "Fry"),
            ("step_duration", ""),
            ("step_temperature", "medium heat"),
            ("step_image_url", ""),
            ("step_image_path", ""),
        ]
    )
    for key, value in extra.items():
        data.setlist(key, value if isinstance(value, list) else [value])
    return data


def test_parse_recipe_form():
    form = parse_recipe_form(recipe_form())

    assert form.title == "Pancakes"
    assert form.category == "baking"
    assert form.visibility == "household"
    assert form.servings == 4
    assert [(item.name, item.qty_imperial, item.unit_imperial) for item in form.ingredients] == [
        ("Flour", 2.0, "cup"),
        ("Milk", 1.5, "cup"),
    ]
    assert form.ingredients[0].qty_metric == 250
    assert form.ingredients[0].notes == "sifted"
    assert form.ingredients[1].unit_metric is None
    assert [(step.step_number, step.content) for step in form.instructions] == [(1, "Mix"), (2, "Fry")]
    assert form.instructions[0].duration_minutes == 5
    assert form.instructions[0].image_storage_path == "recipes/mix.png"
    assert form.instructions[1].temperature == "medium heat"
    assert form.validate() is None


def test_removed_step_image_is_dropped():
    form = parse_recipe_form(recipe_form(step_remove_image="0"))
    assert form.instructions[0].image_url is None


def test_invalid_servings_fail_validation():
    form = parse_recipe_form(recipe_form(servings="lots"))
    assert form.validate() == "Servings must be at least 1."


def test_missing_title_fails_validation():
    form = parse_recipe_form(recipe_form(title=""))
    assert form.validate() == "Please provide a recipe title."


def test_main_image_fields():
    form = parse_recipe_form(recipe_form(main_image_url="https://img.test/m.png", main_image_path="recipes/m.png"))
    assert form.main_image.storage_path == "recipes/m.png"

    removed = parse_recipe_form(
        recipe_form(main_image_url="https://img.test/m.png", main_image_path="recipes/m.png", remove_main_image="1")
    )
    assert removed.main_image is None


@pytest.mark.parametrize(
    "action, expected",
    [
        ("move-ingredient-1-up", ["Milk", "Flour"]),
        ("move-ingredient-0-up", ["Flour", "Milk"]),
        ("remove-ingredient-0", ["Milk"]),
        ("add-ingredient", ["Flour", "Milk", ""]),
    ],
)
def test_ingredient_editor_actions(action, expected):
    form = parse_recipe_form(recipe_form())

    assert apply_editor_action(form, action) is True
    assert [item.name for item in form.ingredients] == expected
    assert [item.sort_order for item in form.ingredients] == list(range(len(expected)))


def test_step_editor_actions_renumber():
    form = parse_recipe_form(recipe_form())

    apply_editor_action(form, "move-step-0-down")
    assert [(step.step_number, step.content) for step in form.instructions] == [(1, "Fry"), (2, "Mix")]

    apply_editor_action(form, "remove-step-0")
    assert [(step.step_number, step.content) for step in form.instructions] == [(1, "Mix")]


def test_save_is_not_an_editor_action():
    form = parse_recipe_form(recipe_form())
    assert apply_editor_action(form, "save") is False
    assert apply_editor_action(form, "") is False


def test_attach_uploads():
    images = InMemoryImages()
    form = parse_recipe_form(recipe_form())
    files = MultiDict(
        [
            ("main_image", FileStorage(io.BytesIO(b"main"), filename="main.png", content_type="image/png")),
            ("step_image", FileStorage(io.BytesIO(b""), filename="", content_type="application/octet-stream")),
            ("step_image", FileStorage(io.BytesIO(b"fry"), filename="fry.jpg", content_type="image/jpeg")),
        ]
    )

    attach_uploads(form, files, images)

    assert form.main_image.url.endswith("main.png")
    assert form.instructions[0].image_storage_path == "recipes/mix.png"
    assert form.instructions[1].image_url.endswith("fry.jpg")
    assert sorted(images.blobs.values()) == [b"fry", b"main"]


def test_upload_without_bucket_is_an_error():
    form = parse_recipe_form(recipe_form())
    files = MultiDict([("main_image", FileStorage(io.BytesIO(b"x"), filename="a.png", content_type="image/png"))])

    with pytest.raises(RuntimeError):
        attach_uploads(form, files, None)
