from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Sequence, Set, TypeVar

from werkzeug.datastructures import FileStorage

from .models import (
    RECIPE_CATEGORIES,
    RECIPE_VISIBILITIES,
    CookingNote,
    Ingredient,
    Instruction,
    Recipe,
    RecipeDetail,
    RecipeImage,
)
from .offline import OfflineCache
from .storage import (
    COOKING_NOTES,
    HOUSEHOLD_FOLLOWS,
    HOUSEHOLD_MEMBERS,
    INGREDIENTS,
    INSTRUCTIONS,
    RECIPE_IMAGES,
    RECIPE_SHARES,
    RECIPES,
    USER_FAVORITES,
    USERS,
    DataGateway,
    GatewayError,
    ImageStorage,
    StoredImage,
)

logger = logging.getLogger(__name__)

MULTIPLIERS = (0.5, 1, 2, 3)
MAX_IMAGE_BYTES = 5 * 1024 * 1024

T = TypeVar("T")


class ImageValidationError(ValueError):
    """The uploaded file is not an acceptable image."""


@dataclass
class RecipeInput:
    """Everything the create/edit form submits."""

    title: str = ""
    description: str = ""
    category: str = "cooking"
    visibility: str = "household"
    prep_time_minutes: Optional[int] = None
    cook_time_minutes: Optional[int] = None
    servings: int = 4
    source_url: str = ""
    parent_recipe_id: Optional[str] = None
    main_image: Optional[StoredImage] = None
    ingredients: List[Ingredient] = field(default_factory=list)
    instructions: List[Instruction] = field(default_factory=list)

    def validate(self) -> Optional[str]:
        if not self.title.strip():
            return "Please provide a recipe title."
        if self.category not in RECIPE_CATEGORIES:
            return "Please choose a valid category."
        if self.visibility not in RECIPE_VISIBILITIES:
            return "Please choose a valid visibility."
        if self.servings < 1:
            return "Servings must be at least 1."
        if any(not ingredient.name.strip() for ingredient in self.ingredients):
            return "Every ingredient needs a name."
        if any(not instruction.content.strip() for instruction in self.instructions):
            return "Every step needs instructions."
        return None

    def recipe_fields(self) -> dict:
        return {
            "title": self.title.strip(),
            "description": self.description.strip() or None,
            "category": self.category,
            "visibility": self.visibility,
            "prep_time_minutes": self.prep_time_minutes,
            "cook_time_minutes": self.cook_time_minutes,
            "servings": self.servings,
            "source_url": self.source_url.strip() or None,
        }


@dataclass
class RecipeCard:
    recipe: Recipe
    display_image: Optional[str] = None
    author_name: Optional[str] = None


class RecipeNotReadable(KeyError):
    """The recipe exists but its visibility hides it from the viewer."""


@dataclass
class RecipeViewer:
    """Who is looking at a recipe, resolved once per request.

    Private recipes are readable by their author only. Household recipes add
    the author's household, followers-only recipes add users following that
    household, and public recipes are readable by everyone.
    """

    user_id: Optional[str]
    household_id: Optional[str] = None
    followed_household_ids: Set[str] = field(default_factory=set)

    def can_read(self, recipe: Recipe) -> bool:
        if self.user_id is not None and recipe.author_id == self.user_id:
            return True
        if recipe.visibility == "public":
            return True
        if recipe.visibility == "private":
            return False
        if self.household_id is not None and recipe.household_id == self.household_id:
            return True
        return recipe.visibility == "followers" and recipe.household_id in self.followed_household_ids


def load_viewer(gateway: DataGateway, user_id: Optional[str]) -> RecipeViewer:
    if user_id is None:
        return RecipeViewer(user_id=None)
    memberships = gateway.select(HOUSEHOLD_MEMBERS, where=[("user_id", "==", user_id)], limit=1)
    follows = gateway.select(HOUSEHOLD_FOLLOWS, where=[("follower_user_id", "==", user_id)])
    return RecipeViewer(
        user_id=user_id,
        household_id=memberships[0]["household_id"] if memberships else None,
        followed_household_ids={row["followed_household_id"] for row in follows},
    )


def validate_image(image: FileStorage) -> None:
    """Reject anything that is not an ``image/*`` upload of at most 5 MB."""

    if not (image.mimetype or "").startswith("image/"):
        raise ImageValidationError("Please upload an image file")

    stream = image.stream
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(0)
    if size > MAX_IMAGE_BYTES:
        raise ImageValidationError("Image must be less than 5MB")


def upload_image(images: Optional[ImageStorage], image: FileStorage) -> StoredImage:
    if images is None:
        raise RuntimeError("A Cloud Storage bucket must be configured to upload images.")
    validate_image(image)
    return images.upload(image.stream, filename=image.filename or "image", content_type=image.mimetype)


def format_quantity(qty: Optional[float], scale: float = 1) -> str:
    """Scaled quantity with at most two decimals and no trailing zeros."""

    if not qty:
        return ""
    text = f"{qty * scale:.2f}"
    return text.rstrip("0").rstrip(".")


def format_time(minutes: Optional[int], *, compact: bool = False) -> Optional[str]:
    if not minutes:
        return None
    if minutes < 60:
        return f"{minutes}m" if compact else f"{minutes} min"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


def scaled_servings(servings: int, multiplier: float) -> int:
    return int(math.floor(servings * multiplier + 0.5))


def move_item(items: Sequence[T], from_index: int, to_index: int) -> List[T]:
    """Return a copy of ``items`` with one element moved to a new position.

    Out of range targets are clamped, so "move up" on the first element and
    "move down" on the last are no-ops.
    """

    reordered = list(items)
    if not 0 <= from_index < len(reordered):
        raise IndexError(f"No item at position {from_index}")
    to_index = max(0, min(to_index, len(reordered) - 1))
    item = reordered.pop(from_index)
    reordered.insert(to_index, item)
    return reordered


def renumber_steps(instructions: Iterable[Instruction]) -> List[Instruction]:
    return [replace(instruction, step_number=index) for index, instruction in enumerate(instructions, start=1)]


def resort_ingredients(ingredients: Iterable[Ingredient]) -> List[Ingredient]:
    return [replace(ingredient, sort_order=index) for index, ingredient in enumerate(ingredients)]


def _author_name(gateway: DataGateway, author_id: Optional[str]) -> Optional[str]:
    if not author_id:
        return None
    try:
        return gateway.get(USERS, author_id).get("display_name")
    except KeyError:
        return None


def list_recipes(gateway: DataGateway, viewer: Optional[RecipeViewer] = None) -> List[RecipeCard]:
    """Recipes readable by ``viewer``, newest first, each with its main image.

    Without a viewer every recipe is returned.
    """

    rows = gateway.select(RECIPES, order_by="created_at", descending=True)
    images = gateway.select(RECIPE_IMAGES, where=[("instruction_id", "is_null", True)])

    main_images = {}
    for image in sorted(images, key=lambda row: row.get("order_index") or 0):
        main_images.setdefault(image["recipe_id"], image["url"])

    authors = {}
    cards = []
    for row in rows:
        recipe = Recipe.from_dict(row)
        if viewer is not None and not viewer.can_read(recipe):
            continue
        if recipe.author_id not in authors:
            authors[recipe.author_id] = _author_name(gateway, recipe.author_id)
        cards.append(
            RecipeCard(
                recipe=recipe,
                display_image=main_images.get(recipe.id),
                author_name=authors[recipe.author_id],
            )
        )
    return cards


def filter_recipes(
    cards: Iterable[RecipeCard],
    *,
    query: str = "",
    category: str = "all",
    favorites_only: bool = False,
    favorite_ids: Optional[Set[str]] = None,
) -> List[RecipeCard]:
    needle = query.strip().lower()
    favorite_ids = favorite_ids or set()
    result = []
    for card in cards:
        recipe = card.recipe
        if needle:
            haystacks = [recipe.title.lower(), (recipe.description or "").lower()]
            if not any(needle in text for text in haystacks):
                continue
        if category != "all" and recipe.category != category:
            continue
        if favorites_only and recipe.id not in favorite_ids:
            continue
        result.append(card)
    return result


def load_favorite_ids(gateway: DataGateway, user_id: str) -> Set[str]:
    rows = gateway.select(USER_FAVORITES, where=[("user_id", "==", user_id)])
    return {row["recipe_id"] for row in rows}


def is_favorite(gateway: DataGateway, user_id: str, recipe_id: str) -> bool:
    rows = gateway.select(
        USER_FAVORITES,
        where=[("user_id", "==", user_id), ("recipe_id", "==", recipe_id)],
        limit=1,
    )
    return bool(rows)


def toggle_favorite(gateway: DataGateway, user_id: str, recipe_id: str) -> bool:
    """Flip the favorite flag and return the new state."""

    where = [("user_id", "==", user_id), ("recipe_id", "==", recipe_id)]
    if gateway.delete(USER_FAVORITES, where=where):
        return False
    gateway.insert(USER_FAVORITES, [{"user_id": user_id, "recipe_id": recipe_id}])
    return True


def get_household_id(gateway: DataGateway, user_id: str) -> str:
    rows = gateway.select(HOUSEHOLD_MEMBERS, where=[("user_id", "==", user_id)], limit=1)
    if not rows:
        raise LookupError("Could not find your household")
    return rows[0]["household_id"]


def load_recipe(gateway: DataGateway, recipe_id: str) -> RecipeDetail:
    """Fetch a recipe with its ingredients, steps and images from the backend."""

    recipe = Recipe.from_dict(gateway.get(RECIPES, recipe_id))
    by_recipe = [("recipe_id", "==", recipe_id)]

    images = [RecipeImage.from_dict(row) for row in gateway.select(RECIPE_IMAGES, where=by_recipe)]
    images.sort(key=lambda image: image.order_index)
    ingredients = [
        Ingredient.from_dict(row)
        for row in gateway.select(INGREDIENTS, where=by_recipe, order_by="sort_order")
    ]
    instructions = [
        Instruction.from_dict(row)
        for row in gateway.select(INSTRUCTIONS, where=by_recipe, order_by="step_number")
    ]

    main_image = next((image for image in images if image.instruction_id is None), None)
    step_images = {image.instruction_id: image for image in images if image.instruction_id}
    for instruction in instructions:
        image = step_images.get(instruction.id)
        if image is not None:
            instruction.image_url = image.url
            instruction.image_storage_path = image.storage_path

    return RecipeDetail(
        recipe=recipe,
        ingredients=ingredients,
        instructions=instructions,
        main_image_url=main_image.url if main_image else None,
        author_name=_author_name(gateway, recipe.author_id),
    )


def load_cooking_notes(gateway: DataGateway, recipe_id: str) -> List[CookingNote]:
    rows = gateway.select(
        COOKING_NOTES,
        where=[("recipe_id", "==", recipe_id)],
        order_by="cooked_on",
        descending=True,
    )
    return [CookingNote.from_dict(row) for row in rows]


def fetch_recipe_detail(
    gateway: DataGateway, recipe_id: str, viewer: Optional[RecipeViewer] = None
) -> RecipeDetail:
    """Load a recipe and its cooking notes from the backend.

    Raises :class:`KeyError` when the recipe is missing or not readable by
    ``viewer`` and :class:`GatewayError` when the backend fails.
    """

    detail = load_recipe(gateway, recipe_id)
    if viewer is not None and not viewer.can_read(detail.recipe):
        raise RecipeNotReadable(recipe_id)
    try:
        detail.notes = load_cooking_notes(gateway, recipe_id)
    except GatewayError as exc:
        logger.error("Error loading cooking notes for %s: %s", recipe_id, exc)
    return detail


def get_recipe_detail(
    gateway: DataGateway,
    recipe_id: str,
    offline: Optional[OfflineCache] = None,
    viewer: Optional[RecipeViewer] = None,
) -> Optional[RecipeDetail]:
    """Load a recipe for display, falling back to its offline snapshot.

    Returns ``None`` when neither the backend nor the offline cache has it.
    """

    try:
        return fetch_recipe_detail(gateway, recipe_id, viewer)
    except RecipeNotReadable:
        logger.info("Recipe %s is not visible to %s", recipe_id, viewer.user_id if viewer else None)
        return None
    except (GatewayError, KeyError) as exc:
        logger.error("Error loading recipe %s from server: %s", recipe_id, exc)
        if offline is None:
            return None
        try:
            snapshot = offline.get(recipe_id)
        except sqlite3.Error as offline_exc:
            logger.error("Error loading offline recipe %s: %s", recipe_id, offline_exc)
            return None
        if snapshot is None:
            return None
        logger.info("Loaded recipe %s from offline storage", recipe_id)
        return snapshot.to_detail()


def _ingredient_rows(recipe_id: str, ingredients: Sequence[Ingredient]) -> List[dict]:
    rows = []
    for index, ingredient in enumerate(ingredients):
        row = ingredient.to_dict()
        row.pop("id", None)
        row.update(recipe_id=recipe_id, sort_order=index)
        rows.append(row)
    return rows


def _insert_children(gateway: DataGateway, recipe_id: str, form: RecipeInput) -> None:
    if form.main_image is not None:
        gateway.insert(
            RECIPE_IMAGES,
            [
                {
                    "recipe_id": recipe_id,
                    "instruction_id": None,
                    "url": form.main_image.url,
                    "storage_path": form.main_image.storage_path,
                    "caption": "Main Image",
                    "order_index": 0,
                }
            ],
        )

    if form.ingredients:
        gateway.insert(INGREDIENTS, _ingredient_rows(recipe_id, form.ingredients))

    if not form.instructions:
        return

    instructions = renumber_steps(form.instructions)
    inserted = gateway.insert(
        INSTRUCTIONS,
        [
            {
                "recipe_id": recipe_id,
                "step_number": instruction.step_number,
                "content": instruction.content,
                "duration_minutes": instruction.duration_minutes,
                "temperature": instruction.temperature,
            }
            for instruction in instructions
        ],
    )

    # Inserted rows come back in submission order.
    step_images = []
    for row, instruction in zip(inserted, instructions):
        if instruction.image_url:
            step_images.append(
                {
                    "recipe_id": recipe_id,
                    "instruction_id": row["id"],
                    "url": instruction.image_url,
                    "storage_path": instruction.image_storage_path or "",
                    "caption": f"Step {row['step_number']}",
                    "order_index": 0,
                }
            )
    if step_images:
        gateway.insert(RECIPE_IMAGES, step_images)


def create_recipe(gateway: DataGateway, user_id: str, form: RecipeInput) -> Recipe:
    household_id = get_household_id(gateway, user_id)

    row = form.recipe_fields()
    row.update(
        author_id=user_id,
        household_id=household_id,
        parent_recipe_id=form.parent_recipe_id,
        updated_at=datetime.now(timezone.utc),
    )
    recipe = Recipe.from_dict(gateway.insert(RECIPES, [row])[0])

    _insert_children(gateway, recipe.id, form)
    logger.info("Created recipe %s for household %s", recipe.id, household_id)
    return recipe


def update_recipe(
    gateway: DataGateway,
    recipe_id: str,
    form: RecipeInput,
    images: Optional[ImageStorage] = None,
) -> Recipe:
    """Update the scalar fields and replace ingredients, steps and images wholesale."""

    by_recipe = [("recipe_id", "==", recipe_id)]
    gateway.get(RECIPES, recipe_id)

    previous_paths = {
        row.get("storage_path") for row in gateway.select(RECIPE_IMAGES, where=by_recipe)
    }

    values = form.recipe_fields()
    values["updated_at"] = datetime.now(timezone.utc)
    gateway.update(RECIPES, values, where=[("id", "==", recipe_id)])

    gateway.delete(INGREDIENTS, where=by_recipe)
    gateway.delete(INSTRUCTIONS, where=by_recipe)
    gateway.delete(RECIPE_IMAGES, where=by_recipe)
    _insert_children(gateway, recipe_id, form)

    kept_paths = {form.main_image.storage_path} if form.main_image else set()
    kept_paths.update(instruction.image_storage_path for instruction in form.instructions)
    _delete_images(images, previous_paths - kept_paths)

    return Recipe.from_dict(gateway.get(RECIPES, recipe_id))


def delete_recipe(gateway: DataGateway, recipe_id: str, images: Optional[ImageStorage] = None) -> None:
    by_recipe = [("recipe_id", "==", recipe_id)]
    paths = {row.get("storage_path") for row in gateway.select(RECIPE_IMAGES, where=by_recipe)}

    for collection in (INGREDIENTS, INSTRUCTIONS, RECIPE_IMAGES, COOKING_NOTES, USER_FAVORITES, RECIPE_SHARES):
        gateway.delete(collection, where=by_recipe)
    gateway.delete(RECIPES, where=[("id", "==", recipe_id)])

    _delete_images(images, paths)
    logger.info("Deleted recipe %s", recipe_id)


def _delete_images(images: Optional[ImageStorage], paths: Iterable[Optional[str]]) -> None:
    if images is None:
        return
    for path in paths:
        if path:
            images.delete(path)


def recipe_form_from_detail(detail: RecipeDetail) -> RecipeInput:
    recipe = detail.recipe
    main_image = None
    if detail.main_image_url:
        main_image = StoredImage(url=detail.main_image_url, storage_path="")
    return RecipeInput(
        title=recipe.title,
        description=recipe.description or "",
        category=recipe.category,
        visibility=recipe.visibility,
        prep_time_minutes=recipe.prep_time_minutes,
        cook_time_minutes=recipe.cook_time_minutes,
        servings=recipe.servings,
        source_url=recipe.source_url or "",
        parent_recipe_id=recipe.parent_recipe_id,
        main_image=main_image,
        ingredients=[replace(ingredient, id=None, recipe_id=None) for ingredient in detail.ingredients],
        instructions=[replace(instruction, id=None, recipe_id=None) for instruction in detail.instructions],
    )


def load_recipe_form(gateway: DataGateway, recipe_id: str) -> RecipeInput:
    """Prefill the edit form, keeping image storage paths so unchanged images survive."""

    detail = load_recipe(gateway, recipe_id)
    form = recipe_form_from_detail(detail)
    main = gateway.select(
        RECIPE_IMAGES,
        where=[("recipe_id", "==", recipe_id), ("instruction_id", "is_null", True)],
        limit=1,
    )
    if main:
        form.main_image = StoredImage(url=main[0]["url"], storage_path=main[0].get("storage_path", ""))
    return form


def variation_form(
    gateway: DataGateway, parent_recipe_id: str, viewer: Optional[RecipeViewer] = None
) -> RecipeInput:
    """Prefill a new recipe from its parent: same contents, inherited visibility."""

    parent = load_recipe(gateway, parent_recipe_id)
    if viewer is not None and not viewer.can_read(parent.recipe):
        raise RecipeNotReadable(parent_recipe_id)
    form = recipe_form_from_detail(parent)
    form.title = f"{form.title} (Variation)"
    form.parent_recipe_id = parent_recipe_id
    form.main_image = None
    form.instructions = [
        replace(instruction, image_url=None, image_storage_path=None) for instruction in form.instructions
    ]
    return form


def add_cooking_note(
    gateway: DataGateway,
    *,
    recipe_id: str,
    user_id: str,
    cooked_on: Optional[str] = None,
    multiplier: float = 1,
    rating: Optional[int] = None,
    notes: Optional[str] = None,
) -> CookingNote:
    if rating is not None and not 1 <= rating <= 5:
        raise ValueError("Rating must be between 1 and 5.")
    if multiplier not in MULTIPLIERS:
        raise ValueError("Unsupported scale.")

    row = gateway.insert(
        COOKING_NOTES,
        [
            {
                "recipe_id": recipe_id,
                "user_id": user_id,
                "cooked_on": cooked_on or date.today().isoformat(),
                "multiplier": multiplier,
                "rating": rating,
                "notes": notes or None,
            }
        ],
    )[0]
    return CookingNote.from_dict(row)


def save_offline(offline: OfflineCache, detail: RecipeDetail) -> None:
    offline.save(
        detail.recipe,
        detail.ingredients,
        detail.instructions,
        detail.notes,
        main_image_url=detail.main_image_url,
    )


__all__ = [
    "ImageValidationError",
    "MAX_IMAGE_BYTES",
    "MULTIPLIERS",
    "RecipeCard",
    "RecipeInput",
    "RecipeNotReadable",
    "RecipeViewer",
    "add_cooking_note",
    "create_recipe",
    "delete_recipe",
    "fetch_recipe_detail",
    "filter_recipes",
    "format_quantity",
    "format_time",
    "get_household_id",
    "get_recipe_detail",
    "is_favorite",
    "list_recipes",
    "load_cooking_notes",
    "load_favorite_ids",
    "load_recipe",
    "load_recipe_form",
    "load_viewer",
    "move_item",
    "recipe_form_from_detail",
    "renumber_steps",
    "resort_ingredients",
    "save_offline",
    "scaled_servings",
    "toggle_favorite",
    "update_recipe",
    "upload_image",
    "validate_image",
    "variation_form",
]
