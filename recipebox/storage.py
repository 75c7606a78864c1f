from __future__ import annotations

import re
from dataclasses import dataclass
from typing import IO, Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

Row = Dict[str, Any]
Filter = Tuple[str, str, Any]

USERS = "users"
HOUSEHOLDS = "households"
HOUSEHOLD_MEMBERS = "household_members"
HOUSEHOLD_FOLLOWS = "household_follows"
RECIPES = "recipes"
INGREDIENTS = "ingredients"
INSTRUCTIONS = "instructions"
RECIPE_IMAGES = "recipe_images"
COOKING_NOTES = "cooking_notes"
USER_FAVORITES = "user_favorites"
RECIPE_SHARES = "recipe_shares"

OPERATORS = ("==", "ilike", "is_null")


class GatewayError(Exception):
    """Raised when the remote store cannot serve a request."""


def ilike(pattern: str, value: Any) -> bool:
    """Case-insensitive SQL ``LIKE`` match where ``%`` matches any run of characters."""

    if value is None:
        return False
    parts = [re.escape(part) for part in pattern.split("%")]
    regex = ".*".join(parts)
    return re.fullmatch(regex, str(value), flags=re.IGNORECASE | re.DOTALL) is not None


def row_matches(row: Row, where: Iterable[Filter]) -> bool:
    for field_name, op, value in where:
        current = row.get(field_name)
        if op == "==":
            if current != value:
                return False
        elif op == "ilike":
            if not ilike(value, current):
                return False
        elif op == "is_null":
            if (current is None) != bool(value):
                return False
        else:
            raise ValueError(f"Unsupported filter operator '{op}'.")
    return True


class DataGateway(Protocol):
    """Protocol describing the remote tables the application reads and writes.

    Every row is a plain ``dict`` carrying its document ``id``. Implementations
    raise :class:`GatewayError` when the backend fails and :class:`KeyError`
    from :meth:`get` when the row does not exist.
    """

    def select(
        self,
        collection: str,
        *,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Return the rows matching every filter."""

    def get(self, collection: str, row_id: str) -> Row:
        """Return a single row or raise :class:`KeyError` if missing."""

    def insert(self, collection: str, rows: Sequence[Row]) -> List[Row]:
        """Persist new rows and return them in order; rows without an ``id`` get one generated."""

    def update(self, collection: str, values: Row, *, where: Sequence[Filter]) -> int:
        """Apply ``values`` to every matching row and return how many changed."""

    def delete(self, collection: str, *, where: Sequence[Filter]) -> int:
        """Remove every matching row and return how many were removed."""

    def count(self, collection: str, *, where: Sequence[Filter] = ()) -> int:
        """Return the number of matching rows."""

    def get_shared_recipe(self, token: str) -> Optional[Row]:
        """Resolve a share token into a denormalized recipe document."""

        shares = self.select(RECIPE_SHARES, where=[("token", "==", token)], limit=1)
        if not shares:
            return None

        recipe_id = shares[0]["recipe_id"]
        try:
            recipe = self.get(RECIPES, recipe_id)
        except KeyError:
            return None

        by_recipe = [("recipe_id", "==", recipe_id)]
        document = dict(recipe)
        document["ingredients"] = self.select(INGREDIENTS, where=by_recipe, order_by="sort_order")
        document["instructions"] = self.select(INSTRUCTIONS, where=by_recipe, order_by="step_number")
        document["images"] = self.select(RECIPE_IMAGES, where=by_recipe)
        return document


@dataclass
class StoredImage:
    url: str
    storage_path: str


class ImageStorage(Protocol):
    """Object storage for recipe and step images."""

    def upload(self, stream: IO[bytes], *, filename: str, content_type: Optional[str]) -> StoredImage:
        """Store the bytes under a generated path and return where they live."""

    def delete(self, storage_path: str) -> None:
        """Remove a stored object; missing objects are ignored."""


__all__ = [
    "COOKING_NOTES",
    "DataGateway",
    "Filter",
    "GatewayError",
    "HOUSEHOLDS",
    "HOUSEHOLD_FOLLOWS",
    "HOUSEHOLD_MEMBERS",
    "INGREDIENTS",
    "INSTRUCTIONS",
    "ImageStorage",
    "OPERATORS",
    "RECIPES",
    "RECIPE_IMAGES",
    "RECIPE_SHARES",
    "Row",
    "StoredImage",
    "USERS",
    "USER_FAVORITES",
    "ilike",
    "row_matches",
]
