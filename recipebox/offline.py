from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from .local_store import LocalStore, json_default
from .models import CookingNote, Ingredient, Instruction, Recipe, RecipeDetail, parse_timestamp

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OfflineRecipe:
    """A full recipe snapshot kept on the device for disconnected reading."""

    recipe: Recipe
    ingredients: List[Ingredient]
    instructions: List[Instruction]
    notes: List[CookingNote] = field(default_factory=list)
    main_image_url: Optional[str] = None
    saved_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.recipe.id

    @property
    def title(self) -> str:
        return self.recipe.title

    def to_detail(self) -> RecipeDetail:
        return RecipeDetail(
            recipe=self.recipe,
            ingredients=list(self.ingredients),
            instructions=list(self.instructions),
            notes=list(self.notes),
            main_image_url=self.main_image_url,
            offline=True,
        )


class OfflineCache:
    """Snapshots keyed by recipe id; saving again replaces the whole snapshot."""

    def __init__(self, store: LocalStore, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def save(
        self,
        recipe: Recipe,
        ingredients: Sequence[Ingredient],
        instructions: Sequence[Instruction],
        notes: Sequence[CookingNote] = (),
        *,
        main_image_url: Optional[str] = None,
    ) -> OfflineRecipe:
        snapshot = OfflineRecipe(
            recipe=recipe,
            ingredients=list(ingredients),
            instructions=list(instructions),
            notes=list(notes),
            main_image_url=main_image_url,
            saved_at=self._clock(),
        )
        payload = json.dumps(
            {
                "recipe": recipe.to_dict(),
                "ingredients": [item.to_dict() for item in snapshot.ingredients],
                "instructions": [item.to_dict() for item in snapshot.instructions],
                "notes": [item.to_dict() for item in snapshot.notes],
                "main_image_url": main_image_url,
            },
            default=json_default,
        )

        with self._store.connect() as conn:
            conn.execute(
                "INSERT INTO offline_recipes (id, title, payload, saved_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET title = excluded.title, "
                "payload = excluded.payload, saved_at = excluded.saved_at",
                (recipe.id, recipe.title, payload, snapshot.saved_at.isoformat()),
            )
        logger.info("Saved recipe %s for offline use", recipe.id)
        return snapshot

    def get(self, recipe_id: str) -> Optional[OfflineRecipe]:
        with self._store.connect() as conn:
            row = conn.execute(
                "SELECT payload, saved_at FROM offline_recipes WHERE id = ?", (recipe_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_snapshot(row[0], row[1])

    def remove(self, recipe_id: str) -> None:
        with self._store.connect() as conn:
            conn.execute("DELETE FROM offline_recipes WHERE id = ?", (recipe_id,))
        logger.info("Removed offline copy of recipe %s", recipe_id)

    def list_all(self) -> List[OfflineRecipe]:
        """Every snapshot, ordered by title ignoring case, then by recipe id."""

        with self._store.connect() as conn:
            rows = conn.execute(
                "SELECT payload, saved_at FROM offline_recipes ORDER BY title COLLATE NOCASE, id"
            ).fetchall()
        return [self._row_to_snapshot(payload, saved_at) for payload, saved_at in rows]

    def exists(self, recipe_id: str) -> bool:
        with self._store.connect() as conn:
            row = conn.execute("SELECT 1 FROM offline_recipes WHERE id = ?", (recipe_id,)).fetchone()
        return row is not None

    @staticmethod
    def _row_to_snapshot(payload: str, saved_at: str) -> OfflineRecipe:
        data = json.loads(payload)
        return OfflineRecipe(
            recipe=Recipe.from_dict(data["recipe"]),
            ingredients=[Ingredient.from_dict(item) for item in data.get("ingredients", [])],
            instructions=[Instruction.from_dict(item) for item in data.get("instructions", [])],
            notes=[CookingNote.from_dict(item) for item in data.get("notes", [])],
            main_image_url=data.get("main_image_url"),
            saved_at=parse_timestamp(saved_at),
        )


__all__ = ["OfflineCache", "OfflineRecipe"]
