from __future__ import annotations

import logging
import secrets
from typing import Optional

from .models import Ingredient, Instruction, Recipe, RecipeDetail, RecipeImage
from .storage import RECIPE_SHARES, DataGateway

logger = logging.getLogger(__name__)

TOKEN_BYTES = 16


def generate_share_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def get_share_token(gateway: DataGateway, recipe_id: str) -> Optional[str]:
    rows = gateway.select(RECIPE_SHARES, where=[("recipe_id", "==", recipe_id)], limit=1)
    return rows[0]["token"] if rows else None


def create_share_link(gateway: DataGateway, recipe_id: str, user_id: str) -> str:
    """Return the recipe's share token, creating one if it has none yet."""

    existing = get_share_token(gateway, recipe_id)
    if existing:
        return existing

    token = generate_share_token()
    gateway.insert(RECIPE_SHARES, [{"recipe_id": recipe_id, "token": token, "created_by": user_id}])
    logger.info("Created share link for recipe %s", recipe_id)
    return token


def revoke_share_link(gateway: DataGateway, recipe_id: str) -> bool:
    removed = gateway.delete(RECIPE_SHARES, where=[("recipe_id", "==", recipe_id)])
    if removed:
        logger.info("Revoked share link for recipe %s", recipe_id)
    return bool(removed)


def load_shared_recipe(gateway: DataGateway, token: str) -> Optional[RecipeDetail]:
    document = gateway.get_shared_recipe(token)
    if not document:
        return None

    images = [RecipeImage.from_dict(row) for row in document.get("images") or []]
    images.sort(key=lambda image: image.order_index)
    step_images = {image.instruction_id: image for image in images if image.instruction_id}

    instructions = []
    for row in document.get("instructions") or []:
        instruction = Instruction.from_dict(row)
        image = step_images.get(instruction.id)
        if image is not None:
            instruction.image_url = image.url
        instructions.append(instruction)

    main_image = next((image for image in images if image.instruction_id is None), None)
    return RecipeDetail(
        recipe=Recipe.from_dict(document),
        ingredients=[Ingredient.from_dict(row) for row in document.get("ingredients") or []],
        instructions=instructions,
        main_image_url=main_image.url if main_image else None,
    )


__all__ = [
    "create_share_link",
    "generate_share_token",
    "get_share_token",
    "load_shared_recipe",
    "revoke_share_link",
]
