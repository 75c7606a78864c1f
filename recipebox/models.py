from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime
from typing import Any, Dict, List, Optional

RECIPE_CATEGORIES = ("cooking", "baking", "beverage", "other")
RECIPE_VISIBILITIES = ("private", "household", "followers", "public")
HOUSEHOLD_ROLES = ("owner", "admin", "member")

IMPERIAL_UNITS = ("tsp", "tbsp", "cup", "fl_oz", "oz", "lb", "pint", "quart", "gallon", "pinch", "dash")
METRIC_UNITS = ("ml", "l", "g", "kg")
COUNT_UNITS = ("piece", "whole", "slice", "clove", "sprig", "leaf", "to_taste", "as_needed")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce a stored timestamp (datetime or ISO string) into a datetime."""

    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class _Row:
    """Mixin for dataclasses that are built from backend rows."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        values = {}
        for f in fields(cls):  # type: ignore[arg-type]
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name.endswith("_at"):
                value = parse_timestamp(value)
            values[f.name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass
class User(_Row):
    id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Household(_Row):
    id: str
    name: str
    owner_id: str
    invite_code: Optional[str] = None
    allow_member_edits: bool = False
    created_at: Optional[datetime] = None


@dataclass
class HouseholdMember(_Row):
    id: str
    household_id: str
    user_id: str
    role: str = "member"
    joined_at: Optional[datetime] = None


@dataclass
class HouseholdFollow(_Row):
    id: str
    follower_user_id: str
    followed_household_id: str
    created_at: Optional[datetime] = None


@dataclass
class RecipeShare(_Row):
    id: str
    recipe_id: str
    token: str
    created_by: str
    created_at: Optional[datetime] = None


@dataclass
class Recipe(_Row):
    """Domain object representing a stored recipe."""

    id: str
    title: str
    household_id: str = ""
    author_id: Optional[str] = None
    parent_recipe_id: Optional[str] = None
    description: Optional[str] = None
    category: str = "cooking"
    visibility: str = "household"
    prep_time_minutes: Optional[int] = None
    cook_time_minutes: Optional[int] = None
    servings: int = 4
    source_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Ingredient(_Row):
    name: str
    id: Optional[str] = None
    recipe_id: Optional[str] = None
    qty_imperial: Optional[float] = None
    unit_imperial: Optional[str] = None
    qty_metric: Optional[float] = None
    unit_metric: Optional[str] = None
    sort_order: int = 0
    notes: Optional[str] = None


@dataclass
class RecipeImage(_Row):
    id: str
    recipe_id: str
    url: str
    storage_path: str
    instruction_id: Optional[str] = None
    caption: Optional[str] = None
    order_index: int = 0
    created_at: Optional[datetime] = None


@dataclass
class Instruction(_Row):
    step_number: int
    content: str
    id: Optional[str] = None
    recipe_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    temperature: Optional[str] = None
    image_url: Optional[str] = None
    image_storage_path: Optional[str] = None


@dataclass
class CookingNote(_Row):
    id: str
    recipe_id: str
    user_id: str
    cooked_on: str = field(default_factory=lambda: date.today().isoformat())
    multiplier: float = 1
    rating: Optional[int] = None
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class UserFavorite(_Row):
    id: str
    user_id: str
    recipe_id: str
    created_at: Optional[datetime] = None


@dataclass
class RecipeDetail:
    """A recipe with everything the detail page renders."""

    recipe: Recipe
    ingredients: List[Ingredient]
    instructions: List[Instruction]
    notes: List[CookingNote] = field(default_factory=list)
    main_image_url: Optional[str] = None
    author_name: Optional[str] = None
    offline: bool = False


__all__ = [
    "COUNT_UNITS",
    "CookingNote",
    "HOUSEHOLD_ROLES",
    "Household",
    "HouseholdFollow",
    "HouseholdMember",
    "IMPERIAL_UNITS",
    "Ingredient",
    "Instruction",
    "METRIC_UNITS",
    "RECIPE_CATEGORIES",
    "RECIPE_VISIBILITIES",
    "Recipe",
    "RecipeDetail",
    "RecipeImage",
    "RecipeShare",
    "User",
    "UserFavorite",
    "parse_timestamp",
]
