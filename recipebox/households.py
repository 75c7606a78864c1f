from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .auth import AuthProvider
from .models import Household, HouseholdFollow
from .storage import HOUSEHOLD_FOLLOWS, HOUSEHOLD_MEMBERS, HOUSEHOLDS, USERS, DataGateway

logger = logging.getLogger(__name__)

INVITE_CODE_LENGTH = 8
INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
SEARCH_LIMIT = 20
INVALID_INVITE_CODE = "Invalid invite code. Please check and try again."


class SignupError(Exception):
    """Signup could not be completed; the message is safe to show."""


@dataclass
class SignupResult:
    user_id: str
    household_id: str
    role: str


@dataclass
class HouseholdInfo:
    id: str
    name: str
    invite_code: Optional[str]
    role: str
    members_count: int

    @property
    def can_manage(self) -> bool:
        return self.role in ("owner", "admin")


@dataclass
class FollowedHousehold:
    follow: HouseholdFollow
    household: Household


def generate_invite_code() -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def signup(
    gateway: DataGateway,
    auth: AuthProvider,
    *,
    email: str,
    password: str,
    display_name: str,
    household_name: Optional[str] = None,
    invite_code: Optional[str] = None,
) -> SignupResult:
    """Create a user with a profile and place them in a household.

    Without an invite code a new household is created with the user as its
    owner. With one, the user joins that household as a member. The code is
    checked before the account is created, so a bad code leaves nothing behind.
    """

    email = email.strip()
    display_name = display_name.strip()
    if not email or not password:
        raise SignupError("Email and password are required.")
    if not display_name:
        raise SignupError("Please provide a display name.")

    invite_code = (invite_code or "").strip().upper()
    household_id = None
    if invite_code:
        matches = gateway.select(HOUSEHOLDS, where=[("invite_code", "==", invite_code)], limit=1)
        if not matches:
            raise SignupError(INVALID_INVITE_CODE)
        household_id = matches[0]["id"]

    user_id = auth.create_user(email=email, password=password, display_name=display_name)
    gateway.insert(USERS, [{"id": user_id, "email": email, "display_name": display_name}])

    if household_id is None:
        role = "owner"
        household = gateway.insert(
            HOUSEHOLDS,
            [
                {
                    "name": (household_name or "").strip() or f"{display_name}'s Household",
                    "owner_id": user_id,
                    "invite_code": generate_invite_code(),
                    "allow_member_edits": False,
                }
            ],
        )[0]
        household_id = household["id"]
    else:
        role = "member"

    gateway.insert(
        HOUSEHOLD_MEMBERS,
        [
            {
                "household_id": household_id,
                "user_id": user_id,
                "role": role,
                "joined_at": datetime.now(timezone.utc),
            }
        ],
    )
    logger.info("Signed up user %s as %s of household %s", user_id, role, household_id)
    return SignupResult(user_id=user_id, household_id=household_id, role=role)


def get_household_info(gateway: DataGateway, user_id: str) -> Optional[HouseholdInfo]:
    memberships = gateway.select(HOUSEHOLD_MEMBERS, where=[("user_id", "==", user_id)], limit=1)
    if not memberships:
        return None
    membership = memberships[0]

    try:
        household = Household.from_dict(gateway.get(HOUSEHOLDS, membership["household_id"]))
    except KeyError:
        return None

    count = gateway.count(HOUSEHOLD_MEMBERS, where=[("household_id", "==", household.id)])
    return HouseholdInfo(
        id=household.id,
        name=household.name,
        invite_code=household.invite_code,
        role=membership.get("role", "member"),
        members_count=count or 1,
    )


def search_households(gateway: DataGateway, query: str, *, limit: int = SEARCH_LIMIT) -> List[Household]:
    query = query.strip()
    if not query:
        return []
    rows = gateway.select(HOUSEHOLDS, where=[("name", "ilike", f"%{query}%")], limit=limit)
    return [Household.from_dict(row) for row in rows]


def list_followed_households(gateway: DataGateway, user_id: str) -> List[FollowedHousehold]:
    followed = []
    for row in gateway.select(HOUSEHOLD_FOLLOWS, where=[("follower_user_id", "==", user_id)]):
        follow = HouseholdFollow.from_dict(row)
        try:
            household = Household.from_dict(gateway.get(HOUSEHOLDS, follow.followed_household_id))
        except KeyError:
            continue
        followed.append(FollowedHousehold(follow=follow, household=household))
    return followed


def follow_household(gateway: DataGateway, user_id: str, household_id: str) -> None:
    where = [("follower_user_id", "==", user_id), ("followed_household_id", "==", household_id)]
    if gateway.select(HOUSEHOLD_FOLLOWS, where=where, limit=1):
        return
    gateway.insert(HOUSEHOLD_FOLLOWS, [{"follower_user_id": user_id, "followed_household_id": household_id}])


def unfollow_household(gateway: DataGateway, user_id: str, household_id: str) -> None:
    gateway.delete(
        HOUSEHOLD_FOLLOWS,
        where=[("follower_user_id", "==", user_id), ("followed_household_id", "==", household_id)],
    )


__all__ = [
    "FollowedHousehold",
    "HouseholdInfo",
    "INVALID_INVITE_CODE",
    "SignupError",
    "SignupResult",
    "follow_household",
    "generate_invite_code",
    "get_household_info",
    "list_followed_households",
    "search_households",
    "signup",
    "unfollow_household",
]
