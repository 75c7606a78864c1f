"""Request-time access to the backends wired up by :func:`recipebox.create_app`."""

from __future__ import annotations

import logging
from functools import wraps
from typing import Optional

from flask import current_app, g, redirect, request, url_for

from .biometric import BiometricAuth
from .offline import OfflineCache
from .recipes import MULTIPLIERS, RecipeViewer, load_viewer
from .session import SessionController, SessionState
from .storage import DataGateway, GatewayError, ImageStorage

logger = logging.getLogger(__name__)


def get_gateway() -> DataGateway:
    return current_app.config["DATA_GATEWAY"]


def get_images() -> Optional[ImageStorage]:
    return current_app.config["IMAGE_STORAGE"]


def get_offline() -> OfflineCache:
    return current_app.config["OFFLINE_CACHE"]


def get_controller() -> SessionController:
    return current_app.config["SESSION_CONTROLLER"]


def get_biometric() -> BiometricAuth:
    return current_app.config["BIOMETRIC"]


def current_user_id() -> Optional[str]:
    return get_controller().user_id


def current_viewer() -> RecipeViewer:
    """The signed-in user's recipe visibility, loaded once per request.

    When memberships cannot be loaded the viewer only sees their own and
    public recipes.
    """

    if "recipe_viewer" not in g:
        try:
            g.recipe_viewer = load_viewer(get_gateway(), current_user_id())
        except GatewayError as exc:
            logger.error("Error loading household access for %s: %s", current_user_id(), exc)
            return RecipeViewer(user_id=current_user_id())
    return g.recipe_viewer


def safe_next(default_endpoint: str = "recipes", **values) -> str:
    """The ``next`` target when it is a same-site path, else ``default_endpoint``."""

    target = request.values.get("next", "")
    if target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return url_for(default_endpoint, **values)


def scale_from_request() -> float:
    """The ``?scale=`` multiplier, falling back to 1 for anything unsupported."""

    try:
        multiplier = float(request.args.get("scale") or 1)
    except ValueError:
        return 1
    return multiplier if multiplier in MULTIPLIERS else 1


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        controller = get_controller()
        if controller.state is SessionState.REAUTH_REQUIRED:
            return redirect(url_for("reauth", next=request.path))
        if not controller.is_authenticated or controller.user_id is None:
            return redirect(url_for("login", next=request.path))
        return view(*args, **kwargs)

    return wrapped


__all__ = [
    "current_user_id",
    "current_viewer",
    "get_biometric",
    "get_controller",
    "get_gateway",
    "get_images",
    "get_offline",
    "login_required",
    "safe_next",
    "scale_from_request",
]
