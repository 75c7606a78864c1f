import logging
import os
import sqlite3
from typing import Optional

from flask import Flask, flash, redirect, render_template, request, url_for

from .auth import AuthError, AuthProvider, FirebaseAuthProvider
from .biometric import BiometricAuth, PlatformAuthenticator
from .forms import apply_editor_action, attach_uploads, parse_recipe_form
from .local_store import LocalStore
from .models import COUNT_UNITS, IMPERIAL_UNITS, METRIC_UNITS, RECIPE_CATEGORIES, RECIPE_VISIBILITIES
from .offline import OfflineCache
from .recipes import (
    MULTIPLIERS,
    ImageValidationError,
    RecipeInput,
    RecipeNotReadable,
    add_cooking_note,
    create_recipe,
    delete_recipe,
    fetch_recipe_detail,
    filter_recipes,
    format_quantity,
    format_time,
    get_recipe_detail,
    is_favorite,
    list_recipes,
    load_favorite_ids,
    load_recipe,
    load_recipe_form,
    save_offline,
    scaled_servings,
    toggle_favorite,
    update_recipe,
    variation_form,
)
from .session import SessionController
from .sharing import create_share_link, get_share_token, revoke_share_link
from .storage import RECIPES, DataGateway, GatewayError, ImageStorage
from .web import (
    current_user_id,
    current_viewer,
    get_controller,
    get_gateway,
    get_images,
    get_offline,
    login_required,
    safe_next,
    scale_from_request,
)

try:
    from .gcp_storage import CloudStorageImages, FirestoreGateway
except ImportError:  # pragma: no cover - allows running tests without optional deps
    CloudStorageImages = None  # type: ignore[assignment]
    FirestoreGateway = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


def create_app(
    gateway: Optional[DataGateway] = None,
    *,
    images: Optional[ImageStorage] = None,
    auth: Optional[AuthProvider] = None,
    local_store: Optional[LocalStore] = None,
    authenticator: Optional[PlatformAuthenticator] = None,
    clock=None,
) -> Flask:
    """Create and configure the Flask application.

    Parameters
    ----------
    gateway:
        Optional data gateway. When ``None`` the application will use
        :class:`FirestoreGateway` configured through environment variables,
        together with :class:`CloudStorageImages` when ``GCS_BUCKET`` is set.
    auth:
        Optional auth provider; defaults to :class:`FirebaseAuthProvider`.
    local_store:
        Device-local SQLite store for offline recipes and preferences.
    authenticator:
        Platform public-key credential API used for biometric re-auth.
    """

    app = Flask(__name__)
    app.config.setdefault("MAX_CONTENT_LENGTH", 16 * 1024 * 1024)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "development-secret-change-me")

    if gateway is None:
        if FirestoreGateway is None:
            raise RuntimeError(
                "google-cloud-firestore is not installed. Install optional dependencies "
                "or pass an explicit gateway to create_app."
            )
        gateway = FirestoreGateway.from_env()
        if images is None and CloudStorageImages is not None:
            images = CloudStorageImages.from_env()
    if auth is None:
        auth = FirebaseAuthProvider.from_env()
    if local_store is None:
        local_store = LocalStore.from_env()

    controller_options = {"clock": clock} if clock else {}
    controller = SessionController(auth, local_store, **controller_options)
    controller.start()

    app.config["DATA_GATEWAY"] = gateway
    app.config["IMAGE_STORAGE"] = images
    app.config["AUTH_PROVIDER"] = auth
    app.config["LOCAL_STORE"] = local_store
    app.config["OFFLINE_CACHE"] = OfflineCache(local_store)
    app.config["SESSION_CONTROLLER"] = controller
    app.config["BIOMETRIC"] = BiometricAuth(
        local_store, authenticator, rp_id=os.environ.get("RECIPEBOX_RP_ID", "localhost")
    )

    app.jinja_env.globals.update(
        format_quantity=format_quantity,
        format_time=format_time,
        scaled_servings=scaled_servings,
        multipliers=MULTIPLIERS,
        categories=RECIPE_CATEGORIES,
        visibilities=RECIPE_VISIBILITIES,
        imperial_units=IMPERIAL_UNITS,
        metric_units=METRIC_UNITS,
        count_units=COUNT_UNITS,
        session_controller=controller,
    )

    @app.before_request
    def check_session() -> None:
        if request.endpoint != "static":
            controller.maybe_check()

    @app.get("/")
    def index():
        if controller.is_authenticated:
            return redirect(url_for("recipes"))
        return redirect(url_for("login"))

    @app.get("/recipes")
    @login_required
    def recipes() -> str:
        query = request.args.get("q", "")
        category = request.args.get("category", "all")
        favorites_only = request.args.get("favorites") == "1"

        cards = []
        favorite_ids = set()
        try:
            cards = list_recipes(get_gateway(), current_viewer())
            favorite_ids = load_favorite_ids(get_gateway(), current_user_id())
        except GatewayError as exc:
            flash(f"Failed to load recipes: {exc}", "error")

        return render_template(
            "recipes.html",
            cards=filter_recipes(
                cards,
                query=query,
                category=category,
                favorites_only=favorites_only,
                favorite_ids=favorite_ids,
            ),
            favorite_ids=favorite_ids,
            query=query,
            category=category,
            favorites_only=favorites_only,
            title="My Recipes",
        )

    @app.get("/recipes/new")
    @login_required
    def new_recipe() -> str:
        variant_of = request.args.get("variant_of")
        form = RecipeInput()
        parent_title = None

        if variant_of:
            try:
                form = variation_form(get_gateway(), variant_of, current_viewer())
                parent_title = form.title[: -len(" (Variation)")]
            except (GatewayError, KeyError) as exc:
                logger.error("Error loading parent recipe %s: %s", variant_of, exc)
                flash("Failed to load parent recipe", "error")

        return render_template(
            "recipe_form.html", form=form, recipe_id=None, parent_title=parent_title, title="Add recipe"
        )

    @app.post("/recipes")
    @login_required
    def create_recipe_view():
        form = parse_recipe_form(request.form)
        if apply_editor_action(form, request.form.get("action", "save")):
            return render_template("recipe_form.html", form=form, recipe_id=None, title="Add recipe")

        error = form.validate()
        if error:
            flash(error, "error")
            return render_template("recipe_form.html", form=form, recipe_id=None, title="Add recipe")

        try:
            attach_uploads(form, request.files, get_images())
            recipe = create_recipe(get_gateway(), current_user_id(), form)
        except (ImageValidationError, LookupError, GatewayError, RuntimeError) as exc:
            logger.error("Error creating recipe: %s", exc)
            flash(str(exc) or "Failed to create recipe", "error")
            return render_template("recipe_form.html", form=form, recipe_id=None, title="Add recipe")

        flash(f"Recipe '{recipe.title}' saved.", "success")
        return redirect(url_for("recipe_detail", recipe_id=recipe.id))

    @app.get("/recipes/<recipe_id>")
    @login_required
    def recipe_detail(recipe_id: str) -> str:
        detail = get_recipe_detail(get_gateway(), recipe_id, get_offline(), viewer=current_viewer())
        if detail is None:
            return render_template("recipe_missing.html", title="Recipe not found"), 404

        multiplier = scale_from_request()
        user_id = current_user_id()

        favorite = False
        shared = False
        if not detail.offline:
            try:
                favorite = is_favorite(get_gateway(), user_id, recipe_id)
                if detail.recipe.author_id == user_id:
                    shared = get_share_token(get_gateway(), recipe_id) is not None
            except GatewayError as exc:
                logger.error("Error loading recipe status for %s: %s", recipe_id, exc)

        return render_template(
            "recipe_detail.html",
            detail=detail,
            multiplier=multiplier,
            is_author=detail.recipe.author_id == user_id,
            is_favorite=favorite,
            is_offline=_offline_exists(recipe_id),
            is_shared=shared,
            title=detail.recipe.title,
        )

    @app.get("/recipes/<recipe_id>/edit")
    @login_required
    def edit_recipe(recipe_id: str) -> str:
        try:
            form = load_recipe_form(get_gateway(), recipe_id)
            author_id = get_gateway().get(RECIPES, recipe_id).get("author_id")
        except KeyError:
            flash("Recipe not found.", "error")
            return redirect(url_for("recipes"))
        except GatewayError as exc:
            flash(f"Failed to load recipe: {exc}", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))

        if author_id != current_user_id():
            flash("Only the author can edit this recipe.", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))

        page_title = f"Edit {form.title}" if form.title else "Edit recipe"
        return render_template("recipe_form.html", form=form, recipe_id=recipe_id, title=page_title)

    @app.post("/recipes/<recipe_id>")
    @login_required
    def update_recipe_view(recipe_id: str):
        form = parse_recipe_form(request.form)
        if apply_editor_action(form, request.form.get("action", "save")):
            return render_template("recipe_form.html", form=form, recipe_id=recipe_id, title="Edit recipe")

        error = form.validate()
        if error:
            flash(error, "error")
            return render_template("recipe_form.html", form=form, recipe_id=recipe_id, title="Edit recipe")

        if not _is_author(recipe_id):
            flash("Only the author can edit this recipe.", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))

        try:
            attach_uploads(form, request.files, get_images())
            updated = update_recipe(get_gateway(), recipe_id, form, get_images())
        except KeyError:
            flash("Recipe not found.", "error")
            return redirect(url_for("recipes"))
        except (ImageValidationError, GatewayError, RuntimeError) as exc:
            logger.error("Error updating recipe %s: %s", recipe_id, exc)
            flash(f"Failed to update recipe: {exc}", "error")
            return render_template("recipe_form.html", form=form, recipe_id=recipe_id, title="Edit recipe")

        flash(f"Recipe '{updated.title}' updated.", "success")
        return redirect(url_for("recipe_detail", recipe_id=recipe_id))

    @app.post("/recipes/<recipe_id>/delete")
    @login_required
    def delete_recipe_view(recipe_id: str):
        if not _is_author(recipe_id):
            flash("Only the author can delete this recipe.", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))

        try:
            delete_recipe(get_gateway(), recipe_id, get_images())
        except GatewayError as exc:
            logger.error("Error deleting recipe %s: %s", recipe_id, exc)
            flash("Failed to delete recipe", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))

        flash("Recipe deleted.", "success")
        return redirect(url_for("recipes"))

    @app.post("/recipes/<recipe_id>/favorite")
    @login_required
    def favorite_recipe(recipe_id: str):
        try:
            toggle_favorite(get_gateway(), current_user_id(), recipe_id)
        except GatewayError as exc:
            logger.error("Error toggling favorite for %s: %s", recipe_id, exc)
            flash("Failed to update favorites", "error")
        return redirect(safe_next("recipe_detail", recipe_id=recipe_id))

    @app.post("/recipes/<recipe_id>/offline")
    @login_required
    def toggle_offline(recipe_id: str):
        offline = get_offline()
        try:
            if offline.exists(recipe_id):
                offline.remove(recipe_id)
                flash("Removed from offline recipes.", "success")
            else:
                save_offline(offline, fetch_recipe_detail(get_gateway(), recipe_id, current_viewer()))
                flash("Saved for offline use.", "success")
        except KeyError:
            flash("Recipe not found.", "error")
        except GatewayError as exc:
            logger.error("Error loading recipe %s for offline use: %s", recipe_id, exc)
            flash("Failed to save recipe for offline use", "error")
        except sqlite3.Error as exc:
            logger.error("Error toggling offline status for %s: %s", recipe_id, exc)
            flash("Failed to update offline status", "error")
        return redirect(url_for("recipe_detail", recipe_id=recipe_id))

    @app.post("/recipes/<recipe_id>/notes")
    @login_required
    def add_note(recipe_id: str):
        rating = request.form.get("rating")
        try:
            add_cooking_note(
                get_gateway(),
                recipe_id=recipe_id,
                user_id=current_user_id(),
                cooked_on=request.form.get("cooked_on") or None,
                multiplier=float(request.form.get("multiplier") or 1),
                rating=int(rating) if rating else None,
                notes=request.form.get("notes", "").strip(),
            )
        except (ValueError, GatewayError) as exc:
            logger.error("Error saving cooking note for %s: %s", recipe_id, exc)
            flash(f"Failed to save note: {exc}", "error")
        else:
            flash("Cooking note saved.", "success")
        return redirect(url_for("recipe_detail", recipe_id=recipe_id))

    @app.get("/recipes/<recipe_id>/share")
    @login_required
    def share_settings(recipe_id: str) -> str:
        token = None
        try:
            recipe = load_recipe(get_gateway(), recipe_id).recipe
            if not current_viewer().can_read(recipe):
                raise RecipeNotReadable(recipe_id)
            token = get_share_token(get_gateway(), recipe_id)
        except KeyError:
            flash("Recipe not found.", "error")
            return redirect(url_for("recipes"))
        except GatewayError as exc:
            logger.error("Error fetching share link for %s: %s", recipe_id, exc)
            flash("Failed to load share settings", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))

        share_url = url_for("shared_recipe", token=token, _external=True) if token else None
        return render_template(
            "share.html", recipe=recipe, share_url=share_url, title=f"Share {recipe.title}"
        )

    @app.post("/recipes/<recipe_id>/share")
    @login_required
    def create_share(recipe_id: str):
        if not _is_author(recipe_id):
            flash("Only the author can share this recipe.", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))
        try:
            create_share_link(get_gateway(), recipe_id, current_user_id())
        except GatewayError as exc:
            logger.error("Error creating share link for %s: %s", recipe_id, exc)
            flash("Failed to create share link", "error")
        return redirect(url_for("share_settings", recipe_id=recipe_id))

    @app.post("/recipes/<recipe_id>/share/revoke")
    @login_required
    def revoke_share(recipe_id: str):
        if not _is_author(recipe_id):
            flash("Only the author can share this recipe.", "error")
            return redirect(url_for("recipe_detail", recipe_id=recipe_id))
        try:
            revoke_share_link(get_gateway(), recipe_id)
        except GatewayError as exc:
            logger.error("Error revoking share link for %s: %s", recipe_id, exc)
            flash("Failed to revoke share link", "error")
        else:
            flash("Share link revoked.", "success")
        return redirect(url_for("share_settings", recipe_id=recipe_id))

    from .account import register_account_routes

    register_account_routes(app)
    return app


def _offline_exists(recipe_id: str) -> bool:
    try:
        return get_offline().exists(recipe_id)
    except sqlite3.Error as exc:
        logger.error("Error checking offline status for %s: %s", recipe_id, exc)
        return False


def _is_author(recipe_id: str) -> bool:
    try:
        row = get_gateway().get(RECIPES, recipe_id)
    except (KeyError, GatewayError):
        return False
    return row.get("author_id") == current_user_id()


__all__ = ["AuthError", "create_app", "get_controller", "SessionController"]
