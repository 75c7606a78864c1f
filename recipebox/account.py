"""Login, signup, re-authentication, settings, community and offline views."""

from __future__ import annotations

import logging
import sqlite3

from flask import Flask, current_app, flash, redirect, render_template, request, url_for

from .auth import AuthError
from .biometric import BiometricCancelledError, BiometricError, BiometricUnsupportedError
from .households import (
    SignupError,
    follow_household,
    get_household_info,
    list_followed_households,
    search_households,
    signup,
    unfollow_household,
)
from .session import SessionState, get_session_preference
from .sharing import load_shared_recipe
from .storage import GatewayError
from .web import (
    current_user_id,
    get_biometric,
    get_controller,
    get_gateway,
    get_offline,
    login_required,
    safe_next,
    scale_from_request,
)

logger = logging.getLogger(__name__)


def register_account_routes(app: Flask) -> None:
    @app.route("/login", methods=["GET", "POST"])
    def login():
        controller = get_controller()
        if controller.is_authenticated:
            return redirect(safe_next())

        if request.method == "POST":
            email = request.form.get("email", "").strip()
            password = request.form.get("password", "")
            remember_me = request.form.get("remember_me") == "on"
            if not email or not password:
                flash("Email and password are required.", "error")
            else:
                try:
                    controller.sign_in(email, password, remember_me=remember_me)
                except AuthError as exc:
                    flash(str(exc), "error")
                else:
                    return redirect(safe_next())

        preference = get_session_preference(current_app.config["LOCAL_STORE"])
        return render_template("login.html", remember_me=preference.remember_me, title="Sign in")

    @app.route("/signup", methods=["GET", "POST"])
    def signup_view():
        if request.method == "POST":
            email = request.form.get("email", "")
            password = request.form.get("password", "")
            try:
                signup(
                    get_gateway(),
                    current_app.config["AUTH_PROVIDER"],
                    email=email,
                    password=password,
                    display_name=request.form.get("display_name", ""),
                    household_name=request.form.get("household_name"),
                    invite_code=request.form.get("invite_code"),
                )
                get_controller().sign_in(email.strip(), password)
            except (SignupError, AuthError) as exc:
                flash(str(exc), "error")
            except GatewayError as exc:
                logger.error("Error during signup: %s", exc)
                flash("Failed to create account. Please try again.", "error")
            else:
                flash("Welcome to your recipe box!", "success")
                return redirect(url_for("recipes"))

        return render_template("signup.html", form=request.form, title="Create account")

    @app.post("/logout")
    def logout():
        get_controller().sign_out()
        flash("Signed out.", "success")
        return redirect(url_for("login"))

    @app.route("/reauth", methods=["GET", "POST"])
    def reauth():
        controller = get_controller()
        if controller.state is not SessionState.REAUTH_REQUIRED:
            return redirect(safe_next())

        if request.method == "POST":
            try:
                controller.reauthenticate_with_password(request.form.get("password", ""))
            except AuthError as exc:
                flash(str(exc), "error")
            else:
                return redirect(safe_next())

        biometric = get_biometric()
        return render_template(
            "reauth.html",
            email=controller.session.email if controller.session else "",
            biometric_available=biometric.is_platform_authenticator_available() and biometric.has_credential(),
            next_url=request.values.get("next", ""),
            title="Session expired",
        )

    @app.post("/reauth/biometric")
    def reauth_biometric():
        controller = get_controller()
        if controller.state is not SessionState.REAUTH_REQUIRED:
            return redirect(safe_next())

        try:
            if controller.reauthenticate_with_biometric(get_biometric()):
                return redirect(safe_next())
            flash("Biometric authentication failed", "error")
        except BiometricCancelledError:
            flash("Biometric authentication was cancelled", "error")
        except BiometricUnsupportedError:
            flash("Biometric authentication is not available on this device", "error")
        except BiometricError as exc:
            flash(str(exc), "error")
        except AuthError:
            flash("Biometric authentication failed. Please use your password.", "error")
        return redirect(url_for("reauth", next=request.values.get("next", "")))

    @app.post("/reauth/offline")
    def reauth_offline():
        controller = get_controller()
        if controller.state is not SessionState.REAUTH_REQUIRED:
            return redirect(safe_next())

        controller.decline_reauth()
        flash("You are offline. Saved recipes are still available.", "success")
        return redirect(url_for("offline_recipes"))

    @app.get("/settings")
    @login_required
    def settings() -> str:
        household = None
        try:
            household = get_household_info(get_gateway(), current_user_id())
        except GatewayError as exc:
            logger.error("Error loading household info: %s", exc)
            flash("Failed to load household information", "error")

        biometric = get_biometric()
        return render_template(
            "settings.html",
            household=household,
            biometric_available=biometric.is_platform_authenticator_available(),
            biometric_credential=biometric.get_credential(),
            preference=get_session_preference(current_app.config["LOCAL_STORE"]),
            title="Settings",
        )

    @app.post("/settings/biometric")
    @login_required
    def register_biometric():
        session = get_controller().session
        try:
            get_biometric().register(current_user_id(), session.email if session else "")
        except BiometricCancelledError:
            flash("Biometric registration was cancelled", "error")
        except BiometricError as exc:
            flash(str(exc), "error")
        else:
            flash("Biometric unlock enabled on this device.", "success")
        return redirect(url_for("settings"))

    @app.post("/settings/biometric/remove")
    @login_required
    def remove_biometric():
        get_biometric().remove()
        flash("Biometric unlock removed from this device.", "success")
        return redirect(url_for("settings"))

    @app.get("/community")
    @login_required
    def community() -> str:
        query = request.args.get("q", "")
        results = []
        followed = []
        try:
            followed = list_followed_households(get_gateway(), current_user_id())
            results = search_households(get_gateway(), query)
        except GatewayError as exc:
            logger.error("Error loading community: %s", exc)
            flash("Failed to load households", "error")

        followed_ids = {item.household.id for item in followed}
        return render_template(
            "community.html",
            query=query,
            results=results,
            followed=followed,
            followed_ids=followed_ids,
            title="Community",
        )

    @app.post("/community/<household_id>/follow")
    @login_required
    def follow(household_id: str):
        try:
            follow_household(get_gateway(), current_user_id(), household_id)
        except GatewayError as exc:
            logger.error("Error following household %s: %s", household_id, exc)
            flash("Failed to follow household", "error")
        return redirect(url_for("community", q=request.form.get("q", "")))

    @app.post("/community/<household_id>/unfollow")
    @login_required
    def unfollow(household_id: str):
        try:
            unfollow_household(get_gateway(), current_user_id(), household_id)
        except GatewayError as exc:
            logger.error("Error unfollowing household %s: %s", household_id, exc)
            flash("Failed to unfollow household", "error")
        return redirect(url_for("community", q=request.form.get("q", "")))

    @app.get("/share/<token>")
    def shared_recipe(token: str):
        try:
            detail = load_shared_recipe(get_gateway(), token)
        except GatewayError as exc:
            logger.error("Error loading shared recipe: %s", exc)
            detail = None

        if detail is None:
            return render_template("shared_missing.html", title="Recipe not found"), 404
        return render_template("shared.html", detail=detail, multiplier=1, title=detail.recipe.title)

    @app.get("/offline")
    def offline_recipes() -> str:
        saved = []
        try:
            saved = get_offline().list_all()
        except sqlite3.Error as exc:
            logger.error("Error loading offline recipes: %s", exc)
            flash("Failed to load offline recipes", "error")
        return render_template("offline.html", saved=saved, title="Offline Recipes")

    @app.get("/offline/<recipe_id>")
    def offline_recipe(recipe_id: str):
        try:
            snapshot = get_offline().get(recipe_id)
        except sqlite3.Error as exc:
            logger.error("Error loading offline recipe %s: %s", recipe_id, exc)
            snapshot = None

        if snapshot is None:
            return render_template("recipe_missing.html", title="Recipe not found"), 404
        return render_template(
            "recipe_detail.html",
            detail=snapshot.to_detail(),
            multiplier=scale_from_request(),
            is_author=False,
            is_favorite=False,
            is_offline=True,
            is_shared=False,
            title=snapshot.title,
        )


__all__ = ["register_account_routes"]
