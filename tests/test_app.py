from __future__ import annotations

import io

from recipebox.session import SessionState
from recipebox.storage import HOUSEHOLDS, RECIPE_SHARES, RECIPES

from conftest import register_user


def recipe_data(**overrides):
    data = {
        "title": "Pancakes",
        "description": "Fluffy",
        "servings": "4",
        "category": "cooking",
        "visibility": "household",
        "ingredient_name": ["Flour", "Milk"],
        "ingredient_qty_imperial": ["2", "1.5"],
        "ingredient_unit_imperial": ["cup", "cup"],
        "ingredient_qty_metric": ["", ""],
        "ingredient_unit_metric": ["", ""],
        "ingredient_notes": ["", ""],
        "step_content": ["Whisk the batter", "Fry until golden"],
        "step_duration": ["", ""],
        "step_temperature": ["", ""],
        "step_image_url": ["", ""],
        "step_image_path": ["", ""],
        "action": "save",
    }
    data.update(overrides)
    return data


def create(env, **overrides):
    response = env.client.post("/recipes", data=recipe_data(**overrides))
    assert response.status_code == 302
    return response.headers["Location"].rsplit("/", 1)[-1]


def test_recipes_require_login(env):
    response = env.client.get("/recipes")

    assert response.status_code == 302
    location = response.headers["Location"]
    assert "/login" in location
    assert "next=" in location


def test_login_with_wrong_password(env):
    register_user(env.gateway, env.auth)

    response = env.login(password="wrong")

    assert response.status_code == 200
    assert b"Invalid email or password." in response.data
    assert env.controller.state is SessionState.UNAUTHENTICATED


def test_login_redirects_to_next(env):
    register_user(env.gateway, env.auth)

    response = env.login(next="/settings")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/settings")


def test_signup_creates_household_and_signs_in(env):
    response = env.client.post(
        "/signup",
        data={"email": "new@example.com", "password": "secret123", "display_name": "Sam", "household_name": ""},
    )

    assert response.status_code == 302
    assert env.controller.is_authenticated
    households = env.gateway.select(HOUSEHOLDS)
    assert [row["name"] for row in households] == ["Sam's Household"]


def test_signup_with_invalid_invite_code(env):
    response = env.client.post(
        "/signup",
        data={"email": "new@example.com", "password": "secret123", "display_name": "Sam", "invite_code": "BADCODE1"},
    )

    assert response.status_code == 200
    assert b"Invalid invite code. Please check and try again." in response.data
    assert env.controller.state is SessionState.UNAUTHENTICATED


def test_add_recipe_requires_title(signed_in):
    response = signed_in.client.post("/recipes", data=recipe_data(title=""), follow_redirects=True)

    assert response.status_code == 200
    assert b"Please provide a recipe title." in response.data
    assert signed_in.gateway.count(RECIPES) == 0


def test_create_recipe_and_view_detail(signed_in):
    response = signed_in.client.post("/recipes", data=recipe_data(), follow_redirects=True)

    assert response.status_code == 200
    assert "Recipe &#39;Pancakes&#39; saved." in response.get_data(as_text=True)
    html = response.get_data(as_text=True)
    assert html.index("Flour") < html.index("Milk")
    assert html.index("Whisk the batter") < html.index("Fry until golden")
    assert 'value="1"' in html


def test_recipe_list_shows_created_recipe(signed_in):
    create(signed_in)

    response = signed_in.client.get("/recipes")

    assert response.status_code == 200
    assert b"Pancakes" in response.data


def test_list_filters(signed_in):
    create(signed_in, title="Tomato Soup")
    create(signed_in, title="Sourdough", category="baking")

    html = signed_in.client.get("/recipes?category=baking").get_data(as_text=True)
    assert "Sourdough" in html and "Tomato Soup" not in html

    html = signed_in.client.get("/recipes?q=tomato").get_data(as_text=True)
    assert "Tomato Soup" in html and "Sourdough" not in html


def test_detail_scales_quantities(signed_in):
    recipe_id = create(signed_in)

    html = signed_in.client.get(f"/recipes/{recipe_id}?scale=2").get_data(as_text=True)

    assert "Servings: 8" in html
    assert "4 cup" in html
    assert "3 cup" in html


def test_unsupported_scale_falls_back_to_one(signed_in):
    recipe_id = create(signed_in)

    html = signed_in.client.get(f"/recipes/{recipe_id}?scale=7").get_data(as_text=True)

    assert "Servings: 4" in html


def test_editor_action_rerenders_without_saving(signed_in):
    response = signed_in.client.post("/recipes", data=recipe_data(action="add-ingredient"))

    assert response.status_code == 200
    assert response.get_data(as_text=True).count('name="ingredient_name"') == 3
    assert signed_in.gateway.count(RECIPES) == 0


def test_create_recipe_with_image(signed_in):
    data = recipe_data()
    data["main_image"] = (io.BytesIO(b"fake image"), "pancakes.png", "image/png")

    response = signed_in.client.post(
        "/recipes", data=data, content_type="multipart/form-data", follow_redirects=True
    )

    assert response.status_code == 200
    assert len(signed_in.images.blobs) == 1
    assert "https://storage.test/recipes/" in response.get_data(as_text=True)


def test_non_image_upload_is_rejected(signed_in):
    data = recipe_data()
    data["main_image"] = (io.BytesIO(b"hello"), "notes.txt", "text/plain")

    response = signed_in.client.post("/recipes", data=data, content_type="multipart/form-data")

    assert response.status_code == 200
    assert b"Please upload an image file" in response.data
    assert signed_in.gateway.count(RECIPES) == 0


def test_edit_recipe(signed_in):
    recipe_id = create(signed_in)

    form = signed_in.client.get(f"/recipes/{recipe_id}/edit")
    assert form.status_code == 200
    assert b'value="Pancakes"' in form.data

    response = signed_in.client.post(
        f"/recipes/{recipe_id}", data=recipe_data(title="Crepes"), follow_redirects=True
    )

    assert response.status_code == 200
    assert "Recipe &#39;Crepes&#39; updated." in response.get_data(as_text=True)
    assert signed_in.gateway.get(RECIPES, recipe_id)["title"] == "Crepes"


def test_only_author_can_edit_or_delete(signed_in):
    recipe_id = create(signed_in)
    signed_in.gateway.update(RECIPES, {"author_id": "someone-else"}, where=[("id", "==", recipe_id)])

    response = signed_in.client.post(f"/recipes/{recipe_id}/delete", follow_redirects=True)

    assert b"Only the author can delete this recipe." in response.data
    assert signed_in.gateway.count(RECIPES) == 1


def test_delete_recipe(signed_in):
    recipe_id = create(signed_in)

    response = signed_in.client.post(f"/recipes/{recipe_id}/delete", follow_redirects=True)

    assert response.status_code == 200
    assert b"Recipe deleted." in response.data
    assert signed_in.gateway.count(RECIPES) == 0


def test_missing_recipe_is_404(signed_in):
    response = signed_in.client.get("/recipes/does-not-exist")
    assert response.status_code == 404


def test_favorite_toggle_and_filter(signed_in):
    favorite_id = create(signed_in, title="Favorite Stew")
    create(signed_in, title="Plain Rice")

    signed_in.client.post(f"/recipes/{favorite_id}/favorite")

    html = signed_in.client.get("/recipes?favorites=1").get_data(as_text=True)
    assert "Favorite Stew" in html and "Plain Rice" not in html


def test_variation_prefills_form(signed_in):
    recipe_id = create(signed_in)

    response = signed_in.client.get(f"/recipes/new?variant_of={recipe_id}")

    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert 'value="Pancakes (Variation)"' in html
    assert f'name="parent_recipe_id" value="{recipe_id}"' in html


def test_cooking_note(signed_in):
    recipe_id = create(signed_in)

    response = signed_in.client.post(
        f"/recipes/{recipe_id}/notes",
        data={"cooked_on": "2024-02-10", "rating": "5", "multiplier": "2", "notes": "Great with syrup"},
        follow_redirects=True,
    )

    assert b"Cooking note saved." in response.data
    assert b"Great with syrup" in response.data


def test_offline_copy_is_served_when_backend_fails(signed_in):
    recipe_id = create(signed_in)
    signed_in.client.post(f"/recipes/{recipe_id}/offline")

    signed_in.gateway.fail = True
    response = signed_in.client.get(f"/recipes/{recipe_id}")

    assert response.status_code == 200
    assert b"Viewing offline copy" in response.data
    assert b"Whisk the batter" in response.data


def test_offline_list_without_login(signed_in):
    recipe_id = create(signed_in)
    signed_in.client.post(f"/recipes/{recipe_id}/offline")
    signed_in.client.post("/logout")

    listing = signed_in.client.get("/offline")
    assert listing.status_code == 200
    assert b"Pancakes" in listing.data

    detail = signed_in.client.get(f"/offline/{recipe_id}")
    assert detail.status_code == 200
    assert b"Whisk the batter" in detail.data


def test_share_link_lifecycle(signed_in):
    recipe_id = create(signed_in)

    signed_in.client.post(f"/recipes/{recipe_id}/share")
    token = signed_in.gateway.select(RECIPE_SHARES)[0]["token"]
    page = signed_in.client.get(f"/recipes/{recipe_id}/share")
    assert f"/share/{token}".encode() in page.data

    signed_in.client.post("/logout")
    shared = signed_in.client.get(f"/share/{token}")
    assert shared.status_code == 200
    assert b"Whisk the batter" in shared.data

    signed_in.login()
    signed_in.client.post(f"/recipes/{recipe_id}/share/revoke")
    assert signed_in.client.get(f"/share/{token}").status_code == 404


def test_expired_session_redirects_to_reauth(signed_in):
    signed_in.auth.refresh_fails = True
    signed_in.clock.advance(minutes=58)

    response = signed_in.client.get("/recipes")

    assert response.status_code == 302
    assert "/reauth" in response.headers["Location"]
    assert signed_in.controller.state is SessionState.REAUTH_REQUIRED

    page = signed_in.client.get("/reauth?next=/recipes")
    assert b"Session expired" in page.data

    response = signed_in.client.post("/reauth", data={"password": "secret123", "next": "/recipes"})
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/recipes")
    assert signed_in.controller.is_authenticated


def test_declining_reauth_goes_offline(signed_in):
    signed_in.auth.refresh_fails = True
    signed_in.clock.advance(minutes=58)
    signed_in.client.get("/recipes")

    response = signed_in.client.post("/reauth/offline", follow_redirects=True)

    assert b"Offline Recipes" in response.data
    assert signed_in.controller.state is SessionState.UNAUTHENTICATED


def test_biometric_reauth(signed_in):
    signed_in.client.post("/settings/biometric")
    signed_in.auth.refresh_fails = True
    signed_in.clock.advance(minutes=58)
    signed_in.client.get("/recipes")
    signed_in.auth.refresh_fails = False

    response = signed_in.client.post("/reauth/biometric", data={"next": "/recipes"})

    assert response.status_code == 302
    assert signed_in.controller.is_authenticated


def test_cancelled_biometric_reauth(signed_in):
    signed_in.client.post("/settings/biometric")
    signed_in.auth.refresh_fails = True
    signed_in.clock.advance(minutes=58)
    signed_in.client.get("/recipes")
    signed_in.authenticator.cancel = True

    response = signed_in.client.post("/reauth/biometric", follow_redirects=True)

    assert b"Biometric authentication was cancelled" in response.data
    assert signed_in.controller.state is SessionState.REAUTH_REQUIRED


def test_settings_shows_invite_code(signed_in):
    code = signed_in.gateway.select(HOUSEHOLDS)[0]["invite_code"]

    response = signed_in.client.get("/settings")

    assert response.status_code == 200
    assert code.encode() in response.data


def test_community_follow(signed_in):
    register_user(signed_in.gateway, signed_in.auth, email="b@example.com", display_name="Bailey")
    other = [row for row in signed_in.gateway.select(HOUSEHOLDS) if row["name"] == "Bailey's Household"][0]

    search = signed_in.client.get("/community?q=bailey")
    assert b"Bailey&#39;s Household" in search.data

    response = signed_in.client.post(f"/community/{other['id']}/follow", follow_redirects=True)
    assert b"Unfollow" in response.data


def test_declining_reauth_while_signed_in_keeps_session(signed_in):
    response = signed_in.client.post("/reauth/offline")

    assert response.status_code == 302
    assert signed_in.controller.state is SessionState.AUTHENTICATED
    assert signed_in.controller.user_id is not None
    assert signed_in.client.get("/recipes").status_code == 200


def test_favorite_redirect_stays_on_site(signed_in):
    recipe_id = create(signed_in)

    response = signed_in.client.post(f"/recipes/{recipe_id}/favorite", data={"next": "https://evil.example/"})
    assert response.status_code == 302
    assert "evil.example" not in response.headers["Location"]
    assert response.headers["Location"].endswith(f"/recipes/{recipe_id}")

    response = signed_in.client.post(f"/recipes/{recipe_id}/favorite", data={"next": "/recipes?favorites=1"})
    assert response.headers["Location"].endswith("/recipes?favorites=1")


def test_other_households_private_recipes_are_hidden(signed_in):
    other = register_user(signed_in.gateway, signed_in.auth, email="b@example.com", display_name="Bailey")
    secret, public = signed_in.gateway.insert(
        RECIPES,
        [
            {"title": "SecretStew", "household_id": other.household_id, "author_id": other.user_id,
             "visibility": "private", "servings": 2},
            {"title": "OpenStew", "household_id": other.household_id, "author_id": other.user_id,
             "visibility": "public", "servings": 2},
        ],
    )

    html = signed_in.client.get("/recipes").get_data(as_text=True)
    assert "SecretStew" not in html
    assert "OpenStew" in html

    assert signed_in.client.get(f"/recipes/{secret['id']}").status_code == 404
    assert signed_in.client.get(f"/recipes/{public['id']}").status_code == 200

    response = signed_in.client.get(f"/recipes/{secret['id']}/share", follow_redirects=True)
    assert b"Recipe not found." in response.data


def test_offline_save_reports_backend_failure(signed_in):
    recipe_id = create(signed_in)
    signed_in.gateway.fail = True

    response = signed_in.client.post(f"/recipes/{recipe_id}/offline")

    assert response.status_code == 302
    with signed_in.client.session_transaction() as session:
        messages = [message for _, message in session["_flashes"]]
    assert "Failed to save recipe for offline use" in messages
    assert "Recipe not found." not in messages
    assert signed_in.app.config["OFFLINE_CACHE"].exists(recipe_id) is False
