"""Mystery pages: create, view, edit, add and remove clues, delete."""
from __future__ import annotations

import pytest

from cluebook.services.associations import NO_VALID_CLUE_MESSAGE
from models import (
    count_mysteries,
    count_mystery_clues,
    create_clue,
    get_mystery,
    insert_mystery,
    list_clues_for_mystery,
    upsert_mystery_clue,
)


@pytest.fixture()
def clues(app_context):
    return {name: create_clue(name) for name in ("Rope", "Candlestick", "Revolver")}


@pytest.fixture()
def own_mystery(detective, clues):
    mystery_id = insert_mystery(title="The Study", description="Locked room", author_id=detective.id)
    upsert_mystery_clue(mystery_id, clues["Rope"], "1")
    return mystery_id


def test_new_mystery_form_lists_every_clue(client, detective, clues):
    response = client.get("/mysteries/new")

    body = response.get_data(as_text=True)
    assert response.status_code == 200
    for name, clue_id in clues.items():
        assert name in body
        assert f"clues[{clue_id}][quantity]" in body


def test_create_mystery_redirects_to_detail(client, detective, clues):
    rope = clues["Rope"]
    response = client.post(
        "/mysteries",
        data={
            "title": "Murder at the Vicarage",
            "description": "The colonel is found in the study",
            f"clues[{rope}][id]": str(rope),
            f"clues[{rope}][checked]": "on",
            f"clues[{rope}][quantity]": "2",
        },
        follow_redirects=True,
    )

    body = response.get_data(as_text=True)
    assert response.status_code == 200
    assert "Mystery added successfully." in body
    assert "Murder at the Vicarage" in body
    assert "Rope: 2" in body
    assert count_mysteries() == 1


@pytest.mark.integration
def test_rejected_create_keeps_typed_fields_and_writes_nothing(client, detective, clues):
    rope = clues["Rope"]
    response = client.post(
        "/mysteries/new",
        data={
            "title": "Half-finished",
            "description": "Still drafting",
            f"clues[{rope}][id]": str(rope),
            f"clues[{rope}][checked]": "on",
            f"clues[{rope}][quantity]": "-1",
        },
    )

    body = response.get_data(as_text=True)
    assert response.status_code == 200
    assert NO_VALID_CLUE_MESSAGE in body
    assert 'value="Half-finished"' in body
    assert "Still drafting" in body
    assert 'value="-1"' in body
    assert count_mysteries() == 0


def test_detail_page_lists_clues(client, own_mystery):
    response = client.get(f"/mysteries/{own_mystery}")

    body = response.get_data(as_text=True)
    assert "The Study" in body
    assert "Rope: 1" in body


def test_detail_for_missing_mystery_redirects_home(client, detective):
    response = client.get("/mysteries/999", follow_redirects=True)

    assert "Mystery not found." in response.get_data(as_text=True)


def test_detail_for_bad_id_redirects_home(client, detective):
    response = client.get("/mysteries/abc", follow_redirects=True)

    assert "Invalid mystery ID." in response.get_data(as_text=True)


def test_edit_page_shows_current_quantities(client, own_mystery, clues):
    response = client.get(f"/mysteries/{own_mystery}/edit")

    body = response.get_data(as_text=True)
    assert response.status_code == 200
    assert 'name="clues[0][quantity]" value="1"' in body
    assert "Candlestick" in body


def test_edit_page_for_missing_mystery_is_404(client, detective):
    assert client.get("/mysteries/999/edit").status_code == 404


def test_edit_page_with_bad_id_is_400(client, detective):
    assert client.get("/mysteries/zero/edit").status_code == 400


def test_save_edit_updates_fields_and_quantities(client, own_mystery, clues):
    rope = clues["Rope"]
    response = client.post(
        f"/mysteries/{own_mystery}/edit",
        data={
            "title": "The Locked Study",
            "description": "Window latched",
            "clues[0][id]": str(rope),
            "clues[0][quantity]": "3",
        },
        follow_redirects=True,
    )

    assert "Mystery updated successfully." in response.get_data(as_text=True)
    assert get_mystery(own_mystery)["title"] == "The Locked Study"
    assert list_clues_for_mystery(own_mystery)[0]["quantity"] == "3"


def test_save_edit_merges_session_additions(client, own_mystery, clues):
    revolver = clues["Revolver"]
    with client.session_transaction() as sess:
        sess["new_clues"] = [{"id": revolver, "quantity": "1"}]

    client.post(
        f"/mysteries/{own_mystery}/edit",
        data={"title": "The Study", "description": ""},
    )

    assert count_mystery_clues(own_mystery) == 2
    with client.session_transaction() as sess:
        assert "new_clues" not in sess


def test_save_edit_for_missing_mystery_is_404(client, detective):
    response = client.post("/mysteries/999/edit", data={"title": "Nobody"})

    assert response.status_code == 404


def test_add_clue_route(client, own_mystery, clues):
    response = client.post(
        f"/mysteries/{own_mystery}/add-clue",
        data={"newClue[id]": str(clues["Candlestick"]), "newClue[quantity]": "2"},
        follow_redirects=True,
    )

    assert "Clue saved to the mystery." in response.get_data(as_text=True)
    assert count_mystery_clues(own_mystery) == 2


def test_add_clue_route_rejects_zero_quantity(client, own_mystery, clues):
    response = client.post(
        f"/mysteries/{own_mystery}/add-clue",
        data={"newClue[id]": str(clues["Candlestick"]), "newClue[quantity]": "0"},
        follow_redirects=True,
    )

    body = response.get_data(as_text=True)
    assert "Quantity must be greater than zero if it is a numeric value." in body
    assert count_mystery_clues(own_mystery) == 1


def test_remove_clues_route(client, own_mystery, clues):
    upsert_mystery_clue(own_mystery, clues["Revolver"], "1")

    page = client.get(f"/mysteries/{own_mystery}/remove-clues")
    assert 'name="cluesToRemove"' in page.get_data(as_text=True)

    response = client.post(
        f"/mysteries/{own_mystery}/remove-clues",
        data={"cluesToRemove": [str(clues["Rope"]), str(clues["Revolver"])]},
        follow_redirects=True,
    )

    assert "Selected clues removed successfully." in response.get_data(as_text=True)
    assert count_mystery_clues(own_mystery) == 0


def test_remove_clue_without_selection(client, own_mystery):
    response = client.post(f"/mysteries/{own_mystery}/remove-clue", data={}, follow_redirects=True)

    assert "No clues were selected to remove." in response.get_data(as_text=True)
    assert count_mystery_clues(own_mystery) == 1


def test_author_deletes_mystery_and_its_clues(client, own_mystery):
    response = client.post(f"/mysteries/{own_mystery}/delete", follow_redirects=True)

    assert "Mystery deleted successfully." in response.get_data(as_text=True)
    assert get_mystery(own_mystery) is None
    assert count_mystery_clues(own_mystery) == 0


def test_other_user_cannot_delete(client, make_user, login, clues):
    author = make_user("author")
    mystery_id = insert_mystery(title="Not yours", description="", author_id=author.id)
    make_user("intruder")
    login("intruder")

    response = client.post(f"/mysteries/{mystery_id}/delete", follow_redirects=True)

    assert "Failed to delete mystery. You might not have permission." in response.get_data(as_text=True)
    assert get_mystery(mystery_id) is not None


def test_admin_can_delete_any_mystery(client, make_user, admin):
    author = make_user("author")
    mystery_id = insert_mystery(title="Confiscated", description="", author_id=author.id)

    client.post(f"/mysteries/{mystery_id}/delete")

    assert get_mystery(mystery_id) is None


def test_mysteries_root_redirects_home(client, detective):
    response = client.get("/mysteries", follow_redirects=False)

    assert response.status_code == 302
