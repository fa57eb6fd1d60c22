"""Smoke tests for critical routes and health checks."""
import pytest
from urllib.parse import urlparse


@pytest.mark.smoke
def test_health_endpoint_returns_ok(client):
    """Verify the health endpoint returns 200 with expected JSON."""
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload is not None
    assert payload.get("status") == "ok"
    assert payload.get("service") == "cluebook"


@pytest.mark.smoke
def test_index_prompts_anonymous_visitors_to_log_in(client):
    """Verify the home page asks anonymous visitors to sign in."""
    response = client.get("/")
    assert response.status_code == 200
    assert "to view mysteries" in response.get_data(as_text=True)


@pytest.mark.smoke
def test_login_page_accessible(client):
    response = client.get("/login")
    assert response.status_code == 200
    assert "log in" in response.get_data(as_text=True).lower()


@pytest.mark.smoke
def test_register_page_accessible(client):
    response = client.get("/register")
    assert response.status_code == 200
    assert "register" in response.get_data(as_text=True).lower()


@pytest.mark.smoke
def test_minigame_open_to_anonymous_visitors(client):
    response = client.get("/minigames/")
    assert response.status_code == 200


@pytest.mark.smoke
@pytest.mark.parametrize("path", ["/mysteries/new", "/mysteries/1", "/mysteries/1/edit", "/clues/manage"])
def test_mystery_pages_require_authentication(client, path):
    """Verify protected pages redirect to the login page."""
    response = client.get(path, follow_redirects=False)
    assert response.status_code == 302
    assert urlparse(response.headers.get("Location", "")).path == "/login"


@pytest.mark.smoke
def test_signed_in_user_skips_login_page(client, detective):
    response = client.get("/login", follow_redirects=False)
    assert response.status_code == 302
    assert urlparse(response.headers["Location"]).path == "/"


@pytest.mark.smoke
def test_no_static_route_is_registered(app):
    assert "static" not in {rule.endpoint for rule in app.url_map.iter_rules()}
