from collections.abc import Iterator

import pytest

from cluebook import create_app
from cluebook.security import hash_password
from models import create_user, reset_engine

DEFAULT_PASSWORD = "Magnifier123!"


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.sqlite'}")
    monkeypatch.setenv("ADMIN_REGISTRATION_PASSWORD", "inspector-badge")
    monkeypatch.setenv("APP_ENV", "testing")

    reset_engine()

    application = create_app()
    application.config.update(TESTING=True)

    yield application

    reset_engine()


@pytest.fixture()
def client(app) -> Iterator:
    with app.test_client() as client:
        yield client


@pytest.fixture()
def app_context(app):
    with app.app_context():
        yield


@pytest.fixture()
def make_user(app_context):
    def _make_user(username: str, *, password: str = DEFAULT_PASSWORD, is_admin: bool = False):
        return create_user(
            username=username,
            password_hash=hash_password(password),
            is_admin=is_admin,
        )

    return _make_user


@pytest.fixture()
def login(client):
    def _login(username: str, password: str = DEFAULT_PASSWORD):
        response = client.post("/login", json={"username": username, "password": password})
        assert response.status_code == 200, response.get_json()
        return response

    return _login


@pytest.fixture()
def detective(make_user, login):
    """A signed-in regular user."""
    user = make_user("detective")
    login("detective")
    return user


@pytest.fixture()
def admin(make_user, login):
    """A signed-in admin user."""
    user = make_user("chief", is_admin=True)
    login("chief")
    return user
