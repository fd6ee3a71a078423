"""
Shared pytest fixtures.

Every test gets its own app backed by an in-memory SQLite database and a
temporary session directory. CSRF, rate limits and HTTPS redirects are
switched off, and password hashing uses a low work factor so the suite
stays fast.
"""
import pytest

from app import create_app
from models import db

MASTER_SECRET = "test-master-secret"
PASSWORD = "correct horse"


@pytest.fixture
def test_config(tmp_path):
    return {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "VAULT_MASTER_SECRET": MASTER_SECRET,
        "PASSWORD_HASH_METHOD": "pbkdf2:sha256:1000",
        "SESSION_FILE_DIR": str(tmp_path / "flask_session"),
        "SESSION_COOKIE_SECURE": False,
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "FORCE_HTTPS": False,
    }


@pytest.fixture
def app(test_config):
    return create_app(test_config)


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield
        db.session.remove()


@pytest.fixture
def services(app):
    return app.extensions["vault"]


@pytest.fixture
def auth(services, ctx):
    return services.auth


@pytest.fixture
def store(services, ctx):
    return services.store


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def alice(auth):
    """Registered user; returns (user_id, token)."""
    result = auth.register("alice", "alice@mail.com", PASSWORD, now=1000.0)
    assert result.success, result.message
    return result.payload["user"]["id"], result.token


@pytest.fixture
def bob(auth):
    result = auth.register("bob", "bob@mail.com", PASSWORD, now=1000.0)
    assert result.success, result.message
    return result.payload["user"]["id"], result.token
