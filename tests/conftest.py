import pytest

from enclave.app import create_app

ACCESS_SECRET = "test-access-secret-0123456789abcdef0123456789"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012345678"


def make_config(tmp_path, **extra):
    cfg = {
        "ENV": "testing",
        "DATABASE_URL": "sqlite:///%s" % (tmp_path / "enclave.db"),
        "JWT_SECRET": ACCESS_SECRET,
        "JWT_REFRESH_SECRET": REFRESH_SECRET,
        "BCRYPT_ROUNDS": 4,
        "RATELIMIT_ENABLED": False,
        "SEED_ON_STARTUP": True,
        "SECURITY_WEBHOOK_URL": None,
        "LOG_LEVEL": "WARNING",
    }
    cfg.update(extra)
    return cfg


@pytest.fixture
def app(tmp_path):
    return create_app(make_config(tmp_path))


@pytest.fixture
def services(app):
    return app.extensions["enclave"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    """Log in over HTTP and return ``(access_token, body)``."""
    def _login(username, password=None, prefix=""):
        resp = client.post(prefix + "/auth/login",
                           json={"username": username, "password": password or username + "123"})
        assert resp.status_code == 200, resp.get_json()
        body = resp.get_json()
        return body["data"]["accessToken"], body
    return _login


def bearer(token):
    return {"Authorization": "Bearer %s" % token}


@pytest.fixture
def user_ids(services):
    from enclave.db import User, session_scope
    with session_scope(services.session_factory) as session:
        return {u.username: u.id for u in session.query(User).all()}
