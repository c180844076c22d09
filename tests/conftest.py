import pytest

from app.security import reset_rate_limits
from core.config import settings_from_mapping

BASE_ENV = {
    "LOGIN_USERNAME": "helper@example.com",
    "LOGIN_PASSWORD": "site-secret",
    "EMAIL_ADDRESS": "bot@example.com",
    "EMAIL_PASSWORD": "mail-secret",
}


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        env = dict(BASE_ENV)
        env["AUTH_STATE_PATH"] = str(tmp_path / "auth.json")
        env.update({k: str(v) for k, v in overrides.items()})
        return settings_from_mapping(env)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture(autouse=True)
def _clear_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()
