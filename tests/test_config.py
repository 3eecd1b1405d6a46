import pytest
from pydantic import ValidationError

from tokenwarden.config import RateLimitSetting, Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


def test_defaults():
    settings = Settings()
    assert settings.access_token_ttl_minutes == 30
    assert settings.refresh_token_ttl_days == 7
    assert settings.lockout_threshold == 5
    assert settings.lockout_duration_minutes == 15
    assert settings.rate_limit("login") == RateLimitSetting(10, 300)
    assert settings.rate_limit("register") == RateLimitSetting(3, 900)
    assert settings.rate_limit("forgot_password") == RateLimitSetting(3, 900)
    assert settings.revoke_all_on_refresh_replay is False


def test_environment_overrides(monkeypatch, clean_settings):
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "12")
    monkeypatch.setenv("REVOKE_ALL_ON_REFRESH_REPLAY", "true")
    settings = get_settings()
    assert settings.rate_limit("login").limit == 12
    assert settings.revoke_all_on_refresh_replay is True


def test_settings_are_cached(clean_settings):
    assert get_settings() is get_settings()


@pytest.mark.parametrize("field", ["access_token_ttl_minutes", "lockout_threshold", "login_rate_limit"])
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_unknown_scope():
    with pytest.raises(KeyError):
        Settings().rate_limit("checkout")


def test_blank_optional_strings_become_none():
    settings = Settings(redis_url="  ", jwt_private_key="", smtp_host=" ")
    assert settings.redis_url is None
    assert settings.jwt_private_key is None
    assert settings.smtp_host is None


def test_dotenv_fallback(tmp_path, monkeypatch, clean_settings):
    (tmp_path / ".env").write_text("LOCKOUT_THRESHOLD=9\nAPP_BASE_URL=https://auth.example.com\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("LOCKOUT_THRESHOLD", raising=False)
    monkeypatch.setenv("APP_BASE_URL", "https://env.example.com")

    settings = get_settings()
    assert settings.lockout_threshold == 9
    # the process environment wins over .env
    assert settings.app_base_url == "https://env.example.com"


def test_login_limit_must_exceed_lockout_threshold():
    with pytest.raises(ValidationError, match="login_rate_limit must exceed lockout_threshold"):
        Settings(login_rate_limit=5, lockout_threshold=5)
    assert Settings(login_rate_limit=6, lockout_threshold=5).login_rate_limit == 6
