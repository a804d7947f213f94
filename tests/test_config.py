import pytest
from pydantic import ValidationError

from edugate.config import Environment, Settings, get_settings, reset_settings_cache

ACCESS = "a" * 40
REFRESH = "r" * 40


def _settings(**overrides):
    values = {"access_token_secret": ACCESS, "refresh_token_secret": REFRESH}
    values.update(overrides)
    return Settings(**values)


def test_defaults():
    settings = _settings()

    assert settings.environment is Environment.DEVELOPMENT
    assert settings.access_token_ttl_minutes == 60
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.activity_log_retention_days == 30
    assert settings.rate_limit_requests == 100
    assert settings.rate_limit_window_seconds == 900
    assert settings.redis_url is None
    assert not settings.is_production


def test_secrets_must_differ():
    with pytest.raises(ValidationError):
        _settings(refresh_token_secret=ACCESS)


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings()
    second = Settings()

    assert len(first.access_token_secret) >= 32
    assert first.access_token_secret != first.refresh_token_secret
    assert second.access_token_secret == first.access_token_secret
    assert (tmp_path / ".jwt_secret").exists()
    assert (tmp_path / ".jwt_refresh_secret").exists()


@pytest.mark.parametrize(
    "raw,expected",
    [("/api", "/api"), ("api/", "/api"), ("/v1/api/", "/v1/api"), ("/", "")],
)
def test_api_prefix_normalization(raw, expected):
    assert _settings(api_prefix=raw).api_prefix == expected


@pytest.mark.parametrize(
    "field",
    ["access_token_ttl_minutes", "rate_limit_requests", "activity_log_retention_days"],
)
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        _settings(**{field: 0})


def test_cors_origins_split():
    settings = _settings(cors_allow_origins="http://a.test, http://b.test,")

    assert settings.cors_origins == ["http://a.test", "http://b.test"]


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "5")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")

    settings = Settings.from_env()

    assert settings.is_production
    assert settings.rate_limit_requests == 5
    assert settings.redis_url is None
    assert settings.access_token_ttl_minutes == 15


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "7")
    reset_settings_cache()

    assert get_settings().rate_limit_requests == 7
