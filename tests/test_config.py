import pytest
from pydantic import ValidationError

from hubauth.config import Settings, get_settings, reset_settings_cache

SECRET = "x" * 32


def test_jwt_secret_required():
    with pytest.raises(ValidationError):
        Settings()


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError) as exc_info:
        Settings(jwt_secret="too-short")
    assert "at least 32 characters" in str(exc_info.value)


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.mfa_backup_code_count == 8
    assert settings.mfa_challenge_ttl_seconds == 300
    assert settings.audit_bulk_delete_threshold == 10
    assert settings.audit_high_value_threshold == 1000
    assert settings.redis_url is None


@pytest.mark.parametrize(
    "field", ["access_token_ttl_minutes", "mfa_backup_code_count", "mfa_challenge_ttl_seconds"]
)
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: 0})


def test_from_env_reads_bound_variables(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://hub.example.com, https://admin.example.com")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    settings = Settings.from_env()
    assert settings.jwt_secret == SECRET
    assert settings.access_token_ttl_minutes == 5
    assert settings.allowed_origins == ["https://hub.example.com", "https://admin.example.com"]
    assert settings.use_memory_store is True


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("MFA_ISSUER", "Hub Staging")
    reset_settings_cache()
    assert get_settings().mfa_issuer == "Hub Staging"
    monkeypatch.delenv("MFA_ISSUER")
    reset_settings_cache()
