import pytest
from pydantic import ValidationError

from accesscore.config import Settings, get_settings, reset_settings_cache


def test_identical_audience_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="same-secret-value", jwt_refresh_secret="same-secret-value")


@pytest.mark.parametrize(
    "field,value",
    [
        ("access_token_ttl_minutes", 0),
        ("max_concurrent_sessions", -1),
        ("mfa_max_attempts", 0),
        ("mfa_window_steps", -1),
        ("permission_cache_ttl_seconds", -5),
    ],
)
def test_out_of_range_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="a" * 40, jwt_refresh_secret="b" * 40, **{field: value})


def test_zero_cache_ttl_allowed():
    settings = Settings(jwt_secret="a" * 40, jwt_refresh_secret="b" * 40, permission_cache_ttl_seconds=0)
    assert settings.permission_cache_ttl_seconds == 0


def test_missing_secrets_are_generated_once(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings()
    second = Settings()

    assert first.jwt_secret != first.jwt_refresh_secret
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_token_hash_key_defaults_to_refresh_secret():
    settings = Settings(jwt_secret="a" * 40, jwt_refresh_secret="b" * 40)
    assert settings.token_hash_key == "b" * 40

    keyed = settings.model_copy(update={"refresh_token_hash_key": "digest-key"})
    assert keyed.token_hash_key == "digest-key"


def test_from_env_prefers_environment_over_dotenv(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("MAX_CONCURRENT_SESSIONS=3\nMFA_ISSUER=FromFile\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MFA_ISSUER", "FromEnv")
    monkeypatch.setenv("REVOKE_CHAIN_ON_REUSE", "true")

    settings = Settings.from_env()

    assert settings.max_concurrent_sessions == 3
    assert settings.mfa_issuer == "FromEnv"
    assert settings.revoke_chain_on_reuse is True


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("CROSS_TENANT_ROLE", "Platform Operator")
    reset_settings_cache()
    assert get_settings().cross_tenant_role == "Platform Operator"
    reset_settings_cache()
