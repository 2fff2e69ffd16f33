import os
import stat

from sessionguard.config import Settings


def test_env_names_map_to_fields(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "900")
    monkeypatch.setenv("ENFORCE_SESSION_BINDING", "true")
    monkeypatch.setenv("TOTP_ISSUER", "Acme")
    settings = Settings.from_env()
    assert settings.access_token_ttl_seconds == 900
    assert settings.enforce_session_binding is True
    assert settings.totp_issuer == "Acme"


def test_cors_origins_are_split(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    settings = Settings.from_env()
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("SECRETS_DIR", str(tmp_path))
    first = Settings.from_env()
    secret_file = tmp_path / ".jwt_secret"
    assert secret_file.read_text() == first.jwt_secret
    assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600
    assert Settings.from_env().jwt_secret == first.jwt_secret


def test_two_factor_key_falls_back_to_jwt_secret(monkeypatch):
    monkeypatch.delenv("TOTP_ENCRYPTION_KEY", raising=False)
    settings = Settings.from_env()
    assert settings.two_factor_key_material == settings.jwt_secret
    monkeypatch.setenv("TOTP_ENCRYPTION_KEY", "separate-key-material")
    assert Settings.from_env().two_factor_key_material == "separate-key-material"
