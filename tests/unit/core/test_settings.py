import pytest
from pydantic import ValidationError

from tierguard.core.config.settings import Settings, create_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("APP_ENV", "REDIS_URL", "REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_redis_url_is_assembled():
    settings = create_settings(REDIS_HOST="cache", REDIS_PORT=6380, REDIS_DB=2)

    assert settings.REDIS_URL == "redis://cache:6380/2"


def test_redis_url_includes_password_and_tls():
    settings = create_settings(REDIS_PASSWORD="s3cret", REDIS_SSL=True)

    assert settings.REDIS_URL == "rediss://:s3cret@localhost:6379/0"


def test_explicit_redis_url_wins():
    settings = create_settings(REDIS_URL="redis://elsewhere:7000/1")

    assert settings.REDIS_URL == "redis://elsewhere:7000/1"


def test_log_level_is_normalized():
    assert Settings(LOG_LEVEL=" debug ").LOG_LEVEL == "DEBUG"

    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL="verbose")


def test_production_requires_redis_password(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")

    with pytest.raises(ValueError, match="REDIS_PASSWORD"):
        create_settings()


def test_production_with_password(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")

    settings = create_settings(REDIS_PASSWORD="s3cret")

    assert settings.is_production is True


def test_env_file_is_read(tmp_path):
    (tmp_path / ".env").write_text("REDIS_KEY_PREFIX=rl\nLOG_JSON=false\n")

    settings = create_settings()

    assert settings.REDIS_KEY_PREFIX == "rl"
    assert settings.LOG_JSON is False
