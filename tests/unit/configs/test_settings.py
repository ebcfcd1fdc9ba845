from src.configs.settings import Settings, get_settings


def test_settings_default_values(monkeypatch):
    """Test default values for settings."""
    for name in ("ENV", "LOG_LEVEL", "RETRY_ATTEMPTS", "CURSOR_STORE_PATH", "MAX_CONCURRENT_SOURCES"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.ENV == "development"
    assert settings.LOG_LEVEL == "INFO"
    assert settings.RETRY_ATTEMPTS == 3
    assert settings.MAX_CONCURRENT_SOURCES == 1
    assert settings.CURSOR_STORE_PATH is None


def test_settings_from_environment(monkeypatch):
    """Environment variables override defaults."""
    monkeypatch.setenv("RETRY_DELAY_SECONDS", "2.5")
    monkeypatch.setenv("SOURCE_API_TOKEN", "s3cret")
    settings = Settings(_env_file=None)
    assert settings.RETRY_DELAY_SECONDS == 2.5
    assert settings.SOURCE_API_TOKEN.get_secret_value() == "s3cret"
    assert "s3cret" not in repr(settings)


def test_paths():
    """Test that paths are correctly resolved."""
    settings = Settings(_env_file=None)
    assert settings.SOURCES_CONFIG_PATH.name == "sources.yaml"
    assert settings.SOURCES_CONFIG_PATH.parent.name == "configs"


def test_get_settings_cached():
    assert get_settings() is get_settings()
