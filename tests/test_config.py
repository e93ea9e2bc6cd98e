import pytest

from config import Config, parse_human_size
from errors import ConfigError, StartupError


@pytest.mark.parametrize("value, expected", [
    ("2097152", 2097152),
    ("512B", 512),
    ("2M", 2 * 1024 * 1024),
    ("2mb", 2 * 1024 * 1024),
    ("512k", 512 * 1024),
    ("1G", 1024 ** 3),
    ("0", 0),
])
def test_parse_human_size(value, expected):
    assert parse_human_size(value) == expected


@pytest.mark.parametrize("value", ["", "B", "12x", "abc"])
def test_parse_human_size_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_human_size(value)


def test_defaults(monkeypatch):
    for key in ("MIN_INTERVAL", "MAX_INTERVAL", "MAX_FEED_SIZE", "ERROR_THRESHOLD", "JANITOR_INTERVAL", "JANITOR_GRACE"):
        monkeypatch.delenv(key, raising=False)
    config = Config(load_environment=False)
    assert config.MIN_INTERVAL == 300
    assert config.MAX_INTERVAL == 43200
    assert config.MAX_FEED_SIZE == 2 * 1024 * 1024
    assert config.ERROR_THRESHOLD == 24
    assert config.JANITOR_GRACE == config.JANITOR_INTERVAL


def test_environment_values_are_read(monkeypatch):
    monkeypatch.setenv("MIN_INTERVAL", "120")
    monkeypatch.setenv("MAX_FEED_SIZE", "512k")
    monkeypatch.setenv("INSECURE", "true")
    config = Config(load_environment=False)
    assert config.MIN_INTERVAL == 120
    assert config.MAX_FEED_SIZE == 512 * 1024
    assert config.INSECURE is True


def test_invalid_integer_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("FETCH_CONCURRENCY", "lots")
    assert Config(load_environment=False).FETCH_CONCURRENCY == 10


def test_inverted_interval_bounds_are_rejected():
    with pytest.raises(ConfigError):
        Config(load_environment=False, MIN_INTERVAL=600, MAX_INTERVAL=60)


def test_config_error_is_a_startup_error():
    with pytest.raises(StartupError):
        Config(load_environment=False, MIN_INTERVAL=0)


def test_unknown_override_is_rejected():
    with pytest.raises(ConfigError):
        Config(load_environment=False, NOT_A_SETTING=1)


def test_api_uri_gets_trailing_slash(monkeypatch):
    monkeypatch.setenv("TELEGRAM_API_URI", "https://telegram.example/api")
    assert Config(load_environment=False).TELEGRAM_API_URI == "https://telegram.example/api/"


def test_secrets_file_exports_values(monkeypatch, tmp_path):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  TELEGRAM_BOT_TOKEN: '42:secret'\n")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    config = Config()
    assert config.TELEGRAM_BOT_TOKEN == "42:secret"
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)


@pytest.mark.parametrize("key, value", [
    ("MIN_INTERVAL", "0"),
    ("MIN_INTERVAL", "soon"),
    ("MAX_INTERVAL", "-5"),
])
def test_invalid_interval_bounds_stop_startup(monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(ConfigError):
        Config(load_environment=False)
