"""Tests for settings loading, host identification and collector identity."""

import uuid
from pathlib import Path

import pytest

from collector.config import (
    ConfigurationError,
    describe_settings,
    get_or_create_collector_id,
    load_settings,
    read_collector_id,
)
from collector.utils.hostname import get_effective_hostname
from collector.utils.logging import resolve_level


ENV_VARS = (
    "SERVER_URL",
    "API_KEY",
    "COLLECTOR_NAME",
    "LOG_LEVEL",
    "CLAUDE_PROJECTS_DIR",
    "COLLECTOR_ID_PATH",
    "SYNC_MAX_RETRIES",
    "SYNC_RETRY_BASE_DELAY",
    "SYNC_RETRY_MAX_DELAY",
    "TOOL_RESULT_MAX_BYTES",
    "REQUEST_TIMEOUT_SECONDS",
    "WSL_DISTRO_NAME",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Empty collector environment, run from a directory without a .env file."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestSettings:
    """Test environment-driven settings."""

    def test_missing_required_variables(self, clean_env):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings()
        assert str(exc_info.value) == "Missing required environment variables: SERVER_URL, API_KEY"

    def test_defaults(self, clean_env):
        clean_env.setenv("SERVER_URL", "https://archive.example.com/")
        clean_env.setenv("API_KEY", "secret")

        settings = load_settings()

        assert settings.server_url == "https://archive.example.com"
        assert settings.api_key == "secret"
        assert settings.log_level == "info"
        assert settings.collector_name == get_effective_hostname()
        assert settings.retry.max_retries == 3
        assert settings.scan.tool_result_max_bytes == 1024 * 1024
        assert settings.scan.projects_dir == Path.home() / ".claude" / "projects"

    def test_overrides_from_environment(self, clean_env, tmp_path):
        clean_env.setenv("SERVER_URL", "http://localhost:3000")
        clean_env.setenv("API_KEY", "secret")
        clean_env.setenv("COLLECTOR_NAME", "build-box")
        clean_env.setenv("LOG_LEVEL", "WARNING")
        clean_env.setenv("SYNC_MAX_RETRIES", "5")
        clean_env.setenv("CLAUDE_PROJECTS_DIR", str(tmp_path))

        settings = load_settings()

        assert settings.collector_name == "build-box"
        assert settings.log_level == "warn"
        assert settings.retry.max_retries == 5
        assert settings.scan.projects_dir == tmp_path

    def test_dotenv_file(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("SERVER_URL=https://from-dotenv.example\nAPI_KEY=k\n", encoding="utf-8")

        settings = load_settings()

        assert settings.server_url == "https://from-dotenv.example"

    @pytest.mark.parametrize("name,value", [
        ("SERVER_URL", "ftp://archive.example.com"),
        ("SERVER_URL", "not a url"),
        ("API_KEY", "   "),
        ("LOG_LEVEL", "verbose"),
    ])
    def test_invalid_values(self, clean_env, name, value):
        clean_env.setenv("SERVER_URL", "https://archive.example.com")
        clean_env.setenv("API_KEY", "secret")
        clean_env.setenv(name, value)

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings()
        assert str(exc_info.value).startswith("Configuration error:")

    def test_describe_settings_hides_api_key(self, clean_env):
        clean_env.setenv("SERVER_URL", "https://archive.example.com")
        clean_env.setenv("API_KEY", "top-secret")

        described = describe_settings(load_settings())

        assert "top-secret" not in str(described)
        assert described["server_url"] == "https://archive.example.com"

    @pytest.mark.parametrize("value,expected", [
        ("warn", 30),
        ("WARNING", 30),
        ("debug", 10),
        ("error", 40),
        ("bogus", 20),
    ])
    def test_resolve_level(self, value, expected):
        assert resolve_level(value) == expected


class TestHostname:
    """Test effective hostname computation."""

    def test_plain_hostname(self, monkeypatch):
        monkeypatch.setattr("socket.gethostname", lambda: "desktop")
        assert get_effective_hostname({}) == "desktop"

    def test_wsl_suffix(self, monkeypatch):
        monkeypatch.setattr("socket.gethostname", lambda: "desktop")
        assert get_effective_hostname({"WSL_DISTRO_NAME": "Ubuntu"}) == "desktop:Ubuntu"


class TestCollectorIdentity:
    """Test the persisted collector id."""

    def test_created_once_and_reused(self, tmp_path):
        path = tmp_path / "nested" / "collector-id"

        first = get_or_create_collector_id(path)
        second = get_or_create_collector_id(path)

        assert first == second
        assert str(uuid.UUID(first)) == first
        assert path.read_text(encoding="utf-8") == first

    def test_missing_file(self, tmp_path):
        assert read_collector_id(tmp_path / "collector-id") is None

    def test_malformed_file_is_regenerated(self, tmp_path):
        path = tmp_path / "collector-id"
        path.write_text("not-a-uuid", encoding="utf-8")

        assert read_collector_id(path) is None
        new_id = get_or_create_collector_id(path)

        assert new_id != "not-a-uuid"
        assert read_collector_id(path) == new_id

    def test_surrounding_whitespace_is_ignored(self, tmp_path):
        path = tmp_path / "collector-id"
        existing = str(uuid.uuid4())
        path.write_text(f"  {existing}\n", encoding="utf-8")

        assert get_or_create_collector_id(path) == existing
