"""
Unit tests for configuration loading and base URL resolution
"""

import pytest

from mcp_gcal.config import (
    Config, DatabaseConfig, ServerConfig, get_config, resolve_base_url, set_config, split_addr
)


class TestBaseURL:
    """Test public base URL derivation"""

    @pytest.mark.parametrize("addr,explicit,expected", [
        (":8080", None, "http://localhost:8080"),
        ("0.0.0.0:9000", None, "http://localhost:9000"),
        ("127.0.0.1:8080", None, "http://127.0.0.1:8080"),
        ("[::]:8080", None, "http://localhost:8080"),
        ("[::1]:8080", None, "http://[::1]:8080"),
        (":8080", "https://gcal.example.com", "https://gcal.example.com"),
        (":8080", "https://gcal.example.com/", "https://gcal.example.com"),
        (":8080", "https://example.com/broker/", "https://example.com/broker"),
    ])
    def test_resolve(self, addr, explicit, expected):
        assert resolve_base_url(addr, explicit) == expected

    @pytest.mark.parametrize("explicit", [
        "gcal.example.com",
        "ftp://gcal.example.com",
        "https://",
        "https://gcal.example.com/?x=1",
        "https://gcal.example.com/#top",
    ])
    def test_invalid_explicit_url(self, explicit):
        with pytest.raises(ValueError):
            resolve_base_url(":8080", explicit)

    @pytest.mark.parametrize("addr", ["8080", "localhost:", "localhost:http", ":0", ":70000"])
    def test_invalid_addr(self, addr):
        with pytest.raises(ValueError):
            split_addr(addr)

    def test_split_addr(self):
        assert split_addr(":8080") == ("", 8080)
        assert split_addr("[::1]:9000") == ("::1", 9000)


class TestConfig:
    """Test environment loading and validation"""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        config = Config()

        assert config.database.type == "sqlite"
        assert config.database.path == str(tmp_path / "mcp-gcal" / "mcp-gcal.db")
        assert config.upstream.credentials_file == str(tmp_path / "mcp-gcal" / "credentials.json")
        assert config.broker.access_token_ttl == 3600
        assert config.broker.session_ttl == 600
        assert config.broker.token_retention_days == 7
        assert config.base_url == "http://localhost:8080"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MCP_GCAL_DB", "/tmp/broker.db")
        monkeypatch.setenv("MCP_GCAL_ADDR", "127.0.0.1:9090")
        monkeypatch.setenv("MCP_GCAL_BASE_URL", "https://gcal.example.com/")
        monkeypatch.setenv("MCP_GCAL_ACCESS_TOKEN_TTL", "600")
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "cid")
        monkeypatch.setenv("AUDIT_ENABLED", "false")

        config = Config.from_env()
        config.validate()

        assert config.database.path == "/tmp/broker.db"
        assert config.server.addr == "127.0.0.1:9090"
        assert config.base_url == "https://gcal.example.com"
        assert config.broker.access_token_ttl == 600
        assert config.upstream.client_id == "cid"
        assert config.monitoring.audit_enabled is False

    @pytest.mark.parametrize("config", [
        Config(database=DatabaseConfig(type="mysql")),
        Config(database=DatabaseConfig(type="postgresql")),
        Config(database=DatabaseConfig(path=":memory:")),
        Config(server=ServerConfig(addr="nope")),
        Config(server=ServerConfig(base_url="ftp://x")),
    ])
    def test_validate_rejects(self, config):
        with pytest.raises(ValueError):
            config.validate()

    def test_validate_rejects_non_positive_ttl(self):
        config = Config()
        config.broker.session_ttl = 0
        with pytest.raises(ValueError):
            config.validate()

    def test_global_config(self, tmp_path):
        config = Config(database=DatabaseConfig(path=str(tmp_path / "db.sqlite")))
        set_config(config)
        assert get_config() is config
