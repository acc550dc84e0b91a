"""RelayConfig (environment / .env) and ClientConfig (key: value file)."""

import os
from pathlib import Path

import pytest

from certrelay.common.config import ENV_PREFIX, RelayConfig, load_client_config, parse_config_lines
from certrelay.common.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)
    yield
    # load_dotenv writes straight into os.environ
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            del os.environ[name]


class TestRelayConfig:
    def test_defaults(self, tmp_path):
        config = RelayConfig.from_env(tmp_path / "absent.env")
        assert (config.host, config.port) == ("0.0.0.0", 8080)
        assert (config.ca_host, config.ca_port) == ("localhost", 10086)
        assert config.client_ca is None

    def test_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RELAY_PORT", "9443")
        monkeypatch.setenv("RELAY_CA_SERVER_NAME", "ca.example")
        monkeypatch.setenv("RELAY_MAX_WORKERS", "2")
        config = RelayConfig.from_env(tmp_path / "absent.env")
        assert config.port == 9443
        assert config.ca_server_name == "ca.example"
        assert config.max_workers == 2

    def test_env_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("RELAY_MAILBOX_DIR=/var/spool/relay\nRELAY_IO_TIMEOUT=2.5\nRELAY_MESSAGE_TIMEOUT=10\n")
        config = RelayConfig.from_env(env_file)
        assert config.mailbox_dir == Path("/var/spool/relay")
        assert config.io_timeout == 2.5
        assert config.message_timeout == 10.0

    def test_overrides_win(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RELAY_PORT", "9443")
        config = RelayConfig.from_env(tmp_path / "absent.env", port=7000, host=None)
        assert config.port == 7000
        assert config.host == "0.0.0.0"

    @pytest.mark.parametrize("name,value", [
        ("RELAY_PORT", "70000"),
        ("RELAY_PORT", "http"),
        ("RELAY_MAX_WORKERS", "0"),
        ("RELAY_MAX_BODY_BYTES", "-5"),
        ("RELAY_MESSAGE_TIMEOUT", "0"),
    ])
    def test_invalid_values(self, monkeypatch, tmp_path, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigError):
            RelayConfig.from_env(tmp_path / "absent.env")


class TestClientConfig:
    def test_load(self, tmp_path):
        path = tmp_path / "config"
        path.write_text(
            "server_host: relay.example\n"
            "server_port: 9443\n"
            "\n"
            "ca_cert: certs/ca_cert.pem\n"
            "username: alice\n"
        )
        config = load_client_config(path)
        assert (config.server_host, config.server_port) == ("relay.example", 9443)
        assert config.ca_cert == Path("certs/ca_cert.pem")
        assert config.username == "alice"
        assert config.key is None

    def test_value_may_contain_colon(self):
        assert parse_config_lines("server_host: fe80::1\n") == {"server_host": "fe80::1"}

    def test_malformed_line(self):
        with pytest.raises(ConfigError):
            parse_config_lines("server_host=relay\n")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_client_config(tmp_path / "nope")

    def test_bad_port(self, tmp_path):
        path = tmp_path / "config"
        path.write_text("server_port: many\n")
        with pytest.raises(ConfigError):
            load_client_config(path)
