"""Relay and client configuration.

The relay reads ``RELAY_*`` environment variables (a ``.env`` file in the
working directory is loaded first). The client reads a ``key: value``
config file.
"""

import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

from certrelay.common.errors import ConfigError
from certrelay.common.framing import MAX_BODY_BYTES, MAX_HEADER_BYTES, MESSAGE_TIMEOUT


ENV_PREFIX = "RELAY_"


class RelayConfig(BaseModel):
    """Relay server settings."""
    host: str = "0.0.0.0"
    port: int = 8080

    # Relay TLS identity
    cert: Path = Path("certs/relay_cert.pem")
    key: Path = Path("certs/relay_key.pem")

    # Trust anchor for the CA leg and for sendmsg peer certificates
    ca_cert: Path = Path("certs/ca_cert.pem")

    # CA endpoint
    ca_host: str = "localhost"
    ca_port: int = 10086
    ca_server_name: str = "ca.local"

    # Require client certificates signed by this CA (optional)
    client_ca: Optional[Path] = None

    credentials_dir: Path = Path("certs")
    mailbox_dir: Path = Path("mailbox")

    max_workers: int = 16
    io_timeout: float = 30.0
    message_timeout: float = MESSAGE_TIMEOUT
    max_header_bytes: int = MAX_HEADER_BYTES
    max_body_bytes: int = MAX_BODY_BYTES

    @field_validator("port", "ca_port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return value

    @field_validator("max_workers", "max_header_bytes", "max_body_bytes", "message_timeout")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None, **overrides) -> "RelayConfig":
        """
        Build config from ``RELAY_<FIELD>`` environment variables.

        Args:
            env_file: Optional .env path (default: search from cwd)
            overrides: Explicit values that win over the environment

        Raises:
            ConfigError: If a value does not validate
        """
        load_dotenv(dotenv_path=env_file)
        values: Dict[str, object] = {}
        for name in cls.model_fields:
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid relay configuration: {e}") from e


class ClientConfig(BaseModel):
    """Client settings (from the ``config`` file)."""
    server_host: str = "localhost"
    server_port: int = 8080
    server_name: str = "relay.local"
    ca_cert: Path = Path("certs/ca_cert.pem")
    cert: Optional[Path] = None
    key: Optional[Path] = None
    username: Optional[str] = None


def parse_config_lines(text: str) -> Dict[str, str]:
    """Parse ``key: value`` lines; blank lines are skipped."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        key, sep, value = line.partition(": ")
        if not sep:
            raise ConfigError(f"Malformed config line: {line!r}")
        values[key.strip()] = value.strip()
    return values


def load_client_config(path: Path = Path("config")) -> ClientConfig:
    """
    Load client settings from a ``key: value`` file.

    Raises:
        ConfigError: If the file is missing or a value does not validate
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read client config {path}: {e}") from e
    try:
        return ClientConfig(**parse_config_lines(text))
    except ValidationError as e:
        raise ConfigError(f"Invalid client configuration: {e}") from e
