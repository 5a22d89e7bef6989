"""
Configuration management for encwheel.

Loads and validates config.yaml from the encwheel home directory
($ENCWHEEL_HOME, default ~/.config/encwheel). The resulting EncwheelConfig is
passed explicitly to every component; nothing reads configuration globally.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from encwheel.addressing import ClusterAddresses, ResourceId
from encwheel.errors import ConfigError
from encwheel.ledger import CircuitSource, OffchainCircuit
from encwheel.retry import RetryPolicy


# Deployed wheel program and the public devnet cluster
DEFAULT_PROGRAM_ID = "BvRkheZC465X6PhhkHrkuUo1o7mHWF1d1tJm3kzts92o"
DEFAULT_CLUSTER_PROGRAM_ID = "Arcj82pX7HxYKLR92qvgZUAd7vGS1k4hQvAFcPATFdEQ"
DEVNET_CLUSTER_OFFSET = 3726127828
DEFAULT_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_CIRCUIT_URL = "https://raw.githubusercontent.com/TOBY0001/arcis-circuits/main/spin.arcis"


def get_encwheel_home() -> Path:
    """Return the encwheel home directory ($ENCWHEEL_HOME or ~/.config/encwheel)."""
    return Path(os.environ.get("ENCWHEEL_HOME", "~/.config/encwheel")).expanduser()


@dataclass
class EncwheelConfig:
    """Complete client configuration."""
    program_id: str = DEFAULT_PROGRAM_ID
    cluster_program_id: str = DEFAULT_CLUSTER_PROGRAM_ID
    cluster_offset: int = DEVNET_CLUSTER_OFFSET
    rpc_url: str = DEFAULT_RPC_URL
    commitment: str = "confirmed"
    circuit_name: str = "spin"
    circuit_url: str = DEFAULT_CIRCUIT_URL
    event_name: str = "SpinEvent"
    upload_chunk_size: int = 800
    request_timeout_seconds: float = 60.0
    key_fetch_attempts: int = 10
    key_fetch_delay_seconds: float = 0.5
    logging: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncwheelConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known - {"key_fetch"})
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {unknown}")

        values = {k: v for k, v in data.items() if k in known}
        key_fetch = data.get("key_fetch") or {}
        if not isinstance(key_fetch, dict):
            raise ConfigError("key_fetch must be a mapping")
        if "attempts" in key_fetch:
            values["key_fetch_attempts"] = key_fetch["attempts"]
        if "delay_seconds" in key_fetch:
            values["key_fetch_delay_seconds"] = key_fetch["delay_seconds"]
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}")

    def validate(self) -> None:
        """Validate values that would otherwise fail deep inside a request."""
        for key in ("program_id", "cluster_program_id"):
            try:
                ResourceId.from_base58(str(getattr(self, key)))
            except ValueError as e:
                raise ConfigError(f"{key} is not a valid address: {e}")
        if not isinstance(self.cluster_offset, int) or not 0 <= self.cluster_offset < 2**32:
            raise ConfigError(f"cluster_offset must be a u32, got {self.cluster_offset!r}")
        if not self.circuit_name:
            raise ConfigError("circuit_name is required")
        if int(self.upload_chunk_size) <= 0:
            raise ConfigError("upload_chunk_size must be positive")
        if float(self.request_timeout_seconds) <= 0:
            raise ConfigError("request_timeout_seconds must be positive")
        if int(self.key_fetch_attempts) < 1:
            raise ConfigError("key_fetch.attempts must be >= 1")
        if float(self.key_fetch_delay_seconds) < 0:
            raise ConfigError("key_fetch.delay_seconds must be >= 0")

    def addresses(self) -> ClusterAddresses:
        return ClusterAddresses(
            program_id=ResourceId.from_base58(self.program_id),
            cluster_program_id=ResourceId.from_base58(self.cluster_program_id),
            cluster_offset=self.cluster_offset,
        )

    def key_fetch_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=int(self.key_fetch_attempts),
            delay_seconds=float(self.key_fetch_delay_seconds),
        )

    def circuit_source(self) -> CircuitSource:
        return OffchainCircuit(url=self.circuit_url)

    def get_log_level(self) -> str:
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        return self.logging.get("format", "pretty")

    def get_log_file_path(self) -> Optional[Path]:
        output = self.logging.get("file")
        return Path(output).expanduser() if output else None


def load_config(config_path: Optional[Path] = None) -> EncwheelConfig:
    """
    Load client configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $ENCWHEEL_HOME/config.yaml

    Returns:
        EncwheelConfig instance

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigError: If the file is not valid configuration
    """
    if config_path is None:
        config_path = get_encwheel_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"encwheel config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if data is None:
        return EncwheelConfig()
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")
    return EncwheelConfig.from_dict(data)
