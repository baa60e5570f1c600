"""
Configuration management for infra-agent.

Settings are layered, highest first: command-line flags, environment
variables (``INFRA_*``), the YAML config file, built-in defaults.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .errors import ConfigError

ENV_PREFIX = "INFRA_"
CONFIG_FILE_ENV = "INFRA_CONFIG_FILE"
CONFIG_FILE_NAME = "infra-agent.yaml"
DEFAULT_CONFIG_DIR = Path("/etc/infra-agent")


def config_search_paths() -> list[Path]:
    """Candidate config files, working directory first."""
    return [Path(".") / CONFIG_FILE_NAME, DEFAULT_CONFIG_DIR / CONFIG_FILE_NAME]


class NodeRole(str, Enum):
    """Role of this node in the fleet."""
    GATEWAY = "gateway"
    SERVER = "server"


def resolve_config_file(explicit: Optional[Path] = None) -> Optional[Path]:
    """Find the config file in use, if any."""
    if explicit:
        return Path(explicit)
    if os.getenv(CONFIG_FILE_ENV):
        return Path(os.environ[CONFIG_FILE_ENV])
    for candidate in config_search_paths():
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: Optional[Path]) -> dict:
    """Read the YAML config file, normalising ``node-id`` style keys."""
    if not path or not Path(path).is_file():
        return {}
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return {str(k).replace("-", "_"): v for k, v in data.items()}


class YamlFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source backed by the agent's YAML config file."""

    def __init__(self, settings_cls: type[BaseSettings], path: Optional[Path]):
        super().__init__(settings_cls)
        self.path = path
        self._data = read_config_file(path)

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        fields = self.settings_cls.model_fields
        return {k: v for k, v in self._data.items() if k in fields and v is not None}


class Settings(BaseSettings):
    """Typed snapshot of the agent configuration."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        extra="ignore",
    )

    # Identity
    node_id: str = ""
    node_type: NodeRole = NodeRole.SERVER

    # Control plane
    control_url: str = "https://control.uvrs.xyz"
    http_timeout: float = 10
    github_token: Optional[str] = None
    ssh_key_url: str = "https://github.com/uverustech/secrets/ssh-keys/uvr-ops/uvr_ops.pub"

    # Reconciliation
    auto_pull: bool = True
    config_dir: Path = Path("/etc/caddy")
    caddyfile: Path = Path("/etc/caddy/Caddyfile")
    tick_interval: float = 10

    # Self-update
    service_name: str = "infra-agent"
    release_url_template: str = (
        "https://github.com/uverustech/infra-agent/releases/download/v{tag}/{asset}"
    )
    download_timeout: float = 120

    # Logging
    verbose: bool = False
    log_file: Optional[Path] = None

    config_file: Optional[Path] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        explicit = getattr(init_settings, "init_kwargs", {}).get("config_file")
        return (
            init_settings,
            env_settings,
            YamlFileSettingsSource(settings_cls, resolve_config_file(explicit)),
        )

    @classmethod
    def load(cls, **overrides) -> "Settings":
        """Build a fresh snapshot. ``None`` overrides are ignored."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        try:
            return cls(**overrides)
        except (ValidationError, yaml.YAMLError, OSError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def public_items(self) -> dict[str, Any]:
        """Settings as displayed to an operator, secrets masked."""
        items = {}
        for key, value in self.model_dump(exclude={"config_file"}).items():
            if isinstance(value, Enum):
                value = value.value
            if "token" in key and value:
                value = mask_secret(str(value))
            items[key] = value
        return items


def setting_sources(overrides: dict, config_file: Optional[Path] = None) -> dict[str, str]:
    """Report where each setting's effective value comes from."""
    file_data = read_config_file(resolve_config_file(config_file))
    sources = {}
    for key in Settings.model_fields:
        if key == "config_file":
            continue
        if overrides.get(key) is not None:
            sources[key] = "Flag"
        elif os.getenv(f"{ENV_PREFIX}{key.upper()}") is not None:
            sources[key] = "Env"
        elif key in file_data:
            sources[key] = "Config File"
        else:
            sources[key] = "Default"
    return sources


def save_setting(key: str, value: str, config_file: Optional[Path] = None) -> Path:
    """Persist one setting to the YAML config file and return its path."""
    field_name = key.replace("-", "_")
    if field_name not in Settings.model_fields or field_name == "config_file":
        raise ConfigError(f"Unknown setting: {key}")

    path = resolve_config_file(config_file)
    if path is None:
        try:
            DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            path = DEFAULT_CONFIG_DIR / CONFIG_FILE_NAME
        except OSError:
            path = Path(CONFIG_FILE_NAME)

    data = {}
    if path.is_file():
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    # Drop any spelling of the key before writing the canonical dashed form
    data = {k: v for k, v in data.items() if str(k).replace("-", "_") != field_name}
    data[field_name.replace("_", "-")] = value

    # Refuse values the loader would reject later
    try:
        Settings.model_validate({field_name: value})
    except ValidationError as e:
        raise ConfigError(f"Invalid value for {key}: {e}") from e

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        yaml.safe_dump(data, f, default_flow_style=False)
    return path


def mask_secret(value: str) -> str:
    """Mask a secret for display: first and last four characters only."""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}....{value[-4:]}"
