"""
Configuration management and loading.

Handles the application config file: provider endpoint, usage limits and
storage location.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class ProviderConfig:
    """Vision provider endpoint and request shaping."""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    max_tokens: int = 1000
    temperature: float = 0.3
    retry_delay_ms: int = 1000
    rate_limit_delay_ms: int = 100

    def __post_init__(self):
        """Validate provider values."""
        if not self.base_url or not self.base_url.strip():
            raise ValueError("base_url is required and cannot be empty")
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must be >= 0")
        if self.rate_limit_delay_ms < 0:
            raise ValueError("rate_limit_delay_ms must be >= 0")

    @property
    def retry_delay(self) -> float:
        """Linear backoff base in seconds."""
        return self.retry_delay_ms / 1000

    @property
    def rate_limit_delay(self) -> float:
        """Pause between queued calls in seconds."""
        return self.rate_limit_delay_ms / 1000


@dataclass(frozen=True)
class UsageLimits:
    """Client-side ceilings on provider calls."""
    daily_requests: int = 100
    monthly_requests: int = 1000
    max_image_bytes: int = 4 * 1024 * 1024

    def __post_init__(self):
        """Validate limits are positive."""
        if self.daily_requests <= 0:
            raise ValueError("daily_requests must be > 0")
        if self.monthly_requests <= 0:
            raise ValueError("monthly_requests must be > 0")
        if self.max_image_bytes <= 0:
            raise ValueError("max_image_bytes must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Location of persisted state and the namespace of its keys."""
    db_path: str = "crystal_guide.db"
    key_prefix: str = "crystal_guide"

    def __post_init__(self):
        """Validate storage values."""
        if not self.db_path or not self.db_path.strip():
            raise ValueError("db_path is required and cannot be empty")
        if not self.key_prefix or not self.key_prefix.strip():
            raise ValueError("key_prefix is required and cannot be empty")

    @property
    def api_key_key(self) -> str:
        return f"{self.key_prefix}.api_key"

    @property
    def usage_key(self) -> str:
        return f"{self.key_prefix}.api_usage"

    @property
    def settings_key(self) -> str:
        return f"{self.key_prefix}.api_settings"


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    limits: UsageLimits = field(default_factory=UsageLimits)
    storage: StorageConfig = field(default_factory=StorageConfig)


# Accepted keys and their types, per section
_SECTION_SCHEMA = {
    "provider": (ProviderConfig, {
        "base_url": str,
        "model": str,
        "max_tokens": int,
        "temperature": (int, float),
        "retry_delay_ms": int,
        "rate_limit_delay_ms": int,
    }),
    "limits": (UsageLimits, {
        "daily_requests": int,
        "monthly_requests": int,
        "max_image_bytes": int,
    }),
    "storage": (StorageConfig, {
        "db_path": str,
        "key_prefix": str,
    }),
}


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys and
    wrongly typed values are rejected rather than ignored. Every section is
    optional and falls back to its defaults.

    Args:
        path: Path to YAML configuration file, or None for built-in defaults

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_SCHEMA)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config.get(name) or {})
        for name in _SECTION_SCHEMA
    }
    return AppConfig(**sections)


def _parse_section(name: str, data: Any):
    """Parse and validate one configuration section.

    Args:
        name: Section name, used for error messages
        data: Raw section mapping

    Returns:
        The section's config dataclass

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    cls, schema = _SECTION_SCHEMA[name]
    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        expected = schema[key]
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ValueError(f"'{key}' in {name} has invalid type {type(value).__name__}")
        values[key] = float(value) if expected == (int, float) else value

    return cls(**values)
