"""
Configuration management and loading.

Handles network selection, quota defaults and local ledger settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml


MIRROR_NODE_BASE_URLS = {
    "mainnet": "https://mainnet-public.mirrornode.hedera.com",
    "testnet": "https://testnet.mirrornode.hedera.com",
    "previewnet": "https://previewnet.mirrornode.hedera.com",
}

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with expertise in distributed ledgers "
    "and the projects built on them."
)


@dataclass(frozen=True)
class NetworkConfig:
    """Ledger network and mirror service location."""
    name: str = "testnet"
    mirror_url: Optional[str] = None

    def __post_init__(self):
        """Validate the network name."""
        if self.name not in MIRROR_NODE_BASE_URLS:
            raise ValueError(
                f"network name must be one of: {sorted(MIRROR_NODE_BASE_URLS)}"
            )

    @property
    def resolved_mirror_url(self) -> str:
        """Mirror base URL, honouring an explicit override."""
        return self.mirror_url or MIRROR_NODE_BASE_URLS[self.name]


@dataclass(frozen=True)
class QuotaConfig:
    """Chat quota defaults."""
    default_allowance: int = 3
    bootstrap_allowance: int = 10
    serialize_appends: bool = True

    def __post_init__(self):
        """Validate allowances are non-negative."""
        if self.default_allowance < 0:
            raise ValueError("default_allowance must be >= 0")
        if self.bootstrap_allowance < 0:
            raise ValueError("bootstrap_allowance must be >= 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Local ledger and feed paging settings."""
    db_path: str = "topic_quota_guard.db"
    chunk_size: int = 1024
    page_limit: int = 100
    subscription_period_days: int = 30

    def __post_init__(self):
        """Validate sizes are positive."""
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if self.page_limit <= 0:
            raise ValueError("page_limit must be > 0")
        if self.subscription_period_days <= 0:
            raise ValueError("subscription_period_days must be > 0")


@dataclass(frozen=True)
class AssistantConfig:
    """Chat model settings."""
    model: str = "gpt-3.5-turbo"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    def __post_init__(self):
        if not self.model or not self.model.strip():
            raise ValueError("assistant model cannot be empty")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)

    @classmethod
    def default(cls) -> "AppConfig":
        """Configuration used when no file is given."""
        return cls()


# Allowed keys per section, with the type each value must have
_SECTION_SCHEMAS: Dict[str, Dict[str, tuple]] = {
    "network": {"name": (str,), "mirror_url": (str,)},
    "quota": {
        "default_allowance": (int,),
        "bootstrap_allowance": (int,),
        "serialize_appends": (bool,),
    },
    "ledger": {
        "db_path": (str,),
        "chunk_size": (int,),
        "page_limit": (int,),
        "subscription_period_days": (int,),
    },
    "assistant": {"model": (str,), "system_prompt": (str,)},
}

_SECTION_TYPES = {
    "network": NetworkConfig,
    "quota": QuotaConfig,
    "ledger": LedgerConfig,
    "assistant": AssistantConfig,
}


def load_app_config(path: str) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Every section is optional; missing keys fall back to their defaults.
    Unknown keys are rejected so that typos never silently change quota
    behaviour.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_SCHEMAS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, section_type in _SECTION_TYPES.items():
        data = raw_config.get(name, {}) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        sections[name] = section_type(**_parse_section(data, name))

    return AppConfig(**sections)


def _parse_section(data: Dict, section: str) -> Dict:
    """Check keys and value types of one configuration section.

    Args:
        data: Section data
        section: Section name for error messages

    Returns:
        Keyword arguments for the section dataclass

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    schema = _SECTION_SCHEMAS[section]
    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {section}: {unknown_keys}")

    for key, value in data.items():
        expected = schema[key]
        # bool is an int subclass; only accept it where a bool is expected
        if isinstance(value, bool) and bool not in expected:
            raise ValueError(f"'{section}.{key}' must be {expected[0].__name__}")
        if not isinstance(value, expected):
            raise ValueError(f"'{section}.{key}' must be {expected[0].__name__}")

    return dict(data)
