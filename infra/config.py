"""
Memory Configuration
--------------------
Construction-time configuration for every store variant.

Loads YAML with environment variable overrides, validated with pydantic.

Rules:
- Secrets never in code: the encryption key comes from YAML or the
  AGENTMEM_SECURE_ENCRYPTION_KEY environment variable
- Environment overrides file config
- Invalid configuration fails at load time with ConfigurationError

Example YAML:
    volatile:
      max_messages: 100
      max_conversations: 10
    durable:
      table_name: agentmem-memory
      endpoint: data/memory.db
    hybrid:
      sync_interval_ms: 60000
    secure:
      encryption_key: ${from env}
      access_control:
        enabled: true
        roles: [admin, user]
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar
import logging
import os
import re

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import ConfigurationError

ENV_PREFIX = "AGENTMEM_"
MIN_ENCRYPTION_KEY_LENGTH = 32

M = TypeVar("M", bound=BaseModel)


class VolatileConfig(BaseModel):
    """Bounds for the in-process store."""
    max_messages: int = Field(default=100, ge=1)
    max_conversations: int = Field(default=10, ge=1)


class DurableConfig(BaseModel):
    """Keyed table location. `endpoint` is the database path (or `:memory:`)."""
    table_name: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None


class HybridConfig(BaseModel):
    """Reconciliation timer."""
    sync_interval_ms: int = Field(default=60_000, ge=1)


class AccessControlConfig(BaseModel):
    """Allowlists for the reference access policy. Empty list = no restriction."""
    enabled: bool = False
    roles: List[str] = Field(default_factory=list)
    users: List[str] = Field(default_factory=list)


class SecureConfig(BaseModel):
    """Encryption, redaction and access control settings."""
    encryption_key: SecretStr
    access_control: AccessControlConfig = Field(default_factory=AccessControlConfig)
    sensitive_patterns: Optional[List[str]] = None
    redaction_enabled: bool = True
    audit_logging: bool = True

    @field_validator("encryption_key")
    @classmethod
    def _key_length(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < MIN_ENCRYPTION_KEY_LENGTH:
            raise ValueError(
                f"Encryption key must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long"
            )
        return value

    @field_validator("sensitive_patterns")
    @classmethod
    def _patterns_compile(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        for pattern in value or []:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern {pattern!r}: {e}") from e
        return value


class MemoryConfig(BaseModel):
    """Aggregated configuration consumed by the memory factory."""
    volatile: VolatileConfig = Field(default_factory=VolatileConfig)
    durable: DurableConfig = Field(default_factory=DurableConfig)
    hybrid: HybridConfig = Field(default_factory=HybridConfig)
    secure: Optional[SecureConfig] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MemoryConfig":
        return validate_section(cls, data or {})

    @classmethod
    def from_yaml(cls, path: str) -> "MemoryConfig":
        return load_memory_config(path)


def validate_section(model: Type[M], data: Any) -> M:
    """Validate data against a config model, raising ConfigurationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(
            f"Invalid {model.__name__}: {errors}",
            details={"section": model.__name__},
        ) from e


class ConfigManager:
    """
    Centralized configuration management.
    Loads configuration from YAML with environment variable overrides.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self._config_path = Path(config_path) if config_path else None
        self._environ = environ if environ is not None else os.environ
        self._config: Dict[str, Any] = {}
        self._logger = logging.getLogger("agentmem.infra.config")

        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file."""
        if self._config_path is None:
            return
        if self._config_path.exists():
            with open(self._config_path, 'r') as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Config file {self._config_path} must contain a mapping")
            self._config = loaded
            self._logger.info(f"Loaded config from {self._config_path}")
        else:
            self._logger.warning(f"Config file not found: {self._config_path}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Supports dot notation: 'section.key'
        Environment variables override file config.
        """
        env_key = ENV_PREFIX + key.upper().replace('.', '_')
        env_value = self._environ.get(env_key)
        if env_value is not None:
            return yaml.safe_load(env_value)

        value: Any = self._config
        for part in key.split('.'):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get an entire configuration section, with env overrides applied."""
        return self._overlay(section, dict(self._config.get(section) or {}), _SECTION_MODELS[section])

    def _overlay(self, prefix: str, data: Dict[str, Any], model: Type[BaseModel]) -> Dict[str, Any]:
        for name in model.model_fields:
            dotted = f"{prefix}.{name}"
            nested = _NESTED_MODELS.get(dotted)
            if nested is not None:
                sub = self._overlay(dotted, dict(data.get(name) or {}), nested)
                if sub:
                    data[name] = sub
                continue
            env_key = ENV_PREFIX + dotted.upper().replace('.', '_')
            env_value = self._environ.get(env_key)
            if env_value is not None:
                # Keep secrets as raw strings, parse everything else as YAML scalars/lists
                data[name] = env_value if name == "encryption_key" else yaml.safe_load(env_value)
        return data

    def build(self) -> MemoryConfig:
        """Build and validate the full memory configuration."""
        data: Dict[str, Any] = {}
        for section in _SECTION_MODELS:
            values = self.get_section(section)
            if values or section != "secure":
                data[section] = values
        return MemoryConfig.from_dict(data)

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()


_SECTION_MODELS: Dict[str, Type[BaseModel]] = {
    "volatile": VolatileConfig,
    "durable": DurableConfig,
    "hybrid": HybridConfig,
    "secure": SecureConfig,
}

_NESTED_MODELS: Dict[str, Type[BaseModel]] = {
    "secure.access_control": AccessControlConfig,
}


def load_memory_config(
    path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
) -> MemoryConfig:
    """Load memory configuration from an optional YAML file plus AGENTMEM_* env vars."""
    return ConfigManager(path, environ=environ).build()
