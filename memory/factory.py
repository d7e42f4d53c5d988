"""
Memory Factory
--------------
Builds a store topology from configuration.

    short-term -> VolatileMemoryStore
    long-term  -> DurableMemoryStore            (requires durable.table_name)
    hybrid     -> HybridMemoryStore             (requires durable.table_name)
    secure     -> SecureMemoryStore over hybrid when a table is configured,
                  otherwise over a volatile store (requires secure.encryption_key)
"""

from enum import Enum
from typing import Any, Dict, Optional, Union
import logging

from core.errors import ConfigurationError
from infra.config import MemoryConfig, load_memory_config
from security.access import AccessControlPolicy

from .base import MemoryManager
from .durable import DurableMemoryStore
from .hybrid import HybridMemoryStore
from .secure import SecureMemoryStore
from .volatile import VolatileMemoryStore

logger = logging.getLogger("agentmem.memory.factory")


class MemoryType(str, Enum):
    """Store topologies."""
    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"
    HYBRID = "hybrid"
    SECURE = "secure"


def _require_table(config: MemoryConfig, memory_type: MemoryType) -> None:
    if not config.durable.table_name:
        raise ConfigurationError(
            f"durable.table_name is required for {memory_type.value} memory",
            details={"memory_type": memory_type.value},
        )


def _build_hybrid(config: MemoryConfig, auto_start: bool) -> HybridMemoryStore:
    return HybridMemoryStore(
        durable=DurableMemoryStore.from_config(config.durable),
        volatile=VolatileMemoryStore.from_config(config.volatile),
        sync_interval_ms=config.hybrid.sync_interval_ms,
        auto_start=auto_start,
    )


def create_memory_manager(
    memory_type: Union[MemoryType, str],
    config: Union[MemoryConfig, Dict[str, Any], None] = None,
    policy: Optional[AccessControlPolicy] = None,
    auto_start: bool = True,
) -> MemoryManager:
    """
    Create a memory store.

    Args:
        memory_type: MemoryType or its string value
        config: MemoryConfig, a plain dict of sections, or None for defaults
        policy: Custom access policy for the secure store
        auto_start: Start the hybrid background sync thread

    Raises:
        ConfigurationError: unknown type or missing required settings
    """
    try:
        memory_type = MemoryType(memory_type)
    except ValueError:
        raise ConfigurationError(f"Unsupported memory type: {memory_type}") from None

    if not isinstance(config, MemoryConfig):
        config = MemoryConfig.from_dict(config)

    logger.debug(f"Creating {memory_type.value} memory")

    if memory_type == MemoryType.SHORT_TERM:
        return VolatileMemoryStore.from_config(config.volatile)

    if memory_type == MemoryType.LONG_TERM:
        _require_table(config, memory_type)
        return DurableMemoryStore.from_config(config.durable)

    if memory_type == MemoryType.HYBRID:
        _require_table(config, memory_type)
        return _build_hybrid(config, auto_start)

    if config.secure is None:
        raise ConfigurationError("secure.encryption_key is required for secure memory")

    if config.durable.table_name:
        base: MemoryManager = _build_hybrid(config, auto_start)
    else:
        base = VolatileMemoryStore.from_config(config.volatile)
    return SecureMemoryStore.from_config(base, config.secure, policy=policy)


def create_from_yaml(
    memory_type: Union[MemoryType, str],
    path: Optional[str] = None,
    **kwargs: Any,
) -> MemoryManager:
    """Load configuration (YAML + AGENTMEM_* env) and create a store."""
    return create_memory_manager(memory_type, load_memory_config(path), **kwargs)
