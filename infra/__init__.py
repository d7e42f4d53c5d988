# Infrastructure module - Logging, configuration and the durable key-value table

from .logging import (
    get_logger, configure_logging, OperationContext,
    get_op_id, generate_op_id
)
from .config import (
    ConfigManager, MemoryConfig, VolatileConfig, DurableConfig,
    HybridConfig, SecureConfig, AccessControlConfig, load_memory_config
)
from .kv_table import (
    KeyValueTable, TableRecord, ScanPage,
    SchemaMismatchError, MigrationFailedError, SCHEMA_VERSION
)

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "OperationContext",
    "get_op_id",
    "generate_op_id",
    # Configuration
    "ConfigManager",
    "MemoryConfig",
    "VolatileConfig",
    "DurableConfig",
    "HybridConfig",
    "SecureConfig",
    "AccessControlConfig",
    "load_memory_config",
    # Key-value table
    "KeyValueTable",
    "TableRecord",
    "ScanPage",
    "SchemaMismatchError",
    "MigrationFailedError",
    "SCHEMA_VERSION",
]
