"""Core module - Foundation components with no internal dependencies.

This module provides the basic building blocks used throughout the application:
- Version information
- Custom exceptions
- Configuration dataclasses
- Constants and defaults

The locking subsystem lives in ``pmsheet.core.locks`` and is imported
explicitly by its users.
"""

from pmsheet.core.version import __version__

from pmsheet.core.exceptions import (
    PMSheetError,
    ConfigurationError,
    StoreError,
    PropertyStoreError,
    TableStoreError,
    FileStoreError,
    StructuralError,
    ResourceBusyError,
    ConflictError,
    TransientExternalError,
    IntegrityError,
    InvalidTimestampError,
    OperationAbortedError,
)

from pmsheet.core.config import (
    AppConfig,
    LockConfig,
    LogConfig,
    StorageConfig,
)

__all__ = [
    # Version
    '__version__',
    # Exceptions
    'PMSheetError',
    'ConfigurationError',
    'StoreError',
    'PropertyStoreError',
    'TableStoreError',
    'FileStoreError',
    'StructuralError',
    'ResourceBusyError',
    'ConflictError',
    'TransientExternalError',
    'IntegrityError',
    'InvalidTimestampError',
    'OperationAbortedError',
    # Config dataclasses
    'AppConfig',
    'LockConfig',
    'LogConfig',
    'StorageConfig',
]
