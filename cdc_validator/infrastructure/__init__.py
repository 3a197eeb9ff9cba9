"""
Infrastructure package for the CDC snapshot validator.

Centralizes I/O concerns: connection pools, PostgreSQL access, object
storage and retry policy. Keep this layer focused on I/O and resource
management, decoupled from replay/diff logic.
"""

from cdc_validator.infrastructure.db_factory import DatabasePool, PoolManager, PoolSettings
from cdc_validator.infrastructure.object_store import LocalObjectStore, S3ObjectStore
from cdc_validator.infrastructure.postgres import PostgresOperator
from cdc_validator.infrastructure.retry import NO_WAIT, RetryPolicy

__all__ = [
    "DatabasePool",
    "LocalObjectStore",
    "NO_WAIT",
    "PoolManager",
    "PoolSettings",
    "PostgresOperator",
    "RetryPolicy",
    "S3ObjectStore",
]
