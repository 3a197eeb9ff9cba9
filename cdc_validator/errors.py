"""
Exception taxonomy for the CDC snapshot validator.

Every error carries a human-readable message plus a ``details`` mapping with
whatever context a resumed run needs (table, file key, last committed offset).

- TransientIOError: storage/network/database hiccup; retried with backoff.
- StructuralError: undecodable file, schema mismatch, malformed partition
  naming; fatal for the file and the table it belongs to.
- ResourceExhaustedError / ConnectionFailedError: fatal for the whole run.
- ReplayAbortedError: replay gave up on a table after retries.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CdcValidatorError(Exception):
    """Base exception for all validator errors."""

    error_code: str = "CDC000"
    run_fatal: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)


class ConfigurationError(CdcValidatorError):
    """Raised when a run cannot be configured (missing credentials, bad flags)."""

    error_code = "CFG001"


class TransientIOError(CdcValidatorError):
    """Retryable failure talking to object storage or a database."""

    error_code = "IO001"


class StructuralError(CdcValidatorError):
    """
    Raised when an export file cannot be trusted.

    Examples:
        - truncated or unreadable Parquet file
        - operation/timestamp column missing from a CDC file
        - data column absent from the table descriptor
        - object key that does not follow the partition layout
    """

    error_code = "STR001"

    def __init__(
        self,
        message: str,
        file_key: Optional[str] = None,
        table: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        if table:
            merged["table"] = table
        if file_key:
            merged["file"] = file_key
        super().__init__(message, merged)
        self.file_key = file_key
        self.table = table


class ObjectStoreError(CdcValidatorError):
    """Non-retryable object storage failure (missing bucket, access denied)."""

    error_code = "OBJ001"


class ResourceExhaustedError(CdcValidatorError):
    """Connection pool timeout or retry budget exhausted; aborts the run."""

    error_code = "RES001"
    run_fatal = True


class ConnectionFailedError(CdcValidatorError):
    """A pool could not open connections (authentication, unreachable host)."""

    error_code = "CON001"
    run_fatal = True


class ReplayAbortedError(CdcValidatorError):
    """
    Replay stopped on a table; ``last_offset`` is safe to resume from.

    ``run_fatal`` is inherited from the cause, so pool exhaustion during a
    write still aborts the run but keeps the table's offset.
    """

    error_code = "RPL001"

    def __init__(
        self,
        message: str,
        table: str,
        last_offset: int,
        cause: Optional[str] = None,
        run_fatal: bool = False,
        cause_code: Optional[str] = None,
    ) -> None:
        details: Dict[str, Any] = {"table": table, "last_offset": last_offset}
        if cause:
            details["cause"] = cause
        if cause_code:
            details["cause_code"] = cause_code
        super().__init__(message, details)
        self.table = table
        self.last_offset = last_offset
        self.run_fatal = run_fatal
        self.cause_code = cause_code


__all__ = [
    "CdcValidatorError",
    "ConfigurationError",
    "ConnectionFailedError",
    "ObjectStoreError",
    "ReplayAbortedError",
    "ResourceExhaustedError",
    "StructuralError",
    "TransientIOError",
]
