"""
CDC Snapshot Validator - replay partitioned CDC exports and verify them.

This package reconstructs the point-in-time state of PostgreSQL tables from
a DMS-style CDC export (full-load plus dated change files in Parquet) and
compares the result with a second database, including:

- Partition selection by date range, explicit keys or full load only
- Deterministic last-write-wins replay with atomic, resumable batches
- Chunked, concurrent and resumable row-level comparison
- Structured reports that separate discrepancies from unverified windows
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from cdc_validator.config import JobConfiguration, LoadMode, Settings, get_settings
from cdc_validator.domain.models import Discrepancy, UnverifiedWindow, ValidationReport
from cdc_validator.orchestrator import JobResult, TableFailure, run_job
from cdc_validator.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    # Configuration
    "JobConfiguration",
    "LoadMode",
    "Settings",
    "get_settings",
    # Orchestration
    "JobResult",
    "TableFailure",
    "run_job",
    # Reports
    "Discrepancy",
    "UnverifiedWindow",
    "ValidationReport",
    # Logging
    "configure_logging",
    "get_logger",
]
