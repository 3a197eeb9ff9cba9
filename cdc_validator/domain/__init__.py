"""
Domain package for the CDC snapshot validator.

Exports the records, descriptors, windows and reports shared by the engine,
infrastructure and orchestration layers. Keep this package free of I/O.
"""

from cdc_validator.domain.models import (
    ChangeRecord,
    ColumnDifference,
    ColumnSpec,
    DiffWindow,
    Discrepancy,
    DiscrepancyKind,
    Operation,
    PartitionFile,
    ReplayCursor,
    TableDescriptor,
    UnverifiedWindow,
    ValidationReport,
)

__all__ = [
    "ChangeRecord",
    "ColumnDifference",
    "ColumnSpec",
    "DiffWindow",
    "Discrepancy",
    "DiscrepancyKind",
    "Operation",
    "PartitionFile",
    "ReplayCursor",
    "TableDescriptor",
    "UnverifiedWindow",
    "ValidationReport",
]
