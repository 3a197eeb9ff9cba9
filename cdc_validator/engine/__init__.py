"""
Engine package for the CDC snapshot validator.

Re-exports the capability interfaces and the four pipeline stages so callers
can import from ``cdc_validator.engine`` directly:

Partition Locator -> Columnar CDC Reader -> Snapshot Replay Engine ->
Chunked Diff Orchestrator.
"""

from cdc_validator.engine.abstract import (
    ChangeDecoder,
    DecodedRow,
    ObjectInfo,
    ObjectStore,
    TableDiffer,
    TableStore,
)
from cdc_validator.engine.differ import ChunkedDiffOrchestrator, RowSliceDiffer, plan_windows
from cdc_validator.engine.locator import FileListing, PartitionLocator
from cdc_validator.engine.reader import CdcReader, ParquetChangeDecoder
from cdc_validator.engine.replay import ReplayResult, SnapshotReplayEngine

__all__ = [
    # Interfaces
    "ChangeDecoder",
    "DecodedRow",
    "ObjectInfo",
    "ObjectStore",
    "TableDiffer",
    "TableStore",
    # Stages
    "CdcReader",
    "ChunkedDiffOrchestrator",
    "FileListing",
    "ParquetChangeDecoder",
    "PartitionLocator",
    "ReplayResult",
    "RowSliceDiffer",
    "SnapshotReplayEngine",
    "plan_windows",
]
