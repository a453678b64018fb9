"""
Domain models package.
"""
from vmarchive.models.archive import (
    CHANGE_ID_UNAVAILABLE,
    AdapterType,
    ArchiveState,
    BackupMode,
    ControllerLayout,
    DiskInfo,
    DiskLayout,
    GenerationStatus,
    SnapshotInfo,
    VmInfo,
)

__all__ = [
    "CHANGE_ID_UNAVAILABLE",
    # Enums
    "AdapterType",
    "ArchiveState",
    "BackupMode",
    "GenerationStatus",
    # Descriptors
    "ControllerLayout",
    "DiskInfo",
    "DiskLayout",
    "SnapshotInfo",
    "VmInfo",
]
