"""
Archive management: generation lifecycle, restore resolution and retention.
"""
from vmarchive.core.config import Settings
from vmarchive.models import VmInfo
from vmarchive.services.archive.disk_tool import DiskCopyTool
from vmarchive.services.archive.manager import (
    ArchiveError,
    ArchiveManager,
    ChainIntegrityError,
    GenerationFailedError,
)
from vmarchive.services.archive.tasks import LazyTask, LazyTaskKind


def get_archive_manager(settings: Settings, moref: str, name: str) -> ArchiveManager:
    """
    Factory function to open the archive of a machine.

    Args:
        settings: Application settings
        moref: Machine identifier
        name: Current display name of the machine

    Returns:
        ArchiveManager for the machine
    """
    return ArchiveManager(settings, VmInfo(moref=moref, name=name))


__all__ = [
    "ArchiveError",
    "ArchiveManager",
    "ChainIntegrityError",
    "DiskCopyTool",
    "GenerationFailedError",
    "LazyTask",
    "LazyTaskKind",
    "get_archive_manager",
]
