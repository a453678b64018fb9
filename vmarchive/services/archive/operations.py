"""
Backup, check, restore and clean workflows on top of the archive manager.

The hypervisor side stays outside this package: callers pass disk
descriptors, snapshot identities and a ChangeTracker that enumerates changed
byte ranges between two change-tracking tokens.
"""
import logging
import os
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from vmarchive.core.config import Settings
from vmarchive.models import ArchiveState, BackupMode, DiskInfo, SnapshotInfo, VmInfo
from vmarchive.services.archive.disk_tool import DiskCopyTool
from vmarchive.services.archive.manager import ArchiveManager, ChainIntegrityError
from vmarchive.services.bitmap import ChangedBlockBitmap
from vmarchive.services.profile import MachineIndex

logger = logging.getLogger(__name__)


class ChangeTracker(Protocol):
    """Source of changed-block information for incremental dumps."""

    def changed_ranges(self, disk: DiskInfo, prev_change_id: str) -> Optional[Iterable[Tuple[int, int]]]:
        """
        Byte ranges of ``disk`` changed since ``prev_change_id``.

        Returns:
            (offset, length) pairs, or None when the hypervisor cannot tell
        """
        ...


def _record_changed_blocks(
    manager: ArchiveManager,
    disk_id: int,
    tracker: Optional[ChangeTracker]
) -> bool:
    """
    Save the changed-block bitmap of a disk and note whether it changed.

    Returns:
        False if no bitmap could be produced, which rules out incr mode
    """
    curr = manager.target_generation
    if tracker is None:
        return False

    prev_change_id = manager.prev_change_id(disk_id)
    try:
        ranges = tracker.changed_ranges(curr.disk_info(disk_id), prev_change_id)
    except Exception as e:
        logger.warning(f"Changed block query failed for disk {disk_id}: {e}")
        return False
    if ranges is None:
        logger.info(f"No changed block information for disk {disk_id}")
        return False

    bitmap = ChangedBlockBitmap(curr.capacity(disk_id), manager.settings.BITMAP_BLOCK_SIZE)
    bitmap.apply_ranges(ranges)
    try:
        bitmap.save(curr.bmp_path(disk_id))
    except OSError as e:
        logger.warning(f"Cannot save bitmap of disk {disk_id}: {e}")
        return False

    curr.set_changed(disk_id, not bitmap.is_all_zero())
    return True


def backup_disk(
    manager: ArchiveManager,
    disk_id: int,
    tool: DiskCopyTool,
    tracker: Optional[ChangeTracker] = None,
    requested: BackupMode = BackupMode.UNKNOWN,
    san: bool = False
) -> bool:
    """
    Dump one disk of the target generation.

    An incremental dump of a disk that did not change is not copied at all:
    the previous dump and digest are taken over once the whole generation
    succeeded.

    Returns:
        True if the disk is backed up
    """
    curr = manager.target_generation
    uuid = curr.uuid(disk_id)
    curr.set_changed(disk_id, True)

    can_diff = manager.can_exec_diff_backup(uuid)
    can_incr = can_diff and manager.can_exec_incr_backup(uuid)
    if can_incr and requested in (BackupMode.INCR, BackupMode.UNKNOWN):
        can_incr = _record_changed_blocks(manager, disk_id, tracker)
    else:
        can_incr = False

    mode = ArchiveManager.determine_backup_mode(requested, can_diff, can_incr)
    curr.set_backup_mode(disk_id, mode)
    changed = curr.is_changed(disk_id) is not False
    logger.info(f"Disk {disk_id} ({uuid}): mode {mode.value}, changed {changed}")

    curr.set_dump_begin_timestamp(disk_id)
    if mode == BackupMode.INCR and not changed:
        manager.register_lazy_task_move_prev_dump_and_digest(disk_id)
        ok = True
    else:
        incremental = mode in (BackupMode.DIFF, BackupMode.INCR)
        cmd = tool.dump_command(
            mode,
            manager.vm.moref,
            curr.snapshot_moref,
            curr.remote_path(disk_id),
            dump_out=curr.dump_path(disk_id),
            digest_out=curr.digest_path(disk_id),
            dump_in=manager.prev_dump_path(disk_id) if incremental else None,
            digest_in=manager.prev_digest_path(disk_id) if incremental else None,
            bmp_in=curr.bmp_path(disk_id) if mode == BackupMode.INCR else None,
            rdiff_out=curr.rdiff_path(disk_id) if incremental else None,
            san=san,
        )
        ok = tool.dump(cmd, curr.directory, disk_id)
    curr.set_dump_end_timestamp(disk_id)
    curr.set_disk_result(disk_id, ok)

    if ok and (mode == BackupMode.DIFF or (mode == BackupMode.INCR and changed)):
        manager.register_lazy_task_del_prev_dump(disk_id)
    return ok


def backup_generation(
    manager: ArchiveManager,
    snapshot: SnapshotInfo,
    disks: Sequence[DiskInfo],
    tool: DiskCopyTool,
    tracker: Optional[ChangeTracker] = None,
    requested: BackupMode = BackupMode.UNKNOWN,
    san: Optional[bool] = None,
    metadata_only: bool = False,
    timestamp_ms: Optional[int] = None
) -> bool:
    """
    Take a new generation. The caller must hold an editing session.

    Args:
        manager: Archive of the machine
        snapshot: Snapshot the disks are read from
        disks: Disks of the snapshot
        tool: Disk copy tool
        tracker: Changed-block source, None disables incr mode
        requested: Preferred backup mode
        san: Use SAN transport, defaults to the settings
        metadata_only: Record the generation without dumping disks
        timestamp_ms: Generation time, defaults to now

    Returns:
        True if the generation succeeded
    """
    if san is None:
        san = manager.settings.USE_SAN

    manifest = manager.prepare_new_generation(snapshot, disks, timestamp_ms)
    ok = True
    for disk_id in manifest.disk_ids():
        if manifest.is_independent_disk(disk_id):
            logger.info(f"Skipping independent disk {disk_id}")
            continue
        if metadata_only:
            continue
        ok &= backup_disk(manager, disk_id, tool, tracker, requested, san)
        manager.save()

    return manager.finalize_backup(ok)


def backup_vm(
    settings: Settings,
    vm: VmInfo,
    snapshot: SnapshotInfo,
    disks: Sequence[DiskInfo],
    tool: DiskCopyTool,
    tracker: Optional[ChangeTracker] = None,
    requested: BackupMode = BackupMode.UNKNOWN,
    dry_run: bool = False,
    **kwargs
) -> bool:
    """
    Open a machine's archive and take a generation under its lock.

    A dry run writes nothing, not even a new archive directory.
    """
    if dry_run:
        if ArchiveManager.archive_state(settings, vm.moref) == ArchiveState.NONE:
            logger.info(f"Dry run: would create an archive for {vm.moref} with {len(disks)} disks")
            return True
        with ArchiveManager(settings, vm).locked(0):
            logger.info(f"Dry run: would back up {vm.moref} with {len(disks)} disks")
            return True
    manager = ArchiveManager(settings, vm)
    with manager.editing(settings.LOCK_TIMEOUT):
        return backup_generation(manager, snapshot, disks, tool, tracker, requested, **kwargs)


def check_generation(
    manager: ArchiveManager,
    tool: DiskCopyTool,
    gen_id: Optional[int] = None,
    dry_run: bool = False
) -> bool:
    """
    Verify the archive files of a generation against their digests.

    Every disk is checked even after a failure.

    Returns:
        True if every non-independent disk passed
    """
    timeout = 0 if dry_run else manager.settings.LOCK_TIMEOUT
    with manager.locked(timeout):
        manifest = manager.select_generation(gen_id)
        ok = True
        for disk_id in manifest.disk_ids():
            if manifest.is_independent_disk(disk_id):
                continue
            try:
                paths = manager.dump_path_list_for_restore(disk_id)
                digest = manager.digest_path_for_check(disk_id)
            except ChainIntegrityError as e:
                logger.error(f"Cannot check disk {disk_id}: {e}")
                ok = False
                continue

            unreadable = [p for p in list(paths) + [digest] if not os.access(p, os.R_OK)]
            if unreadable:
                logger.error(f"Unreadable archive files for disk {disk_id}: {unreadable}")
                ok = False
                continue

            cmd = tool.check_command(digest, paths)
            ok &= tool.check(cmd, manifest.directory, manager.vm.moref, manifest.generation_id, disk_id, dry_run)
        return ok


def restore_disk(
    manager: ArchiveManager,
    tool: DiskCopyTool,
    disk: DiskInfo,
    vm_moref: str,
    snapshot_moref: str,
    san: bool = False
) -> bool:
    """
    Write one disk of the target generation back to a provisioned disk.

    Raises:
        ChainIntegrityError: If the disk's archive files cannot be resolved
    """
    manifest = manager.target_generation
    disk_id = manager.target_disk_id(disk)
    if disk_id is None:
        raise ChainIntegrityError(
            f"Generation {manifest.generation_id} has no disk matching device {disk.device_key}"
        )
    paths = manager.dump_path_list_for_restore(disk_id)
    digest = manager.digest_path_for_check(disk_id)
    cmd = tool.restore_command(vm_moref, snapshot_moref, disk.remote_path, digest, paths, san)
    return tool.restore(cmd, manifest.directory, manager.vm.moref, manifest.generation_id, disk_id)


def restore_generation(
    manager: ArchiveManager,
    tool: DiskCopyTool,
    disks: Sequence[DiskInfo],
    vm_moref: str,
    snapshot_moref: str,
    gen_id: Optional[int] = None,
    san: Optional[bool] = None
) -> bool:
    """Restore every given disk from a generation (default: latest succeeded)."""
    if san is None:
        san = manager.settings.USE_SAN
    with manager.locked():
        manager.select_generation(gen_id)
        ok = True
        for disk in disks:
            if disk.is_independent:
                continue
            ok &= restore_disk(manager, tool, disk, vm_moref, snapshot_moref, san)
        return ok


def clean_failed_generations(manager: ArchiveManager, dry_run: bool = False) -> List[int]:
    """
    Delete failed generations other than the latest.

    Returns:
        Ids of the failed generations (only listed in dry-run mode)
    """
    if dry_run:
        with manager.locked(0):
            return manager.failed_generation_ids()
    with manager.editing(manager.settings.CLEAN_LOCK_TIMEOUT):
        return manager.delete_failed_generations()


def destroy_archive(
    manager: ArchiveManager,
    machine_index: Optional[MachineIndex] = None,
    force: bool = False
) -> bool:
    """
    Delete a machine's archive.

    Archives of machines still available in the inventory are kept unless
    ``force`` is given or the archive holds no succeeded generation.

    Returns:
        True if the archive was deleted
    """
    if (not force and machine_index is not None and machine_index.is_available(manager.vm.moref)
            and manager.chain.latest_succeeded_generation_id() is not None):
        logger.warning(f"{manager.vm.moref} is still available; use force to delete its archive")
        return False
    with manager.locked(manager.settings.CLEAN_LOCK_TIMEOUT, allow_dirty=force):
        manager.destroy()
    return True


def refresh_machine_index(settings: Settings, machines: Iterable[Tuple[VmInfo, bool]]) -> MachineIndex:
    """Rewrite the machine index from an inventory snapshot under its lock."""
    index = MachineIndex(settings.machine_index_path)
    settings.ROOT_DIRECTORY.mkdir(parents=True, exist_ok=True)
    with index.locked(settings.INDEX_LOCK_TIMEOUT):
        if index.exists():
            index.reload()
        index.refresh(machines)
        index.write()
    return index
