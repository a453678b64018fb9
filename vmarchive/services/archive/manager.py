"""
Archive manager for one machine.

Walks the generation chain to decide backup eligibility, resolves the files
needed to restore or check a generation, runs deferred space reclamation and
applies retention.

Usage:
    manager = ArchiveManager(settings, vm)
    with manager.editing():
        manifest = manager.prepare_new_generation(snapshot, disks)
        ...
        manager.finalize_backup(all_disks_ok)
"""
import logging
import shutil
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Deque, Iterator, List, Optional, Sequence

from vmarchive.core.config import Settings
from vmarchive.models import (
    ArchiveState,
    BackupMode,
    ControllerLayout,
    DiskInfo,
    DiskLayout,
    SnapshotInfo,
    VmInfo,
)
from vmarchive.services.archive.tasks import LazyTask, LazyTaskKind
from vmarchive.services.configstore import ConfigStoreError, formats
from vmarchive.services.profile import (
    DirtyProfileError,
    GenerationChain,
    GenerationManifest,
    ProfileMismatchError,
)
from vmarchive.services.profile.base import now_ms

logger = logging.getLogger(__name__)

GZIP_SUFFIX = ".gz"


class ArchiveError(Exception):
    """Base class for archive manager errors."""
    pass


class ChainIntegrityError(ArchiveError):
    """Raised when the chain cannot explain the files a generation needs."""
    pass


class GenerationFailedError(ChainIntegrityError):
    """Raised when a requested generation is not marked succeeded."""
    pass


def _with_gzip_suffix(filename: str, gzip: bool) -> str:
    base = filename[:-len(GZIP_SUFFIX)] if filename.endswith(GZIP_SUFFIX) else filename
    return base + GZIP_SUFFIX if gzip else base


class ArchiveManager:
    """Backup archive of a single machine."""

    def __init__(self, settings: Settings, vm: VmInfo):
        """
        Open the machine's chain, creating directory and profile if needed.

        Raises:
            ProfileMismatchError: If the stored chain belongs to another moref
        """
        self.settings = settings
        self.vm = vm
        self._target: Optional[GenerationManifest] = None
        self._lazy_tasks: Deque[LazyTask] = deque()
        self.chain = self._open_chain()

    def _open_chain(self) -> GenerationChain:
        directory = self.settings.machine_directory(self.vm.moref)
        directory.mkdir(parents=True, exist_ok=True)

        path = self.settings.chain_path(self.vm.moref)
        if path.exists():
            chain = GenerationChain.load(path)
            self._check_identity(chain)
        else:
            chain = GenerationChain.create(path, self.vm)
            chain.write()
            logger.info(f"Created generation chain {path}")
        return chain

    def _check_identity(self, chain: GenerationChain) -> None:
        if chain.moref != self.vm.moref:
            raise ProfileMismatchError(
                f"Profile {chain.path} belongs to {chain.moref}, not {self.vm.moref}"
            )

    def _context(self, **extra):
        context = {"moref": self.vm.moref}
        if self._target is not None:
            context["generation_id"] = self._target.generation_id
        context.update(extra)
        return {"context": context}

    @staticmethod
    def archive_state(settings: Settings, moref: str) -> ArchiveState:
        """What exists on disk for a machine, without creating anything."""
        path = settings.chain_path(moref)
        if not path.exists():
            return ArchiveState.NONE
        chain = GenerationChain.load(path)
        if chain.latest_succeeded_generation_id() is None:
            return ArchiveState.EMPTY
        return ArchiveState.HAS_SUCCEEDED

    # -- sessions ---------------------------------------------------------

    @contextmanager
    def locked(self, timeout: Optional[float] = None, allow_dirty: bool = False) -> Iterator["ArchiveManager"]:
        """
        Hold the machine lock and work on a freshly loaded chain.

        Raises:
            LockTimeoutError: If another process holds the lock
            DirtyProfileError: If an earlier edit never completed
        """
        if timeout is None:
            timeout = self.settings.LOCK_TIMEOUT
        with self.chain.locked(timeout):
            self.chain.reload()
            self._check_identity(self.chain)
            if not allow_dirty and not self.chain.is_clean():
                raise DirtyProfileError(
                    f"Profile {self.chain.path} was left mid-edit; "
                    f"inspect the archive and mark it clean to continue"
                )
            yield self

    @contextmanager
    def editing(self, timeout: Optional[float] = None) -> Iterator["ArchiveManager"]:
        """
        Locked session that mutates the chain.

        The chain is marked not clean on disk for the duration of the block
        and marked clean again only when the block completes. An exception
        leaves it not clean so that later sessions refuse to continue.
        """
        with self.locked(timeout):
            self.chain.make_backup()
            self.chain.name = self.vm.name
            self.chain.set_clean(False)
            self.chain.write()

            yield self

            self.chain.set_clean(True)
            self.chain.write()

    def mark_clean(self, timeout: Optional[float] = None) -> None:
        """Clear the not-clean flag left by an interrupted session."""
        with self.locked(timeout, allow_dirty=True):
            if not self.chain.is_clean():
                logger.warning(f"Marking {self.chain.path} clean", extra=self._context())
            self.chain.set_clean(True)
            self.chain.write()

    def save(self) -> None:
        """Persist the chain and the current generation manifest."""
        self.chain.write()
        if self._target is not None:
            self._target.write()

    # -- generations ------------------------------------------------------

    @property
    def target_generation(self) -> Optional[GenerationManifest]:
        return self._target

    def set_target_generation(self, manifest: GenerationManifest) -> None:
        self._target = manifest
        self._lazy_tasks.clear()

    def _require_target(self) -> GenerationManifest:
        if self._target is None:
            raise ArchiveError("No target generation selected")
        return self._target

    def prepare_new_generation(
        self,
        snapshot: SnapshotInfo,
        disks: Sequence[DiskInfo],
        timestamp_ms: Optional[int] = None,
        compress: Optional[bool] = None
    ) -> GenerationManifest:
        """
        Allocate a generation, create its directory and manifest.

        The new manifest becomes the target generation.
        """
        if timestamp_ms is None:
            timestamp_ms = now_ms()
        if compress is None:
            compress = self.settings.COMPRESS_DUMPS

        prev_gen_id = self.chain.latest_succeeded_generation_id()
        gen_id = self.chain.create_new_generation_id(timestamp_ms)
        self.chain.write()

        self.chain.generation_directory(gen_id).mkdir(parents=True, exist_ok=True)
        manifest = GenerationManifest(self.chain.manifest_path(gen_id))
        manifest.initialize(
            gen_id,
            prev_gen_id,
            self.vm,
            snapshot,
            disks,
            self.chain.timestamp_ms(gen_id),
            compress,
        )
        manifest.write()

        self.set_target_generation(manifest)
        logger.info(f"Prepared generation {gen_id} with {len(disks)} disks", extra=self._context())
        return manifest

    def _load_manifest(self, gen_id: int) -> GenerationManifest:
        return GenerationManifest.load(self.chain.manifest_path(gen_id))

    def load_generation(self, gen_id: Optional[int] = None) -> GenerationManifest:
        """
        Load the manifest of a succeeded generation.

        Args:
            gen_id: Generation to load; None or a negative id means the
                latest succeeded generation

        Raises:
            ChainIntegrityError: If there is no succeeded generation
            GenerationFailedError: If the generation is not succeeded
        """
        if gen_id is None or gen_id < 0:
            gen_id = self.chain.latest_succeeded_generation_id()
            if gen_id is None:
                raise ChainIntegrityError(f"{self.vm.moref} has no succeeded generation")
        if not self.chain.is_generation_succeeded(gen_id):
            raise GenerationFailedError(f"Generation {gen_id} of {self.vm.moref} is not succeeded")
        return self._load_manifest(gen_id)

    def select_generation(self, gen_id: Optional[int] = None) -> GenerationManifest:
        """Load a succeeded generation and make it the target."""
        manifest = self.load_generation(gen_id)
        self.set_target_generation(manifest)
        return manifest

    def prev_generation(self, gen_id: Optional[int] = None) -> Optional[GenerationManifest]:
        """Closest older succeeded generation of ``gen_id`` (default: target)."""
        if gen_id is None:
            gen_id = self._require_target().generation_id
        prev_id = self.chain.prev_succeeded_generation_id(gen_id)
        return self._load_manifest(prev_id) if prev_id is not None else None

    def next_generation(self, gen_id: Optional[int] = None) -> Optional[GenerationManifest]:
        """Closest newer succeeded generation of ``gen_id`` (default: target)."""
        if gen_id is None:
            gen_id = self._require_target().generation_id
        next_id = self.chain.next_succeeded_generation_id(gen_id)
        return self._load_manifest(next_id) if next_id is not None else None

    # -- previous disk lookups --------------------------------------------

    def _prev_disk(self, disk_id: int):
        prev = self.prev_generation()
        if prev is None:
            return None, None
        prev_id = prev.disk_id_for_uuid(self._require_target().uuid(disk_id))
        if prev_id is None:
            return None, None
        return prev, prev_id

    def prev_change_id(self, disk_id: int) -> Optional[str]:
        prev, prev_id = self._prev_disk(disk_id)
        return prev.change_id(prev_id) if prev is not None else None

    def prev_dump_path(self, disk_id: int) -> Optional[Path]:
        prev, prev_id = self._prev_disk(disk_id)
        return prev.dump_path(prev_id) if prev is not None else None

    def prev_digest_path(self, disk_id: int) -> Optional[Path]:
        prev, prev_id = self._prev_disk(disk_id)
        return prev.digest_path(prev_id) if prev is not None else None

    # -- eligibility ------------------------------------------------------

    def can_exec_diff_backup(self, uuid: str) -> bool:
        """
        Whether the disk with ``uuid`` can be dumped against the previous
        succeeded generation.
        """
        curr = self._require_target()
        disk_id = curr.disk_id_for_uuid(uuid)
        if disk_id is None:
            return False

        prev, prev_id = self._prev_disk(disk_id)
        if prev is None:
            logger.info(f"No previous generation for disk {uuid}", extra=self._context())
            return False
        if not prev.is_disk_succeeded(prev_id):
            logger.info(f"Previous dump of disk {uuid} failed", extra=self._context())
            return False
        if prev.capacity(prev_id) != curr.capacity(disk_id):
            logger.info(f"Capacity of disk {uuid} changed", extra=self._context())
            return False
        if not prev.dump_exists(prev_id) or not prev.digest_exists(prev_id):
            logger.info(f"Previous dump or digest of disk {uuid} is missing", extra=self._context())
            return False
        return True

    def can_exec_incr_backup(self, uuid: str) -> bool:
        """Diff eligibility plus change-tracking tokens on both sides."""
        if not self.can_exec_diff_backup(uuid):
            return False
        curr = self._require_target()
        disk_id = curr.disk_id_for_uuid(uuid)
        if curr.change_id(disk_id) is None:
            return False
        return self.prev_change_id(disk_id) is not None

    @staticmethod
    def determine_backup_mode(requested: BackupMode, can_diff: bool, can_incr: bool) -> BackupMode:
        """
        Requested mode if it is possible, otherwise the best possible one.
        """
        if requested == BackupMode.INCR and can_incr:
            return BackupMode.INCR
        if requested == BackupMode.DIFF and can_diff:
            return BackupMode.DIFF
        if requested == BackupMode.FULL:
            return BackupMode.FULL
        if can_incr:
            return BackupMode.INCR
        if can_diff:
            return BackupMode.DIFF
        return BackupMode.FULL

    # -- restore and check ------------------------------------------------

    def dump_path_list_for_restore(self, disk_id: int) -> List[Path]:
        """
        Files to replay to rebuild a disk of the target generation.

        Returns:
            ``[dump, rdiff, rdiff, ...]`` in replay order

        Raises:
            ChainIntegrityError: If the chain cannot explain the disk's state
        """
        curr = self._require_target()
        uuid = curr.uuid(disk_id)

        if not curr.is_disk_succeeded(disk_id):
            raise ChainIntegrityError(
                f"Generation {curr.generation_id} disk {disk_id} ({uuid}) is marked failed"
            )
        if curr.dump_exists(disk_id):
            return [curr.dump_path(disk_id)]

        paths: Deque[Path] = deque()
        gen = self.next_generation(curr.generation_id)
        while gen is not None:
            gen_disk_id = gen.disk_id_for_uuid(uuid)
            if gen_disk_id is None:
                raise ChainIntegrityError(f"Disk {uuid} is missing from generation {gen.generation_id}")
            if not gen.is_disk_succeeded(gen_disk_id):
                raise ChainIntegrityError(
                    f"Generation {gen.generation_id} disk {gen_disk_id} ({uuid}) is marked failed"
                )

            explained = False
            if gen.rdiff_exists(gen_disk_id):
                paths.appendleft(gen.rdiff_path(gen_disk_id))
                explained = True
            if gen.dump_exists(gen_disk_id):
                paths.appendleft(gen.dump_path(gen_disk_id))
                logger.debug(f"Restore list for disk {disk_id}: {list(paths)}", extra=self._context())
                return list(paths)
            if gen.is_changed(gen_disk_id) is False:
                explained = True
            if not explained:
                raise ChainIntegrityError(
                    f"Neither dump nor rdiff of disk {uuid} in generation {gen.generation_id}"
                )
            gen = self.next_generation(gen.generation_id)

        raise ChainIntegrityError(
            f"No dump found for generation {curr.generation_id} disk {disk_id} ({uuid})"
        )

    def digest_path_for_check(self, disk_id: int) -> Path:
        """
        Digest of a disk of the target generation, which may have moved to a
        newer generation.

        Raises:
            ChainIntegrityError: If no digest can be found
        """
        curr = self._require_target()
        uuid = curr.uuid(disk_id)

        gen: Optional[GenerationManifest] = curr
        while gen is not None:
            gen_disk_id = gen.disk_id_for_uuid(uuid)
            if gen_disk_id is None:
                raise ChainIntegrityError(f"Disk {uuid} is missing from generation {gen.generation_id}")
            if not gen.is_disk_succeeded(gen_disk_id):
                raise ChainIntegrityError(
                    f"Generation {gen.generation_id} disk {gen_disk_id} ({uuid}) is marked failed"
                )
            if gen.digest_exists(gen_disk_id):
                return gen.digest_path(gen_disk_id)
            gen = self.next_generation(gen.generation_id)

        raise ChainIntegrityError(
            f"No digest found for generation {curr.generation_id} disk {disk_id} ({uuid})"
        )

    # -- deferred tasks ---------------------------------------------------

    def register_lazy_task(self, kind: LazyTaskKind, disk_id: int) -> None:
        logger.info(f"Register {kind.value} for disk {disk_id}", extra=self._context())
        self._lazy_tasks.append(LazyTask(kind, disk_id))

    def register_lazy_task_move_prev_dump_and_digest(self, disk_id: int) -> None:
        self.register_lazy_task(LazyTaskKind.MOVE_PREV_DUMP_AND_DIGEST, disk_id)

    def register_lazy_task_del_prev_dump(self, disk_id: int) -> None:
        self.register_lazy_task(LazyTaskKind.DEL_PREV_DUMP, disk_id)

    @property
    def pending_lazy_tasks(self) -> List[LazyTask]:
        return list(self._lazy_tasks)

    def move_dump_and_digest_from_prev(self, disk_id: int) -> bool:
        """
        Take over the previous generation's dump and digest of a disk.

        The current file names follow the previous ones' compression suffix.

        Returns:
            False if a source file is missing or cannot be moved
        """
        curr = self._require_target()
        prev, prev_id = self._prev_disk(disk_id)
        if prev is None:
            logger.warning(f"No previous dump to move for disk {disk_id}", extra=self._context())
            return False

        from_dump = prev.dump_path(prev_id)
        from_digest = prev.digest_path(prev_id)

        for source in (from_dump, from_digest):
            if not source.is_file():
                logger.warning(f"File {source} not found", extra=self._context())
                return False

        curr.set_dump_filename(
            disk_id, _with_gzip_suffix(curr.dump_filename(disk_id), from_dump.name.endswith(GZIP_SUFFIX))
        )
        curr.set_digest_filename(
            disk_id, _with_gzip_suffix(curr.digest_filename(disk_id), from_digest.name.endswith(GZIP_SUFFIX))
        )
        to_dump = curr.dump_path(disk_id)
        to_digest = curr.digest_path(disk_id)

        logger.info(f"Move dump {from_dump} to {to_dump}, digest {from_digest} to {to_digest}",
                    extra=self._context())
        try:
            from_dump.replace(to_dump)
            from_digest.replace(to_digest)
        except OSError as e:
            logger.error(f"Failed to move previous dump of disk {disk_id}: {e}", extra=self._context())
            return False
        return True

    def delete_prev_dump(self, disk_id: int) -> bool:
        """
        Delete the previous generation's dump of a disk.

        Returns:
            False if there is no previous dump file or it cannot be removed
        """
        curr = self._require_target()
        prev_dump = self.prev_dump_path(disk_id)
        if prev_dump is None or not prev_dump.is_file():
            logger.warning(f"Previous dump of disk {disk_id} is not a regular file", extra=self._context())
            return False

        try:
            prev_dump.unlink()
            deleted = True
        except OSError as e:
            logger.error(f"Failed to delete previous dump {prev_dump}: {e}", extra=self._context())
            deleted = False
        curr.set_deleted_previous_dump(disk_id, deleted)
        logger.info(f"Deleting previous dump {prev_dump} {'succeeded' if deleted else 'failed'}",
                    extra=self._context())
        return deleted

    def exec_lazy_tasks(self) -> bool:
        """Run queued tasks in order; every task runs even after a failure."""
        ok = True
        while self._lazy_tasks:
            task = self._lazy_tasks.popleft()
            if task.kind == LazyTaskKind.MOVE_PREV_DUMP_AND_DIGEST:
                ok &= self.move_dump_and_digest_from_prev(task.disk_id)
            elif task.kind == LazyTaskKind.DEL_PREV_DUMP:
                ok &= self.delete_prev_dump(task.disk_id)
            else:
                ok = False
        return ok

    # -- finalization and retention ---------------------------------------

    def finalize_backup(self, succeeded: bool) -> bool:
        """
        Close the target generation.

        Deferred tasks run only when every disk succeeded; a failing task
        fails the generation. Retention runs only on success.

        Returns:
            Final status of the generation
        """
        curr = self._require_target()
        if succeeded:
            succeeded = self.exec_lazy_tasks()
        else:
            self._lazy_tasks.clear()

        curr.set_succeeded(succeeded)
        self.chain.set_generation_info(curr)
        self.save()

        if succeeded:
            self.delete_old_generations()
            self.chain.write()

        logger.info(
            f"Generation {curr.generation_id} {'succeeded' if succeeded else 'failed'}",
            extra=self._context()
        )
        return succeeded

    def delete_generation(self, gen_id: int) -> bool:
        """Remove a generation's directory and its chain entry."""
        directory = self.chain.generation_directory(gen_id)
        deleted = True
        if directory.exists():
            try:
                shutil.rmtree(directory)
            except OSError as e:
                logger.error(f"Failed to delete {directory}: {e}", extra=self._context())
                deleted = False
        self.chain.delete_generation_info(gen_id)
        logger.info(f"Delete generation {gen_id} directory {'succeeded' if deleted else 'failed'}",
                    extra=self._context(generation_id=gen_id))
        return deleted

    def delete_old_generations(self) -> List[int]:
        old = self.chain.old_generation_ids(self.settings.KEEP_GENERATIONS)
        if not old:
            logger.info("No generation was deleted", extra=self._context())
            return []
        logger.info(f"Old generations to be deleted: {sorted(old)}", extra=self._context())
        for gen_id in old:
            self.delete_generation(gen_id)
        return old

    def failed_generation_ids(self) -> List[int]:
        return self.chain.failed_generation_ids()

    def delete_failed_generations(self) -> List[int]:
        failed = self.chain.failed_generation_ids()
        for gen_id in failed:
            self.delete_generation(gen_id)
        return failed

    def destroy(self) -> None:
        """Delete the machine's whole archive directory."""
        directory = self.settings.machine_directory(self.vm.moref)
        logger.warning(f"Deleting archive {directory}", extra=self._context())
        shutil.rmtree(directory)
        self._target = None
        self._lazy_tasks.clear()

    # -- restore support --------------------------------------------------

    def controller_layout(self) -> List[ControllerLayout]:
        """
        Controllers and disks to provision before restoring the target
        generation, ordered by controller type, key and bus. Independent
        disks are skipped.
        """
        curr = self._require_target()
        controllers = {}
        for disk_id in curr.disk_ids():
            if curr.is_independent_disk(disk_id):
                continue
            ckey = curr.controller_key(disk_id)
            adapter_type = curr.adapter_type(disk_id)
            bus_number = curr.bus_number(ckey)
            key = (adapter_type.value, ckey, bus_number)
            if key not in controllers:
                controllers[key] = ControllerLayout(
                    adapter_type=adapter_type,
                    controller_key=ckey,
                    bus_number=bus_number,
                )
            controllers[key].disks.append(DiskLayout(
                device_key=curr.device_key(disk_id),
                unit_number=curr.unit_number(disk_id),
                capacity=curr.capacity(disk_id),
            ))
        return [controllers[key] for key in sorted(controllers)]

    def target_disk_id(self, disk: DiskInfo) -> Optional[int]:
        """Disk of the target generation a provisioned disk stands for."""
        curr = self._require_target()
        for disk_id in curr.disk_ids():
            ckey = curr.controller_key(disk_id)
            if (disk.device_key == curr.device_key(disk_id)
                    and disk.capacity == curr.capacity(disk_id)
                    and disk.unit_number == curr.unit_number(disk_id)
                    and disk.controller_key == ckey
                    and disk.bus_number == curr.bus_number(ckey)
                    and disk.adapter_type == curr.adapter_type(disk_id)):
                return disk_id
        return None

    # -- status -----------------------------------------------------------

    def generation_status_string(self, gen_id: int) -> str:
        text = f'[Gen {gen_id} "{self.chain.timestamp_str(gen_id)}"]'
        if not self.chain.is_generation_succeeded(gen_id):
            return text + " ----------_FAILED_----------"
        try:
            manifest = self.load_generation(gen_id)
        except (ArchiveError, ConfigStoreError, OSError) as e:
            logger.warning(f"Failed to read generation {gen_id}: {e}", extra=self._context())
            return f"{text} ##########_ERROR_##########"

        for disk_id in manifest.disk_ids():
            ckey = manifest.controller_key(disk_id)
            text += (
                f"[{disk_id} {manifest.adapter_type(disk_id).type_string}"
                f"{manifest.bus_number(ckey)}:{manifest.unit_number(disk_id)} "
                f"{formats.int_to_string(manifest.capacity(disk_id))}B "
                f"{manifest.backup_mode(disk_id).value} "
                f"{manifest.dump_elapsed_ms(disk_id) // 1000}s]"
            )
        return text

    def status_string(self, is_available: bool = True, detail: bool = False) -> str:
        text = self.chain.status_string(is_available)
        if detail:
            for gen_id in self.chain.generation_ids():
                text += "\n\t" + self.generation_status_string(gen_id)
        return text
