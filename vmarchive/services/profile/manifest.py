"""
Per-generation disk manifest (``<root>/<moref>/<genId>/vmbkp_generation.profile``).

One ``[generation]`` group describes the generation; one ``[disk "<i>"]``
group per disk describes its dump. Disk indices are local to a generation,
so disks are matched across generations through the ``[index "disk"]``
UUID index.
"""
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from vmarchive.models import (
    CHANGE_ID_UNAVAILABLE,
    AdapterType,
    BackupMode,
    DiskInfo,
    GenerationStatus,
    SnapshotInfo,
    VmInfo,
)
from vmarchive.models.archive import INDEPENDENT_DISK_MODES
from vmarchive.services.configstore import Group, formats
from vmarchive.services.profile.base import (
    GenerationStateError,
    ProfileFile,
    format_timestamp_ms,
    now_ms,
)

logger = logging.getLogger(__name__)

GENERATION = Group("generation")
DISK_INDEX = Group("index", "disk")
CONTROLLER_INDEX = Group("index", "controller")

DISK_SUCCEEDED = "succeeded"
DISK_FAILED = "failed"
GZIP_SUFFIX = ".gz"


class GenerationManifest(ProfileFile):
    """Description of one backup generation and its disk dumps."""

    def initialize(
        self,
        gen_id: int,
        prev_gen_id: Optional[int],
        vm: VmInfo,
        snapshot: SnapshotInfo,
        disks: Iterable[DiskInfo],
        timestamp_ms: Optional[int] = None,
        compress: bool = False,
    ) -> None:
        """
        Fill a fresh manifest.

        Args:
            gen_id: Id of this generation
            prev_gen_id: Latest succeeded generation before it, if any
            vm: Machine being backed up
            snapshot: Snapshot the disks are read from
            disks: Disk descriptors, numbered in order from 0
            timestamp_ms: Generation time, defaults to now
            compress: Use gzip names for dump, digest and rdiff files
        """
        if timestamp_ms is None:
            timestamp_ms = now_ms()
        disks = list(disks)

        self.store.put(GENERATION, "generation_id", gen_id)
        self.store.put(GENERATION, "prev_generation_id", prev_gen_id if prev_gen_id is not None else -1)
        self.store.put(GENERATION, "moref", vm.moref)
        self.store.put(GENERATION, "name", vm.name)
        self.store.put(GENERATION, "status", GenerationStatus.INITIALIZED.value)
        self.store.put(GENERATION, "snapshot_moref", snapshot.moref)
        self.store.put(GENERATION, "snapshot_name", snapshot.name)
        self.store.put(GENERATION, "ovf_filename", f"{snapshot.moref}.ovf")
        self.store.put(GENERATION, "timestamp", format_timestamp_ms(timestamp_ms))
        self.store.put(GENERATION, "timestamp_ms", timestamp_ms)
        self.store.put(GENERATION, "num_disks", len(disks))
        self.store.put(GENERATION, "num_vmdkdump_succeeded", 0)
        self.store.put(GENERATION, "num_vmdkdump_failed", 0)

        for disk_id, disk in enumerate(disks):
            self._initialize_disk(disk_id, disk, compress)

    def _initialize_disk(self, disk_id: int, disk: DiskInfo, compress: bool) -> None:
        ext = GZIP_SUFFIX if compress else ""
        group = self._disk_group(disk_id)
        put = self.store.put

        put(group, "remote_path", disk.remote_path)
        put(group, "uuid", disk.uuid)
        put(group, "capacity", formats.int_to_string(disk.capacity))
        put(group, "change_id", disk.change_id if disk.change_id else CHANGE_ID_UNAVAILABLE)
        put(group, "adapter_type", disk.adapter_type.value)
        put(group, "controller_key", disk.controller_key)
        put(group, "device_key", disk.device_key)
        put(group, "bus_number", disk.bus_number)
        put(group, "unit_number", disk.unit_number)
        put(group, "backup_mode", BackupMode.UNKNOWN.value)
        put(group, "disk_mode", disk.disk_mode)
        put(group, "rdiff_timestamp_ms", -1)
        put(group, "filename_dump", f"{disk_id}.dump{ext}")
        put(group, "filename_digest", f"{disk_id}.digest{ext}")
        put(group, "filename_rdiff", f"{disk_id}.rdiff{ext}")
        put(group, "filename_bmp", f"{disk_id}.bmp")
        put(group, "is_deleted_previous_dump", False)
        put(group, "is_changed", "undefined")
        put(group, "dump_begin_timestamp_ms", -1)
        put(group, "dump_end_timestamp_ms", -1)
        put(group, "status", DISK_FAILED)

        put(DISK_INDEX, disk.uuid, disk_id)

        controller = self._controller_group(disk.controller_key)
        put(controller, "adapter_type", disk.adapter_type.value)
        put(controller, "bus_number", disk.bus_number)
        put(CONTROLLER_INDEX, disk.uuid, disk.controller_key)

    # -- generation -------------------------------------------------------

    @property
    def generation_id(self) -> int:
        return self.store.get_int(GENERATION, "generation_id")

    @property
    def prev_generation_id(self) -> Optional[int]:
        value = self.store.get_int(GENERATION, "prev_generation_id")
        return value if value >= 0 else None

    @property
    def moref(self) -> Optional[str]:
        return self.store.get(GENERATION, "moref")

    @property
    def name(self) -> Optional[str]:
        return self.store.get(GENERATION, "name")

    @property
    def snapshot_moref(self) -> Optional[str]:
        return self.store.get(GENERATION, "snapshot_moref")

    @property
    def snapshot_name(self) -> Optional[str]:
        return self.store.get(GENERATION, "snapshot_name")

    @property
    def ovf_path(self) -> Path:
        return self.directory / self.store.get(GENERATION, "ovf_filename")

    @property
    def timestamp_ms(self) -> Optional[int]:
        raw = self.store.get(GENERATION, "timestamp_ms")
        return formats.to_long(raw) if formats.can_be_long(raw) else None

    @property
    def timestamp_str(self) -> Optional[str]:
        return self.store.get(GENERATION, "timestamp")

    @property
    def status(self) -> Optional[GenerationStatus]:
        try:
            return GenerationStatus(self.store.get(GENERATION, "status"))
        except ValueError:
            return None

    def is_succeeded(self) -> bool:
        return self.status == GenerationStatus.SUCCEEDED

    def set_succeeded(self, succeeded: bool) -> None:
        """
        Move the generation out of the initialized state.

        Raises:
            GenerationStateError: If the status was already set
        """
        if self.status != GenerationStatus.INITIALIZED:
            raise GenerationStateError(
                f"Generation {self.generation_id} of {self.moref} is already {self.status}"
            )
        new_status = GenerationStatus.SUCCEEDED if succeeded else GenerationStatus.FAILED
        self.store.put(GENERATION, "status", new_status.value)

    @property
    def num_disks(self) -> int:
        return self.store.get_int(GENERATION, "num_disks")

    @property
    def num_succeeded_disks(self) -> int:
        return self.store.get_int(GENERATION, "num_vmdkdump_succeeded")

    @property
    def num_failed_disks(self) -> int:
        return self.store.get_int(GENERATION, "num_vmdkdump_failed")

    # -- disks ------------------------------------------------------------

    def _disk_group(self, disk_id: int) -> Group:
        return Group("disk", str(disk_id))

    def _controller_group(self, controller_key: int) -> Group:
        return Group("controller", str(controller_key))

    def _disk_get(self, disk_id: int, key: str) -> Optional[str]:
        return self.store.get(self._disk_group(disk_id), key)

    def _disk_put(self, disk_id: int, key: str, value) -> None:
        self.store.put(self._disk_group(disk_id), key, value)

    def disk_ids(self) -> List[int]:
        ids = []
        for group in self.store.groups("disk"):
            if group.sub_name is not None and formats.can_be_int(group.sub_name):
                ids.append(formats.to_int(group.sub_name))
        return sorted(ids)

    def has_disk(self, disk_id: int) -> bool:
        return self.store.has_group(self._disk_group(disk_id))

    def disk_id_for_uuid(self, uuid: str) -> Optional[int]:
        raw = self.store.get(DISK_INDEX, uuid)
        if raw is None or not formats.can_be_int(raw):
            return None
        return formats.to_int(raw)

    def uuid(self, disk_id: int) -> Optional[str]:
        return self._disk_get(disk_id, "uuid")

    def remote_path(self, disk_id: int) -> Optional[str]:
        return self._disk_get(disk_id, "remote_path")

    def capacity(self, disk_id: int) -> int:
        return self.store.get_long(self._disk_group(disk_id), "capacity")

    def change_id(self, disk_id: int) -> Optional[str]:
        """Change-tracking token, None when it was unavailable."""
        value = self._disk_get(disk_id, "change_id")
        if value is None or value == CHANGE_ID_UNAVAILABLE:
            return None
        return value

    def adapter_type(self, disk_id: int) -> AdapterType:
        return AdapterType.parse(self._disk_get(disk_id, "adapter_type"))

    def controller_key(self, disk_id: int) -> int:
        return self.store.get_int(self._disk_group(disk_id), "controller_key")

    def device_key(self, disk_id: int) -> int:
        return self.store.get_int(self._disk_group(disk_id), "device_key")

    def unit_number(self, disk_id: int) -> int:
        return self.store.get_int(self._disk_group(disk_id), "unit_number")

    def bus_number(self, controller_key: int) -> int:
        return self.store.get_int(self._controller_group(controller_key), "bus_number")

    def disk_mode(self, disk_id: int) -> Optional[str]:
        return self._disk_get(disk_id, "disk_mode")

    def is_independent_disk(self, disk_id: int) -> bool:
        return self.disk_mode(disk_id) in INDEPENDENT_DISK_MODES

    def disk_info(self, disk_id: int) -> DiskInfo:
        """Rebuild the descriptor a disk was recorded from."""
        controller_key = self.controller_key(disk_id)
        return DiskInfo(
            uuid=self.uuid(disk_id),
            remote_path=self.remote_path(disk_id),
            capacity=self.capacity(disk_id),
            change_id=self.change_id(disk_id),
            device_key=self.device_key(disk_id),
            controller_key=controller_key,
            bus_number=self.bus_number(controller_key),
            unit_number=self.unit_number(disk_id),
            adapter_type=self.adapter_type(disk_id),
            disk_mode=self.disk_mode(disk_id) or "persistent",
        )

    def backup_mode(self, disk_id: int) -> BackupMode:
        return BackupMode.parse(self._disk_get(disk_id, "backup_mode"))

    def set_backup_mode(self, disk_id: int, mode: BackupMode) -> None:
        self._disk_put(disk_id, "backup_mode", mode.value)

    def is_changed(self, disk_id: int) -> Optional[bool]:
        """Whether the disk changed since the previous generation; None if unknown."""
        return self.store.get_bool(self._disk_group(disk_id), "is_changed")

    def set_changed(self, disk_id: int, changed: bool) -> None:
        self._disk_put(disk_id, "is_changed", changed)

    def is_deleted_previous_dump(self, disk_id: int) -> bool:
        return self.store.get_bool(self._disk_group(disk_id), "is_deleted_previous_dump") is True

    def set_deleted_previous_dump(self, disk_id: int, deleted: bool) -> None:
        self._disk_put(disk_id, "is_deleted_previous_dump", deleted)

    def is_disk_succeeded(self, disk_id: int) -> bool:
        return self._disk_get(disk_id, "status") == DISK_SUCCEEDED

    def set_disk_result(self, disk_id: int, succeeded: bool) -> None:
        """Record the outcome of one disk dump and update the counters."""
        self._disk_put(disk_id, "status", DISK_SUCCEEDED if succeeded else DISK_FAILED)
        counter = "num_vmdkdump_succeeded" if succeeded else "num_vmdkdump_failed"
        self.store.put(GENERATION, counter, max(self.store.get_int(GENERATION, counter), 0) + 1)

    # -- dump timing ------------------------------------------------------

    def set_dump_begin_timestamp(self, disk_id: int, timestamp_ms: Optional[int] = None) -> None:
        self._disk_put(disk_id, "dump_begin_timestamp_ms", timestamp_ms if timestamp_ms is not None else now_ms())

    def set_dump_end_timestamp(self, disk_id: int, timestamp_ms: Optional[int] = None) -> None:
        self._disk_put(disk_id, "dump_end_timestamp_ms", timestamp_ms if timestamp_ms is not None else now_ms())

    def dump_elapsed_ms(self, disk_id: int) -> int:
        group = self._disk_group(disk_id)
        begin = self.store.get_long(group, "dump_begin_timestamp_ms")
        end = self.store.get_long(group, "dump_end_timestamp_ms")
        if begin < 0 or end < begin:
            return 0
        return end - begin

    # -- archive files ----------------------------------------------------

    def dump_filename(self, disk_id: int) -> Optional[str]:
        return self._disk_get(disk_id, "filename_dump")

    def set_dump_filename(self, disk_id: int, filename: str) -> None:
        self._disk_put(disk_id, "filename_dump", filename)

    def digest_filename(self, disk_id: int) -> Optional[str]:
        return self._disk_get(disk_id, "filename_digest")

    def set_digest_filename(self, disk_id: int, filename: str) -> None:
        self._disk_put(disk_id, "filename_digest", filename)

    def rdiff_filename(self, disk_id: int) -> Optional[str]:
        return self._disk_get(disk_id, "filename_rdiff")

    def bmp_filename(self, disk_id: int) -> Optional[str]:
        return self._disk_get(disk_id, "filename_bmp")

    def _file_path(self, filename: Optional[str]) -> Optional[Path]:
        if filename is None:
            return None
        return self.directory / filename

    def dump_path(self, disk_id: int) -> Optional[Path]:
        return self._file_path(self.dump_filename(disk_id))

    def digest_path(self, disk_id: int) -> Optional[Path]:
        return self._file_path(self.digest_filename(disk_id))

    def rdiff_path(self, disk_id: int) -> Optional[Path]:
        return self._file_path(self.rdiff_filename(disk_id))

    def bmp_path(self, disk_id: int) -> Optional[Path]:
        return self._file_path(self.bmp_filename(disk_id))

    def _is_file(self, path: Optional[Path]) -> bool:
        return path is not None and path.is_file()

    def dump_exists(self, disk_id: int) -> bool:
        return self._is_file(self.dump_path(disk_id))

    def digest_exists(self, disk_id: int) -> bool:
        return self._is_file(self.digest_path(disk_id))

    def rdiff_exists(self, disk_id: int) -> bool:
        return self._is_file(self.rdiff_path(disk_id))

    def bmp_exists(self, disk_id: int) -> bool:
        return self._is_file(self.bmp_path(disk_id))
