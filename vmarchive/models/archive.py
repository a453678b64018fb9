"""
Archive domain models: enums and the machine/disk descriptors handed over by
the hypervisor layer.
"""
import enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CHANGE_ID_UNAVAILABLE = "*"
INDEPENDENT_DISK_MODES = ("independent_persistent", "independent_nonpersistent")


class BackupMode(str, enum.Enum):
    """How a disk was dumped."""
    FULL = "full"
    DIFF = "diff"
    INCR = "incr"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BackupMode":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class GenerationStatus(str, enum.Enum):
    """Status of a generation manifest."""
    INITIALIZED = "initialized"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AdapterType(str, enum.Enum):
    """Virtual disk controller type."""
    IDE = "ide"
    BUSLOGIC = "buslogic"
    LSILOGIC = "lsilogic"
    LSILOGICSAS = "lsilogicsas"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AdapterType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def type_string(self) -> str:
        """Bus family used in status listings."""
        if self == AdapterType.IDE:
            return "ide"
        if self == AdapterType.UNKNOWN:
            return "unknown"
        return "scsi"


class ArchiveState(str, enum.Enum):
    """What exists on disk for one machine."""
    NONE = "none"
    EMPTY = "empty"
    HAS_SUCCEEDED = "has_succeeded"


class VmInfo(BaseModel):
    """Identity of a virtual machine."""
    model_config = ConfigDict(frozen=True)

    moref: str
    name: str


class SnapshotInfo(BaseModel):
    """Identity of the snapshot a generation is dumped from."""
    model_config = ConfigDict(frozen=True)

    moref: str
    name: str


class DiskInfo(BaseModel):
    """
    One virtual disk as reported by the hypervisor.

    ``capacity`` is in bytes. ``change_id`` is the change-tracking token of
    the snapshot, or None when tracking is unavailable.
    """
    model_config = ConfigDict(frozen=True)

    uuid: str
    remote_path: str
    capacity: int = Field(ge=0)
    change_id: Optional[str] = None
    device_key: int
    controller_key: int
    bus_number: int
    unit_number: int
    adapter_type: AdapterType = AdapterType.UNKNOWN
    disk_mode: str = "persistent"

    @field_validator("change_id")
    @classmethod
    def normalize_change_id(cls, v):
        if v == CHANGE_ID_UNAVAILABLE or v == "":
            return None
        return v

    @property
    def is_independent(self) -> bool:
        return self.disk_mode in INDEPENDENT_DISK_MODES


class DiskLayout(BaseModel):
    """A disk to re-create on restore."""
    device_key: int
    unit_number: int
    capacity: int


class ControllerLayout(BaseModel):
    """A controller to re-create on restore, with its disks."""
    adapter_type: AdapterType
    controller_key: int
    bus_number: int
    disks: List[DiskLayout] = Field(default_factory=list)
