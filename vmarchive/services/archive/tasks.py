"""
Deferred actions run only after every disk of a generation succeeded.
"""
import enum
from dataclasses import dataclass


class LazyTaskKind(str, enum.Enum):
    """Space reclamation steps that must wait for the whole backup."""
    # Take over the previous generation's dump and digest of an unchanged disk
    MOVE_PREV_DUMP_AND_DIGEST = "move_prev_dump_and_digest"
    # Drop the previous full dump once a reverse delta replaces it
    DEL_PREV_DUMP = "del_prev_dump"


@dataclass(frozen=True)
class LazyTask:
    """One queued deferred action for a disk of the current generation."""
    kind: LazyTaskKind
    disk_id: int
