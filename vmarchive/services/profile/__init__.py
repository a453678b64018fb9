"""
Profile files: machine index, machine groups, generation chain and
generation manifest.
"""
from vmarchive.services.profile.base import (
    DirtyProfileError,
    GenerationStateError,
    ProfileError,
    ProfileFile,
    ProfileMismatchError,
)
from vmarchive.services.profile.chain import GenerationChain
from vmarchive.services.profile.machine_groups import MachineGroups
from vmarchive.services.profile.machine_index import MachineIndex
from vmarchive.services.profile.manifest import GenerationManifest

__all__ = [
    "DirtyProfileError",
    "GenerationChain",
    "GenerationManifest",
    "GenerationStateError",
    "MachineGroups",
    "MachineIndex",
    "ProfileError",
    "ProfileFile",
    "ProfileMismatchError",
]
