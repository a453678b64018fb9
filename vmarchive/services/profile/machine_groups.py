"""
Named sets of machines (``vmbkp_group.conf``).

Each ``[group "<name>"]`` lists members as ``<key> = moref|name|group``.
"""
import logging
from pathlib import Path
from typing import List, Optional, Set, Union

from vmarchive.services.configstore import Group
from vmarchive.services.profile.base import ProfileFile
from vmarchive.services.profile.machine_index import MachineIndex

logger = logging.getLogger(__name__)

ALL_MACHINES = "all"


class MachineGroups(ProfileFile):
    """Resolves a target name to the morefs it stands for."""

    def __init__(self, path: Optional[Union[str, Path]], machine_index: MachineIndex):
        super().__init__(path)
        self.machine_index = machine_index

    def _group(self, name: str) -> Group:
        return Group("group", name)

    def is_group_name(self, name: str) -> bool:
        """A group only counts when it has at least one member."""
        return bool(self.store.get_all(self._group(name)))

    def add_member(self, group_name: str, key: str, kind: str) -> None:
        if kind not in ("moref", "name", "group"):
            raise ValueError(f"Unsupported member kind: {kind}")
        self.store.put(self._group(group_name), key, kind)

    def group_members(self, group_name: str, _seen: Optional[Set[str]] = None) -> List[str]:
        """
        Morefs of a group, nested groups expanded.

        Args:
            group_name: Name of the group

        Returns:
            Sorted, de-duplicated morefs
        """
        seen = _seen if _seen is not None else set()
        if group_name in seen:
            logger.warning(f"Group {group_name} includes itself; ignoring the cycle")
            return []
        seen.add(group_name)

        morefs: Set[str] = set()
        for key, kind in self.store.get_all(self._group(group_name)):
            if kind == "moref":
                morefs.add(key)
            elif kind == "name":
                moref = self.machine_index.moref_for_name(key)
                if moref is not None:
                    morefs.add(moref)
            elif kind == "group":
                morefs.update(self.group_members(key, seen))
            else:
                logger.warning(
                    f"Value {kind} is not supported for key {key} in group {group_name}; "
                    f"use moref, name or group"
                )
        seen.discard(group_name)
        return sorted(morefs)

    def resolve(self, name: str, available_only: bool = False) -> List[str]:
        """
        Morefs a target name refers to.

        ``all`` means every known machine; otherwise a group name, a machine
        name and a moref are tried in that order.
        """
        if name == ALL_MACHINES:
            morefs = self.machine_index.all_morefs()
        elif self.is_group_name(name):
            morefs = self.group_members(name)
        else:
            morefs = []
            moref = self.machine_index.moref_for_name(name)
            if moref is not None:
                morefs.append(moref)
            elif self.machine_index.has_moref(name):
                morefs.append(name)

        if available_only:
            morefs = self.machine_index.filter_available(morefs)
        return morefs
