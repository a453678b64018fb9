"""
Index of every machine known to the hypervisor (``vmbkp_all_vm.profile``).

Layout::

    [vm_set]
    	vm-42 = web01
    [vm-42]
    	availability = true
    	is_template = false
    	name = web01
    	timestamp = ...
    	timestamp_ms = ...
    [index "moref_name"]
    	web01 = vm-42
"""
import logging
from typing import Iterable, List, Optional, Tuple

from vmarchive.models import VmInfo
from vmarchive.services.configstore import Group
from vmarchive.services.profile.base import ProfileFile, format_timestamp_ms, now_ms

logger = logging.getLogger(__name__)

VM_SET = Group("vm_set")
NAME_INDEX = Group("index", "moref_name")


class MachineIndex(ProfileFile):
    """Availability and identity of every machine seen in the inventory."""

    def _machine_group(self, moref: str) -> Group:
        return Group(moref)

    def all_morefs(self) -> List[str]:
        return [entry.key for entry in self.store.get_all(VM_SET)]

    def clear_availability(self) -> None:
        """Mark every known machine unavailable."""
        for moref in self.all_morefs():
            self.store.put(self._machine_group(moref), "availability", False)

    def add_machine(self, vm: VmInfo, is_template: bool = False, timestamp_ms: Optional[int] = None) -> None:
        """Record a machine as currently visible."""
        if timestamp_ms is None:
            timestamp_ms = now_ms()

        old_name = self.name_for_moref(vm.moref)
        if old_name is not None and old_name != vm.name:
            self.store.delete(NAME_INDEX, old_name)

        self.store.put(VM_SET, vm.moref, vm.name)
        self.store.put(NAME_INDEX, vm.name, vm.moref)

        group = self._machine_group(vm.moref)
        self.store.put(group, "name", vm.name)
        self.store.put(group, "availability", True)
        self.store.put(group, "is_template", is_template)
        self.store.put(group, "timestamp", format_timestamp_ms(timestamp_ms))
        self.store.put(group, "timestamp_ms", timestamp_ms)

    def refresh(self, machines: Iterable[Tuple[VmInfo, bool]], timestamp_ms: Optional[int] = None) -> int:
        """
        Rebuild availability from an inventory snapshot.

        Args:
            machines: (machine, is_template) pairs currently visible
            timestamp_ms: Time of the snapshot, defaults to now

        Returns:
            Number of machines marked available
        """
        if timestamp_ms is None:
            timestamp_ms = now_ms()
        self.clear_availability()
        count = 0
        for vm, is_template in machines:
            self.add_machine(vm, is_template, timestamp_ms)
            count += 1
        logger.info(f"Machine index refreshed: {count} available of {len(self.all_morefs())} known")
        return count

    def moref_for_name(self, name: str) -> Optional[str]:
        return self.store.get(NAME_INDEX, name)

    def name_for_moref(self, moref: str) -> Optional[str]:
        return self.store.get(VM_SET, moref)

    def has_moref(self, moref: str) -> bool:
        return self.name_for_moref(moref) is not None

    def has_name(self, name: str) -> bool:
        return self.moref_for_name(name) is not None

    def is_available(self, moref: str) -> bool:
        return self.store.get_bool(self._machine_group(moref), "availability") is True

    def is_available_name(self, name: str) -> bool:
        moref = self.moref_for_name(name)
        return moref is not None and self.is_available(moref)

    def is_template(self, moref: str) -> bool:
        return self.store.get_bool(self._machine_group(moref), "is_template") is True

    def last_seen_ms(self, moref: str) -> int:
        return self.store.get_long(self._machine_group(moref), "timestamp_ms")

    def vm_info(self, moref: str) -> Optional[VmInfo]:
        name = self.name_for_moref(moref)
        if name is None:
            return None
        return VmInfo(moref=moref, name=name)

    def filter_available(self, morefs: Iterable[str]) -> List[str]:
        return [moref for moref in morefs if self.is_available(moref)]

    def filter_non_template(self, morefs: Iterable[str]) -> List[str]:
        return [moref for moref in morefs if not self.is_template(moref)]
