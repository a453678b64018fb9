"""
Per-machine generation chain (``<root>/<moref>/vmbkp_vm.profile``).

Layout::

    [meta]
    	is_clean = true
    	latest = 3
    	moref = vm-42
    	name = web01
    [generation "3"]
    	depending_generation_id = 2
    	status = succeeded
    	timestamp = ...
    	timestamp_ms = 1700000000000
    [index "timestamp_ms-generation"]
    	1700000000000 = 3

Generations are traversed in timestamp order through the index group.
"""
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from vmarchive.core.config import MANIFEST_FILE_NAME
from vmarchive.models import GenerationStatus, VmInfo
from vmarchive.services.configstore import Group, formats
from vmarchive.services.profile.base import ProfileError, ProfileFile, format_timestamp_ms

logger = logging.getLogger(__name__)

META = Group("meta")
TIMESTAMP_INDEX = Group("index", "timestamp_ms-generation")
NO_GENERATION = -1


class GenerationChain(ProfileFile):
    """Chain of backup generations of one machine."""

    @classmethod
    def create(cls, path: Path, vm: VmInfo) -> "GenerationChain":
        """New, clean, empty chain bound to ``path`` (not yet written)."""
        chain = cls(path)
        chain.store.put(META, "moref", vm.moref)
        chain.store.put(META, "name", vm.name)
        chain.store.put(META, "is_clean", True)
        chain.store.put(META, "latest", NO_GENERATION)
        return chain

    # -- meta -------------------------------------------------------------

    @property
    def moref(self) -> Optional[str]:
        return self.store.get(META, "moref")

    @property
    def name(self) -> Optional[str]:
        return self.store.get(META, "name")

    @name.setter
    def name(self, value: str):
        self.store.put(META, "name", value)

    def is_clean(self) -> bool:
        return self.store.get_bool(META, "is_clean") is True

    def set_clean(self, clean: bool) -> None:
        self.store.put(META, "is_clean", clean)

    @property
    def latest_generation_id(self) -> int:
        """
        Id of the most recently allocated generation, -1 when none.

        Raises:
            ProfileError: If the stored value is missing or not an integer
        """
        raw = self.store.get(META, "latest")
        if not formats.can_be_int(raw):
            raise ProfileError(f"Invalid latest generation id {raw!r} in {self.path}")
        return formats.to_int(raw)

    # -- generations ------------------------------------------------------

    def _generation_group(self, gen_id: int) -> Group:
        return Group("generation", str(gen_id))

    def has_generation(self, gen_id: int) -> bool:
        return self.store.has_group(self._generation_group(gen_id))

    def is_generation_succeeded(self, gen_id: int) -> bool:
        status = self.store.get(self._generation_group(gen_id), "status")
        return status == GenerationStatus.SUCCEEDED.value

    def set_generation_succeeded(self, gen_id: int, succeeded: bool) -> None:
        status = GenerationStatus.SUCCEEDED if succeeded else GenerationStatus.FAILED
        self.store.put(self._generation_group(gen_id), "status", status.value)

    def depending_generation_id(self, gen_id: int) -> Optional[int]:
        value = self.store.get_int(self._generation_group(gen_id), "depending_generation_id")
        return value if value >= 0 else None

    def timestamp_ms(self, gen_id: int) -> Optional[int]:
        raw = self.store.get(self._generation_group(gen_id), "timestamp_ms")
        if not formats.can_be_long(raw):
            return None
        return formats.to_long(raw)

    def timestamp_str(self, gen_id: int) -> Optional[str]:
        return self.store.get(self._generation_group(gen_id), "timestamp")

    def set_timestamp_ms(self, gen_id: int, timestamp_ms: int) -> int:
        """
        Set a generation's timestamp and re-index it.

        Timestamps are index keys, so a value already taken by another
        generation is moved forward by one millisecond until it is free.

        Returns:
            The timestamp actually stored
        """
        old = self.timestamp_ms(gen_id)
        if old is not None:
            self.store.delete(TIMESTAMP_INDEX, str(old))

        while True:
            owner = self.store.get(TIMESTAMP_INDEX, str(timestamp_ms))
            if owner is None or formats.to_int(owner) == gen_id:
                break
            timestamp_ms += 1

        group = self._generation_group(gen_id)
        self.store.put(group, "timestamp", format_timestamp_ms(timestamp_ms))
        self.store.put(group, "timestamp_ms", timestamp_ms)
        self.store.put(TIMESTAMP_INDEX, str(timestamp_ms), gen_id)
        return timestamp_ms

    def generation_map(self) -> List[Tuple[int, int]]:
        """(timestamp_ms, generation id) pairs, oldest first."""
        pairs = []
        for key, value in self.store.get_all(TIMESTAMP_INDEX):
            if formats.can_be_long(key) and formats.can_be_int(value):
                pairs.append((formats.to_long(key), formats.to_int(value)))
            else:
                logger.warning(f"Skipping broken timestamp index entry {key} = {value} in {self.path}")
        return sorted(pairs)

    def generation_ids(self) -> List[int]:
        """Generation ids, oldest first."""
        return [gen_id for _, gen_id in self.generation_map()]

    def num_generations(self) -> int:
        return len(self.generation_ids())

    def num_succeeded_generations(self) -> int:
        return sum(1 for gen_id in self.generation_ids() if self.is_generation_succeeded(gen_id))

    def prev_succeeded_generation_id(self, gen_id: int) -> Optional[int]:
        """Closest older succeeded generation, None if there is none."""
        ids = self.generation_ids()
        if gen_id not in ids:
            return None
        for candidate in reversed(ids[:ids.index(gen_id)]):
            if self.is_generation_succeeded(candidate):
                return candidate
        return None

    def next_succeeded_generation_id(self, gen_id: int) -> Optional[int]:
        """Closest newer succeeded generation, None if there is none."""
        ids = self.generation_ids()
        if gen_id not in ids:
            return None
        for candidate in ids[ids.index(gen_id) + 1:]:
            if self.is_generation_succeeded(candidate):
                return candidate
        return None

    def latest_succeeded_generation_id(self) -> Optional[int]:
        latest = self.latest_generation_id
        if latest < 0:
            return None
        if self.is_generation_succeeded(latest):
            return latest
        return self.prev_succeeded_generation_id(latest)

    def create_new_generation_id(self, timestamp_ms: int) -> int:
        """
        Allocate the next generation.

        The generation starts as failed and depends on the latest succeeded
        generation at the time of allocation.

        Returns:
            The new generation id
        """
        depending = self.latest_succeeded_generation_id()
        gen_id = self.latest_generation_id + 1

        self.store.put(META, "latest", gen_id)
        self.set_generation_succeeded(gen_id, False)
        self.set_timestamp_ms(gen_id, timestamp_ms)
        self.store.put(
            self._generation_group(gen_id),
            "depending_generation_id",
            depending if depending is not None else NO_GENERATION,
        )
        logger.info(f"Allocated generation {gen_id} of {self.moref} depending on {depending}")
        return gen_id

    def set_generation_info(self, manifest) -> None:
        """Copy status and timestamp from a generation manifest."""
        gen_id = manifest.generation_id
        self.set_generation_succeeded(gen_id, manifest.is_succeeded())
        timestamp_ms = manifest.timestamp_ms
        if timestamp_ms is not None:
            self.set_timestamp_ms(gen_id, timestamp_ms)

    def delete_generation_info(self, gen_id: int) -> None:
        timestamp_ms = self.timestamp_ms(gen_id)
        if timestamp_ms is not None:
            self.store.delete(TIMESTAMP_INDEX, str(timestamp_ms))
        self.store.delete_group(self._generation_group(gen_id))

    def old_generation_ids(self, keep: int) -> List[int]:
        """
        Generations that fall out of retention, newest first.

        Walking from newest to oldest, a generation is old once more than
        ``keep`` succeeded generations are newer than it. The latest
        generation is never old.
        """
        latest = self.latest_generation_id
        old = []
        newer_succeeded = 0
        for gen_id in reversed(self.generation_ids()):
            if newer_succeeded > keep and gen_id != latest:
                old.append(gen_id)
            if self.is_generation_succeeded(gen_id):
                newer_succeeded += 1
        return old

    def failed_generation_ids(self) -> List[int]:
        """Failed generations except the latest one, which may be running."""
        latest = self.latest_generation_id
        if latest < 0:
            return []
        return [
            gen_id for gen_id in self.generation_ids()
            if not self.is_generation_succeeded(gen_id) and gen_id != latest
        ]

    # -- layout -----------------------------------------------------------

    def generation_directory(self, gen_id: int) -> Path:
        return self.directory / str(gen_id)

    def manifest_path(self, gen_id: int) -> Path:
        return self.generation_directory(gen_id) / MANIFEST_FILE_NAME

    def status_string(self, is_available: bool = True) -> str:
        if is_available:
            text = f"[{self.moref}][{self.name}]"
        else:
            text = f"[({self.moref})][{self.name}]"

        gen_id = self.latest_succeeded_generation_id()
        if gen_id is None:
            return text + " ----------NO_ARCHIVE ----------"
        text += f'[Latest {gen_id} "{self.timestamp_str(gen_id)}"]'
        text += f"[Clean {self.num_succeeded_generations()}/{self.num_generations()}]"
        return text
