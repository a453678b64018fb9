"""
In-memory profile store with parsing and serialization.

A store maps a ``Group`` to the entries of that group. Serialized output
looks like::

    [meta]
    	moref = vm-42
    [generation "0"]
    	status = succeeded
"""
import io
import logging
import os
import tempfile
from functools import total_ordering
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, TextIO, Tuple, Union

from vmarchive.services.configstore import formats, grammar
from vmarchive.services.configstore.grammar import LineContext

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class ConfigStoreError(Exception):
    """Base class for profile store errors."""
    pass


class ParseError(ConfigStoreError):
    """Raised when a profile file cannot be loaded."""
    pass


class NotRegularFileError(ConfigStoreError):
    """Raised when a profile path exists but is not a regular file."""
    pass


class FileNotSetError(ConfigStoreError):
    """Raised when writing a store that has no backing path."""
    pass


@total_ordering
class Group:
    """
    Section header ``[name]`` or ``[name "sub_name"]``.

    Groups order by arity first (empty < one string < two strings), then by
    name, then by sub name.
    """

    __slots__ = ("name", "sub_name")

    def __init__(self, name: Optional[str] = None, sub_name: Optional[str] = None):
        if name is None and sub_name is not None:
            raise ValueError("A group with a sub name needs a name")
        if name is not None and not grammar.is_basic_string(name):
            raise ValueError(f"Invalid group name: {name!r}")
        self.name = name
        self.sub_name = sub_name

    @property
    def size(self) -> int:
        if self.name is None:
            return 0
        return 1 if self.sub_name is None else 2

    def _sort_key(self) -> Tuple[int, str, str]:
        return (self.size, self.name or "", self.sub_name or "")

    def __eq__(self, other):
        if not isinstance(other, Group):
            return NotImplemented
        return self._sort_key() == other._sort_key()

    def __lt__(self, other):
        if not isinstance(other, Group):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __hash__(self):
        return hash(self._sort_key())

    def __repr__(self):
        return f"Group({self.name!r}, {self.sub_name!r})"

    def __str__(self):
        if self.size == 0:
            raise ValueError("An empty group has no textual form")
        if self.sub_name is None:
            return f"[{self.name}]"
        return f"[{self.name} {formats.to_quoted_string(self.sub_name)}]"


class Entry(NamedTuple):
    key: str
    value: str

    def __str__(self):
        return f"{formats.to_string_auto(self.key)} = {formats.to_string_auto(self.value)}"


TMP_GROUP = Group("___tmp___")
PATH_KEY = "path_myself"


def _check_representable(key: str, value: str) -> None:
    for text in (key, value):
        if not formats.is_representable(text):
            raise ValueError(f"Cannot store {text!r} in a profile")


class ConfigStore:
    """
    Group/entry store for one profile file.

    The path of the backing file is kept inside the store under a reserved
    group that is never written to disk.
    """

    def __init__(self, path: Optional[PathLike] = None):
        self._groups: Dict[Group, Dict[str, str]] = {}
        if path is not None:
            self.path = Path(path)

    # -- path -------------------------------------------------------------

    @property
    def path(self) -> Optional[Path]:
        value = self.get(TMP_GROUP, PATH_KEY)
        return Path(value) if value is not None else None

    @path.setter
    def path(self, value: Optional[PathLike]):
        if value is None:
            self.delete(TMP_GROUP, PATH_KEY)
        else:
            self.put(TMP_GROUP, PATH_KEY, str(value))

    # -- entries ----------------------------------------------------------

    def put(self, group: Group, key: str, value) -> None:
        """
        Create the group if needed and upsert one entry.

        Raises:
            ValueError: If the key or value has no textual form that reads back
                unchanged, such as a trailing backslash or a newline
        """
        if isinstance(value, bool):
            value = formats.bool_to_string(value)
        value = str(value)
        _check_representable(key, value)
        self._groups.setdefault(group, {})[key] = value

    def get(self, group: Group, key: str) -> Optional[str]:
        entries = self._groups.get(group)
        if entries is None:
            return None
        return entries.get(key)

    def get_int(self, group: Group, key: str) -> int:
        """Entry as a 32-bit integer, -1 when missing or invalid."""
        return formats.to_int(self.get(group, key))

    def get_long(self, group: Group, key: str) -> int:
        """Entry as a 64-bit integer, -1 when missing or invalid."""
        return formats.to_long(self.get(group, key))

    def get_bool(self, group: Group, key: str) -> Optional[bool]:
        return formats.to_bool(self.get(group, key))

    def delete(self, group: Group, key: str) -> bool:
        entries = self._groups.get(group)
        if entries is None or key not in entries:
            return False
        del entries[key]
        return True

    def delete_group(self, group: Group) -> bool:
        return self._groups.pop(group, None) is not None

    def has_group(self, group: Group) -> bool:
        return group in self._groups

    def get_all(self, group: Group) -> List[Entry]:
        """All entries of a group in key order."""
        entries = self._groups.get(group, {})
        return [Entry(key, entries[key]) for key in sorted(entries)]

    def replace_all(self, group: Group, entries: Iterable[Tuple[str, str]]) -> None:
        """Replace every entry of a group at once."""
        entries = list(entries)
        for key, value in entries:
            _check_representable(key, value)
        self._groups[group] = {key: value for key, value in entries}

    def merge(self, group: Group, entries: Iterable[Tuple[str, str]]) -> None:
        """Upsert several entries of a group, keeping the others."""
        entries = list(entries)
        for key, value in entries:
            _check_representable(key, value)
        target = self._groups.setdefault(group, {})
        for key, value in entries:
            target[key] = value

    def groups(self, name: Optional[str] = None) -> List[Group]:
        """Groups in order, optionally only those with the given name."""
        result = sorted(group for group in self._groups if group != TMP_GROUP)
        if name is not None:
            result = [group for group in result if group.name == name]
        return result

    def clear(self) -> None:
        """Remove every group except the backing path."""
        path = self.path
        self._groups.clear()
        self.path = path

    # -- serialization ----------------------------------------------------

    def dump(self, stream: TextIO) -> None:
        """Write every persistent group to a text stream."""
        hidden = self.get_all(TMP_GROUP)
        self.delete_group(TMP_GROUP)
        try:
            for group in sorted(self._groups):
                stream.write(f"{group}\n")
                for entry in self.get_all(group):
                    stream.write(f"\t{entry}\n")
        finally:
            if hidden:
                self.replace_all(TMP_GROUP, hidden)

    def dumps(self) -> str:
        buffer = io.StringIO()
        self.dump(buffer)
        return buffer.getvalue()

    def load(self, stream: Iterable[str]) -> None:
        """
        Replace the content with the groups read from a text stream.

        Raises:
            ParseError: If an entry appears before any group header
        """
        groups: Dict[Group, Dict[str, str]] = {}
        current: Optional[Group] = None

        for lineno, raw in enumerate(stream, start=1):
            line = raw.rstrip("\r\n")
            if not line.strip():
                continue
            parsed = grammar.classify_line(line)
            if parsed is None:
                logger.debug(f"Ignoring unrecognized line {lineno}: {line!r}")
                continue
            context, token = parsed
            if context == LineContext.GROUP:
                current = Group(token.name, token.sub_name)
                groups.setdefault(current, {})
            elif context == LineContext.ENTRY:
                if current is None:
                    raise ParseError(f"Entry before any group at line {lineno}: {line!r}")
                groups[current][token.key] = token.value

        path = self.path
        self._groups = groups
        self._groups.pop(TMP_GROUP, None)
        self.path = path

    def loads(self, text: str) -> None:
        self.load(text.splitlines())

    def read(self, path: Optional[PathLike] = None) -> None:
        """
        Load the store from a file and remember its path.

        Args:
            path: File to read; defaults to the remembered path

        Raises:
            FileNotSetError: If no path is given or remembered
            FileNotFoundError: If the file does not exist
            NotRegularFileError: If the path is a directory or special file
            ParseError: If the content is malformed
        """
        target = Path(path) if path is not None else self.path
        if target is None:
            raise FileNotSetError("No profile path to read from")
        if target.exists() and not target.is_file():
            raise NotRegularFileError(f"{target} is not a regular file")

        with open(target, "r", encoding="utf-8") as f:
            self.load(f)
        self.path = target

    def write(self, path: Optional[PathLike] = None) -> None:
        """
        Atomically write the store to a file and remember its path.

        Raises:
            FileNotSetError: If no path is given or remembered
            NotRegularFileError: If the target exists but is not a regular file
        """
        target = Path(path) if path is not None else self.path
        if target is None:
            raise FileNotSetError("No profile path to write to")
        if target.exists() and not target.is_file():
            raise NotRegularFileError(f"{target} is not a regular file")

        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                self.dump(f)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        self.path = target

    def __contains__(self, group: Group) -> bool:
        return self.has_group(group)

    def __eq__(self, other):
        if not isinstance(other, ConfigStore):
            return NotImplemented
        mine = {g: e for g, e in self._groups.items() if g != TMP_GROUP}
        theirs = {g: e for g, e in other._groups.items() if g != TMP_GROUP}
        return mine == theirs
