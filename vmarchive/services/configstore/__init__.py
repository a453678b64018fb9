"""
Profile text format: grammar, value conversions and the group/entry store.
"""
from pathlib import Path
from typing import Union

from vmarchive.services.configstore.store import (
    ConfigStore,
    ConfigStoreError,
    Entry,
    FileNotSetError,
    Group,
    NotRegularFileError,
    ParseError,
)


def load_store(path: Union[str, Path]) -> ConfigStore:
    """
    Read a profile file into a new store.

    Args:
        path: Profile file to read

    Returns:
        ConfigStore bound to ``path``
    """
    store = ConfigStore()
    store.read(path)
    return store


__all__ = [
    "ConfigStore",
    "ConfigStoreError",
    "Entry",
    "FileNotSetError",
    "Group",
    "NotRegularFileError",
    "ParseError",
    "load_store",
]
