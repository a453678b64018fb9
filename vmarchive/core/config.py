"""
Application configuration management using Pydantic Settings.
"""
import logging
from pathlib import Path
from typing import Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmarchive.services.configstore import ConfigStore, Group, formats

logger = logging.getLogger(__name__)

CHAIN_FILE_NAME = "vmbkp_vm.profile"
MANIFEST_FILE_NAME = "vmbkp_generation.profile"
GLOBAL_CONFIG_FILE_NAME = "vmbkp_global.conf"


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="VMARCHIVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "vmarchive"
    APP_VERSION: str = "1.0.0"

    # Archive layout
    ROOT_DIRECTORY: Path = Path("/var/lib/vmarchive")
    MACHINE_INDEX_FILE_NAME: str = "vmbkp_all_vm.profile"
    GROUP_CONFIG_FILE_NAME: str = "vmbkp_group.conf"
    KEEP_GENERATIONS: int = 5

    # Disk copy tool
    DISK_TOOL_PATH: str = "/usr/bin/vmdkbkp"
    USE_SAN: bool = False
    COMPRESS_DUMPS: bool = False
    BITMAP_BLOCK_SIZE: int = 1024 * 1024

    # Hypervisor
    SERVER: Optional[str] = None
    SERVER_URL: Optional[str] = None
    USERNAME: Optional[str] = None
    PASSWORD: Optional[str] = None

    # Locking (seconds; 0 = fail fast, negative = wait forever)
    LOCK_TIMEOUT: float = 60
    CLEAN_LOCK_TIMEOUT: float = 1
    INDEX_LOCK_TIMEOUT: float = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None
    LOG_MAX_BYTES: int = 100 * 1024 * 1024  # 100 MB
    LOG_BACKUP_COUNT: int = 10

    @field_validator("KEEP_GENERATIONS")
    @classmethod
    def validate_keep_generations(cls, v):
        if v < 1:
            raise ValueError("KEEP_GENERATIONS must be at least 1")
        return v

    @field_validator("BITMAP_BLOCK_SIZE")
    @classmethod
    def validate_block_size(cls, v):
        if v <= 0:
            raise ValueError("BITMAP_BLOCK_SIZE must be positive")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper()

    @property
    def machine_index_path(self) -> Path:
        return self.ROOT_DIRECTORY / self.MACHINE_INDEX_FILE_NAME

    @property
    def group_config_path(self) -> Path:
        return self.ROOT_DIRECTORY / self.GROUP_CONFIG_FILE_NAME

    def machine_directory(self, moref: str) -> Path:
        return self.ROOT_DIRECTORY / moref

    def chain_path(self, moref: str) -> Path:
        return self.machine_directory(moref) / CHAIN_FILE_NAME

    @classmethod
    def from_global_file(cls, path: Union[str, Path], **overrides) -> "Settings":
        """
        Build settings from a ``vmbkp_global.conf`` profile.

        Values found in the file take precedence over the environment;
        keyword overrides take precedence over both.

        Args:
            path: Global configuration file in the profile format
            **overrides: Explicit field values

        Returns:
            Settings instance
        """
        store = ConfigStore()
        store.read(path)

        global_group = Group("global")
        vsphere_group = Group("vsphere")
        values = {}

        mapping = [
            (global_group, "root_directory", "ROOT_DIRECTORY"),
            (global_group, "vmdkbkp_path", "DISK_TOOL_PATH"),
            (global_group, "profile_all_vm_file_name", "MACHINE_INDEX_FILE_NAME"),
            (vsphere_group, "server", "SERVER"),
            (vsphere_group, "url", "SERVER_URL"),
            (vsphere_group, "username", "USERNAME"),
            (vsphere_group, "password", "PASSWORD"),
        ]
        for group, key, field in mapping:
            value = store.get(group, key)
            if value is not None:
                values[field] = value

        keep = store.get(global_group, "keep_generations")
        if keep is not None:
            if formats.can_be_int(keep) and formats.to_int(keep) > 0:
                values["KEEP_GENERATIONS"] = formats.to_int(keep)
            else:
                logger.warning(f"Ignoring invalid keep_generations {keep!r} in {path}")

        values.update(overrides)
        return cls(**values)


# Global settings instance
settings = Settings()
