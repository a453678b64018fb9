#!/usr/bin/env python3
"""
Archive Status Tool

Prints the generation chain of every archived machine and cleans up failed
generations or whole archives of machines that left the inventory.

Usage:
    python scripts/archive-status.py status
    python scripts/archive-status.py status --target web01 --detail
    python scripts/archive-status.py clean --target all --dry-run
    python scripts/archive-status.py clean --target vm-42 --all --force
"""

import argparse
import sys
from pathlib import Path
from typing import List

# Add parent directory to path to import vmarchive modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from vmarchive.core.config import CHAIN_FILE_NAME, GLOBAL_CONFIG_FILE_NAME, Settings
from vmarchive.core.logging_handler import configure_from_settings
from vmarchive.models import ArchiveState
from vmarchive.services.archive import ArchiveManager, get_archive_manager
from vmarchive.services.archive.operations import clean_failed_generations, destroy_archive
from vmarchive.services.configstore import ConfigStoreError
from vmarchive.services.lock import LockError
from vmarchive.services.profile import GenerationChain, MachineGroups, MachineIndex, ProfileError


def load_settings(args) -> Settings:
    if args.config:
        return Settings.from_global_file(args.config)
    default = Path(GLOBAL_CONFIG_FILE_NAME)
    if default.is_file():
        return Settings.from_global_file(default)
    return Settings()


def load_machine_index(settings: Settings) -> MachineIndex:
    index = MachineIndex(settings.machine_index_path)
    if index.exists():
        index.reload()
    return index


def resolve_targets(settings: Settings, index: MachineIndex, target: str) -> List[str]:
    """Morefs for a target; ``all`` also includes archives missing from the index."""
    groups = MachineGroups(settings.group_config_path, index)
    if groups.exists():
        groups.reload()
    morefs = set(groups.resolve(target))

    if target == "all" and settings.ROOT_DIRECTORY.is_dir():
        for directory in settings.ROOT_DIRECTORY.iterdir():
            if (directory / CHAIN_FILE_NAME).exists():
                morefs.add(directory.name)
    return sorted(morefs)


def open_archive(settings: Settings, index: MachineIndex, moref: str) -> ArchiveManager:
    name = index.name_for_moref(moref)
    if name is None:
        name = GenerationChain.load(settings.chain_path(moref)).name or moref
    return get_archive_manager(settings, moref, name)


def cmd_status(settings: Settings, index: MachineIndex, morefs: List[str], args) -> int:
    failures = 0
    for moref in morefs:
        try:
            if ArchiveManager.archive_state(settings, moref) == ArchiveState.NONE:
                continue
            manager = open_archive(settings, index, moref)
        except (ConfigStoreError, ProfileError) as e:
            print(f"✗ {moref}: {e}", file=sys.stderr)
            failures += 1
            continue
        available = index.is_available(moref)
        print(manager.status_string(is_available=available, detail=args.detail))
    return 1 if failures else 0


def cmd_clean(settings: Settings, index: MachineIndex, morefs: List[str], args) -> int:
    failures = 0
    for moref in morefs:
        try:
            if ArchiveManager.archive_state(settings, moref) == ArchiveState.NONE:
                continue
            manager = open_archive(settings, index, moref)
            if args.all:
                if args.dry_run:
                    print(f"Would delete archive of {moref}")
                elif destroy_archive(manager, index, force=args.force):
                    print(f"Deleted archive of {moref}")
                else:
                    print(f"Kept archive of {moref}: machine is still available")
            else:
                failed = clean_failed_generations(manager, dry_run=args.dry_run)
                verb = "Failed generations" if args.dry_run else "Deleted failed generations"
                print(f"{moref}: {verb} {failed}")
        except (ConfigStoreError, LockError, ProfileError) as e:
            print(f"✗ {moref}: {e}", file=sys.stderr)
            failures += 1
    return 1 if failures else 0


def main():
    parser = argparse.ArgumentParser(
        description="Inspect and clean machine backup archives",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument(
        "command",
        choices=["status", "clean"],
        help="Operation to run"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Global configuration file (default: ./{GLOBAL_CONFIG_FILE_NAME} if present)"
    )
    parser.add_argument(
        "--target",
        default="all",
        help="Machine name, moref, group name or 'all'"
    )
    parser.add_argument(
        "--detail",
        action="store_true",
        help="List every generation (status only)"
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Delete whole archives instead of failed generations (clean only)"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Delete archives of available machines and of dirty archives"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting"
    )

    args = parser.parse_args()

    if args.command == "status" and (args.all or args.force or args.dry_run):
        parser.error("--all, --force and --dry-run can only be used with clean")

    try:
        settings = load_settings(args)
        configure_from_settings(settings)
        index = load_machine_index(settings)
        morefs = resolve_targets(settings, index, args.target)
    except (ConfigStoreError, OSError) as e:
        print(f"✗ Failed to load configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if not morefs:
        print(f"No machine matches {args.target}")
        sys.exit(1)

    if args.command == "status":
        sys.exit(cmd_status(settings, index, morefs, args))
    sys.exit(cmd_clean(settings, index, morefs, args))


if __name__ == "__main__":
    main()
