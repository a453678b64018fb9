from vmarchive.models import BackupMode, VmInfo
from vmarchive.services.archive import ArchiveManager
from vmarchive.services.archive.operations import (
    backup_generation,
    backup_vm,
    check_generation,
    clean_failed_generations,
    destroy_archive,
    refresh_machine_index,
    restore_generation,
)
from vmarchive.services.profile import MachineIndex

BASE_TS = 1_700_000_000_000


class BrokenTracker:
    def changed_ranges(self, disk, prev_change_id):
        raise ConnectionError("lost session")


def backup(settings, vm, snapshot, disks, tool, tracker=None, step=0):
    return backup_vm(settings, vm, snapshot, disks, tool, tracker, timestamp_ms=BASE_TS + step * 1000)


def test_independent_disks_are_skipped(settings, vm, snapshot, make_disk, tool):
    disks = [make_disk(), make_disk(uuid="6000C29a-0002", device_key=2001, unit_number=1,
                                    disk_mode="independent_nonpersistent")]
    assert backup(settings, vm, snapshot, disks, tool)
    assert len(tool.commands) == 1

    manager = ArchiveManager(settings, vm)
    with manager.locked():
        manifest = manager.select_generation()
        assert manifest.num_disks == 2
        assert not manifest.is_disk_succeeded(1)


def test_metadata_only_generation(settings, vm, snapshot, disk, tool):
    manager = ArchiveManager(settings, vm)
    with manager.editing():
        assert backup_generation(manager, snapshot, [disk], tool, metadata_only=True, timestamp_ms=BASE_TS)
    assert tool.commands == []
    assert manager.chain.latest_succeeded_generation_id() == 0


def test_without_tracker_falls_back_to_diff(settings, vm, snapshot, make_disk, tool):
    assert backup(settings, vm, snapshot, [make_disk()], tool)
    assert backup(settings, vm, snapshot, [make_disk(change_id="52 aa bb cc/2")], tool, step=1)
    cmd = tool.commands[-1]
    assert cmd[3] == "diff"
    assert "--bmpin" not in cmd
    assert "--rdiffout" in cmd


def test_tracker_failure_falls_back_to_diff(settings, vm, snapshot, make_disk, tool):
    assert backup(settings, vm, snapshot, [make_disk()], tool)
    assert backup(settings, vm, snapshot, [make_disk(change_id="52 aa bb cc/2")], tool, BrokenTracker(), step=1)
    assert tool.commands[-1][3] == "diff"

    manager = ArchiveManager(settings, vm)
    with manager.locked():
        manifest = manager.select_generation(1)
        assert manifest.backup_mode(0) == BackupMode.DIFF
        assert manifest.is_changed(0) is True


def test_failed_dump_fails_generation_and_keeps_previous_files(settings, vm, snapshot, make_disk, tool):
    assert backup(settings, vm, snapshot, [make_disk()], tool)
    tool.fail = True
    assert not backup(settings, vm, snapshot, [make_disk(change_id="52 aa bb cc/2")], tool, step=1)

    manager = ArchiveManager(settings, vm)
    assert manager.chain.latest_succeeded_generation_id() == 0
    assert (settings.machine_directory(vm.moref) / "0" / "0.dump").exists()
    assert manager.chain.is_clean()


def test_dry_run_backup_creates_nothing(settings, vm, snapshot, disk, tool):
    assert backup_vm(settings, vm, snapshot, [disk], tool, dry_run=True)
    assert tool.commands == []
    assert not settings.machine_directory(vm.moref).exists()


def test_dry_run_backup_leaves_existing_archive_alone(settings, vm, snapshot, disk, tool):
    assert backup(settings, vm, snapshot, [disk], tool)
    chain_text = settings.chain_path(vm.moref).read_text()

    assert backup_vm(settings, vm, snapshot, [disk], tool, dry_run=True)
    assert len(tool.commands) == 1
    assert settings.chain_path(vm.moref).read_text() == chain_text


def test_check_generation(settings, vm, snapshot, make_disk, tool, make_tracker):
    assert backup(settings, vm, snapshot, [make_disk()], tool)
    assert backup(settings, vm, snapshot, [make_disk(change_id="52 aa bb cc/2")], tool, make_tracker([]), step=1)

    manager = ArchiveManager(settings, vm)
    gen1 = settings.machine_directory(vm.moref) / "1"
    assert check_generation(manager, tool, 0)
    assert tool.commands[-1] == [
        "/usr/bin/vmdkbkp", "check", "--digestin", str(gen1 / "0.digest"), str(gen1 / "0.dump")
    ]

    (gen1 / "0.dump").unlink()
    assert not check_generation(manager, tool, 0)


def test_restore_generation(settings, vm, snapshot, make_disk, tool, make_tracker):
    assert backup(settings, vm, snapshot, [make_disk()], tool)
    assert backup(settings, vm, snapshot, [make_disk(change_id="52 aa bb cc/2")], tool, make_tracker([(0, 1)]), step=1)

    gen1 = settings.machine_directory(vm.moref) / "1"
    provisioned = make_disk(remote_path="[datastore2] restored/restored.vmdk", change_id=None)
    manager = ArchiveManager(settings, vm)
    assert restore_generation(manager, tool, [provisioned], "vm-50", "snapshot-9", gen_id=0)

    cmd = tool.commands[-1]
    assert cmd[1] == "restore"
    assert cmd[cmd.index("--remote") + 1] == "[datastore2] restored/restored.vmdk"
    assert cmd[-2:] == [str(gen1 / "0.dump"), str(gen1 / "0.rdiff")]


def test_clean_failed_generations(settings, vm, snapshot, disk, tool):
    assert backup(settings, vm, snapshot, [disk], tool)
    tool.fail = True
    assert not backup(settings, vm, snapshot, [disk], tool, step=1)
    tool.fail = False
    assert backup(settings, vm, snapshot, [disk], tool, step=2)

    manager = ArchiveManager(settings, vm)
    failed_dir = settings.machine_directory(vm.moref) / "1"
    assert clean_failed_generations(manager, dry_run=True) == [1]
    assert failed_dir.exists()

    assert clean_failed_generations(manager) == [1]
    assert not failed_dir.exists()
    assert manager.chain.generation_ids() == [0, 2]
    assert manager.chain.is_clean()


def test_destroy_archive_respects_availability(settings, vm, snapshot, disk, tool):
    assert backup(settings, vm, snapshot, [disk], tool)
    index = refresh_machine_index(settings, [(vm, False)])
    manager = ArchiveManager(settings, vm)

    assert not destroy_archive(manager, index)
    assert settings.machine_directory(vm.moref).exists()

    index.refresh([(VmInfo(moref="vm-7", name="other"), False)])
    assert destroy_archive(manager, index)
    assert not settings.machine_directory(vm.moref).exists()


def test_force_destroys_available_machine(settings, vm, snapshot, disk, tool):
    assert backup(settings, vm, snapshot, [disk], tool)
    index = refresh_machine_index(settings, [(vm, False)])
    assert destroy_archive(ArchiveManager(settings, vm), index, force=True)
    assert not settings.machine_directory(vm.moref).exists()


def test_destroy_archive_without_succeeded_generation(settings, vm, snapshot, disk, tool):
    tool.fail = True
    assert not backup(settings, vm, snapshot, [disk], tool)
    index = refresh_machine_index(settings, [(vm, False)])

    assert destroy_archive(ArchiveManager(settings, vm), index)
    assert not settings.machine_directory(vm.moref).exists()


def test_refresh_machine_index_persists(settings, vm):
    refresh_machine_index(settings, [(vm, False)])
    index = MachineIndex.load(settings.machine_index_path)
    assert index.is_available(vm.moref)

    refresh_machine_index(settings, [])
    assert not MachineIndex.load(settings.machine_index_path).is_available(vm.moref)
