import pytest

from vmarchive.models import AdapterType, ArchiveState, BackupMode, VmInfo
from vmarchive.services.archive import (
    ArchiveManager,
    ChainIntegrityError,
    GenerationFailedError,
    get_archive_manager,
)
from vmarchive.services.archive.operations import backup_vm
from vmarchive.services.bitmap import ChangedBlockBitmap
from vmarchive.services.configstore import NotRegularFileError
from vmarchive.services.lock import LockTimeoutError
from vmarchive.services.profile import DirtyProfileError, ProfileMismatchError

MiB = 1024 * 1024
BASE_TS = 1_700_000_000_000


def run_backup(settings, vm, snapshot, disks, tool, tracker=None, step=0, requested=BackupMode.UNKNOWN):
    return backup_vm(settings, vm, snapshot, disks, tool, tracker, requested,
                     timestamp_ms=BASE_TS + step * 1000)


def gen_dir(settings, vm, gen_id):
    return settings.machine_directory(vm.moref) / str(gen_id)


def token(n):
    return f"52 aa bb cc/{n}"


def test_first_backup_is_full(settings, vm, snapshot, disk, tool, make_tracker):
    tracker = make_tracker([])
    assert run_backup(settings, vm, snapshot, [disk], tool, tracker)

    assert tracker.calls == []
    assert tool.commands[0][:4] == ["/usr/bin/vmdkbkp", "dump", "--mode", "full"]
    assert (gen_dir(settings, vm, 0) / "0.dump").exists()
    assert ArchiveManager.archive_state(settings, vm.moref) == ArchiveState.HAS_SUCCEEDED

    manager = ArchiveManager(settings, vm)
    with manager.locked():
        manifest = manager.select_generation()
        assert manifest.generation_id == 0
        assert manifest.is_succeeded()
        assert manifest.backup_mode(0) == BackupMode.FULL
        assert manifest.num_succeeded_disks == 1
        assert manager.chain.is_clean()


def test_unchanged_incremental_relocates_dump(settings, vm, snapshot, make_disk, tool, make_tracker):
    assert run_backup(settings, vm, snapshot, [make_disk()], tool)
    tracker = make_tracker([])
    assert run_backup(settings, vm, snapshot, [make_disk(change_id=token(2))], tool, tracker, step=1)

    gen0, gen1 = gen_dir(settings, vm, 0), gen_dir(settings, vm, 1)
    assert tracker.calls == [("6000C29a-0001", token(1))]
    assert len(tool.commands) == 1
    assert not (gen0 / "0.dump").exists()
    assert not (gen0 / "0.digest").exists()
    assert (gen1 / "0.dump").exists()
    assert (gen1 / "0.digest").exists()

    manager = ArchiveManager(settings, vm)
    with manager.locked():
        manifest = manager.select_generation(1)
        assert manifest.backup_mode(0) == BackupMode.INCR
        assert manifest.is_changed(0) is False
        assert manager.dump_path_list_for_restore(0) == [gen1 / "0.dump"]

        manager.select_generation(0)
        assert manager.dump_path_list_for_restore(0) == [gen1 / "0.dump"]
        assert manager.digest_path_for_check(0) == gen1 / "0.digest"


def test_changed_incremental_keeps_reverse_delta(settings, vm, snapshot, make_disk, tool, make_tracker):
    assert run_backup(settings, vm, snapshot, [make_disk()], tool)
    tracker = make_tracker([(0, MiB)])
    assert run_backup(settings, vm, snapshot, [make_disk(change_id=token(2))], tool, tracker, step=1)

    gen0, gen1 = gen_dir(settings, vm, 0), gen_dir(settings, vm, 1)
    cmd = tool.commands[-1]
    assert cmd[3] == "incr"
    assert cmd[cmd.index("--dumpin") + 1] == str(gen0 / "0.dump")
    assert cmd[cmd.index("--bmpin") + 1] == str(gen1 / "0.bmp")
    assert str(ChangedBlockBitmap.load(gen1 / "0.bmp")) == "10000000"
    assert not (gen0 / "0.dump").exists()
    assert (gen0 / "0.digest").exists()

    manager = ArchiveManager(settings, vm)
    with manager.locked():
        assert manager.load_generation(1).is_deleted_previous_dump(0)
        manager.select_generation(0)
        assert manager.dump_path_list_for_restore(0) == [gen1 / "0.dump", gen1 / "0.rdiff"]
        assert manager.digest_path_for_check(0) == gen0 / "0.digest"


def test_restore_walks_past_failed_generation(settings, vm, snapshot, make_disk, tool, make_tracker):
    changed = make_tracker([(0, 1)])
    assert run_backup(settings, vm, snapshot, [make_disk()], tool)
    assert run_backup(settings, vm, snapshot, [make_disk(change_id=token(2))], tool, changed, step=1)
    assert run_backup(settings, vm, snapshot, [make_disk(change_id=token(3))], tool, changed, step=2)
    tool.fail = True
    assert not run_backup(settings, vm, snapshot, [make_disk(change_id=token(4))], tool, changed, step=3)
    tool.fail = False
    assert run_backup(settings, vm, snapshot, [make_disk(change_id=token(5))], tool, changed, step=4)

    gen2, gen4 = gen_dir(settings, vm, 2), gen_dir(settings, vm, 4)
    manager = ArchiveManager(settings, vm)
    with manager.locked():
        assert manager.chain.prev_succeeded_generation_id(4) == 2
        assert manager.load_generation(4).prev_generation_id == 2
        assert manager.failed_generation_ids() == [3]

        manager.select_generation(2)
        assert manager.dump_path_list_for_restore(0) == [gen4 / "0.dump", gen4 / "0.rdiff"]
        manager.select_generation(1)
        assert manager.dump_path_list_for_restore(0) == [gen4 / "0.dump", gen4 / "0.rdiff", gen2 / "0.rdiff"]

        with pytest.raises(GenerationFailedError):
            manager.select_generation(3)


def test_broken_chain_is_reported(settings, vm, snapshot, make_disk, tool, make_tracker):
    assert run_backup(settings, vm, snapshot, [make_disk()], tool)
    assert run_backup(settings, vm, snapshot, [make_disk(change_id=token(2))], tool, make_tracker([(0, 1)]), step=1)
    (gen_dir(settings, vm, 1) / "0.rdiff").unlink()

    manager = ArchiveManager(settings, vm)
    with manager.locked():
        manager.select_generation(0)
        with pytest.raises(ChainIntegrityError):
            manager.dump_path_list_for_restore(0)


def eligibility(settings, vm, snapshot, disk, step):
    manager = ArchiveManager(settings, vm)
    with manager.editing():
        manager.prepare_new_generation(snapshot, [disk], BASE_TS + step * 1000)
        result = (manager.can_exec_diff_backup(disk.uuid), manager.can_exec_incr_backup(disk.uuid))
        manager.finalize_backup(False)
    return result


def test_eligibility(settings, vm, snapshot, make_disk, tool):
    assert run_backup(settings, vm, snapshot, [make_disk()], tool)

    assert eligibility(settings, vm, snapshot, make_disk(change_id=token(2)), 1) == (True, True)
    assert eligibility(settings, vm, snapshot, make_disk(change_id=None), 2) == (True, False)
    assert eligibility(settings, vm, snapshot, make_disk(capacity=16 * MiB), 3) == (False, False)
    assert eligibility(settings, vm, snapshot, make_disk(uuid="6000C29a-0009"), 4) == (False, False)

    (gen_dir(settings, vm, 0) / "0.digest").unlink()
    assert eligibility(settings, vm, snapshot, make_disk(change_id=token(2)), 5) == (False, False)


def test_no_previous_generation_means_full(settings, vm, snapshot, disk):
    assert eligibility(settings, vm, snapshot, disk, 0) == (False, False)
    assert ArchiveManager.archive_state(settings, vm.moref) == ArchiveState.EMPTY


@pytest.mark.parametrize("requested,can_diff,can_incr,expected", [
    (BackupMode.INCR, True, True, BackupMode.INCR),
    (BackupMode.INCR, True, False, BackupMode.DIFF),
    (BackupMode.DIFF, True, True, BackupMode.DIFF),
    (BackupMode.FULL, True, True, BackupMode.FULL),
    (BackupMode.UNKNOWN, True, True, BackupMode.INCR),
    (BackupMode.UNKNOWN, False, False, BackupMode.FULL),
])
def test_determine_backup_mode(requested, can_diff, can_incr, expected):
    assert ArchiveManager.determine_backup_mode(requested, can_diff, can_incr) == expected


def test_retention_deletes_old_generations(settings, vm, snapshot, disk, tool):
    settings.KEEP_GENERATIONS = 2
    for step in range(5):
        assert run_backup(settings, vm, snapshot, [disk], tool, step=step, requested=BackupMode.FULL)

    manager = ArchiveManager(settings, vm)
    assert manager.chain.generation_ids() == [2, 3, 4]
    assert not gen_dir(settings, vm, 0).exists()
    assert not gen_dir(settings, vm, 1).exists()
    assert gen_dir(settings, vm, 2).exists()


def test_interrupted_session_leaves_archive_dirty(settings, vm):
    manager = ArchiveManager(settings, vm)
    with pytest.raises(RuntimeError):
        with manager.editing():
            raise RuntimeError("crash")

    assert manager.chain.path.with_name("vmbkp_vm.profile.bak").exists()
    other = ArchiveManager(settings, vm)
    with pytest.raises(DirtyProfileError):
        with other.locked():
            pass

    other.mark_clean()
    with other.locked():
        assert other.chain.is_clean()


def test_concurrent_session_is_refused(settings, vm):
    first = ArchiveManager(settings, vm)
    second = ArchiveManager(settings, vm)
    with first.locked():
        with pytest.raises(LockTimeoutError):
            with second.locked(0):
                pass


def test_profile_of_another_machine_is_refused(settings, vm):
    ArchiveManager(settings, vm)
    other_dir = settings.machine_directory("vm-43")
    other_dir.mkdir(parents=True)
    settings.chain_path(vm.moref).replace(settings.chain_path("vm-43"))

    with pytest.raises(ProfileMismatchError):
        ArchiveManager(settings, VmInfo(moref="vm-43", name="web02"))


def test_editing_records_current_name(settings, vm):
    ArchiveManager(settings, vm)
    renamed = ArchiveManager(settings, VmInfo(moref=vm.moref, name="web01-renamed"))
    with renamed.editing():
        pass
    assert ArchiveManager(settings, vm).chain.name == "web01-renamed"


def test_controller_layout_and_disk_matching(settings, vm, snapshot, make_disk, tool):
    disks = [
        make_disk(),
        make_disk(uuid="6000C29a-0002", device_key=2001, unit_number=1),
        make_disk(uuid="6000C29a-0003", device_key=3000, controller_key=200, adapter_type=AdapterType.IDE),
        make_disk(uuid="6000C29a-0004", device_key=2002, unit_number=2, disk_mode="independent_persistent"),
    ]
    assert run_backup(settings, vm, snapshot, disks, tool)

    manager = ArchiveManager(settings, vm)
    with manager.locked():
        manager.select_generation()
        layout = manager.controller_layout()
        assert [(c.adapter_type, c.controller_key) for c in layout] == [
            (AdapterType.IDE, 200),
            (AdapterType.LSILOGIC, 1000),
        ]
        assert [d.unit_number for d in layout[1].disks] == [0, 1]
        assert manager.target_disk_id(disks[1]) == 1
        assert manager.target_disk_id(make_disk(capacity=MiB)) is None


def test_status_string(settings, vm, snapshot, disk, tool):
    assert run_backup(settings, vm, snapshot, [disk], tool)
    tool.fail = True
    assert not run_backup(settings, vm, snapshot, [disk], tool, step=1)

    manager = ArchiveManager(settings, vm)
    text = manager.status_string(detail=True)
    lines = text.split("\n\t")
    assert lines[0].startswith("[vm-42][web01][Latest 0 ")
    assert lines[0].endswith("[Clean 1/2]")
    assert lines[1].startswith("[Gen 0 ")
    assert "[0 scsi0:0 8MB full " in lines[1]
    assert lines[2].endswith("----------_FAILED_----------")


def test_archive_state_rejects_chain_that_is_not_a_file(settings, vm):
    assert ArchiveManager.archive_state(settings, vm.moref) == ArchiveState.NONE
    settings.chain_path(vm.moref).mkdir(parents=True)
    with pytest.raises(NotRegularFileError):
        ArchiveManager.archive_state(settings, vm.moref)


def test_archive_state_of_failed_only_archive_is_empty(settings, vm, snapshot, disk, tool):
    tool.fail = True
    assert not run_backup(settings, vm, snapshot, [disk], tool)
    assert ArchiveManager.archive_state(settings, vm.moref) == ArchiveState.EMPTY


def test_failed_move_keeps_current_file_names(settings, vm, snapshot, make_disk, tool):
    assert run_backup(settings, vm, snapshot, [make_disk()], tool)
    (gen_dir(settings, vm, 0) / "0.digest").unlink()

    manager = get_archive_manager(settings, vm.moref, vm.name)
    with manager.editing():
        curr = manager.prepare_new_generation(
            snapshot, [make_disk(change_id=token(2))], BASE_TS + 1000, compress=True
        )
        assert not manager.move_dump_and_digest_from_prev(0)
        assert curr.dump_filename(0) == "0.dump.gz"
        assert curr.digest_filename(0) == "0.digest.gz"
        assert (gen_dir(settings, vm, 0) / "0.dump").exists()
