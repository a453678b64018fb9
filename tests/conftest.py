from pathlib import Path

import pytest

from vmarchive.core.config import Settings
from vmarchive.models import AdapterType, DiskInfo, SnapshotInfo, VmInfo
from vmarchive.services.archive import DiskCopyTool

MiB = 1024 * 1024


class FakeDiskTool(DiskCopyTool):
    """Records commands and creates the output files a real dump would."""

    def __init__(self):
        super().__init__("/usr/bin/vmdkbkp", server="vc01", username="admin", password="secret")
        self.commands = []
        self.fail = False

    def run(self, cmd, cwd, log_path, err_path):
        self.commands.append(list(cmd))
        if self.fail:
            return False
        if cmd[1] == "dump":
            for flag in ("--dumpout", "--digestout", "--rdiffout"):
                if flag in cmd:
                    Path(cmd[cmd.index(flag) + 1]).write_text(f"{flag} {cmd[3]}\n")
        return True


class FakeTracker:
    def __init__(self, ranges=None):
        self.ranges = ranges
        self.calls = []

    def changed_ranges(self, disk, prev_change_id):
        self.calls.append((disk.uuid, prev_change_id))
        return self.ranges


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ROOT_DIRECTORY=tmp_path / "archive",
        KEEP_GENERATIONS=5,
        LOCK_TIMEOUT=0,
        CLEAN_LOCK_TIMEOUT=0,
        INDEX_LOCK_TIMEOUT=0,
    )


@pytest.fixture
def vm():
    return VmInfo(moref="vm-42", name="web01")


@pytest.fixture
def snapshot():
    return SnapshotInfo(moref="snapshot-7", name="vmarchive-snapshot")


def _make_disk(**overrides):
    values = dict(
        uuid="6000C29a-0001",
        remote_path="[datastore1] web01/web01.vmdk",
        capacity=8 * MiB,
        change_id="52 aa bb cc/1",
        device_key=2000,
        controller_key=1000,
        bus_number=0,
        unit_number=0,
        adapter_type=AdapterType.LSILOGIC,
    )
    values.update(overrides)
    return DiskInfo(**values)


@pytest.fixture
def make_disk():
    return _make_disk


@pytest.fixture
def disk():
    return _make_disk()


@pytest.fixture
def tool():
    return FakeDiskTool()


@pytest.fixture
def make_tracker():
    return FakeTracker
