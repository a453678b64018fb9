from pathlib import Path

import pytest
from pydantic import ValidationError

from vmarchive.core.config import Settings

GLOBAL_CONF = """\
[global]
\troot_directory = /srv/vmarchive
\tvmdkbkp_path = /opt/vmdkbkp/bin/vmdkbkp
\tkeep_generations = 3
[vsphere]
\tserver = vc01.example.com
\turl = https://vc01.example.com/sdk
\tusername = backup
\tpassword = "s3cret "
"""


def test_from_global_file(tmp_path):
    path = tmp_path / "vmbkp_global.conf"
    path.write_text(GLOBAL_CONF)

    settings = Settings.from_global_file(path)
    assert settings.ROOT_DIRECTORY == Path("/srv/vmarchive")
    assert settings.DISK_TOOL_PATH == "/opt/vmdkbkp/bin/vmdkbkp"
    assert settings.KEEP_GENERATIONS == 3
    assert settings.SERVER == "vc01.example.com"
    assert settings.SERVER_URL == "https://vc01.example.com/sdk"
    assert settings.PASSWORD == "s3cret "


def test_overrides_win_over_file(tmp_path):
    path = tmp_path / "vmbkp_global.conf"
    path.write_text(GLOBAL_CONF)
    settings = Settings.from_global_file(path, KEEP_GENERATIONS=7, ROOT_DIRECTORY=tmp_path)
    assert settings.KEEP_GENERATIONS == 7
    assert settings.ROOT_DIRECTORY == tmp_path


def test_invalid_keep_generations_is_ignored(tmp_path):
    path = tmp_path / "vmbkp_global.conf"
    path.write_text("[global]\n\tkeep_generations = 0\n")
    assert Settings.from_global_file(path).KEEP_GENERATIONS == Settings().KEEP_GENERATIONS


def test_validators():
    with pytest.raises(ValidationError):
        Settings(KEEP_GENERATIONS=0)
    with pytest.raises(ValidationError):
        Settings(BITMAP_BLOCK_SIZE=0)
    assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"


def test_environment_prefix(monkeypatch):
    monkeypatch.setenv("VMARCHIVE_KEEP_GENERATIONS", "9")
    assert Settings().KEEP_GENERATIONS == 9


def test_path_helpers(tmp_path):
    settings = Settings(ROOT_DIRECTORY=tmp_path)
    assert settings.machine_index_path == tmp_path / "vmbkp_all_vm.profile"
    assert settings.group_config_path == tmp_path / "vmbkp_group.conf"
    assert settings.chain_path("vm-42") == tmp_path / "vm-42" / "vmbkp_vm.profile"
