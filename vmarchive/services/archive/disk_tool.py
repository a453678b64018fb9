"""
Invocation of the external disk copy tool.

The tool does the actual byte transfer. This module only builds its argument
list, runs it inside a generation directory with output captured to log
files, and turns the exit status into a boolean.
"""
import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Union

from vmarchive.models import BackupMode

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class DiskCopyTool:
    """Builds and runs dump, restore and check commands."""

    def __init__(
        self,
        tool_path: str,
        server: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Args:
            tool_path: Executable of the copy tool
            server: Hypervisor management server
            username: Login for the server
            password: Password for the server
            timeout: Seconds before a run is abandoned, None for no limit
        """
        self.tool_path = tool_path
        self.server = server
        self.username = username
        self.password = password
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "DiskCopyTool":
        return cls(
            tool_path=settings.DISK_TOOL_PATH,
            server=settings.SERVER,
            username=settings.USERNAME,
            password=settings.PASSWORD,
        )

    def _connection_args(self) -> List[str]:
        args = []
        for flag, value in (("--server", self.server),
                            ("--username", self.username),
                            ("--password", self.password)):
            if value is not None:
                args.extend([flag, value])
        return args

    def dump_command(
        self,
        mode: BackupMode,
        vm_moref: str,
        snapshot_moref: str,
        remote_path: str,
        dump_out: PathLike,
        digest_out: PathLike,
        dump_in: Optional[PathLike] = None,
        digest_in: Optional[PathLike] = None,
        bmp_in: Optional[PathLike] = None,
        rdiff_out: Optional[PathLike] = None,
        san: bool = False
    ) -> List[str]:
        """
        Argument list for dumping one disk.

        Previous dump and digest are passed for diff and incr, the bitmap
        only for incr, and the reverse delta output for diff and incr.
        """
        if mode not in (BackupMode.FULL, BackupMode.DIFF, BackupMode.INCR):
            raise ValueError(f"Cannot dump with mode {mode}")

        cmd = [self.tool_path, "dump", "--mode", mode.value]
        cmd += self._connection_args()
        cmd += ["--vm", vm_moref, "--snapshot", snapshot_moref, "--remote", remote_path]
        if san:
            cmd.append("--san")

        incremental = mode in (BackupMode.DIFF, BackupMode.INCR)
        if incremental:
            if dump_in is None or digest_in is None:
                raise ValueError(f"Mode {mode.value} needs the previous dump and digest")
            cmd += ["--dumpin", str(dump_in)]
        cmd += ["--dumpout", str(dump_out)]
        if incremental:
            cmd += ["--digestin", str(digest_in)]
        cmd += ["--digestout", str(digest_out)]
        if mode == BackupMode.INCR:
            if bmp_in is None:
                raise ValueError("Mode incr needs a changed-block bitmap")
            cmd += ["--bmpin", str(bmp_in)]
        if incremental and rdiff_out is not None:
            cmd += ["--rdiffout", str(rdiff_out)]
        return cmd

    def restore_command(
        self,
        vm_moref: str,
        snapshot_moref: str,
        remote_path: str,
        digest_in: PathLike,
        paths: Sequence[PathLike],
        san: bool = False
    ) -> List[str]:
        """Argument list for writing a dump and its deltas back to a disk."""
        cmd = [self.tool_path, "restore"]
        cmd += self._connection_args()
        cmd += ["--vm", vm_moref, "--snapshot", snapshot_moref, "--remote", remote_path]
        if san:
            cmd.append("--san")
        cmd += ["--digestin", str(digest_in), "--omitzeroblock"]
        cmd += [str(p) for p in paths]
        return cmd

    def check_command(self, digest_in: PathLike, paths: Sequence[PathLike]) -> List[str]:
        """Argument list for verifying a dump and its deltas against a digest."""
        return [self.tool_path, "check", "--digestin", str(digest_in)] + [str(p) for p in paths]

    def _printable(self, cmd: Sequence[str]) -> str:
        shown = list(cmd)
        for i, arg in enumerate(shown[:-1]):
            if arg == "--password":
                shown[i + 1] = "********"
        return " ".join(shown)

    def run(self, cmd: Sequence[str], cwd: PathLike, log_path: PathLike, err_path: PathLike) -> bool:
        """
        Run a command, appending its stdout and stderr to the given files.

        Returns:
            True if the command exited with status 0
        """
        logger.info(f"Running: {self._printable(cmd)} (in {cwd})")
        try:
            with open(log_path, "a") as out, open(err_path, "a") as err:
                result = subprocess.run(
                    list(cmd),
                    cwd=str(cwd),
                    stdout=out,
                    stderr=err,
                    check=False,
                    timeout=self.timeout
                )
        except subprocess.TimeoutExpired:
            logger.error(f"Disk tool timed out after {self.timeout}s: {self._printable(cmd)}")
            return False
        except OSError as e:
            logger.error(f"Failed to run disk tool {self.tool_path}: {e}")
            return False

        if result.returncode != 0:
            logger.warning(f"Disk tool exited with status {result.returncode}, see {err_path}")
            return False
        return True

    def dump(self, cmd: Sequence[str], generation_dir: PathLike, disk_id: int) -> bool:
        """Run a dump command with logs ``<diskId>.log`` and ``<diskId>.err``."""
        generation_dir = Path(generation_dir)
        return self.run(
            cmd,
            generation_dir,
            generation_dir / f"{disk_id}.log",
            generation_dir / f"{disk_id}.err",
        )

    def _operation_logs(self, operation: str, generation_dir: Path, moref: str, gen_id: int, disk_id: int):
        stem = f"vmdkbkp.{operation}.{moref}.{gen_id}.{disk_id}"
        return generation_dir / f"{stem}.log", generation_dir / f"{stem}.err"

    def restore(self, cmd: Sequence[str], generation_dir: PathLike, moref: str, gen_id: int, disk_id: int) -> bool:
        generation_dir = Path(generation_dir)
        log_path, err_path = self._operation_logs("restore", generation_dir, moref, gen_id, disk_id)
        return self.run(cmd, generation_dir, log_path, err_path)

    def check(
        self,
        cmd: Sequence[str],
        generation_dir: PathLike,
        moref: str,
        gen_id: int,
        disk_id: int,
        dry_run: bool = False
    ) -> bool:
        """Run a check command; in dry-run mode only print it."""
        if dry_run:
            print(self._printable(cmd))
            return True
        generation_dir = Path(generation_dir)
        log_path, err_path = self._operation_logs("check", generation_dir, moref, gen_id, disk_id)
        return self.run(cmd, generation_dir, log_path, err_path)
