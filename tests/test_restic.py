"""Tests for restic invocation and repository operations."""

import json
import stat
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from resticdroid.errors import BinaryVersionError, ShellError, ToolInvocationFailure
from resticdroid.restic.executor import BinaryState, ResticExecutor, restic_args
from resticdroid.restic.models import SnapshotRecord
from resticdroid.restic.repository import ResticRepository
from resticdroid.root.shell import ShellResult


class TestResticArgs:
    """Test argument list construction."""

    def test_flags(self):
        """Test keyword options become flags."""
        args = restic_args("restore", "abc", target="/tmp/x", include=["/a", "/b"], json=True, dry_run=False)

        assert args == ["restore", "abc", "--target", "/tmp/x", "--include", "/a", "--include", "/b", "--json"]


class TestResticExecutor:
    """Test the restic executor."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.cache_dir = Path(self.temp_dir.name)
        self.shell = MagicMock()
        self.executor = ResticExecutor(self.shell, restic_path="/data/local/bin/restic", cache_dir=self.cache_dir)

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_password_file(self):
        """Test the password file is private and removed afterwards."""
        with self.executor.password_file("s3cret") as path:
            assert path.read_text() == "s3cret"
            assert stat.S_IMODE(path.stat().st_mode) == 0o600
            assert path.parent == self.cache_dir

        assert not path.exists()

    def test_build_command(self):
        """Test the command passes the password by file and never inline."""
        command = self.executor.build_command("/sdcard/backup", ["snapshots", "--json"], Path("/p/pass"))

        assert command == (
            f"RESTIC_PASSWORD_FILE=/p/pass RESTIC_CACHE_DIR={self.cache_dir}/restic "
            "/data/local/bin/restic -r /sdcard/backup snapshots --json"
        )

    def test_build_command_with_cwd(self):
        """Test running from another directory."""
        command = self.executor.build_command("/repo", ["backup", "abc"], Path("/p/pass"), cwd="/data/meta dir")

        assert command.startswith("cd '/data/meta dir' && RESTIC_PASSWORD_FILE=")

    def test_run_streams_lines(self):
        """Test output lines are delivered and the password never reaches the command."""
        lines = []

        def stream(command, on_line, cancel_event=None):
            assert "s3cret" not in command
            on_line('{"message_type":"status","percent_done":1}')
            return ShellResult(code=0, out=['{"message_type":"status","percent_done":1}'])

        self.shell.stream.side_effect = stream

        output = self.executor.run("/repo", "s3cret", ["backup"], on_line=lines.append)

        assert output == '{"message_type":"status","percent_done":1}'
        assert lines == [output]
        assert list(self.cache_dir.glob("restic-pass-*")) == []

    def test_run_failure(self):
        """Test non-zero exits raise with restic's stderr."""
        self.shell.stream.return_value = ShellResult(code=1, err=["Fatal: wrong password or no key found"])

        with pytest.raises(ToolInvocationFailure, match="wrong password"):
            self.executor.run("/repo", "s3cret", ["snapshots"])
        assert list(self.cache_dir.glob("restic-pass-*")) == []

    def test_run_shell_error(self):
        """Test shell errors surface as tool failures."""
        self.shell.stream.side_effect = ShellError("su not found")

        with pytest.raises(ToolInvocationFailure, match="Could not run restic snapshots"):
            self.executor.run("/repo", "s3cret", ["snapshots"])

    def test_binary_status(self):
        """Test version detection."""
        self.shell.run.return_value = ShellResult(code=0, out=["restic 0.18.0 compiled with go1.24.1 on linux/arm64"])

        status = self.executor.binary_status()

        assert status.state is BinaryState.INSTALLED
        assert status.version == "0.18.0"

    def test_binary_missing(self):
        """Test a missing binary."""
        self.shell.run.return_value = ShellResult(code=127, err=["sh: restic: not found"])

        assert self.executor.binary_status().state is BinaryState.NOT_INSTALLED
        with pytest.raises(ToolInvocationFailure):
            self.executor.ensure_ready()

    def test_version_pinning(self):
        """Test a different version is refused in strict mode and tolerated otherwise."""
        self.shell.run.return_value = ShellResult(code=0, out=["restic 0.17.3 compiled with go1.23"])

        with pytest.raises(BinaryVersionError):
            self.executor.ensure_ready()

        lenient = ResticExecutor(self.shell, cache_dir=self.cache_dir, strict=False)
        lenient.ensure_ready()
        lenient.ensure_ready()
        assert self.shell.run.call_count == 2


class TestResticRepository:
    """Test repository operations with a mocked executor."""

    def setup_method(self):
        self.executor = MagicMock()
        self.repo = ResticRepository(self.executor, "/sdcard/backup", "s3cret")

    def _args(self):
        return self.executor.run.call_args.args[2]

    def test_snapshots_sorted_and_filtered(self):
        """Test snapshots are filtered by all tags and sorted newest first."""
        self.executor.run.return_value = json.dumps([
            {"id": "aaa", "short_id": "aaa", "time": "2024-05-01T10:00:00.123456789+02:00",
             "paths": ["/data/data/com.example.app"], "tags": ["restoid", "backup"]},
            {"id": "bbb", "short_id": "bbb", "time": "2024-06-01T10:00:00Z", "paths": None, "tags": None},
        ])

        records = self.repo.snapshots()

        assert [r.id for r in records] == ["bbb", "aaa"]
        assert records[0].paths == ()
        assert self._args() == ["snapshots", "--json", "--tag", "restoid,backup"]

    def test_snapshots_null(self):
        """Test restic's null output for an empty repository."""
        self.executor.run.return_value = "null"

        assert self.repo.snapshots(tags=()) == []
        assert self._args() == ["snapshots", "--json"]

    def test_snapshots_unreadable(self):
        """Test garbage output raises."""
        self.executor.run.return_value = "not json"

        with pytest.raises(ToolInvocationFailure):
            self.repo.snapshots()

    def test_find_snapshot_by_prefix(self):
        """Test short ID lookup."""
        self.executor.run.return_value = json.dumps([
            {"id": "4f2a9c1e0b7d", "short_id": "4f2a9c1e", "time": "2024-05-01T10:00:00Z"},
        ])

        assert self.repo.find_snapshot("4f2a").id == "4f2a9c1e0b7d"
        assert self.repo.find_snapshot("ffff") is None

    def test_lazy_id(self):
        """Test the repository ID is read from the config once."""
        self.executor.run.return_value = json.dumps({"version": 2, "id": "5c3f8e0d2a", "chunker_polynomial": "x"})

        assert self.repo.id == "5c3f8e0d2a"
        assert self.repo.id == "5c3f8e0d2a"
        self.executor.run.assert_called_once()

    def test_forget_policy(self):
        """Test retention applies to app backups only."""
        self.executor.run.return_value = "remove 2 snapshots:\n"

        summary = self.repo.forget(keep_last=3, keep_weekly=2, prune=True)

        assert summary == "Removed 2 snapshot(s)."
        assert self._args() == [
            "forget", "--tag", "restoid,backup", "--prune", "--keep-last", "3", "--keep-weekly", "2"
        ]

    def test_configured_backup_tags(self):
        """Test listing and retention follow the configured backup tags."""
        repo = ResticRepository(self.executor, "/sdcard/backup", "s3cret", backup_tags=["droid", "nightly"])
        self.executor.run.return_value = "[]"

        repo.snapshots()
        assert self._args() == ["snapshots", "--json", "--tag", "droid,nightly"]

        self.executor.run.return_value = ""
        repo.forget(keep_last=2)
        assert self._args() == ["forget", "--tag", "droid,nightly", "--keep-last", "2"]

    def test_forget_requires_policy(self):
        """Test forget without any keep option is rejected."""
        with pytest.raises(ValueError):
            self.repo.forget()
        self.executor.run.assert_not_called()

    def test_forget_metadata(self):
        """Test metadata retention uses the metadata tag pair."""
        self.executor.run.return_value = ""

        self.repo.forget_metadata(keep_last=5)

        assert self._args() == ["forget", "--tag", "restoid,metadata", "--keep-last", "5"]

    def test_backup_args(self):
        """Test the backup command line."""
        self.repo.backup(Path("/cache/files.txt"), tags=["restoid", "backup"], excludes=["/data/data/x/cache"])

        assert self._args() == [
            "backup", "--files-from", "/cache/files.txt", "--json",
            "--tag", "restoid", "--tag", "backup",
            "--exclude", "/data/data/x/cache", "--verbose=2",
        ]

    def test_backup_directory(self):
        """Test relative backups run from the parent directory."""
        self.repo.backup_directory("/data/meta", "5c3f8e0d2a", tags=("restoid", "metadata"))

        assert self._args() == ["backup", "5c3f8e0d2a", "--tag", "restoid", "--tag", "metadata"]
        assert self.executor.run.call_args.kwargs["cwd"] == "/data/meta"

    def test_restore_args(self):
        """Test the restore command line."""
        self.repo.restore("4f2a9c1e", "/cache/staging/restore-1", includes=["/data/data/x"])

        assert self._args() == [
            "restore", "4f2a9c1e", "--target", "/cache/staging/restore-1",
            "--exclude-xattr", "security.selinux", "--include", "/data/data/x", "--json",
        ]

    def test_change_password(self):
        """Test the new password is passed by file."""
        self.executor.password_file.return_value.__enter__.return_value = Path("/cache/new-pass")

        self.repo.change_password("n3w")

        assert self._args() == ["key", "passwd", "--new-password-file", Path("/cache/new-pass")]
        assert self.repo.password == "n3w"

    def test_exists_remote(self):
        """Test remote repositories are assumed to exist."""
        repo = ResticRepository(self.executor, "sftp:host:/srv/restic", "s3cret")

        assert repo.exists()
        self.executor.shell.exists.assert_not_called()


class TestSnapshotRecord:
    """Test snapshot records."""

    def test_metadata_flag(self):
        """Test metadata snapshots are recognised by their tags."""
        record = SnapshotRecord(id="a", time="2024-05-01T10:00:00Z", tags=["metadata", "restoid"])

        assert record.is_metadata
        assert record.timestamp.year == 2024

    def test_unparseable_time(self):
        """Test unparseable times yield no timestamp."""
        assert SnapshotRecord(id="a", time="yesterday").timestamp is None
