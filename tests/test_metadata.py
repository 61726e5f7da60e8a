"""Tests for the snapshot metadata store."""

import json
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

from resticdroid.backup.metadata import AppMetadataEntry, MetadataStore
from resticdroid.errors import ToolInvocationFailure
from resticdroid.restic.models import METADATA_TAGS, SnapshotRecord

REPO_ID = "5c3f8e0d2a"


class TestMetadataStore:
    """Test local metadata files."""

    def test_save_and_load(self):
        """Test saving and reading back snapshot metadata."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir) / "metadata")
            entries = {
                "com.example.app": AppMetadataEntry(
                    package_name="com.example.app",
                    version_name="2.1",
                    version_code=210,
                    size=4096,
                    types=["apk", "data"],
                ),
                "com.example.legacy": AppMetadataEntry(package_name="com.example.legacy"),
            }

            store.save(REPO_ID, "abc123", entries)
            loaded = store.get_metadata_for_snapshot(REPO_ID, "abc123")

            assert loaded["com.example.app"].version_code == 210
            assert loaded["com.example.app"].types == ["apk", "data"]
            assert loaded["com.example.app"].package_name == "com.example.app"
            assert loaded["com.example.legacy"].version_code == 0
            assert loaded["com.example.legacy"].version_name == ""

    def test_file_format(self):
        """Test the on-disk JSON layout."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir))
            path = store.save(
                REPO_ID,
                "abc123",
                {"com.example.app": AppMetadataEntry(package_name="com.example.app", version_name="1.0",
                                                     version_code=1, size=10, types=["data"])},
            )

            assert path == Path(temp_dir) / REPO_ID / "abc123.json"
            data = json.loads(path.read_text())
            assert data == {
                "apps": {
                    "com.example.app": {"versionName": "1.0", "versionCode": 1, "size": 10, "types": ["data"]}
                }
            }

    def test_save_replaces_without_leftovers(self):
        """Test a second save replaces the file and leaves no temporary files."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir))
            store.save(REPO_ID, "abc123", {"a": AppMetadataEntry(size=1)})
            store.save(REPO_ID, "abc123", {"b": AppMetadataEntry(size=2)})

            assert sorted(p.name for p in (Path(temp_dir) / REPO_ID).iterdir()) == ["abc123.json"]
            assert list(store.get_metadata_for_snapshot(REPO_ID, "abc123")) == ["b"]

    def test_missing_and_corrupt(self):
        """Test missing and unreadable files read as empty."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir))
            assert store.get_metadata_for_snapshot(REPO_ID, "nope") == {}

            repo_dir = Path(temp_dir) / REPO_ID
            repo_dir.mkdir()
            (repo_dir / "broken.json").write_text("{not json")

            assert store.get_metadata_for_snapshot(REPO_ID, "broken") == {}
            assert store.get_all_metadata(REPO_ID) == {"broken": {}}

    def test_delete(self):
        """Test deleting snapshot metadata."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir))
            store.save(REPO_ID, "abc123", {"a": AppMetadataEntry()})

            assert store.delete_metadata_for_snapshot(REPO_ID, "abc123")
            assert store.delete_metadata_for_snapshot(REPO_ID, "abc123")
            assert store.get_all_metadata(REPO_ID) == {}


class TestMetadataMirror:
    """Test mirroring metadata into the repository."""

    def test_mirror_backs_up_and_prunes(self):
        """Test the metadata directory is backed up and old copies forgotten."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir), retention=3)
            store.save(REPO_ID, "abc123", {"a": AppMetadataEntry()})
            repo = MagicMock()

            assert store.mirror(repo, REPO_ID)

            repo.backup_directory.assert_called_once_with(Path(temp_dir), REPO_ID, tags=METADATA_TAGS)
            repo.forget_metadata.assert_called_once_with(keep_last=3)

    def test_mirror_failure_is_reported(self):
        """Test a failing backup is reported without raising."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir))
            store.save(REPO_ID, "abc123", {"a": AppMetadataEntry()})
            repo = MagicMock()
            repo.backup_directory.side_effect = ToolInvocationFailure("locked")

            assert not store.mirror(repo, REPO_ID)
            repo.forget_metadata.assert_not_called()

    def test_mirror_without_local_metadata(self):
        """Test nothing is mirrored for an unknown repository."""
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = MagicMock()

            assert not MetadataStore(Path(temp_dir)).mirror(repo, REPO_ID)
            repo.backup_directory.assert_not_called()


class TestMetadataBootstrap:
    """Test recovering metadata from the repository."""

    def _snapshot(self):
        return SnapshotRecord(id="meta1", time="2024-05-01T10:00:00Z", tags=list(METADATA_TAGS))

    def test_merge_keeps_local_files(self):
        """Test restored files are merged without overwriting local ones."""
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            store = MetadataStore(root / "metadata", staging_root=root / "staging")
            store.save(REPO_ID, "local1", {"com.local": AppMetadataEntry(size=1)})

            def restore(snapshot_id, staging):
                source = Path(staging) / "data" / "metadata" / REPO_ID
                source.mkdir(parents=True)
                (source / "local1.json").write_text(json.dumps({"apps": {"com.remote": {"size": 5}}}))
                (source / "remote1.json").write_text(json.dumps({"apps": {"com.remote": {"versionCode": 7}}}))

            repo = MagicMock()
            repo.latest_snapshot.return_value = self._snapshot()
            repo.restore.side_effect = restore

            added = store.bootstrap(repo, REPO_ID)

            assert added == 1
            repo.latest_snapshot.assert_called_once_with(tags=METADATA_TAGS)
            assert list(store.get_metadata_for_snapshot(REPO_ID, "local1")) == ["com.local"]
            assert store.get_metadata_for_snapshot(REPO_ID, "remote1")["com.remote"].version_code == 7
            assert list((root / "staging").iterdir()) == []

    def test_no_metadata_snapshot(self):
        """Test a repository without metadata snapshots."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir))
            repo = MagicMock()
            repo.latest_snapshot.return_value = None

            assert store.bootstrap(repo, REPO_ID) == 0
            repo.restore.assert_not_called()

    def test_restore_failure_is_tolerated(self):
        """Test a failing restore yields zero recovered files."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MetadataStore(Path(temp_dir) / "metadata", staging_root=Path(temp_dir) / "staging")
            repo = MagicMock()
            repo.latest_snapshot.return_value = self._snapshot()
            repo.restore.side_effect = ToolInvocationFailure("wrong password")

            assert store.bootstrap(repo, REPO_ID) == 0

    def test_chown_through_shell(self):
        """Test restored files are handed back to the current user."""
        with tempfile.TemporaryDirectory() as temp_dir:
            shell = MagicMock()
            store = MetadataStore(Path(temp_dir) / "metadata", shell=shell, staging_root=Path(temp_dir) / "staging")
            repo = MagicMock()
            repo.latest_snapshot.return_value = self._snapshot()

            assert store.bootstrap(repo, REPO_ID) == 0

            shell.chown_recursive.assert_called_once()
            shell.remove_tree.assert_called_once()
