"""Tests for restic output parsing."""

import json

from resticdroid.backup.progress import OperationContext, StageScheduler
from resticdroid.restic.parser import MaintenanceOutputParser, OutputParser


def _line(**message) -> str:
    return json.dumps(message)


class TestOutputParser:
    """Test decoding of restic --json lines."""

    def test_backup_status(self):
        """Test a backup status line."""
        update = OutputParser.parse(_line(
            message_type="status",
            percent_done=0.25,
            total_files=100,
            files_done=25,
            total_bytes=4096,
            bytes_done=1024,
            current_files=["/data/data/com.example.app/files/a.db", "/data/data/com.example.app/files/b"],
        ))

        assert update is not None
        assert update.stage_percentage == 0.25
        assert update.files_processed == 25
        assert update.total_files == 100
        assert update.bytes_processed == 1024
        assert update.current_file == "/data/data/com.example.app/files/a.db"
        assert not update.is_finished

    def test_restore_status(self):
        """Test a restore status line reports restored counters."""
        update = OutputParser.parse(_line(
            message_type="status",
            percent_done=0.5,
            total_files=10,
            files_restored=5,
            total_bytes=2048,
            bytes_restored=1024,
        ))

        assert update.files_processed == 5
        assert update.bytes_processed == 1024
        assert update.current_file == ""

    def test_percent_is_clamped(self):
        """Test out-of-range percentages are clamped."""
        update = OutputParser.parse(_line(message_type="status", percent_done=1.7))

        assert update.stage_percentage == 1.0

    def test_backup_summary(self):
        """Test a backup summary line."""
        update = OutputParser.parse(_line(
            message_type="summary",
            snapshot_id="4f2a9c1e0b7d",
            files_new=3,
            files_changed=2,
            data_added=2048,
            total_files_processed=120,
            total_bytes_processed=1048576,
            total_duration=75.4,
        ))

        assert update.is_finished
        assert update.snapshot_id == "4f2a9c1e0b7d"
        assert update.files_new == 3
        assert update.files_changed == 2
        assert update.data_added == 2048
        assert update.stage_percentage == 1.0
        assert update.summary == "Added 2.0 KB (3 new, 2 changed files) in 01:15."

    def test_restore_summary(self):
        """Test a restore summary line."""
        update = OutputParser.parse(_line(
            message_type="summary",
            total_files=8,
            files_restored=8,
            total_bytes=1024,
            bytes_restored=1024,
            seconds_elapsed=5,
        ))

        assert update.is_finished
        assert update.snapshot_id is None
        assert update.summary == "Restored 8 files (1.0 KB) in 00:05."

    def test_error_line_is_skipped(self):
        """Test error messages are logged, not returned."""
        line = _line(message_type="error", error={"message": "permission denied"}, during="archival", item="/x")

        assert OutputParser.parse(line) is None

    def test_non_json_lines(self):
        """Test free-form and malformed lines are skipped."""
        assert OutputParser.parse("open repository") is None
        assert OutputParser.parse("") is None
        assert OutputParser.parse("{not json") is None
        assert OutputParser.parse(_line(message_type="verbose_status", action="new")) is None
        assert OutputParser.parse(_line(message_type="status")) is None


class TestStreamIntoContext:
    """Test feeding parsed updates into an operation context."""

    def test_status_sequence_maps_to_transfer_stage(self):
        """Test stage percentages map onto the overall fraction, including drops."""
        scheduler = StageScheduler(["Transfer", "Processing Apps", "Cleanup"])
        context = OperationContext("restore")
        seen = []
        context.subscribe(seen.append)

        for percent in (0.2, 0.6, 0.4):
            update = OutputParser.parse(_line(message_type="status", percent_done=percent))
            context.apply(update, scheduler, "Transfer")

        overall = [state.overall_percentage for state in seen]
        assert overall == [0.2 / 3, 0.6 / 3, 0.4 / 3]
        assert all(state.stage_title == "[1/3] Transfer" for state in seen)

    def test_summary_carries_snapshot_fields(self):
        """Test a summary update records backup result fields."""
        scheduler = StageScheduler(["Prepare", "Transfer", "Finalize"])
        context = OperationContext("backup")

        update = OutputParser.parse(_line(
            message_type="summary", snapshot_id="abc123", files_new=1, data_added=10, total_duration=1.0
        ))
        state = context.apply(update, scheduler, "Transfer")

        assert state.snapshot_id == "abc123"
        assert state.files_new == 1
        assert state.overall_percentage == 2 / 3


class TestMaintenanceOutputParser:
    """Test summaries of maintenance output."""

    def test_prune_keeps_last_lines(self):
        """Test prune output is reduced to its last three lines."""
        output = "loading indexes...\nfinding data\n\nrepacking packs\nremoving 3 old packs\ndone\n"

        assert MaintenanceOutputParser.summarize("prune", output) == (
            "repacking packs\nremoving 3 old packs\ndone"
        )

    def test_prune_empty(self):
        """Test a silent prune."""
        assert MaintenanceOutputParser.summarize("prune", "") == "Prune operation completed."

    def test_forget_sums_groups(self):
        """Test removed snapshot counts are summed across groups."""
        output = (
            "Applying Policy: keep 1 latest snapshots\n"
            "keep 1 snapshots:\n"
            "remove 2 snapshots:\n"
            "ID        Time\n"
            "remove 1 snapshot:\n"
        )

        assert MaintenanceOutputParser.summarize("forget", output) == "Removed 3 snapshot(s)."

    def test_forget_nothing_removed(self):
        """Test forget output without removals."""
        output = "Applying Policy: keep 5 latest snapshots\nkeep 2 snapshots:\n"

        assert MaintenanceOutputParser.summarize("forget", output) == (
            "No snapshots matched the policy to be removed."
        )

    def test_check(self):
        """Test check output reports the no-errors line."""
        output = "using temporary cache\nchecking snapshots, trees and blobs\nno errors were found\n"

        assert MaintenanceOutputParser.summarize("check", output) == "no errors were found"

    def test_unlock(self):
        """Test unlock output."""
        assert MaintenanceOutputParser.summarize("unlock", "successfully removed 1 locks\n") == (
            "successfully removed 1 locks"
        )
        assert MaintenanceOutputParser.summarize("unlock", "") == "Unlock operation finished."
