"""Parsers for restic's machine-readable and maintenance output.

``OutputParser`` decodes the line-oriented ``--json`` stream of ``backup`` and
``restore``. The stream mixes structured status lines with free-form log
lines, so anything that does not decode into a known message is skipped.
Field names follow restic 0.18.
"""

import re
from dataclasses import dataclass
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..util.logging import get_logger
from ..util.paths import format_size
from ..util.timeutil import format_elapsed

logger = get_logger(__name__)


@dataclass
class ProgressUpdate:
    """One decoded progress event."""

    stage_percentage: float = 0.0
    files_processed: int = 0
    total_files: int = 0
    bytes_processed: int = 0
    total_bytes: int = 0
    current_file: str = ""
    is_finished: bool = False
    snapshot_id: Optional[str] = None
    files_new: int = 0
    files_changed: int = 0
    data_added: int = 0
    total_duration: float = 0.0
    summary: str = ""


class StatusMessage(BaseModel):
    message_type: Literal["status"]
    percent_done: float
    total_files: int = 0
    files_done: int = 0
    files_restored: int = 0
    total_bytes: int = 0
    bytes_done: int = 0
    bytes_restored: int = 0
    current_files: List[str] = Field(default_factory=list)


class SummaryMessage(BaseModel):
    message_type: Literal["summary"]
    # backup
    snapshot_id: Optional[str] = None
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    data_added: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    total_duration: float = 0.0
    # restore
    total_files: int = 0
    files_restored: int = 0
    total_bytes: int = 0
    bytes_restored: int = 0
    seconds_elapsed: float = 0.0


class ErrorMessage(BaseModel):
    message_type: Literal["error"]
    error: Any = None
    during: str = ""
    item: str = ""


_MESSAGE = TypeAdapter(
    Annotated[Union[StatusMessage, SummaryMessage, ErrorMessage], Field(discriminator="message_type")]
)


class OutputParser:
    """Turns restic ``--json`` lines into ProgressUpdate events."""

    @staticmethod
    def parse(line: str) -> Optional[ProgressUpdate]:
        """Decode one output line; returns None for anything unrecognised."""
        line = line.strip()
        if not line.startswith("{"):
            return None

        try:
            message = _MESSAGE.validate_json(line)
        except ValidationError:
            logger.debug(f"Skipping unrecognised restic line: {line[:200]}")
            return None

        if isinstance(message, StatusMessage):
            return _from_status(message)
        if isinstance(message, SummaryMessage):
            return _from_summary(message)

        logger.warning(f"restic reported an error during {message.during or 'operation'}: "
                       f"{_error_text(message.error)} {message.item}".rstrip())
        return None


def _from_status(message: StatusMessage) -> ProgressUpdate:
    return ProgressUpdate(
        stage_percentage=min(max(message.percent_done, 0.0), 1.0),
        files_processed=message.files_done or message.files_restored,
        total_files=message.total_files,
        bytes_processed=message.bytes_done or message.bytes_restored,
        total_bytes=message.total_bytes,
        current_file=message.current_files[0] if message.current_files else "",
    )


def _from_summary(message: SummaryMessage) -> ProgressUpdate:
    if message.snapshot_id is not None or message.total_files_processed:
        files = message.total_files_processed
        size = message.total_bytes_processed
        duration = message.total_duration
        summary = (
            f"Added {format_size(message.data_added)} "
            f"({message.files_new} new, {message.files_changed} changed files) "
            f"in {format_elapsed(duration)}."
        )
    else:
        files = message.files_restored or message.total_files
        size = message.bytes_restored or message.total_bytes
        duration = message.seconds_elapsed
        summary = f"Restored {files} files ({format_size(size)}) in {format_elapsed(duration)}."

    return ProgressUpdate(
        stage_percentage=1.0,
        files_processed=files,
        total_files=files,
        bytes_processed=size,
        total_bytes=size,
        is_finished=True,
        snapshot_id=message.snapshot_id,
        files_new=message.files_new,
        files_changed=message.files_changed,
        data_added=message.data_added,
        total_duration=duration,
        summary=summary,
    )


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error)


_REMOVE_SUMMARY = re.compile(r"^remove\s+(\d+)\s+snapshots?:?$", re.IGNORECASE)


class MaintenanceOutputParser:
    """Condenses the human-readable output of maintenance commands."""

    @staticmethod
    def summarize(task: str, output: str) -> str:
        task = task.lower()
        lines = [line.strip() for line in output.splitlines() if line.strip()]

        if task == "prune":
            return "\n".join(lines[-3:]) or "Prune operation completed."

        if task == "forget":
            # one "remove N snapshots:" header per snapshot group
            removed = sum(int(m.group(1)) for m in map(_REMOVE_SUMMARY.match, lines) if m)
            if removed:
                return f"Removed {removed} snapshot(s)."
            return "No snapshots matched the policy to be removed."

        if task == "check":
            no_errors = [line for line in lines if "no errors" in line.lower()]
            if no_errors:
                return no_errors[-1]
            return lines[-1] if lines else "Check operation completed."

        if task == "unlock":
            for line in lines:
                if "successfully removed" in line.lower():
                    return line
            return "Unlock operation finished."

        return output
