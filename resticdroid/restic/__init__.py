"""restic invocation module initialization."""

from .executor import BinaryState, BinaryStatus, ResticExecutor
from .models import BACKUP_TAGS, METADATA_TAGS, RepositoryConfig, SnapshotRecord
from .parser import MaintenanceOutputParser, OutputParser, ProgressUpdate
from .repository import ResticRepository

__all__ = [
    # executor
    "BinaryState",
    "BinaryStatus",
    "ResticExecutor",
    # models
    "BACKUP_TAGS",
    "METADATA_TAGS",
    "RepositoryConfig",
    "SnapshotRecord",
    # parser
    "MaintenanceOutputParser",
    "OutputParser",
    "ProgressUpdate",
    # repository
    "ResticRepository",
]
