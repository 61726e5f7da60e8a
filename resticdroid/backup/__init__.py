"""Backup module initialization."""

from .categories import (
    UNKNOWN_ITEMS,
    AppPaths,
    DataCategory,
    app_tag,
    build_include_filters,
    classify,
    exclude_patterns,
    generate_paths,
    parse_app_tag,
)
from .executor import BACKUP_STAGES, BackupOrchestrator, BackupPlan, BackupSelection
from .metadata import AppMetadataEntry, MetadataStore, SnapshotMetadata
from .progress import OperationContext, ProgressState, StageScheduler
from .restore import RestoreCandidate, RestoreOrchestrator, RestoreSelection, plan

__all__ = [
    # categories
    "UNKNOWN_ITEMS",
    "AppPaths",
    "DataCategory",
    "app_tag",
    "build_include_filters",
    "classify",
    "exclude_patterns",
    "generate_paths",
    "parse_app_tag",
    # executor
    "BACKUP_STAGES",
    "BackupOrchestrator",
    "BackupPlan",
    "BackupSelection",
    # metadata
    "AppMetadataEntry",
    "MetadataStore",
    "SnapshotMetadata",
    # progress
    "OperationContext",
    "ProgressState",
    "StageScheduler",
    # restore
    "RestoreCandidate",
    "RestoreOrchestrator",
    "RestoreSelection",
    "plan",
]
