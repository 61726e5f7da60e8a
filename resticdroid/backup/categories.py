"""Per-app backup categories and their filesystem locations."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Sequence
from urllib.parse import quote as percent_encode
from urllib.parse import unquote

from ..config import CategoryDefaults

UNKNOWN_ITEMS = "Unknown items"
APP_TAG_PREFIX = "app:"

_APK_ROOT = "/data/app/"


class DataCategory(Enum):
    """Fixed set of per-app data kinds, in declaration order.

    Each value is ``(label, path template, config field, metadata type key)``.
    """

    APK = ("APK", None, "apk", "apk")
    DATA = ("Data", "/data/data/{pkg}", "data", "data")
    DEVICE_PROTECTED_DATA = ("Device Protected Data", "/data/user_de/0/{pkg}", "device_protected_data", "user_de")
    EXTERNAL_DATA = ("External Data", "/storage/emulated/0/Android/data/{pkg}", "external_data", "external_data")
    OBB = ("OBB", "/storage/emulated/0/Android/obb/{pkg}", "obb", "obb")
    MEDIA = ("Media", "/storage/emulated/0/Android/media/{pkg}", "media", "media")

    def __init__(self, label: str, template: Optional[str], field_name: str, type_key: str):
        self.label = label
        self.template = template
        self.field_name = field_name
        self.type_key = type_key

    @property
    def is_data(self) -> bool:
        return self is not DataCategory.APK

    def path_for(self, package_name: str) -> Optional[str]:
        """Canonical live path; None for APK, whose directory has a random suffix."""
        if self.template is None:
            return None
        return self.template.format(pkg=package_name)

    def matches(self, path: str, package_name: str) -> bool:
        if self is DataCategory.APK:
            return path.startswith(_APK_ROOT) and f"/{package_name}-" in path
        return path == self.path_for(package_name)

    @classmethod
    def from_label(cls, label: str) -> "DataCategory":
        for category in cls:
            if category.label.lower() == label.lower() or category.name.lower() == label.lower():
                return category
        raise ValueError(f"Unknown category: {label}")

    @classmethod
    def from_defaults(cls, defaults: CategoryDefaults) -> List["DataCategory"]:
        """Categories switched on in a config block, in declaration order."""
        return [category for category in cls if getattr(defaults, category.field_name)]


def _ordered(categories: Iterable[DataCategory]) -> List[DataCategory]:
    selected = set(categories)
    return [category for category in DataCategory if category in selected]


def classify(snapshot_paths: Sequence[str], package_name: str) -> List[str]:
    """Labels of the categories a snapshot holds for one package.

    Returns:
        Labels in declaration order, ``["Unknown items"]`` when the snapshot has
        paths but none belong to the package, ``[]`` for an empty snapshot
    """
    if not snapshot_paths:
        return []

    labels = [
        category.label
        for category in DataCategory
        if any(category.matches(path, package_name) for path in snapshot_paths)
    ]
    return labels or [UNKNOWN_ITEMS]


def find_apk_path(snapshot_paths: Sequence[str], package_name: str) -> Optional[str]:
    for path in snapshot_paths:
        if DataCategory.APK.matches(path, package_name):
            return path
    return None


def build_include_filters(
    packages: Sequence[str],
    categories: Iterable[DataCategory],
    snapshot_paths: Sequence[str],
) -> List[str]:
    """Restore filter: only paths the snapshot actually contains.

    Ordered by package, then category declaration order, without duplicates.
    """
    ordered = _ordered(categories)
    recorded = set(snapshot_paths)
    filters: List[str] = []

    for package_name in packages:
        for category in ordered:
            if category is DataCategory.APK:
                path = find_apk_path(snapshot_paths, package_name)
            else:
                path = category.path_for(package_name)
                if path not in recorded:
                    path = None

            if path is not None and path not in filters:
                filters.append(path)

    return filters


@dataclass
class AppPaths:
    """What generate mode needs to know about an installed app."""

    package_name: str
    apk_paths: Sequence[str] = ()


def generate_paths(app: AppPaths, categories: Iterable[DataCategory]) -> List[str]:
    """Backup paths for one app: canonical data paths plus its APK directory.

    Paths are synthesized, so callers filter out the ones missing on the device.
    """
    paths: List[str] = []
    for category in _ordered(categories):
        if category is DataCategory.APK:
            for apk_path in app.apk_paths:
                directory = str(PurePosixPath(apk_path).parent)
                if directory not in paths:
                    paths.append(directory)
        else:
            paths.append(category.path_for(app.package_name))
    return paths


def exclude_patterns(package_name: str, categories: Iterable[DataCategory]) -> List[str]:
    """Cache directories left out of a backup."""
    selected = set(categories)
    patterns = []
    if DataCategory.DATA in selected:
        patterns.append(f"/data/data/{package_name}/cache")
        patterns.append(f"/data/data/{package_name}/code_cache")
    if DataCategory.EXTERNAL_DATA in selected:
        patterns.append(f"/storage/emulated/0/Android/data/{package_name}/cache")
    return patterns


def staged_path(staging_dir: Path, live_path: str) -> Path:
    """Where restic restores ``live_path`` inside ``staging_dir``."""
    return staging_dir / live_path.lstrip("/")


def app_tag(package_name: str, version_code: int, version_name: str) -> str:
    """Snapshot tag recording the version an app was backed up at.

    The version name is percent-encoded since restic splits tags on commas.
    """
    return f"{APP_TAG_PREFIX}{package_name}:{version_code}:{percent_encode(version_name, safe='')}"


def parse_app_tag(tag: str) -> Optional[tuple]:
    """Inverse of :func:`app_tag`; returns ``(package, version_code, version_name)`` or None."""
    if not tag.startswith(APP_TAG_PREFIX):
        return None

    parts = tag[len(APP_TAG_PREFIX):].split(":", 2)
    if len(parts) != 3 or not parts[0] or not parts[1].isdigit():
        return None

    return parts[0], int(parts[1]), unquote(parts[2])
