"""Two-tier cache of installed app descriptors."""

import base64
import io
import json
import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..errors import ShellError
from ..root.package import PackageInfo, PackageManager
from ..util.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AppDescriptor:
    """A fully resolved installed app."""

    package_name: str
    label: str
    version_name: str = ""
    version_code: int = 0
    apk_paths: List[str] = field(default_factory=list)
    icon: Optional[Image.Image] = None

    def to_package_info(self) -> PackageInfo:
        return PackageInfo(
            package_name=self.package_name,
            version_name=self.version_name,
            version_code=self.version_code,
            apk_paths=list(self.apk_paths),
            label=self.label,
        )


class CachedAppDescriptor(BaseModel):
    """Serializable form of an AppDescriptor, icon as base64 PNG."""

    package_name: str
    label: str
    version_name: str = ""
    version_code: int = 0
    apk_paths: List[str] = Field(default_factory=list)
    icon: Optional[str] = Field(default=None, description="Base64-encoded PNG")

    @classmethod
    def from_descriptor(cls, descriptor: AppDescriptor) -> "CachedAppDescriptor":
        return cls(
            package_name=descriptor.package_name,
            label=descriptor.label,
            version_name=descriptor.version_name,
            version_code=descriptor.version_code,
            apk_paths=list(descriptor.apk_paths),
            icon=encode_icon(descriptor.icon),
        )

    def to_descriptor(self) -> AppDescriptor:
        return AppDescriptor(
            package_name=self.package_name,
            label=self.label,
            version_name=self.version_name,
            version_code=self.version_code,
            apk_paths=list(self.apk_paths),
            icon=decode_icon(self.icon),
        )


_WARM = TypeAdapter(Dict[str, CachedAppDescriptor])


def encode_icon(icon: Optional[Image.Image]) -> Optional[str]:
    if icon is None:
        return None
    buffer = io.BytesIO()
    icon.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def decode_icon(data: Optional[str]) -> Optional[Image.Image]:
    if not data:
        return None
    try:
        image = Image.open(io.BytesIO(base64.b64decode(data)))
        image.load()
        return image
    except (ValueError, OSError, UnidentifiedImageError) as e:
        logger.debug(f"Discarding undecodable cached icon: {e}")
        return None


class AppInventoryCache:
    """Installed app lookups with an in-memory hot tier and an on-disk warm tier.

    Warm entries are only promoted while their version code matches the
    installed version. Bulk lookups revalidate both tiers; apps that are no
    longer installed are purged from both.
    """

    def __init__(self, packages: PackageManager, cache_file: Path, max_workers: int = 4):
        self.packages = packages
        self.cache_file = cache_file
        self.max_workers = max_workers
        self._hot: Dict[str, AppDescriptor] = {}
        self._warm: Dict[str, CachedAppDescriptor] = {}
        self._memory_lock = threading.Lock()
        self._disk_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self.cache_file.exists():
            return
        try:
            content = self.cache_file.read_text()
            if content.strip():
                self._warm.update(_WARM.validate_json(content))
        except (OSError, ValidationError) as e:
            logger.warning(f"Discarding corrupt app cache {self.cache_file}: {e}")
            self.cache_file.unlink(missing_ok=True)

    def _save(self) -> None:
        with self._disk_lock:
            with self._memory_lock:
                payload = {name: entry.model_dump() for name, entry in self._warm.items()}
            try:
                self.cache_file.parent.mkdir(parents=True, exist_ok=True)
                fd, temp_name = tempfile.mkstemp(prefix=".app-cache-", dir=self.cache_file.parent)
                with os.fdopen(fd, "w") as f:
                    json.dump(payload, f)
                os.replace(temp_name, self.cache_file)
            except OSError as e:
                logger.warning(f"Could not write app cache: {e}")

    def get(self, package_name: str) -> Optional[AppDescriptor]:
        """Descriptor of an installed app, or None if it is not installed.

        Hot entries are returned without asking the package registry; bulk
        lookups through ``get_many`` revalidate them against installed
        version codes.
        """
        with self._memory_lock:
            hot = self._hot.get(package_name)
        if hot is not None:
            return hot

        try:
            version_code = self.packages.installed_version_code(package_name)
        except ShellError as e:
            logger.warning(f"Could not query {package_name}: {e}")
            return None
        return self._resolve(package_name, version_code)

    def _resolve(self, package_name: str, version_code: Optional[int]) -> Optional[AppDescriptor]:
        if version_code is None:
            self._purge(package_name)
            return None

        with self._memory_lock:
            hot = self._hot.get(package_name)
            if hot is not None and hot.version_code == version_code:
                return hot
            warm = self._warm.get(package_name)

        if warm is not None and warm.version_code == version_code:
            descriptor = warm.to_descriptor()
            with self._memory_lock:
                self._hot[package_name] = descriptor
            return descriptor

        return self._refresh(package_name)

    def _refresh(self, package_name: str) -> Optional[AppDescriptor]:
        info = self.packages.get_package_info(package_name)
        if info is None:
            return None

        descriptor = AppDescriptor(
            package_name=package_name,
            label=info.display_name,
            version_name=info.version_name,
            version_code=info.version_code,
            apk_paths=list(info.apk_paths),
            icon=self._load_icon(info),
        )

        with self._memory_lock:
            self._hot[package_name] = descriptor
            self._warm[package_name] = CachedAppDescriptor.from_descriptor(descriptor)
        self._save()

        logger.debug(f"Cached {package_name} at version {descriptor.version_code}")
        return descriptor

    def _load_icon(self, info: PackageInfo) -> Optional[Image.Image]:
        data = self.packages.load_icon(info)
        if not data:
            return None
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
            return image
        except (OSError, UnidentifiedImageError) as e:
            logger.debug(f"Unreadable icon for {info.package_name}: {e}")
            return None

    def _purge(self, package_name: str) -> None:
        with self._memory_lock:
            removed = self._hot.pop(package_name, None) is not None
            removed = self._warm.pop(package_name, None) is not None or removed
        if removed:
            logger.debug(f"Purged uninstalled app {package_name} from cache")
            self._save()

    def get_many(self, package_names: Sequence[str]) -> Dict[str, AppDescriptor]:
        """Look up several packages in parallel; uninstalled ones are left out.

        Installed version codes are read once for the whole batch, so stale
        or uninstalled entries in either tier are rebuilt or purged here.
        """
        if not package_names:
            return {}

        try:
            versions = self.packages.installed_versions()
        except ShellError as e:
            logger.warning(f"Could not query installed packages: {e}")
            return {}

        with ThreadPoolExecutor(max_workers=max(1, self.max_workers)) as pool:
            results = list(pool.map(lambda name: self._resolve(name, versions.get(name)), package_names))

        return {
            name: descriptor
            for name, descriptor in zip(package_names, results)
            if descriptor is not None
        }

    def installed_user_apps(self) -> List[AppDescriptor]:
        """All third-party apps, sorted by label."""
        descriptors = self.get_many(self.packages.list_packages(include_system=False))
        return sorted(descriptors.values(), key=lambda d: d.label.lower())

    def __contains__(self, package_name: str) -> bool:
        with self._memory_lock:
            return package_name in self._hot or package_name in self._warm
