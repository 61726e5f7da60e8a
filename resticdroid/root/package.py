"""Package manager utilities: queries and installer sessions."""

import re
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from ..errors import ShellError
from ..util.logging import get_logger
from .shell import RootShell, quote

logger = get_logger(__name__)

_SESSION_ID = re.compile(r"\[(\d+)\]")
_VERSION_CODE = re.compile(r"versionCode[:=](\d+)")
_ICON_ENTRY = re.compile(r"^res/(mipmap|drawable)[^/]*/(ic_launcher|ic_launcher_round|icon|app_icon)\.png$")

SYSTEM_PATHS = [
    "/system/app/",
    "/system/priv-app/",
    "/product/app/",
    "/product/priv-app/",
    "/vendor/app/",
    "/oem/app/",
]


@dataclass
class PackageInfo:
    """Information about an installed package."""

    package_name: str
    version_name: str = ""
    version_code: int = 0
    apk_paths: List[str] = field(default_factory=list)
    label: str = ""
    is_system: bool = False

    @property
    def display_name(self) -> str:
        return self.label or self.package_name

    @property
    def base_apk(self) -> Optional[str]:
        for path in self.apk_paths:
            if path.endswith("/base.apk"):
                return path
        return self.apk_paths[0] if self.apk_paths else None


class PackageManager:
    """Utility for querying the system package registry as root."""

    def __init__(self, shell: RootShell):
        self.shell = shell

    def list_packages(self, include_system: bool = False) -> List[str]:
        """List installed packages."""
        cmd = "pm list packages"
        if not include_system:
            cmd += " -3"  # Third-party packages only

        try:
            output = self.shell.check(cmd)
        except ShellError as e:
            logger.error(f"Failed to list packages: {e}")
            return []

        packages = [
            line.replace("package:", "", 1).strip()
            for line in output
            if line.startswith("package:")
        ]

        logger.debug(f"Found {len(packages)} packages")
        return sorted(packages)

    def installed_version_code(self, package_name: str) -> Optional[int]:
        """Get the installed version code, or None if the package is not installed."""
        output = self.shell.check(f"pm list packages --show-versioncode {quote(package_name)}")

        # pm filters by substring, so the name must match exactly
        for line in output:
            if not line.startswith("package:"):
                continue
            name = line[len("package:"):].split()[0]
            if name == package_name:
                match = _VERSION_CODE.search(line)
                return int(match.group(1)) if match else 0

        return None

    def installed_versions(self) -> Dict[str, int]:
        """Version codes of every installed package, from a single ``pm`` call.

        Raises:
            ShellError: If the package registry cannot be queried
        """
        versions = {}
        for line in self.shell.check("pm list packages --show-versioncode"):
            if not line.startswith("package:"):
                continue
            fields = line[len("package:"):].split()
            if not fields:
                continue
            match = _VERSION_CODE.search(line)
            versions[fields[0]] = int(match.group(1)) if match else 0
        return versions

    def get_apk_paths(self, package_name: str) -> List[str]:
        """Get all APK paths (base and splits) for a package."""
        try:
            output = self.shell.check(f"pm path {quote(package_name)}")
        except ShellError as e:
            logger.warning(f"Failed to get APK paths for {package_name}: {e}")
            return []

        paths = []
        for line in output:
            if line.startswith("package:"):
                path = line.replace("package:", "", 1).strip()
                if path not in paths:
                    paths.append(path)
        return paths

    def get_package_info(self, package_name: str) -> Optional[PackageInfo]:
        """Get detailed information about a package."""
        try:
            output = self.shell.check(f"dumpsys package {quote(package_name)}")
        except ShellError as e:
            logger.error(f"Failed to get package info for {package_name}: {e}")
            return None

        info: Dict[str, str] = {}
        for line in output:
            line = line.strip()

            # Updated system apps list the hidden system package second
            if "versionName=" in line and "version_name" not in info:
                info["version_name"] = line.split("versionName=", 1)[1].strip()
            elif "versionCode=" in line and "version_code" not in info:
                info["version_code"] = line.split("versionCode=", 1)[1].split()[0]
            elif "codePath=" in line and "code_path" not in info:
                info["code_path"] = line.split("codePath=", 1)[1].strip()

        if "version_code" not in info:
            return None

        apk_paths = self.get_apk_paths(package_name)
        code_path = info.get("code_path", "")

        return PackageInfo(
            package_name=package_name,
            version_name=info.get("version_name", ""),
            version_code=int(info["version_code"]) if info["version_code"].isdigit() else 0,
            apk_paths=apk_paths,
            label=package_name,
            is_system=self._is_system_package(apk_paths[0] if apk_paths else code_path),
        )

    def load_icon(self, info: PackageInfo) -> Optional[bytes]:
        """Read the largest launcher icon PNG bundled in the base APK."""
        base_apk = info.base_apk
        if not base_apk:
            return None

        try:
            with zipfile.ZipFile(base_apk) as apk:
                candidates = [entry for entry in apk.infolist() if _ICON_ENTRY.match(entry.filename)]
                if not candidates:
                    return None
                best = max(candidates, key=lambda entry: entry.file_size)
                return apk.read(best)
        except (OSError, zipfile.BadZipFile) as e:
            logger.debug(f"Could not read icon for {info.package_name}: {e}")
            return None

    def open_session(self, allow_downgrade: bool = False) -> "InstallSession":
        """Create a multi-split install session."""
        return InstallSession(self.shell, allow_downgrade=allow_downgrade)

    def _is_system_package(self, apk_path: str) -> bool:
        """Determine if package is a system package based on path."""
        return any(apk_path.startswith(path) for path in SYSTEM_PATHS)


class InstallSession:
    """A ``pm install-create`` / ``install-write`` / ``install-commit`` transaction.

    Used as a context manager: the session is created on entry and abandoned
    if the block raises before it was committed.
    """

    def __init__(self, shell: RootShell, allow_downgrade: bool = False):
        self.shell = shell
        self.allow_downgrade = allow_downgrade
        self.session_id: Optional[str] = None
        self._closed = False

    @property
    def flags(self) -> str:
        return "-r -d" if self.allow_downgrade else "-r"

    def create(self) -> str:
        result = self.shell.run(f"pm install-create {self.flags}")
        match = _SESSION_ID.search(result.stdout) if result.success else None
        if not match:
            raise ShellError("Failed to create install session.", code=result.code)

        self.session_id = match.group(1)
        logger.debug(f"Created install session {self.session_id}")
        return self.session_id

    def write(self, index: int, apk_path: str) -> None:
        """Stream one split into the session.

        The staged file is usually root-owned, so its size is read as root.
        """
        file_name = PurePosixPath(apk_path).name
        size = self.shell.file_size(apk_path)
        result = self.shell.run(
            f"pm install-write -S {size} {self.session_id} {quote(f'{index}_{file_name}')} {quote(apk_path)}"
        )
        if not result.success:
            raise ShellError(f"Failed to write APK split {file_name}.", code=result.code)

    def commit(self) -> None:
        result = self.shell.run(f"pm install-commit {self.session_id}")
        self._closed = True
        if not result.success or not any("Success" in line for line in result.out):
            detail = " ".join(result.err) or result.stdout
            raise ShellError(f"Install commit failed: {detail}".strip(), code=result.code)

    def abandon(self) -> None:
        if self.session_id is None or self._closed:
            return
        self._closed = True
        result = self.shell.run(f"pm install-abandon {self.session_id}")
        if not result.success:
            logger.warning(f"Failed to abandon install session {self.session_id}: {result.stderr}")

    def __enter__(self) -> "InstallSession":
        self.create()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.abandon()
        return False
