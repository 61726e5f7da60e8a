"""restic binary invocation through the root shell."""

import os
import re
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Union

from ..config import PINNED_RESTIC_VERSION
from ..errors import BinaryVersionError, OperationCancelled, ShellError, ToolInvocationFailure
from ..root.shell import RootShell, quote
from ..util.logging import get_logger

logger = get_logger(__name__)

_VERSION = re.compile(r"restic\s+(\d+\.\d+\.\d+)")


class BinaryState(Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLED = "installed"
    ERROR = "error"


@dataclass(frozen=True)
class BinaryStatus:
    """Availability of the restic binary."""

    state: BinaryState
    path: Optional[str] = None
    version: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def not_installed(cls) -> "BinaryStatus":
        return cls(BinaryState.NOT_INSTALLED)

    @classmethod
    def installed(cls, path: str, version: str) -> "BinaryStatus":
        return cls(BinaryState.INSTALLED, path=path, version=version)

    @classmethod
    def error(cls, message: str) -> "BinaryStatus":
        return cls(BinaryState.ERROR, message=message)


class ResticExecutor:
    """Runs restic commands as root.

    Passwords are handed to restic through ``RESTIC_PASSWORD_FILE`` pointing
    at a short-lived 0600 file in the private cache directory. They never
    appear on a command line.
    """

    def __init__(
        self,
        shell: RootShell,
        restic_path: str = "restic",
        cache_dir: Optional[Path] = None,
        pinned_version: str = PINNED_RESTIC_VERSION,
        strict: bool = True,
    ):
        self.shell = shell
        self.restic_path = restic_path
        self.cache_dir = cache_dir or Path(tempfile.gettempdir()) / "resticdroid"
        self.pinned_version = pinned_version
        self.strict = strict
        self._ready = False

    @contextmanager
    def password_file(self, password: str) -> Iterator[Path]:
        """Write ``password`` to a private temporary file for the duration of the block."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="restic-pass-", dir=self.cache_dir)
        path = Path(name)
        try:
            os.chmod(path, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(password)
            yield path
        finally:
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def build_command(
        self,
        repo: str,
        args: Sequence[Union[str, Path]],
        password_file: Path,
        cwd: Optional[Union[str, Path]] = None,
    ) -> str:
        """Assemble the shell command line for one restic invocation."""
        parts = [
            f"RESTIC_PASSWORD_FILE={quote(password_file)}",
            f"RESTIC_CACHE_DIR={quote(self.cache_dir / 'restic')}",
            quote(self.restic_path),
            "-r",
            quote(repo),
        ]
        parts.extend(quote(arg) for arg in args)
        command = " ".join(parts)

        if cwd is not None:
            command = f"cd {quote(cwd)} && {command}"
        return command

    def run(
        self,
        repo: str,
        password: str,
        args: Sequence[Union[str, Path]],
        on_line: Optional[Callable[[str], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        cwd: Optional[Union[str, Path]] = None,
    ) -> str:
        """Run a restic subcommand against ``repo``.

        Args:
            repo: Repository location
            password: Repository password
            args: Subcommand and its arguments
            on_line: Called with every stdout line as it is produced
            cancel_event: Terminates the process when set
            cwd: Directory to run restic from

        Returns:
            Captured stdout

        Raises:
            ToolInvocationFailure: If restic exits non-zero or cannot be started
            OperationCancelled: If ``cancel_event`` was set
        """
        subcommand = str(args[0]) if args else "restic"

        with self.password_file(password) as password_file:
            command = self.build_command(repo, args, password_file, cwd=cwd)
            try:
                result = self.shell.stream(command, on_line or _ignore, cancel_event=cancel_event)
            except OperationCancelled:
                logger.info(f"restic {subcommand} cancelled")
                raise
            except ShellError as e:
                raise ToolInvocationFailure(f"Could not run restic {subcommand}: {e}") from e

        if not result.success:
            message = result.stderr.strip() or f"restic {subcommand} failed with exit code {result.code}"
            logger.error(f"restic {subcommand} failed ({result.code}): {message}")
            raise ToolInvocationFailure(message)

        return result.stdout

    def binary_status(self) -> BinaryStatus:
        """Query ``restic version``."""
        try:
            result = self.shell.run(f"{quote(self.restic_path)} version")
        except ShellError as e:
            return BinaryStatus.error(str(e))

        if result.code == 127 or "not found" in result.stderr:
            return BinaryStatus.not_installed()

        match = _VERSION.search(result.stdout)
        if not result.success or not match:
            return BinaryStatus.error(result.stderr or f"Unexpected version output: {result.stdout}")

        return BinaryStatus.installed(self.restic_path, match.group(1))

    def ensure_ready(self) -> None:
        """Verify the binary is usable and reports the pinned version.

        Raises:
            ToolInvocationFailure: If restic is missing or broken
            BinaryVersionError: If the version differs and pinning is strict
        """
        if self._ready:
            return

        status = self.binary_status()
        if status.state is BinaryState.NOT_INSTALLED:
            raise ToolInvocationFailure(f"restic not found at '{self.restic_path}'.")
        if status.state is BinaryState.ERROR:
            raise ToolInvocationFailure(f"restic is not usable: {status.message}")

        if status.version != self.pinned_version:
            message = f"restic {status.version} found, {self.pinned_version} required."
            if self.strict:
                raise BinaryVersionError(message)
            logger.warning(message)

        self._ready = True


def _ignore(line: str) -> None:
    pass


def restic_args(*args: Union[str, Path], **options) -> List[str]:
    """Build an argument list, turning keyword options into ``--flag value`` pairs.

    ``True`` adds a bare flag, ``None``/``False`` are skipped, lists repeat the flag.
    """
    result = [str(arg) for arg in args]
    for key, value in options.items():
        flag = "--" + key.replace("_", "-")
        if value is None or value is False:
            continue
        if value is True:
            result.append(flag)
        elif isinstance(value, (list, tuple)):
            for item in value:
                result.extend([flag, str(item)])
        else:
            result.extend([flag, str(value)])
    return result
