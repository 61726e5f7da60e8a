"""Root shell command execution utilities."""

import os
import queue
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import OperationCancelled, ShellError
from ..util.logging import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]

CANCEL_POLL_INTERVAL = 0.2
TERMINATE_TIMEOUT = 5


def quote(path: PathLike) -> str:
    """Quote a path or argument for the root shell."""
    return shlex.quote(str(path))


@dataclass
class ShellResult:
    """Outcome of a root shell command."""

    code: int
    out: List[str] = field(default_factory=list)
    err: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.code == 0

    @property
    def stdout(self) -> str:
        return "\n".join(self.out)

    @property
    def stderr(self) -> str:
        return "\n".join(self.err)


class RootShell:
    """Runs commands through ``su -c``.

    Everything that touches storage outside our own private directory goes
    through this class: other apps' data, ownership changes, process control
    and package installer sessions.
    """

    def __init__(self, su_path: str = "su", timeout: int = 120):
        self.su_path = su_path
        self.timeout = timeout

    def _argv(self, command: str) -> List[str]:
        return [self.su_path, "-c", command]

    def run(self, command: str, timeout: Optional[int] = None) -> ShellResult:
        """Run a command as root and capture its output.

        Args:
            command: Shell command line, already quoted
            timeout: Timeout in seconds (defaults to the shell timeout)

        Returns:
            ShellResult, whatever the exit code

        Raises:
            ShellError: If su is missing or the command timed out
        """
        logger.debug(f"Running root command: {command}")
        try:
            result = subprocess.run(
                self._argv(command),
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise ShellError(f"su not found at '{self.su_path}'. Root access is required.") from e
        except subprocess.TimeoutExpired as e:
            raise ShellError(f"Root command timed out after {timeout or self.timeout}s: {command}") from e

        return ShellResult(
            code=result.returncode,
            out=result.stdout.splitlines(),
            err=result.stderr.splitlines(),
        )

    @retry(
        retry=retry_if_exception_type(ShellError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    def check(self, command: str, timeout: Optional[int] = None) -> List[str]:
        """Run a read-only query, retrying on failure.

        Returns:
            Output lines

        Raises:
            ShellError: If the command still fails after retries
        """
        result = self.run(command, timeout=timeout)
        if not result.success:
            raise ShellError(
                f"Root command failed ({result.code}): {command}\n{result.stderr}".rstrip(),
                code=result.code,
            )
        return result.out

    def require(self, command: str, failure_message: str) -> ShellResult:
        """Run a mutating command once and raise if it fails."""
        result = self.run(command)
        if not result.success:
            message = f"{failure_message}: {result.stderr}" if result.stderr else failure_message
            raise ShellError(message, code=result.code)
        return result

    def stream(
        self,
        command: str,
        on_line: Callable[[str], None],
        cancel_event: Optional[threading.Event] = None,
    ) -> ShellResult:
        """Run a long command, delivering stdout lines as they are produced.

        The command runs in its own process group. stdout and stderr are read
        on helper threads, so a set ``cancel_event`` is noticed within
        ``CANCEL_POLL_INTERVAL`` seconds even while the command is silent. On
        cancellation the whole group is signalled and OperationCancelled is
        raised without waiting for the pipes to close.
        """
        logger.debug(f"Streaming root command: {command}")
        try:
            process = subprocess.Popen(
                self._argv(command),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ShellError(f"su not found at '{self.su_path}'. Root access is required.") from e

        out: List[str] = []
        err: List[str] = []
        lines: "queue.Queue[Optional[str]]" = queue.Queue()

        def read_stdout() -> None:
            for line in process.stdout:
                lines.put(line)
            lines.put(None)

        def drain_stderr() -> None:
            for line in process.stderr:
                err.append(line.rstrip("\n"))

        stdout_thread = threading.Thread(target=read_stdout, daemon=True)
        stderr_thread = threading.Thread(target=drain_stderr, daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Cancellation requested, terminating root process group")
                    _terminate(process)
                    raise OperationCancelled()
                try:
                    line = lines.get(timeout=CANCEL_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if line is None:
                    break
                line = line.rstrip("\n")
                out.append(line)
                on_line(line)
            code = process.wait()
        except BaseException:
            _terminate(process)
            raise
        finally:
            stdout_thread.join(timeout=1)
            stderr_thread.join(timeout=1)

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled()

        return ShellResult(code=code, out=out, err=err)

    # Filesystem helpers

    def exists(self, path: PathLike) -> bool:
        """Check if a file or directory exists."""
        return self.run(f"test -e {quote(path)}").success

    def mkdirs(self, path: PathLike) -> None:
        self.require(f"mkdir -p {quote(path)}", f"Failed to create directory {path}")

    def copy_tree(self, source: PathLike, destination: PathLike) -> None:
        """Copy the contents of ``source`` into ``destination`` preserving attributes."""
        self.require(
            f"cp -a {quote(str(source) + '/.')} {quote(str(destination) + '/')}",
            f"Failed to copy {source} to {destination}",
        )

    def chown_recursive(self, owner: str, path: PathLike) -> None:
        self.require(f"chown -R {quote(owner)} {quote(path)}", f"Failed to change owner of {path}")

    def remove_tree(self, path: PathLike) -> None:
        self.require(f"rm -rf {quote(path)}", f"Failed to remove {path}")

    def find_files(self, directory: PathLike, suffix: str) -> List[str]:
        """List regular files below ``directory`` whose names end with ``suffix``, sorted."""
        result = self.run(f"find {quote(directory)} -type f -name {quote('*' + suffix)}")
        if not result.success:
            logger.debug(f"find failed in {directory}: {result.stderr}")
            return []
        return sorted(line.strip() for line in result.out if line.strip())

    def file_size(self, path: PathLike) -> int:
        lines = self.check(f"stat -c %s {quote(path)}")
        if not lines or not lines[0].strip().isdigit():
            raise ShellError(f"Could not determine size of {path}")
        return int(lines[0].strip())

    def owner_of(self, path: PathLike) -> str:
        """Get ``user:group`` owning a path."""
        lines = self.check(f"stat -c '%U:%G' {quote(path)}")
        owner = lines[0].strip() if lines else ""
        if not owner:
            raise ShellError(f"Could not resolve owner of {path}")
        return owner

    def disk_usage(self, paths: Sequence[PathLike]) -> int:
        """Total size in bytes of the given paths (``du -sb``)."""
        if not paths:
            return 0

        result = self.run("du -sb " + " ".join(quote(p) for p in paths))
        total = 0
        for line in result.out:
            parts = line.split()
            if parts and parts[0].isdigit():
                total += int(parts[0])

        if not result.success:
            logger.debug(f"du reported errors: {result.stderr}")

        return total

    def force_stop(self, package_name: str) -> bool:
        """Stop an app's processes."""
        return self.run(f"am force-stop {quote(package_name)}").success


def _signal_group(process: subprocess.Popen, sig: int) -> bool:
    """Signal the process group led by ``process``; False once nothing is left."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning(f"Could not signal process group {process.pid}: {e}")
        if process.poll() is None:
            process.send_signal(sig)
    return True


def _terminate(process: subprocess.Popen) -> None:
    """Stop the command and everything it started, escalating to SIGKILL."""
    if not _signal_group(process, signal.SIGTERM):
        return
    try:
        process.wait(timeout=TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process group {process.pid} ignored SIGTERM, killing it")
        _signal_group(process, signal.SIGKILL)
        process.wait()
    # children outliving the group leader
    _signal_group(process, signal.SIGKILL)
