"""Privileged execution module initialization."""

from .package import InstallSession, PackageInfo, PackageManager
from .shell import RootShell, ShellResult, quote

__all__ = [
    # shell
    "RootShell",
    "ShellResult",
    "quote",
    # package
    "InstallSession",
    "PackageInfo",
    "PackageManager",
]
