"""
ResticDroid - restic-based backup and restore of Android apps on rooted devices.

Backs up and restores installed apps with focus on:
- APK splits and private app data per package
- Deduplicated, encrypted storage in restic repositories
- Per-snapshot app metadata mirrored into the repository
- Version-aware restore with downgrade protection
"""

__version__ = "0.1.0"
__author__ = "ResticDroid Contributors"
