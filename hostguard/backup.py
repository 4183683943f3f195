"""
Pre-write backups of managed files.

Every backup taken by one BackupManager shares the timestamp of the
manager's creation (one per process run): ``<path>.bak_<YYYY-MM-DD_HHMMSS>``.

- A file touched several times in one run is copied only the first time,
  so the backup always holds the state from before the run.
- If the computed name already exists and was not written by this run, a
  counter is appended (``.1``, ``.2``, ...). Backups are never overwritten.
"""

import datetime
import shutil
from pathlib import Path
from typing import Dict, Optional, Union

from .logs import logger


class BackupManager:
    """Hands out run-scoped backup copies of files before they are modified."""

    def __init__(self, stamp: Optional[datetime.datetime] = None) -> None:
        self.stamp = (stamp or datetime.datetime.now()).strftime("%Y-%m-%d_%H%M%S")
        self._taken: Dict[Path, Path] = {}

    def backup_name(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        return path.with_name(f"{path.name}.bak_{self.stamp}")

    def backup(self, path: Union[str, Path]) -> Optional[Path]:
        """
        Copy ``path`` aside unless this run already did.

        Returns:
            The backup path for this run, or None if ``path`` does not exist
        """
        path = Path(path)
        key = path.absolute()
        if key in self._taken:
            logger.debug("Backup of %s already taken this run: %s", path, self._taken[key])
            return self._taken[key]
        if not path.exists():
            return None

        base = self.backup_name(path)
        candidate = base
        counter = 1
        while candidate.exists():
            candidate = base.with_name(f"{base.name}.{counter}")
            counter += 1

        shutil.copy2(path, candidate)
        self._taken[key] = candidate
        logger.info("Backed up %s to %s", path, candidate)
        return candidate

    @property
    def taken(self) -> Dict[Path, Path]:
        return dict(self._taken)
