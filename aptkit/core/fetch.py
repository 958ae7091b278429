"""
Fetch collaborator

Downloading is not done here: the engine is given a fetcher factory and
only asks the fetcher which archives it stages, how many bytes are still
missing, and to run the download.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .errors import NoSpace, TransactionError
from .trust import Artifact

logger = logging.getLogger(__name__)

# statvfs does not expose the filesystem type, /proc/mounts does
PROC_MOUNTS = Path("/proc/mounts")
RAMFS_TYPES = ('ramfs',)


class FetchResult(Enum):
    CONTINUE = "continue"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Fetcher:
    """Stages the archives of a plan. Implemented by the caller.

    Byte counts follow the download manager's usual meaning: total_needed
    is the size of all archives, fetch_needed what is not in the archive
    directory yet, partial_present what is already partially downloaded.
    """

    def artifacts(self) -> List[Artifact]:
        raise NotImplementedError

    def total_needed(self) -> int:
        raise NotImplementedError

    def fetch_needed(self) -> int:
        raise NotImplementedError

    def partial_present(self) -> int:
        return 0

    def run(self) -> FetchResult:
        raise NotImplementedError


def _filesystem_type(directory: Path) -> Optional[str]:
    """Type of the filesystem mounted closest above directory."""
    target = str(Path(directory).resolve())
    best, fstype = "", None
    try:
        with open(PROC_MOUNTS) as f:
            for line in f:
                parts = line.split()
                if len(parts) < 3:
                    continue
                mountpoint = parts[1].replace('\\040', ' ')
                if (target == mountpoint or target.startswith(mountpoint.rstrip('/') + '/')) \
                        and len(mountpoint) >= len(best):
                    best, fstype = mountpoint, parts[2]
    except OSError as e:
        logger.debug(f"Cannot read {PROC_MOUNTS}: {e}")
    return fstype


def check_free_space(directory, needed: int):
    """Make sure directory can hold needed more bytes.

    ramfs reports no free blocks at all and is never considered full.

    Raises:
        NoSpace: Not enough free space
        TransactionError: The free space cannot be determined
    """
    if needed <= 0:
        return
    try:
        st = os.statvfs(directory)
    except OSError as e:
        raise TransactionError(f"Couldn't determine free space in {directory}: {e}")

    free = st.f_bfree * st.f_frsize
    if free >= needed:
        return

    if _filesystem_type(directory) in RAMFS_TYPES:
        logger.debug(f"{directory} is on ramfs, skipping free space check")
        return

    logger.error(f"Need {needed} bytes in {directory}, only {free} free")
    raise NoSpace(directory)
