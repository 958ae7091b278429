"""
Install lock

Only one installer may run against the dpkg database at a time. apt and
dpkg take a POSIX record lock (fcntl) on the frontend lock file, so the
same kind of lock is taken here; a flock would not conflict with theirs.
The holder is looked up in /proc/locks, nothing is written to the file.
"""

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

from .config import DEFAULT_LOCK_RETRY_INTERVAL, DEFAULT_LOCK_TIMEOUT, LOCK_FILE
from .errors import LockTimeout

logger = logging.getLogger(__name__)

PROC_LOCKS = "/proc/locks"


class InstallLock:
    """Record lock on the dpkg frontend lock file.

    Record locks belong to the process: two InstallLock objects of the
    same process never exclude each other.
    """

    def __init__(self, path: Path = LOCK_FILE,
                 retry_interval: float = DEFAULT_LOCK_RETRY_INTERVAL):
        self.path = Path(path)
        self.retry_interval = retry_interval
        self.lock_fd = None
        self.locked = False

    def try_acquire(self) -> bool:
        """Take the lock if it is free. Never waits."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.lock_fd is None:
            # append mode: never truncate dpkg's file
            self.lock_fd = open(self.path, 'a')

        try:
            fcntl.lockf(self.lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            # EAGAIN or EACCES, depending on the kernel
            return False

        self.locked = True
        return True

    def acquire(self, timeout: int = DEFAULT_LOCK_TIMEOUT,
                wait_callback: Callable[[Optional[int]], None] = None):
        """Acquire the install lock, retrying a bounded number of times.

        Args:
            timeout: Number of retries, one per retry_interval
            wait_callback: Called with PID of holder (or None) while waiting

        Raises:
            LockTimeout: The lock is still held after all retries
        """
        attempts = 0
        while not self.try_acquire():
            holder_pid = self._get_holder_pid()
            if attempts >= timeout:
                self.release()
                raise LockTimeout(self.path, holder_pid)

            if wait_callback:
                wait_callback(holder_pid)

            attempts += 1
            logger.debug(f"Waiting for lock {self.path} held by {holder_pid} "
                         f"({attempts}/{timeout})")
            time.sleep(self.retry_interval)

    def release(self):
        """Release the install lock."""
        if self.lock_fd:
            if self.locked:
                try:
                    fcntl.lockf(self.lock_fd, fcntl.LOCK_UN)
                except OSError as e:
                    logger.debug(f"Cannot unlock {self.path}: {e}")
            self.lock_fd.close()
            self.lock_fd = None
            self.locked = False

    def _get_holder_pid(self) -> Optional[int]:
        """PID of the process holding a lock on the file, None if unknown.

        /proc/locks lines look like
            1: POSIX  ADVISORY  WRITE 1234 08:01:393228 0 EOF
        Only the inode is compared: stacked filesystems report another
        device number than stat() does.
        """
        try:
            inode = os.stat(self.path).st_ino
            with open(PROC_LOCKS, 'r') as f:
                lines = f.readlines()
        except OSError:
            return None

        for line in lines:
            fields = line.split()
            # "N: -> POSIX ..." lines are blocked waiters
            if len(fields) < 6 or fields[1] == '->':
                continue
            try:
                pid = int(fields[4])
                lock_inode = int(fields[5].rsplit(':', 1)[-1])
            except ValueError:
                continue
            # open file description locks report pid -1
            if lock_inode == inode and pid > 0 and pid != os.getpid():
                return pid
        return None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *args):
        self.release()
