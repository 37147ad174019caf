"""Process lock so only one upgrade run is active at a time."""

import os
import fcntl
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class RunLock:
    """Non-blocking flock on a pid file.

    Used as a context manager; ``acquired`` tells whether this process got
    the lock. The kernel drops the lock when the holder exits, so a file
    left behind by a crash or reboot never blocks later runs. The file is
    never unlinked: removing it would let a second run lock a new inode.
    """

    def __init__(self, path: Path):
        self.path = path
        self.acquired = False
        self._handle = None

    def holder(self) -> Optional[int]:
        """Pid recorded by the last holder; informational only."""
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, 'a+')
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            logger.info(f"Another upgrade in progress (pid: {self.holder()}), exiting")
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        self.acquired = True
        return True

    def release(self):
        if not self.acquired:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            self.acquired = False

    def __enter__(self) -> 'RunLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
