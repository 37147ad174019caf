"""Pre-upgrade backup hook."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """The backup script failed."""


class BackupRunner:
    """Runs the external database backup script synchronously."""

    def __init__(self, script: Optional[str], timeout: int = 3600):
        self.script = Path(script) if script else None
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return self.script is not None and self.script.is_file()

    def run(self) -> bool:
        """Run the backup; returns False when no script is configured."""
        if not self.available:
            logger.warning("Backup script not found, skipping pre-upgrade backup")
            return False

        logger.info(f"Running backup before upgrade: {self.script}")
        try:
            result = subprocess.run(
                ['bash', str(self.script)],
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise BackupError(f"Backup timed out after {self.timeout}s") from e
        except OSError as e:
            raise BackupError(f"Failed to execute backup script: {e}") from e

        if result.returncode != 0:
            raise BackupError(f"Backup failed: {result.stderr.strip()[-500:] or result.returncode}")

        logger.info("Backup complete")
        return True
