"""Upgrade orchestrator: move the validator to a new release, or put it back."""

import json
import time
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, field

from .config import Config
from .backup import BackupError, BackupRunner
from .bundles import BundleStore, DownloadError, ExtractError
from .containers import ContainerError, ContainerLifecycle
from .lock import RunLock
from .migrate import ConfigMigrator, MigrationError
from .state import StatusStore
from .watcher import NetworkVersion, Version, VersionWatcher

logger = logging.getLogger(__name__)

PREPARATION_ERRORS = (BackupError, DownloadError, ExtractError, MigrationError, ContainerError)


class UpgradeMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class UpgradeStep(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    MIGRATING = "migrating"
    PREPULLING = "prepulling"
    CUTTING_OVER = "cutting_over"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"


class UpgradeResult(str, Enum):
    LOCKED = "locked"
    RESOLVE_FAILED = "resolve_failed"
    UP_TO_DATE = "up_to_date"
    DOWNGRADE_REFUSED = "downgrade_refused"
    MANUAL_ACTION_REQUIRED = "manual_action_required"
    RELEASE_TOO_FRESH = "release_too_fresh"
    PREPARATION_FAILED = "preparation_failed"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def failed(self) -> bool:
        return self in (UpgradeResult.RESOLVE_FAILED, UpgradeResult.PREPARATION_FAILED,
                        UpgradeResult.ROLLED_BACK, UpgradeResult.ROLLBACK_FAILED)


@dataclass
class UpgradeAttempt:
    """One orchestrator run; discarded when the run ends."""
    from_version: Version
    to_version: Version
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    step: UpgradeStep = UpgradeStep.RESOLVING
    source: str = ""


@dataclass
class UpgradeOutcome:
    """Terminal result of a run."""
    result: UpgradeResult
    from_version: Optional[Version] = None
    to_version: Optional[Version] = None
    step: UpgradeStep = UpgradeStep.IDLE
    message: str = ""

    @property
    def success(self) -> bool:
        return not self.result.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'result': self.result.value,
            'from_version': str(self.from_version) if self.from_version else None,
            'to_version': str(self.to_version) if self.to_version else None,
            'step': self.step.value,
            'message': self.message,
        }


class UpgradeOrchestrator:
    """Runs one upgrade transaction.

    Steps: resolve versions, download the bundle, migrate config, pre-pull
    images while the old version still serves, stop old, start new, verify
    health. A failure up to pre-pull leaves the old version running and
    untouched. A failure from cutover on gets exactly one rollback attempt.
    Only a verified-healthy new version moves the current pointer.
    """

    def __init__(self, config: Config, watcher: VersionWatcher, bundles: BundleStore,
                 migrator: ConfigMigrator, containers: ContainerLifecycle, notifier,
                 store: StatusStore, alerts=None, backup: Optional[BackupRunner] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.watcher = watcher
        self.bundles = bundles
        self.migrator = migrator
        self.containers = containers
        self.notifier = notifier
        self.store = store
        self.alerts = alerts
        self.backup = backup
        self.sleep = sleep
        self.step = UpgradeStep.IDLE
        self.upgrade_log_file = config.history_file

    def run(self, mode: UpgradeMode = UpgradeMode.AUTO, target: Optional[Version] = None,
            backup: Optional[bool] = None) -> UpgradeOutcome:
        """Run one upgrade unless another run holds the lock.

        target skips network resolution (manual runs only). backup defaults
        to on for automatic runs and off for manual ones.
        """
        with RunLock(self.config.lock_file) as lock:
            if not lock.acquired:
                return UpgradeOutcome(UpgradeResult.LOCKED)

            logger.info(f"=== Upgrade run started ({mode.value}) - network: {self.config.network} ===")
            try:
                outcome = self._run(mode, target, mode == UpgradeMode.AUTO if backup is None else backup)
            finally:
                self.step = UpgradeStep.IDLE

        if outcome.to_version is not None:
            self._record(mode, outcome)
        logger.info(f"=== Upgrade run finished: {outcome.result.value} ===")
        return outcome

    def _run(self, mode: UpgradeMode, target: Optional[Version], run_backup: bool) -> UpgradeOutcome:
        self.step = UpgradeStep.RESOLVING

        deployed = self.watcher.resolve_deployed_version()
        if deployed is None:
            logger.error("Cannot detect running version - is the validator running?")
            return UpgradeOutcome(UpgradeResult.RESOLVE_FAILED, step=UpgradeStep.RESOLVING,
                                  message="Cannot detect running version")
        logger.info(f"Current version: {deployed}")

        if target is not None and mode == UpgradeMode.MANUAL:
            network = NetworkVersion(target, "manual")
        else:
            network = self.watcher.resolve_network_version()
        if network is None:
            logger.error("Cannot detect network version - check connectivity")
            return UpgradeOutcome(UpgradeResult.RESOLVE_FAILED, deployed, step=UpgradeStep.RESOLVING,
                                  message="Cannot detect network version")
        new = network.version
        logger.info(f"Network version: {new} (source: {network.source})")

        if deployed == new:
            logger.info(f"Already on latest version: {deployed}")
            return UpgradeOutcome(UpgradeResult.UP_TO_DATE, deployed, new, UpgradeStep.RESOLVING)

        if deployed > new:
            logger.info(f"Our version ({deployed}) >= network ({new}), skipping")
            return UpgradeOutcome(UpgradeResult.DOWNGRADE_REFUSED, deployed, new, UpgradeStep.RESOLVING)

        if not deployed.same_line(new):
            if mode == UpgradeMode.AUTO:
                logger.warning(f"Major version change detected: {deployed} → {new}")
                self.notifier.send_manual_action(str(deployed), str(new))
                return UpgradeOutcome(UpgradeResult.MANUAL_ACTION_REQUIRED, deployed, new,
                                      UpgradeStep.RESOLVING, "Major version change needs a manual upgrade")
            # TODO: decide whether manual runs should refuse major bumps like automatic ones do
            logger.warning(f"MAJOR version change: {deployed} → {new}. Check release notes; proceeding")

        if mode == UpgradeMode.AUTO and not self._release_old_enough(new):
            return UpgradeOutcome(UpgradeResult.RELEASE_TOO_FRESH, deployed, new, UpgradeStep.RESOLVING)

        logger.info(f"Upgrade needed: {deployed} → {new}")
        attempt = UpgradeAttempt(deployed, new, source=network.source)
        return self._execute(attempt, run_backup)

    def _release_old_enough(self, version: Version) -> bool:
        min_age = self.config.upgrade.min_release_age_hours
        if min_age <= 0:
            return True

        published = self.watcher.release_published_at(version)
        if published is None:
            logger.warning(f"Cannot get release date for v{version}, proceeding anyway")
            return True

        age_hours = (datetime.now(timezone.utc) - published).total_seconds() / 3600
        logger.info(f"Release age: {age_hours:.0f}h (min required: {min_age}h)")
        if age_hours < min_age:
            logger.info(f"Release too fresh ({age_hours:.0f}h < {min_age}h), skipping")
            return False
        return True

    def _set_step(self, attempt: UpgradeAttempt, step: UpgradeStep):
        attempt.step = step
        self.step = step
        logger.info(f"[{step.value}] {attempt.from_version} → {attempt.to_version}")

    def _execute(self, attempt: UpgradeAttempt, run_backup: bool) -> UpgradeOutcome:
        old, new = attempt.from_version, attempt.to_version

        try:
            if run_backup and self.backup is not None:
                self.backup.run()

            self._set_step(attempt, UpgradeStep.DOWNLOADING)
            self.bundles.ensure_bundle(new)

            self._set_step(attempt, UpgradeStep.MIGRATING)
            self.migrator.migrate_config(old, new)
            self.migrator.patch_config(new)

            # The old version keeps serving while images download
            self._set_step(attempt, UpgradeStep.PREPULLING)
            self.containers.pull(new)
        except PREPARATION_ERRORS as e:
            logger.error(f"Upgrade aborted during {attempt.step.value}: {e}; {old} still running")
            return UpgradeOutcome(UpgradeResult.PREPARATION_FAILED, old, new, attempt.step, str(e))

        # No way back out from here: finish with a commit or a rollback
        self._set_step(attempt, UpgradeStep.CUTTING_OVER)
        if not self.containers.stop(old):
            logger.warning(f"Stopping {old} reported failure, continuing")

        try:
            self.containers.start(new, self.config.identity)
        except ContainerError as e:
            logger.error(f"Start failed for v{new}: {e}")
            return self._roll_back(attempt, "start failed")

        self._set_step(attempt, UpgradeStep.VERIFYING)
        if self._wait_healthy():
            return self._commit(attempt)

        logger.error("Validator unhealthy after upgrade")
        return self._roll_back(attempt, "unhealthy after upgrade")

    def _wait_healthy(self) -> bool:
        attempts = self.config.upgrade.verify_attempts
        interval = self.config.upgrade.verify_interval
        logger.info(f"Waiting for validator to become healthy (up to {attempts * interval:.0f}s)...")

        for i in range(1, attempts + 1):
            self.sleep(interval)
            healthy = self.containers.is_healthy('validator')
            logger.info(f"[{i}/{attempts}] healthy: {healthy}")
            if healthy:
                return True
        return False

    def _commit(self, attempt: UpgradeAttempt) -> UpgradeOutcome:
        old, new = attempt.from_version, attempt.to_version
        try:
            self.bundles.set_current(new)
        except OSError as e:
            # Pointer still names old; bring old back so the two agree
            logger.error(f"Cannot move current pointer to {new}: {e}")
            return self._roll_back(attempt, f"pointer update failed: {e}")

        self._set_step(attempt, UpgradeStep.COMMITTED)
        try:
            self.store.set_current_version(str(new))
        except OSError as e:
            logger.error(f"Failed to update status record: {e}")

        logger.info(f"Upgrade complete: {old} → {new}")
        self.notifier.send_upgrade_success(str(old), str(new))
        return UpgradeOutcome(UpgradeResult.COMMITTED, old, new, UpgradeStep.COMMITTED)

    def _roll_back(self, attempt: UpgradeAttempt, reason: str) -> UpgradeOutcome:
        """Single attempt to bring the previous version back; never recurses."""
        old, new = attempt.from_version, attempt.to_version
        self._set_step(attempt, UpgradeStep.ROLLING_BACK)
        logger.warning(f"Rolling back to {old}...")

        self.containers.stop(new)
        try:
            self.containers.start(old, self.config.identity)
        except ContainerError as e:
            logger.error(f"Rollback to {old} failed - check manually: {e}")
            message_id = self.notifier.send_rollback_failed(str(old), str(new), reason)
            if self.alerts is not None:
                self.alerts.escalate(message_id)
            return UpgradeOutcome(UpgradeResult.ROLLBACK_FAILED, old, new, UpgradeStep.ROLLING_BACK,
                                  f"{reason}; rollback failed: {e}")

        logger.warning(f"Rollback to {old} complete")
        self.notifier.send_rolled_back(str(old), str(new), reason)
        return UpgradeOutcome(UpgradeResult.ROLLED_BACK, old, new, UpgradeStep.ROLLING_BACK, reason)

    # -- history ----------------------------------------------------------

    def _load_upgrade_history(self) -> List[Dict]:
        """Load upgrade history from file."""
        if self.upgrade_log_file.exists():
            try:
                with open(self.upgrade_log_file, 'r') as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load upgrade history: {e}")
        return []

    def _record(self, mode: UpgradeMode, outcome: UpgradeOutcome):
        """Append the outcome of a run to the history file."""
        history = self._load_upgrade_history()
        record = outcome.to_dict()
        record['mode'] = mode.value
        record['finished_at'] = datetime.now(timezone.utc).isoformat()
        history.append(record)
        try:
            self.upgrade_log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.upgrade_log_file, 'w') as f:
                json.dump(history, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save upgrade history: {e}")

    def get_upgrade_history(self, limit: int = 10) -> List[Dict]:
        """Get recent upgrade history."""
        return self._load_upgrade_history()[-limit:]
