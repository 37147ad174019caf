"""Health probe for the Canton validator node."""

import time
import psutil
import logging
import requests
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
from dataclasses import dataclass, field

from prometheus_client.parser import text_string_to_metric_families

from .config import Config
from .containers import ROLES, ContainerLifecycle, ContainerStatus

logger = logging.getLogger(__name__)

LAST_INGESTED_METRIC = "splice_store_last_ingested_record_time_ms"
RETRY_FAILURES_METRICS = ("splice_retries_failures", "splice_retries_failures_total")


class Severity(str, Enum):
    WARN = "warn"
    CRITICAL = "critical"


class IssueKind(Enum):
    """Kinds of health issue; severity belongs to the kind."""

    CONTAINER_DOWN = ("container_down", Severity.CRITICAL, "🔴")
    CONTAINER_UNHEALTHY = ("container_unhealthy", Severity.CRITICAL, "🔴")
    SYNC_LAG_WARN = ("sync_lag_warn", Severity.WARN, "🟡")
    SYNC_LAG_CRITICAL = ("sync_lag_critical", Severity.CRITICAL, "🔴")
    RETRY_FAILURES = ("retry_failures", Severity.WARN, "🟡")
    DISK_LOW = ("disk_low", Severity.CRITICAL, "🔴")
    CHECK_UNAVAILABLE = ("check_unavailable", Severity.WARN, "⚠️")

    def __init__(self, key: str, severity: Severity, icon: str):
        self.key = key
        self.severity = severity
        self.icon = icon


@dataclass(frozen=True)
class Issue:
    kind: IssueKind
    detail: str

    @property
    def severity(self) -> Severity:
        return self.kind.severity

    @property
    def critical(self) -> bool:
        return self.kind.severity == Severity.CRITICAL

    def __str__(self) -> str:
        return f"{self.kind.icon} {self.detail}"


@dataclass
class HealthReport:
    """Issues found in one probe cycle."""
    issues: List[Issue] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def critical(self) -> bool:
        return any(issue.critical for issue in self.issues)

    @property
    def message(self) -> str:
        return "\n".join(str(issue) for issue in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'critical': self.critical,
            'issues': [
                {'kind': i.kind.key, 'severity': i.severity.value, 'detail': i.detail}
                for i in self.issues
            ],
            'timestamp': self.timestamp.isoformat(),
        }


class HealthProbe:
    """Collects container, sync, retry and disk signals each cycle.

    Every check degrades on its own: a check that cannot run reports a
    CHECK_UNAVAILABLE warning instead of failing the cycle.
    """

    METRICS_HOST = "validator.localhost"

    def __init__(self, config: Config, containers: ContainerLifecycle,
                 clock: Callable[[], float] = time.time, timeout: float = 5.0):
        self.config = config
        self.containers = containers
        self.clock = clock
        self.timeout = timeout

    def run(self) -> HealthReport:
        """Run all checks and return the combined report."""
        report = HealthReport()

        logger.info("Checking containers...")
        report.issues.extend(self._guarded("containers", self.check_containers))

        logger.info("Checking sync lag + retry failures...")
        report.issues.extend(self._guarded("metrics", self.check_metrics))

        logger.info("Checking disk space...")
        report.issues.extend(self._guarded("disk", self.check_disk))

        return report

    def _guarded(self, name: str, check: Callable[[], List[Issue]]) -> List[Issue]:
        try:
            return check()
        except Exception as e:
            logger.error(f"{name} check failed: {e}")
            return [Issue(IssueKind.CHECK_UNAVAILABLE, f"{name} check unavailable: {e}")]

    # -- containers -------------------------------------------------------

    @staticmethod
    def _container_issue(status: ContainerStatus) -> Optional[Issue]:
        if not status.running:
            return Issue(IssueKind.CONTAINER_DOWN, f"{status.name}: DOWN")
        if status.health == "unhealthy":
            return Issue(IssueKind.CONTAINER_UNHEALTHY, f"{status.name}: unhealthy")
        return None

    def check_containers(self) -> List[Issue]:
        issues = []
        for role in ROLES:
            name = self.containers.find(role)
            if not name:
                if role == 'validator':
                    issues.append(Issue(IssueKind.CONTAINER_DOWN, "validator container not found"))
                continue

            status = self.containers.status(name)
            issue = self._container_issue(status)

            if issue and self.config.auto_restart:
                logger.warning(f"Auto-restarting {name} ({status.health or 'down'})...")
                self.containers.restart(name, running=status.running)
                status = self.containers.status(name)
                issue = self._container_issue(status)
                if issue is None:
                    logger.info(f"{name} recovered after restart")

            if issue:
                issues.append(issue)
        return issues

    # -- metrics ----------------------------------------------------------

    def fetch_metrics(self) -> Optional[str]:
        for url in self.config.endpoints.metrics:
            try:
                response = requests.get(url, headers={'Host': self.METRICS_HOST}, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                logger.debug(f"Metrics endpoint {url} unreachable: {e}")
                continue
            if response.status_code == 200 and response.text:
                return response.text
        return None

    def check_metrics(self) -> List[Issue]:
        text = self.fetch_metrics()
        if text is None:
            return [Issue(IssueKind.CHECK_UNAVAILABLE, "Cannot reach metrics endpoint")]

        last_ingested = None
        retry_failures = 0.0
        for family in text_string_to_metric_families(text):
            for sample in family.samples:
                if sample.name == LAST_INGESTED_METRIC:
                    last_ingested = max(last_ingested or 0.0, sample.value)
                elif sample.name in RETRY_FAILURES_METRICS:
                    retry_failures += sample.value

        issues = []
        thresholds = self.config.thresholds

        if last_ingested:
            lag_s = int(max(0, self.clock() * 1000 - last_ingested) // 1000)
            if lag_s > thresholds.sync_lag_crit_s:
                issues.append(Issue(IssueKind.SYNC_LAG_CRITICAL,
                                    f"Sync lag: {lag_s}s (critical, >{thresholds.sync_lag_crit_s}s)"))
            elif lag_s > thresholds.sync_lag_warn_s:
                issues.append(Issue(IssueKind.SYNC_LAG_WARN,
                                    f"Sync lag: {lag_s}s (warning, >{thresholds.sync_lag_warn_s}s)"))

        if retry_failures > thresholds.retry_failures:
            issues.append(Issue(IssueKind.RETRY_FAILURES,
                                f"Retry failures: {int(retry_failures)} (>{thresholds.retry_failures})"))
        return issues

    # -- disk -------------------------------------------------------------

    def check_disk(self) -> List[Issue]:
        path = self.config.canton_dir if self.config.canton_dir.exists() else Path("/")
        free_gb = psutil.disk_usage(str(path)).free / 1024 / 1024 / 1024
        floor = self.config.thresholds.disk_free_min_gb
        if free_gb < floor:
            return [Issue(IssueKind.DISK_LOW, f"Disk free: {free_gb:.0f}GB (critical, <{floor:.0f}GB)")]
        return []
