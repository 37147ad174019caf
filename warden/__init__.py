"""Canton Warden - upgrade automation and health alerting for a Canton validator node."""

__version__ = "1.0.0"
__author__ = "Canton Warden Team"
__description__ = "Safe upgrades and low-noise health alerts for Canton validator nodes"

from .config import Config
from .health import HealthProbe
from .watcher import Version, VersionWatcher
from .runner import UpgradeOrchestrator
from .alerts import AlertStateMachine

__all__ = [
    "Config",
    "HealthProbe",
    "Version",
    "VersionWatcher",
    "UpgradeOrchestrator",
    "AlertStateMachine",
]
