"""Configuration management for Canton Warden."""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field, replace
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

NETWORKS = ('mainnet', 'testnet', 'devnet')

LIGHTHOUSE_URLS = {
    'testnet': "https://lighthouse.testnet.cantonloop.com/api/stats",
    'devnet': "https://lighthouse.devnet.cantonloop.com/api/stats",
}

SV_SCAN_URLS = {
    'mainnet': (
        "https://scan.sv-1.global.canton.network.digitalasset.com",
        "https://scan.sv-2.global.canton.network.digitalasset.com",
        "https://scan.sv-1.global.canton.network.sync.global",
        "https://scan.sv-1.global.canton.network.cumberland.io",
        "https://scan.sv-2.global.canton.network.cumberland.io",
        "https://scan.sv-1.global.canton.network.c7.digital",
        "https://scan.sv-1.global.canton.network.fivenorth.io",
        "https://scan.sv-1.global.canton.network.lcv.mpch.io",
        "https://scan.sv-1.global.canton.network.mpch.io",
        "https://scan.sv-1.global.canton.network.orb1lp.mpch.io",
        "https://scan.sv-1.global.canton.network.proofgroup.xyz",
        "https://scan.sv.global.canton.network.sv-nodeops.com",
        "https://scan.sv-1.global.canton.network.tradeweb.com",
    ),
    'testnet': (
        "https://scan.sv-1.test.global.canton.network.digitalasset.com",
        "https://scan.sv-2.test.global.canton.network.digitalasset.com",
        "https://scan.sv.test.global.canton.network.digitalasset.com",
        "https://scan.sv-1.test.global.canton.network.sync.global",
        "https://scan.sv-1.test.global.canton.network.cumberland.io",
        "https://scan.sv-2.test.global.canton.network.cumberland.io",
        "https://scan.sv-1.test.global.canton.network.c7.digital",
        "https://scan.sv-1.test.global.canton.network.fivenorth.io",
        "https://scan.sv-1.test.global.canton.network.lcv.mpch.io",
        "https://scan.sv-1.test.global.canton.network.mpch.io",
        "https://scan.sv-1.test.global.canton.network.orb1lp.mpch.io",
        "https://scan.sv-1.test.global.canton.network.proofgroup.xyz",
        "https://scan.sv.test.global.canton.network.sv-nodeops.com",
        "https://scan.sv-1.test.global.canton.network.tradeweb.com",
    ),
    'devnet': (
        "https://scan.sv-1.dev.global.canton.network.digitalasset.com",
        "https://scan.sv-2.dev.global.canton.network.digitalasset.com",
        "https://scan.sv.dev.global.canton.network.digitalasset.com",
        "https://scan.sv-1.dev.global.canton.network.sync.global",
        "https://scan.sv-1.dev.global.canton.network.cumberland.io",
    ),
}

GITHUB_REPO = "digital-asset/decentralized-canton-sync"


@dataclass(frozen=True)
class IdentityConfig:
    """Identity and network parameters passed to the validator start script."""
    sv_url: str = ""
    scan_url: str = ""
    party_hint: str = ""
    migration_id: str = "1"
    onboarding_secret: str = ""


@dataclass(frozen=True)
class ThresholdConfig:
    """Threshold configuration for health checks."""
    sync_lag_warn_s: int = 60
    sync_lag_crit_s: int = 120
    retry_failures: int = 10
    disk_free_min_gb: float = 20.0


@dataclass(frozen=True)
class NotificationConfig:
    """Notification configuration."""
    node_name: str = "Canton-Validator"
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    discord_webhook: Optional[str] = None


@dataclass(frozen=True)
class UpgradeConfig:
    """Upgrade workflow tuning."""
    min_release_age_hours: int = 12
    verify_attempts: int = 6
    verify_interval: float = 10.0
    backup_script: Optional[str] = None
    github_repo: str = GITHUB_REPO


@dataclass(frozen=True)
class EndpointConfig:
    """Ordered network-version sources for one network."""
    primary: Tuple[str, ...] = ()
    scan: Tuple[str, ...] = ()
    catalog: str = f"https://api.github.com/repos/{GITHUB_REPO}/releases/latest"
    metrics: Tuple[str, ...] = (
        "http://127.0.0.1:8888/metrics",
        "http://127.0.0.1:10013/metrics",
    )


@dataclass(frozen=True)
class Config:
    """Immutable configuration for Canton Warden, built once at startup."""

    network: str = "mainnet"
    mode: str = "manual"
    canton_dir: Path = field(default_factory=lambda: Path.home() / ".canton")
    log_dir: Path = field(default_factory=lambda: Path.home() / ".canton" / "logs")
    log_level: str = "INFO"
    auto_restart: bool = True
    check_interval: int = 300
    api_host: str = "127.0.0.1"
    api_port: int = 8090
    config_path: Path = field(default_factory=lambda: Path.home() / ".canton" / "warden.yaml")
    env_path: Path = field(default_factory=lambda: Path.home() / ".canton" / "toolkit.conf")
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    upgrade: UpgradeConfig = field(default_factory=UpgradeConfig)
    endpoints: EndpointConfig = field(default_factory=EndpointConfig)

    DEFAULT_CONFIG_PATH = Path.home() / ".canton" / "warden.yaml"
    DEFAULT_ENV_PATH = Path.home() / ".canton" / "toolkit.conf"

    @property
    def state_dir(self) -> Path:
        return self.canton_dir / "health"

    @property
    def state_file(self) -> Path:
        return self.state_dir / "status.json"

    @property
    def lock_file(self) -> Path:
        return self.canton_dir / "upgrade.lock"

    @property
    def history_file(self) -> Path:
        return self.log_dir / "upgrade_history.json"

    @classmethod
    def load(cls, config_path: Optional[Path] = None, env_path: Optional[Path] = None) -> 'Config':
        """Build the configuration from defaults, YAML, the toolkit env file and the environment."""
        config_path = config_path or cls.DEFAULT_CONFIG_PATH
        env_path = env_path or cls.DEFAULT_ENV_PATH

        values: Dict[str, Optional[str]] = {}
        if env_path.exists():
            values.update(dotenv_values(env_path))
        values.update(os.environ)

        def get(key: str, default: Optional[str] = None) -> Optional[str]:
            value = values.get(key)
            return value if value not in (None, "") else default

        yaml_data = cls._read_yaml(config_path)
        thresh_data = yaml_data.get('thresholds', {}) or {}
        upgrade_data = yaml_data.get('upgrade', {}) or {}
        endpoint_data = yaml_data.get('endpoints', {}) or {}

        network = get("NETWORK", yaml_data.get('network', "mainnet"))
        canton_dir = Path(get("CANTON_DIR", str(Path.home() / ".canton")))

        thresholds = ThresholdConfig(
            sync_lag_warn_s=int(get("WARDEN_SYNC_LAG_WARN", thresh_data.get('sync_lag_warn_s', 60))),
            sync_lag_crit_s=int(get("WARDEN_SYNC_LAG_CRIT", thresh_data.get('sync_lag_crit_s', 120))),
            retry_failures=int(get("WARDEN_RETRY_FAIL_THRESHOLD", thresh_data.get('retry_failures', 10))),
            disk_free_min_gb=float(get("WARDEN_DISK_MIN_GB", thresh_data.get('disk_free_min_gb', 20.0))),
        )

        upgrade = UpgradeConfig(
            min_release_age_hours=int(get("WAIT_HOURS", upgrade_data.get('min_release_age_hours', 12))),
            verify_attempts=int(get("WARDEN_VERIFY_ATTEMPTS", upgrade_data.get('verify_attempts', 6))),
            verify_interval=float(get("WARDEN_VERIFY_INTERVAL", upgrade_data.get('verify_interval', 10.0))),
            backup_script=get("BACKUP_SCRIPT", upgrade_data.get('backup_script')),
            github_repo=upgrade_data.get('github_repo', GITHUB_REPO),
        )

        default_endpoints = cls.default_endpoints(network, upgrade.github_repo)
        endpoints = EndpointConfig(
            primary=tuple(endpoint_data.get('primary', default_endpoints.primary)),
            scan=tuple(endpoint_data.get('scan', default_endpoints.scan)),
            catalog=endpoint_data.get('catalog', default_endpoints.catalog),
            metrics=tuple(endpoint_data.get('metrics', default_endpoints.metrics)),
        )

        config = cls(
            network=network,
            mode=get("MODE", "manual"),
            canton_dir=canton_dir,
            log_dir=Path(get("LOG_DIR", str(canton_dir / "logs"))),
            log_level=get("LOG_LEVEL", "INFO"),
            auto_restart=str(get("AUTO_RESTART", "true")).lower() == "true",
            check_interval=int(get("CHECK_INTERVAL", "300")),
            api_host=get("API_HOST", "127.0.0.1"),
            api_port=int(get("API_PORT", "8090")),
            config_path=config_path,
            env_path=env_path,
            identity=IdentityConfig(
                sv_url=get("SV_URL", ""),
                scan_url=get("SCAN_URL", ""),
                party_hint=get("PARTY_HINT", ""),
                migration_id=get("MIGRATION_ID", "1"),
                onboarding_secret=get("ONBOARDING_SECRET", ""),
            ),
            thresholds=thresholds,
            notifications=NotificationConfig(
                node_name=get("NODE_NAME", "Canton-Validator"),
                telegram_bot_token=get("TELEGRAM_BOT_TOKEN"),
                telegram_chat_id=get("TELEGRAM_CHAT_ID"),
                discord_webhook=get("DISCORD_WEBHOOK"),
            ),
            upgrade=upgrade,
            endpoints=endpoints,
        )
        logger.debug(f"Loaded configuration for {config.network} from {env_path}")
        return config

    @staticmethod
    def _read_yaml(config_path: Path) -> Dict[str, Any]:
        """Load the optional YAML overrides file."""
        if not config_path.exists():
            return {}
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
            return data
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML config: {e}")
            return {}

    @staticmethod
    def default_endpoints(network: str, github_repo: str = GITHUB_REPO) -> EndpointConfig:
        """Built-in endpoint lists for a network."""
        primary = (LIGHTHOUSE_URLS[network],) if network in LIGHTHOUSE_URLS else ()
        return EndpointConfig(
            primary=primary,
            scan=SV_SCAN_URLS.get(network, ()),
            catalog=f"https://api.github.com/repos/{github_repo}/releases/latest",
        )

    def with_overrides(self, **changes) -> 'Config':
        """Return a copy with the given top-level fields replaced."""
        return replace(self, **changes)

    def save_yaml_config(self):
        """Save the YAML-overridable part of the configuration."""
        config_data = {
            'network': self.network,
            'thresholds': {
                'sync_lag_warn_s': self.thresholds.sync_lag_warn_s,
                'sync_lag_crit_s': self.thresholds.sync_lag_crit_s,
                'retry_failures': self.thresholds.retry_failures,
                'disk_free_min_gb': self.thresholds.disk_free_min_gb,
            },
            'upgrade': {
                'min_release_age_hours': self.upgrade.min_release_age_hours,
                'verify_attempts': self.upgrade.verify_attempts,
                'verify_interval': self.upgrade.verify_interval,
            },
            'endpoints': {
                'primary': list(self.endpoints.primary),
                'scan': list(self.endpoints.scan),
                'catalog': self.endpoints.catalog,
                'metrics': list(self.endpoints.metrics),
            },
        }

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        # Save with atomic write
        temp_path = self.config_path.with_suffix('.tmp')
        try:
            with open(temp_path, 'w') as f:
                yaml.dump(config_data, f, default_flow_style=False)
            temp_path.replace(self.config_path)
            logger.info(f"Saved configuration to {self.config_path}")
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            if temp_path.exists():
                temp_path.unlink()

    def validate(self) -> bool:
        """Validate configuration."""
        errors = []

        if self.network not in NETWORKS:
            errors.append(f"Invalid network: {self.network} (must be one of {', '.join(NETWORKS)})")

        if self.mode not in ['auto', 'manual']:
            errors.append(f"Invalid mode: {self.mode} (must be 'auto' or 'manual')")

        if not self.canton_dir.exists():
            errors.append(f"Canton directory not found at {self.canton_dir}")

        if self.thresholds.sync_lag_warn_s >= self.thresholds.sync_lag_crit_s:
            errors.append("Sync lag warning threshold must be below the critical threshold")

        if self.upgrade.verify_attempts < 1:
            errors.append("Verification needs at least one attempt")

        if errors:
            for error in errors:
                logger.error(error)
            return False

        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary, without secrets."""
        return {
            'network': self.network,
            'mode': self.mode,
            'canton_dir': str(self.canton_dir),
            'node_name': self.notifications.node_name,
            'party_hint': self.identity.party_hint,
            'migration_id': self.identity.migration_id,
            'thresholds': {
                'sync_lag_warn_s': self.thresholds.sync_lag_warn_s,
                'sync_lag_crit_s': self.thresholds.sync_lag_crit_s,
                'retry_failures': self.thresholds.retry_failures,
                'disk_free_min_gb': self.thresholds.disk_free_min_gb,
            },
            'min_release_age_hours': self.upgrade.min_release_age_hours,
            'auto_restart': self.auto_restart,
            'telegram_configured': bool(self.notifications.telegram_bot_token
                                        and self.notifications.telegram_chat_id),
        }
