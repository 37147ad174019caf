"""CLI entry point for Canton Warden."""

import sys
import json
import signal
import asyncio
import logging
from pathlib import Path
from typing import Optional
import click

from . import __version__
from .config import Config
from .alerts import AlertStateMachine
from .api import StatusAPI
from .backup import BackupRunner
from .bundles import BundleStore
from .containers import ROLES, DockerLifecycle
from .health import HealthProbe
from .migrate import ConfigMigrator
from .notifications import NotificationManager
from .runner import UpgradeMode, UpgradeOrchestrator, UpgradeResult
from .state import StatusStore
from .watcher import Version, VersionWatcher

logger = logging.getLogger("warden")


def setup_logging(log_level: str, log_file: Optional[Path] = None):
    """Setup logging configuration."""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=log_format,
        handlers=handlers
    )


class Node:
    """All components of one deployment, wired from a single Config."""

    def __init__(self, config: Config):
        self.config = config
        self.store = StatusStore(config.state_file)
        self.bundles = BundleStore(config)
        self.containers = DockerLifecycle(config, self.bundles)
        self.watcher = VersionWatcher(config, containers=self.containers, bundles=self.bundles)
        self.notifier = NotificationManager(config.notifications)
        self.alerts = AlertStateMachine(self.store, self.notifier)
        self.probe = HealthProbe(config, self.containers)
        self.orchestrator = UpgradeOrchestrator(
            config,
            watcher=self.watcher,
            bundles=self.bundles,
            migrator=ConfigMigrator(self.bundles),
            containers=self.containers,
            notifier=self.notifier,
            store=self.store,
            alerts=self.alerts,
            backup=BackupRunner(config.upgrade.backup_script),
        )

    def health_cycle(self):
        """One probe run fed into the alert state machine."""
        report = self.probe.run()
        for issue in report.issues:
            if not issue.critical:
                logger.warning(f"{issue.kind.key}: {issue.detail}")
        self.alerts.evaluate(report.critical, report.message)
        self.store.record_probe(len(report.issues), report.critical)
        return report


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=False), help='YAML overrides file path')
@click.option('--env-file', '-e', type=click.Path(exists=False), help='Toolkit env file path')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--log-file', type=click.Path(exists=False), help='Also log to this file')
@click.pass_context
def cli(ctx, config, env_file, log_level, log_file):
    """Canton Warden - safe upgrades and health alerts for a Canton validator."""
    cfg = Config.load(
        config_path=Path(config) if config else None,
        env_path=Path(env_file) if env_file else None,
    )
    setup_logging(log_level or cfg.log_level, Path(log_file) if log_file else None)
    ctx.obj = cfg

    # Only validate config for commands that need it
    if ctx.invoked_subcommand not in ['init']:
        if not cfg.validate():
            click.echo("Configuration validation failed", err=True)
            click.echo("Run 'canton-warden init' to initialize configuration", err=True)
            sys.exit(1)


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print configuration and status record as JSON')
@click.pass_obj
def status(config: Config, as_json: bool):
    """Show versions, containers and incident state."""
    node = Node(config)

    if as_json:
        click.echo(json.dumps({
            'config': config.to_dict(),
            'status': node.store.snapshot(),
            'bundles': [str(v) for v in node.bundles.list_versions()],
        }, indent=2))
        return

    click.echo("Canton Warden Status")
    click.echo("=" * 80)
    click.echo(f"Network:         {config.network}")
    click.echo(f"Mode:            {config.mode}")

    deployed = node.watcher.resolve_deployed_version()
    network = node.watcher.resolve_network_version()
    click.echo(f"Our version:     {deployed or 'not running'}")
    click.echo(f"Network version: {network.version if network else 'unavailable'}")
    if network:
        click.echo(f"  Source:        {network.source}")
    click.echo()

    click.echo("Containers:")
    for role in ROLES:
        name = node.containers.find(role)
        if not name:
            click.echo(f"  ❌ {role}: not found")
            continue
        container = node.containers.status(name)
        icon = "✅" if container.running else "❌"
        click.echo(f"  {icon} {name} [{container.health or ('running' if container.running else 'down')}]")
    click.echo()

    bundles = node.bundles.list_versions()
    click.echo(f"Bundles:         {', '.join(str(v) for v in bundles) or 'none'}")
    incident = node.store.load_incident()
    click.echo(f"Incident: {incident.state.value}")

    if deployed and network and network.version > deployed:
        click.echo(f"\n⚠️  Update available: {deployed} → {network.version}")


@cli.command()
@click.pass_obj
def check_updates(config: Config):
    """Check whether the network runs a newer version."""
    node = Node(config)

    click.echo("Checking for updates...")
    deployed = node.watcher.resolve_deployed_version()
    network = node.watcher.resolve_network_version()

    if network is None:
        click.echo("❌ Cannot detect network version", err=True)
        sys.exit(1)
    if deployed is None:
        click.echo("❌ Cannot detect running version", err=True)
        sys.exit(1)

    if network.version > deployed:
        click.echo(f"📦 Update available: {deployed} → {network.version}")
        published = node.watcher.release_published_at(network.version)
        if published:
            click.echo(f"  Released: {published.strftime('%Y-%m-%d %H:%M UTC')}")
        if not deployed.same_line(network.version):
            click.echo("  ⚠️  MAJOR version change - review release notes")
    else:
        click.echo(f"✅ Up to date ({deployed})")


def _report(outcome) -> None:
    if outcome.result == UpgradeResult.LOCKED:
        return
    icon = "❌" if outcome.result.failed else "✅"
    line = f"{icon} {outcome.result.value}"
    if outcome.to_version:
        line += f": {outcome.from_version} → {outcome.to_version}"
    if outcome.message:
        line += f" ({outcome.message})"
    click.echo(line, err=outcome.result.failed)


@cli.command()
@click.option('--target', help='Target version (default: network version)')
@click.option('--backup/--no-backup', default=True, help='Run the backup script first')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_obj
def upgrade(config: Config, target: Optional[str], backup: bool, yes: bool):
    """Upgrade now (manual run: no release-age gate, major bumps only warn)."""
    node = Node(config)

    target_version = None
    if target:
        target_version = Version.parse(target)
        if target_version is None:
            click.echo(f"❌ Invalid version: {target}", err=True)
            sys.exit(1)

    if not yes:
        click.confirm(f"Upgrade to {target_version or 'the network version'} now?", abort=True)

    outcome = node.orchestrator.run(UpgradeMode.MANUAL, target=target_version, backup=backup)
    _report(outcome)
    if outcome.result.failed:
        sys.exit(1)


@cli.command()
@click.pass_obj
def auto_upgrade(config: Config):
    """Automatic upgrade run, meant for cron."""
    if config.mode != 'auto':
        logger.info("Auto-upgrade is disabled (MODE=manual)")
        logger.info("To enable auto-upgrade: set MODE=auto in the toolkit env file")
        return

    outcome = Node(config).orchestrator.run(UpgradeMode.AUTO)
    _report(outcome)
    if outcome.result.failed:
        sys.exit(1)


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.pass_obj
def check_health(config: Config, as_json: bool):
    """Run one health probe and update the incident state."""
    node = Node(config)
    logger.info(f"Running health check - {config.notifications.node_name}")
    report = node.health_cycle()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))


@cli.command()
@click.pass_obj
@click.option('--interval', '-i', default=None, type=int, help='Check interval in seconds')
@click.option('--once', is_flag=True, help='Run once and exit')
def monitor(config: Config, interval: Optional[int], once: bool):
    """Run the health cycle periodically."""
    node = Node(config)
    interval = interval or config.check_interval

    async def monitoring_loop():
        """Main monitoring loop."""
        while True:
            try:
                node.health_cycle()
            except Exception as e:
                logger.error(f"Monitoring error: {e}")
                if once:
                    raise

            if once:
                break
            await asyncio.sleep(interval)

    def signal_handler(sig, frame):
        logger.info("Received shutdown signal")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    click.echo(f"Starting Canton Warden monitoring (interval: {interval}s)")
    asyncio.run(monitoring_loop())


@cli.command()
@click.pass_obj
@click.option('--format', type=click.Choice(['json', 'text']), default='text')
def history(config: Config, format: str):
    """View upgrade history."""
    records = Node(config).orchestrator.get_upgrade_history(limit=20)

    if format == 'json':
        click.echo(json.dumps(records, indent=2))
        return

    click.echo("Upgrade History")
    click.echo("=" * 80)
    if not records:
        click.echo("No upgrades recorded")
        return

    for record in reversed(records):
        icon = "✅" if record['result'] in ('committed', 'up_to_date') else "❌"
        click.echo(f"\n{icon} {record['result']} ({record.get('mode', '?')}) on {record['finished_at']}")
        click.echo(f"   From: {record['from_version']} → To: {record['to_version']}")
        if record.get('message'):
            click.echo(f"   Details: {record['message']}")


@cli.command()
@click.pass_obj
def test_notify(config: Config):
    """Send a test message to the configured channels."""
    notifier = NotificationManager(config.notifications)
    if not notifier.telegram_enabled and not config.notifications.discord_webhook:
        click.echo("❌ No notification channel configured", err=True)
        sys.exit(1)
    notifier.test_notifications()
    click.echo("✅ Test notification sent")


@cli.command()
@click.pass_obj
def serve(config: Config):
    """Serve /health, /status and /metrics."""
    node = Node(config)
    api = StatusAPI(config, node.store, node.bundles)
    try:
        asyncio.run(api.start())
    except KeyboardInterrupt:
        logger.info("API server stopped")


@cli.command()
@click.pass_obj
def init(config: Config):
    """Initialize Canton Warden configuration."""
    click.echo("Initializing Canton Warden...")

    config.canton_dir.mkdir(parents=True, exist_ok=True)
    config.log_dir.mkdir(parents=True, exist_ok=True)
    config.state_dir.mkdir(parents=True, exist_ok=True)

    config.save_yaml_config()

    env_example = """# Canton Warden configuration (shell KEY=VALUE)

NETWORK=mainnet
NODE_NAME=Canton-Validator

# Validator identity, passed to start.sh
PARTY_HINT=
MIGRATION_ID=1
SV_URL=
SCAN_URL=
ONBOARDING_SECRET=

# Telegram bot credentials
TELEGRAM_BOT_TOKEN=
TELEGRAM_CHAT_ID=

# Optional Discord webhook mirror
# DISCORD_WEBHOOK=https://discord.com/api/webhooks/...

# Operation mode: auto or manual (auto-upgrade only runs in auto)
MODE=manual

# Minimum release age in hours before an automatic upgrade
WAIT_HOURS=12

# Restart crashed or unhealthy containers before alerting
AUTO_RESTART=true

# Backup script run before automatic upgrades
# BACKUP_SCRIPT=/root/canton-validator-toolkit/scripts/backup.sh
"""

    env_example_path = config.env_path.with_suffix('.example')
    with open(env_example_path, 'w') as f:
        f.write(env_example)

    click.echo(f"✅ Created directory: {config.canton_dir}")
    click.echo(f"✅ Created config file: {config.config_path}")
    click.echo(f"✅ Created example env file: {env_example_path}")
    click.echo("\nNext steps:")
    click.echo(f"1. Copy {env_example_path} to {config.env_path}")
    click.echo(f"2. Edit {config.env_path} with your settings")
    click.echo("3. Run 'canton-warden status' to check the node")


if __name__ == '__main__':
    cli()
