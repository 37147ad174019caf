"""HTTP status surface and Prometheus metrics."""

import asyncio
import logging
from datetime import datetime
from aiohttp import web
from prometheus_client import Gauge, generate_latest

from .config import Config
from .bundles import BundleStore
from .state import IncidentState, StatusStore

logger = logging.getLogger(__name__)

# Prometheus metrics
incident_active = Gauge('canton_warden_incident_active', 'Open incident (1=active, 0=none)')
current_version_info = Gauge('canton_warden_current_version_info', 'Version the current pointer names',
                             ['version'])
last_probe_issues = Gauge('canton_warden_last_probe_issues', 'Issues found by the last health probe')
last_probe_critical = Gauge('canton_warden_last_probe_critical', 'Last health probe was critical')


class StatusAPI:
    """Read-only HTTP view of the persisted status record."""

    def __init__(self, config: Config, store: StatusStore, bundles: BundleStore):
        self.config = config
        self.store = store
        self.bundles = bundles
        self.host = config.api_host
        self.port = config.api_port
        self.app = web.Application()
        self.setup_routes()

    def setup_routes(self):
        """Setup HTTP routes."""
        self.app.router.add_get('/health', self.health_handler)
        self.app.router.add_get('/status', self.status_handler)
        self.app.router.add_get('/metrics', self.metrics_handler)

    def _status(self):
        status = self.store.snapshot()
        pointer = self.bundles.current_version()
        status['current_pointer'] = str(pointer) if pointer else None
        status['network'] = self.config.network
        status['mode'] = self.config.mode
        return status

    async def health_handler(self, request):
        """200 while no incident is open, 503 otherwise."""
        incident = self.store.load_incident()
        healthy = incident.state == IncidentState.NONE
        return web.json_response(
            {'healthy': healthy, 'incident': incident.to_dict(), 'timestamp': datetime.now().isoformat()},
            status=200 if healthy else 503
        )

    async def status_handler(self, request):
        """Current version and incident state."""
        return web.json_response(self._status())

    async def metrics_handler(self, request):
        """Prometheus metrics endpoint."""
        status = self._status()
        incident_active.set(1 if status['incident']['state'] == IncidentState.ACTIVE.value else 0)

        current_version_info.clear()
        if status['current_pointer']:
            current_version_info.labels(version=status['current_pointer']).set(1)

        probe = status.get('last_probe') or {}
        last_probe_issues.set(probe.get('issues', 0))
        last_probe_critical.set(1 if probe.get('critical') else 0)

        return web.Response(body=generate_latest(), content_type='text/plain')

    async def start(self):
        """Start the API server."""
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        await site.start()

        logger.info(f"Status API started on http://{self.host}:{self.port}")

        # Keep running
        await asyncio.Event().wait()
