"""Shared test fixtures."""

import pytest

ENV_KEYS = [
    "NETWORK", "MODE", "CANTON_DIR", "LOG_DIR", "LOG_LEVEL", "AUTO_RESTART", "CHECK_INTERVAL",
    "API_HOST", "API_PORT", "SV_URL", "SCAN_URL", "PARTY_HINT", "MIGRATION_ID", "ONBOARDING_SECRET",
    "NODE_NAME", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "DISCORD_WEBHOOK", "WAIT_HOURS",
    "BACKUP_SCRIPT", "WARDEN_SYNC_LAG_WARN", "WARDEN_SYNC_LAG_CRIT", "WARDEN_RETRY_FAIL_THRESHOLD",
    "WARDEN_DISK_MIN_GB", "WARDEN_VERIFY_ATTEMPTS", "WARDEN_VERIFY_INTERVAL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the host's toolkit settings out of every test."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
