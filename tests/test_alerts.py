"""Tests for the incident alert state machine."""

import pytest
from unittest.mock import Mock

from warden.alerts import AlertStateMachine
from warden.state import Incident, IncidentState, StatusStore


class TestAlertStateMachine:
    """Test alert once, resolve once."""

    @pytest.fixture
    def store(self, tmp_path):
        return StatusStore(tmp_path / "health" / "status.json")

    @pytest.fixture
    def notifier(self):
        notifier = Mock()
        notifier.send_health_alert.return_value = 101
        notifier.send_resolved.return_value = 102
        return notifier

    @pytest.fixture
    def alerts(self, store, notifier):
        return AlertStateMachine(store, notifier)

    def test_healthy_sends_nothing(self, alerts, notifier):
        for _ in range(3):
            assert alerts.evaluate(False) == IncidentState.NONE

        notifier.send_health_alert.assert_not_called()
        notifier.send_resolved.assert_not_called()
        notifier.pin.assert_not_called()

    def test_sustained_failure_alerts_once(self, alerts, notifier, store):
        for _ in range(5):
            assert alerts.evaluate(True, "🔴 validator: DOWN") == IncidentState.ACTIVE

        notifier.send_health_alert.assert_called_once_with("🔴 validator: DOWN")
        notifier.pin.assert_called_once_with(101)
        incident = store.load_incident()
        assert incident.state == IncidentState.ACTIVE
        assert incident.message_id == 101
        assert incident.opened_at

    def test_recovery_resolves_once(self, alerts, notifier, store):
        alerts.evaluate(True, "🔴 Disk free: 5GB")

        assert alerts.evaluate(False) == IncidentState.NONE
        assert alerts.evaluate(False) == IncidentState.NONE

        notifier.unpin.assert_called_once_with(101)
        notifier.send_resolved.assert_called_once()
        assert store.load_incident() == Incident()

    def test_changing_cause_keeps_single_alert(self, alerts, notifier):
        """Disk low, then container down while disk still low: one alert, then one resolve."""
        alerts.evaluate(True, "🔴 Disk free: 5GB")
        alerts.evaluate(True, "🔴 Disk free: 5GB\n🔴 validator: DOWN")
        alerts.evaluate(False)

        assert notifier.send_health_alert.call_count == 1
        assert notifier.send_resolved.call_count == 1

    def test_state_survives_restart(self, store, notifier):
        AlertStateMachine(store, notifier).evaluate(True, "🔴 validator: DOWN")

        AlertStateMachine(store, notifier).evaluate(True, "🔴 validator: DOWN")
        AlertStateMachine(store, notifier).evaluate(False)

        assert notifier.send_health_alert.call_count == 1
        notifier.unpin.assert_called_once_with(101)

    def test_alert_without_message_id(self, alerts, notifier, store):
        notifier.send_health_alert.return_value = None

        alerts.evaluate(True, "🔴 validator: DOWN")
        alerts.evaluate(False)

        notifier.pin.assert_not_called()
        notifier.unpin.assert_not_called()
        notifier.send_resolved.assert_called_once()
        assert store.load_incident().state == IncidentState.NONE

    def test_escalate_replaces_pinned_alert(self, alerts, notifier, store):
        alerts.evaluate(True, "🔴 validator: DOWN")

        alerts.escalate(555)

        notifier.unpin.assert_called_once_with(101)
        notifier.pin.assert_called_with(555)
        incident = store.load_incident()
        assert incident.state == IncidentState.ACTIVE
        assert incident.message_id == 555

        # Still critical: no repeat alert; healthy again: resolves the escalated message
        alerts.evaluate(True, "🔴 validator: DOWN")
        alerts.evaluate(False)
        assert notifier.send_health_alert.call_count == 1
        notifier.unpin.assert_called_with(555)

    def test_escalate_from_none(self, alerts, notifier, store):
        alerts.escalate(777)

        notifier.unpin.assert_not_called()
        notifier.pin.assert_called_once_with(777)
        assert alerts.incident.state == IncidentState.ACTIVE

    def test_stale_version_write_does_not_reopen(self, tmp_path, notifier):
        """An upgrade finishing mid-incident must not cause a second alert."""
        path = tmp_path / "health" / "status.json"
        runner_store = StatusStore(path)
        alerts = AlertStateMachine(StatusStore(path), notifier)

        stale = runner_store._load()
        alerts.evaluate(True, "🔴 Disk free: 5GB")
        runner_store._save(stale)
        runner_store.set_current_version("0.5.10")
        alerts.evaluate(True, "🔴 Disk free: 5GB")

        notifier.send_health_alert.assert_called_once()
        assert runner_store.current_version == "0.5.10"
