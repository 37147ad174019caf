"""Tests for the persisted status record."""

import fcntl
import pytest

from warden.state import Incident, IncidentState, StatusStore


class TestStatusStore:

    def test_defaults(self, tmp_path):
        store = StatusStore(tmp_path / "status.json")

        assert store.load_incident() == Incident()
        assert store.current_version is None
        assert store.snapshot()['incident']['state'] == "none"

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "health" / "status.json"
        StatusStore(path).save_incident(Incident(IncidentState.ACTIVE, 42, "2025-01-01T00:00:00+00:00"))
        StatusStore(path).set_current_version("0.5.10")

        store = StatusStore(path)
        assert store.load_incident().state == IncidentState.ACTIVE
        assert store.load_incident().message_id == 42
        assert store.current_version == "0.5.10"

    def test_record_probe(self, tmp_path):
        store = StatusStore(tmp_path / "status.json")
        store.record_probe(2, True)

        probe = store.snapshot()['last_probe']
        assert probe['issues'] == 2
        assert probe['critical'] is True

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "status.json"
        path.write_text("{not json")

        assert StatusStore(path).load_incident() == Incident()

    def test_unknown_state_reads_as_none(self):
        assert Incident.from_dict({'state': 'exploded'}).state == IncidentState.NONE

    def test_stale_status_write_keeps_incident(self, tmp_path):
        path = tmp_path / "health" / "status.json"
        runner_view = StatusStore(path)
        stale = runner_view._load()

        StatusStore(path).save_incident(Incident(IncidentState.ACTIVE, 42))
        runner_view._save(stale)

        assert StatusStore(path).load_incident().state == IncidentState.ACTIVE
        assert StatusStore(path).load_incident().message_id == 42

    def test_version_and_health_updates_both_kept(self, tmp_path):
        path = tmp_path / "status.json"
        StatusStore(path).record_probe(0, False)
        StatusStore(path).set_current_version("0.5.10")

        snapshot = StatusStore(path).snapshot()
        assert snapshot['current_version'] == "0.5.10"
        assert snapshot['last_probe']['issues'] == 0

    def test_no_temp_files_left(self, tmp_path):
        store = StatusStore(tmp_path / "status.json")
        store.set_current_version("0.5.10")
        store.save_incident(Incident(IncidentState.ACTIVE, 1))
        store.record_probe(1, True)

        assert sorted(p.name for p in tmp_path.iterdir() if p.suffix == ".tmp") == []

    def test_status_update_holds_lock(self, tmp_path):
        store = StatusStore(tmp_path / "status.json")

        with store._locked():
            with open(store.lock_path, 'a') as other:
                with pytest.raises(OSError):
                    fcntl.flock(other.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

        store.set_current_version("0.5.10")
        assert store.current_version == "0.5.10"
