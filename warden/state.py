"""Persisted status record: current version and incident state."""

import os
import json
import fcntl
import tempfile
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class IncidentState(str, Enum):
    NONE = "none"
    ACTIVE = "active"


@dataclass
class Incident:
    """The single incident record of this deployment."""
    state: IncidentState = IncidentState.NONE
    message_id: Optional[int] = None
    opened_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'message_id': self.message_id,
            'opened_at': self.opened_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Incident':
        try:
            state = IncidentState(data.get('state', 'none'))
        except ValueError:
            state = IncidentState.NONE
        message_id = data.get('message_id')
        return cls(
            state=state,
            message_id=int(message_id) if message_id is not None else None,
            opened_at=data.get('opened_at'),
        )


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, 'r') as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load status record {path}: {e}")
        return {}


def _write_json(path: Path, data: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)

    # Save with atomic write; each writer gets its own temp file
    temp = tempfile.NamedTemporaryFile('w', dir=path.parent, prefix=f".{path.name}.",
                                       suffix='.tmp', delete=False)
    try:
        with temp:
            json.dump(data, temp, indent=2)
        os.replace(temp.name, path)
    except (OSError, TypeError, ValueError):
        Path(temp.name).unlink(missing_ok=True)
        raise


class StatusStore:
    """Small JSON records read by the status surface.

    The incident lives in its own file next to the status record, so
    version and health updates can never overwrite an open incident.
    Read-modify-write cycles on the status record hold a flock on a
    sidecar lock file.
    """

    def __init__(self, path: Path):
        self.path = path
        self.incident_path = path.with_name('incident.json')
        self.lock_path = path.with_name(f".{path.name}.lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, 'a') as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _load(self) -> Dict[str, Any]:
        return _read_json(self.path)

    def _save(self, data: Dict[str, Any]):
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        _write_json(self.path, data)

    def _update(self, **fields):
        with self._locked():
            data = self._load()
            data.update(fields)
            self._save(data)

    def snapshot(self) -> Dict[str, Any]:
        data = self._load()
        data.setdefault('current_version', None)
        data['incident'] = self.load_incident().to_dict()
        return data

    def load_incident(self) -> Incident:
        return Incident.from_dict(_read_json(self.incident_path))

    def save_incident(self, incident: Incident):
        data = incident.to_dict()
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        _write_json(self.incident_path, data)

    @property
    def current_version(self) -> Optional[str]:
        return self._load().get('current_version')

    def set_current_version(self, version: str):
        self._update(current_version=version)

    def record_probe(self, issue_count: int, critical: bool):
        """Remember the outcome of the last health probe."""
        self._update(last_probe={
            'at': datetime.now(timezone.utc).isoformat(),
            'issues': issue_count,
            'critical': critical,
        })
