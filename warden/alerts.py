"""Two-state incident model: alert once per episode, resolve once."""

import logging
from datetime import datetime, timezone

from .state import Incident, IncidentState, StatusStore

logger = logging.getLogger(__name__)


class AlertStateMachine:
    """Turns the per-cycle "anything critical?" flag into notifications.

    Keyed only on the flag, so a node that stays critical while the cause
    changes keeps its one pinned alert.
    """

    def __init__(self, store: StatusStore, notifier):
        self.store = store
        self.notifier = notifier

    @property
    def incident(self) -> Incident:
        return self.store.load_incident()

    def evaluate(self, critical_now: bool, message: str = "") -> IncidentState:
        incident = self.store.load_incident()

        if critical_now and incident.state == IncidentState.NONE:
            self._open(self.notifier.send_health_alert(message))
            logger.info("ALERT sent")
            return IncidentState.ACTIVE

        if critical_now:
            logger.info("Still failing (no repeat alert):")
            for line in message.splitlines():
                logger.info(f"  {line}")
            return IncidentState.ACTIVE

        if incident.state == IncidentState.ACTIVE:
            if incident.message_id is not None:
                self.notifier.unpin(incident.message_id)
            self.notifier.send_resolved()
            self.store.save_incident(Incident())
            logger.info("RECOVERY sent, alert unpinned")
            return IncidentState.NONE

        logger.info("All checks passed")
        return IncidentState.NONE

    def escalate(self, message_id):
        """Pin an already-sent, most severe notification as the open incident.

        Used for upgrade rollback failures: the new message replaces any
        pinned health alert, and the next healthy cycle resolves it.
        """
        incident = self.store.load_incident()
        if incident.message_id is not None and incident.message_id != message_id:
            self.notifier.unpin(incident.message_id)
        self._open(message_id)

    def _open(self, message_id):
        if message_id is not None:
            self.notifier.pin(message_id)
        self.store.save_incident(Incident(
            state=IncidentState.ACTIVE,
            message_id=message_id,
            opened_at=datetime.now(timezone.utc).isoformat(),
        ))
