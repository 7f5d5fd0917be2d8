"""Notification surfaces: where DoseDue / DoseResolved events end up.

The engine only decides what to announce and when. Rendering, sound and
dismissal belong to whatever consumes these surfaces.
"""
import logging
from typing import Dict, List, Protocol

from medtrack.medications.schemas import DedupKey
from medtrack.reminders.events import DoseDue, DoseResolved

logger = logging.getLogger(__name__)


class NotificationSurface(Protocol):
    async def dose_due(self, event: DoseDue) -> None: ...

    async def dose_resolved(self, event: DoseResolved) -> None: ...


class InMemoryNotifier:
    """Outstanding alerts per user, polled by the UI through /reminders/alerts."""

    def __init__(self):
        self._alerts: Dict[str, Dict[DedupKey, DoseDue]] = {}

    async def dose_due(self, event: DoseDue) -> None:
        self._alerts.setdefault(event.user_id, {})[event.dedup_key] = event

    async def dose_resolved(self, event: DoseResolved) -> None:
        self._alerts.get(event.user_id, {}).pop(event.dedup_key, None)

    def active_alerts(self, user_id: str) -> List[DoseDue]:
        alerts = self._alerts.get(user_id, {}).values()
        return sorted(alerts, key=lambda e: (e.scheduled_time, str(e.dedup_key.medication_id), e.dedup_key.slot_index))


class LoggingNotifier:
    async def dose_due(self, event: DoseDue) -> None:
        logger.info(
            "Reminder: %s %s due at %s (%s)",
            event.medication_name,
            event.dosage_text,
            event.scheduled_time.strftime("%H:%M"),
            event.dedup_key,
        )

    async def dose_resolved(self, event: DoseResolved) -> None:
        logger.info("Reminder resolved: %s", event.dedup_key)


class CompositeNotifier:
    """Fan events out to several surfaces; one failing surface does not starve the rest."""

    def __init__(self, *surfaces: NotificationSurface):
        self.surfaces = list(surfaces)

    async def dose_due(self, event: DoseDue) -> None:
        for surface in self.surfaces:
            try:
                await surface.dose_due(event)
            except Exception:
                logger.exception("Notification surface %r failed on %s", surface, event.dedup_key)

    async def dose_resolved(self, event: DoseResolved) -> None:
        for surface in self.surfaces:
            try:
                await surface.dose_resolved(event)
            except Exception:
                logger.exception("Notification surface %r failed on %s", surface, event.dedup_key)
