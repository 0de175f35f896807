# backend/booking_engine/services/calendar_sync.py
"""
Calendar sync coordinator.

Owns the per-integration sync settings (cadence, reminder lead times,
color) and turns booking transitions into notification events. The
provider side (OAuth, pushing events into the external calendar) lives
outside this service and consumes the `events:p2p` queue.
"""

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..errors import FieldError, NotFoundError, raise_if_errors
from ..models.generated import CalendarIntegrations as DBIntegration
from ..schemas.calendar_sync import CalendarIntegrationCreate, CalendarSyncSettingsUpdate
from .slots.config import BookingConfig, get_booking_config

logger = logging.getLogger(__name__)

MIN_SYNC_FREQUENCY = 5
MAX_SYNC_FREQUENCY = 1440
MAX_REMINDER_MINUTES = 10080  # one week
COLOR_RE = re.compile(r"^#[a-fA-F0-9]{6}$")

# Events that carry reminders; cancellation only retracts
REMINDER_EVENTS = ("booking_created", "booking_confirmed", "booking_rescheduled")


def validate_sync_settings(
    sync_frequency_minutes: Optional[int] = None,
    reminder_minutes: Optional[list[int]] = None,
    calendar_color: Optional[str] = None,
) -> list[FieldError]:
    errors = []
    if sync_frequency_minutes is not None and not (
        MIN_SYNC_FREQUENCY <= sync_frequency_minutes <= MAX_SYNC_FREQUENCY
    ):
        errors.append(FieldError(
            "sync_frequency_minutes",
            f"Must be between {MIN_SYNC_FREQUENCY} and {MAX_SYNC_FREQUENCY} minutes.",
        ))
    for index, minutes in enumerate(reminder_minutes or []):
        if not 0 <= minutes <= MAX_REMINDER_MINUTES:
            errors.append(FieldError(
                "reminder_minutes",
                f"Reminder must be between 0 and {MAX_REMINDER_MINUTES} minutes.",
                index=index,
            ))
    if calendar_color is not None and not COLOR_RE.match(calendar_color):
        errors.append(FieldError("calendar_color", "Color must look like #RRGGBB."))
    return errors


def reminder_list(integration: DBIntegration) -> list[int]:
    try:
        values = json.loads(integration.reminder_minutes or "[]")
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed reminder_minutes on integration {integration.id}")
        return []
    return sorted({int(v) for v in values}, reverse=True)


class CalendarSyncCoordinator:
    """Sync settings plus the booking notification hook."""

    def __init__(
        self,
        db: Session,
        config: BookingConfig | None = None,
        emitter: Callable[[str, dict], object] | None = None,
    ):
        self.db = db
        self.config = config or get_booking_config()
        if emitter is None:
            from .events import emit_event
            emitter = emit_event
        self.emitter = emitter

    # ── Settings ─────────────────────────────────────────────────────────

    def create_integration(self, data: CalendarIntegrationCreate) -> DBIntegration:
        raise_if_errors(validate_sync_settings(
            data.sync_frequency_minutes, data.reminder_minutes, data.calendar_color
        ))
        integration = DBIntegration(
            user_id=data.user_id,
            provider=data.provider,
            sync_frequency_minutes=data.sync_frequency_minutes,
            reminder_minutes=json.dumps(data.reminder_minutes),
            calendar_color=data.calendar_color,
            is_active=1,
        )
        self.db.add(integration)
        self.db.commit()
        self.db.refresh(integration)
        logger.info(f"Calendar integration created: id={integration.id} user={integration.user_id}")
        return integration

    def get(self, integration_id: int) -> DBIntegration:
        integration = self.db.get(DBIntegration, integration_id)
        if integration is None:
            raise NotFoundError("Calendar integration not found", field="integration_id")
        return integration

    def update_settings(self, integration_id: int, data: CalendarSyncSettingsUpdate) -> DBIntegration:
        integration = self.get(integration_id)
        changes = data.model_dump(exclude_unset=True)
        raise_if_errors(validate_sync_settings(
            changes.get("sync_frequency_minutes"),
            changes.get("reminder_minutes"),
            changes.get("calendar_color"),
        ))

        if changes.get("sync_frequency_minutes") is not None:
            integration.sync_frequency_minutes = changes["sync_frequency_minutes"]
        if changes.get("reminder_minutes") is not None:
            integration.reminder_minutes = json.dumps(changes["reminder_minutes"])
        if "calendar_color" in changes:
            integration.calendar_color = changes["calendar_color"]
        if changes.get("is_active") is not None:
            integration.is_active = 1 if changes["is_active"] else 0

        self.db.commit()
        self.db.refresh(integration)
        logger.info(f"Calendar sync settings updated: id={integration.id}")
        return integration

    # ── Cadence ──────────────────────────────────────────────────────────

    def next_sync_at(self, integration: DBIntegration, now: datetime | None = None) -> datetime:
        """When the integration should next be reconciled. Never synced = now."""
        now = self.config.normalize(now) if now else self.config.now()
        if integration.last_sync_at is None:
            return now
        return integration.last_sync_at + timedelta(minutes=integration.sync_frequency_minutes)

    def due_integrations(self, now: datetime | None = None) -> list[DBIntegration]:
        now = self.config.normalize(now) if now else self.config.now()
        active = (
            self.db.query(DBIntegration)
            .filter(DBIntegration.is_active == 1)
            .order_by(DBIntegration.id)
            .all()
        )
        return [i for i in active if self.next_sync_at(i, now) <= now]

    def mark_synced(self, integration_id: int, now: datetime | None = None) -> DBIntegration:
        now = self.config.normalize(now) if now else self.config.now()
        integration = self.get(integration_id)
        integration.last_sync_at = now
        self.db.commit()
        return integration

    def reminder_times(
        self,
        scheduled_at: datetime,
        reminder_minutes: list[int],
        now: datetime | None = None,
    ) -> list[datetime]:
        """Reminder timestamps before `scheduled_at` that are still ahead of now."""
        now = self.config.normalize(now) if now else self.config.now()
        times = {scheduled_at - timedelta(minutes=m) for m in reminder_minutes}
        return sorted(t for t in times if t > now)

    # ── Notification hook ────────────────────────────────────────────────

    def booking_event(
        self,
        event_type: str,
        booking,
        now: datetime | None = None,
        notify_client: bool = True,
    ) -> dict:
        """
        Publish a booking transition for the external calendar and the client.

        One event per transition; each active integration of the booking's
        user gets its own reminder schedule inside the payload.
        """
        now = self.config.normalize(now) if now else self.config.now()
        integrations = (
            self.db.query(DBIntegration)
            .filter(DBIntegration.user_id == booking.user_id, DBIntegration.is_active == 1)
            .order_by(DBIntegration.id)
            .all()
        )

        targets = []
        for integration in integrations:
            reminders = []
            if event_type in REMINDER_EVENTS:
                reminders = self.reminder_times(booking.scheduled_at, reminder_list(integration), now)
            targets.append({
                "integration_id": integration.id,
                "provider": integration.provider,
                "calendar_color": integration.calendar_color,
                "reminders": [r.isoformat() for r in reminders],
            })

        payload = {
            "booking_id": booking.id,
            "reference": booking.reference,
            "user_id": booking.user_id,
            "status": booking.status,
            "scheduled_at": booking.scheduled_at.isoformat(),
            "ends_at": booking.ends_at.isoformat(),
            "notify_client": notify_client,
            "integrations": targets,
        }
        self.emitter(event_type, payload)
        logger.info(
            f"{event_type} published for booking={booking.id} "
            f"integrations={len(targets)} notify_client={notify_client}"
        )
        return payload
