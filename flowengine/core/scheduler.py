"""Delay and resume scheduling.

Delay and wait-for-event nodes persist a suspension and put the execution in
``waiting``. The resume loop later asks for due suspensions and re-enters the
interpreter downstream of the suspended node.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, tzinfo

from flowengine.core.graph_schema import DelayConfig, Node, WaitForEventConfig
from flowengine.core.models import (
    DelaySuspension,
    ExecutionContext,
    SuspensionKind,
    utc_now,
)
from flowengine.core.state import Database

logger = logging.getLogger(__name__)

UNIT_MILLISECONDS: dict[str, int] = {
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 24 * 60 * 60 * 1000,
    "weeks": 7 * 24 * 60 * 60 * 1000,
}


class SchedulerError(Exception):
    """Delay configuration cannot produce a resume time."""

    pass


def compute_resume_at(
    config: DelayConfig,
    now: datetime,
    timezone: tzinfo,
    default_delay_minutes: float = 60,
) -> tuple[SuspensionKind, datetime]:
    """Resume time for a delay node.

    Relative delays use integer millisecond arithmetic. Naive wait-until
    dates are read in ``timezone``. Unknown delay types fall back to
    ``default_delay_minutes``.
    """
    delay_type = (config.delay_type or "").upper()

    if delay_type == SuspensionKind.TIME_DELAY.value:
        unit = (config.delay_unit or "").lower()
        if unit not in UNIT_MILLISECONDS:
            raise SchedulerError(f"Unknown delay unit '{config.delay_unit}'")
        millis = round(config.delay_amount * UNIT_MILLISECONDS[unit])
        return SuspensionKind.TIME_DELAY, now + timedelta(milliseconds=millis)

    if delay_type == SuspensionKind.WAIT_UNTIL.value:
        if not config.wait_until_date:
            raise SchedulerError("WAIT_UNTIL delay without waitUntilDate")
        try:
            target = datetime.fromisoformat(
                f"{config.wait_until_date}T{config.wait_until_time or '00:00'}"
            )
        except ValueError as e:
            raise SchedulerError(f"Invalid wait-until date/time: {e}") from e
        if target.tzinfo is None:
            target = target.replace(tzinfo=timezone)
        return SuspensionKind.WAIT_UNTIL, target

    logger.warning(
        f"Unknown delay type '{config.delay_type}', waiting {default_delay_minutes} minutes"
    )
    millis = round(default_delay_minutes * UNIT_MILLISECONDS["minutes"])
    return SuspensionKind.TIME_DELAY, now + timedelta(milliseconds=millis)


class DelayScheduler:
    """Persists suspension points and hands back the ones that are due."""

    def __init__(
        self,
        db: Database,
        clock: Callable[[], datetime] = utc_now,
        timezone: tzinfo | None = None,
        default_wait_timeout_hours: float = 168,
        default_delay_minutes: float = 60,
    ):
        self.db = db
        self.clock = clock
        self.timezone = timezone or utc_now().tzinfo
        self.default_wait_timeout_hours = default_wait_timeout_hours
        self.default_delay_minutes = default_delay_minutes

    def suspend_delay(self, node: Node, context: ExecutionContext) -> DelaySuspension:
        config = node.payload(DelayConfig)
        now = self.clock()
        kind, resume_at = compute_resume_at(
            config, now, self.timezone, self.default_delay_minutes
        )
        suspension = DelaySuspension(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            node_id=node.id,
            kind=kind,
            resume_at=resume_at,
            config=node.data,
            created_at=now,
        )
        suspension.id = self.db.insert_suspension(suspension)
        self.db.mark_waiting(context.execution_id, node.id)
        logger.info(
            f"Execution {context.execution_id} paused at '{node.id}' until {resume_at.isoformat()}"
        )
        return suspension

    def suspend_for_event(self, node: Node, context: ExecutionContext) -> DelaySuspension:
        config = node.payload(WaitForEventConfig)
        now = self.clock()
        timeout_hours = config.timeout_hours or self.default_wait_timeout_hours
        suspension = DelaySuspension(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            node_id=node.id,
            kind=SuspensionKind.WAIT_FOR_EVENT,
            wait_event_type=config.event_type,
            timeout_at=now + timedelta(milliseconds=round(timeout_hours * UNIT_MILLISECONDS["hours"])),
            config=node.data,
            created_at=now,
        )
        suspension.id = self.db.insert_suspension(suspension)
        self.db.mark_waiting(context.execution_id, node.id)
        logger.info(
            f"Execution {context.execution_id} waiting for event '{config.event_type}' "
            f"(timeout: {timeout_hours}h)"
        )
        return suspension

    def due_suspensions(self, limit: int = 100) -> list[DelaySuspension]:
        return self.db.get_due_suspensions(self.clock(), limit)

    def consume(self, suspension: DelaySuspension) -> bool:
        """Mark a suspension completed. False if another resumer got there first."""
        if suspension.id is None:
            raise SchedulerError("Suspension has no id; it was never persisted")
        return self.db.complete_suspension(suspension.id, self.clock())

    def signal_event(self, execution_id: str, event_type: str) -> bool:
        """Make a matching wait-for-event suspension due on the next resume pass."""
        return self.db.make_event_due(execution_id, event_type, self.clock()) > 0
