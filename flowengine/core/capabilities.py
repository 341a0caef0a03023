"""Capability interfaces consumed by action handlers.

The engine calls these narrow services but does not implement delivery. The
logging implementations are what ``flowengine serve`` wires up when no real
provider is configured.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from flowengine.core.crm import EntityType

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    """Outbound email delivery."""

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        template_id: str | None = None,
        **metadata: Any,
    ) -> str:
        """Send a message and return the provider message id."""


class SmsSender(Protocol):
    """Outbound SMS delivery."""

    async def send(self, to: str, message: str) -> str:
        """Send a message and return the provider message id."""


class CalendarService(Protocol):
    async def create_event(
        self,
        title: str | None,
        start_time: str | None,
        end_time: str | None,
        attendees: list[str],
        **details: Any,
    ) -> dict[str, Any]:
        """Create an event and return its stored representation."""


class CrmStore(Protocol):
    """Lead/contact/opportunity/task/notification CRUD plus email event lookup."""

    def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None: ...

    def create(
        self, entity_type: EntityType, data: dict[str, Any], entity_id: str | None = None
    ) -> dict[str, Any]: ...

    def update(
        self, entity_type: EntityType, entity_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None: ...

    def has_email_event(self, email_address: str, event_type: str) -> bool: ...


class LoggingEmailSender:
    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        template_id: str | None = None,
        **metadata: Any,
    ) -> str:
        message_id = f"email-{uuid.uuid4().hex[:12]}"
        logger.info(f"Email to {to} ({subject!r}, template={template_id}) -> {message_id}")
        return message_id


class LoggingSmsSender:
    async def send(self, to: str, message: str) -> str:
        message_id = f"sms-{uuid.uuid4().hex[:12]}"
        logger.info(f"SMS to {to} ({len(message)} chars) -> {message_id}")
        return message_id


class LoggingCalendarService:
    async def create_event(
        self,
        title: str | None,
        start_time: str | None,
        end_time: str | None,
        attendees: list[str],
        **details: Any,
    ) -> dict[str, Any]:
        event = {
            "id": f"event-{uuid.uuid4().hex[:12]}",
            "title": title,
            "start_time": start_time,
            "end_time": end_time,
            "attendees": attendees,
            **details,
        }
        logger.info(f"Calendar event {event['id']} ({title!r}) for {len(attendees)} attendee(s)")
        return event


@dataclass
class Capabilities:
    """Services injected into the engine.

    ``http`` is optional: when unset, webhook actions open a short-lived
    client per call.
    """

    crm: CrmStore
    email: EmailSender = field(default_factory=LoggingEmailSender)
    sms: SmsSender = field(default_factory=LoggingSmsSender)
    calendar: CalendarService = field(default_factory=LoggingCalendarService)
    http: httpx.AsyncClient | None = None
