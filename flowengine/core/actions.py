"""Action handlers and the dispatcher that audits them.

Each handler takes its parsed payload and the execution context and returns a
JSON-serialisable result. A handler signals failure by raising; the
dispatcher records it and lets interpretation continue. ``STOP_WORKFLOW`` is
the only action that halts the walk.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from flowengine.core.capabilities import Capabilities
from flowengine.core.crm import EntityType
from flowengine.core.graph_schema import (
    ACTION_PAYLOADS,
    ActionKind,
    AssignAction,
    CalendarEventAction,
    ContactCreateAction,
    EmailAction,
    FieldUpdateAction,
    LeadScoreAction,
    Node,
    NotificationAction,
    OpportunityCreateAction,
    OpportunityUpdateAction,
    PipelineMoveAction,
    SmsAction,
    StopAction,
    TagAction,
    TaskCreateAction,
    TriggerWorkflowAction,
    WebhookAction,
)
from flowengine.core.models import (
    ActionRecord,
    ActionStatus,
    ExecutionContext,
    TriggerContext,
)
from flowengine.core.state import Database

logger = logging.getLogger(__name__)

# Authoring keys that describe the node rather than configure the action
_NODE_META_KEYS = {"actionType", "label"}


class ActionError(Exception):
    """An action's precondition was not met (missing address, id, URL...)."""

    pass


class WorkflowStopped(Exception):
    """Raised by STOP_WORKFLOW. Not an error: halts interpretation cleanly."""

    pass


@dataclass
class ActionOutcome:
    status: ActionStatus
    result: Any = None
    error_message: str | None = None

    @property
    def stopped(self) -> bool:
        return self.status == ActionStatus.STOPPED


Handler = Callable[[Any, ExecutionContext], Awaitable[Any]]

# Metric bumped after a successful action of this kind
_SUCCESS_METRICS = {
    ActionKind.EMAIL: "email_sent",
    ActionKind.SMS: "sms_sent",
}


class ActionDispatcher:
    """Runs one action node and writes exactly one ActionRecord for it."""

    def __init__(self, db: Database, capabilities: Capabilities, webhook_timeout: float = 30.0):
        self.db = db
        self.capabilities = capabilities
        self.webhook_timeout = webhook_timeout
        self._handlers: dict[ActionKind, Handler] = {
            ActionKind.EMAIL: self._send_email,
            ActionKind.SMS: self._send_sms,
            ActionKind.TAG_ADD: self._add_tag,
            ActionKind.TAG_REMOVE: self._remove_tag,
            ActionKind.FIELD_UPDATE: self._update_field,
            ActionKind.TASK_CREATE: self._create_task,
            ActionKind.CONTACT_CREATE: self._create_contact,
            ActionKind.OPPORTUNITY_CREATE: self._create_opportunity,
            ActionKind.OPPORTUNITY_UPDATE: self._update_opportunity,
            ActionKind.PIPELINE_MOVE: self._move_pipeline_stage,
            ActionKind.LEAD_SCORE_UPDATE: self._update_lead_score,
            ActionKind.ASSIGN_TO_USER: self._assign_to_user,
            ActionKind.INTERNAL_NOTIFICATION: self._send_notification,
            ActionKind.WEBHOOK: self._call_webhook,
            ActionKind.CALENDAR_EVENT_CREATE: self._create_calendar_event,
            ActionKind.TRIGGER_WORKFLOW: self._trigger_workflow,
            ActionKind.STOP_WORKFLOW: self._stop_workflow,
        }

    @property
    def crm(self):
        return self.capabilities.crm

    async def execute(self, node: Node, context: ExecutionContext) -> ActionOutcome:
        raw_type = node.data.get("actionType")
        kind = ActionKind.parse(raw_type)
        config = {k: v for k, v in node.data.items() if k not in _NODE_META_KEYS}

        try:
            if kind is None:
                raise ActionError(f"Unknown action type: {raw_type}")
            payload = node.payload(ACTION_PAYLOADS[kind])
            result = await self._handlers[kind](payload, context)
            outcome = ActionOutcome(status=ActionStatus.SUCCESS, result=result)
        except WorkflowStopped as e:
            outcome = ActionOutcome(status=ActionStatus.STOPPED, result={"reason": str(e) or None})
        except Exception as e:
            logger.error(f"Action {raw_type} failed on node '{node.id}': {e}")
            outcome = ActionOutcome(status=ActionStatus.FAILED, error_message=str(e))

        self.db.insert_action_record(
            ActionRecord(
                execution_id=context.execution_id,
                node_id=node.id,
                action_type=kind.value if kind else str(raw_type),
                config=config,
                status=outcome.status,
                result=outcome.result,
                error_message=outcome.error_message,
            )
        )
        if outcome.status == ActionStatus.SUCCESS and kind in _SUCCESS_METRICS:
            self.db.increment_metric(context.workflow_id, _SUCCESS_METRICS[kind])

        logger.info(f"Action executed: {raw_type} on '{node.id}' - {outcome.status.value}")
        return outcome

    # --- Messaging ---

    async def _send_email(self, cfg: EmailAction, context: ExecutionContext) -> dict[str, Any]:
        if not context.email_address:
            raise ActionError("No email address available")
        message_id = await self.capabilities.email.send(
            context.email_address,
            cfg.subject or "Automated Email",
            cfg.body or "",
            template_id=cfg.email_template_id,
            contact_id=context.contact_id,
            lead_id=context.lead_id,
            from_name=cfg.from_name,
            from_email=cfg.from_email,
        )
        return {"email_sent": True, "message_id": message_id}

    async def _send_sms(self, cfg: SmsAction, context: ExecutionContext) -> dict[str, Any]:
        phone = cfg.phone_number or context.phone_number
        if not phone:
            raise ActionError("No phone number available")
        message_id = await self.capabilities.sms.send(phone, cfg.message)
        return {"sms_sent": True, "phone": phone, "message_id": message_id}

    # --- CRM mutations ---

    def _tag_targets(self, context: ExecutionContext) -> list[tuple[EntityType, str]]:
        targets = []
        if context.lead_id:
            targets.append((EntityType.LEAD, context.lead_id))
        if context.contact_id:
            targets.append((EntityType.CONTACT, context.contact_id))
        return targets

    async def _add_tag(self, cfg: TagAction, context: ExecutionContext) -> dict[str, Any]:
        for entity_type, entity_id in self._tag_targets(context):
            record = self.crm.get(entity_type, entity_id)
            if record is None:
                continue
            tags = list(record.get("tags") or [])
            if cfg.tag_name not in tags:
                self.crm.update(entity_type, entity_id, {"tags": [*tags, cfg.tag_name]})
        return {"tag_added": cfg.tag_name}

    async def _remove_tag(self, cfg: TagAction, context: ExecutionContext) -> dict[str, Any]:
        for entity_type, entity_id in self._tag_targets(context):
            record = self.crm.get(entity_type, entity_id)
            if record is None:
                continue
            tags = [t for t in (record.get("tags") or []) if t != cfg.tag_name]
            self.crm.update(entity_type, entity_id, {"tags": tags})
        return {"tag_removed": cfg.tag_name}

    def _entity_ref(self, entity_type: str, context: ExecutionContext) -> tuple[EntityType, str] | None:
        if entity_type == "lead" and context.lead_id:
            return EntityType.LEAD, context.lead_id
        if entity_type == "contact" and context.contact_id:
            return EntityType.CONTACT, context.contact_id
        return None

    async def _update_field(self, cfg: FieldUpdateAction, context: ExecutionContext) -> dict[str, Any]:
        ref = self._entity_ref(cfg.entity_type, context)
        if ref:
            self.crm.update(*ref, {cfg.field_name: cfg.field_value})
        return {"field_updated": cfg.field_name, "value": cfg.field_value}

    async def _assign_to_user(self, cfg: AssignAction, context: ExecutionContext) -> dict[str, Any]:
        ref = self._entity_ref(cfg.entity_type, context)
        if ref:
            self.crm.update(*ref, {"assigned_to": cfg.user_id})
        return {"assigned_to": cfg.user_id}

    async def _update_lead_score(self, cfg: LeadScoreAction, context: ExecutionContext) -> dict[str, Any]:
        if not context.lead_id:
            raise ActionError("No lead ID available")
        lead = self.crm.get(EntityType.LEAD, context.lead_id) or {}
        current = lead.get("lead_score") or 0
        if cfg.operation == "set":
            new_score = cfg.score_change
        elif cfg.operation == "add":
            new_score = current + cfg.score_change
        else:
            new_score = current - cfg.score_change
        self.crm.update(EntityType.LEAD, context.lead_id, {"lead_score": new_score})
        return {"score_updated": True, "new_score": new_score}

    async def _create_task(self, cfg: TaskCreateAction, context: ExecutionContext) -> dict[str, Any]:
        task = self.crm.create(
            EntityType.TASK,
            {
                "title": cfg.task_title,
                "description": cfg.task_description,
                "due_date": cfg.due_date,
                "assigned_to": cfg.assigned_to,
                "priority": cfg.priority or "normal",
                "contact_id": context.contact_id,
                "lead_id": context.lead_id,
                "status": "pending",
            },
        )
        return {"task_created": task["id"]}

    async def _create_contact(self, cfg: ContactCreateAction, context: ExecutionContext) -> dict[str, Any]:
        fields = {k: v for k, v in (cfg.model_extra or {}).items() if k not in _NODE_META_KEYS}
        data = {"email": context.email_address, "phone": context.phone_number, **fields}
        contact = self.crm.create(EntityType.CONTACT, data)
        context.contact_id = contact["id"]
        return {"contact_created": contact["id"]}

    async def _create_opportunity(
        self, cfg: OpportunityCreateAction, context: ExecutionContext
    ) -> dict[str, Any]:
        opportunity = self.crm.create(
            EntityType.OPPORTUNITY,
            {
                "title": cfg.title,
                "value": cfg.value,
                "stage": cfg.stage,
                "close_date": cfg.close_date,
                "pipeline_id": cfg.pipeline_id,
                "contact_id": context.contact_id,
                "lead_id": context.lead_id,
                "status": "open",
            },
        )
        context.opportunity_id = opportunity["id"]
        return {"opportunity_created": opportunity["id"]}

    def _opportunity_id(self, explicit: str | None, context: ExecutionContext) -> str:
        opportunity_id = explicit or context.opportunity_id
        if not opportunity_id:
            raise ActionError("No opportunity ID available")
        return opportunity_id

    async def _update_opportunity(
        self, cfg: OpportunityUpdateAction, context: ExecutionContext
    ) -> dict[str, Any]:
        opportunity_id = self._opportunity_id(cfg.opportunity_id, context)
        if self.crm.update(EntityType.OPPORTUNITY, opportunity_id, cfg.updates) is None:
            raise ActionError(f"Opportunity '{opportunity_id}' not found")
        return {"opportunity_updated": opportunity_id}

    async def _move_pipeline_stage(
        self, cfg: PipelineMoveAction, context: ExecutionContext
    ) -> dict[str, Any]:
        opportunity_id = self._opportunity_id(cfg.opportunity_id, context)
        if self.crm.update(EntityType.OPPORTUNITY, opportunity_id, {"stage": cfg.new_stage}) is None:
            raise ActionError(f"Opportunity '{opportunity_id}' not found")
        return {"stage_changed": cfg.new_stage}

    async def _send_notification(
        self, cfg: NotificationAction, context: ExecutionContext
    ) -> dict[str, Any]:
        notification = self.crm.create(
            EntityType.NOTIFICATION,
            {
                "execution_id": context.execution_id,
                "workflow_id": context.workflow_id,
                "recipient_user_id": cfg.recipient_user_id,
                "notification_type": cfg.notification_type or "in_app",
                "title": cfg.title,
                "message": cfg.message,
                "priority": cfg.priority or "normal",
                "action_url": cfg.action_url,
                "action_label": cfg.action_label,
            },
        )
        return {"notification_sent": True, "notification_id": notification["id"]}

    # --- External calls ---

    async def _call_webhook(self, cfg: WebhookAction, context: ExecutionContext) -> dict[str, Any]:
        if not cfg.webhook_url:
            raise ActionError("No webhook URL configured")

        body = cfg.webhook_body
        if cfg.include_context:
            base = body if isinstance(body, dict) else {}
            body = {**base, "context": context.model_dump(mode="json", exclude={"executed_nodes"})}

        method = (cfg.webhook_method or "POST").upper()
        headers = {"Content-Type": "application/json", **cfg.webhook_headers}
        request_kwargs: dict[str, Any] = {"headers": headers}
        if method not in ("GET", "HEAD") and body is not None:
            request_kwargs["json"] = body

        if self.capabilities.http is not None:
            response = await self.capabilities.http.request(method, cfg.webhook_url, **request_kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                response = await client.request(method, cfg.webhook_url, **request_kwargs)

        return {
            "webhook_called": True,
            "status": response.status_code,
            "response": response.text,
        }

    async def _create_calendar_event(
        self, cfg: CalendarEventAction, context: ExecutionContext
    ) -> dict[str, Any]:
        event = await self.capabilities.calendar.create_event(
            cfg.title,
            cfg.start_time,
            cfg.end_time,
            cfg.attendees,
            description=cfg.description,
            location=cfg.location,
            contact_id=context.contact_id,
            lead_id=context.lead_id,
        )
        return {"event_created": True, "event_id": event.get("id")}

    async def _trigger_workflow(
        self, cfg: TriggerWorkflowAction, context: ExecutionContext
    ) -> dict[str, Any]:
        if not cfg.workflow_id:
            raise ActionError("No target workflow ID configured")
        if cfg.pass_context:
            trigger = TriggerContext(
                contact_id=context.contact_id,
                lead_id=context.lead_id,
                opportunity_id=context.opportunity_id,
                email_address=context.email_address,
                phone_number=context.phone_number,
                payload={
                    "triggered_by": "workflow",
                    "parent_execution_id": context.execution_id,
                    "variables": context.variables,
                    **context.trigger_payload,
                },
            )
        else:
            trigger = TriggerContext(payload={"triggered_by": "workflow"})
        execution_id = self.db.enqueue_execution(cfg.workflow_id, trigger)
        return {"workflow_triggered": cfg.workflow_id, "execution_id": execution_id}

    async def _stop_workflow(self, cfg: StopAction, context: ExecutionContext) -> None:
        raise WorkflowStopped(cfg.reason or "")
