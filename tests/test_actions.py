"""Tests for action handlers.

Tests cover:
- Exactly one ActionRecord per executed action, success or failure
- Messaging preconditions and analytics counters
- CRM mutations: tags, fields, scores, assignment, created records
- Context mutation by create-contact / create-opportunity
- Webhooks over httpx (MockTransport), sub-workflow enqueue, stop signal
"""

from __future__ import annotations

import json

import httpx
import pytest

from flowengine.core.actions import ActionDispatcher
from flowengine.core.capabilities import Capabilities
from flowengine.core.crm import EntityType
from flowengine.core.graph_schema import Node, NodeKind
from flowengine.core.models import ActionStatus, ExecutionStatus, TriggerContext


def _action(action_type: str, node_id: str = "act", **data) -> Node:
    return Node(id=node_id, kind=NodeKind.ACTION, data={"actionType": action_type, **data})


@pytest.fixture
def dispatcher(test_db, capabilities) -> ActionDispatcher:
    return ActionDispatcher(test_db, capabilities)


@pytest.fixture
def context(graph, start_execution, lead):
    lead(lead_score=10, tags=["existing"])
    workflow = graph("wf-actions").trigger().build()
    return start_execution(
        workflow,
        TriggerContext(lead_id="lead-1", email_address="ada@example.com", phone_number="+15550100"),
    )


class TestAuditTrail:
    """Every executed action writes exactly one record."""

    @pytest.mark.asyncio
    async def test_success_record(self, dispatcher, context, test_db):
        outcome = await dispatcher.execute(_action("TAG_ADD", tagName="hot", label="Tag"), context)

        assert outcome.status == ActionStatus.SUCCESS
        records = test_db.get_action_records(context.execution_id)
        assert len(records) == 1
        assert records[0].action_type == "TAG_ADD"
        assert records[0].status == ActionStatus.SUCCESS
        assert records[0].config == {"tagName": "hot"}
        assert records[0].result == {"tag_added": "hot"}

    @pytest.mark.asyncio
    async def test_failure_record(self, dispatcher, context, test_db):
        context.email_address = None
        outcome = await dispatcher.execute(_action("EMAIL", subject="Hi"), context)

        assert outcome.status == ActionStatus.FAILED
        assert outcome.error_message == "No email address available"
        [record] = test_db.get_action_records(context.execution_id)
        assert record.status == ActionStatus.FAILED
        assert record.error_message == "No email address available"

    @pytest.mark.asyncio
    async def test_unknown_action_type_fails_and_records(self, dispatcher, context, test_db):
        outcome = await dispatcher.execute(_action("LAUNCH_ROCKET"), context)

        assert outcome.status == ActionStatus.FAILED
        [record] = test_db.get_action_records(context.execution_id)
        assert record.action_type == "LAUNCH_ROCKET"
        assert "Unknown action type" in record.error_message

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_and_records(self, dispatcher, context, test_db):
        outcome = await dispatcher.execute(_action("PIPELINE_MOVE"), context)

        assert outcome.status == ActionStatus.FAILED
        assert len(test_db.get_action_records(context.execution_id)) == 1

    @pytest.mark.asyncio
    async def test_alias_recorded_under_canonical_kind(self, dispatcher, context, test_db):
        await dispatcher.execute(_action("TAG_ASSIGNMENT", tagName="vip"), context)
        [record] = test_db.get_action_records(context.execution_id)
        assert record.action_type == "TAG_ADD"


class TestMessaging:
    """Email and SMS via capabilities."""

    @pytest.mark.asyncio
    async def test_email_sent_and_counted(self, dispatcher, context, email_sender, test_db):
        outcome = await dispatcher.execute(
            _action("EMAIL", subject="Welcome", body="Hello", emailTemplateId="tpl-1"), context
        )

        assert outcome.result == {"email_sent": True, "message_id": "msg-1"}
        assert email_sender.sent[0]["to"] == "ada@example.com"
        assert email_sender.sent[0]["template_id"] == "tpl-1"
        assert email_sender.sent[0]["lead_id"] == "lead-1"
        assert test_db.get_metrics(context.workflow_id)["email_sent"] == 1

    @pytest.mark.asyncio
    async def test_failed_email_not_counted(self, dispatcher, context, test_db):
        context.email_address = None
        await dispatcher.execute(_action("SEND_EMAIL"), context)
        assert "email_sent" not in test_db.get_metrics(context.workflow_id)

    @pytest.mark.asyncio
    async def test_sms_uses_configured_number_first(self, dispatcher, context, sms_sender, test_db):
        await dispatcher.execute(_action("SMS", phoneNumber="+15550199", message="Hi"), context)
        await dispatcher.execute(_action("SEND_SMS", message="Again"), context)

        assert [s["to"] for s in sms_sender.sent] == ["+15550199", "+15550100"]
        assert test_db.get_metrics(context.workflow_id)["sms_sent"] == 2

    @pytest.mark.asyncio
    async def test_sms_without_phone_fails(self, dispatcher, context):
        context.phone_number = None
        outcome = await dispatcher.execute(_action("SMS", message="Hi"), context)
        assert outcome.error_message == "No phone number available"


class TestCrmMutations:
    """Lead/contact/opportunity changes."""

    @pytest.mark.asyncio
    async def test_add_tag_deduplicates(self, dispatcher, context, crm):
        await dispatcher.execute(_action("TAG_ADD", tagName="hot"), context)
        await dispatcher.execute(_action("TAG_ADD", tagName="hot"), context)
        assert crm.get(EntityType.LEAD, "lead-1")["tags"] == ["existing", "hot"]

    @pytest.mark.asyncio
    async def test_remove_tag(self, dispatcher, context, crm):
        await dispatcher.execute(_action("TAG_REMOVE", tagName="existing"), context)
        assert crm.get(EntityType.LEAD, "lead-1")["tags"] == []

    @pytest.mark.asyncio
    async def test_tag_without_entity_is_noop_success(self, dispatcher, context):
        context.lead_id = None
        outcome = await dispatcher.execute(_action("TAG_ADD", tagName="hot"), context)
        assert outcome.status == ActionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_update_field(self, dispatcher, context, crm):
        await dispatcher.execute(
            _action("FIELD_UPDATE", fieldName="status", fieldValue="nurture"), context
        )
        assert crm.get(EntityType.LEAD, "lead-1")["status"] == "nurture"

    @pytest.mark.parametrize(
        "operation,change,expected",
        [("add", 15, 25), ("subtract", 4, 6), ("set", 99, 99)],
    )
    @pytest.mark.asyncio
    async def test_lead_score_arithmetic(self, dispatcher, context, crm, operation, change, expected):
        outcome = await dispatcher.execute(
            _action("LEAD_SCORE_UPDATE", scoreChange=change, operation=operation), context
        )
        assert outcome.result["new_score"] == expected
        assert crm.get(EntityType.LEAD, "lead-1")["lead_score"] == expected

    @pytest.mark.asyncio
    async def test_lead_score_requires_lead(self, dispatcher, context):
        context.lead_id = None
        outcome = await dispatcher.execute(_action("LEAD_SCORE_UPDATE", scoreChange=5), context)
        assert outcome.error_message == "No lead ID available"

    @pytest.mark.asyncio
    async def test_assign_to_user(self, dispatcher, context, crm):
        await dispatcher.execute(_action("ASSIGN_TO_USER", userId="user-7"), context)
        assert crm.get(EntityType.LEAD, "lead-1")["assigned_to"] == "user-7"

    @pytest.mark.asyncio
    async def test_create_task_links_lead(self, dispatcher, context, crm):
        outcome = await dispatcher.execute(_action("TASK_CREATION", taskTitle="Call back"), context)
        task = crm.get(EntityType.TASK, outcome.result["task_created"])
        assert task["title"] == "Call back"
        assert task["lead_id"] == "lead-1"
        assert task["priority"] == "normal"
        assert task["status"] == "pending"

    @pytest.mark.asyncio
    async def test_create_contact_sets_context(self, dispatcher, context, crm):
        outcome = await dispatcher.execute(_action("CREATE_CONTACT", firstName="Ada"), context)

        contact_id = outcome.result["contact_created"]
        assert context.contact_id == contact_id
        contact = crm.get(EntityType.CONTACT, contact_id)
        assert contact["firstName"] == "Ada"
        assert contact["email"] == "ada@example.com"

    @pytest.mark.asyncio
    async def test_opportunity_lifecycle(self, dispatcher, context, crm):
        created = await dispatcher.execute(
            _action("CREATE_DEAL", title="Deal", value=1000, stage="new"), context
        )
        opportunity_id = created.result["opportunity_created"]
        assert context.opportunity_id == opportunity_id

        await dispatcher.execute(_action("PIPELINE_MOVE", newStage="won"), context)
        await dispatcher.execute(_action("OPPORTUNITY_UPDATE", updates={"value": 1500}), context)

        opportunity = crm.get(EntityType.OPPORTUNITY, opportunity_id)
        assert opportunity["stage"] == "won"
        assert opportunity["value"] == 1500

    @pytest.mark.asyncio
    async def test_opportunity_update_requires_id(self, dispatcher, context):
        outcome = await dispatcher.execute(_action("PIPELINE_MOVE", newStage="won"), context)
        assert outcome.error_message == "No opportunity ID available"

    @pytest.mark.asyncio
    async def test_internal_notification(self, dispatcher, context, crm):
        await dispatcher.execute(
            _action("NOTIFICATION", recipientUserId="user-1", title="Hot lead"), context
        )
        [notification] = crm.list(EntityType.NOTIFICATION)
        assert notification["recipient_user_id"] == "user-1"
        assert notification["execution_id"] == context.execution_id
        assert notification["notification_type"] == "in_app"

    @pytest.mark.asyncio
    async def test_calendar_event(self, dispatcher, context, calendar):
        outcome = await dispatcher.execute(
            _action("CALENDAR_EVENT_CREATE", title="Demo", attendees=["ada@example.com"]), context
        )
        assert outcome.result == {"event_created": True, "event_id": "event-1"}
        assert calendar.events[0]["lead_id"] == "lead-1"


class TestWebhook:
    """HTTP calls through an injected httpx client."""

    @pytest.mark.asyncio
    async def test_webhook_with_context(self, test_db, capabilities, context):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, text="accepted")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            capabilities.http = client
            dispatcher = ActionDispatcher(test_db, capabilities)
            outcome = await dispatcher.execute(
                _action(
                    "API_CALL",
                    webhookUrl="https://hooks.example.com/lead",
                    webhookMethod="put",
                    webhookHeaders={"X-Token": "abc"},
                    webhookBody={"kind": "lead"},
                    includeContext=True,
                ),
                context,
            )

        assert outcome.result == {"webhook_called": True, "status": 202, "response": "accepted"}
        request = seen[0]
        assert request.method == "PUT"
        assert request.headers["X-Token"] == "abc"
        body = json.loads(request.content)
        assert body["kind"] == "lead"
        assert body["context"]["lead_id"] == "lead-1"

    @pytest.mark.asyncio
    async def test_transport_error_recorded(self, test_db, capabilities, context):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            capabilities.http = client
            outcome = await ActionDispatcher(test_db, capabilities).execute(
                _action("WEBHOOK", webhookUrl="https://hooks.example.com/x"), context
            )

        assert outcome.status == ActionStatus.FAILED
        assert "connection refused" in outcome.error_message

    @pytest.mark.asyncio
    async def test_missing_url_fails(self, dispatcher, context):
        outcome = await dispatcher.execute(_action("WEBHOOK"), context)
        assert outcome.error_message == "No webhook URL configured"


class TestControlActions:
    """Sub-workflow trigger and stop."""

    @pytest.mark.asyncio
    async def test_trigger_workflow_enqueues_with_identity(
        self, dispatcher, context, graph, test_db
    ):
        test_db.save_workflow(graph("wf-child").trigger().build())
        outcome = await dispatcher.execute(
            _action("TRIGGER_WORKFLOW", workflowId="wf-child", passContext=True), context
        )

        child = test_db.get_execution(outcome.result["execution_id"])
        assert child.status == ExecutionStatus.PENDING
        assert child.workflow_id == "wf-child"
        assert child.lead_id == "lead-1"
        assert child.trigger_payload["parent_execution_id"] == context.execution_id

    @pytest.mark.asyncio
    async def test_trigger_workflow_without_context(self, dispatcher, context, graph, test_db):
        test_db.save_workflow(graph("wf-child").trigger().build())
        outcome = await dispatcher.execute(_action("TRIGGER_WORKFLOW", workflowId="wf-child"), context)
        child = test_db.get_execution(outcome.result["execution_id"])
        assert child.lead_id is None

    @pytest.mark.asyncio
    async def test_trigger_unknown_workflow_fails(self, dispatcher, context):
        outcome = await dispatcher.execute(_action("TRIGGER_WORKFLOW", workflowId="nope"), context)
        assert outcome.status == ActionStatus.FAILED

    @pytest.mark.asyncio
    async def test_stop_records_stopped(self, dispatcher, context, test_db):
        outcome = await dispatcher.execute(_action("STOP_WORKFLOW", reason="unsubscribed"), context)

        assert outcome.stopped
        [record] = test_db.get_action_records(context.execution_id)
        assert record.status == ActionStatus.STOPPED
        assert record.result == {"reason": "unsubscribed"}
        assert record.error_message is None
