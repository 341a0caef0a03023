# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowengine test suite.

This module provides foundational fixtures used across all test modules:
- Temporary workflow and CRM stores (SQLite in tmp_path)
- Recording fakes for the email/SMS/calendar capabilities
- A controllable clock and a seeded random generator
- A fluent builder for workflow graphs

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from flowengine.core.capabilities import Capabilities
from flowengine.core.config import EngineConfig
from flowengine.core.crm import EntityType, SqliteCrmStore
from flowengine.core.engine import AutomationEngine
from flowengine.core.graph_schema import WorkflowDefinition
from flowengine.core.models import ExecutionContext, TriggerContext
from flowengine.core.state import Database

# Monday 2025-01-06 09:00 UTC
START_TIME = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send(self, to, subject, body, template_id=None, **metadata) -> str:
        self.sent.append(
            {"to": to, "subject": subject, "body": body, "template_id": template_id, **metadata}
        )
        return f"msg-{len(self.sent)}"


class RecordingSmsSender:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send(self, to, message) -> str:
        self.sent.append({"to": to, "message": message})
        return f"sms-{len(self.sent)}"


class RecordingCalendar:
    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def create_event(self, title, start_time, end_time, attendees, **details):
        event = {"id": f"event-{len(self.events) + 1}", "title": title, "attendees": attendees}
        self.events.append({**event, "start_time": start_time, "end_time": end_time, **details})
        return event


class GraphBuilder:
    """Fluent builder for workflow definitions in the authoring layer's shape."""

    def __init__(self, workflow_id: str = "wf-test", name: str = "Test workflow"):
        self.workflow_id = workflow_id
        self.name = name
        self.nodes: list[dict[str, Any]] = []
        self.edges: list[dict[str, Any]] = []

    def node(self, node_id: str, kind: str, **data: Any) -> GraphBuilder:
        self.nodes.append({"id": node_id, "type": kind, "data": data})
        return self

    def trigger(self, node_id: str = "trigger", **data: Any) -> GraphBuilder:
        return self.node(node_id, "trigger", **data)

    def action(self, node_id: str, action_type: str, **data: Any) -> GraphBuilder:
        return self.node(node_id, "action", actionType=action_type, **data)

    def condition(self, node_id: str, condition_type: str, **data: Any) -> GraphBuilder:
        return self.node(node_id, "condition", conditionType=condition_type, **data)

    def delay(self, node_id: str, **data: Any) -> GraphBuilder:
        return self.node(node_id, "delay", **data)

    def edge(
        self,
        source: str,
        target: str,
        label: str | None = None,
        source_handle: str | None = None,
    ) -> GraphBuilder:
        edge: dict[str, Any] = {"id": f"e{len(self.edges) + 1}", "source": source, "target": target}
        if label is not None:
            edge["label"] = label
        if source_handle is not None:
            edge["sourceHandle"] = source_handle
        self.edges.append(edge)
        return self

    def chain(self, *node_ids: str) -> GraphBuilder:
        for source, target in zip(node_ids, node_ids[1:]):
            self.edge(source, target)
        return self

    def build(self) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate(
            {"id": self.workflow_id, "name": self.name, "nodes": self.nodes, "edges": self.edges}
        )


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture
def test_db(db_path: Path) -> Database:
    """Create a temporary workflow store.

    Returns:
        Initialized Database instance in a fresh temp directory.
    """
    return Database(db_path)


@pytest.fixture
def crm(db_path: Path) -> SqliteCrmStore:
    """CRM store sharing the workflow store's SQLite file."""
    return SqliteCrmStore(db_path)


@pytest.fixture
def lead(crm: SqliteCrmStore):
    """Factory creating a lead with the given fields. Returns the lead id."""

    def _make(lead_id: str = "lead-1", **fields: Any) -> str:
        crm.create(EntityType.LEAD, {"tags": [], **fields}, entity_id=lead_id)
        return lead_id

    return _make


# =============================================================================
# Capability and Engine Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def sms_sender() -> RecordingSmsSender:
    return RecordingSmsSender()


@pytest.fixture
def calendar() -> RecordingCalendar:
    return RecordingCalendar()


@pytest.fixture
def capabilities(crm, email_sender, sms_sender, calendar) -> Capabilities:
    return Capabilities(crm=crm, email=email_sender, sms=sms_sender, calendar=calendar)


@pytest.fixture
def engine_config(db_path: Path) -> EngineConfig:
    return EngineConfig(db_path=str(db_path))


@pytest.fixture
def engine(test_db, capabilities, engine_config, clock) -> AutomationEngine:
    """Engine with recording capabilities, a fake clock and a seeded RNG."""
    return AutomationEngine(
        test_db,
        capabilities,
        engine_config,
        clock=clock,
        rng=random.Random(1234),
    )


@pytest.fixture
def graph():
    """Factory for GraphBuilder instances.

    Example:
        def test_walk(graph):
            wf = graph().trigger().action("tag", "TAG_ADD", tagName="hot").chain("trigger", "tag").build()
    """
    return GraphBuilder


@pytest.fixture
def start_execution(test_db):
    """Save a workflow, enqueue an execution and return its fresh context."""

    def _start(workflow: WorkflowDefinition, trigger: TriggerContext | None = None) -> ExecutionContext:
        test_db.save_workflow(workflow)
        execution_id = test_db.enqueue_execution(workflow.id, trigger)
        execution = test_db.get_execution(execution_id)
        assert execution is not None
        return ExecutionContext.from_execution(execution)

    return _start
