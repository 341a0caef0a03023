"""Workflow graph schema definitions using Pydantic models.

Workflows arrive from the authoring layer as a list of typed nodes and a list of
directed edges. Each node carries a free-form ``data`` payload whose shape
depends on the node kind; the payload models below parse it on demand so that
unknown kinds and extra keys never break an older engine.

Payload keys use the authoring layer's camelCase names (``delayAmount``,
``tagName``); the models accept both camelCase and snake_case.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, TypeVar

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NodeKind(str, Enum):
    """Supported node kinds in workflow graphs"""

    TRIGGER = "trigger"  # Entry point, no side effects
    ACTION = "action"  # Side effect via an action handler
    CONDITION = "condition"  # Exclusive true/false branch
    DELAY = "delay"  # Suspend until a point in time
    GOAL = "goal"  # Register a goal for the execution
    SPLIT = "split"  # Weighted A/B/C/D branch
    EXIT = "exit"  # End of the current branch
    WAIT_FOR_EVENT = "wait_for_event"  # Suspend until an event or timeout


class ActionKind(str, Enum):
    """Closed set of action handlers."""

    EMAIL = "EMAIL"
    SMS = "SMS"
    TAG_ADD = "TAG_ADD"
    TAG_REMOVE = "TAG_REMOVE"
    FIELD_UPDATE = "FIELD_UPDATE"
    TASK_CREATE = "TASK_CREATE"
    CONTACT_CREATE = "CONTACT_CREATE"
    OPPORTUNITY_CREATE = "OPPORTUNITY_CREATE"
    OPPORTUNITY_UPDATE = "OPPORTUNITY_UPDATE"
    PIPELINE_MOVE = "PIPELINE_MOVE"
    LEAD_SCORE_UPDATE = "LEAD_SCORE_UPDATE"
    ASSIGN_TO_USER = "ASSIGN_TO_USER"
    INTERNAL_NOTIFICATION = "INTERNAL_NOTIFICATION"
    WEBHOOK = "WEBHOOK"
    CALENDAR_EVENT_CREATE = "CALENDAR_EVENT_CREATE"
    TRIGGER_WORKFLOW = "TRIGGER_WORKFLOW"
    STOP_WORKFLOW = "STOP_WORKFLOW"

    @classmethod
    def parse(cls, value: str | None) -> ActionKind | None:
        """Resolve an authored action type, including legacy aliases.

        Returns None for unknown values instead of raising.
        """
        if not value:
            return None
        key = str(value).strip().upper()
        key = ACTION_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return None


# Historical names still emitted by older workflow builders
ACTION_ALIASES: dict[str, str] = {
    "SEND_EMAIL": "EMAIL",
    "SEND_SMS": "SMS",
    "TAG_ASSIGNMENT": "TAG_ADD",
    "TASK_CREATION": "TASK_CREATE",
    "CREATE_CONTACT": "CONTACT_CREATE",
    "CREATE_DEAL": "OPPORTUNITY_CREATE",
    "NOTIFICATION": "INTERNAL_NOTIFICATION",
    "API_CALL": "WEBHOOK",
}


class ConditionKind(str, Enum):
    """Closed set of condition evaluators."""

    FIELD_COMPARE = "FIELD_COMPARE"
    MULTI_FIELD = "MULTI_FIELD"
    TAG_CHECK = "TAG_CHECK"
    EMAIL_STATUS = "EMAIL_STATUS"
    LEAD_SCORE = "LEAD_SCORE"
    TIME_BASED = "TIME_BASED"
    CUSTOM_LOGIC = "CUSTOM_LOGIC"

    @classmethod
    def parse(cls, value: str | None) -> ConditionKind | None:
        if not value:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


class Operator(str, Enum):
    """Comparison operators shared by field-compare and lead-score checks."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class Payload(BaseModel):
    """Base for node payloads: camelCase aliases, extra keys tolerated."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


P = TypeVar("P", bound=Payload)


# ---------------------------------------------------------------------------
# Non-action node payloads
# ---------------------------------------------------------------------------


class TriggerConfig(Payload):
    trigger_type: str | None = None


class DelayConfig(Payload):
    """Relative (TIME_DELAY) or absolute (WAIT_UNTIL) delay."""

    delay_type: str = "TIME_DELAY"
    delay_amount: float = 1
    delay_unit: str = "hours"
    wait_until_date: str | None = None  # YYYY-MM-DD
    wait_until_time: str | None = None  # HH:MM[:SS]


class WaitForEventConfig(Payload):
    event_type: str | None = None
    timeout_hours: float | None = None  # Falls back to the engine default


class GoalConfig(Payload):
    goal_type: str | None = None
    skip_to_node_id: str | None = None


class SplitConfig(Payload):
    """Variant weights in percent. They need not sum to 100."""

    label: str | None = None
    split_percentage_a: float = 50
    split_percentage_b: float = 50
    split_percentage_c: float = 0
    split_percentage_d: float = 0


class ExitConfig(Payload):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Condition payloads
# ---------------------------------------------------------------------------


class FieldComparison(Payload):
    """Single field vs. literal. ``entity_type`` picks where the field is read."""

    field: str
    operator: str = Operator.EQUALS.value
    value: Any = None
    entity_type: str = "lead"  # lead | contact | trigger


class MultiFieldCondition(Payload):
    logic: str = "AND"
    conditions: list[FieldComparison] = Field(default_factory=list)


class TagCheckCondition(Payload):
    tag_name: str
    entity_type: str = "lead"  # lead | contact


class EmailStatusCondition(Payload):
    email_status: str  # opened, clicked, bounced, ...


class LeadScoreCondition(Payload):
    score_operator: str = Operator.GREATER_THAN.value
    score_value: float = 0


class TimeBasedCondition(Payload):
    time_condition: str = "day_of_week"  # day_of_week | time_of_day
    day_of_week: int | None = None  # 0 = Sunday
    hour: int | None = None
    minute: int = 0


# ---------------------------------------------------------------------------
# Action payloads
# ---------------------------------------------------------------------------


class EmailAction(Payload):
    subject: str = "Automated Email"
    body: str = ""
    email_template_id: str | None = None
    from_name: str | None = None
    from_email: str | None = None


class SmsAction(Payload):
    phone_number: str | None = None  # Overrides the execution's phone number
    message: str = ""


class TagAction(Payload):
    tag_name: str


class FieldUpdateAction(Payload):
    field_name: str
    field_value: Any = None
    entity_type: Literal["lead", "contact"] = "lead"


class TaskCreateAction(Payload):
    task_title: str | None = None
    task_description: str | None = None
    due_date: str | None = None
    assigned_to: str | None = None
    priority: str = "normal"


class ContactCreateAction(Payload):
    """Every extra key becomes a contact field."""


class OpportunityCreateAction(Payload):
    title: str | None = None
    value: float | None = None
    stage: str | None = None
    close_date: str | None = None
    pipeline_id: str | None = None


class OpportunityUpdateAction(Payload):
    opportunity_id: str | None = None
    updates: dict[str, Any] = Field(default_factory=dict)


class PipelineMoveAction(Payload):
    opportunity_id: str | None = None
    new_stage: str


class LeadScoreAction(Payload):
    score_change: float = 0
    operation: Literal["set", "add", "subtract"] = "add"


class AssignAction(Payload):
    user_id: str
    entity_type: Literal["lead", "contact"] = "lead"


class NotificationAction(Payload):
    recipient_user_id: str | None = None
    title: str | None = None
    message: str | None = None
    priority: str = "normal"
    action_url: str | None = None
    action_label: str | None = None
    notification_type: str = "in_app"


class WebhookAction(Payload):
    webhook_url: str | None = None
    webhook_method: str = "POST"
    webhook_headers: dict[str, str] = Field(default_factory=dict)
    webhook_body: Any = None
    include_context: bool = False


class CalendarEventAction(Payload):
    title: str | None = None
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    attendees: list[str] = Field(default_factory=list)
    location: str | None = None


class TriggerWorkflowAction(Payload):
    workflow_id: str | None = None
    pass_context: bool = False


class StopAction(Payload):
    reason: str | None = None


ACTION_PAYLOADS: dict[ActionKind, type[Payload]] = {
    ActionKind.EMAIL: EmailAction,
    ActionKind.SMS: SmsAction,
    ActionKind.TAG_ADD: TagAction,
    ActionKind.TAG_REMOVE: TagAction,
    ActionKind.FIELD_UPDATE: FieldUpdateAction,
    ActionKind.TASK_CREATE: TaskCreateAction,
    ActionKind.CONTACT_CREATE: ContactCreateAction,
    ActionKind.OPPORTUNITY_CREATE: OpportunityCreateAction,
    ActionKind.OPPORTUNITY_UPDATE: OpportunityUpdateAction,
    ActionKind.PIPELINE_MOVE: PipelineMoveAction,
    ActionKind.LEAD_SCORE_UPDATE: LeadScoreAction,
    ActionKind.ASSIGN_TO_USER: AssignAction,
    ActionKind.INTERNAL_NOTIFICATION: NotificationAction,
    ActionKind.WEBHOOK: WebhookAction,
    ActionKind.CALENDAR_EVENT_CREATE: CalendarEventAction,
    ActionKind.TRIGGER_WORKFLOW: TriggerWorkflowAction,
    ActionKind.STOP_WORKFLOW: StopAction,
}


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class Node(BaseModel):
    """Generic graph node. ``kind`` stays a plain string when it is unknown."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: NodeKind | str = Field(alias="type", union_mode="left_to_right")
    data: dict[str, Any] = Field(default_factory=dict)

    # UI metadata (position, styling) from the visual editor
    position: dict[str, Any] | None = None

    @property
    def kind_value(self) -> str:
        return self.kind.value if isinstance(self.kind, NodeKind) else str(self.kind)

    @property
    def label(self) -> str | None:
        return self.data.get("label")

    def payload(self, model: type[P]) -> P:
        """Parse ``data`` into a kind-specific payload model."""
        return model.model_validate(self.data)


class Edge(BaseModel):
    """Directed edge. ``label``/``sourceHandle`` carry the branch label."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    source: str
    target: str
    label: str | None = None
    source_handle: str | None = Field(default=None, alias="sourceHandle")

    @property
    def branch_label(self) -> str | None:
        """Branch tag used by condition/split routing, if any."""
        for candidate in (self.label, self.source_handle):
            if candidate and candidate.strip():
                return candidate.strip()
        return None


class WorkflowDefinition(BaseModel):
    """Complete workflow definition, read-only to the engine."""

    id: str
    name: str = ""
    description: str | None = None
    version: str = "1.0.0"

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def outgoing(self, node_id: str) -> list[Edge]:
        """Outgoing edges in authored order."""
        return [e for e in self.edges if e.source == node_id]

    def trigger_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.kind == NodeKind.TRIGGER]

    def find_trigger(self) -> Node | None:
        triggers = self.trigger_nodes()
        return triggers[0] if triggers else None

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation issues. Advisory only: the engine tolerates
        orphans and cycles at runtime.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")

        for node in self.nodes:
            if not isinstance(node.kind, NodeKind):
                errors.append(f"Node '{node.id}' has unknown kind '{node.kind}'")

        triggers = self.trigger_nodes()
        if not triggers:
            errors.append("No trigger node found")
        elif len(triggers) > 1:
            errors.append(
                f"Multiple trigger nodes: {', '.join(sorted(t.id for t in triggers))}"
            )

        G = self._to_networkx()

        if triggers:
            reachable: set[str] = set()
            for trigger in triggers:
                reachable |= {trigger.id} | nx.descendants(G, trigger.id)
            for node in self.nodes:
                if node.id not in reachable:
                    errors.append(f"Node '{node.id}' is not reachable from a trigger")

        try:
            cycle = nx.find_cycle(G)
            cycle_path = " -> ".join(edge[0] for edge in cycle)
            errors.append(f"Cycle detected: {cycle_path} (nodes run at most once per execution)")
        except nx.NetworkXNoCycle:
            pass

        for node in self.nodes:
            if node.kind == NodeKind.ACTION:
                if ActionKind.parse(node.data.get("actionType")) is None:
                    errors.append(
                        f"Action node '{node.id}': unknown action type "
                        f"'{node.data.get('actionType')}'"
                    )
            elif node.kind == NodeKind.CONDITION:
                if ConditionKind.parse(node.data.get("conditionType")) is None:
                    errors.append(
                        f"Condition node '{node.id}': unknown condition type "
                        f"'{node.data.get('conditionType')}'"
                    )
                if len(self.outgoing(node.id)) > 2:
                    errors.append(f"Condition node '{node.id}' has more than two outgoing edges")

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G
