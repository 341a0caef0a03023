"""Node interpreter: walks a workflow graph for one execution.

The walk is depth-first over an explicit stack of node ids, so wide or deep
graphs do not grow the Python call stack. A node already present in
``context.executed_nodes`` is skipped; this guards against back-edges and makes
replays after a resume side-effect free. A node can therefore run at most once
per execution.

Routing rules by kind:

- trigger, action, goal, unknown: follow every outgoing edge (fan-out)
- condition, split: follow exactly one outgoing edge
- delay, wait_for_event: persist a suspension, follow nothing now
- exit: end this branch
- a STOP_WORKFLOW action ends the whole walk, queued branches included
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from flowengine.core.actions import ActionDispatcher
from flowengine.core.conditions import ConditionEvaluator
from flowengine.core.graph_schema import (
    Edge,
    ExitConfig,
    GoalConfig,
    Node,
    NodeKind,
    WorkflowDefinition,
)
from flowengine.core.models import (
    ConditionRecord,
    DelaySuspension,
    ExecutionContext,
    GoalRecord,
    GoalRegistration,
    Variant,
)
from flowengine.core.scheduler import DelayScheduler
from flowengine.core.split_test import SplitTestAllocator
from flowengine.core.state import Database

logger = logging.getLogger(__name__)

TRUE_LABELS = frozenset({"true", "yes"})
FALSE_LABELS = frozenset({"false", "no"})


def _edge_tags(edge: Edge) -> list[str]:
    return [tag.strip() for tag in (edge.label, edge.source_handle) if tag and tag.strip()]


def resolve_condition_edge(edges: list[Edge], result: bool) -> Edge | None:
    """Edge labelled with the result, else the first unlabelled edge, else the first edge."""
    wanted = TRUE_LABELS if result else FALSE_LABELS
    for edge in edges:
        if any(tag.lower() in wanted for tag in _edge_tags(edge)):
            return edge
    for edge in edges:
        if not _edge_tags(edge):
            return edge
    return edges[0] if edges else None


def resolve_split_edge(edges: list[Edge], variant: Variant) -> Edge | None:
    """Edge whose label has the variant letter as a standalone token, else the first edge.

    "B", "Variant B", "Variant B (30%)" and "path-b" all select variant B; "Bonus" does not.
    """
    for edge in edges:
        for tag in _edge_tags(edge):
            tokens = [t for t in re.split(r"[^A-Z0-9]+", tag.upper()) if t]
            if variant.value in tokens:
                return edge
    return edges[0] if edges else None


class WalkOutcome(str, Enum):
    COMPLETED = "completed"  # Every branch ran to an end or an exit
    SUSPENDED = "suspended"  # At least one branch parked at a delay/wait node
    STOPPED = "stopped"  # STOP_WORKFLOW halted the walk


@dataclass
class WalkResult:
    stopped: bool = False
    suspensions: list[DelaySuspension] = field(default_factory=list)
    visited: list[str] = field(default_factory=list)

    @property
    def outcome(self) -> WalkOutcome:
        if self.stopped:
            return WalkOutcome.STOPPED
        if self.suspensions:
            return WalkOutcome.SUSPENDED
        return WalkOutcome.COMPLETED


class NodeInterpreter:
    """Dispatches nodes by kind and decides which successors to visit."""

    def __init__(
        self,
        db: Database,
        actions: ActionDispatcher,
        conditions: ConditionEvaluator,
        scheduler: DelayScheduler,
        splits: SplitTestAllocator,
    ):
        self.db = db
        self.actions = actions
        self.conditions = conditions
        self.scheduler = scheduler
        self.splits = splits

    async def execute_node(
        self, node: Node, graph: WorkflowDefinition, context: ExecutionContext
    ) -> WalkResult:
        return await self.execute_from([node.id], graph, context)

    async def execute_from(
        self, node_ids: list[str], graph: WorkflowDefinition, context: ExecutionContext
    ) -> WalkResult:
        """Walk the graph starting at ``node_ids``, in order, depth first."""
        result = WalkResult()
        stack = list(reversed(node_ids))

        while stack:
            node_id = stack.pop()
            node = graph.get_node(node_id)
            if node is None:
                logger.warning(f"Edge points at missing node '{node_id}', skipping")
                continue
            if context.has_executed(node.id):
                logger.warning(f"Skipping already executed node: {node.id}")
                continue

            context.record_entry(node.id, node.kind_value)
            self.db.save_progress(context, node.id)
            result.visited.append(node.id)
            logger.debug(f"Executing node: {node.kind_value} ({node.id})")

            successors = await self._dispatch(node, graph, context, result)
            if result.stopped:
                logger.info(f"Execution {context.execution_id} stopped at '{node.id}'")
                return result
            stack.extend(reversed(successors))

        return result

    async def _dispatch(
        self,
        node: Node,
        graph: WorkflowDefinition,
        context: ExecutionContext,
        result: WalkResult,
    ) -> list[str]:
        """Run one node's effect and return the successor ids to visit."""
        fan_out = [edge.target for edge in graph.outgoing(node.id)]

        match node.kind:
            case NodeKind.TRIGGER:
                return fan_out

            case NodeKind.ACTION:
                outcome = await self.actions.execute(node, context)
                # Handlers may have set contact/opportunity ids
                self.db.save_progress(context, node.id)
                if outcome.stopped:
                    result.stopped = True
                    return []
                return fan_out

            case NodeKind.CONDITION:
                passed = self.conditions.evaluate(node, context)
                path = "true" if passed else "false"
                self.db.insert_condition_record(
                    ConditionRecord(
                        execution_id=context.execution_id,
                        node_id=node.id,
                        condition_type=node.data.get("conditionType"),
                        config=node.data,
                        result=passed,
                        path_taken=path,
                    )
                )
                edge = resolve_condition_edge(graph.outgoing(node.id), passed)
                logger.info(f"Condition '{node.id}' -> {path}")
                return [edge.target] if edge else []

            case NodeKind.SPLIT:
                variant = self.splits.allocate(context.workflow_id, node)
                edge = resolve_split_edge(graph.outgoing(node.id), variant)
                return [edge.target] if edge else []

            case NodeKind.DELAY:
                result.suspensions.append(self.scheduler.suspend_delay(node, context))
                return []

            case NodeKind.WAIT_FOR_EVENT:
                result.suspensions.append(self.scheduler.suspend_for_event(node, context))
                return []

            case NodeKind.GOAL:
                goal = node.payload(GoalConfig)
                context.goals.append(
                    GoalRegistration(
                        node_id=node.id,
                        goal_type=goal.goal_type,
                        skip_to_node_id=goal.skip_to_node_id,
                    )
                )
                self.db.insert_goal(
                    GoalRecord(
                        workflow_id=context.workflow_id,
                        execution_id=context.execution_id,
                        node_id=node.id,
                        goal_type=goal.goal_type,
                        config=node.data,
                        skip_to_node_id=goal.skip_to_node_id,
                    )
                )
                return fan_out

            case NodeKind.EXIT:
                exit_config = node.payload(ExitConfig)
                logger.info(f"Workflow exit at '{node.id}': {exit_config.reason or 'completed'}")
                return []

            case _:
                logger.warning(f"Unknown node type '{node.kind_value}' on node '{node.id}'")
                return fan_out
