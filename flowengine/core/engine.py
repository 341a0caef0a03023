"""Automation engine service.

One ``AutomationEngine`` per process owns the store, the capability services
and four polling loops:

- pending executions: claim a batch (pending -> running) and walk each graph
- delayed resumes: consume due suspensions and continue past the paused node
- goal achievements: injectable hook, no-op by default
- scheduled triggers: injectable hook, no-op by default

Execution failures end in ``failed`` with the error message. The engine never
retries an execution on its own.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from flowengine.core.actions import ActionDispatcher
from flowengine.core.capabilities import Capabilities
from flowengine.core.conditions import ConditionEvaluator
from flowengine.core.config import EngineConfig
from flowengine.core.crm import SqliteCrmStore
from flowengine.core.graph_schema import WorkflowDefinition
from flowengine.core.interpreter import NodeInterpreter, WalkOutcome, WalkResult
from flowengine.core.models import (
    TERMINAL_STATUSES,
    DelaySuspension,
    Execution,
    ExecutionContext,
    ExecutionStatus,
    TriggerContext,
    utc_now,
)
from flowengine.core.scheduler import DelayScheduler
from flowengine.core.split_test import SplitTestAllocator
from flowengine.core.state import Database
from flowengine.core.worker import PollingLoop

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base error for the automation engine."""

    pass


class MissingTriggerError(EngineError):
    """Workflow has no trigger node. Fatal authoring error, never retried."""

    pass


class WorkflowNotFoundError(EngineError):
    pass


class ExecutionNotFoundError(EngineError):
    pass


EngineHook = Callable[["AutomationEngine"], Awaitable[int]]


async def _no_op_hook(engine: AutomationEngine) -> int:
    return 0


@dataclass
class EngineState:
    """Process-local lifecycle state of one engine instance."""

    running: bool = False
    loops: list[PollingLoop] = field(default_factory=list)


class AutomationEngine:
    """Drives workflow executions from enqueue to a terminal status."""

    def __init__(
        self,
        db: Database,
        capabilities: Capabilities | None = None,
        config: EngineConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
        goal_processor: EngineHook | None = None,
        schedule_source: EngineHook | None = None,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.capabilities = capabilities or Capabilities(crm=SqliteCrmStore(db.db_path))
        self.clock = clock
        self.goal_processor = goal_processor or _no_op_hook
        self.schedule_source = schedule_source or _no_op_hook
        self.state = EngineState()

        tz = self.config.tzinfo
        self.scheduler = DelayScheduler(
            db,
            clock=clock,
            timezone=tz,
            default_wait_timeout_hours=self.config.default_wait_timeout_hours,
            default_delay_minutes=self.config.default_delay_minutes,
        )
        self.interpreter = NodeInterpreter(
            db,
            actions=ActionDispatcher(db, self.capabilities, self.config.webhook_timeout),
            conditions=ConditionEvaluator(self.capabilities.crm, clock=clock, timezone=tz),
            scheduler=self.scheduler,
            splits=SplitTestAllocator(db, rng),
        )

    # ========== Enqueue API ==========

    def enqueue_execution(self, workflow_id: str, trigger: TriggerContext | None = None) -> str:
        """Create a pending execution. The only way work enters the engine."""
        if self.db.get_workflow(workflow_id) is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
        execution_id = self.db.enqueue_execution(workflow_id, trigger)
        logger.info(f"Enqueued execution {execution_id} for workflow '{workflow_id}'")
        return execution_id

    def notify_event(self, execution_id: str, event_type: str) -> bool:
        """Report an external event; a matching wait resumes on the next delay pass."""
        matched = self.scheduler.signal_event(execution_id, event_type)
        if matched:
            logger.info(f"Event '{event_type}' received for execution {execution_id}")
        else:
            logger.warning(f"No execution {execution_id} waiting for event '{event_type}'")
        return matched

    # ========== Execution ==========

    def _load_graph(self, workflow_id: str) -> WorkflowDefinition:
        graph = self.db.get_workflow(workflow_id)
        if graph is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
        return graph

    async def execute_workflow(self, execution: Execution) -> ExecutionStatus:
        """
        Walk an execution from its trigger node.

        Accepts an execution already claimed by the pending loop (running) or
        a pending one, which is claimed here first.
        """
        if execution.status == ExecutionStatus.PENDING:
            if not self.db.transition_execution(
                execution.id, ExecutionStatus.RUNNING, ExecutionStatus.PENDING
            ):
                logger.warning(f"Execution {execution.id} was claimed elsewhere")
                return self._current_status(execution.id)

        try:
            graph = self._load_graph(execution.workflow_id)
            trigger = graph.find_trigger()
            if trigger is None:
                raise MissingTriggerError("No trigger node found in workflow")

            logger.info(f"Executing workflow '{graph.name or graph.id}' ({execution.id})")
            context = ExecutionContext.from_execution(execution)
            walk = await self.interpreter.execute_node(trigger, graph, context)
        except Exception as e:
            logger.error(f"Execution {execution.id} failed: {e}")
            self._fail(execution.id, execution.workflow_id, str(e))
            return ExecutionStatus.FAILED

        return self._finish(execution.id, execution.workflow_id, walk)

    async def resume_suspension(self, suspension: DelaySuspension) -> ExecutionStatus | None:
        """
        Continue an execution past a due suspension.

        Returns None when another resumer already consumed the suspension.
        """
        if not self.scheduler.consume(suspension):
            return None

        execution = self.db.get_execution(suspension.execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution '{suspension.execution_id}' not found")
        if execution.status in TERMINAL_STATUSES:
            logger.info(
                f"Execution {execution.id} already {execution.status.value}, "
                f"dropping suspension at '{suspension.node_id}'"
            )
            return execution.status

        try:
            graph = self._load_graph(execution.workflow_id)
            node = graph.get_node(suspension.node_id)
            if node is None:
                raise EngineError(f"Suspended node '{suspension.node_id}' missing from workflow")

            if not self.db.transition_execution(
                execution.id, ExecutionStatus.RUNNING, ExecutionStatus.WAITING
            ):
                logger.warning(
                    f"Execution {execution.id} was {execution.status.value}, not waiting, on resume"
                )

            logger.info(f"Resuming execution {execution.id} after '{node.id}'")
            context = ExecutionContext.from_execution(execution)
            targets = [edge.target for edge in graph.outgoing(node.id)]
            walk = await self.interpreter.execute_from(targets, graph, context)
        except Exception as e:
            logger.error(f"Resume of execution {execution.id} failed: {e}")
            self._fail(execution.id, execution.workflow_id, str(e))
            return ExecutionStatus.FAILED

        return self._finish(execution.id, execution.workflow_id, walk)

    def _finish(self, execution_id: str, workflow_id: str, walk: WalkResult) -> ExecutionStatus:
        """Translate a walk result into the execution's status."""
        if walk.outcome == WalkOutcome.STOPPED:
            self.db.mark_completed(execution_id, ExecutionStatus.STOPPED)
            self.db.increment_metric(workflow_id, "stopped")
            logger.info(f"Workflow execution stopped: {execution_id}")
            return ExecutionStatus.STOPPED

        # A sibling branch may still be parked even if this walk suspended nothing
        if walk.suspensions or self.db.count_waiting_suspensions(execution_id) > 0:
            self.db.transition_execution(
                execution_id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING
            )
            return ExecutionStatus.WAITING

        self.db.mark_completed(execution_id)
        self.db.increment_metric(workflow_id, "success")
        logger.info(f"Workflow execution completed: {execution_id}")
        return ExecutionStatus.COMPLETED

    def _fail(self, execution_id: str, workflow_id: str, error: str) -> None:
        self.db.mark_failed(execution_id, error)
        self.db.increment_metric(workflow_id, "failed")

    def _current_status(self, execution_id: str) -> ExecutionStatus:
        execution = self.db.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
        return execution.status

    # ========== Loop bodies ==========

    async def process_pending_executions(self) -> int:
        """Claim and run one batch of pending executions. Returns the batch size."""
        executions = await asyncio.to_thread(
            self.db.claim_pending_executions, self.config.batch_size
        )
        if not executions:
            return 0

        logger.info(f"Processing {len(executions)} pending workflow executions")
        for execution in executions:
            try:
                await self.execute_workflow(execution)
            except Exception as e:
                logger.error(f"Error executing workflow {execution.id}: {e}")
                self._fail(execution.id, execution.workflow_id, str(e))
        return len(executions)

    async def process_delayed_executions(self) -> int:
        """Resume every due suspension in one batch. Returns how many were due."""
        due = await asyncio.to_thread(self.scheduler.due_suspensions, self.config.batch_size)
        if not due:
            return 0

        logger.info(f"Resuming {len(due)} delayed executions")
        for suspension in due:
            try:
                await self.resume_suspension(suspension)
            except Exception as e:
                logger.error(f"Error resuming execution {suspension.execution_id}: {e}")
        return len(due)

    async def process_goal_achievements(self) -> int:
        return await self.goal_processor(self)

    async def process_scheduled_workflows(self) -> int:
        return await self.schedule_source(self)

    async def tick(self) -> dict[str, int]:
        """One pass of every loop body, in loop order."""
        return {
            "pending": await self.process_pending_executions(),
            "delays": await self.process_delayed_executions(),
            "goals": await self.process_goal_achievements(),
            "schedules": await self.process_scheduled_workflows(),
        }

    # ========== Lifecycle ==========

    def start(self) -> None:
        """Start the four polling loops on the running event loop. Idempotent."""
        if self.state.running:
            logger.warning("Automation engine is already running")
            return

        self.state.running = True
        self.state.loops = [
            PollingLoop("executions", self.process_pending_executions, self.config.pending_interval),
            PollingLoop("delays", self.process_delayed_executions, self.config.delay_interval),
            PollingLoop("goals", self.process_goal_achievements, self.config.goal_interval),
            PollingLoop("schedules", self.process_scheduled_workflows, self.config.schedule_interval),
        ]
        for loop in self.state.loops:
            loop.start()
        logger.info("Automation engine started")

    async def stop(self) -> None:
        """Signal every loop to exit after its current iteration and wait for them."""
        if not self.state.running:
            return
        for loop in self.state.loops:
            loop.stop()
        await asyncio.gather(*(loop.join() for loop in self.state.loops))
        self.state.running = False
        self.state.loops = []
        logger.info("Automation engine stopped")

    async def serve(self) -> None:
        """Start the loops and block until they exit."""
        self.start()
        await asyncio.gather(*(loop.join() for loop in self.state.loops))
