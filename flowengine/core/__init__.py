"""Core modules for the workflow automation engine."""

from flowengine.core.config import EngineConfig, load_engine_config
from flowengine.core.engine import AutomationEngine
from flowengine.core.graph_schema import Edge, Node, NodeKind, WorkflowDefinition
from flowengine.core.models import Execution, ExecutionStatus, TriggerContext
from flowengine.core.state import Database

__all__ = [
    "AutomationEngine",
    "Database",
    "Edge",
    "EngineConfig",
    "Execution",
    "ExecutionStatus",
    "Node",
    "NodeKind",
    "TriggerContext",
    "WorkflowDefinition",
    "load_engine_config",
]
