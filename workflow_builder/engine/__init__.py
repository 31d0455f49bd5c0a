"""Graph mutation and validation engine for the workflow builder.

Entry points:
    apply_patch(patch, nodes, edges, ...) → PatchResult
    validate_graph(nodes, edges) → ValidationReport
    generate_label(kind, config) → str
    WorkflowStore — single writer of a live graph with undo/redo

Patch IR:
    AddNode, UpdateNode, RemoveNode, AddEdge, RemoveEdge, Rewire, SetName, Bulk
    op_from_dict / op_to_dict / patch_from_json / patch_to_json
    PatchIRValidationError — raised when a wire payload is malformed

Intent planning:
    IntentPlanner — contract; RuleBasedPlanner and LLMPlanner implement it
    create_planner(settings) → IntentPlanner
"""

from workflow_builder.engine.applier import PatchResult, apply_patch, apply_to_graph
from workflow_builder.engine.graph_model import (
    Role,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    role_for_kind,
)
from workflow_builder.engine.history import HistoryManager, Snapshot
from workflow_builder.engine.labeler import MAX_LABEL_LEN, generate_label
from workflow_builder.engine.patch_ir import (
    AddEdge,
    AddNode,
    Bulk,
    PatchIRValidationError,
    PatchOp,
    RemoveEdge,
    RemoveNode,
    Rewire,
    SetName,
    UpdateNode,
    op_from_dict,
    op_to_dict,
    patch_from_json,
    patch_to_json,
)
from workflow_builder.engine.planner import (
    IntentPlanner,
    LLMPlanner,
    PlannerRequest,
    RuleBasedPlanner,
    create_planner,
)
from workflow_builder.engine.store import IntentOutcome, StoreEvent, WorkflowStore
from workflow_builder.engine.summary import summarize_graph
from workflow_builder.engine.validator import ValidationReport, validate_graph

__all__ = [
    # graph
    "Role",
    "WorkflowEdge",
    "WorkflowGraph",
    "WorkflowNode",
    "role_for_kind",
    # patch IR
    "AddEdge",
    "AddNode",
    "Bulk",
    "PatchIRValidationError",
    "PatchOp",
    "RemoveEdge",
    "RemoveNode",
    "Rewire",
    "SetName",
    "UpdateNode",
    "op_from_dict",
    "op_to_dict",
    "patch_from_json",
    "patch_to_json",
    # applier / validator / labeler
    "PatchResult",
    "apply_patch",
    "apply_to_graph",
    "ValidationReport",
    "validate_graph",
    "MAX_LABEL_LEN",
    "generate_label",
    "summarize_graph",
    # history / store
    "HistoryManager",
    "Snapshot",
    "IntentOutcome",
    "StoreEvent",
    "WorkflowStore",
    # planning
    "IntentPlanner",
    "LLMPlanner",
    "PlannerRequest",
    "RuleBasedPlanner",
    "create_planner",
]
