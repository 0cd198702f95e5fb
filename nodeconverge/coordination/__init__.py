"""Convergence and phase coordination.

- phase_sync: barrier state machine for phase boundaries
- reconciler: node-count deltas and selection
- node_lifecycle: create/destroy nodes through a provider
- pipeline: ordered, fail-fast phase execution
- orchestrator: the converge and lift control loop
"""

from nodeconverge.coordination.executor import (
    DryRunPhaseExecutor,
    LocalPhaseExecutor,
    PhaseExecutor,
    PlanSession,
    SshPhaseExecutor,
)
from nodeconverge.coordination.middleware import (
    NodeFlags,
    execute_on_flagged,
    execute_on_unflagged,
    execute_one_shot_flag,
)
from nodeconverge.coordination.models import (
    ActionResult,
    CommandPlan,
    GroupSpec,
    Node,
    NodeRemovalResult,
    PhaseDefinition,
    PhaseResult,
    Target,
    TargetType,
)
from nodeconverge.coordination.operation import Operation, run_operation
from nodeconverge.coordination.orchestrator import (
    ConvergeOrchestrator,
    ConvergeResult,
    ConvergeStage,
)
from nodeconverge.coordination.phase_path import PhasePath
from nodeconverge.coordination.phase_sync import (
    InMemoryPhaseSyncService,
    LeaveState,
    PhaseLeaveValue,
    PhaseOptions,
    PhaseSyncService,
    ReleaseHandle,
)
from nodeconverge.coordination.pipeline import PhaseExecutionPipeline, default_phases

__all__ = [
    "ActionResult",
    "CommandPlan",
    "ConvergeOrchestrator",
    "ConvergeResult",
    "ConvergeStage",
    "DryRunPhaseExecutor",
    "GroupSpec",
    "InMemoryPhaseSyncService",
    "LeaveState",
    "LocalPhaseExecutor",
    "Node",
    "NodeFlags",
    "NodeRemovalResult",
    "Operation",
    "PhaseDefinition",
    "PhaseExecutionPipeline",
    "PhaseExecutor",
    "PhaseLeaveValue",
    "PhaseOptions",
    "PhasePath",
    "PhaseResult",
    "PhaseSyncService",
    "PlanSession",
    "ReleaseHandle",
    "SshPhaseExecutor",
    "Target",
    "TargetType",
    "default_phases",
    "execute_on_flagged",
    "execute_on_unflagged",
    "execute_one_shot_flag",
    "run_operation",
]
