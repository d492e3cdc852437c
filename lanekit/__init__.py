"""Reusable build-matrix kernel (matrix expansion + staged lane execution).

This package is intentionally independent of `ci_matrix.*`. Configuration file
formats, provisioning commands, logging setup and reporting live in the consuming
application.
"""

from lanekit.config_namespace import ConfigNamespace
from lanekit.engine import (
    CancellationToken,
    CommandOutcome,
    CommandRunner,
    DefaultStageRecorder,
    NullStageRecorder,
    Provisioner,
    StageRecorder,
    SubprocessCommandRunner,
    ToolchainBinding,
    run_lane,
    run_matrix,
)
from lanekit.errors import (
    ConfigurationError,
    DuplicateLaneError,
    DuplicateVariableError,
    EmptyMatrixError,
    FailureKind,
    ProvisioningError,
    WorkerUnavailableError,
)
from lanekit.matrix import Axis, AxisEntry, Lane, expand, select_lanes
from lanekit.stage_types import LaneResult, LaneState, RunResult, Stage, StageResult, StageStatus

__all__ = [
    "Axis",
    "AxisEntry",
    "CancellationToken",
    "CommandOutcome",
    "CommandRunner",
    "ConfigNamespace",
    "ConfigurationError",
    "DefaultStageRecorder",
    "DuplicateLaneError",
    "DuplicateVariableError",
    "EmptyMatrixError",
    "FailureKind",
    "Lane",
    "LaneResult",
    "LaneState",
    "NullStageRecorder",
    "ProvisioningError",
    "Provisioner",
    "RunResult",
    "Stage",
    "StageRecorder",
    "StageResult",
    "StageStatus",
    "SubprocessCommandRunner",
    "ToolchainBinding",
    "WorkerUnavailableError",
    "expand",
    "run_lane",
    "run_matrix",
    "select_lanes",
]
