"""Engine primitives for running lanes: command port, stage executor and run fan-out."""

from lanekit.engine.cancellation import CancellationToken
from lanekit.engine.commands import (
    CommandOutcome,
    CommandRunner,
    SubprocessCommandRunner,
    env_name,
    expand_macros,
)
from lanekit.engine.executor import (
    DefaultStageRecorder,
    LaneExecution,
    NullStageRecorder,
    Provisioner,
    StageRecorder,
    ToolchainBinding,
    lane_environment,
    run_lane,
    run_stage,
    utc_now_iso8601,
)
from lanekit.engine.run import run_lane_with_retries, run_matrix

__all__ = [
    "CancellationToken",
    "CommandOutcome",
    "CommandRunner",
    "DefaultStageRecorder",
    "LaneExecution",
    "NullStageRecorder",
    "Provisioner",
    "StageRecorder",
    "SubprocessCommandRunner",
    "ToolchainBinding",
    "env_name",
    "expand_macros",
    "lane_environment",
    "run_lane",
    "run_lane_with_retries",
    "run_matrix",
    "run_stage",
    "utc_now_iso8601",
]
