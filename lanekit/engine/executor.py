"""Stage executor for a single lane.

This module is intentionally app-agnostic and must not import `ci_matrix.*`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Protocol, Sequence

from lanekit.engine.cancellation import CancellationToken
from lanekit.engine.commands import CommandRunner, env_name, expand_macros
from lanekit.errors import FailureKind, ProvisioningError, WorkerUnavailableError
from lanekit.matrix import Lane
from lanekit.stage_types import LaneResult, LaneState, Stage, StageResult, StageStatus

LANE_ENV_VAR = "CI_MATRIX_LANE"
STAGE_ENV_VAR = "CI_MATRIX_STAGE"

_ALLOWED_TRANSITIONS: dict[LaneState, frozenset[LaneState]] = {
    LaneState.PENDING: frozenset({LaneState.RUNNING, LaneState.FAILED}),
    LaneState.RUNNING: frozenset({LaneState.RUNNING, LaneState.SUCCEEDED, LaneState.FAILED}),
    LaneState.SUCCEEDED: frozenset(),
    LaneState.FAILED: frozenset(),
}


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ToolchainBinding:
    env: Mapping[str, str]
    output: str = ""


class Provisioner(Protocol):
    def provision(
        self,
        lane: Lane,
        *,
        runner: CommandRunner,
        env: Mapping[str, str],
        cwd: str | None,
        token: CancellationToken,
    ) -> ToolchainBinding:
        """Bind the lane's toolchain channel or raise ProvisioningError."""


class StageRecorder(Protocol):
    def on_lane_start(self, lane: Lane, *, attempt: int) -> None:
        ...

    def on_stage_start(self, lane: Lane, stage: Stage, *, index: int, total: int) -> None:
        ...

    def on_stage_end(self, lane: Lane, result: StageResult) -> None:
        ...

    def on_lane_end(self, result: LaneResult) -> None:
        ...


class DefaultStageRecorder:
    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger(__name__)

    def on_lane_start(self, lane: Lane, *, attempt: int) -> None:
        tokens = [f"image={lane.image or '<unset>'}", f"channel={lane.channel or '<unset>'}"]
        if attempt > 1:
            tokens.append(f"attempt={attempt}")
        self._logger.info("Lane %s: starting (%s)", lane.lane_id, ", ".join(tokens))

    def on_stage_start(self, lane: Lane, stage: Stage, *, index: int, total: int) -> None:
        self._logger.info(
            "Lane %s: stage %d/%d %s (commands=%d)",
            lane.lane_id,
            index,
            total,
            stage.name,
            len(stage.commands),
        )

    def on_stage_end(self, lane: Lane, result: StageResult) -> None:
        if result.succeeded:
            self._logger.info(
                "Lane %s: stage %s succeeded in %.1fs", lane.lane_id, result.stage, result.duration_seconds
            )
            return
        self._logger.error(
            "Lane %s: stage %s failed (exit=%s, kind=%s) after %.1fs",
            lane.lane_id,
            result.stage,
            result.exit_code,
            result.failure_kind.value if result.failure_kind else "<none>",
            result.duration_seconds,
        )

    def on_lane_end(self, result: LaneResult) -> None:
        lane_id = result.lane.lane_id
        if result.succeeded:
            self._logger.info("Lane %s: succeeded (%.1fs)", lane_id, result.duration_seconds)
            return
        suffix = f", not run: {', '.join(result.not_run)}" if result.not_run else ""
        self._logger.error(
            "Lane %s: failed (kind=%s%s)",
            lane_id,
            result.failure_kind.value if result.failure_kind else "<none>",
            suffix,
        )


class NullStageRecorder:
    def on_lane_start(self, lane: Lane, *, attempt: int) -> None:
        return

    def on_stage_start(self, lane: Lane, stage: Stage, *, index: int, total: int) -> None:
        return

    def on_stage_end(self, lane: Lane, result: StageResult) -> None:
        return

    def on_lane_end(self, result: LaneResult) -> None:
        return


class LaneExecution:
    """Mutable per-lane bookkeeping, owned by exactly one worker thread."""

    def __init__(self, lane: Lane, stages: Sequence[Stage]):
        self.lane = lane
        self.stages = tuple(stages)
        self.state = LaneState.PENDING
        self.current_stage: str | None = None
        self.results: list[StageResult] = []

    def _transition(self, target: LaneState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal lane transition for {self.lane.lane_id}: {self.state.value} -> {target.value}"
            )
        self.state = target

    def enter_stage(self, stage: Stage) -> None:
        self._transition(LaneState.RUNNING)
        self.current_stage = stage.name

    def record(self, result: StageResult) -> None:
        if self.state is not LaneState.RUNNING or result.stage != self.current_stage:
            raise RuntimeError(
                f"Lane {self.lane.lane_id} cannot record {result.stage} while in {self.state.value}"
            )
        self.results.append(result)

    def not_run(self) -> tuple[str, ...]:
        attempted = {result.stage for result in self.results}
        return tuple(stage.name for stage in self.stages if stage.name not in attempted)

    def finish(
        self,
        target: LaneState,
        *,
        failure_kind: FailureKind | None,
        started: float,
        attempt: int,
        cancelled: bool = False,
        provisioning_output: str = "",
    ) -> LaneResult:
        self._transition(target)
        self.current_stage = None
        return LaneResult(
            lane=self.lane,
            state=self.state,
            results=tuple(self.results),
            not_run=self.not_run(),
            failure_kind=failure_kind,
            provisioning_output=provisioning_output,
            duration_seconds=time.monotonic() - started,
            attempt=attempt,
            cancelled=cancelled,
        )


def lane_environment(
    lane: Lane,
    *,
    base_env: Mapping[str, str] | None = None,
    toolchain_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    if toolchain_env:
        env.update(toolchain_env)
    for name, value in lane.variables.items():
        env[env_name(name)] = value
    env[LANE_ENV_VAR] = lane.lane_id
    return env


def run_stage(
    lane: Lane,
    stage: Stage,
    *,
    runner: CommandRunner,
    env: Mapping[str, str],
    cwd: str | None,
    token: CancellationToken,
) -> StageResult:
    stage_env = dict(env)
    stage_env[STAGE_ENV_VAR] = stage.name
    for key, value in stage.env.items():
        stage_env[key] = expand_macros(value, lane.variables)

    stage_token = token.child(timeout_seconds=stage.timeout_seconds) if stage.timeout_seconds else token
    started_at = utc_now_iso8601()
    started = time.monotonic()
    output: list[str] = []

    def _result(
        status: StageStatus, *, exit_code: int | None, failure_kind: FailureKind | None
    ) -> StageResult:
        return StageResult(
            stage=stage.name,
            status=status,
            output="".join(output),
            duration_seconds=time.monotonic() - started,
            exit_code=exit_code,
            failure_kind=failure_kind,
            started_at=started_at,
        )

    for command in stage.commands:
        command_text = expand_macros(command, lane.variables)
        output.append(f"$ {command_text}\n")
        try:
            outcome = runner.run(command_text, env=stage_env, cwd=cwd, token=stage_token)
        except WorkerUnavailableError as exc:
            output.append(f"{exc}\n")
            return _result(StageStatus.FAILED, exit_code=None, failure_kind=FailureKind.INFRASTRUCTURE)

        output.append(outcome.output)
        if outcome.interrupted is not None:
            output.append(f"\n[{stage.name}] {outcome.interrupted}\n")
            return _result(
                StageStatus.FAILED, exit_code=outcome.exit_code, failure_kind=FailureKind.INFRASTRUCTURE
            )
        if outcome.exit_code != 0:
            return _result(StageStatus.FAILED, exit_code=outcome.exit_code, failure_kind=FailureKind.STAGE)

    return _result(StageStatus.SUCCEEDED, exit_code=0, failure_kind=None)


def run_lane(
    lane: Lane,
    stages: Sequence[Stage],
    *,
    runner: CommandRunner,
    provisioner: Provisioner | None = None,
    base_env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    token: CancellationToken | None = None,
    recorder: StageRecorder | None = None,
    attempt: int = 1,
) -> LaneResult:
    """Run ``stages`` in order for ``lane``, stopping at the first failing stage.

    Stage results gathered before a failure are always returned; stages that never
    started are listed in ``LaneResult.not_run``.
    """

    if not stages:
        raise ValueError(f"Lane {lane.lane_id} has no stages to run")
    token = token or CancellationToken()
    recorder = recorder or NullStageRecorder()
    execution = LaneExecution(lane, stages)
    started = time.monotonic()

    recorder.on_lane_start(lane, attempt=attempt)

    def _finish(target: LaneState, failure_kind: FailureKind | None, **extra) -> LaneResult:
        result = execution.finish(
            target,
            failure_kind=failure_kind,
            started=started,
            attempt=attempt,
            cancelled=token.cancelled_externally(),
            **extra,
        )
        recorder.on_lane_end(result)
        return result

    if token.is_cancelled():
        return _finish(LaneState.FAILED, FailureKind.INFRASTRUCTURE)

    toolchain_env: Mapping[str, str] = {}
    provisioning_output = ""
    if provisioner is not None:
        try:
            binding = provisioner.provision(
                lane,
                runner=runner,
                env=lane_environment(lane, base_env=base_env),
                cwd=cwd,
                token=token,
            )
        except ProvisioningError as exc:
            kind = FailureKind.INFRASTRUCTURE if token.is_cancelled() else FailureKind.PROVISIONING
            output = exc.output or str(exc)
            return _finish(LaneState.FAILED, kind, provisioning_output=output)
        except WorkerUnavailableError as exc:
            return _finish(LaneState.FAILED, FailureKind.INFRASTRUCTURE, provisioning_output=str(exc))
        toolchain_env = binding.env
        provisioning_output = binding.output

    env = lane_environment(lane, base_env=base_env, toolchain_env=toolchain_env)

    first_failure: FailureKind | None = None
    total = len(execution.stages)
    for index, stage in enumerate(execution.stages, start=1):
        if token.is_cancelled():
            return _finish(
                LaneState.FAILED, FailureKind.INFRASTRUCTURE, provisioning_output=provisioning_output
            )

        execution.enter_stage(stage)
        recorder.on_stage_start(lane, stage, index=index, total=total)
        result = run_stage(lane, stage, runner=runner, env=env, cwd=cwd, token=token)
        execution.record(result)
        recorder.on_stage_end(lane, result)

        if result.succeeded:
            continue
        if stage.continue_on_failure and result.failure_kind is FailureKind.STAGE:
            first_failure = first_failure or result.failure_kind
            continue
        return _finish(LaneState.FAILED, result.failure_kind, provisioning_output=provisioning_output)

    if first_failure is not None:
        return _finish(LaneState.FAILED, first_failure, provisioning_output=provisioning_output)
    return _finish(LaneState.SUCCEEDED, None, provisioning_output=provisioning_output)
