import logging
import threading

import pytest

from lanekit.engine.cancellation import CancellationToken
from lanekit.engine.commands import CommandOutcome
from lanekit.engine.executor import (
    LANE_ENV_VAR,
    STAGE_ENV_VAR,
    DefaultStageRecorder,
    LaneExecution,
    ToolchainBinding,
    run_lane,
)
from lanekit.errors import FailureKind, ProvisioningError, WorkerUnavailableError
from lanekit.matrix import Lane
from lanekit.stage_types import LaneState, Stage, StageStatus


class ScriptedRunner:
    """Exit codes keyed by exact command text; everything else exits 0."""

    def __init__(self, exit_codes=None, *, raise_on=None, interrupt_on=None):
        self.exit_codes = dict(exit_codes or {})
        self.raise_on = set(raise_on or ())
        self.interrupt_on = dict(interrupt_on or {})
        self.calls: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def run(self, command, *, env, cwd, token):
        with self._lock:
            self.calls.append((command, dict(env)))
        if command in self.raise_on:
            raise WorkerUnavailableError(f"agent lost while starting {command}")
        if command in self.interrupt_on:
            return CommandOutcome(exit_code=-15, output="partial\n", interrupted=self.interrupt_on[command])
        code = self.exit_codes.get(command, 0)
        return CommandOutcome(exit_code=code, output=f"ran {command}\n", duration_seconds=0.01)

    def commands(self) -> list[str]:
        return [command for command, _env in self.calls]


def _lane() -> Lane:
    return Lane(
        lane_id="linux-stable",
        variables={"imageName": "ubuntu-latest", "rustup_toolchain": "stable"},
        image="ubuntu-latest",
        channel="stable",
    )


def _stages() -> list[Stage]:
    return [
        Stage("build", ("cargo build --verbose --all", "cargo test --verbose --all --no-run")),
        Stage("lint", ("cargo clippy --all-targets --all-features --all",)),
        Stage("test", ("cargo test --verbose --all",)),
        Stage("docs", ("cargo doc --no-deps --verbose --all",)),
    ]


def test_all_stages_succeed():
    runner = ScriptedRunner()
    result = run_lane(_lane(), _stages(), runner=runner, base_env={})

    assert result.state is LaneState.SUCCEEDED
    assert result.succeeded
    assert [r.stage for r in result.results] == ["build", "lint", "test", "docs"]
    assert all(r.status is StageStatus.SUCCEEDED for r in result.results)
    assert all(r.exit_code == 0 for r in result.results)
    assert result.not_run == ()
    assert result.failure_kind is None


def test_build_failure_short_circuits_remaining_stages():
    runner = ScriptedRunner({"cargo build --verbose --all": 1})
    result = run_lane(_lane(), _stages(), runner=runner, base_env={})

    assert result.state is LaneState.FAILED
    assert [(r.stage, r.status) for r in result.results] == [("build", StageStatus.FAILED)]
    assert result.results[0].exit_code == 1
    assert result.results[0].failure_kind is FailureKind.STAGE
    assert result.failure_kind is FailureKind.STAGE
    assert result.failed_stage == "build"
    assert result.not_run == ("lint", "test", "docs")
    # Second build command and every later stage never ran.
    assert runner.commands() == ["cargo build --verbose --all"]


@pytest.mark.parametrize("failing_index", [0, 1, 2, 3])
def test_failure_at_stage_i_returns_results_for_stages_up_to_i(failing_index):
    stages = _stages()
    failing = stages[failing_index]
    runner = ScriptedRunner({failing.commands[-1]: 101})

    result = run_lane(_lane(), stages, runner=runner, base_env={})

    assert result.state is LaneState.FAILED
    assert [r.stage for r in result.results] == [s.name for s in stages[: failing_index + 1]]
    assert all(r.succeeded for r in result.results[:-1])
    assert result.results[-1].status is StageStatus.FAILED
    assert result.not_run == tuple(s.name for s in stages[failing_index + 1 :])


def test_rerunning_a_lane_repeats_the_outcome_pattern():
    stages = _stages()
    runner = ScriptedRunner({"cargo test --verbose --all": 1})

    first = run_lane(_lane(), stages, runner=runner, base_env={})
    second = run_lane(_lane(), stages, runner=runner, base_env={})

    assert [(r.stage, r.status) for r in first.results] == [(r.stage, r.status) for r in second.results]
    assert first.state is second.state is LaneState.FAILED


def test_stage_output_is_captured_per_stage():
    runner = ScriptedRunner()
    result = run_lane(_lane(), _stages(), runner=runner, base_env={})

    build_output = result.results[0].output
    assert "$ cargo build --verbose --all\n" in build_output
    assert "ran cargo test --verbose --all --no-run\n" in build_output
    assert "clippy" not in build_output
    assert result.results[0].started_at is not None


def test_lane_variables_are_exposed_as_environment():
    runner = ScriptedRunner()
    stages = [Stage("build", ("make",), env={"TOOLCHAIN": "$(rustup_toolchain)", "PLAIN": "1"})]

    run_lane(_lane(), stages, runner=runner, base_env={"PATH": "/usr/bin"})

    _command, env = runner.calls[0]
    assert env["PATH"] == "/usr/bin"
    assert env["IMAGENAME"] == "ubuntu-latest"
    assert env["RUSTUP_TOOLCHAIN"] == "stable"
    assert env[LANE_ENV_VAR] == "linux-stable"
    assert env[STAGE_ENV_VAR] == "build"
    assert env["TOOLCHAIN"] == "stable"
    assert env["PLAIN"] == "1"


def test_macros_in_commands_use_lane_variables_and_keep_unknown_references():
    runner = ScriptedRunner()
    stages = [Stage("build", ("rustup run $(rustup_toolchain) cargo build $(unknown)",))]

    run_lane(_lane(), stages, runner=runner, base_env={})

    assert runner.commands() == ["rustup run stable cargo build $(unknown)"]


def test_continue_on_failure_runs_later_stages_but_fails_the_lane():
    stages = [
        Stage("build", ("build",)),
        Stage("lint", ("lint",), continue_on_failure=True),
        Stage("test", ("test",)),
    ]
    runner = ScriptedRunner({"lint": 1})

    result = run_lane(_lane(), stages, runner=runner, base_env={})

    assert [(r.stage, r.status) for r in result.results] == [
        ("build", StageStatus.SUCCEEDED),
        ("lint", StageStatus.FAILED),
        ("test", StageStatus.SUCCEEDED),
    ]
    assert result.state is LaneState.FAILED
    assert result.failure_kind is FailureKind.STAGE
    assert result.not_run == ()


def test_worker_unavailable_is_an_infrastructure_failure():
    runner = ScriptedRunner(raise_on={"cargo clippy --all-targets --all-features --all"})

    result = run_lane(_lane(), _stages(), runner=runner, base_env={})

    assert result.state is LaneState.FAILED
    assert result.failure_kind is FailureKind.INFRASTRUCTURE
    assert result.results[-1].stage == "lint"
    assert result.results[-1].exit_code is None
    assert "agent lost" in result.results[-1].output
    assert result.retryable


def test_interrupted_command_fails_stage_as_infrastructure():
    runner = ScriptedRunner(interrupt_on={"cargo test --verbose --all": "timed out"})

    result = run_lane(_lane(), _stages(), runner=runner, base_env={})

    assert [r.stage for r in result.results] == ["build", "lint", "test"]
    assert result.results[-1].failure_kind is FailureKind.INFRASTRUCTURE
    assert "[test] timed out" in result.results[-1].output
    assert result.not_run == ("docs",)
    assert result.cancelled is False


def test_cancelled_token_runs_nothing():
    token = CancellationToken()
    token.cancel()
    runner = ScriptedRunner()

    result = run_lane(_lane(), _stages(), runner=runner, base_env={}, token=token)

    assert runner.calls == []
    assert result.results == ()
    assert result.not_run == ("build", "lint", "test", "docs")
    assert result.failure_kind is FailureKind.INFRASTRUCTURE
    assert result.cancelled is True
    assert not result.retryable


def test_cancel_between_stages_marks_remaining_stages_not_run():
    token = CancellationToken()

    class CancellingRunner(ScriptedRunner):
        def run(self, command, *, env, cwd, token):
            outcome = super().run(command, env=env, cwd=cwd, token=token)
            if command.startswith("cargo clippy"):
                token.cancel()
            return outcome

    runner = CancellingRunner()
    result = run_lane(_lane(), _stages(), runner=runner, base_env={}, token=token)

    assert [r.stage for r in result.results] == ["build", "lint"]
    assert all(r.succeeded for r in result.results)
    assert result.state is LaneState.FAILED
    assert result.not_run == ("test", "docs")
    assert result.cancelled is True


class _Provisioner:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.lanes: list[str] = []

    def provision(self, lane, *, runner, env, cwd, token):
        self.lanes.append(lane.lane_id)
        if self.fail:
            raise ProvisioningError("toolchain nightly unavailable", output="error: no such toolchain\n")
        return ToolchainBinding(env={"RUSTUP_TOOLCHAIN": lane.channel}, output="installed\n")


def test_provisioning_failure_fails_lane_with_zero_stage_results():
    runner = ScriptedRunner()
    result = run_lane(
        _lane(), _stages(), runner=runner, provisioner=_Provisioner(fail=True), base_env={}
    )

    assert result.state is LaneState.FAILED
    assert result.failure_kind is FailureKind.PROVISIONING
    assert result.results == ()
    assert result.not_run == ("build", "lint", "test", "docs")
    assert "no such toolchain" in result.provisioning_output
    assert runner.calls == []
    assert not result.retryable


def test_provisioned_toolchain_env_reaches_every_stage():
    runner = ScriptedRunner()
    provisioner = _Provisioner()

    result = run_lane(_lane(), _stages(), runner=runner, provisioner=provisioner, base_env={})

    assert result.succeeded
    assert provisioner.lanes == ["linux-stable"]
    assert result.provisioning_output == "installed\n"
    assert all(env["RUSTUP_TOOLCHAIN"] == "stable" for _command, env in runner.calls)


def test_run_lane_requires_stages():
    with pytest.raises(ValueError, match="no stages"):
        run_lane(_lane(), [], runner=ScriptedRunner())


def test_lane_execution_rejects_illegal_transitions():
    stages = _stages()
    execution = LaneExecution(_lane(), stages)
    execution.enter_stage(stages[0])
    execution.finish(LaneState.SUCCEEDED, failure_kind=None, started=0.0, attempt=1)

    with pytest.raises(RuntimeError, match="Illegal lane transition"):
        execution.enter_stage(stages[1])


def test_default_recorder_logs_stage_progress(caplog):
    logger = logging.getLogger("test.executor.recorder")
    runner = ScriptedRunner({"cargo doc --no-deps --verbose --all": 1})

    with caplog.at_level(logging.INFO, logger="test.executor.recorder"):
        run_lane(_lane(), _stages(), runner=runner, base_env={}, recorder=DefaultStageRecorder(logger))

    messages = [record.getMessage() for record in caplog.records]
    assert "Lane linux-stable: starting (image=ubuntu-latest, channel=stable)" in messages
    assert "Lane linux-stable: stage 1/4 build (commands=2)" in messages
    assert any(m.startswith("Lane linux-stable: stage docs failed (exit=1, kind=stage)") for m in messages)
    assert "Lane linux-stable: failed (kind=stage)" in messages
