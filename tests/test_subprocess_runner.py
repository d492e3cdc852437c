import os
import shlex
import sys

import pytest

from lanekit.engine.cancellation import CANCELLED, TIMED_OUT, CancellationToken
from lanekit.engine.commands import SubprocessCommandRunner, env_name, expand_macros
from lanekit.engine.executor import run_lane
from lanekit.errors import FailureKind, WorkerUnavailableError
from lanekit.matrix import Lane
from lanekit.stage_types import LaneState, Stage

pytestmark = pytest.mark.skipif(os.name == "nt", reason="uses POSIX shell quoting")


def _python(code: str) -> str:
    return shlex.join([sys.executable, "-c", code])


def _env(**extra):
    env = dict(os.environ)
    env.update(extra)
    return env


def test_successful_command_captures_stdout_and_stderr():
    runner = SubprocessCommandRunner(poll_interval=0.01)
    command = _python("import sys; print('out'); print('err', file=sys.stderr)")

    outcome = runner.run(command, env=_env(), cwd=None, token=CancellationToken())

    assert outcome.succeeded
    assert outcome.exit_code == 0
    assert "out" in outcome.output
    assert "err" in outcome.output
    assert outcome.interrupted is None


def test_nonzero_exit_is_reported():
    runner = SubprocessCommandRunner(poll_interval=0.01)

    outcome = runner.run(_python("import sys; sys.exit(3)"), env=_env(), cwd=None, token=CancellationToken())

    assert not outcome.succeeded
    assert outcome.exit_code == 3


def test_environment_and_cwd_reach_the_command(tmp_path):
    runner = SubprocessCommandRunner(poll_interval=0.01)
    command = _python("import os; print(os.environ['CI_MATRIX_LANE']); print(os.getcwd())")

    outcome = runner.run(command, env=_env(CI_MATRIX_LANE="linux-stable"), cwd=str(tmp_path), token=CancellationToken())

    lines = outcome.output.splitlines()
    assert lines[0] == "linux-stable"
    assert os.path.samefile(lines[1], tmp_path)


def test_timeout_interrupts_a_hung_command():
    runner = SubprocessCommandRunner(poll_interval=0.01, kill_grace_seconds=2.0)
    token = CancellationToken(timeout_seconds=0.3)

    outcome = runner.run(_python("import time; time.sleep(30)"), env=_env(), cwd=None, token=token)

    assert outcome.interrupted == TIMED_OUT
    assert not outcome.succeeded
    assert outcome.duration_seconds < 10


def test_timeout_covers_background_children_holding_the_output_pipe():
    runner = SubprocessCommandRunner(poll_interval=0.01, kill_grace_seconds=2.0)
    token = CancellationToken(timeout_seconds=0.5)

    outcome = runner.run("sleep 5 & echo hi", env=_env(), cwd=None, token=token)

    assert outcome.interrupted == TIMED_OUT
    assert not outcome.succeeded
    assert "hi" in outcome.output
    assert outcome.duration_seconds < 3


def test_already_cancelled_token_does_not_spawn():
    runner = SubprocessCommandRunner()
    token = CancellationToken()
    token.cancel()

    outcome = runner.run(_python("print('never')"), env=_env(), cwd=None, token=token)

    assert outcome.interrupted == CANCELLED
    assert outcome.exit_code is None
    assert outcome.output == ""


def test_missing_working_directory_means_worker_unavailable(tmp_path):
    runner = SubprocessCommandRunner()
    missing = tmp_path / "gone"

    with pytest.raises(WorkerUnavailableError, match="Cannot start command"):
        runner.run(_python("print(1)"), env=_env(), cwd=str(missing), token=CancellationToken())


def test_poll_interval_must_be_positive():
    with pytest.raises(ValueError, match="poll_interval"):
        SubprocessCommandRunner(poll_interval=0)


def test_expand_macros_and_env_names():
    variables = {"rustup_toolchain": "nightly", "build.arch": "x86_64"}

    assert expand_macros("rustup default $(rustup_toolchain)", variables) == "rustup default nightly"
    assert expand_macros("$(build.arch)-$(missing)", variables) == "x86_64-$(missing)"
    assert env_name("rustup_toolchain") == "RUSTUP_TOOLCHAIN"
    assert env_name("build.arch") == "BUILD_ARCH"


def test_lane_timeout_fails_stage_whose_shell_left_a_background_child():
    lane = Lane("linux-stable", {"imageName": "ubuntu-latest"}, "ubuntu-latest", None)

    result = run_lane(
        lane,
        [Stage("build", ("sleep 5 & echo hi",)), Stage("test", ("echo never",))],
        runner=SubprocessCommandRunner(poll_interval=0.01),
        token=CancellationToken(timeout_seconds=0.5),
    )

    assert result.state is LaneState.FAILED
    assert result.failure_kind is FailureKind.INFRASTRUCTURE
    assert result.failed_stage == "build"
    assert result.not_run == ("test",)
    assert result.duration_seconds < 3
