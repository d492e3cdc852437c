import pytest

from ci_matrix.framework.config import ProvisionConfig
from ci_matrix.framework.provisioning import CommandProvisioner
from lanekit.engine.cancellation import CancellationToken
from lanekit.engine.commands import CommandOutcome
from lanekit.errors import ProvisioningError
from lanekit.matrix import Lane


class RecordingRunner:
    def __init__(self, outcome=None):
        self.outcome = outcome or CommandOutcome(exit_code=0, output="toolchain installed\n")
        self.calls = []

    def run(self, command, *, env, cwd, token):
        self.calls.append((command, dict(env)))
        return self.outcome


def _lane(channel="nightly"):
    variables = {"imageName": "ubuntu-latest"}
    if channel:
        variables["rustup_toolchain"] = channel
    return Lane(lane_id="linux-nightly", variables=variables, image="ubuntu-latest", channel=channel)


def _config():
    return ProvisionConfig(
        commands=("rustup toolchain install $(rustup_toolchain) --profile minimal",),
        env={"RUSTUP_TOOLCHAIN": "$(rustup_toolchain)"},
    )


def test_installs_the_lane_channel_and_binds_it():
    runner = RecordingRunner()

    binding = CommandProvisioner(_config()).provision(
        _lane(), runner=runner, env={"PATH": "/bin"}, cwd=None, token=CancellationToken()
    )

    assert dict(binding.env) == {"RUSTUP_TOOLCHAIN": "nightly"}
    assert "$ rustup toolchain install nightly --profile minimal\n" in binding.output
    command, env = runner.calls[0]
    assert command == "rustup toolchain install nightly --profile minimal"
    assert env == {"PATH": "/bin", "RUSTUP_TOOLCHAIN": "nightly"}


def test_failed_install_raises_with_captured_output():
    runner = RecordingRunner(CommandOutcome(exit_code=1, output="error: toolchain 'nightly' is not installable\n"))

    with pytest.raises(ProvisioningError, match=r"exit=1") as excinfo:
        CommandProvisioner(_config()).provision(
            _lane(), runner=runner, env={}, cwd=None, token=CancellationToken()
        )

    assert "not installable" in excinfo.value.output


def test_interrupted_install_raises():
    runner = RecordingRunner(CommandOutcome(exit_code=None, interrupted="timed out"))

    with pytest.raises(ProvisioningError, match="Provisioning timed out for lane linux-nightly"):
        CommandProvisioner(_config()).provision(
            _lane(), runner=runner, env={}, cwd=None, token=CancellationToken()
        )


def test_lane_without_channel_cannot_be_provisioned():
    runner = RecordingRunner()

    with pytest.raises(ProvisioningError, match="no toolchain channel"):
        CommandProvisioner(_config()).provision(
            _lane(channel=None), runner=runner, env={}, cwd=None, token=CancellationToken()
        )
    assert runner.calls == []


def test_env_only_provisioning_runs_no_commands():
    runner = RecordingRunner()
    config = ProvisionConfig(env={"RUSTUP_TOOLCHAIN": "$(rustup_toolchain)"})

    binding = CommandProvisioner(config).provision(
        _lane("beta"), runner=runner, env={}, cwd=None, token=CancellationToken()
    )

    assert config.enabled
    assert dict(binding.env) == {"RUSTUP_TOOLCHAIN": "beta"}
    assert runner.calls == []
    assert not ProvisionConfig().enabled
