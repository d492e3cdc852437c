"""Toolchain provisioning for a lane.

The real installer (rustup, a hosted-agent template, ...) stays outside this repo: we
only run the configured install commands for the lane's channel and hand back the
environment that pins the toolchain for every stage.
"""

from __future__ import annotations

import logging
from typing import Mapping

from lanekit.engine.cancellation import CancellationToken
from lanekit.engine.commands import CommandRunner, expand_macros
from lanekit.engine.executor import ToolchainBinding
from lanekit.errors import ProvisioningError
from lanekit.matrix import Lane

from ci_matrix.framework.config import ProvisionConfig

logger = logging.getLogger(__name__)


class CommandProvisioner:
    def __init__(self, config: ProvisionConfig):
        self._config = config

    def provision(
        self,
        lane: Lane,
        *,
        runner: CommandRunner,
        env: Mapping[str, str],
        cwd: str | None,
        token: CancellationToken,
    ) -> ToolchainBinding:
        if self._config.commands and not lane.channel:
            raise ProvisioningError(f"Lane {lane.lane_id} has no toolchain channel to provision")

        bound_env = {
            key: expand_macros(value, lane.variables) for key, value in self._config.env.items()
        }
        command_env = {**env, **bound_env}

        output: list[str] = []
        for command in self._config.commands:
            command_text = expand_macros(command, lane.variables)
            logger.debug("Lane %s: provisioning: %s", lane.lane_id, command_text)
            output.append(f"$ {command_text}\n")
            outcome = runner.run(command_text, env=command_env, cwd=cwd, token=token)
            output.append(outcome.output)
            if outcome.interrupted is not None:
                raise ProvisioningError(
                    f"Provisioning {outcome.interrupted} for lane {lane.lane_id}",
                    output="".join(output),
                )
            if outcome.exit_code != 0:
                raise ProvisioningError(
                    f"Provisioning command failed for lane {lane.lane_id} "
                    f"(exit={outcome.exit_code}): {command_text}",
                    output="".join(output),
                )

        return ToolchainBinding(env=bound_env, output="".join(output))
