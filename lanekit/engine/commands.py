"""Command execution port.

The stage executor only ever sees ``CommandRunner``: run a shell-level command in an
environment and report exit status plus captured output. ``SubprocessCommandRunner`` is
the real implementation; tests substitute fakes with scripted outcomes.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Mapping, Protocol

from lanekit.engine.cancellation import CancellationToken
from lanekit.errors import WorkerUnavailableError

logger = logging.getLogger(__name__)

_MACRO_RE = re.compile(r"\$\(([A-Za-z_][A-Za-z0-9_.]*)\)")


@dataclass(frozen=True)
class CommandOutcome:
    exit_code: int | None
    output: str = ""
    duration_seconds: float = 0.0
    interrupted: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.interrupted is None and self.exit_code == 0


class CommandRunner(Protocol):
    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: str | None,
        token: CancellationToken,
    ) -> CommandOutcome:
        ...


def expand_macros(text: str, variables: Mapping[str, str]) -> str:
    """Replace ``$(name)`` references with lane variables; unknown names are kept as-is."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return _MACRO_RE.sub(_sub, text)


def env_name(variable: str) -> str:
    return variable.replace(".", "_").upper()


class SubprocessCommandRunner:
    def __init__(
        self,
        *,
        shell: str | None = None,
        poll_interval: float = 0.1,
        kill_grace_seconds: float = 5.0,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self._shell = shell
        self._poll_interval = poll_interval
        self._kill_grace_seconds = kill_grace_seconds

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: str | None,
        token: CancellationToken,
    ) -> CommandOutcome:
        started = time.monotonic()
        if token.is_cancelled():
            return CommandOutcome(exit_code=None, interrupted=token.reason())

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                executable=self._shell,
                cwd=cwd,
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=os.name != "nt",
            )
        except OSError as exc:
            raise WorkerUnavailableError(f"Cannot start command {command!r}: {exc}") from exc

        chunks: list[str] = []
        reader = threading.Thread(target=self._drain, args=(proc, chunks), daemon=True)
        reader.start()

        interrupted: str | None = None
        while True:
            try:
                proc.wait(timeout=self._poll_interval)
                break
            except subprocess.TimeoutExpired:
                if token.is_cancelled():
                    interrupted = token.reason()
                    logger.debug("Stopping command (%s): %s", interrupted, command)
                    self._stop(proc)
                    break

        # Background children can hold the output pipe open after the shell exits.
        while interrupted is None and reader.is_alive():
            reader.join(timeout=self._poll_interval)
            if reader.is_alive() and token.is_cancelled():
                interrupted = token.reason()
                logger.debug("Stopping leftover children (%s): %s", interrupted, command)
                self._signal(proc, force=True)

        if interrupted:
            reader.join(timeout=self._kill_grace_seconds)
        return CommandOutcome(
            exit_code=proc.returncode,
            output="".join(chunks),
            duration_seconds=time.monotonic() - started,
            interrupted=interrupted,
        )

    def _drain(self, proc: subprocess.Popen, chunks: list[str]) -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            chunks.append(line)
        proc.stdout.close()

    def _stop(self, proc: subprocess.Popen) -> None:
        self._signal(proc, force=False)
        try:
            proc.wait(timeout=self._kill_grace_seconds)
        except subprocess.TimeoutExpired:
            self._signal(proc, force=True)
            proc.wait()

    def _signal(self, proc: subprocess.Popen, *, force: bool) -> None:
        if os.name == "nt":
            if force:
                proc.kill()
            else:
                proc.terminate()
            return
        # The shell runs in its own session; signal the whole group so children stop too.
        try:
            os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
        except ProcessLookupError:
            pass
