from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from lanekit.errors import FailureKind
from lanekit.matrix import Lane


class StageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LaneState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (LaneState.SUCCEEDED, LaneState.FAILED)


@dataclass(frozen=True)
class Stage:
    name: str
    commands: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_failure: bool = False
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("Stage.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())

        if isinstance(self.commands, str):
            raise TypeError(f"Stage {self.name} commands must be a sequence of strings, not a string")
        commands = tuple(self.commands)
        if not commands:
            raise ValueError(f"Stage {self.name} must declare at least one command")
        for command in commands:
            if not isinstance(command, str) or not command.strip():
                raise TypeError(f"Stage {self.name} commands must be non-empty strings")
        object.__setattr__(self, "commands", commands)

        if not isinstance(self.env, Mapping):
            raise TypeError(f"Stage {self.name} env must be a mapping (type={type(self.env).__name__})")
        object.__setattr__(
            self, "env", MappingProxyType({str(k): str(v) for k, v in self.env.items()})
        )

        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Stage {self.name} timeout_seconds must be > 0 when provided")


@dataclass(frozen=True)
class StageResult:
    stage: str
    status: StageStatus
    output: str = ""
    duration_seconds: float = 0.0
    exit_code: int | None = None
    failure_kind: FailureKind | None = None
    started_at: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is StageStatus.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "started_at": self.started_at,
            "output": self.output,
        }


@dataclass(frozen=True)
class LaneResult:
    lane: Lane
    state: LaneState
    results: tuple[StageResult, ...] = ()
    not_run: tuple[str, ...] = ()
    failure_kind: FailureKind | None = None
    provisioning_output: str = ""
    duration_seconds: float = 0.0
    attempt: int = 1
    cancelled: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if not self.state.terminal:
            raise ValueError(f"LaneResult for {self.lane.lane_id} must be terminal (got {self.state.value})")
        if self.state is LaneState.SUCCEEDED and self.failure_kind is not None:
            raise ValueError(f"Succeeded lane {self.lane.lane_id} cannot carry a failure kind")

    @property
    def succeeded(self) -> bool:
        return self.state is LaneState.SUCCEEDED

    @property
    def failed_stage(self) -> str | None:
        for result in self.results:
            if not result.succeeded:
                return result.stage
        return None

    @property
    def retryable(self) -> bool:
        return (
            self.failure_kind is not None
            and self.failure_kind.retryable
            and not self.cancelled
        )

    def to_dict(self) -> dict:
        return {
            "lane_id": self.lane.lane_id,
            "image": self.lane.image,
            "channel": self.lane.channel,
            "variables": dict(self.lane.variables),
            "state": self.state.value,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "failed_stage": self.failed_stage,
            "attempt": self.attempt,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "provisioning_output": self.provisioning_output,
            "error": self.error,
            "stages": [result.to_dict() for result in self.results],
            "not_run": list(self.not_run),
        }


@dataclass(frozen=True)
class RunResult:
    run_id: str
    lanes: tuple[LaneResult, ...]
    started_at: str
    finished_at: str
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return bool(self.lanes) and all(lane.succeeded for lane in self.lanes)

    def failed_lanes(self) -> tuple[LaneResult, ...]:
        return tuple(lane for lane in self.lanes if not lane.succeeded)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": "succeeded" if self.succeeded else "failed",
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "lanes": [lane.to_dict() for lane in self.lanes],
        }
