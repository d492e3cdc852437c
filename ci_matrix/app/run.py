from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from lanekit.engine import (
    CancellationToken,
    CommandRunner,
    DefaultStageRecorder,
    SubprocessCommandRunner,
    run_matrix,
)
from lanekit.errors import EmptyMatrixError
from lanekit.matrix import Lane, select_lanes
from lanekit.stage_types import LaneResult, RunResult

from ci_matrix.foundation.config_io import load_config
from ci_matrix.foundation.logging_utils import close_logger, setup_operational_logger
from ci_matrix.framework.config import PipelineConfig
from ci_matrix.framework.provisioning import CommandProvisioner
from ci_matrix.framework.report import format_summary, write_lane_logs, write_run_report


def generate_run_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class LoadedConfig:
    config: PipelineConfig
    meta: dict[str, Any]
    warnings: list[str]


def load_pipeline_config(config_path: str | None = None) -> LoadedConfig:
    raw, meta = load_config(config_path=config_path)
    base_dir = meta.get("repo_root") or os.path.dirname(meta["paths"][0])
    config, warnings = PipelineConfig.from_dict(raw, base_dir=base_dir)
    return LoadedConfig(config=config, meta=meta, warnings=warnings)


def plan_lanes(
    config: PipelineConfig,
    *,
    lane_ids: Sequence[str] = (),
    images: Sequence[str] = (),
) -> tuple[Lane, ...]:
    """Expand the matrix once and apply the worker's lane/image selection."""

    lanes = select_lanes(config.lanes(), lane_ids=lane_ids, images=images)
    if not lanes:
        raise EmptyMatrixError(
            f"No lanes match the selection (lanes={list(lane_ids) or '*'}, images={list(images) or '*'})"
        )
    return lanes


def run_pipeline(
    config: PipelineConfig,
    *,
    lane_ids: Sequence[str] = (),
    images: Sequence[str] = (),
    max_parallel: int | None = None,
    runner: CommandRunner | None = None,
    token: CancellationToken | None = None,
    run_id: str | None = None,
    warnings: Sequence[str] = (),
) -> tuple[RunResult, dict[str, str]]:
    """Run every selected lane and write lane logs plus the run report.

    Configuration problems raise before any lane starts.
    """

    lanes = plan_lanes(config, lane_ids=lane_ids, images=images)
    run_id = run_id or generate_run_id()
    settings = config.run

    logger, oplog_path = setup_operational_logger(settings.log_path, run_id)
    try:
        for warning in warnings:
            logger.warning("Config: %s", warning)
        logger.info(
            "Pipeline %s: lanes=%s stages=%s",
            config.name,
            ", ".join(lane.lane_id for lane in lanes),
            ", ".join(stage.name for stage in config.stages),
        )

        def _on_lane_complete(result: LaneResult) -> None:
            logger.debug("Lane %s finished: %s", result.lane.lane_id, result.state.value)

        run_result = run_matrix(
            lanes,
            config.stages,
            runner=runner or SubprocessCommandRunner(shell=config.run.shell),
            run_id=run_id,
            provisioner=CommandProvisioner(config.provision) if config.provision.enabled else None,
            max_parallel=max_parallel or settings.max_parallel,
            lane_timeout_seconds=settings.lane_timeout_seconds,
            run_timeout_seconds=settings.run_timeout_seconds,
            infrastructure_retries=settings.infrastructure_retries,
            cwd=settings.working_directory,
            token=token,
            recorder=DefaultStageRecorder(logger),
            on_lane_complete=_on_lane_complete,
        )

        lane_logs = write_lane_logs(run_result, settings.log_path)
        artifacts = {f"lane:{lane_id}": path for lane_id, path in lane_logs.items()}
        artifacts.update(
            write_run_report(
                run_result,
                settings.report_path or settings.log_path,
                pipeline_name=config.name,
                effective_config=config.effective,
            )
        )
        artifacts["oplog"] = oplog_path

        for line in format_summary(run_result).splitlines():
            logger.info("%s", line)
        logger.info("Run report: %s", artifacts["run_json"])
        return run_result, artifacts
    except Exception:
        logger.exception("Run %s aborted", run_id)
        raise
    finally:
        close_logger(logger)


def describe_plan(config: PipelineConfig, lanes: Sequence[Lane]) -> str:
    lines = [f"Pipeline {config.name}: {len(lanes)} lane(s) x {len(config.stages)} stage(s)"]
    for lane in lanes:
        bindings = ", ".join(f"{key}={value}" for key, value in lane.variables.items())
        lines.append(f"  {lane.lane_id}: {bindings}")
    for index, stage in enumerate(config.stages, start=1):
        flag = " (continue on failure)" if stage.continue_on_failure else ""
        lines.append(f"  {index}. {stage.name}{flag}")
        for command in stage.commands:
            lines.append(f"       $ {command}")
    return "\n".join(lines)
