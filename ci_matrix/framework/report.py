"""Run reports: a per-lane summary table plus the full per-stage JSON record."""

from __future__ import annotations

import json
import os
from typing import Any, Mapping

import pandas as pd

from lanekit.stage_types import LaneResult, RunResult

from ci_matrix.foundation.logging_utils import safe_filename, write_lane_log

SUMMARY_COLUMNS: list[str] = [
    "lane_id",
    "image",
    "channel",
    "state",
    "failure_kind",
    "failed_stage",
    "stages_run",
    "not_run",
    "attempt",
    "duration_seconds",
]


def summary_frame(run_result: RunResult) -> pd.DataFrame:
    rows: list[dict[str, Any]] = []
    for lane in run_result.lanes:
        rows.append(
            {
                "lane_id": lane.lane.lane_id,
                "image": lane.lane.image or "",
                "channel": lane.lane.channel or "",
                "state": lane.state.value,
                "failure_kind": lane.failure_kind.value if lane.failure_kind else "",
                "failed_stage": lane.failed_stage or "",
                "stages_run": len(lane.results),
                "not_run": ",".join(lane.not_run),
                "attempt": lane.attempt,
                "duration_seconds": round(lane.duration_seconds, 1),
            }
        )
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def format_summary(run_result: RunResult) -> str:
    frame = summary_frame(run_result)
    status = "SUCCEEDED" if run_result.succeeded else "FAILED"
    passed = len(run_result.lanes) - len(run_result.failed_lanes())
    header = f"Run {run_result.run_id}: {status} ({passed}/{len(run_result.lanes)} lanes passed)"
    if frame.empty:
        return header
    table = frame[["lane_id", "image", "channel", "state", "failed_stage", "duration_seconds"]]
    return header + "\n" + table.to_string(index=False)


def render_lane_log(lane: LaneResult) -> str:
    parts: list[str] = [f"# lane {lane.lane.lane_id} ({lane.state.value}, attempt {lane.attempt})\n"]
    if lane.error:
        parts.append(f"## error\n{lane.error}\n")
    if lane.provisioning_output:
        parts.append("## provision\n")
        parts.append(lane.provisioning_output)
        if not lane.provisioning_output.endswith("\n"):
            parts.append("\n")
    for result in lane.results:
        parts.append(
            f"## {result.stage} ({result.status.value}, exit={result.exit_code}, "
            f"{result.duration_seconds:.1f}s)\n"
        )
        parts.append(result.output)
        if result.output and not result.output.endswith("\n"):
            parts.append("\n")
    for name in lane.not_run:
        parts.append(f"## {name} (not run)\n")
    return "".join(parts)


def write_lane_logs(run_result: RunResult, log_dir: str) -> dict[str, str]:
    paths: dict[str, str] = {}
    run_dir = os.path.join(log_dir, safe_filename(run_result.run_id))
    used: set[str] = set()
    for lane in run_result.lanes:
        # Distinct ids can sanitize to the same name ("a b", "a_b"); never overwrite.
        stem = safe_filename(lane.lane.lane_id)
        name, suffix = stem, 2
        while name in used:
            name = f"{stem}-{suffix}"
            suffix += 1
        used.add(name)
        path = os.path.join(run_dir, f"{name}.log")
        write_lane_log(path, render_lane_log(lane))
        paths[lane.lane.lane_id] = path
    return paths


def write_run_report(
    run_result: RunResult,
    report_dir: str,
    *,
    pipeline_name: str | None = None,
    effective_config: Mapping[str, Any] | None = None,
) -> dict[str, str]:
    os.makedirs(report_dir, exist_ok=True)
    stem = safe_filename(run_result.run_id)
    csv_path = os.path.join(report_dir, f"{stem}_summary.csv")
    json_path = os.path.join(report_dir, f"{stem}_run.json")

    summary_frame(run_result).to_csv(csv_path, index=False, encoding="utf-8")

    payload = run_result.to_dict()
    if pipeline_name:
        payload["pipeline"] = pipeline_name
    if effective_config:
        payload["effective_config"] = dict(effective_config)
    with open(json_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False, default=str)
        handle.write("\n")

    return {"summary_csv": csv_path, "run_json": json_path}
