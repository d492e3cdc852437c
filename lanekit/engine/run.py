"""Fan a lane set out over a bounded worker pool.

Lanes share nothing but the immutable lane/stage definitions. Each worker thread owns
one lane at a time and runs it through ``run_lane``; lane order in the returned
``RunResult`` follows declaration order regardless of completion order.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Mapping, Sequence

from lanekit.engine.cancellation import CancellationToken
from lanekit.engine.commands import CommandRunner
from lanekit.engine.executor import Provisioner, StageRecorder, run_lane, utc_now_iso8601
from lanekit.errors import ConfigurationError, EmptyMatrixError, FailureKind
from lanekit.matrix import Lane
from lanekit.stage_types import LaneResult, LaneState, RunResult, Stage

logger = logging.getLogger(__name__)


def _check_inputs(lanes: Sequence[Lane], stages: Sequence[Stage]) -> None:
    if not lanes:
        raise EmptyMatrixError("No lanes to run")
    lane_ids = [lane.lane_id for lane in lanes]
    if len(set(lane_ids)) != len(lane_ids):
        raise ConfigurationError(f"Lane ids must be unique: {', '.join(lane_ids)}")
    if not stages:
        raise ConfigurationError("No stages declared")
    names = [stage.name for stage in stages]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Stage names must be unique: {', '.join(names)}")


def _crashed_lane(
    lane: Lane,
    stages: Sequence[Stage],
    exc: Exception,
    *,
    token: CancellationToken,
    attempt: int,
) -> LaneResult:
    return LaneResult(
        lane=lane,
        state=LaneState.FAILED,
        not_run=tuple(stage.name for stage in stages),
        failure_kind=FailureKind.INFRASTRUCTURE,
        attempt=attempt,
        cancelled=token.cancelled_externally(),
        error=f"{type(exc).__name__}: {exc}",
    )


def run_lane_with_retries(
    lane: Lane,
    stages: Sequence[Stage],
    *,
    runner: CommandRunner,
    run_token: CancellationToken,
    lane_token: CancellationToken | None = None,
    provisioner: Provisioner | None = None,
    base_env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    recorder: StageRecorder | None = None,
    lane_timeout_seconds: float | None = None,
    infrastructure_retries: int = 0,
) -> LaneResult:
    """Run one lane, re-running it after infrastructure failures.

    ``lane_token`` stops only this lane; every attempt gets a fresh child of the run
    token linked to it. Unexpected exceptions fail the lane, never the run.
    """

    if infrastructure_retries < 0:
        raise ValueError("infrastructure_retries must be >= 0")

    attempt = 1
    while True:
        # The lane timeout clock starts when the lane (or its retry) is picked up.
        attempt_token = run_token.child(timeout_seconds=lane_timeout_seconds, linked=lane_token)
        try:
            result = run_lane(
                lane,
                stages,
                runner=runner,
                provisioner=provisioner,
                base_env=base_env,
                cwd=cwd,
                token=attempt_token,
                recorder=recorder,
                attempt=attempt,
            )
        except Exception as exc:
            logger.exception("Lane %s crashed on attempt %d", lane.lane_id, attempt)
            result = _crashed_lane(lane, stages, exc, token=attempt_token, attempt=attempt)
        if result.succeeded or not result.retryable or run_token.is_cancelled():
            return result
        if attempt > infrastructure_retries:
            return result
        logger.warning(
            "Lane %s hit an infrastructure failure; retrying (attempt %d of %d)",
            lane.lane_id,
            attempt + 1,
            infrastructure_retries + 1,
        )
        attempt += 1


def run_matrix(
    lanes: Sequence[Lane],
    stages: Sequence[Stage],
    *,
    runner: CommandRunner,
    run_id: str,
    provisioner: Provisioner | None = None,
    max_parallel: int | None = None,
    lane_timeout_seconds: float | None = None,
    run_timeout_seconds: float | None = None,
    infrastructure_retries: int = 0,
    base_env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    token: CancellationToken | None = None,
    recorder: StageRecorder | None = None,
    on_lane_complete: Callable[[LaneResult], None] | None = None,
    lane_tokens: Mapping[str, CancellationToken] | None = None,
) -> RunResult:
    """Run every lane to completion or to its first failure and collect one result per lane.

    ``token`` stops the whole run. ``lane_tokens`` maps lane ids to tokens the caller can
    cancel to stop that lane alone; lanes without an entry get a private one.
    """
    lanes = tuple(lanes)
    stages = tuple(stages)
    _check_inputs(lanes, stages)
    lane_tokens = dict(lane_tokens or {})
    unknown = sorted(set(lane_tokens) - {lane.lane_id for lane in lanes})
    if unknown:
        raise ValueError(f"lane_tokens name unknown lane id(s): {', '.join(unknown)}")
    for lane in lanes:
        lane_tokens.setdefault(lane.lane_id, CancellationToken())
    if max_parallel is not None and max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")

    run_token = token or CancellationToken()
    if run_timeout_seconds is not None:
        run_token = run_token.child(timeout_seconds=run_timeout_seconds)

    workers = min(max_parallel or len(lanes), len(lanes))
    started_at = utc_now_iso8601()
    logger.info(
        "Run %s: %d lane(s) x %d stage(s), max_parallel=%d", run_id, len(lanes), len(stages), workers
    )

    results: dict[str, LaneResult] = {}
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lane") as pool:
        futures: dict[Future[LaneResult], Lane] = {
            pool.submit(
                run_lane_with_retries,
                lane,
                stages,
                runner=runner,
                run_token=run_token,
                lane_token=lane_tokens[lane.lane_id],
                provisioner=provisioner,
                base_env=base_env,
                cwd=cwd,
                recorder=recorder,
                lane_timeout_seconds=lane_timeout_seconds,
                infrastructure_retries=infrastructure_retries,
            ): lane
            for lane in lanes
        }

        pending = set(futures)
        while pending:
            try:
                for future in as_completed(pending):
                    pending.discard(future)
                    lane_result = future.result()
                    results[futures[future].lane_id] = lane_result
                    if on_lane_complete is not None:
                        on_lane_complete(lane_result)
            except KeyboardInterrupt:
                logger.warning("Run %s interrupted; cancelling %d lane(s)", run_id, len(pending))
                run_token.cancel()

    run_result = RunResult(
        run_id=run_id,
        lanes=tuple(results[lane.lane_id] for lane in lanes),
        started_at=started_at,
        finished_at=utc_now_iso8601(),
        cancelled=run_token.cancelled_externally(),
    )
    failed = run_result.failed_lanes()
    if failed:
        logger.error(
            "Run %s failed: %d of %d lane(s) failed (%s)",
            run_id,
            len(failed),
            len(lanes),
            ", ".join(lane.lane.lane_id for lane in failed),
        )
    else:
        logger.info("Run %s succeeded: %d lane(s)", run_id, len(lanes))
    return run_result
