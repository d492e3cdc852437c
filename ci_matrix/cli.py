from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from lanekit.errors import ConfigurationError

EXIT_OK = 0
EXIT_LANES_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ci-matrix", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_config(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default=None, help="Pipeline YAML (default: config/config.yaml)")

    run = sub.add_parser("run", help="Run every selected lane of the build matrix")
    _add_config(run)
    run.add_argument("--lane", action="append", default=[], help="Run only this lane id (repeatable)")
    run.add_argument(
        "--image", action="append", default=[], help="Run only lanes targeting this image (repeatable)"
    )
    run.add_argument("--max-parallel", type=int, default=None, help="Override run.max_parallel")
    run.add_argument("--dry-run", action="store_true", help="Print the expanded plan and exit")

    list_lanes = sub.add_parser("list-lanes", help="List the lanes produced by the matrix")
    _add_config(list_lanes)

    list_stages = sub.add_parser("list-stages", help="List the stages every lane runs")
    _add_config(list_stages)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    from .app.run import describe_plan, load_pipeline_config, plan_lanes, run_pipeline

    try:
        loaded = load_pipeline_config(args.config)
        config = loaded.config
        lanes = plan_lanes(
            config,
            lane_ids=getattr(args, "lane", ()),
            images=getattr(args, "image", ()),
        )
    except (ConfigurationError, ValueError, TypeError, FileNotFoundError) as exc:
        print(f"ci-matrix: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    for warning in loaded.warnings:
        print(f"ci-matrix: warning: {warning}", file=sys.stderr)

    if args.command == "list-lanes":
        for lane in lanes:
            print(f"{lane.lane_id}\t{lane.image or '-'}\t{lane.channel or '-'}")
        return EXIT_OK

    if args.command == "list-stages":
        for index, stage in enumerate(config.stages, start=1):
            print(f"{index}. {stage.name}")
            for command in stage.commands:
                print(f"     $ {command}")
        return EXIT_OK

    if args.command == "run":
        if args.max_parallel is not None and args.max_parallel < 1:
            print("ci-matrix: --max-parallel must be >= 1", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        if args.dry_run:
            print(describe_plan(config, lanes))
            return EXIT_OK

        run_result, _artifacts = run_pipeline(
            config,
            lane_ids=args.lane,
            images=args.image,
            max_parallel=args.max_parallel,
            warnings=loaded.warnings,
        )
        return EXIT_OK if run_result.succeeded else EXIT_LANES_FAILED

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
