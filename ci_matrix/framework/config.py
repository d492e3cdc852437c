from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from lanekit.config_namespace import ConfigNamespace
from lanekit.errors import ConfigurationError, EmptyMatrixError
from lanekit.matrix import (
    DEFAULT_CHANNEL_VARIABLE,
    DEFAULT_IMAGE_VARIABLE,
    Axis,
    AxisEntry,
    Lane,
    expand,
)
from lanekit.stage_types import Stage


@dataclass(frozen=True)
class MatrixConfig:
    axes: tuple[Axis, ...]
    image_variable: str = DEFAULT_IMAGE_VARIABLE
    channel_variable: str = DEFAULT_CHANNEL_VARIABLE


@dataclass(frozen=True)
class ProvisionConfig:
    commands: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return bool(self.commands or self.env)


@dataclass(frozen=True)
class RunSettings:
    max_parallel: int | None = None
    lane_timeout_seconds: float | None = None
    run_timeout_seconds: float | None = None
    infrastructure_retries: int = 0
    working_directory: str | None = None
    log_path: str = "logs"
    report_path: str | None = None
    shell: str | None = None


@dataclass(frozen=True)
class PipelineConfig:
    name: str
    matrix: MatrixConfig
    stages: tuple[Stage, ...]
    provision: ProvisionConfig = field(default_factory=ProvisionConfig)
    run: RunSettings = field(default_factory=RunSettings)
    effective: Mapping[str, Any] = field(default_factory=dict)

    def lanes(self) -> tuple[Lane, ...]:
        return expand(
            self.matrix.axes,
            image_variable=self.matrix.image_variable,
            channel_variable=self.matrix.channel_variable,
        )

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any], *, base_dir: str | None = None
    ) -> tuple["PipelineConfig", list[str]]:
        """
        Parse and validate configuration, returning (PipelineConfig, warnings).

        Unknown keys are warnings unless `strict: true`, in which case they raise.

        Raises:
            ConfigurationError: the matrix or stage list cannot produce a run.
            ValueError / TypeError: a key is missing or has the wrong type.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        root = ConfigNamespace(dict(cfg), path="")
        strict = root.get_bool("strict", default=False)
        warnings: list[str] = []
        base = os.path.abspath(base_dir or os.getcwd())

        pipeline_ns = root.namespace("pipeline", default=None)
        name = pipeline_ns.get_str("name", default="pipeline")

        matrix = _parse_matrix(root.namespace("matrix"))
        stages, stage_unknown = _parse_stages(root)
        provision = _parse_provision(root.namespace("provision", default=None))
        run = _parse_run(root.namespace("run", default=None), base=base)

        unknown = root.unknown_key_paths() + stage_unknown
        if unknown:
            message = f"Unknown config keys: {', '.join(sorted(unknown))}"
            if strict:
                raise ValueError(message)
            warnings.append(message)

        return (
            PipelineConfig(
                name=str(name),
                matrix=matrix,
                stages=stages,
                provision=provision,
                run=run,
                effective=MappingProxyType(root.effective_values()),
            ),
            warnings,
        )


def _parse_axis_entries(axis_name: str, raw: Any, *, path: str) -> tuple[AxisEntry, ...]:
    # Mapping form: {label: {var: value}}; list form: [{label: ..., variables: {...}}].
    if isinstance(raw, Mapping):
        items = [(label, variables) for label, variables in raw.items()]
    elif isinstance(raw, (list, tuple)):
        items = []
        for idx, item in enumerate(raw):
            if not isinstance(item, Mapping):
                raise TypeError(f"{path}[{idx}] must be a mapping (type={type(item).__name__})")
            item_ns = ConfigNamespace(dict(item), path=f"{path}[{idx}]")
            label = item_ns.get_str("label")
            variables = item_ns.get_str_mapping("variables", default={})
            item_ns.assert_consumed()
            items.append((label, variables))
    elif raw is None:
        items = []
    else:
        raise TypeError(f"{path} must be a mapping or a list (type={type(raw).__name__})")

    entries: list[AxisEntry] = []
    for label, variables in items:
        if not isinstance(label, str) or not label.strip():
            raise TypeError(f"{path} entry labels must be non-empty strings")
        entry_ns = ConfigNamespace({"variables": variables}, path=f"{path}.{label}")
        entries.append(AxisEntry(label=label, variables=entry_ns.get_str_mapping("variables")))
    if not entries:
        raise EmptyMatrixError(f"Axis {axis_name} at {path} has no entries")
    return tuple(entries)


def _parse_matrix(ns: ConfigNamespace) -> MatrixConfig:
    image_variable = ns.get_str("image_variable", default=DEFAULT_IMAGE_VARIABLE)
    channel_variable = ns.get_str("channel_variable", default=DEFAULT_CHANNEL_VARIABLE)

    raw_axes = ns.get_raw("axes", default=None)
    if raw_axes is None or (isinstance(raw_axes, Mapping) and not raw_axes):
        raise EmptyMatrixError("matrix.axes declares no axes; nothing to run")
    if not isinstance(raw_axes, Mapping):
        raise TypeError(f"matrix.axes must be a mapping (type={type(raw_axes).__name__})")

    axes = tuple(
        Axis(
            name=str(axis_name),
            entries=_parse_axis_entries(str(axis_name), raw, path=f"matrix.axes.{axis_name}"),
        )
        for axis_name, raw in raw_axes.items()
    )
    return MatrixConfig(
        axes=axes,
        image_variable=str(image_variable),
        channel_variable=str(channel_variable),
    )


def _parse_stages(root: ConfigNamespace) -> tuple[tuple[Stage, ...], list[str]]:
    raw_stages = root.get_list_mapping("stages", allow_empty=True)
    if not raw_stages:
        raise ConfigurationError("stages must declare at least one stage")

    stages: list[Stage] = []
    unknown: list[str] = []
    seen: set[str] = set()
    for idx, raw in enumerate(raw_stages):
        ns = ConfigNamespace(raw, path=f"stages[{idx}]")
        name = str(ns.get_str("name"))
        if name in seen:
            raise ConfigurationError(f"Duplicate stage name: {name}")
        seen.add(name)

        # `script` mirrors the hosted-CI spelling: one multi-line string, one command per line.
        if "script" in ns.keys():
            if "commands" in ns.keys():
                raise ValueError(f"stages[{idx}] sets both commands and script")
            script = ns.get_str("script")
            commands = [line.strip() for line in str(script).splitlines() if line.strip()]
        else:
            commands = ns.get_list_str("commands")

        stages.append(
            Stage(
                name=name,
                commands=tuple(commands),
                env=ns.get_str_mapping("env", default={}),
                continue_on_failure=ns.get_bool("continue_on_failure", default=False),
                timeout_seconds=ns.get_optional_float(
                    "timeout_seconds", default=None, min_value=0, exclusive_min=True
                ),
            )
        )
        unknown.extend(ns.unknown_key_paths())
    return tuple(stages), unknown


def _parse_provision(ns: ConfigNamespace) -> ProvisionConfig:
    commands = ns.get_list_str("commands", default=[], allow_empty=True)
    env = ns.get_str_mapping("env", default={})
    return ProvisionConfig(commands=tuple(commands), env=MappingProxyType(dict(env)))


def _resolve_path(value: str | None, *, base: str) -> str | None:
    if value is None:
        return None
    expanded = os.path.expandvars(os.path.expanduser(value))
    if os.path.isabs(expanded):
        return expanded
    return os.path.normpath(os.path.join(base, expanded))


def _parse_run(ns: ConfigNamespace, *, base: str) -> RunSettings:
    return RunSettings(
        max_parallel=ns.get_optional_int("max_parallel", default=None, min_value=1),
        lane_timeout_seconds=ns.get_optional_float(
            "lane_timeout_seconds", default=None, min_value=0, exclusive_min=True
        ),
        run_timeout_seconds=ns.get_optional_float(
            "run_timeout_seconds", default=None, min_value=0, exclusive_min=True
        ),
        infrastructure_retries=ns.get_int("infrastructure_retries", default=0, min_value=0),
        working_directory=_resolve_path(ns.get_str("working_directory", default=None), base=base),
        log_path=str(_resolve_path(ns.get_str("log_path", default="logs"), base=base)),
        report_path=_resolve_path(ns.get_str("report_path", default=None), base=base),
        shell=ns.get_str("shell", default=None),
    )
