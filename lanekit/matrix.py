"""Matrix expansion: declared axes in, execution lanes out.

A single axis yields one lane per entry, labelled by the entry. Several axes yield the
Cartesian product of their entries, first axis varying slowest, with lane ids joined
by ``-`` (``windows`` x ``stable`` -> ``windows-stable``).
"""

from __future__ import annotations

import difflib
import itertools
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence

from lanekit.errors import (
    ConfigurationError,
    DuplicateLaneError,
    DuplicateVariableError,
    EmptyMatrixError,
)

DEFAULT_IMAGE_VARIABLE = "imageName"
DEFAULT_CHANNEL_VARIABLE = "rustup_toolchain"
LANE_ID_SEPARATOR = "-"


def _frozen_variables(raw: Mapping[str, str], *, owner: str) -> Mapping[str, str]:
    if not isinstance(raw, Mapping):
        raise TypeError(f"{owner} variables must be a mapping (type={type(raw).__name__})")
    out: dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise TypeError(f"{owner} variable names must be non-empty strings")
        if value is None or isinstance(value, (Mapping, list, tuple)):
            raise TypeError(f"{owner} variable {key} must be a scalar (type={type(value).__name__})")
        out[key.strip()] = str(value)
    return MappingProxyType(out)


@dataclass(frozen=True)
class AxisEntry:
    label: str
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.label, str) or not self.label.strip():
            raise TypeError("AxisEntry.label must be a non-empty string")
        object.__setattr__(self, "label", self.label.strip())
        object.__setattr__(
            self, "variables", _frozen_variables(self.variables, owner=f"Axis entry {self.label}")
        )


@dataclass(frozen=True)
class Axis:
    name: str
    entries: tuple[AxisEntry, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("Axis.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "entries", tuple(self.entries))
        for entry in self.entries:
            if not isinstance(entry, AxisEntry):
                raise TypeError(
                    f"Axis {self.name} entries must be AxisEntry (type={type(entry).__name__})"
                )

    @classmethod
    def from_mapping(cls, name: str, entries: Mapping[str, Mapping[str, str]]) -> "Axis":
        return cls(
            name=name,
            entries=tuple(AxisEntry(label=label, variables=vars_) for label, vars_ in entries.items()),
        )

    def labels(self) -> tuple[str, ...]:
        return tuple(entry.label for entry in self.entries)


@dataclass(frozen=True)
class Lane:
    lane_id: str
    variables: Mapping[str, str]
    image: str | None = None
    channel: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.lane_id, str) or not self.lane_id.strip():
            raise TypeError("Lane.lane_id must be a non-empty string")
        object.__setattr__(self, "lane_id", self.lane_id.strip())
        object.__setattr__(
            self, "variables", _frozen_variables(self.variables, owner=f"Lane {self.lane_id}")
        )


def _check_axis(axis: Axis) -> None:
    if not axis.entries:
        raise EmptyMatrixError(f"Axis {axis.name} has no entries")
    seen: set[str] = set()
    duplicates: set[str] = set()
    for label in axis.labels():
        if label in seen:
            duplicates.add(label)
        seen.add(label)
    if duplicates:
        raise DuplicateLaneError(
            f"Duplicate entry label(s) in axis {axis.name}: {', '.join(sorted(duplicates))}"
        )


def _check_variable_collisions(axes: Sequence[Axis]) -> None:
    owner: dict[str, str] = {}
    for axis in axes:
        names: set[str] = set()
        for entry in axis.entries:
            names.update(entry.variables.keys())
        for name in sorted(names):
            previous = owner.get(name)
            if previous is not None:
                raise DuplicateVariableError(
                    f"Variable {name} is bound by both axis {previous} and axis {axis.name}"
                )
            owner[name] = axis.name


def expand(
    axes: Iterable[Axis],
    *,
    image_variable: str = DEFAULT_IMAGE_VARIABLE,
    channel_variable: str = DEFAULT_CHANNEL_VARIABLE,
) -> tuple[Lane, ...]:
    axes = tuple(axes)
    if not axes:
        raise EmptyMatrixError("Matrix declares no axes; nothing to run")

    axis_names = [axis.name for axis in axes]
    if len(set(axis_names)) != len(axis_names):
        raise ConfigurationError(f"Duplicate axis name(s): {', '.join(axis_names)}")

    for axis in axes:
        _check_axis(axis)
    _check_variable_collisions(axes)

    lanes: list[Lane] = []
    seen: dict[str, tuple[str, ...]] = {}
    for combination in itertools.product(*(axis.entries for axis in axes)):
        labels = tuple(entry.label for entry in combination)
        lane_id = LANE_ID_SEPARATOR.join(labels)
        if lane_id in seen:
            raise DuplicateLaneError(
                f"Lane id {lane_id} produced by both {seen[lane_id]} and {labels}"
            )
        seen[lane_id] = labels

        variables: dict[str, str] = {}
        for entry in combination:
            variables.update(entry.variables)
        lanes.append(
            Lane(
                lane_id=lane_id,
                variables=variables,
                image=variables.get(image_variable),
                channel=variables.get(channel_variable),
            )
        )
    return tuple(lanes)


def select_lanes(
    lanes: Sequence[Lane],
    *,
    lane_ids: Iterable[str] = (),
    images: Iterable[str] = (),
) -> tuple[Lane, ...]:
    """Narrow an expanded lane set to the requested ids and/or worker images.

    Declaration order is kept. An empty filter keeps everything.
    """

    wanted_ids = [str(lane_id).strip() for lane_id in lane_ids if str(lane_id).strip()]
    wanted_images = {str(image).strip() for image in images if str(image).strip()}

    known = [lane.lane_id for lane in lanes]
    for lane_id in wanted_ids:
        if lane_id not in known:
            suggestions = difflib.get_close_matches(lane_id, known, n=3)
            hint = f" (did you mean: {', '.join(suggestions)})" if suggestions else ""
            raise ValueError(f"Unknown lane id: {lane_id}{hint}")

    selected = []
    for lane in lanes:
        if wanted_ids and lane.lane_id not in wanted_ids:
            continue
        if wanted_images and lane.image not in wanted_images:
            continue
        selected.append(lane)
    return tuple(selected)
