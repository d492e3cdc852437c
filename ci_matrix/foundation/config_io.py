from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

DEFAULT_ENV_VAR = "CI_MATRIX_CONFIG"


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last one."""


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False):
    seen: set[Any] = set()
    for key_node, _value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in seen:
            raise yaml.constructor.ConstructorError(
                "while constructing a mapping",
                node.start_mark,
                f"found duplicate key {key!r}",
                key_node.start_mark,
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    start_path = Path(start or os.getcwd()).resolve()
    if start_path.is_file():
        start_path = start_path.parent

    markers = ("pyproject.toml", ".git")
    for candidate in (start_path, *start_path.parents):
        if (candidate / "pyproject.toml").is_file():
            return str(candidate)
        if (candidate / ".git").exists():
            return str(candidate)

    raise FileNotFoundError(
        "Cannot locate repo root: searched from "
        f"{start_path} for {', '.join(markers)}"
    )


def load_yaml_mapping(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.load(handle, Loader=_UniqueKeyLoader)
    except FileNotFoundError:
        raise
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file must contain a YAML mapping: {path}")
    return dict(payload)


def deep_merge(base: Any, overlay: Any, *, path: str) -> Any:
    if overlay is None:
        return None

    if base is None:
        return overlay

    if isinstance(base, Mapping):
        if not isinstance(overlay, Mapping):
            raise ValueError(
                f"Invalid config overlay merge at {path}: base is mapping but overlay is {type(overlay).__name__}"
            )
        merged: dict[str, Any] = dict(base)
        for key, overlay_value in overlay.items():
            next_path = f"{path}.{key}" if path else str(key)
            if key in base:
                merged[key] = deep_merge(base[key], overlay_value, path=next_path)
            else:
                merged[key] = overlay_value
        return merged

    # Lists (stages, commands) are replaced wholesale, never spliced.
    if isinstance(base, (list, tuple)):
        if not isinstance(overlay, (list, tuple)):
            raise ValueError(
                f"Invalid config overlay merge at {path}: base is list but overlay is {type(overlay).__name__}"
            )
        return list(overlay)

    if isinstance(overlay, (Mapping, list, tuple)):
        raise ValueError(
            f"Invalid config overlay merge at {path}: base is {type(base).__name__} but overlay is {type(overlay).__name__}"
        )

    return overlay


def load_config(
    *,
    config_path: str | os.PathLike[str] | None = None,
    env_var: str | None = DEFAULT_ENV_VAR,
    config_name: str = "config",
    config_dir: str = "config",
    start_dir: str | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load the pipeline configuration mapping plus metadata about where it came from.

    Resolution order:
      1) `config_path` (explicit), else the file named by `env_var`: one file, no overlay
      2) `<repo root>/<config_dir>/<config_name>.yaml`, deep-merged with
         `<config_name>.local.yaml` from the same directory when present
    """

    explicit_path = None
    if config_path is not None:
        explicit_path = str(config_path).strip() or None
    elif env_var:
        explicit_path = os.environ.get(env_var, "").strip() or None

    if explicit_path:
        expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(explicit_path)))
        cfg = load_yaml_mapping(expanded)
        meta = {
            "mode": "env" if config_path is None else "explicit",
            "paths": [expanded],
            "env_var": env_var,
            "repo_root": None,
        }
        return cfg, meta

    if os.path.isabs(config_dir):
        config_directory = config_dir
        repo_root = None
    else:
        repo_root = find_repo_root(start_dir)
        config_directory = os.path.join(repo_root, config_dir)
    base_config_path = os.path.join(config_directory, config_name + ".yaml")
    local_overlay_path = os.path.join(config_directory, config_name + ".local.yaml")

    if not os.path.exists(base_config_path):
        raise FileNotFoundError(f"Missing base config file: {base_config_path}")

    cfg = load_yaml_mapping(base_config_path)
    loaded_paths = [os.path.abspath(base_config_path)]
    mode = "base"

    if os.path.exists(local_overlay_path):
        overlay = load_yaml_mapping(local_overlay_path)
        cfg = deep_merge(cfg, overlay, path="")
        loaded_paths.append(os.path.abspath(local_overlay_path))
        mode = "base+local"

    meta = {"mode": mode, "paths": loaded_paths, "env_var": env_var, "repo_root": repo_root}
    return cfg, meta
