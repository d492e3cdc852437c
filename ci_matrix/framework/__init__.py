"""Project-specific framework utilities.

This package turns a loaded YAML mapping into a `PipelineConfig`, provisions lane
toolchains through configured commands, and writes run reports. It holds no matrix or
stage semantics of its own.

Common entrypoints:

- `ci_matrix.framework.config`: `PipelineConfig.from_dict`
- `ci_matrix.framework.provisioning`: `CommandProvisioner`
- `ci_matrix.framework.report`: summary table, lane logs and run JSON

For the reusable matrix/lane primitives, use `lanekit`.
"""
