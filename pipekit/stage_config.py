"""Turns pipeline definitions (YAML or JSON) into validated stages.

A definition is either a list of stage mappings or a mapping with ``stages``
and optional ``name``, ``workers``, ``batch_size`` and ``schema`` (the input
field names, used to check sort keys before anything runs)::

    name: adults-by-name
    schema: [name, age]
    stages:
      - kind: filter
        predicate: "age >= 18"
      - kind: sort
        keys: [{field: name}, {field: age, direction: desc, nulls: first}]
"""

from collections.abc import Mapping, Sequence
from pathlib import Path

import yaml

from pipekit.errors import ConfigError
from pipekit.pipeline import Pipeline
from pipekit.sorting import DEFAULT_MEMORY_LIMIT, SortStage
from pipekit.stages import MAP_OPERATIONS, AggregateStage, DedupeStage, FilterStage, FlattenStage, MapStage, Stage


_COMMON_OPTIONS = {"kind", "name", "fatal"}
_STAGE_OPTIONS: dict[str, set[str]] = {
    "sort": {"keys", "memory_limit"},
    "filter": {"predicate", "exclude"},
    "map": set(MAP_OPERATIONS),
    "flatten": {"field", "into", "keep_empty"},
    "dedupe": {"fields", "keep"},
    "aggregate": {"group_by", "count_field", "sum"},
}
_PIPELINE_OPTIONS = {"name", "stages", "workers", "batch_size", "schema"}


def _flag(config: Mapping[str, object], option: str) -> bool:
    value = config.get(option, False)
    if not isinstance(value, bool):
        raise ConfigError(f"{option} must be true or false")
    return value


def build_stage(
    config: Mapping[str, object],
    *,
    sort_memory_limit: int = DEFAULT_MEMORY_LIMIT,
    schema_hint: Sequence[str] | None = None,
) -> Stage:
    if not isinstance(config, Mapping):
        raise ConfigError(f"stage definition must be a mapping, got {type(config).__name__}")

    kind = config.get("kind")
    if kind not in _STAGE_OPTIONS:
        raise ConfigError(f"unknown stage kind {kind!r}, expected one of {', '.join(_STAGE_OPTIONS)}")
    unknown = set(config) - _COMMON_OPTIONS - _STAGE_OPTIONS[kind]
    if unknown:
        raise ConfigError(f"unknown options for {kind} stage: {', '.join(sorted(unknown))}")

    name = config.get("name")
    if name is not None and (not isinstance(name, str) or not name):
        raise ConfigError("stage name must be a non-empty string")
    fatal = _flag(config, "fatal")

    if kind == "sort":
        return SortStage(
            config.get("keys") or [],
            memory_limit=config.get("memory_limit", sort_memory_limit),
            schema_hint=schema_hint,
            name=name,
            fatal=fatal,
        )
    if kind == "filter":
        if "predicate" not in config:
            raise ConfigError("filter stage needs a predicate")
        return FilterStage(config["predicate"], exclude=_flag(config, "exclude"), name=name, fatal=fatal)
    if kind == "map":
        # Operations apply in the order they are written.
        ops = [(op, argument) for op, argument in config.items() if op in MAP_OPERATIONS]
        return MapStage(ops=ops, name=name, fatal=fatal)
    if kind == "flatten":
        return FlattenStage(
            config.get("field"),
            into=config.get("into"),
            keep_empty=_flag(config, "keep_empty"),
            name=name,
            fatal=fatal,
        )
    if kind == "dedupe":
        return DedupeStage(config.get("fields"), keep=config.get("keep", "first"), name=name, fatal=fatal)
    return AggregateStage(
        config.get("group_by"),
        count_field=config.get("count_field", "count"),
        sum_fields=config.get("sum") or (),
        name=name,
        fatal=fatal,
    )


def build_pipeline(
    config: Sequence[Mapping[str, object]] | Mapping[str, object],
    *,
    name: str = "pipeline",
    sort_memory_limit: int = DEFAULT_MEMORY_LIMIT,
    workers: int | None = None,
    batch_size: int | None = None,
) -> Pipeline:
    schema_hint = None
    if isinstance(config, Mapping):
        unknown = set(config) - _PIPELINE_OPTIONS
        if unknown:
            raise ConfigError(f"unknown pipeline options: {', '.join(sorted(unknown))}")
        name = config.get("name", name)
        workers = config.get("workers", workers)
        batch_size = config.get("batch_size", batch_size)
        schema_hint = config.get("schema")
        if schema_hint is not None and (
            not isinstance(schema_hint, list) or not all(isinstance(field, str) for field in schema_hint)
        ):
            raise ConfigError("schema must be a list of field names")
        stage_configs = config.get("stages", [])
    else:
        stage_configs = config

    if not isinstance(stage_configs, list):
        raise ConfigError("stages must be a list")

    stages = []
    for index, stage_config in enumerate(stage_configs, start=1):
        try:
            stages.append(build_stage(stage_config, sort_memory_limit=sort_memory_limit, schema_hint=schema_hint))
        except ConfigError as exc:
            raise type(exc)(f"stage {index}: {exc}") from exc

    return Pipeline(stages, name=str(name), workers=workers or 1, batch_size=batch_size or 64)


def load_pipeline_file(path: str | Path, **options) -> Pipeline:
    path = Path(path).expanduser()
    try:
        with path.open("r", encoding="utf-8") as infile:
            config = yaml.safe_load(infile)
    except OSError as exc:
        raise ConfigError(f"cannot read pipeline file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid pipeline file {path}: {exc}") from exc

    if config is None:
        config = []
    options.setdefault("name", path.stem)
    return build_pipeline(config, **options)
