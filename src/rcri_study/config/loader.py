"""
Configuration loading and merging logic.

Supports:
1. Loading from YAML files (with ``_base`` inheritance)
2. CLI argument overrides (dot-notation: e.g., recalibration.mode=INTERCEPT_ONLY)
3. Validation and resolution into a StudyConfig
"""

import copy
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from rcri_study.config.defaults import (
    DEFAULT_DATABASE_CONFIG,
    DEFAULT_DCA_CONFIG,
    DEFAULT_EVALUATION_CONFIG,
    DEFAULT_EXECUTION_CONFIG,
    DEFAULT_PACKAGING_CONFIG,
    DEFAULT_POPULATION_CONFIG,
    DEFAULT_RECALIBRATION_CONFIG,
    DEFAULT_STUDY_CONFIG,
)
from rcri_study.config.schema import StudyConfig
from rcri_study.errors import ConfigurationError

# Keys holding filesystem paths, resolved against the config file directory
PATH_LIKE_KEYS = {"settings_dir", "output_folder", "database"}


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overlay* into *base* (overlay wins on leaf conflicts).

    Returns a new dict; neither input is mutated.
    """
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_yaml(file_path: str | Path) -> dict[str, Any]:
    """Load configuration from YAML file.

    Supports a ``_base`` key: if present, the referenced YAML file is loaded
    first and the current file's values are deep-merged on top.  The ``_base``
    path is resolved relative to the directory containing *file_path*.
    Bases can be chained (a base may itself declare ``_base``).

    Raises:
        ConfigurationError: If the file is missing or is not a YAML mapping
    """
    file_path = Path(file_path).resolve()
    if not file_path.exists():
        raise ConfigurationError(f"Config file not found: {file_path}")

    with open(file_path) as f:
        try:
            config_dict = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {file_path}: {e}") from e

    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Config file {file_path} must contain a mapping")

    base_ref = config_dict.pop("_base", None)
    if base_ref is not None:
        base_path = (file_path.parent / base_ref).resolve()
        base_dict = load_yaml(base_path)
        config_dict = _deep_merge(base_dict, config_dict)

    return config_dict


def resolve_paths_relative_to_config(
    config_dict: dict[str, Any], config_file: Path
) -> dict[str, Any]:
    """
    Resolve relative paths in config dict relative to config file directory.

    Only keys in PATH_LIKE_KEYS are touched, at the top level and one level
    down (e.g. database.database).
    """
    config_dir = Path(config_file).resolve().parent

    def resolve_value(value: Any) -> Any:
        if isinstance(value, str | Path):
            path = Path(value)
            if not path.is_absolute() and str(value) != ":memory:":
                return str(config_dir / path)
        return value

    resolved_dict = copy.deepcopy(config_dict)
    for key, val in resolved_dict.items():
        if key in PATH_LIKE_KEYS:
            resolved_dict[key] = resolve_value(val)
        elif isinstance(val, dict):
            for nested_key, nested_val in val.items():
                if nested_key in PATH_LIKE_KEYS:
                    val[nested_key] = resolve_value(nested_val)

    return resolved_dict


def apply_overrides(config_dict: dict[str, Any], overrides: list[str]) -> dict[str, Any]:
    """
    Apply CLI overrides to config dictionary.

    Supports dot-notation for nested keys:
        dca.xby=0.01 -> config_dict['dca']['xby'] = 0.01
        recalibration.mode=INTERCEPT_ONLY -> config_dict['recalibration']['mode'] = ...

    Raises:
        ConfigurationError: If an override is not of the form key=value
    """
    # Keys that should always be strings (not parsed as int/float)
    STRING_KEYS = {
        "cdm_database_name",
        "cdm_database_schema",
        "cohort_database_schema",
        "cohort_table",
        "model",
    }

    for override in overrides:
        if "=" not in override:
            raise ConfigurationError(
                f"Invalid override format: {override}. Expected 'key=value'"
            )

        key_path, value_str = override.split("=", 1)
        keys = key_path.strip().split(".")

        target = config_dict
        for key in keys[:-1]:
            if not isinstance(target.get(key), dict):
                target[key] = {}
            target = target[key]

        final_key = keys[-1]
        target[final_key] = _parse_value(value_str.strip(), force_string=final_key in STRING_KEYS)

    return config_dict


def _parse_value(value_str: str, force_string: bool = False) -> Any:
    """
    Parse string value to appropriate Python type.

    Order: bool, None, comma-separated list, int, float, string.
    """
    if force_string:
        return value_str

    if value_str.lower() in ("true", "yes"):
        return True
    if value_str.lower() in ("false", "no"):
        return False

    if value_str.lower() in ("none", "null"):
        return None

    if "," in value_str:
        return [_parse_scalar(v.strip()) for v in value_str.split(",")]

    return _parse_scalar(value_str)


def _parse_scalar(value_str: str) -> Any:
    try:
        return int(value_str)
    except ValueError:
        pass
    try:
        return float(value_str)
    except ValueError:
        pass
    return value_str


def _default_config_dict() -> dict[str, Any]:
    config_dict = copy.deepcopy(DEFAULT_STUDY_CONFIG)
    config_dict.update(
        {
            "database": DEFAULT_DATABASE_CONFIG.copy(),
            "population": DEFAULT_POPULATION_CONFIG.copy(),
            "recalibration": DEFAULT_RECALIBRATION_CONFIG.copy(),
            "dca": DEFAULT_DCA_CONFIG.copy(),
            "evaluation": DEFAULT_EVALUATION_CONFIG.copy(),
            "packaging": DEFAULT_PACKAGING_CONFIG.copy(),
            "execution": DEFAULT_EXECUTION_CONFIG.copy(),
        }
    )
    return config_dict


def load_study_config(
    config_file: str | Path | None = None,
    overrides: list[str] | None = None,
    cli_args: dict[str, Any] | None = None,
) -> StudyConfig:
    """
    Load study configuration from defaults, file, CLI arguments and overrides.

    Precedence (lowest to highest): defaults, YAML file, cli_args
    (dot-notation keys, None values ignored), overrides.

    Args:
        config_file: Path to YAML config file (optional)
        overrides: List of CLI overrides in "key=value" format (optional)
        cli_args: Mapping of dotted keys to values from CLI flags (optional)

    Returns:
        Validated StudyConfig instance

    Raises:
        ConfigurationError: If the file cannot be read or validation fails
    """
    config_dict = _default_config_dict()

    if config_file is not None:
        config_file_path = Path(config_file)
        file_config = load_yaml(config_file_path)
        file_config = resolve_paths_relative_to_config(file_config, config_file_path)
        config_dict = _deep_merge(config_dict, file_config)

    if cli_args:
        for dotted_key, value in cli_args.items():
            if value is None:
                continue
            keys = dotted_key.split(".")
            target = config_dict
            for key in keys[:-1]:
                target = target.setdefault(key, {})
            target[keys[-1]] = value

    if overrides:
        config_dict = apply_overrides(config_dict, list(overrides))

    try:
        return StudyConfig(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid study configuration:\n{e}") from e


def save_config(config: StudyConfig, output_path: str | Path):
    """Save resolved configuration to YAML file."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.model_dump(mode="json")

    with open(output_path, "w") as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)


def log_config_summary(config: StudyConfig, logger: logging.Logger):
    """Log a human-readable configuration summary."""
    lines = ["Configuration Summary"]

    def format_dict(d, indent=0):
        result = []
        for key, value in d.items():
            if isinstance(value, dict):
                result.append(f"{'  ' * indent}{key}:")
                result.extend(format_dict(value, indent + 1))
            else:
                result.append(f"{'  ' * indent}{key}: {value}")
        return result

    lines.extend(format_dict(config.model_dump(mode="json")))
    for line in lines:
        logger.info(line)
