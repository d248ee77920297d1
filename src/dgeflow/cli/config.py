"""
Configuration file support for the dgeflow CLI.

A run is described by one YAML or JSON file. Values are validated once and
frozen into a PipelineConfig that is passed explicitly to every stage.
Command-line flags override file values.

Example (YAML)::

    paths:
      counts: data/counts.out
      sample_sheet: data/samples.tsv
      annotation: data/annotation.tsv
      gene_sets: data/msigdb.tsv
      output_dir: results
    design:
      treatment_level: DHT
      reference_level: Veh
      cell_line: LNCaP
    normalization:
      method: cqn
    enrichment:
      bias_covariate: length
      universe_map:
        H: pathway
        C2:CP: pathway
        C3:TFT: regulation
      alpha:
        pathway: 0.05
        regulation: 0.01
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import yaml

from dgeflow.core.design import ExperimentDesign
from dgeflow.exceptions import ConfigError

__all__ = [
    'PathsConfig',
    'FilterConfig',
    'NormalizationConfig',
    'ModelConfig',
    'EnrichmentConfig',
    'PipelineConfig',
    'load_config',
    'config_from_dict',
    'config_to_dict',
    'apply_overrides',
    'validate_config',
]

DEFAULT_UNIVERSE_MAP = {
    "H": "pathway",
    "C2:CP": "pathway",
    "C5:GO:BP": "pathway",
    "C3:TFT": "regulation",
}


@dataclass(frozen=True)
class PathsConfig:
    """Input files and output directory."""
    counts: Optional[Path] = None
    sample_sheet: Optional[Path] = None
    annotation: Optional[Path] = None
    gene_sets: Optional[Path] = None
    output_dir: Path = Path("results")


@dataclass(frozen=True)
class FilterConfig:
    """Low-expression filter."""
    min_cpm: float = 1.5
    min_samples: Optional[int] = None


@dataclass(frozen=True)
class NormalizationConfig:
    """Normalization method and CQN settings."""
    method: str = "cqn"
    spline_df: int = 3
    tau: float = 0.5
    diagnostic_r2: float = 0.5


@dataclass(frozen=True)
class ModelConfig:
    """Dispersion, QL fit and differential test."""
    robust: bool = True
    lfc: float = float(np.log2(1.2))
    alpha: float = 0.05
    min_dispersion: float = 1e-4
    n_jobs: int = 1


@dataclass(frozen=True)
class EnrichmentConfig:
    """Gene-set enrichment families."""
    enabled: bool = True
    method: str = "wallenius"
    bias_covariate: str = "length"
    pwf_bin_size: int = 500
    subsets: Tuple[str, ...] = ("all", "up", "down")
    universe_map: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_UNIVERSE_MAP))
    alpha: Mapping[str, float] = field(default_factory=lambda: {"pathway": 0.05, "regulation": 0.05})
    n_jobs: int = 1

    def __post_init__(self):
        # Read-only views so the frozen config cannot be changed through them
        object.__setattr__(self, 'universe_map', MappingProxyType(dict(self.universe_map)))
        object.__setattr__(self, 'alpha', MappingProxyType(dict(self.alpha)))


@dataclass(frozen=True)
class PipelineConfig:
    """Complete configuration of a pipeline run."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    design: ExperimentDesign = field(default_factory=ExperimentDesign)
    filter: FilterConfig = field(default_factory=FilterConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)


_SECTIONS = {
    'paths': PathsConfig,
    'design': ExperimentDesign,
    'filter': FilterConfig,
    'normalization': NormalizationConfig,
    'model': ModelConfig,
    'enrichment': EnrichmentConfig,
}

_PATH_FIELDS = {'counts', 'sample_sheet', 'annotation', 'gene_sets', 'output_dir'}
_TUPLE_FIELDS = {'subsets', 'group_covariates'}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from a YAML or JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigError: If the format is unsupported or the content invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ConfigError(
                    f"Unsupported config format: {suffix}. Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError("Config file must contain a mapping at top level")
    return config


def _build_section(name: str, cls: type, values: Any) -> Any:
    if values is None:
        return cls()
    if not isinstance(values, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in config section '{name}': {unknown}")

    kwargs = {}
    for key, value in values.items():
        if key in _PATH_FIELDS and value is not None:
            value = Path(value)
        elif key in _TUPLE_FIELDS and value is not None:
            value = (value,) if isinstance(value, str) else tuple(value)
        elif key in ('universe_map', 'alpha') and cls is EnrichmentConfig:
            if not isinstance(value, Mapping):
                raise ConfigError(f"enrichment.{key} must be a mapping")
            value = {str(k): v for k, v in value.items()}
        kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Invalid config section '{name}': {e}") from e


def _section_values(section: Any) -> Dict[str, Any]:
    return {f.name: getattr(section, f.name) for f in fields(section)}


def validate_config(config: PipelineConfig) -> PipelineConfig:
    """
    Check value ranges and enumerations.

    Raises:
        ConfigError: Listing every problem found
    """
    errors = []
    if config.filter.min_cpm < 0:
        errors.append(f"filter.min_cpm must be >= 0, got {config.filter.min_cpm}")
    if config.filter.min_samples is not None and config.filter.min_samples < 1:
        errors.append(f"filter.min_samples must be >= 1, got {config.filter.min_samples}")

    if config.normalization.method not in ('cqn', 'tmm', 'none'):
        errors.append(
            f"normalization.method must be one of cqn, tmm, none; got '{config.normalization.method}'"
        )
    if not 0 < config.normalization.tau < 1:
        errors.append(f"normalization.tau must be in (0, 1), got {config.normalization.tau}")
    if config.normalization.spline_df < 3:
        errors.append(f"normalization.spline_df must be >= 3, got {config.normalization.spline_df}")

    if not 0 < config.model.alpha < 1:
        errors.append(f"model.alpha must be in (0, 1), got {config.model.alpha}")
    if config.model.lfc < 0:
        errors.append(f"model.lfc must be >= 0, got {config.model.lfc}")
    if config.model.min_dispersion <= 0:
        errors.append(f"model.min_dispersion must be > 0, got {config.model.min_dispersion}")

    enr = config.enrichment
    if enr.method not in ('wallenius', 'hypergeometric'):
        errors.append(f"enrichment.method must be wallenius or hypergeometric; got '{enr.method}'")
    if enr.bias_covariate not in ('length', 'gc_content'):
        errors.append(
            f"enrichment.bias_covariate must be length or gc_content; got '{enr.bias_covariate}'"
        )
    if enr.pwf_bin_size < 1:
        errors.append(f"enrichment.pwf_bin_size must be >= 1, got {enr.pwf_bin_size}")
    bad_subsets = [s for s in enr.subsets if s not in ('all', 'up', 'down')]
    if bad_subsets:
        errors.append(f"enrichment.subsets has unknown value(s): {bad_subsets}")
    for key, alpha in enr.alpha.items():
        if not isinstance(alpha, (int, float)) or not 0 < alpha < 1:
            errors.append(f"enrichment.alpha['{key}'] must be in (0, 1), got {alpha}")
    empty = [k for k, v in enr.universe_map.items() if not v]
    if empty:
        errors.append(f"enrichment.universe_map has categories without a universe: {empty}")

    if errors:
        raise ConfigError("Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors))
    return config


def config_from_dict(config: Mapping[str, Any]) -> PipelineConfig:
    """Build and validate a PipelineConfig from a nested mapping."""
    unknown = sorted(set(config) - set(_SECTIONS))
    if unknown:
        raise ConfigError(f"Unknown config section(s): {unknown}")
    sections = {
        name: _build_section(name, cls, config.get(name)) for name, cls in _SECTIONS.items()
    }
    return validate_config(PipelineConfig(**sections))


def apply_overrides(config: PipelineConfig, overrides: Mapping[str, Any]) -> PipelineConfig:
    """
    Return a copy with dotted-key overrides applied (e.g. ``"model.alpha"``).

    ``None`` values are skipped so unset command-line flags keep the file
    value. The result is validated again.
    """
    sections: dict[str, dict[str, Any]] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        section, _, name = key.partition('.')
        if section not in _SECTIONS or not name:
            raise ConfigError(f"Invalid override key: {key}")
        sections.setdefault(section, {})[name] = value

    updated = config
    for section, values in sections.items():
        current = _section_values(getattr(updated, section))
        current.update(values)
        updated = dataclasses.replace(
            updated, **{section: _build_section(section, _SECTIONS[section], current)}
        )
    return validate_config(updated)


def config_to_dict(config: PipelineConfig) -> Dict[str, Any]:
    """JSON-serializable view of the configuration."""
    def convert(value: Any) -> Any:
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, tuple):
            return list(value)
        if isinstance(value, Mapping):
            return {k: convert(v) for k, v in value.items()}
        return value

    return {
        name: {k: convert(v) for k, v in _section_values(getattr(config, name)).items()}
        for name in _SECTIONS
    }
