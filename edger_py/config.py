"""
Analysis configuration.

Every tunable constant of the pipeline lives in one of the small frozen
dataclasses below. ``AnalysisConfig`` bundles them and can be built from
a nested mapping or a YAML file:

    filter:
      log_cpm_threshold: 1.0
      min_samples: 3
    normalization:
      method: TMM
    dispersion:
      grid_length: 21
    n_jobs: 4
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml

from .errors import ConfigurationError


@dataclass(frozen=True)
class FilterConfig:
    log_cpm_threshold: float = 0.0
    min_samples: int = 2
    prior_count: float = 0.5


@dataclass(frozen=True)
class NormalizationConfig:
    method: str = "TMM"
    reference_sample: str = None
    logratio_trim: float = 0.3
    sum_trim: float = 0.05
    do_weighting: bool = True
    a_cutoff: float = -1e10
    min_genes: int = 10


@dataclass(frozen=True)
class DispersionConfig:
    grid_length: int = 21
    grid_range: tuple = (-10.0, 10.0)
    grid_base: float = 0.1
    min_disp: float = 1e-8
    span: float = None
    min_trend_genes: int = 10
    lowess_iterations: int = 3
    prior_df: float = 10.0
    prior_count: float = 2.0
    xtol: float = 1e-5


@dataclass(frozen=True)
class GLMConfig:
    max_iter: int = 50
    tol: float = 1e-8


@dataclass(frozen=True)
class SignificanceConfig:
    fdr: float = 0.05
    lfc_threshold: float = 0.0


@dataclass(frozen=True)
class AnalysisConfig:
    filter: FilterConfig = field(default_factory=FilterConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    dispersion: DispersionConfig = field(default_factory=DispersionConfig)
    glm: GLMConfig = field(default_factory=GLMConfig)
    testing: SignificanceConfig = field(default_factory=SignificanceConfig)
    n_jobs: int = 1

    def __post_init__(self):
        validate(self)

    @classmethod
    def from_dict(cls, mapping):
        """Build a config from a nested mapping; unknown keys are errors."""
        mapping = dict(mapping or {})
        sections = {f.name: f.type for f in fields(cls) if f.name != "n_jobs"}

        unknown = set(mapping) - set(sections) - {"n_jobs"}
        if unknown:
            raise ConfigurationError(f"Unknown config section(s): {sorted(unknown)}")

        kwargs = {}
        for name, section_cls in sections.items():
            values = mapping.get(name) or {}
            if not isinstance(values, dict):
                raise ConfigurationError(f"Config section '{name}' must be a mapping")
            allowed = {f.name for f in fields(section_cls)}
            bad = set(values) - allowed
            if bad:
                raise ConfigurationError(
                    f"Unknown key(s) in config section '{name}': {sorted(bad)}")
            if "grid_range" in values:
                values = dict(values, grid_range=tuple(values["grid_range"]))
            kwargs[name] = section_cls(**values)

        if "n_jobs" in mapping:
            kwargs["n_jobs"] = mapping["n_jobs"]
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path):
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
        return cls.from_dict(raw)

    def with_n_jobs(self, n_jobs):
        return replace(self, n_jobs=n_jobs)


NORM_METHODS = ("TMM", "RLE", "upperquartile", "none")


def validate(config):
    """Range checks shared by every way of building a config."""
    f = config.filter
    if f.min_samples < 1:
        raise ConfigurationError("filter.min_samples must be >= 1")
    if f.prior_count < 0:
        raise ConfigurationError("filter.prior_count must be >= 0")

    n = config.normalization
    if n.method not in NORM_METHODS:
        raise ConfigurationError(
            f"normalization.method must be one of {NORM_METHODS}, got {n.method!r}")
    if not 0 <= n.logratio_trim < 0.5 or not 0 <= n.sum_trim < 0.5:
        raise ConfigurationError("TMM trim fractions must lie in [0, 0.5)")

    d = config.dispersion
    if d.grid_length < 3:
        raise ConfigurationError("dispersion.grid_length must be >= 3")
    if len(d.grid_range) != 2 or d.grid_range[0] >= d.grid_range[1]:
        raise ConfigurationError("dispersion.grid_range must be an increasing pair")
    if d.min_disp <= 0 or d.grid_base <= 0:
        raise ConfigurationError("dispersion.min_disp and grid_base must be positive")
    if d.span is not None and not 0 < d.span <= 1:
        raise ConfigurationError("dispersion.span must lie in (0, 1]")
    if d.prior_df < 0:
        raise ConfigurationError("dispersion.prior_df must be >= 0")

    if config.glm.max_iter < 1 or config.glm.tol <= 0:
        raise ConfigurationError("glm.max_iter must be >= 1 and glm.tol > 0")

    if not 0 < config.testing.fdr <= 1:
        raise ConfigurationError("testing.fdr must lie in (0, 1]")
    if config.testing.lfc_threshold < 0:
        raise ConfigurationError("testing.lfc_threshold must be >= 0")

    if config.n_jobs == 0:
        raise ConfigurationError("n_jobs must be non-zero (use -1 for all cores)")
