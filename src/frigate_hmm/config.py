"""Configuration models and loading logic."""

from __future__ import annotations

import os
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_SETTINGS_FILE = Path("configs/settings.yaml")
SETTINGS_FILE_ENV = "FRIGATE_HMM_SETTINGS_FILE"


class ProjectConfig(BaseModel):
    """Project metadata settings."""

    name: str = "frigate_hmm"
    env: str = "dev"


class PathsConfig(BaseModel):
    """Filesystem paths for inputs, run artifacts and logs."""

    data_root: Path = Path("./data")
    artifacts_root: Path = Path("./artifacts")
    logs_root: Path = Path("./logs")

    def resolved(self, project_root: Path) -> "PathsConfig":
        """Return a copy with project-relative paths resolved to absolute paths."""

        updates: dict[str, Path] = {}
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)
            updates[field_name] = value if value.is_absolute() else (project_root / value).resolve()
        return self.model_copy(update=updates)


class ColumnsConfig(BaseModel):
    """Source CSV column names (Movebank export naming by default)."""

    individual: str = "individual-local-identifier"
    timestamp: str = "timestamp"
    longitude: str = "location-long"
    latitude: str = "location-lat"
    gps_altitude: str = "height-above-msl"
    baro_altitude: str = "barometric-height"
    baro_pressure: str = "barometric-pressure"
    timestamp_format: str | None = None


class PreprocessConfig(BaseModel):
    """Track cleaning and movement-metric settings."""

    max_gap_seconds: float = Field(default=900.0, gt=0.0)
    min_sequence_length: int = Field(default=20, ge=2)
    step_floor_m: float = Field(default=0.01, gt=0.0)
    altitude_floor_m: float = Field(default=0.1, gt=0.0)
    interpolate_altitude: bool = True
    sea_level_pressure_hpa: float = Field(default=1013.25, gt=0.0)
    common_rows_only: bool = True


class HMMConfig(BaseModel):
    """Movement HMM fit settings."""

    n_states: int = Field(default=3, ge=2)
    n_iter: int = Field(default=200, ge=1)
    tol: float = Field(default=1e-4, gt=0.0)
    random_state: int = 42
    n_starts: int = Field(default=5, ge=1)
    kmeans_n_init: int = Field(default=20, ge=1)
    estimate_angle_mean: bool = True
    transition_pseudocount: float = Field(default=1.0, ge=0.0)
    min_sd_fraction: float = Field(default=0.01, gt=0.0)
    kappa_min: float = Field(default=1e-3, gt=0.0)
    kappa_max: float = Field(default=500.0, gt=0.0)

    @model_validator(mode="after")
    def _check_kappa_bounds(self) -> "HMMConfig":
        if self.kappa_min >= self.kappa_max:
            raise ValueError("kappa_min must be < kappa_max.")
        return self


class LabelsConfig(BaseModel):
    """Behavioural names given to fitted states."""

    resting: str = "resting"
    soaring: str = "soaring"
    gliding: str = "gliding"
    flying: str = "flying"
    intermediate_prefix: str = "intermediate"


class SweepConfig(BaseModel):
    """State-count sweep defaults."""

    components_default: list[int] = Field(default_factory=lambda: [2, 3, 4], min_length=1)


class AppSettings(BaseSettings):
    """Top-level application settings."""

    _yaml_file_override: ClassVar[Path | None] = None

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    columns: ColumnsConfig = Field(default_factory=ColumnsConfig)
    preprocess: PreprocessConfig = Field(default_factory=PreprocessConfig)
    hmm: HMMConfig = Field(default_factory=HMMConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)

    model_config = SettingsConfigDict(
        env_prefix="FRIGATE_HMM_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Use YAML defaults while allowing env vars to override values."""

        yaml_file = resolve_settings_file(cls._yaml_file_override)
        yaml_settings = YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_settings,
            file_secret_settings,
        )

    def as_dict(self) -> dict[str, object]:
        """Return settings as a standard nested dictionary."""

        return self.model_dump(mode="json")


def find_project_root(start: Path | None = None) -> Path:
    """Locate the project root by traversing upward for config markers."""

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / "configs/settings.yaml").exists():
            return candidate
    return current


def resolve_settings_file(override: Path | None = None) -> Path:
    """Resolve settings file from explicit override, env var, or default."""

    chosen = override
    if chosen is None:
        env_value = os.getenv(SETTINGS_FILE_ENV)
        if env_value:
            chosen = Path(env_value)
    if chosen is None:
        chosen = DEFAULT_SETTINGS_FILE

    if not chosen.is_absolute():
        chosen = (find_project_root() / chosen).resolve()
    return chosen


def load_settings(config_file: Path | None = None) -> AppSettings:
    """Load settings with YAML defaults and environment variable overrides."""

    settings_file = resolve_settings_file(config_file)
    project_root = settings_file.parent.parent.resolve()
    AppSettings._yaml_file_override = settings_file
    try:
        settings = AppSettings()
    finally:
        AppSettings._yaml_file_override = None
    resolved_paths = settings.paths.resolved(project_root=project_root)
    return settings.model_copy(update={"paths": resolved_paths})
