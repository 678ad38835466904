"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``RELIEF_ENGINE_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

The orchestrator, API and CLI commands all receive an ``AppConfig`` instance —
never raw dicts or individual env var lookups scattered through the codebase.
Any validation failure is raised as ``ConfigurationError``: a bad weight or
threshold is fatal at startup, never discovered mid-cycle.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from relief_engine.errors import ConfigurationError

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/relief_engine.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/relief_engine.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class ScoringConfig(BaseModel):
    """Priority scoring weights and curve parameters.

    ``age_weight`` .. ``supply_pressure_weight`` are the w1..w4 multipliers
    applied to the four 0–100 component terms.  The ``neutral_*`` values are
    substituted when a term cannot be computed (no geodata, unknown capacity,
    no matching demand cell).
    """

    model_config = ConfigDict(frozen=True)

    age_weight: float = 1.0
    proximity_weight: float = 0.6
    hub_capacity_weight: float = 0.4
    supply_pressure_weight: float = 1.2
    score_scale: float = 1.0

    age_half_life_hours: float = 12.0
    age_cap: float = 100.0
    proximity_scale_km: float = 25.0

    neutral_proximity: float = 50.0
    neutral_hub_capacity: float = 50.0
    neutral_supply_pressure: float = 50.0

    @field_validator(
        "age_weight", "proximity_weight", "hub_capacity_weight", "supply_pressure_weight",
    )
    @classmethod
    def validate_weight(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Scoring weights must be non-negative, got {v}.")
        return v

    @field_validator("score_scale", "age_half_life_hours", "age_cap", "proximity_scale_km")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Value must be > 0, got {v}.")
        return v

    @field_validator("neutral_proximity", "neutral_hub_capacity", "neutral_supply_pressure")
    @classmethod
    def validate_neutral(cls, v: float) -> float:
        if not 0.0 <= v <= 100.0:
            raise ValueError(f"Neutral term values must be in [0, 100], got {v}.")
        return v


class DemandConfig(BaseModel):
    """Demand aggregation bucket settings."""

    model_config = ConfigDict(frozen=True)

    bucket_minutes: int = 60
    timeline_length: int = 48

    @field_validator("bucket_minutes", "timeline_length")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be >= 1, got {v}.")
        return v


class RecommendationConfig(BaseModel):
    """Recommendation generation parameters."""

    model_config = ConfigDict(frozen=True)

    top_k: int = 5
    travel_speed_kph: float = 40.0
    handling_minutes: int = 20
    validity_minutes: int = 120

    @field_validator("top_k")
    @classmethod
    def validate_top_k(cls, v: int) -> int:
        if not 1 <= v <= 50:
            raise ValueError(f"top_k must be in [1, 50], got {v}.")
        return v

    @field_validator("travel_speed_kph")
    @classmethod
    def validate_speed(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"travel_speed_kph must be > 0, got {v}.")
        return v


class JobConfig(BaseModel):
    """Static definition of one tracked periodic job."""

    model_config = ConfigDict(frozen=True)

    label: str
    description: str = ""
    expected_interval_seconds: int = 300

    @field_validator("expected_interval_seconds")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"expected_interval_seconds must be >= 1, got {v}.")
        return v

    @property
    def expected_interval_ms(self) -> int:
        return self.expected_interval_seconds * 1000


def _default_jobs() -> dict[str, JobConfig]:
    return {
        "priority-recalc": JobConfig(
            label="Priority recalculation",
            description="Aggregates demand, re-ranks open requests and proposes dispatches",
        ),
        "demand-aggregation": JobConfig(
            label="Demand aggregation",
            description="Buckets open requests and inventory into demand-pressure cells",
        ),
        "priority-scoring": JobConfig(
            label="Priority scoring",
            description="Scores and ranks open rescue requests",
        ),
        "recommendation-generation": JobConfig(
            label="Recommendation generation",
            description="Proposes warehouse dispatches for the top-ranked requests",
        ),
    }


# Jobs that run once per recalculation cycle; their expected cadence is the cycle's.
CYCLE_JOBS = (
    "priority-recalc",
    "demand-aggregation",
    "priority-scoring",
    "recommendation-generation",
)


def _with_cycle_interval(jobs: dict[str, Any], interval_seconds: int) -> dict[str, Any]:
    """Set ``expected_interval_seconds`` of every cycle job to the cycle cadence."""
    derived: dict[str, Any] = {}
    for name, job in jobs.items():
        if name in CYCLE_JOBS:
            if isinstance(job, JobConfig):
                job = job.model_copy(update={"expected_interval_seconds": interval_seconds})
            elif isinstance(job, dict):
                job = {**job, "expected_interval_seconds": interval_seconds}
        derived[name] = job
    return derived


class SchedulerConfig(BaseModel):
    """Periodic driver cadence and staleness classification thresholds.

    Staleness status (``stale = now - last_run_at``):
      healthy  : stale <  warning_multiplier  × expected_interval
      warning  : stale <  critical_multiplier × expected_interval
      critical : otherwise
    """

    model_config = ConfigDict(frozen=True)

    recalc_interval_seconds: int = 300
    warning_multiplier: float = 1.0
    critical_multiplier: float = 2.0
    jobs: dict[str, JobConfig] = _default_jobs()

    @model_validator(mode="before")
    @classmethod
    def derive_cycle_intervals(cls, data: Any) -> Any:
        """Cycle jobs are expected once per ``recalc_interval_seconds``.

        Any ``expected_interval_seconds`` given for a cycle job is replaced;
        other jobs keep their own.  A non-numeric interval is left for field
        validation to reject.
        """
        if not isinstance(data, dict):
            return data
        raw_interval = data.get("recalc_interval_seconds", 300)
        if isinstance(raw_interval, bool):
            return data
        try:
            interval = int(raw_interval)
        except (TypeError, ValueError):
            return data
        jobs = data.get("jobs", _default_jobs())
        if not isinstance(jobs, dict):
            return data
        return {**data, "jobs": _with_cycle_interval(jobs, interval)}

    @model_validator(mode="after")
    def validate_thresholds(self) -> "SchedulerConfig":
        if self.recalc_interval_seconds < 1:
            raise ValueError("recalc_interval_seconds must be >= 1.")
        if self.warning_multiplier <= 0:
            raise ValueError("warning_multiplier must be > 0.")
        if self.critical_multiplier < self.warning_multiplier:
            raise ValueError(
                f"critical_multiplier ({self.critical_multiplier}) must be >= "
                f"warning_multiplier ({self.warning_multiplier})."
            )
        if "priority-recalc" not in self.jobs:
            raise ValueError("scheduler.jobs must define 'priority-recalc'.")
        return self


class ApiConfig(BaseModel):
    """HTTP surface bind settings."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = 8080


class ReportingConfig(BaseModel):
    """Export file locations."""

    model_config = ConfigDict(frozen=True)

    output_dir: str = "data/outputs"


class AppConfig(BaseModel):
    """Complete application configuration — the single source of truth.

    Constructed by ``load_config()`` which merges TOML + .env.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()
    scoring: ScoringConfig = ScoringConfig()
    demand: DemandConfig = DemandConfig()
    recommendations: RecommendationConfig = RecommendationConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    api: ApiConfig = ApiConfig()
    reporting: ReportingConfig = ReportingConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        ConfigurationError: If merged config values fail validation.
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    load_dotenv(dotenv_path=root / ".env", override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    # Also merge local.toml if present (gitignored local overrides)
    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply RELIEF_ENGINE_* environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply RELIEF_ENGINE_* env vars to the raw config dict.

    Supported overrides:
      RELIEF_ENGINE_DB_PATH                  → raw["database"]["db_path"]
      RELIEF_ENGINE_LOG_LEVEL                → raw["logging"]["level"]
      RELIEF_ENGINE_DEBUG                    → raw["debug"]
      RELIEF_ENGINE_RECALC_INTERVAL_SECONDS  → raw["scheduler"]["recalc_interval_seconds"]
    """
    if db_path := os.environ.get("RELIEF_ENGINE_DB_PATH"):
        raw.setdefault("database", {})["db_path"] = db_path

    if log_level := os.environ.get("RELIEF_ENGINE_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if debug := os.environ.get("RELIEF_ENGINE_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    if interval := os.environ.get("RELIEF_ENGINE_RECALC_INTERVAL_SECONDS"):
        # Parsed by SchedulerConfig, so a bad value surfaces as ConfigurationError.
        raw.setdefault("scheduler", {})["recalc_interval_seconds"] = interval.strip()

    return raw


def build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map a raw TOML dict to the ``AppConfig`` model structure.

    Raises:
        ConfigurationError: If any section fails validation.
    """
    try:
        scheduler_raw = dict(raw.get("scheduler", {}))
        jobs_raw = scheduler_raw.pop("jobs", None)
        if jobs_raw is not None:
            jobs = _default_jobs()
            jobs.update({name: JobConfig(**definition) for name, definition in jobs_raw.items()})
            scheduler_raw["jobs"] = jobs

        return AppConfig(
            database=DatabaseConfig(**raw.get("database", {})),
            logging=LoggingConfig(**raw.get("logging", {})),
            scoring=ScoringConfig(**raw.get("scoring", {})),
            demand=DemandConfig(**raw.get("demand", {})),
            recommendations=RecommendationConfig(**raw.get("recommendations", {})),
            scheduler=SchedulerConfig(**scheduler_raw),
            api=ApiConfig(**raw.get("api", {})),
            reporting=ReportingConfig(**raw.get("reporting", {})),
            debug=raw.get("debug", False),
        )
    except (ValidationError, TypeError, ValueError) as exc:
        raise ConfigurationError(str(exc)) from exc
