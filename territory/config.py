# territory/config.py

from pydantic import field_validator
from pydantic_settings import BaseSettings

MIN_EXPIRATION_DAYS = 1
MAX_EXPIRATION_DAYS = 60


class TerritoryConfig(BaseSettings):
    """Configuration for the territory conquest engine.

    Loaded once per process; components receive the instance explicitly.
    """

    # Grid
    cell_size_degrees: float = 0.002

    # Ownership
    cell_expiration_days: int = 7  # Clamped to [1, 60]
    last_minute_defense_hours: float = 24.0
    hot_spot_window_days: int = 7
    hot_spot_min_changes: int = 3

    # Vengeance
    vengeance_expiration_days: int = 7
    vengeance_xp_reward: int = 25

    # Path resolution
    interpolation_step_meters: float = 20.0
    max_interpolation_distance_meters: float = 300.0
    min_interpolation_distance_meters: float = 10.0

    # Spatial sync
    geohash_storage_precision: int = 6
    wide_viewport_span_degrees: float = 0.04  # Spans at or above use precision 5
    viewport_move_threshold: float = 0.1  # Fraction of the current span
    proactive_precision: int = 4
    first_snapshot_timeout_seconds: float = 5.0
    in_query_limit: int = 30

    # Storage
    store_backend: str = "sqlite"  # "sqlite" or "memory"
    database_path: str = "territory.db"
    archive_dir: str = "archives"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "TERRITORY_"

    @field_validator("cell_expiration_days")
    @classmethod
    def clamp_expiration_days(cls, value: int) -> int:
        return max(MIN_EXPIRATION_DAYS, min(value, MAX_EXPIRATION_DAYS))

    @field_validator("store_backend")
    @classmethod
    def check_store_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("sqlite", "memory"):
            raise ValueError(f"Unknown store backend: {value}")
        return value

    @field_validator(
        "cell_size_degrees",
        "interpolation_step_meters",
        "max_interpolation_distance_meters",
        "first_snapshot_timeout_seconds",
    )
    @classmethod
    def must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("in_query_limit", "geohash_storage_precision", "proactive_precision")
    @classmethod
    def must_be_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value
