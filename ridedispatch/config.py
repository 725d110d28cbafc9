from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Dict, List
import yaml


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/ridedispatch"
    REDIS_URL: str = "redis://localhost:6379/0"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = -1
    DB_ECHO: bool = False

    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = ""

    # dispatch
    SEARCH_RADIUS_KM: float = 5.0
    RESPONSE_EXPIRY_SEC: int = 20
    MAX_NOTIFIED_STOPS: int = 5
    LOCATION_MAX_AGE_SEC: int = 300
    PUSH_GATEWAY_URL: str = "http://127.0.0.1:8002/push"
    PUSH_TIMEOUT_SEC: float = 5.0

    # reliability windows
    WINDOW_WEIGHT_SHORT: float = 0.2
    WINDOW_WEIGHT_MEDIUM: float = 0.3
    WINDOW_WEIGHT_LONG: float = 0.5
    GRACE_PERIOD_TRIPS: int = 20
    EXCUSED_CANCELLATION_REASONS: List[str] = ["emergency", "safety_concern", "passenger_no_show", "vehicle_issue"]
    METRICS_CAS_RETRIES: int = 5
    REPAIR_OFFSET_SHORT_SEC: int = 3600
    REPAIR_OFFSET_MEDIUM_SEC: int = 86400
    REPAIR_OFFSET_LONG_SEC: int = 5 * 86400

    # tier thresholds: weighted acceptance percent / minimum star rating
    TIER_PLATINUM_MIN_ACCEPTANCE: float = 95.0
    TIER_PLATINUM_MIN_RATING: float = 4.8
    TIER_GOLD_MIN_ACCEPTANCE: float = 85.0
    TIER_GOLD_MIN_RATING: float = 4.5
    TIER_SILVER_MIN_ACCEPTANCE: float = 75.0
    TIER_SILVER_MIN_RATING: float = 4.0

    # priority score factor maxima
    SCORE_DISTANCE_MAX: float = 50.0
    SCORE_DISTANCE_PER_KM: float = 5.0
    SCORE_ACCEPTANCE_MAX: float = 20.0
    SCORE_RATING_MAX: float = 15.0

    # tier factor points by tier name; drivers without metrics score SCORE_UNKNOWN_TIER_POINTS
    SCORE_TIER_POINTS: Dict[str, float] = {"platinum": 15.0, "gold": 10.0, "silver": 5.0, "bronze": 0.0}
    SCORE_UNKNOWN_TIER_POINTS: float = 5.0

    # ridedispatch/.env and the environment both win over application.yaml
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        # load_settings hands application.yaml values in as init kwargs, so they rank last
        return env_settings, dotenv_settings, file_secret_settings, init_settings


# yaml section -> {yaml key: settings field}
_YAML_FIELDS = {
    "database": {
        "url": "DATABASE_URL",
        "pool_size": "DB_POOL_SIZE",
        "max_overflow": "DB_MAX_OVERFLOW",
        "pool_timeout": "DB_POOL_TIMEOUT",
        "pool_recycle": "DB_POOL_RECYCLE",
        "echo": "DB_ECHO",
    },
    "redis": {
        "url": "REDIS_URL",
    },
    "logging": {
        "level": "LOG_LEVEL",
        "dir": "LOG_DIR",
    },
    "dispatch": {
        "radius_km": "SEARCH_RADIUS_KM",
        "response_expiry_sec": "RESPONSE_EXPIRY_SEC",
        "max_notified_stops": "MAX_NOTIFIED_STOPS",
        "location_max_age_sec": "LOCATION_MAX_AGE_SEC",
        "push_gateway_url": "PUSH_GATEWAY_URL",
        "push_timeout_sec": "PUSH_TIMEOUT_SEC",
    },
    "metrics": {
        "weight_short": "WINDOW_WEIGHT_SHORT",
        "weight_medium": "WINDOW_WEIGHT_MEDIUM",
        "weight_long": "WINDOW_WEIGHT_LONG",
        "grace_period_trips": "GRACE_PERIOD_TRIPS",
        "excused_cancellation_reasons": "EXCUSED_CANCELLATION_REASONS",
        "cas_retries": "METRICS_CAS_RETRIES",
        "repair_offset_short_sec": "REPAIR_OFFSET_SHORT_SEC",
        "repair_offset_medium_sec": "REPAIR_OFFSET_MEDIUM_SEC",
        "repair_offset_long_sec": "REPAIR_OFFSET_LONG_SEC",
    },
    "tiers": {
        "platinum_min_acceptance": "TIER_PLATINUM_MIN_ACCEPTANCE",
        "platinum_min_rating": "TIER_PLATINUM_MIN_RATING",
        "gold_min_acceptance": "TIER_GOLD_MIN_ACCEPTANCE",
        "gold_min_rating": "TIER_GOLD_MIN_RATING",
        "silver_min_acceptance": "TIER_SILVER_MIN_ACCEPTANCE",
        "silver_min_rating": "TIER_SILVER_MIN_RATING",
    },
    "scoring": {
        "distance_max": "SCORE_DISTANCE_MAX",
        "distance_per_km": "SCORE_DISTANCE_PER_KM",
        "acceptance_max": "SCORE_ACCEPTANCE_MAX",
        "rating_max": "SCORE_RATING_MAX",
        "tier_points": "SCORE_TIER_POINTS",
        "unknown_tier_points": "SCORE_UNKNOWN_TIER_POINTS",
    },
}


def _read_yaml(config_path: Path) -> dict:
    """Flatten application.yaml sections into settings field names."""
    if not config_path.exists():
        return {}
    with open(config_path, "r") as f:
        yaml_config = yaml.safe_load(f) or {}
    values = {}
    for section, fields in _YAML_FIELDS.items():
        section_values = yaml_config.get(section) or {}
        for key, field_name in fields.items():
            if section_values.get(key) is not None:
                values[field_name] = section_values[key]
    return values


def load_settings(config_path: Path | None = None, env_file: Path | str | None = None) -> Settings:
    """Load settings from application.yaml, overridden by `.env` and then by environment variables.

    `env_file` replaces the default `ridedispatch/.env`.
    """
    if config_path is None:
        config_path = Path(__file__).resolve().parent / "application.yaml"
    kwargs = _read_yaml(Path(config_path))
    if env_file is not None:
        kwargs["_env_file"] = env_file
    return Settings(**kwargs)


settings = load_settings()
