from typing import Dict

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MatchingWeights(BaseModel):
    """
    Weight table for offer/organization scoring.
    Every value can be overridden from the environment, e.g.
    RELIEF_MATCHING__CAPABILITY=50 or
    RELIEF_MATCHING__PRIORITY_BOOST='{"sos": 30, "critical": 15}'.
    """
    capability: float = 40.0
    capacity: float = 20.0
    load: float = 20.0
    rating: float = 10.0
    response: float = 10.0
    priority_boost: Dict[str, float] = Field(default_factory=lambda: {
        "sos": 25.0,
        "critical": 15.0,
        "high": 8.0,
        "medium": 0.0,
        "low": 0.0,
    })
    rescue_boost: float = 10.0
    online_boost: float = 5.0
    twenty_four_seven: float = 5.0

    # offer path
    offer_distance: float = 40.0
    offer_distance_per_km: float = 0.4
    offer_quantity: float = 20.0
    offer_rating: float = 20.0
    offer_priority_factor: float = 0.4
    verified_offer_bonus: float = 5.0

    route_block_penalty: float = 15.0
    default_response_minutes: float = 30.0


class Settings(BaseSettings):
    app_name: str = "reliefdispatch"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    # Data
    use_mongo: bool = False
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "reliefdispatch"

    # Matching
    matching: MatchingWeights = Field(default_factory=MatchingWeights)
    search_radius_m: float = 100_000.0
    offer_candidate_limit: int = 10
    organization_candidate_limit: int = 20

    # Queue ordering (higher = served earlier)
    priority_order: Dict[str, int] = Field(default_factory=lambda: {
        "sos": 100,
        "critical": 80,
        "high": 50,
        "medium": 20,
        "low": 10,
    })
    default_priority_order: int = 15

    # Retry / worker
    run_scheduler: bool = True
    max_dispatch_attempts: int = 3
    retry_base_delay_s: float = 2.0
    retry_max_delay_s: float = 60.0
    worker_interval_s: float = 2.0
    backfill_interval_s: float = 30.0
    backfill_limit: int = 200
    startup_backfill_limit: int = 500

    # Duplicate detection
    duplicate_radius_m: float = 500.0
    duplicate_threshold: float = 0.7
    duplicate_candidate_limit: int = 200
    duplicate_neighbor_limit: int = 10
    duplicate_result_limit: int = 50

    # Webhook outbox signing
    webhook_secret: str = "dev-secret-change-me"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RELIEF_",
        env_nested_delimiter="__",
        extra="ignore",
    )


settings = Settings()


def priority_order_value(priority: str | None, cfg: Settings | None = None) -> int:
    cfg = cfg or settings
    return cfg.priority_order.get(priority or "", cfg.default_priority_order)
