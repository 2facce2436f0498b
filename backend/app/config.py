from typing import List
import json

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "ShopRecommender"
    app_env: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/shop.db"

    # read raw string from env (works with comma-separated values)
    cors_origins: str = ""

    # collaborative filtering defaults (overridable at runtime via system_settings)
    top_k_neighbors: int = 20
    min_similarity: float = 0.1
    rec_cache_ttl_hours: int = 24
    runtime_settings_ttl_seconds: int = 300

    # batch recompute
    item_similarity_mode: str = "full"  # "full" | "cooccurrence"
    recompute_timeout_seconds: float = 1800.0
    recompute_block_size: int = 256
    interaction_retention_days: int = 365
    similarity_retention_days: int = 30

    # scheduler (cron expressions, minute hour dom month dow)
    scheduler_enabled: bool = True
    item_similarity_cron: str = "0 2 * * *"
    user_similarity_cron: str = "0 3 * * *"
    cooccurrence_cron: str = "0 4 * * 0"
    retention_cron: str = "30 4 * * *"
    cache_cleanup_interval_seconds: int = 6 * 60 * 60

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s:
            return []
        if s.startswith("["):
            # also accept JSON list
            return [str(x) for x in json.loads(s)]
        return [part.strip() for part in s.split(",") if part.strip()]


settings = Settings()
