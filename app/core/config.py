from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    redis_dsn: str = "redis://localhost:6379/0"
    redis_pool_size: int = 5

    # mutation log (one stream per shard: "<prefix>:<n>")
    mutation_log_stream: str = "todo:mutations"
    mutation_log_shards: int = 4
    mutation_log_group: str = "todo-stream"
    dead_letter_stream: str = "todo:mutations:dead-letter"
    batch_size: int = 10
    max_retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    block_ms: int = 1000

    # event bus
    event_bus_stream: str = "todo:events"
    event_bus_max_length: int = 10_000
    event_source: str = "TodoService"
    publish_timeout_seconds: float = 5.0

    # downstream consumers
    notification_channel: str = "todo:notifications"
    notification_dedup_ttl_seconds: int = 86_400
    notification_claim_ttl_seconds: int = 60

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
