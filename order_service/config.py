from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/orders"
    log_level: str = "INFO"
    instance_id: str = "order-service-1"

    # Catalog collaborator (static demo catalog when unset)
    catalog_url: str | None = None
    catalog_timeout: float = 2.0
    price_cache_ttl: float = 300.0

    # Mock payment gateway
    payment_min_latency: float = 0.1
    payment_max_latency: float = 1.5
    payment_timeout: float = 4.0
    payment_decline_rate: float = 0.15

    # Circuit breakers
    circuit_breaker_failure_rate: float = 0.5
    circuit_breaker_window_size: int = 10
    circuit_breaker_minimum_calls: int = 5
    circuit_breaker_reset_timeout: float = 30.0

    # Saga
    reservation_timeout: float = 10.0
    reconciliation_interval: float = 30.0

    # Messaging ("kafka", or "memory" to run stock and notifications in-process)
    channel_backend: str = "kafka"
    kafka_bootstrap_servers: str = "kafka:9092"
    max_deliveries: int = 5
    publish_retries: int = 3
    publish_backoff: float = 0.5
    local_reorder_level: int = 10

    # Observability
    otlp_endpoint: str | None = "http://jaeger:4318/v1/traces"

    model_config = {"env_file": ".env"}


settings = Settings()
