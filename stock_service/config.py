from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/stock"
    log_level: str = "INFO"

    # Messaging
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_consumer_group: str = "stock-service"
    max_deliveries: int = 5
    publish_retries: int = 3
    publish_backoff: float = 0.5

    # Seed demo stock into an empty database on startup
    seed_demo_stock: bool = True
    default_reorder_level: int = 10

    # Observability
    otlp_endpoint: str | None = "http://jaeger:4318/v1/traces"
    metrics_port: int = 8001

    model_config = {"env_file": ".env"}


settings = Settings()
