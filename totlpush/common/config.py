"""Central environment-driven settings for the notification dispatcher.

The process loads this once at startup. Behavior is controlled by environment
variables (or a local `.env` file).
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "notification-dispatcher"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    postgres_dsn: str
    api_key: str
    notification_env: str = "prod"
    onesignal_app_id: str | None = None
    onesignal_rest_api_key: str | None = None
    onesignal_api_url: str = "https://onesignal.com/api/v1"
    provider_timeout_seconds: float = 10.0
    provider_batch_size: int = 2000
    store_timeout_seconds: float = 5.0
    dispatch_concurrency: int = 50
    verify_subscriptions: bool = True
    broadcast_segment: str = "Subscribed Users"
    catalog_path: str | None = None
    intent_topic: str = "notifications.intents"
    intent_consumer_group: str = "notification-dispatcher-intents"
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("notification_env")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        """Collapse deployment names onto the send-log environments."""

        value = (value or "").strip().lower()
        if value in {"development", "dev"}:
            return "dev"
        if value == "staging":
            return "staging"
        return "prod"


settings = CommonSettings()
