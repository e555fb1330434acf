from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = None
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    public_base_url: str | None = None
    log_level: str = "INFO"
    credential_encryption_key: str | None = None  # base64, 32 bytes
    redis_url: str | None = None
    event_queue_stream: str = "whatsapp_events"
    webhook_error_stream: str = "webhook_errors"
    redis_socket_timeout_seconds: float = 0.5
    webhook_retry_enabled: bool = False
    webhook_retry_count: int = 3
    webhook_retry_delay_seconds: float = 5.0
    webhook_format: str = "form"  # form | json
    webhook_timeout_seconds: float = 30.0
    ticketing_timeout_seconds: float = 30.0
    dedup_window_seconds: float = 1800.0
    dedup_cleanup_interval_seconds: float = 600.0
    default_inbox_name: str = "WhatsApp Bridge"
    bot_contact_organization: str = "WhatsApp Bridge"
    bot_contact_logo_url: str = "https://avatars.githubusercontent.com/u/70125501"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
