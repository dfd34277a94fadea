from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 0.5

    slack_bot_token: Optional[str] = None
    slack_signing_secret: Optional[str] = None
    slack_api_base_url: str = "https://slack.com/api"
    slack_bot_user_id: Optional[str] = None
    slack_request_timeout_seconds: float = 10.0
    slack_bot_user_id_lookup_timeout_seconds: float = 1.0

    worker_secret_key: Optional[str] = None
    worker_base_url: str = "http://localhost:8000"
    scheduler_header_name: str = "x-vercel-cron"
    scheduler_header_value: str = "true"

    answer_engine_url: str = "http://localhost:8001"
    answer_engine_api_key: Optional[str] = None

    queue_name: str = "slack-message-queue"
    queue_concurrency_limit: int = 5
    queue_visibility_timeout_seconds: float = 120.0
    queue_max_deliveries: int = 3
    failed_job_requeue_limit: int = 0

    dedup_ttl_seconds: int = 1800
    dedup_local_cache_size: int = 5000
    signature_max_age_seconds: int = 300

    job_timeout_seconds: float = 55.0
    coordinator_timeout_seconds: float = 58.0
    interim_notice_delay_seconds: float = 10.0

    streaming_enabled: bool = True
    stream_min_interval_seconds: float = 2.0
    stream_min_delta_chars: int = 20
    stream_min_delta_ratio: float = 0.1

    ack_retry_max_retries: int = 1
    ack_retry_max_delay_seconds: float = 2.0
    background_retry_max_retries: int = 3
    background_retry_max_delay_seconds: float = 8.0
    retry_base_delay_seconds: float = 0.5

    user_rate_limit_per_minute: int = 5

    alert_webhook_url: Optional[str] = None

    worker_tick_enabled: bool = False
    worker_tick_interval_seconds: float = 60.0

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
