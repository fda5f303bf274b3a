from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Rental Contract & Escrow Coordinator"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str = "sqlite+pysqlite:///./rental_core.db"

    # ─────────── JWT / AUTH ───────────
    jwt_secret_key: str = "dev-only-change-me"
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "rental-core"
    jwt_access_token_minutes: int = 1440  # 24 hours

    # ─────────── OTP ───────────
    otp_ttl_seconds: int = 300
    otp_max_attempts: int = 3
    otp_issue_limit: int = 5
    otp_issue_window_seconds: int = 1800
    otp_code_length: int = 6

    # ─────────── CONTRACTS ───────────
    retraction_window_hours: int = 48
    retraction_reminder_hours: int = 6
    document_dir: str = "./documents"

    # ─────────── ESCROW ───────────
    escrow_currency: str = "GNF"
    escrow_auto_release_days: int = 5
    escrow_recurrence_lead_days: int = 7
    payment_webhook_secret: str = "dev-webhook-secret"

    # gateway retry policy
    gateway_retry_max_attempts: int = 4
    gateway_retry_base_delay_seconds: float = 0.5
    gateway_retry_multiplier: float = 2.0
    gateway_retry_max_delay_seconds: float = 8.0

    # ─────────── DISPUTES ───────────
    dispute_auto_assign_after_hours: int = 24
    dispute_assignment_sla_hours: int = 72
    mediator_max_active_disputes: int = 10
    dev_mediator_ids: str = ""

    # ─────────── WORKERS ───────────
    sweep_interval_seconds: int = 60
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False

    @property
    def mediator_pool(self) -> List[str]:
        return [m.strip() for m in self.dev_mediator_ids.split(",") if m.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
