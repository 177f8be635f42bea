"""
Wealth CRM API Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Wealth CRM API"
    version: str = "0.3.0"
    debug: bool = False
    environment: str = "production"

    # API Configuration
    api_v1_prefix: str = "/api/v1"
    app_url: str = "http://localhost:8000"

    # Database
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # NATS Configuration
    nats_url: str = "nats://localhost:4222"
    nats_enabled: bool = True

    # Monitoring
    prometheus_enabled: bool = True
    log_level: str = "INFO"

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    # Booking
    booking_lookahead_days: int = 14
    booking_auto_confirm: bool = True
    booking_link_length: int = 10

    # Outbound integrations
    http_timeout_seconds: float = 30.0
    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_from: str = "compliance@wealthcrm.local"
    archive_api_url: Optional[str] = None
    archive_api_key: Optional[str] = None
    archive_folder_base_url: str = "https://drive.google.com/drive/folders"

    # Workflow follow-up tasks (days until due)
    kyc_task_due_days: int = 7
    diligence_task_due_days: int = 14
    contract_task_due_days: int = 7
    onboarding_task_due_days: int = 3
    kyc_request_task_due_days: int = 2

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
