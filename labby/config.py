from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./labby.db"

    # Declarative service configurations and lab templates (YAML)
    service_configs_dir: str = "config/services"
    templates_dir: str = "config/templates"

    # Ad hoc lab duration bounds (minutes)
    min_lab_duration: int = 15
    max_lab_duration: int = 480

    # Expiry sweeper
    sweep_enabled: bool = True
    # How often expired and failed labs are swept (seconds)
    sweep_interval: int = 300
    # How long a lab may sit in error before it is deleted (seconds)
    error_lab_threshold: int = 3600

    # Progress tracking
    progress_max_log_entries: int = 50

    # Cleanup behavior
    # Abort the remaining cleanup batch on the first failing service
    cleanup_stop_on_first_error: bool = False
    # Run a service's own cleanup right after its setup fails
    cleanup_failed_service_on_setup_error: bool = True

    # Outgoing service API calls
    service_http_timeout: float = 30.0
    service_max_retries: int = 3
    service_retry_backoff_base: float = 1.0
    service_retry_backoff_max: float = 10.0

    # Service implementations to register
    enable_proxmox_user: bool = True
    enable_guacamole: bool = True
    enable_terraform_cloud: bool = True
    enable_palette_project: bool = True
    enable_palette_tenant: bool = True

    # Logging
    log_format: str = "text"  # "json" or "text"
    log_level: str = "INFO"

    class Config:
        env_prefix = "LABBY_"


settings = Settings()
