from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    # Application
    app_name: str = Field(default="Mail Sync", env="APP_NAME")
    app_version: str = Field(default="0.1.0", env="APP_VERSION")
    debug: bool = Field(default=False, env="DEBUG")
    api_prefix: str = Field(default="/api/v1", env="API_PREFIX")
    api_key: Optional[str] = Field(default=None, env="API_KEY")  # None disables the check

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./mailsync.db", env="DATABASE_URL")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # OAuth2 providers (missing values fail at first use, not at startup)
    gmail_client_id: Optional[str] = Field(default=None, env="GMAIL_CLIENT_ID")
    gmail_client_secret: Optional[str] = Field(default=None, env="GMAIL_CLIENT_SECRET")
    outlook_client_id: Optional[str] = Field(default=None, env="OUTLOOK_CLIENT_ID")
    outlook_client_secret: Optional[str] = Field(default=None, env="OUTLOOK_CLIENT_SECRET")
    outlook_tenant_id: str = Field(default="common", env="OUTLOOK_TENANT_ID")
    oauth_http_timeout_seconds: float = Field(default=20.0, env="OAUTH_HTTP_TIMEOUT_SECONDS")
    token_refresh_margin_seconds: int = Field(default=120, env="TOKEN_REFRESH_MARGIN_SECONDS")

    # Email Sync Defaults (can be overridden per pass)
    email_sync_history_months: int = Field(default=3, env="EMAIL_SYNC_HISTORY_MONTHS")  # 0 = all mail
    email_sync_download_attachments: bool = Field(default=True, env="EMAIL_SYNC_DOWNLOAD_ATTACHMENTS")
    email_sync_include_sent_folder: bool = Field(default=False, env="EMAIL_SYNC_INCLUDE_SENT_FOLDER")
    email_sync_include_drafts_folder: bool = Field(default=False, env="EMAIL_SYNC_INCLUDE_DRAFTS_FOLDER")
    email_sync_include_archive_folder: bool = Field(default=False, env="EMAIL_SYNC_INCLUDE_ARCHIVE_FOLDER")
    email_sync_max_emails_per_sync: int = Field(default=1000, env="EMAIL_SYNC_MAX_EMAILS_PER_SYNC")
    email_sync_interval_minutes: int = Field(default=5, env="EMAIL_SYNC_INTERVAL_MINUTES")
    email_sync_max_attachment_size_mb: int = Field(default=25, env="EMAIL_SYNC_MAX_ATTACHMENT_SIZE_MB")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, env="SCHEDULER_ENABLED")
    scheduler_tick_seconds: int = Field(default=60, env="SCHEDULER_TICK_SECONDS")
    max_concurrent_syncs: int = Field(default=4, env="MAX_CONCURRENT_SYNCS")
    stale_sync_timeout_minutes: int = Field(default=60, env="STALE_SYNC_TIMEOUT_MINUTES")
    max_consecutive_failures: int = Field(default=5, env="MAX_CONSECUTIVE_FAILURES")
    shutdown_grace_seconds: float = Field(default=30.0, env="SHUTDOWN_GRACE_SECONDS")

    # Email Connector Configuration
    imap_timeout_seconds: float = Field(default=30.0, env="IMAP_TIMEOUT_SECONDS")
    attachments_dir: str = Field(default="./data/attachments", env="ATTACHMENTS_DIR")

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore"  # Allow extra environment variables
    }


settings = Settings()
