#control_plane\config.py

import os
import tempfile
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Control plane configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Explicit URL wins over the postgres_* fields
    database_url: Optional[str] = None

    postgres_user: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_host: Optional[str] = None
    postgres_port: int = 5432
    postgres_db: str = "control_plane"

    # Connection pool
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600

    # SQLAlchemy
    echo_sql: bool = False

    # Queue
    queue_driver: str = "database"  # database | redis
    redis_url: str = "redis://localhost:6379/0"
    default_queue: str = "default"
    deployment_queue: str = "deployments"
    worker_id: str = "worker-1"
    worker_poll_interval: float = 2.0

    # Deployments
    deploy_key_dir: str = Field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "control-plane-keys")
    )
    hook_timeout_seconds: int = 300
    git_timeout_seconds: int = 600
    # Headroom between the deployment time limit and the job timeout
    deploy_settle_seconds: int = 30

    # Monitoring
    metrics_retention_hours: int = 24
    monitor_interval_seconds: int = 60

    # Notifications
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "alerts@localhost"
    slack_footer: str = "Control Plane"

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url

        if self.postgres_host:
            return (
                f"postgresql://{self.postgres_user}:{self.postgres_password}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
            )

        return "sqlite:///./control_plane.db"


settings = Settings()
