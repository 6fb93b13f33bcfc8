"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    debug: bool = Field(default=False)
    workers: int = Field(default=1, ge=1, le=8)
    cors_origins: List[str] = Field(default=["*"])

    # Database Configuration (execution records)
    database_url: str = Field(default="sqlite+aiosqlite:///./data/flowrunner.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)
    execution_records_enabled: bool = Field(default=True)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # API client (live-mode http/webhook/call nodes)
    api_base_url: str = Field(default="http://localhost:3001")
    api_timeout: float = Field(default=30.0, ge=1.0, le=600.0)
    api_max_retries: int = Field(default=3, ge=0, le=10)
    api_retry_delay: float = Field(default=1.0, ge=0.0, le=30.0)
    call_timeout: float = Field(default=10.0, ge=1.0, le=600.0)
    call_retries: int = Field(default=2, ge=0, le=10)

    # Execution Engine
    loop_max_iterations: int = Field(default=100, ge=1)
    reject_cycles: bool = Field(default=False)
    abort_on_node_failure: bool = Field(default=False)
    sandbox_max_delay_ms: int = Field(default=1000, ge=0)

    # Durable runtime (Temporal)
    temporal_enabled: bool = Field(default=False)
    temporal_server_address: str = Field(default="localhost:7233")
    temporal_namespace: str = Field(default="default")
    temporal_task_queue: str = Field(default="flow-execution")
    temporal_identity: str = Field(default="flowrunner")
    temporal_client_cert_path: Optional[str] = Field(default=None)
    temporal_client_key_path: Optional[str] = Field(default=None)
    temporal_server_root_ca_cert_path: Optional[str] = Field(default=None)
    temporal_execution_timeout: int = Field(default=3600, ge=1)
    temporal_search_attributes_enabled: bool = Field(default=True)
    temporal_worker_enabled: bool = Field(default=False)
    temporal_worker_pool_size: int = Field(default=100, ge=1, le=1000)
    durable_fallback_mode: Literal["sandbox", "live"] = Field(default="sandbox")
    durable_fallback_on_failure: bool = Field(default=True)

    # Scheduler
    scheduler_enabled: bool = Field(default=True)
    scheduler_timezone: str = Field(default="UTC")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":memory:" not in v:
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def temporal_tls_configured(self) -> bool:
        return bool(self.temporal_client_cert_path and self.temporal_client_key_path)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
