from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BACKOFF_TABLE = [1.0, 5.0, 15.0, 60.0, 300.0]  # seconds
DEFAULT_MAX_ATTEMPTS = 5


class StoreType(str, Enum):
    MEMORY = "memory"
    SQL = "sql"


class SQLStoreConfig(BaseModel):
    url: str = "sqlite:///webhook_retry.db"
    echo: bool = False
    create_tables: bool = True


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090


class BaseConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="WEBHOOK_RETRY_",
        extra="ignore",
    )

    log_level: str = "INFO"
    store_type: StoreType = StoreType.SQL
    sql_config: Optional[SQLStoreConfig] = None
    metrics: MetricsConfig = MetricsConfig()
    default_max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)

    def validate_store_config(self) -> None:
        if self.store_type == StoreType.SQL and not self.sql_config:
            raise ValueError("SQL store selected but no SQL configuration provided")


class ApiConfig(BaseConfig):
    host: str = "0.0.0.0"
    port: int = 8000


class DispatcherConfig(BaseConfig):
    batch_size: int = Field(default=100, ge=1)
    timeout: float = Field(default=10, gt=0)  # seconds, per delivery attempt
    poll_interval: float = Field(default=5, gt=0)  # seconds
    claim_ttl: float = Field(default=60, gt=0)  # seconds
    backoff_table: List[float] = Field(
        default_factory=lambda: list(DEFAULT_BACKOFF_TABLE)
    )
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("backoff_table")
    @classmethod
    def check_backoff_table(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("backoff_table must contain at least one delay")
        if any(delay < 0 for delay in value):
            raise ValueError("backoff_table delays must not be negative")
        return value

    @model_validator(mode="after")
    def check_claim_ttl(self) -> "DispatcherConfig":
        if self.claim_ttl <= self.timeout:
            raise ValueError("claim_ttl must be longer than the delivery timeout")
        return self
