"""Runtime settings for stepgraph, loaded from the environment."""

import logging
from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging_config import configure_logging


class ApiTarget(BaseModel):
    """A secondary API that ``api_endpoint`` steps may address by id."""

    base_url: str
    auth_token: Optional[str] = None


class Settings(BaseSettings):
    """Settings for executors, HTTP transport and logging."""

    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    api_base_url: str = Field(
        default="",
        description="Base URL prepended to api_endpoint paths for the main API",
    )
    api_auth_token: Optional[str] = Field(
        default=None,
        description="Bearer token sent with main API requests",
    )
    secondary_apis: Dict[str, ApiTarget] = Field(default_factory=dict)

    http_timeout_seconds: float = Field(default=30.0, gt=0)
    max_flow_steps: int = Field(
        default=500,
        gt=0,
        description="Upper bound on steps executed in one executor call",
    )
    timezone: str = Field(default="UTC", description="Zone used for filename timestamps")

    model_config = SettingsConfigDict(
        env_prefix="STEPGRAPH_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        configure_logging(self.log_level, json_output=self.log_json)
        logging.getLogger(__name__).debug("Logging configured at %s", self.log_level)


@lru_cache
def get_settings() -> Settings:
    return Settings()
