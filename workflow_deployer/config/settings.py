"""
Environment-aware configuration settings for the workflow deployer.

Supports dev, test, and prod environments with appropriate defaults.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class EngineSettings(BaseSettings):
    """Workflow engine (n8n public API) connection settings."""

    model_config = SettingsConfigDict(env_prefix="N8N_")

    api_url: str = Field(default="http://localhost:5678", description="Base URL of the engine")
    api_key: Optional[str] = Field(default=None, description="API key sent as X-N8N-API-KEY")
    timeout: float = Field(default=30.0, description="Per-request timeout (seconds)")
    connect_timeout: float = Field(default=5.0, description="Connection timeout (seconds)")
    page_size: int = Field(default=100, ge=1, le=250, description="Page size when listing workflows")

    @property
    def base_api_url(self) -> str:
        """Versioned REST API root."""
        return f"{self.api_url.rstrip('/')}/api/v1"


class DeploySettings(BaseSettings):
    """Two-phase deployment settings."""

    model_config = SettingsConfigDict(env_prefix="DEPLOY_")

    workflows_dir: str = Field(default="workflows", description="Directory of workflow JSON files")
    max_concurrency: int = Field(default=4, ge=1, le=64, description="Phase 1 parallel writes")
    activate: bool = Field(default=True, description="Run phase 2 (activation) after materializing")
    halt_on_activation_failure: bool = Field(
        default=True,
        description="Stop phase 2 at the first activation failure",
    )
    deactivate_before_update: bool = Field(
        default=True,
        description="Deactivate an active workflow before overwriting it",
    )
    extra_invoker_node_types: list[str] = Field(
        default_factory=list,
        description="Additional node types that invoke another workflow by reference",
    )


class RetrySettings(BaseSettings):
    """Retry policy for transient engine failures."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    max_retries: int = Field(default=3, ge=0, le=10, description="Maximum retry attempts")
    initial_delay: float = Field(default=1.0, ge=0.0, description="Initial retry delay (seconds)")
    max_delay: float = Field(default=30.0, ge=0.0, description="Maximum retry delay (seconds)")
    exponential_base: float = Field(default=2.0, ge=1.0, le=10.0, description="Exponential backoff base")
    jitter: bool = Field(default=True, description="Add jitter to retry delays")

    @model_validator(mode="after")
    def validate_delays(self) -> "RetrySettings":
        """Ensure max_delay is greater than initial_delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Workflow Deployer")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Sub-settings
    engine: EngineSettings = Field(default_factory=EngineSettings)
    deploy: DeploySettings = Field(default_factory=DeploySettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        return Environment(v.lower())

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PROD


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
