"""Agent configuration via Pydantic Settings, plus the per-run context."""

from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentConfig(BaseSettings):
    """Configuration for awscd.

    Every value can be overridden through ``AWSCD_``-prefixed environment
    variables (``AWSCD_AWS_REGION``, ``AWSCD_POLL_INTERVAL_SECONDS`` ...).
    """

    aws_region: str = "us-east-1"
    aws_profile: Optional[str] = None
    descriptor_dir: str = ".codedeploy"
    descriptor_file: str = "config"

    # Settle-wait polling bounds
    poll_interval_seconds: float = Field(default=5.0, ge=0)
    scaling_drain_timeout_seconds: float = Field(default=300.0, gt=0)
    load_balancer_delete_timeout_seconds: float = Field(default=300.0, gt=0)
    resource_gone_timeout_seconds: float = Field(default=120.0, gt=0)

    # botocore standard-mode retries; nothing retries above the SDK
    max_attempts: int = Field(default=5, ge=1)

    log_level: str = "INFO"
    log_format: str = "console"

    model_config = SettingsConfigDict(env_prefix="AWSCD_")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return v


_global_config: Optional[AgentConfig] = None


def get_config() -> AgentConfig:
    """Return agent configuration."""
    global _global_config
    if _global_config is None:
        _global_config = AgentConfig()
    return _global_config


def set_config(config: AgentConfig) -> None:
    """Replace the cached configuration."""
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Drop the cached configuration (used by tests)."""
    global _global_config
    _global_config = None


@dataclass(frozen=True)
class RunContext:
    """Everything a single invocation needs to talk to the provider.

    Passed explicitly to inventory, planning, provisioning, teardown and
    persistence calls; nothing reads region or project from globals.
    """

    project_name: str
    region: str
    session: boto3.Session
    config: AgentConfig

    def client(self, service: str):
        """Return a boto3 client for *service* in the run's region."""
        retries = {"max_attempts": self.config.max_attempts, "mode": "standard"}
        return self.session.client(service, region_name=self.region, config=BotoConfig(retries=retries))


def make_session(region: str, profile: Optional[str] = None) -> boto3.Session:
    """Create a boto3 session."""
    kwargs = {"region_name": region}
    if profile:
        kwargs["profile_name"] = profile
    return boto3.Session(**kwargs)
