"""Tests for configuration, run context and logging setup."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from awscd.config import AgentConfig, RunContext, get_config, make_session, reset_config, set_config
from awscd.logging import get_logger, setup_logging, time_operation


class TestAgentConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("AWSCD_POLL_INTERVAL_SECONDS", raising=False)
        cfg = AgentConfig()
        assert cfg.descriptor_dir == ".codedeploy"
        assert cfg.descriptor_file == "config"
        assert cfg.poll_interval_seconds == 5
        assert cfg.scaling_drain_timeout_seconds == 300
        assert cfg.resource_gone_timeout_seconds == 120
        assert cfg.log_format == "console"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("AWSCD_AWS_REGION", "eu-west-1")
        monkeypatch.setenv("AWSCD_SCALING_DRAIN_TIMEOUT_SECONDS", "60")
        cfg = AgentConfig()
        assert cfg.aws_region == "eu-west-1"
        assert cfg.scaling_drain_timeout_seconds == 60

    def test_log_level_normalised(self):
        assert AgentConfig(log_level="debug").log_level == "DEBUG"

    def test_invalid_values(self):
        with pytest.raises(PydanticValidationError, match="log_level"):
            AgentConfig(log_level="LOUD")
        with pytest.raises(PydanticValidationError):
            AgentConfig(log_format="xml")
        with pytest.raises(PydanticValidationError):
            AgentConfig(scaling_drain_timeout_seconds=0)

    def test_global_config(self):
        custom = AgentConfig(aws_region="ap-southeast-2")
        set_config(custom)
        assert get_config() is custom
        reset_config()
        assert get_config() is not custom


class TestRunContext:
    def test_client_region(self, agent_config):
        ctx = RunContext(
            project_name="shop",
            region="us-west-2",
            session=make_session("us-west-2"),
            config=agent_config,
        )
        assert ctx.client("s3").meta.region_name == "us-west-2"

    def test_client_retries_follow_config(self, run_context):
        client = run_context.client("iam")
        assert client.meta.config.retries["max_attempts"] == run_context.config.max_attempts

    def test_is_frozen(self, run_context):
        with pytest.raises(Exception):
            run_context.region = "eu-west-1"


class TestLogging:
    def test_setup_and_time_operation(self, capsys):
        setup_logging(AgentConfig(log_format="json", log_level="DEBUG"))
        logger = get_logger("awscd.test")
        with time_operation(logger, "probe", name="shop-app"):
            pass
        assert "probe" in capsys.readouterr().err
