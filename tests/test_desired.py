"""Tests for desired configuration, intent files and the topology."""

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from awscd.desired import DesiredConfig, load_intent
from awscd.errors import ValidationError
from awscd.models import ComputePlatform, DesiredState, ResourceKind
from awscd.topology import build_desired_states, rebind_config, scaling_group_names

from conftest import make_config

K = ResourceKind


def _by_name(states):
    return {s.name: s for s in states}


# ===================================================================
# DesiredConfig
# ===================================================================


class TestDesiredConfig:
    def test_platform_defaults(self):
        server = DesiredConfig(project_name="shop", region="us-west-2")
        assert server.deployment_config == "CodeDeployDefault.OneAtATime"
        assert server.appspec_location == "appspec.yml"
        assert server.artifact_bucket == "shop-codedeploy"

        lam = DesiredConfig(project_name="shop", region="us-west-2", compute_platform="Lambda")
        assert lam.deployment_config == "CodeDeployDefault.LambdaCanary10Percent5Minutes"
        assert lam.appspec_location == "appspec.yaml"

    def test_project_name_pattern(self):
        with pytest.raises(PydanticValidationError):
            DesiredConfig(project_name="Shop_App", region="us-west-2")

    def test_capacity_bounds(self):
        with pytest.raises(PydanticValidationError, match="min <= desired <= max"):
            make_config(
                scaling={
                    "launch_template": {"ami_id": "ami-1"},
                    "subnets": ["subnet-a"],
                    "production": {"min_size": 3, "max_size": 2, "desired_capacity": 2},
                }
            )

    def test_repository_format(self):
        with pytest.raises(PydanticValidationError, match="owner/repo"):
            make_config(pipeline={"repository": "shop", "connection_arn": "arn"})

    def test_is_frozen(self, desired_config):
        with pytest.raises(PydanticValidationError):
            desired_config.region = "eu-west-1"

    def test_with_updates_follows_platform(self, desired_config):
        lam = desired_config.with_updates(compute_platform=ComputePlatform.LAMBDA)
        assert lam.deployment_config == "CodeDeployDefault.LambdaCanary10Percent5Minutes"
        assert lam.appspec_location == "appspec.yaml"
        assert not lam.creates_scaling_groups

    def test_existing_groups_are_not_created(self):
        config = make_config(target={"type": "asg", "production_asg": "legacy-asg"})
        assert not config.creates_scaling_groups
        assert scaling_group_names(config) == {"production": "legacy-asg", "nonprod": "legacy-asg"}


class TestDesiredState:
    def test_scaling_group_capacity_validated(self):
        with pytest.raises(PydanticValidationError, match="min <= desired <= max"):
            DesiredState(
                kind=K.SCALING_GROUP,
                name="shop-production-asg",
                attributes={"min_size": 2, "max_size": 10, "desired_capacity": 11},
            )


# ===================================================================
# Intent files
# ===================================================================


class TestLoadIntent:
    def test_intent_over_seed(self, tmp_path):
        intent = tmp_path / "intent.yml"
        intent.write_text("region: eu-west-1\ntarget:\n  type: tags\n  tag_value: shop-web\n")
        seed = {"project_name": "shop", "region": "us-west-2", "compute_platform": "Server"}

        config = load_intent(intent, seed)

        assert config.project_name == "shop"
        assert config.region == "eu-west-1"
        assert config.target.type == "tags"

    def test_platform_change_drops_seeded_defaults(self, tmp_path):
        intent = tmp_path / "intent.yml"
        intent.write_text("compute_platform: Lambda\n")
        seed = {
            "project_name": "shop",
            "region": "us-west-2",
            "compute_platform": "Server",
            "deployment_config": "CodeDeployDefault.OneAtATime",
            "appspec_location": "appspec.yml",
        }

        config = load_intent(intent, seed)
        assert config.deployment_config == "CodeDeployDefault.LambdaCanary10Percent5Minutes"
        assert config.appspec_location == "appspec.yaml"

    def test_unreadable_yaml(self, tmp_path):
        intent = tmp_path / "intent.yml"
        intent.write_text("project_name: [unclosed\n")
        with pytest.raises(ValidationError, match="readable YAML"):
            load_intent(intent)

    def test_top_level_must_be_mapping(self, tmp_path):
        intent = tmp_path / "intent.yml"
        intent.write_text("- just\n- a list\n")
        with pytest.raises(ValidationError, match="mapping"):
            load_intent(intent)

    def test_unknown_field_rejected(self, tmp_path):
        intent = tmp_path / "intent.yml"
        intent.write_text("project_name: shop\nregion: us-west-2\nflavour: vanilla\n")
        with pytest.raises(ValidationError) as exc_info:
            load_intent(intent)
        assert exc_info.value.field == "flavour"

    def test_capacity_bounds_become_validation_error(self, tmp_path):
        intent = tmp_path / "intent.yml"
        intent.write_text(
            yaml.safe_dump(
                {
                    "project_name": "shop",
                    "region": "us-west-2",
                    "scaling": {
                        "launch_template": {"ami_id": "ami-12345678"},
                        "subnets": ["subnet-a"],
                        "production": {"min_size": 5, "max_size": 2, "desired_capacity": 3},
                    },
                }
            )
        )
        with pytest.raises(ValidationError, match="min <= desired <= max"):
            load_intent(intent)

    @pytest.mark.parametrize(
        "runtime_env",
        [
            {"defaults": {"1BAD-KEY": "x"}},
            {"defaults": ["A", "B"]},
            {"overrides": ["production"]},
            {"overrides": {"production": ["A"]}},
        ],
    )
    def test_bad_env_layers_become_validation_error(self, tmp_path, runtime_env):
        intent = tmp_path / "intent.yml"
        intent.write_text(
            yaml.safe_dump({"project_name": "shop", "region": "us-west-2", "runtime_env": runtime_env})
        )
        with pytest.raises(ValidationError) as exc_info:
            load_intent(intent)
        assert exc_info.value.field.startswith("runtime_env")


# ===================================================================
# Topology
# ===================================================================


class TestTopology:
    def test_full_server_topology(self, desired_config):
        states = _by_name(build_desired_states(desired_config))

        assert {
            "shop-codedeploy-role",
            "shop-ec2-role",
            "shop-codebuild-role",
            "shop-codepipeline-role",
            "shop-instance-profile",
            "shop-codedeploy",
            "shop-launch-template",
            "shop-prod-tg",
            "shop-nonprod-tg",
            "shop-alb",
            "shop-production-asg",
            "shop-nonprod-asg",
            "shop-app",
            "shop-dg-production",
            "shop-dg-staging",
            "shop-dg-development",
            "shop-main-build",
            "shop-main-pipeline",
            "shop-develop-build",
            "shop-develop-pipeline",
        } == set(states)

        production = states["shop-production-asg"].attributes
        assert (production["min_size"], production["max_size"], production["desired_capacity"]) == (2, 10, 2)
        assert states["shop-dg-production"].attributes["auto_scaling_groups"] == ["shop-production-asg"]
        assert states["shop-dg-staging"].attributes["auto_scaling_groups"] == ["shop-nonprod-asg"]
        assert states["shop-alb"].attributes["listener_target_group"] == "shop-prod-tg"

    def test_pipeline_targets_branch_environment(self, desired_config):
        states = _by_name(build_desired_states(desired_config))
        assert states["shop-main-pipeline"].attributes["deployment_group"] == "shop-dg-production"
        assert states["shop-develop-pipeline"].attributes["deployment_group"] == "shop-dg-development"

    def test_build_env_becomes_parameter_references(self):
        config = make_config(build_env={"defaults": {"NODE_ENV": "production"}})
        states = _by_name(build_desired_states(config))
        variables = states["shop-main-build"].attributes["environment_variables"]
        assert {
            "name": "NODE_ENV",
            "value": "/shop/production/build/NODE_ENV",
            "type": "PARAMETER_STORE",
        } in variables

    def test_deployment_groups_always_for_every_environment(self, minimal_config):
        states = _by_name(build_desired_states(minimal_config))
        groups = [s for s in states.values() if s.kind == K.DEPLOYMENT_GROUP]
        assert sorted(g.environment for g in groups) == ["development", "production", "staging"]
        assert all(g.attributes["auto_scaling_groups"] == [] for g in groups)

    def test_lambda_has_no_instance_resources(self):
        config = DesiredConfig(project_name="shop", region="us-west-2", compute_platform="Lambda")
        kinds = {s.kind for s in build_desired_states(config)}
        assert K.INSTANCE_PROFILE not in kinds
        assert "shop-ec2-role" not in _by_name(build_desired_states(config))

    def test_tag_targets(self):
        config = make_config(target={"type": "tags", "tag_key": "App", "tag_value": "shop"}, scaling=None)
        states = _by_name(build_desired_states(config))
        assert states["shop-dg-production"].attributes["ec2_tag_filters"] == [
            {"Key": "App", "Value": "shop", "Type": "KEY_AND_VALUE"}
        ]


class TestRebindConfig:
    def test_platform_rebind(self, desired_config):
        rebound = rebind_config(desired_config, K.DEPLOYMENT_APPLICATION, "compute_platform", "Lambda")
        assert rebound.compute_platform == ComputePlatform.LAMBDA

    def test_port_rebind(self, desired_config):
        rebound = rebind_config(desired_config, K.TARGET_GROUP, "port", 8080)
        assert rebound.scaling.load_balancer.app_port == 8080

    def test_unbound_attribute(self, desired_config):
        assert rebind_config(desired_config, K.TARGET_GROUP, "protocol", "HTTPS") is None
