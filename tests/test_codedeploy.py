"""Tests for the CodeDeploy handlers using botocore's Stubber."""

import pytest
from botocore.stub import Stubber

from awscd.errors import AlreadyExistsError, TransientError
from awscd.handlers.codedeploy import DeploymentApplicationHandler, DeploymentGroupHandler
from awscd.models import ObservedState, ResourceKind
from awscd.topology import build_desired_states

from conftest import make_config

K = ResourceKind

ROLE_ARN = "arn:aws:iam::123456789012:role/shop-codedeploy-role"


def _desired(config, name):
    return next(s for s in build_desired_states(config) if s.name == name)


@pytest.fixture
def bound():
    role = ObservedState(kind=K.SERVICE_ROLE, name="shop-codedeploy-role", provider_id=ROLE_ARN)
    return {role.key: role}


@pytest.fixture
def app_handler(run_context):
    handler = DeploymentApplicationHandler(run_context)
    with Stubber(handler.client) as stubber:
        handler.stubber = stubber
        yield handler
        stubber.assert_no_pending_responses()


@pytest.fixture
def group_handler(run_context):
    handler = DeploymentGroupHandler(run_context)
    with Stubber(handler.client) as stubber:
        handler.stubber = stubber
        yield handler
        stubber.assert_no_pending_responses()


def _group_info(name, **overrides):
    info = {
        "applicationName": "shop-app",
        "deploymentGroupId": "dg-1",
        "deploymentGroupName": name,
        "deploymentConfigName": "CodeDeployDefault.OneAtATime",
        "serviceRoleArn": ROLE_ARN,
        "autoScalingGroups": [],
        "ec2TagFilters": [],
        "computePlatform": "Server",
    }
    info.update(overrides)
    return {"deploymentGroupInfo": info}


# ===================================================================
# Application
# ===================================================================


class TestDeploymentApplicationHandler:
    def test_fetch(self, app_handler):
        app_handler.stubber.add_response(
            "get_application",
            {"application": {"applicationId": "app-1", "applicationName": "shop-app", "computePlatform": "Lambda"}},
            {"applicationName": "shop-app"},
        )
        observed = app_handler.fetch("shop-app")
        assert observed.provider_id == "app-1"
        assert observed.attributes["compute_platform"] == "Lambda"

    def test_fetch_missing(self, app_handler):
        app_handler.stubber.add_client_error(
            "get_application", service_error_code="ApplicationDoesNotExistException", http_status_code=400
        )
        assert app_handler.fetch("shop-app") is None

    def test_fetch_throttled(self, app_handler):
        app_handler.stubber.add_client_error(
            "get_application", service_error_code="ThrottlingException", http_status_code=400
        )
        with pytest.raises(TransientError) as exc_info:
            app_handler.fetch("shop-app")
        assert exc_info.value.code == "ThrottlingException"

    def test_create(self, app_handler, desired_config):
        app_handler.stubber.add_response(
            "create_application",
            {"applicationId": "app-1"},
            {
                "applicationName": "shop-app",
                "computePlatform": "Server",
                "tags": [{"Key": "Project", "Value": "shop"}],
            },
        )
        app_handler.stubber.add_response(
            "get_application",
            {"application": {"applicationId": "app-1", "applicationName": "shop-app", "computePlatform": "Server"}},
        )
        observed = app_handler.create(_desired(desired_config, "shop-app"), {})
        assert observed.attributes["compute_platform"] == "Server"

    def test_create_existing(self, app_handler, desired_config):
        app_handler.stubber.add_client_error(
            "create_application", service_error_code="ApplicationAlreadyExistsException", http_status_code=400
        )
        with pytest.raises(AlreadyExistsError):
            app_handler.create(_desired(desired_config, "shop-app"), {})

    def test_scan(self, app_handler):
        app_handler.stubber.add_response("list_applications", {"applications": ["shop-app", "other-app"]})
        assert [o.name for o in app_handler.scan("shop-")] == ["shop-app"]


# ===================================================================
# Deployment groups
# ===================================================================


class TestDeploymentGroupHandler:
    def test_create_server_group(self, group_handler, desired_config, bound):
        group_handler.stubber.add_response(
            "create_deployment_group",
            {"deploymentGroupId": "dg-1"},
            {
                "deploymentGroupName": "shop-dg-production",
                "tags": [
                    {"Key": "Environment", "Value": "production"},
                    {"Key": "Project", "Value": "shop"},
                ],
                "applicationName": "shop-app",
                "deploymentConfigName": "CodeDeployDefault.OneAtATime",
                "serviceRoleArn": ROLE_ARN,
                "autoScalingGroups": ["shop-production-asg"],
            },
        )
        group_handler.stubber.add_response(
            "get_deployment_group",
            _group_info(
                "shop-dg-production",
                autoScalingGroups=[{"name": "shop-production-asg", "hook": "hook-1"}],
            ),
            {"applicationName": "shop-app", "deploymentGroupName": "shop-dg-production"},
        )

        desired = _desired(desired_config, "shop-dg-production")
        observed = group_handler.create(desired, bound)

        assert observed.attributes["auto_scaling_groups"] == ["shop-production-asg"]
        assert observed.attributes["service_role"] == "shop-codedeploy-role"
        assert group_handler.diff(desired, observed) == {}

    def test_create_lambda_group_uses_blue_green(self, group_handler, bound):
        config = make_config(compute_platform="Lambda")
        group_handler.stubber.add_response(
            "create_deployment_group",
            {"deploymentGroupId": "dg-2"},
            {
                "deploymentGroupName": "shop-dg-staging",
                "tags": [
                    {"Key": "Environment", "Value": "staging"},
                    {"Key": "Project", "Value": "shop"},
                ],
                "applicationName": "shop-app",
                "deploymentConfigName": "CodeDeployDefault.LambdaCanary10Percent5Minutes",
                "serviceRoleArn": ROLE_ARN,
                "deploymentStyle": {
                    "deploymentType": "BLUE_GREEN",
                    "deploymentOption": "WITH_TRAFFIC_CONTROL",
                },
            },
        )
        group_handler.stubber.add_response(
            "get_deployment_group",
            _group_info(
                "shop-dg-staging",
                deploymentConfigName="CodeDeployDefault.LambdaCanary10Percent5Minutes",
                computePlatform="Lambda",
            ),
        )

        observed = group_handler.create(_desired(config, "shop-dg-staging"), bound)
        assert observed.attributes["compute_platform"] == "Lambda"

    def test_update_in_place(self, group_handler, desired_config, bound):
        desired = _desired(desired_config, "shop-dg-staging")
        group_handler.stubber.add_response(
            "get_deployment_group",
            _group_info("shop-dg-staging", deploymentConfigName="CodeDeployDefault.AllAtOnce"),
        )
        observed = group_handler.fetch("shop-dg-staging")
        assert set(group_handler.diff(desired, observed)) == {"deployment_config", "auto_scaling_groups"}

        group_handler.stubber.add_response(
            "update_deployment_group",
            {},
            {
                "currentDeploymentGroupName": "shop-dg-staging",
                "applicationName": "shop-app",
                "deploymentConfigName": "CodeDeployDefault.OneAtATime",
                "serviceRoleArn": ROLE_ARN,
                "autoScalingGroups": ["shop-nonprod-asg"],
                "ec2TagFilters": [],
            },
        )
        group_handler.stubber.add_response(
            "get_deployment_group",
            _group_info("shop-dg-staging", autoScalingGroups=[{"name": "shop-nonprod-asg"}]),
        )
        updated = group_handler.update(desired, observed, bound)
        assert group_handler.diff(desired, updated) == {}

    def test_switch_from_scaling_group_to_tags_clears_groups(self, group_handler, bound):
        config = make_config(target={"type": "tags", "tag_value": "shop"}, scaling=None)
        desired = _desired(config, "shop-dg-production")
        tag_filter = {"Key": "Name", "Value": "shop", "Type": "KEY_AND_VALUE"}

        group_handler.stubber.add_response(
            "get_deployment_group",
            _group_info("shop-dg-production", autoScalingGroups=[{"name": "shop-production-asg"}]),
        )
        observed = group_handler.fetch("shop-dg-production")
        assert set(group_handler.diff(desired, observed)) == {"auto_scaling_groups", "ec2_tag_filters"}

        group_handler.stubber.add_response(
            "update_deployment_group",
            {},
            {
                "currentDeploymentGroupName": "shop-dg-production",
                "applicationName": "shop-app",
                "deploymentConfigName": "CodeDeployDefault.OneAtATime",
                "serviceRoleArn": ROLE_ARN,
                "autoScalingGroups": [],
                "ec2TagFilters": [tag_filter],
            },
        )
        group_handler.stubber.add_response(
            "get_deployment_group",
            _group_info("shop-dg-production", ec2TagFilters=[tag_filter]),
        )
        updated = group_handler.update(desired, observed, bound)
        assert group_handler.diff(desired, updated) == {}

    def test_missing_service_role_is_transient(self, group_handler, desired_config):
        with pytest.raises(TransientError, match="not available"):
            group_handler.create(_desired(desired_config, "shop-dg-production"), {})

    def test_scan_walks_project_applications(self, group_handler):
        group_handler.stubber.add_response("list_applications", {"applications": ["shop-app", "other-app"]})
        group_handler.stubber.add_response(
            "list_deployment_groups",
            {"applicationName": "shop-app", "deploymentGroups": ["shop-dg-production", "shop-dg-staging"]},
            {"applicationName": "shop-app"},
        )
        found = group_handler.scan("shop-")
        assert [o.name for o in found] == ["shop-dg-production", "shop-dg-staging"]
        assert all(o.attributes["application"] == "shop-app" for o in found)
