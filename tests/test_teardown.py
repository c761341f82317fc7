"""Tests for teardown scanning and ordered deletion."""

import pytest

from awscd.errors import TeardownStateError, TimeoutError
from awscd.inventory import ResourceInventory
from awscd.models import BoundNames, ComputePlatform, ResourceKey, ResourceKind
from awscd.persistence import ConfigPersistence, bound_names
from awscd.planner import ReconciliationPlanner
from awscd.provisioner import Provisioner
from awscd.teardown import TeardownExecutor, TeardownPlanner, TeardownState

K = ResourceKind


@pytest.fixture
def provisioned(cloud, desired_config, agent_config):
    """Apply the full topology into the fake cloud and return the plan."""
    plan = ReconciliationPlanner(ResourceInventory(cloud.handlers)).plan(desired_config)
    Provisioner(cloud.handlers, agent_config).apply(plan)
    cloud.calls.clear()
    return plan


@pytest.fixture
def manifest(cloud, provisioned):
    return TeardownPlanner(ResourceInventory(cloud.handlers)).scan("shop")


def _executor(manifest, cloud, agent_config, **kwargs):
    return TeardownExecutor(manifest, cloud.handlers, agent_config, **kwargs)


# ===================================================================
# Manifest
# ===================================================================


class TestTeardownPlanner:
    def test_finds_everything_with_the_prefix(self, cloud, provisioned):
        cloud.put(K.ARTIFACT_BUCKET, "other-project-bucket")
        manifest = TeardownPlanner(ResourceInventory(cloud.handlers)).scan("shop")

        assert {r.key for r in manifest.resources} == {a.key for a in provisioned.actions}
        assert manifest.counts()["DeploymentGroup"] == 3
        assert not manifest.is_empty

    def test_dependents_listed_before_dependencies(self, manifest, provisioned):
        position = {r.key: i for i, r in enumerate(manifest.resources)}
        for key in position:
            for dep in provisioned.graph.dependencies_of(key):
                assert position[key] < position[dep], f"{key} must be deleted before {dep}"

    def test_scan_failure_is_recorded(self, cloud, provisioned):
        cloud.scan_failures.add(K.PIPELINE)
        manifest = TeardownPlanner(ResourceInventory(cloud.handlers)).scan("shop")

        assert "Pipeline" in manifest.scan_errors
        assert manifest.counts().get("Pipeline") is None
        assert manifest.counts()["BuildProject"] == 2

    def test_descriptor_adds_unprefixed_bucket(self, cloud):
        cloud.put(K.ARTIFACT_BUCKET, "legacy-artifacts")
        names = BoundNames(
            project_name="shop",
            region="us-west-2",
            application_name="shop-app",
            compute_platform=ComputePlatform.SERVER,
            deployment_config="CodeDeployDefault.OneAtATime",
            service_role_name="shop-codedeploy-role",
            artifact_bucket="legacy-artifacts",
            appspec_location="appspec.yml",
        )
        manifest = TeardownPlanner(ResourceInventory(cloud.handlers)).scan("shop", names)
        assert [b.name for b in manifest.buckets] == ["legacy-artifacts"]

    def test_empty_account(self, cloud):
        manifest = TeardownPlanner(ResourceInventory(cloud.handlers)).scan("shop")
        assert manifest.is_empty


# ===================================================================
# Execution
# ===================================================================


class TestTeardownExecutor:
    def test_deletes_in_manifest_order_and_keeps_bucket(self, cloud, manifest, agent_config):
        executor = _executor(manifest, cloud, agent_config)
        executor.confirm()
        results = executor.execute()

        deleted = [r.name for r in results if r.deleted]
        expected = [r.name for r in manifest.resources if r.kind != K.ARTIFACT_BUCKET]
        assert deleted == expected
        assert executor.state == TeardownState.DONE
        assert cloud.get(K.ARTIFACT_BUCKET, "shop-codedeploy") is not None

    def test_bucket_deleted_with_confirmation(self, cloud, manifest, agent_config):
        executor = _executor(manifest, cloud, agent_config)
        executor.confirm()
        executor.confirm_bucket_deletion()
        executor.execute()

        assert cloud.get(K.ARTIFACT_BUCKET, "shop-codedeploy") is None
        assert cloud.resources == {}

    def test_scaling_groups_drained_before_delete(self, cloud, manifest, agent_config):
        cloud.get(K.SCALING_GROUP, "shop-production-asg").attributes["instance_count"] = 2
        executor = _executor(manifest, cloud, agent_config)
        executor.confirm()
        executor.execute()

        key = ResourceKey(kind=K.SCALING_GROUP, name="shop-production-asg")
        calls = [c for c in cloud.calls if c[1] == key]
        assert calls == [("drain", key), ("delete", key)]

    def test_drain_timeout_aborts(self, cloud, manifest, agent_config):
        key = ResourceKey(kind=K.SCALING_GROUP, name="shop-production-asg")
        cloud.get(K.SCALING_GROUP, key.name).attributes["instance_count"] = 2
        cloud.sticky.add(key)
        executor = _executor(manifest, cloud, agent_config)
        executor.confirm()

        with pytest.raises(TimeoutError):
            executor.execute()
        assert executor.state == TeardownState.ABORTED
        assert executor.results[-1].name == key.name
        assert not executor.results[-1].deleted
        # Nothing the group depends on was touched
        assert cloud.get(K.LAUNCH_TEMPLATE, "shop-launch-template") is not None

    def test_load_balancer_waits_until_gone(self, cloud, manifest, agent_config):
        key = ResourceKey(kind=K.LOAD_BALANCER, name="shop-alb")
        cloud.lingering.add(key)
        executor = _executor(manifest, cloud, agent_config)
        executor.confirm()
        results = executor.execute()

        assert next(r for r in results if r.name == "shop-alb").deleted
        assert cloud.get(K.LOAD_BALANCER, "shop-alb") is None

    def test_failed_delete_is_reported_and_run_continues(self, cloud, manifest, agent_config):
        key = ResourceKey(kind=K.SERVICE_ROLE, name="shop-codebuild-role")
        cloud.fail_on_delete.add(key)
        executor = _executor(manifest, cloud, agent_config)
        executor.confirm()
        results = executor.execute()

        failed = [r for r in results if not r.deleted]
        assert [r.name for r in failed] == ["shop-codebuild-role"]
        assert "dependency violation" in failed[0].error
        assert cloud.get(K.DEPLOYMENT_APPLICATION, "shop-app") is None
        assert executor.state == TeardownState.DONE

    def test_results_streamed(self, cloud, manifest, agent_config):
        seen = []
        executor = _executor(manifest, cloud, agent_config, on_result=seen.append)
        executor.confirm()
        assert executor.execute() == seen

    def test_descriptor_removed_on_request(self, cloud, manifest, agent_config, desired_config, tmp_path):
        persistence = ConfigPersistence(agent_config)
        persistence.save(tmp_path, bound_names(desired_config))
        executor = _executor(manifest, cloud, agent_config, persistence=persistence)
        executor.confirm()
        executor.confirm_descriptor_deletion(tmp_path)
        executor.execute()

        assert persistence.find(tmp_path) is None


class TestTeardownStates:
    def test_execute_requires_confirmation(self, cloud, manifest, agent_config):
        executor = _executor(manifest, cloud, agent_config)
        with pytest.raises(TeardownStateError):
            executor.execute()
        assert cloud.calls == []

    def test_abort_is_final(self, cloud, manifest, agent_config):
        executor = _executor(manifest, cloud, agent_config)
        executor.abort()
        assert executor.state == TeardownState.ABORTED
        with pytest.raises(TeardownStateError):
            executor.confirm()
        with pytest.raises(TeardownStateError):
            executor.execute()

    def test_no_confirmations_after_done(self, cloud, manifest, agent_config):
        executor = _executor(manifest, cloud, agent_config)
        executor.confirm()
        executor.execute()
        with pytest.raises(TeardownStateError):
            executor.confirm_bucket_deletion()

    def test_descriptor_deletion_needs_persistence(self, cloud, manifest, agent_config, tmp_path):
        executor = _executor(manifest, cloud, agent_config)
        with pytest.raises(TeardownStateError):
            executor.confirm_descriptor_deletion(tmp_path)
