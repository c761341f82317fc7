"""Shared fixtures for awscd tests.

Uses moto v5 ``mock_aws`` to stand up fake AWS services so handlers can be
tested against realistic API responses without touching real
infrastructure.

Engine properties (ordering, idempotence, conflict safety, teardown
inversion) run against :class:`FakeCloud`, an in-memory handler registry
that records every write.
"""

import os
from typing import Dict, List, Optional, Set, Tuple

import boto3
import pytest
from moto import mock_aws

from awscd.config import AgentConfig, RunContext, reset_config
from awscd.desired import DesiredConfig
from awscd.errors import AlreadyExistsError, TransientError
from awscd.handlers import _HANDLER_MAP
from awscd.handlers.base import Bound, ResourceHandler
from awscd.models import DesiredState, ObservedState, ResourceKey, ResourceKind


# -----------------------------------------------------------------------
# Core mock context -- every test that touches AWS goes through moto
# -----------------------------------------------------------------------

@pytest.fixture(autouse=True)
def mock_aws_env():
    """Activate moto's mock_aws context for every test."""
    # Set dummy credentials so boto3 never reaches real AWS
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-west-2"

    with mock_aws():
        yield


@pytest.fixture(autouse=True)
def _reset_global_config(monkeypatch):
    """Start every test from fast-polling defaults."""
    for key in list(os.environ):
        if key.startswith("AWSCD_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AWSCD_POLL_INTERVAL_SECONDS", "0")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def aws_region():
    """Default AWS region used throughout the test suite."""
    return "us-west-2"


@pytest.fixture
def aws_session(aws_region):
    """Return a boto3 Session wired to the test region with dummy creds."""
    return boto3.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        aws_session_token="testing",
        region_name=aws_region,
    )


@pytest.fixture
def agent_config():
    """Configuration with zero poll interval and short settle-waits."""
    return AgentConfig(
        poll_interval_seconds=0,
        scaling_drain_timeout_seconds=0.05,
        load_balancer_delete_timeout_seconds=0.05,
        resource_gone_timeout_seconds=0.05,
    )


@pytest.fixture
def run_context(aws_session, aws_region, agent_config):
    return RunContext(project_name="shop", region=aws_region, session=aws_session, config=agent_config)


# -----------------------------------------------------------------------
# Desired configuration
# -----------------------------------------------------------------------

CONNECTION_ARN = "arn:aws:codestar-connections:us-west-2:123456789012:connection/abc-123"


def make_config(**overrides) -> DesiredConfig:
    """A Server project with created scaling groups, a load balancer and
    pipelines for main and develop."""
    data = {
        "project_name": "shop",
        "region": "us-west-2",
        "target": {"type": "asg"},
        "scaling": {
            "launch_template": {"ami_id": "ami-12345678", "security_group_ids": ["sg-app"]},
            "subnets": ["subnet-a", "subnet-b"],
            "load_balancer": {"vpc_id": "vpc-1", "security_group_ids": ["sg-lb"]},
        },
        "pipeline": {
            "branches": ["main", "develop"],
            "repository": "acme/shop",
            "connection_arn": CONNECTION_ARN,
        },
    }
    data.update(overrides)
    return DesiredConfig.model_validate(data)


@pytest.fixture
def desired_config():
    return make_config()


@pytest.fixture
def minimal_config():
    """Server platform with no targets, scaling or pipelines."""
    return DesiredConfig(project_name="shop", region="us-west-2")


# -----------------------------------------------------------------------
# In-memory provider
# -----------------------------------------------------------------------

class FakeHandler(ResourceHandler):
    """Handler backed by a :class:`FakeCloud` instead of a boto3 client."""

    service_name = "fake"

    def __init__(self, kind: ResourceKind, cloud: "FakeCloud"):
        self.kind = kind
        self.compared_fields = _HANDLER_MAP[kind].compared_fields
        self.cloud = cloud

    def _key(self, name: str) -> ResourceKey:
        return ResourceKey(kind=self.kind, name=name)

    def fetch(self, name: str) -> Optional[ObservedState]:
        key = self._key(name)
        if key in self.cloud.unavailable:
            raise TransientError("fake:fetch", "throttled", code="Throttling", name=name)
        observed = self.cloud.resources.get(key)
        if observed is not None and key in self.cloud.deleting:
            # Reported once more after delete, then gone.
            self.cloud.deleting.discard(key)
            self.cloud.resources.pop(key, None)
        return observed

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        key = desired.key
        self.cloud.calls.append(("create", key))
        for dep in desired.depends_on:
            assert dep in bound, f"{key} created before its dependency {dep}"
        if key in self.cloud.fail_on_create:
            raise TransientError("fake:create", "access denied", code="AccessDenied", name=desired.name)
        if key in self.cloud.resources:
            raise AlreadyExistsError(self.kind.value, desired.name)
        observed = ObservedState(
            kind=self.kind,
            name=desired.name,
            provider_id=f"id-{desired.name}",
            attributes=dict(desired.attributes, purpose=desired.purpose),
        )
        self.cloud.resources[key] = observed
        return observed

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        self.cloud.calls.append(("update", desired.key))
        updated = observed.model_copy(update={"attributes": dict(observed.attributes, **desired.attributes)})
        self.cloud.resources[desired.key] = updated
        return updated

    def delete(self, observed: ObservedState) -> None:
        key = observed.key
        self.cloud.calls.append(("delete", key))
        if key in self.cloud.fail_on_delete:
            raise TransientError("fake:delete", "dependency violation", code="DependencyViolation")
        if key in self.cloud.sticky:
            return
        if key in self.cloud.lingering:
            self.cloud.deleting.add(key)
            return
        self.cloud.resources.pop(key, None)

    def drain(self, observed: ObservedState) -> None:
        self.cloud.calls.append(("drain", observed.key))
        current = self.cloud.resources.get(observed.key)
        if current is not None and observed.key not in self.cloud.sticky:
            current.attributes["instance_count"] = 0

    def scan(self, prefix: str) -> List[ObservedState]:
        if self.kind in self.cloud.scan_failures:
            raise TransientError("fake:scan", "access denied", code="AccessDenied")
        return [o for k, o in self.cloud.resources.items() if k.kind == self.kind and o.name.startswith(prefix)]


class FakeCloud:
    """Resources keyed by ``(kind, name)`` plus a log of every write."""

    def __init__(self):
        self.resources: Dict[ResourceKey, ObservedState] = {}
        self.calls: List[Tuple[str, ResourceKey]] = []
        self.fail_on_create: Set[ResourceKey] = set()
        self.fail_on_delete: Set[ResourceKey] = set()
        self.unavailable: Set[ResourceKey] = set()
        self.sticky: Set[ResourceKey] = set()
        self.lingering: Set[ResourceKey] = set()
        self.deleting: Set[ResourceKey] = set()
        self.scan_failures: Set[ResourceKind] = set()
        self.handlers = {kind: FakeHandler(kind, self) for kind in ResourceKind}

    def put(self, kind: ResourceKind, name: str, **attributes) -> ObservedState:
        observed = ObservedState(kind=kind, name=name, provider_id=f"id-{name}", attributes=attributes)
        self.resources[observed.key] = observed
        return observed

    def get(self, kind: ResourceKind, name: str) -> Optional[ObservedState]:
        return self.resources.get(ResourceKey(kind=kind, name=name))

    def writes(self, op: str) -> List[ResourceKey]:
        return [key for action, key in self.calls if action == op]


@pytest.fixture
def cloud():
    return FakeCloud()
