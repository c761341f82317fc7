"""Tests for the resource dependency graph."""

import pytest

from awscd.errors import ValidationError
from awscd.graph import ResourceGraph
from awscd.models import DesiredState, ResourceKey, ResourceKind
from awscd.topology import build_desired_states

K = ResourceKind


def _state(kind, name, *deps, **kwargs):
    return DesiredState(kind=kind, name=name, depends_on=tuple(deps), **kwargs)


def _key(kind, name):
    return ResourceKey(kind=kind, name=name)


class TestTopologicalOrder:
    def test_dependencies_precede_dependents(self, desired_config):
        graph = ResourceGraph(build_desired_states(desired_config))
        order = graph.topological_order()
        position = {key: i for i, key in enumerate(order)}

        for key in order:
            for dep in graph.dependencies_of(key):
                assert position[dep] < position[key], f"{dep} must precede {key}"

    def test_order_is_stable(self, desired_config):
        first = ResourceGraph(build_desired_states(desired_config)).topological_order()
        second = ResourceGraph(reversed(build_desired_states(desired_config))).topological_order()
        assert first == second

    def test_ties_broken_by_tier(self):
        app = _state(K.DEPLOYMENT_APPLICATION, "shop-app")
        bucket = _state(K.ARTIFACT_BUCKET, "shop-codedeploy")
        role = _state(K.SERVICE_ROLE, "shop-codedeploy-role", purpose="codedeploy")
        order = ResourceGraph([app, bucket, role]).topological_order()
        assert [k.kind for k in order] == [K.SERVICE_ROLE, K.ARTIFACT_BUCKET, K.DEPLOYMENT_APPLICATION]

    def test_cycle_detected(self):
        a = _state(K.ARTIFACT_BUCKET, "a", _key(K.DEPLOYMENT_APPLICATION, "b"))
        b = _state(K.DEPLOYMENT_APPLICATION, "b", _key(K.ARTIFACT_BUCKET, "a"))
        graph = ResourceGraph([a, b])
        with pytest.raises(ValidationError, match="acyclic"):
            graph.topological_order()


class TestGraphStructure:
    def test_duplicate_key_rejected(self):
        graph = ResourceGraph([_state(K.ARTIFACT_BUCKET, "a")])
        with pytest.raises(ValidationError, match="unique"):
            graph.add(_state(K.ARTIFACT_BUCKET, "a"))

    def test_missing_dependency_rejected(self):
        with pytest.raises(ValidationError, match="present in the graph"):
            ResourceGraph([_state(K.DEPLOYMENT_GROUP, "g", _key(K.DEPLOYMENT_APPLICATION, "app"))])

    def test_transitive_dependents(self):
        app = _state(K.DEPLOYMENT_APPLICATION, "app")
        group = _state(K.DEPLOYMENT_GROUP, "group", app.key)
        pipeline = _state(K.PIPELINE, "pipe", group.key)
        graph = ResourceGraph([app, group, pipeline])

        assert graph.dependents_of(app.key) == {group.key, pipeline.key}
        assert graph.dependents_of(app.key, transitive=False) == {group.key}
        assert graph.dependencies_of(pipeline.key) == {group.key}
        assert len(graph) == 3
        assert app.key in graph
