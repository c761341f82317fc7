"""Per-branch release pipelines: Source -> Build -> Deploy."""

from typing import Any, Dict, List, Optional

from ..models import DesiredState, ObservedState, ResourceKind
from .base import Bound, ResourceHandler


def _action_config(stages: List[Dict[str, Any]], stage_name: str) -> Dict[str, str]:
    for stage in stages:
        if stage.get("name") == stage_name and stage.get("actions"):
            return stage["actions"][0].get("configuration", {})
    return {}


class PipelineHandler(ResourceHandler):
    """A CodePipeline per branch, deploying into the branch's environment."""

    kind = ResourceKind.PIPELINE
    service_name = "codepipeline"
    compared_fields = (
        "service_role",
        "artifact_bucket",
        "connection_arn",
        "repository",
        "branch",
        "build_project",
        "application",
        "deployment_group",
    )

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call("get_pipeline", missing_ok=True, label=name, name=name)
        if resp is None:
            return None
        pipeline = resp["pipeline"]
        stages = pipeline.get("stages", [])
        source = _action_config(stages, "Source")
        build = _action_config(stages, "Build")
        deploy = _action_config(stages, "Deploy")
        return self._observed(
            name,
            resp.get("metadata", {}).get("pipelineArn"),
            service_role=pipeline.get("roleArn", "").rsplit("/", 1)[-1] or None,
            artifact_bucket=pipeline.get("artifactStore", {}).get("location"),
            connection_arn=source.get("ConnectionArn"),
            repository=source.get("FullRepositoryId"),
            branch=source.get("BranchName"),
            build_project=build.get("ProjectName"),
            application=deploy.get("ApplicationName"),
            deployment_group=deploy.get("DeploymentGroupName"),
        )

    def _declaration(self, desired: DesiredState, bound: Bound) -> Dict[str, Any]:
        attrs = desired.attributes
        return {
            "name": desired.name,
            "roleArn": self._bound_id(bound, ResourceKind.SERVICE_ROLE, attrs["service_role"]),
            "artifactStore": {"type": "S3", "location": attrs["artifact_bucket"]},
            "stages": [
                {
                    "name": "Source",
                    "actions": [
                        {
                            "name": "Source",
                            "actionTypeId": {
                                "category": "Source",
                                "owner": "AWS",
                                "provider": "CodeStarSourceConnection",
                                "version": "1",
                            },
                            "configuration": {
                                "ConnectionArn": attrs["connection_arn"],
                                "FullRepositoryId": attrs["repository"],
                                "BranchName": attrs["branch"],
                                "OutputArtifactFormat": "CODE_ZIP",
                            },
                            "outputArtifacts": [{"name": "SourceOutput"}],
                        }
                    ],
                },
                {
                    "name": "Build",
                    "actions": [
                        {
                            "name": "Build",
                            "actionTypeId": {
                                "category": "Build",
                                "owner": "AWS",
                                "provider": "CodeBuild",
                                "version": "1",
                            },
                            "configuration": {"ProjectName": attrs["build_project"]},
                            "inputArtifacts": [{"name": "SourceOutput"}],
                            "outputArtifacts": [{"name": "BuildOutput"}],
                        }
                    ],
                },
                {
                    "name": "Deploy",
                    "actions": [
                        {
                            "name": "Deploy",
                            "actionTypeId": {
                                "category": "Deploy",
                                "owner": "AWS",
                                "provider": "CodeDeploy",
                                "version": "1",
                            },
                            "configuration": {
                                "ApplicationName": attrs["application"],
                                "DeploymentGroupName": attrs["deployment_group"],
                            },
                            "inputArtifacts": [{"name": "BuildOutput"}],
                        }
                    ],
                },
            ],
        }

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        self._call(
            "create_pipeline",
            label=desired.name,
            pipeline=self._declaration(desired, bound),
            tags=self._tag_list(self._project_tags(Branch=desired.branch), key="key", value="value"),
        )
        self._log_write("create", desired.name, branch=desired.branch)
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        self._call("update_pipeline", label=desired.name, pipeline=self._declaration(desired, bound))
        self._log_write("update", desired.name, branch=desired.branch)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        self._call("delete_pipeline", missing_ok=True, label=observed.name, name=observed.name)
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._observed(p["name"], None)
            for p in self._paginate("list_pipelines", "pipelines")
            if p["name"].startswith(prefix)
        ]
