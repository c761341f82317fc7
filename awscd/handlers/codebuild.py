"""Per-branch CodeBuild projects."""

from typing import Any, Dict, List, Optional

from ..models import DesiredState, ObservedState, ResourceKind
from .base import Bound, ResourceHandler


def _role_name(arn: Optional[str]) -> Optional[str]:
    return arn.rsplit("/", 1)[-1] if arn else None


class BuildProjectHandler(ResourceHandler):
    """Build projects fed by CodePipeline.

    Build-time variables are not stored on the project: each one is a
    ``PARAMETER_STORE`` reference to ``/<p>/<env>/build/<KEY>``.
    """

    kind = ResourceKind.BUILD_PROJECT
    service_name = "codebuild"
    compared_fields = ("service_role", "image", "compute_type", "buildspec", "environment_variables")

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call("batch_get_projects", label=name, names=[name])
        projects = resp.get("projects", [])
        if not projects:
            return None
        project = projects[0]
        env = project.get("environment", {})
        return self._observed(
            name,
            project.get("arn"),
            tags=self._safe_tags(project.get("tags"), key="key", value="value"),
            service_role=_role_name(project.get("serviceRole")),
            image=env.get("image"),
            compute_type=env.get("computeType"),
            buildspec=project.get("source", {}).get("buildspec"),
            environment_variables=[
                {"name": v["name"], "value": v["value"], "type": v.get("type", "PLAINTEXT")}
                for v in env.get("environmentVariables", [])
            ],
        )

    def _project_args(self, desired: DesiredState, bound: Bound) -> Dict[str, Any]:
        attrs = desired.attributes
        return {
            "name": desired.name,
            "description": f"{self.ctx.project_name} build for {desired.branch}",
            "source": {"type": "CODEPIPELINE", "buildspec": attrs["buildspec"]},
            "artifacts": {"type": "CODEPIPELINE"},
            "environment": {
                "type": "LINUX_CONTAINER",
                "image": attrs["image"],
                "computeType": attrs["compute_type"],
                "environmentVariables": [dict(v) for v in attrs["environment_variables"]],
            },
            "serviceRole": self._bound_id(bound, ResourceKind.SERVICE_ROLE, attrs["service_role"]),
        }

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        self._call(
            "create_project",
            label=desired.name,
            tags=self._tag_list(self._project_tags(Branch=desired.branch), key="key", value="value"),
            **self._project_args(desired, bound),
        )
        self._log_write("create", desired.name, branch=desired.branch)
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        self._call("update_project", label=desired.name, **self._project_args(desired, bound))
        self._log_write("update", desired.name, branch=desired.branch)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        self._call("delete_project", missing_ok=True, label=observed.name, name=observed.name)
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._observed(name, None)
            for name in self._paginate("list_projects", "projects")
            if name.startswith(prefix)
        ]
