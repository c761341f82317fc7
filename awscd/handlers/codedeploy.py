"""CodeDeploy application and per-environment deployment groups."""

from typing import Any, Dict, List, Optional

from ..models import ComputePlatform, DesiredState, ObservedState, ResourceKind
from ..naming import resource_name
from .base import Bound, ResourceHandler


def _role_name(arn: Optional[str]) -> Optional[str]:
    return arn.rsplit("/", 1)[-1] if arn else None


class DeploymentApplicationHandler(ResourceHandler):
    """The CodeDeploy application. Its compute platform is immutable."""

    kind = ResourceKind.DEPLOYMENT_APPLICATION
    service_name = "codedeploy"

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call("get_application", missing_ok=True, label=name, applicationName=name)
        if resp is None:
            return None
        app = resp["application"]
        return self._observed(
            name,
            app.get("applicationId"),
            compute_platform=app.get("computePlatform"),
        )

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        platform = desired.attributes["compute_platform"]
        self._call(
            "create_application",
            label=desired.name,
            applicationName=desired.name,
            computePlatform=platform,
            tags=self._tag_list(self._project_tags()),
        )
        self._log_write("create", desired.name, compute_platform=platform)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        # Deleting the application also deletes its deployment groups.
        self._call("delete_application", missing_ok=True, label=observed.name, applicationName=observed.name)
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._observed(app, None)
            for app in self._paginate("list_applications", "applications")
            if app.startswith(prefix)
        ]


class DeploymentGroupHandler(ResourceHandler):
    """Deployment groups ``<p>-dg-<environment>`` under the project application.

    Server groups target either scaling groups or EC2 tag filters; Lambda
    and ECS groups use blue/green with traffic control.
    """

    kind = ResourceKind.DEPLOYMENT_GROUP
    service_name = "codedeploy"
    compared_fields = ("deployment_config", "service_role", "auto_scaling_groups", "ec2_tag_filters")

    @property
    def application_name(self) -> str:
        return resource_name(self.ctx.project_name, ResourceKind.DEPLOYMENT_APPLICATION)

    def fetch(self, name: str, application: Optional[str] = None) -> Optional[ObservedState]:
        application = application or self.application_name
        resp = self._call(
            "get_deployment_group",
            missing_ok=True,
            label=name,
            applicationName=application,
            deploymentGroupName=name,
        )
        if resp is None:
            return None
        info = resp["deploymentGroupInfo"]
        return self._observed(
            name,
            info.get("deploymentGroupId"),
            application=application,
            deployment_config=info.get("deploymentConfigName"),
            service_role=_role_name(info.get("serviceRoleArn")),
            auto_scaling_groups=sorted(g["name"] for g in info.get("autoScalingGroups", [])),
            ec2_tag_filters=[
                {"Key": f.get("Key"), "Value": f.get("Value"), "Type": f.get("Type")}
                for f in info.get("ec2TagFilters", [])
            ],
            compute_platform=info.get("computePlatform"),
        )

    def _group_args(self, desired: DesiredState, bound: Bound) -> Dict[str, Any]:
        attrs = desired.attributes
        args: Dict[str, Any] = {
            "applicationName": attrs.get("application", self.application_name),
            "deploymentConfigName": attrs["deployment_config"],
            "serviceRoleArn": self._bound_id(bound, ResourceKind.SERVICE_ROLE, attrs["service_role"]),
        }
        if attrs["compute_platform"] == ComputePlatform.SERVER.value:
            if attrs.get("auto_scaling_groups"):
                args["autoScalingGroups"] = list(attrs["auto_scaling_groups"])
            if attrs.get("ec2_tag_filters"):
                args["ec2TagFilters"] = [dict(f) for f in attrs["ec2_tag_filters"]]
        else:
            args["deploymentStyle"] = {
                "deploymentType": "BLUE_GREEN",
                "deploymentOption": "WITH_TRAFFIC_CONTROL",
            }
        return args

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        self._call(
            "create_deployment_group",
            label=desired.name,
            deploymentGroupName=desired.name,
            tags=self._tag_list(self._project_tags(Environment=desired.environment)),
            **self._group_args(desired, bound),
        )
        self._log_write("create", desired.name, environment=desired.environment)
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        attrs = desired.attributes
        args = self._group_args(desired, bound)
        args.pop("deploymentStyle", None)
        if attrs["compute_platform"] == ComputePlatform.SERVER.value:
            # Targets are only cleared when sent as explicit empty lists.
            args["autoScalingGroups"] = list(attrs.get("auto_scaling_groups") or [])
            args["ec2TagFilters"] = [dict(f) for f in attrs.get("ec2_tag_filters") or []]
        self._call(
            "update_deployment_group",
            label=desired.name,
            currentDeploymentGroupName=desired.name,
            **args,
        )
        self._log_write("update", desired.name, environment=desired.environment)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        self._call(
            "delete_deployment_group",
            missing_ok=True,
            label=observed.name,
            applicationName=observed.attributes.get("application", self.application_name),
            deploymentGroupName=observed.name,
        )
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        found: List[ObservedState] = []
        for app in self._paginate("list_applications", "applications"):
            if not app.startswith(prefix):
                continue
            for group in self._paginate("list_deployment_groups", "deploymentGroups", applicationName=app):
                found.append(self._observed(group, None, application=app))
        return found
