"""Auto Scaling groups: one for production, one shared by non-production."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..models import DesiredState, ObservedState, ResourceKind
from .base import Bound, ResourceHandler, classify_error, error_code
from .elb import target_group_name_from_arn


class ScalingGroupHandler(ResourceHandler):
    """Scaling groups launched from the shared launch template.

    Capacity and template are updated in place. Deletion is force-delete;
    callers zero the capacity with :meth:`drain` first and wait for the group
    to disappear before removing the load balancer.
    """

    kind = ResourceKind.SCALING_GROUP
    service_name = "autoscaling"
    compared_fields = ("min_size", "max_size", "desired_capacity", "launch_template", "target_groups")

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call("describe_auto_scaling_groups", label=name, AutoScalingGroupNames=[name])
        groups = resp.get("AutoScalingGroups", [])
        if not groups:
            return None
        return self._to_observed(groups[0])

    def _to_observed(self, group: Dict[str, Any]) -> ObservedState:
        template = group.get("LaunchTemplate") or {}
        subnets = [s for s in (group.get("VPCZoneIdentifier") or "").split(",") if s]
        return self._observed(
            group["AutoScalingGroupName"],
            group.get("AutoScalingGroupARN"),
            tags=self._safe_tags(group.get("Tags")),
            min_size=group.get("MinSize"),
            max_size=group.get("MaxSize"),
            desired_capacity=group.get("DesiredCapacity"),
            launch_template=template.get("LaunchTemplateName"),
            subnets=sorted(subnets),
            target_groups=sorted(
                filter(None, (target_group_name_from_arn(a) for a in group.get("TargetGroupARNs", [])))
            ),
            target_group_arns=sorted(group.get("TargetGroupARNs", [])),
            instance_count=len(group.get("Instances", [])),
            status=group.get("Status"),
        )

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        attrs = desired.attributes
        tg_arns = [
            self._bound_id(bound, ResourceKind.TARGET_GROUP, tg) for tg in attrs.get("target_groups", [])
        ]
        tags = self._project_tags(Name=desired.name, Environment=attrs["tier"])
        kwargs: Dict[str, Any] = {
            "AutoScalingGroupName": desired.name,
            "LaunchTemplate": {
                "LaunchTemplateName": attrs["launch_template"],
                "Version": "$Latest",
            },
            "MinSize": attrs["min_size"],
            "MaxSize": attrs["max_size"],
            "DesiredCapacity": attrs["desired_capacity"],
            "VPCZoneIdentifier": ",".join(attrs["subnets"]),
            "HealthCheckType": "ELB" if tg_arns else "EC2",
            "HealthCheckGracePeriod": 300,
            "Tags": [
                {
                    "Key": k,
                    "Value": v,
                    "PropagateAtLaunch": True,
                    "ResourceId": desired.name,
                    "ResourceType": "auto-scaling-group",
                }
                for k, v in sorted(tags.items())
            ],
        }
        if tg_arns:
            kwargs["TargetGroupARNs"] = tg_arns
        self._call("create_auto_scaling_group", label=desired.name, **kwargs)
        self._log_write(
            "create",
            desired.name,
            min_size=attrs["min_size"],
            max_size=attrs["max_size"],
            desired_capacity=attrs["desired_capacity"],
        )
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        attrs = desired.attributes
        self._call(
            "update_auto_scaling_group",
            label=desired.name,
            AutoScalingGroupName=desired.name,
            LaunchTemplate={"LaunchTemplateName": attrs["launch_template"], "Version": "$Latest"},
            MinSize=attrs["min_size"],
            MaxSize=attrs["max_size"],
            DesiredCapacity=attrs["desired_capacity"],
        )
        want = set(attrs.get("target_groups", []))
        have = set(observed.attributes.get("target_groups", []))
        missing = sorted(want - have)
        stale = [
            arn
            for arn in observed.attributes.get("target_group_arns", [])
            if target_group_name_from_arn(arn) not in want
        ]
        if stale:
            self._call(
                "detach_load_balancer_target_groups",
                label=desired.name,
                AutoScalingGroupName=desired.name,
                TargetGroupARNs=stale,
            )
        if missing:
            self._call(
                "attach_load_balancer_target_groups",
                label=desired.name,
                AutoScalingGroupName=desired.name,
                TargetGroupARNs=[self._bound_id(bound, ResourceKind.TARGET_GROUP, tg) for tg in missing],
            )
        self._log_write("update", desired.name, desired_capacity=attrs["desired_capacity"])
        return self.fetch(desired.name)

    def drain(self, observed: ObservedState) -> None:
        """Scale the group to zero so its instances start terminating."""
        self._guarded(
            "update_auto_scaling_group",
            observed.name,
            AutoScalingGroupName=observed.name,
            MinSize=0,
            MaxSize=0,
            DesiredCapacity=0,
        )
        self._log_write("drain", observed.name)

    def delete(self, observed: ObservedState) -> None:
        self._guarded(
            "delete_auto_scaling_group",
            observed.name,
            AutoScalingGroupName=observed.name,
            ForceDelete=True,
        )
        self._log_write("delete", observed.name)

    def _guarded(self, method: str, name: str, **kwargs) -> None:
        # Auto Scaling reports a missing group as a ValidationError.
        try:
            getattr(self.client, method)(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            if isinstance(exc, ClientError):
                message = exc.response.get("Error", {}).get("Message", "")
                if error_code(exc) == "ValidationError" and "not found" in message.lower():
                    return
            error = classify_error(f"autoscaling:{method}", exc, self.kind.value, name)
            if error is not None:
                raise error from exc

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._to_observed(group)
            for group in self._paginate("describe_auto_scaling_groups", "AutoScalingGroups")
            if group["AutoScalingGroupName"].startswith(prefix)
        ]
