"""Application load balancer and its target groups."""

from typing import Any, Dict, List, Optional

from ..models import DesiredState, ObservedState, ResourceKind
from .base import Bound, ResourceHandler

LISTENER_PORT = 80


def target_group_name_from_arn(arn: Optional[str]) -> Optional[str]:
    """``arn:...:targetgroup/<name>/<id>`` -> ``<name>``."""
    if not arn or "targetgroup/" not in arn:
        return None
    return arn.split("targetgroup/", 1)[1].split("/", 1)[0]


class TargetGroupHandler(ResourceHandler):
    """HTTP target groups, one per scaling tier.

    Protocol, port, VPC and target type cannot change after creation.
    """

    kind = ResourceKind.TARGET_GROUP
    service_name = "elbv2"
    compared_fields = ("health_check_path",)

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call("describe_target_groups", missing_ok=True, label=name, Names=[name])
        groups = (resp or {}).get("TargetGroups", [])
        if not groups:
            return None
        return self._to_observed(groups[0])

    def _to_observed(self, tg: Dict[str, Any]) -> ObservedState:
        return self._observed(
            tg["TargetGroupName"],
            tg["TargetGroupArn"],
            protocol=tg.get("Protocol"),
            port=tg.get("Port"),
            vpc_id=tg.get("VpcId"),
            target_type=tg.get("TargetType"),
            health_check_path=tg.get("HealthCheckPath"),
            load_balancers=list(tg.get("LoadBalancerArns", [])),
        )

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        attrs = desired.attributes
        resp = self._call(
            "create_target_group",
            label=desired.name,
            Name=desired.name,
            Protocol=attrs["protocol"],
            Port=attrs["port"],
            VpcId=attrs["vpc_id"],
            TargetType=attrs["target_type"],
            HealthCheckPath=attrs["health_check_path"],
            HealthCheckIntervalSeconds=30,
            HealthyThresholdCount=2,
            UnhealthyThresholdCount=3,
            Tags=self._tag_list(self._project_tags()),
        )
        self._log_write("create", desired.name, port=attrs["port"])
        return self._to_observed(resp["TargetGroups"][0])

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        self._call(
            "modify_target_group",
            label=desired.name,
            TargetGroupArn=observed.provider_id,
            HealthCheckPath=desired.attributes["health_check_path"],
        )
        self._log_write("update", desired.name)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        arn = observed.provider_id
        if not arn:
            current = self.fetch(observed.name)
            if current is None:
                return
            arn = current.provider_id
        self._call("delete_target_group", missing_ok=True, label=observed.name, TargetGroupArn=arn)
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._to_observed(tg)
            for tg in self._paginate("describe_target_groups", "TargetGroups")
            if tg["TargetGroupName"].startswith(prefix)
        ]


class LoadBalancerHandler(ResourceHandler):
    """Application load balancer with an HTTP:80 listener.

    The listener forwards to the production target group. Scheme and type
    cannot change after creation.
    """

    kind = ResourceKind.LOAD_BALANCER
    service_name = "elbv2"
    compared_fields = ("security_group_ids", "listener_target_group")

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call("describe_load_balancers", missing_ok=True, label=name, Names=[name])
        balancers = (resp or {}).get("LoadBalancers", [])
        if not balancers:
            return None
        lb = balancers[0]
        listener = self._http_listener(lb["LoadBalancerArn"], name)
        forward_to = None
        if listener is not None:
            for action in listener.get("DefaultActions", []):
                if action.get("Type") == "forward":
                    forward_to = target_group_name_from_arn(action.get("TargetGroupArn"))
        return self._observed(
            name,
            lb["LoadBalancerArn"],
            scheme=lb.get("Scheme"),
            type=lb.get("Type"),
            state=lb.get("State", {}).get("Code"),
            dns_name=lb.get("DNSName"),
            subnets=sorted(az["SubnetId"] for az in lb.get("AvailabilityZones", []) if "SubnetId" in az),
            security_group_ids=sorted(lb.get("SecurityGroups", [])),
            listener_arn=listener.get("ListenerArn") if listener else None,
            listener_target_group=forward_to,
        )

    def _http_listener(self, lb_arn: str, name: str) -> Optional[Dict[str, Any]]:
        resp = self._call("describe_listeners", missing_ok=True, label=name, LoadBalancerArn=lb_arn)
        for listener in (resp or {}).get("Listeners", []):
            if listener.get("Port") == LISTENER_PORT:
                return listener
        return None

    def _forward(self, bound: Bound, desired: DesiredState) -> List[Dict[str, Any]]:
        tg_arn = self._bound_id(
            bound, ResourceKind.TARGET_GROUP, desired.attributes["listener_target_group"]
        )
        return [{"Type": "forward", "TargetGroupArn": tg_arn}]

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        attrs = desired.attributes
        kwargs: Dict[str, Any] = {
            "Name": desired.name,
            "Subnets": list(attrs["subnets"]),
            "Scheme": attrs["scheme"],
            "Type": attrs["type"],
            "Tags": self._tag_list(self._project_tags()),
        }
        if attrs.get("security_group_ids"):
            kwargs["SecurityGroups"] = list(attrs["security_group_ids"])
        resp = self._call("create_load_balancer", label=desired.name, **kwargs)
        lb_arn = resp["LoadBalancers"][0]["LoadBalancerArn"]

        self._call(
            "create_listener",
            label=desired.name,
            LoadBalancerArn=lb_arn,
            Protocol="HTTP",
            Port=LISTENER_PORT,
            DefaultActions=self._forward(bound, desired),
        )
        self._log_write("create", desired.name, scheme=attrs["scheme"])
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        attrs = desired.attributes
        if attrs.get("security_group_ids") and sorted(attrs["security_group_ids"]) != observed.attributes.get(
            "security_group_ids"
        ):
            self._call(
                "set_security_groups",
                label=desired.name,
                LoadBalancerArn=observed.provider_id,
                SecurityGroups=list(attrs["security_group_ids"]),
            )

        listener_arn = observed.attributes.get("listener_arn")
        if listener_arn is None:
            self._call(
                "create_listener",
                label=desired.name,
                LoadBalancerArn=observed.provider_id,
                Protocol="HTTP",
                Port=LISTENER_PORT,
                DefaultActions=self._forward(bound, desired),
            )
        elif observed.attributes.get("listener_target_group") != attrs["listener_target_group"]:
            self._call(
                "modify_listener",
                label=desired.name,
                ListenerArn=listener_arn,
                DefaultActions=self._forward(bound, desired),
            )
        self._log_write("update", desired.name)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        arn = observed.provider_id
        if not arn:
            current = self.fetch(observed.name)
            if current is None:
                return
            arn = current.provider_id
        # Deleting the balancer removes its listeners.
        self._call("delete_load_balancer", missing_ok=True, label=observed.name, LoadBalancerArn=arn)
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._observed(lb["LoadBalancerName"], lb["LoadBalancerArn"], scheme=lb.get("Scheme"))
            for lb in self._paginate("describe_load_balancers", "LoadBalancers")
            if lb["LoadBalancerName"].startswith(prefix)
        ]
