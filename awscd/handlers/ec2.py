"""The launch template shared by both scaling groups."""

import base64
from typing import Any, Dict, List, Optional

from ..models import DesiredState, ObservedState, ResourceKind
from .base import Bound, ResourceHandler

# Installs the CodeDeploy agent on Amazon Linux at first boot.
USER_DATA = """#!/bin/bash
set -e
yum update -y
yum install -y ruby wget
cd /home/ec2-user
wget https://aws-codedeploy-{region}.s3.{region}.amazonaws.com/latest/install
chmod +x ./install
./install auto
systemctl enable codedeploy-agent
systemctl start codedeploy-agent
"""


class LaunchTemplateHandler(ResourceHandler):
    kind = ResourceKind.LAUNCH_TEMPLATE
    service_name = "ec2"
    compared_fields = ("ami_id", "instance_type", "security_group_ids", "key_name", "instance_profile")

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call(
            "describe_launch_templates", missing_ok=True, label=name, LaunchTemplateNames=[name]
        )
        templates = (resp or {}).get("LaunchTemplates", [])
        if not templates:
            return None
        template = templates[0]
        template_id = template["LaunchTemplateId"]

        versions = self._call(
            "describe_launch_template_versions",
            label=name,
            LaunchTemplateId=template_id,
            Versions=["$Latest"],
        ).get("LaunchTemplateVersions", [])
        data = versions[0].get("LaunchTemplateData", {}) if versions else {}

        return self._observed(
            name,
            template_id,
            tags=self._safe_tags(template.get("Tags")),
            latest_version=template.get("LatestVersionNumber"),
            ami_id=data.get("ImageId"),
            instance_type=data.get("InstanceType"),
            security_group_ids=sorted(data.get("SecurityGroupIds", [])),
            key_name=data.get("KeyName"),
            instance_profile=data.get("IamInstanceProfile", {}).get("Name"),
        )

    def _template_data(self, desired: DesiredState) -> Dict[str, Any]:
        attrs = desired.attributes
        user_data = USER_DATA.format(region=self.ctx.region)
        data: Dict[str, Any] = {
            "ImageId": attrs["ami_id"],
            "InstanceType": attrs["instance_type"],
            "IamInstanceProfile": {"Name": attrs["instance_profile"]},
            "UserData": base64.b64encode(user_data.encode()).decode(),
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": self._tag_list(self._project_tags(Name=f"{self.ctx.project_name}-instance")),
                }
            ],
        }
        if attrs.get("security_group_ids"):
            data["SecurityGroupIds"] = list(attrs["security_group_ids"])
        if attrs.get("key_name"):
            data["KeyName"] = attrs["key_name"]
        return data

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        self._call(
            "create_launch_template",
            label=desired.name,
            LaunchTemplateName=desired.name,
            LaunchTemplateData=self._template_data(desired),
            TagSpecifications=[
                {
                    "ResourceType": "launch-template",
                    "Tags": self._tag_list(self._project_tags()),
                }
            ],
        )
        self._log_write("create", desired.name, ami_id=desired.attributes["ami_id"])
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        """Publish a new version and make it the default."""
        resp = self._call(
            "create_launch_template_version",
            label=desired.name,
            LaunchTemplateId=observed.provider_id,
            LaunchTemplateData=self._template_data(desired),
        )
        version = resp["LaunchTemplateVersion"]["VersionNumber"]
        self._call(
            "modify_launch_template",
            label=desired.name,
            LaunchTemplateId=observed.provider_id,
            DefaultVersion=str(version),
        )
        self._log_write("update", desired.name, version=version)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        self._call(
            "delete_launch_template",
            missing_ok=True,
            label=observed.name,
            LaunchTemplateName=observed.name,
        )
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._observed(t["LaunchTemplateName"], t["LaunchTemplateId"])
            for t in self._paginate("describe_launch_templates", "LaunchTemplates")
            if t["LaunchTemplateName"].startswith(prefix)
        ]
