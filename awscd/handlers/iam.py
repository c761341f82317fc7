"""IAM service roles and the EC2 instance profile."""

import json
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

from ..models import ComputePlatform, DesiredState, FieldChange, ObservedState, ResourceKind
from ..naming import role_purpose
from .base import Bound, ResourceHandler

TRUSTED_SERVICES = {
    "codedeploy": "codedeploy.amazonaws.com",
    "ec2": "ec2.amazonaws.com",
    "codebuild": "codebuild.amazonaws.com",
    "codepipeline": "codepipeline.amazonaws.com",
}

_AWS_POLICY = "arn:aws:iam::aws:policy/"

CODEDEPLOY_POLICIES = {
    ComputePlatform.SERVER: _AWS_POLICY + "service-role/AWSCodeDeployRole",
    ComputePlatform.LAMBDA: _AWS_POLICY + "service-role/AWSCodeDeployRoleForLambda",
    ComputePlatform.ECS: _AWS_POLICY + "AWSCodeDeployRoleForECS",
}
EC2_POLICIES = (
    _AWS_POLICY + "service-role/AmazonEC2RoleforAWSCodeDeploy",
    _AWS_POLICY + "AmazonSSMReadOnlyAccess",
)


def trust_policy(purpose: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": TRUSTED_SERVICES[purpose]},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def managed_policies(purpose: str, platform: ComputePlatform) -> List[str]:
    if purpose == "codedeploy":
        return [CODEDEPLOY_POLICIES[platform]]
    if purpose == "ec2":
        return list(EC2_POLICIES)
    return []


def inline_policies(purpose: str, project_name: str, bucket: str, region: str) -> Dict[str, Dict[str, Any]]:
    """Inline policies scoped to the project's bucket, parameters and builds."""
    bucket_arns = [f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"]
    parameters = f"arn:aws:ssm:{region}:*:parameter/{project_name}/*"

    if purpose == "codebuild":
        return {
            f"{project_name}-codebuild-policy": {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Action": [
                            "logs:CreateLogGroup",
                            "logs:CreateLogStream",
                            "logs:PutLogEvents",
                        ],
                        "Resource": f"arn:aws:logs:{region}:*:log-group:/aws/codebuild/{project_name}-*",
                    },
                    {
                        "Effect": "Allow",
                        "Action": ["s3:GetObject", "s3:GetObjectVersion", "s3:PutObject"],
                        "Resource": bucket_arns,
                    },
                    {
                        "Effect": "Allow",
                        "Action": ["ssm:GetParameters", "ssm:GetParameter"],
                        "Resource": parameters,
                    },
                ],
            }
        }
    if purpose == "codepipeline":
        return {
            f"{project_name}-codepipeline-policy": {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Action": [
                            "s3:GetObject",
                            "s3:GetObjectVersion",
                            "s3:GetBucketVersioning",
                            "s3:PutObject",
                        ],
                        "Resource": bucket_arns,
                    },
                    {
                        "Effect": "Allow",
                        "Action": ["codebuild:BatchGetBuilds", "codebuild:StartBuild"],
                        "Resource": f"arn:aws:codebuild:{region}:*:project/{project_name}-*",
                    },
                    {
                        "Effect": "Allow",
                        "Action": [
                            "codedeploy:CreateDeployment",
                            "codedeploy:GetApplication",
                            "codedeploy:GetApplicationRevision",
                            "codedeploy:GetDeployment",
                            "codedeploy:GetDeploymentConfig",
                            "codedeploy:RegisterApplicationRevision",
                        ],
                        "Resource": "*",
                    },
                    {
                        "Effect": "Allow",
                        "Action": ["codestar-connections:UseConnection"],
                        "Resource": "*",
                    },
                ],
            }
        }
    return {}


def _policy_document(doc) -> Dict[str, Any]:
    # botocore decodes policy documents for most calls; fall back for raw
    # URL-encoded strings.
    if isinstance(doc, str):
        return json.loads(unquote(doc))
    return doc or {}


def _trusted_service(doc) -> Optional[str]:
    for statement in _policy_document(doc).get("Statement", []):
        service = statement.get("Principal", {}).get("Service")
        if isinstance(service, list):
            return service[0] if service else None
        if service:
            return service
    return None


class ServiceRoleHandler(ResourceHandler):
    """IAM roles assumed by CodeDeploy, EC2, CodeBuild and CodePipeline.

    IAM is a global service; the run's region is ignored by the client.
    """

    kind = ResourceKind.SERVICE_ROLE
    service_name = "iam"
    compared_fields = ("trust_service",)

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call("get_role", missing_ok=True, label=name, RoleName=name)
        if resp is None:
            return None
        role = resp["Role"]

        attached = self._paginate("list_attached_role_policies", "AttachedPolicies", RoleName=name)
        inline_names = self._paginate("list_role_policies", "PolicyNames", RoleName=name)
        inline = {}
        for policy_name in inline_names:
            policy = self._call(
                "get_role_policy", missing_ok=True, label=name, RoleName=name, PolicyName=policy_name
            )
            if policy is not None:
                inline[policy_name] = _policy_document(policy.get("PolicyDocument"))

        return self._observed(
            name,
            role.get("Arn"),
            tags=self._safe_tags(role.get("Tags")),
            purpose=role_purpose(self.ctx.project_name, name),
            trust_service=_trusted_service(role.get("AssumeRolePolicyDocument")),
            managed_policies=sorted(p["PolicyArn"] for p in attached),
            inline_policies=inline,
        )

    def diff(self, desired: DesiredState, observed: ObservedState) -> Dict[str, FieldChange]:
        changes = super().diff(desired, observed)

        # Extra policies attached by hand are left alone.
        want = set(desired.attributes.get("managed_policies", []))
        have = set(observed.attributes.get("managed_policies", []))
        if not want <= have:
            changes["managed_policies"] = FieldChange(observed=sorted(have), desired=sorted(want))

        want_inline = desired.attributes.get("inline_policies", {})
        have_inline = observed.attributes.get("inline_policies", {})
        stale = {
            name: doc
            for name, doc in want_inline.items()
            if json.dumps(doc, sort_keys=True) != json.dumps(have_inline.get(name), sort_keys=True)
        }
        if stale:
            changes["inline_policies"] = FieldChange(
                observed=sorted(have_inline), desired=sorted(want_inline)
            )
        return changes

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        purpose = desired.purpose
        self._call(
            "create_role",
            label=desired.name,
            RoleName=desired.name,
            AssumeRolePolicyDocument=json.dumps(trust_policy(purpose)),
            Description=f"{purpose} service role for {self.ctx.project_name}",
            Tags=self._tag_list(self._project_tags()),
        )
        self._log_write("create", desired.name, purpose=purpose)
        self._apply_policies(desired, attached=())
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        # The trust policy is always re-asserted.
        self._call(
            "update_assume_role_policy",
            label=desired.name,
            RoleName=desired.name,
            PolicyDocument=json.dumps(trust_policy(desired.purpose)),
        )
        self._apply_policies(desired, attached=observed.attributes.get("managed_policies", []))
        self._log_write("update", desired.name, purpose=desired.purpose)
        return self.fetch(desired.name)

    def _apply_policies(self, desired: DesiredState, attached) -> None:
        for arn in desired.attributes.get("managed_policies", []):
            if arn in attached:
                continue
            self._call("attach_role_policy", label=desired.name, RoleName=desired.name, PolicyArn=arn)
        for policy_name, document in desired.attributes.get("inline_policies", {}).items():
            self._call(
                "put_role_policy",
                label=desired.name,
                RoleName=desired.name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(document),
            )

    def delete(self, observed: ObservedState) -> None:
        """Detach managed policies, delete inline policies, remove the role
        from instance profiles (deleting them), then delete the role.

        Each step tolerates the dependency being already gone.
        """
        name = observed.name
        for policy in self._paginate("list_attached_role_policies", "AttachedPolicies", RoleName=name):
            self._call(
                "detach_role_policy",
                missing_ok=True,
                label=name,
                RoleName=name,
                PolicyArn=policy["PolicyArn"],
            )
        for policy_name in self._paginate("list_role_policies", "PolicyNames", RoleName=name):
            self._call(
                "delete_role_policy", missing_ok=True, label=name, RoleName=name, PolicyName=policy_name
            )
        for profile in self._paginate(
            "list_instance_profiles_for_role", "InstanceProfiles", RoleName=name
        ):
            profile_name = profile["InstanceProfileName"]
            self._call(
                "remove_role_from_instance_profile",
                missing_ok=True,
                label=name,
                InstanceProfileName=profile_name,
                RoleName=name,
            )
            self._call(
                "delete_instance_profile",
                missing_ok=True,
                label=profile_name,
                InstanceProfileName=profile_name,
            )
        self._call("delete_role", missing_ok=True, label=name, RoleName=name)
        self._log_write("delete", name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._observed(
                role["RoleName"],
                role.get("Arn"),
                purpose=role_purpose(self.ctx.project_name, role["RoleName"]),
            )
            for role in self._paginate("list_roles", "Roles")
            if role["RoleName"].startswith(prefix)
        ]


class InstanceProfileHandler(ResourceHandler):
    """The instance profile carrying the EC2 role onto launched instances."""

    kind = ResourceKind.INSTANCE_PROFILE
    service_name = "iam"
    compared_fields = ("role",)

    def fetch(self, name: str) -> Optional[ObservedState]:
        resp = self._call(
            "get_instance_profile", missing_ok=True, label=name, InstanceProfileName=name
        )
        if resp is None:
            return None
        profile = resp["InstanceProfile"]
        roles = [r["RoleName"] for r in profile.get("Roles", [])]
        return self._observed(
            name,
            profile.get("Arn"),
            tags=self._safe_tags(profile.get("Tags")),
            role=roles[0] if roles else None,
            roles=roles,
        )

    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        self._call(
            "create_instance_profile",
            label=desired.name,
            InstanceProfileName=desired.name,
            Tags=self._tag_list(self._project_tags()),
        )
        self._call(
            "add_role_to_instance_profile",
            label=desired.name,
            InstanceProfileName=desired.name,
            RoleName=desired.attributes["role"],
        )
        self._log_write("create", desired.name, role=desired.attributes["role"])
        return self.fetch(desired.name)

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        want = desired.attributes["role"]
        # A profile holds at most one role.
        for role in observed.attributes.get("roles", []):
            if role != want:
                self._call(
                    "remove_role_from_instance_profile",
                    missing_ok=True,
                    label=desired.name,
                    InstanceProfileName=desired.name,
                    RoleName=role,
                )
        if want not in observed.attributes.get("roles", []):
            self._call(
                "add_role_to_instance_profile",
                label=desired.name,
                InstanceProfileName=desired.name,
                RoleName=want,
            )
        self._log_write("update", desired.name, role=want)
        return self.fetch(desired.name)

    def delete(self, observed: ObservedState) -> None:
        current = self.fetch(observed.name)
        if current is None:
            return
        for role in current.attributes.get("roles", []):
            self._call(
                "remove_role_from_instance_profile",
                missing_ok=True,
                label=observed.name,
                InstanceProfileName=observed.name,
                RoleName=role,
            )
        self._call(
            "delete_instance_profile",
            missing_ok=True,
            label=observed.name,
            InstanceProfileName=observed.name,
        )
        self._log_write("delete", observed.name)

    def scan(self, prefix: str) -> List[ObservedState]:
        return [
            self._observed(profile["InstanceProfileName"], profile.get("Arn"))
            for profile in self._paginate("list_instance_profiles", "InstanceProfiles")
            if profile["InstanceProfileName"].startswith(prefix)
        ]
