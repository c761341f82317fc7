"""Deterministic resource names.

Names are the only identity the planner uses; provider-issued IDs never
appear at the planning layer. Every function here is pure.
"""

from typing import Optional

from .errors import ValidationError
from .models import ResourceKind

BRANCH_ENVIRONMENTS = {
    "main": "production",
    "staging": "staging",
    "develop": "development",
}
STANDARD_BRANCHES = ("main", "staging", "develop")
ENVIRONMENTS = ("production", "staging", "development")

PRODUCTION_TIER = "production"
NONPROD_TIER = "nonprod"

# Roles created before the deployment tier vs. roles shared by all branch
# pipelines.
SERVICE_ROLE_PURPOSES = ("codedeploy", "ec2")
PIPELINE_ROLE_PURPOSES = ("codebuild", "codepipeline")
ROLE_PURPOSES = SERVICE_ROLE_PURPOSES + PIPELINE_ROLE_PURPOSES


def environment_for_branch(branch: str) -> str:
    """Map a git branch to its deployment environment."""
    return BRANCH_ENVIRONMENTS.get(branch, "development")


def scaling_tier(environment: str) -> str:
    """Production gets its own scaling group; everything else shares one."""
    return PRODUCTION_TIER if environment == "production" else NONPROD_TIER


def resource_name(
    project_name: str,
    kind: ResourceKind,
    environment: Optional[str] = None,
    branch: Optional[str] = None,
    purpose: Optional[str] = None,
) -> str:
    """Return the deterministic name for a resource.

    ``environment`` selects the deployment group, and (through
    :func:`scaling_tier`) the target group and scaling group. ``branch``
    selects the build project and pipeline. ``purpose`` selects the service
    role.
    """
    p = project_name

    if kind == ResourceKind.SERVICE_ROLE:
        if purpose not in ROLE_PURPOSES:
            raise ValidationError("purpose", purpose, f"one of {ROLE_PURPOSES}")
        return f"{p}-{purpose}-role"
    if kind == ResourceKind.INSTANCE_PROFILE:
        return f"{p}-instance-profile"
    if kind == ResourceKind.ARTIFACT_BUCKET:
        return f"{p}-codedeploy"
    if kind == ResourceKind.LAUNCH_TEMPLATE:
        return f"{p}-launch-template"
    if kind == ResourceKind.LOAD_BALANCER:
        return f"{p}-alb"
    if kind == ResourceKind.TARGET_GROUP:
        tier = scaling_tier(_required(environment, "environment", kind))
        return f"{p}-prod-tg" if tier == PRODUCTION_TIER else f"{p}-nonprod-tg"
    if kind == ResourceKind.SCALING_GROUP:
        tier = scaling_tier(_required(environment, "environment", kind))
        return f"{p}-production-asg" if tier == PRODUCTION_TIER else f"{p}-nonprod-asg"
    if kind == ResourceKind.DEPLOYMENT_APPLICATION:
        return f"{p}-app"
    if kind == ResourceKind.DEPLOYMENT_GROUP:
        return f"{p}-dg-{_required(environment, 'environment', kind)}"
    if kind == ResourceKind.BUILD_PROJECT:
        return f"{p}-{_required(branch, 'branch', kind)}-build"
    if kind == ResourceKind.PIPELINE:
        return f"{p}-{_required(branch, 'branch', kind)}-pipeline"

    raise ValidationError("kind", kind, "a known ResourceKind")


def role_purpose(project_name: str, role_name: str) -> Optional[str]:
    """Return the purpose whose deterministic role name equals *role_name*."""
    for purpose in ROLE_PURPOSES:
        if resource_name(project_name, ResourceKind.SERVICE_ROLE, purpose=purpose) == role_name:
            return purpose
    return None


# Provisioning sequence. Service roles appear twice: deployment roles come
# first, build/pipeline roles are created after the deployment groups.
_TIERS = {
    ResourceKind.INSTANCE_PROFILE: 1,
    ResourceKind.ARTIFACT_BUCKET: 2,
    ResourceKind.LAUNCH_TEMPLATE: 3,
    ResourceKind.TARGET_GROUP: 4,
    ResourceKind.LOAD_BALANCER: 5,
    ResourceKind.SCALING_GROUP: 6,
    ResourceKind.DEPLOYMENT_APPLICATION: 7,
    ResourceKind.DEPLOYMENT_GROUP: 8,
    ResourceKind.BUILD_PROJECT: 10,
    ResourceKind.PIPELINE: 11,
}


def provision_tier(kind: ResourceKind, purpose: Optional[str] = None) -> int:
    """Position of a resource in the fixed provisioning sequence."""
    if kind == ResourceKind.SERVICE_ROLE:
        return 9 if purpose in PIPELINE_ROLE_PURPOSES else 0
    return _TIERS[kind]


def _required(value: Optional[str], field: str, kind: ResourceKind) -> str:
    if not value:
        raise ValidationError(field, value, f"required for {kind.value} names")
    return value
