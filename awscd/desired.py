"""Desired configuration for one project.

Built once per run from the persisted descriptor seed plus caller-supplied
overrides (normally a YAML intent file) and immutable afterwards.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .envvars import EnvVarLayers
from .errors import ValidationError
from .models import ComputePlatform
from .naming import STANDARD_BRANCHES

DEFAULT_DEPLOYMENT_CONFIGS = {
    ComputePlatform.SERVER: "CodeDeployDefault.OneAtATime",
    ComputePlatform.LAMBDA: "CodeDeployDefault.LambdaCanary10Percent5Minutes",
    ComputePlatform.ECS: "CodeDeployDefault.ECSCanary10Percent5Minutes",
}

DEFAULT_APPSPEC_LOCATIONS = {
    ComputePlatform.SERVER: "appspec.yml",
    ComputePlatform.LAMBDA: "appspec.yaml",
    ComputePlatform.ECS: "appspec.json",
}

_FROZEN = ConfigDict(frozen=True, extra="forbid")


class Capacity(BaseModel):
    """Scaling group capacity bounds."""

    model_config = _FROZEN

    min_size: int = Field(ge=0)
    max_size: int = Field(ge=0)
    desired_capacity: int = Field(ge=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if not (self.min_size <= self.desired_capacity <= self.max_size):
            raise ValueError(
                f"capacity needs min <= desired <= max, got "
                f"{self.min_size}/{self.desired_capacity}/{self.max_size}"
            )
        return self


class LaunchTemplateSpec(BaseModel):
    model_config = _FROZEN

    ami_id: str
    instance_type: str = "t3.micro"
    security_group_ids: List[str] = Field(default_factory=list)
    key_name: Optional[str] = None


class LoadBalancerSpec(BaseModel):
    model_config = _FROZEN

    vpc_id: str
    security_group_ids: List[str] = Field(default_factory=list)
    scheme: str = "internet-facing"
    app_port: int = Field(default=3000, gt=0, lt=65536)
    health_check_path: str = "/health"

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, v):
        if v not in ("internet-facing", "internal"):
            raise ValueError("scheme must be 'internet-facing' or 'internal'")
        return v


class ScalingSpec(BaseModel):
    """New scaling infrastructure: one launch template, two scaling groups."""

    model_config = _FROZEN

    launch_template: LaunchTemplateSpec
    subnets: List[str] = Field(min_length=1)
    production: Capacity = Capacity(min_size=2, max_size=10, desired_capacity=2)
    nonprod: Capacity = Capacity(min_size=1, max_size=3, desired_capacity=1)
    load_balancer: Optional[LoadBalancerSpec] = None


class TargetSpec(BaseModel):
    """How deployment groups find their instances (Server platform only)."""

    model_config = _FROZEN

    type: str = "asg"
    tag_key: str = "Name"
    tag_value: Optional[str] = None
    # Existing scaling groups; when unset and ``scaling`` is given the
    # engine creates its own pair.
    production_asg: Optional[str] = None
    nonprod_asg: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if v not in ("asg", "tags"):
            raise ValueError("target type must be 'asg' or 'tags'")
        return v


class PipelineSpec(BaseModel):
    model_config = _FROZEN

    branches: List[str] = Field(default_factory=lambda: list(STANDARD_BRANCHES), min_length=1)
    repository: str
    connection_arn: str
    compute_type: str = "BUILD_GENERAL1_MEDIUM"
    image: str = "aws/codebuild/standard:7.0"
    buildspec: str = "buildspec.yml"

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v):
        owner, _, repo = v.partition("/")
        if not owner or not repo or "/" in repo:
            raise ValueError("repository must look like 'owner/repo'")
        return v

    @field_validator("branches")
    @classmethod
    def validate_branches(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("branches must be unique")
        return v


class DesiredConfig(BaseModel):
    """The full target configuration for a project."""

    model_config = _FROZEN

    project_name: str = Field(pattern=r"^[a-z0-9-]+$")
    region: str
    compute_platform: ComputePlatform = ComputePlatform.SERVER
    deployment_config: Optional[str] = None
    target: Optional[TargetSpec] = None
    scaling: Optional[ScalingSpec] = None
    artifact_bucket: Optional[str] = Field(default=None, pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
    appspec_location: Optional[str] = None
    pipeline: Optional[PipelineSpec] = None
    build_env: EnvVarLayers = Field(default_factory=EnvVarLayers)
    runtime_env: EnvVarLayers = Field(default_factory=EnvVarLayers)

    @model_validator(mode="after")
    def apply_platform_defaults(self):
        # Frozen model: defaults are filled through object.__setattr__ once
        # during validation.
        if self.deployment_config is None:
            object.__setattr__(
                self, "deployment_config", DEFAULT_DEPLOYMENT_CONFIGS[self.compute_platform]
            )
        if self.appspec_location is None:
            object.__setattr__(
                self, "appspec_location", DEFAULT_APPSPEC_LOCATIONS[self.compute_platform]
            )
        if self.artifact_bucket is None:
            object.__setattr__(self, "artifact_bucket", f"{self.project_name}-codedeploy")
        return self

    @property
    def is_server(self) -> bool:
        return self.compute_platform == ComputePlatform.SERVER

    @property
    def creates_scaling_groups(self) -> bool:
        """True when the engine provisions its own launch template and ASGs."""
        if not self.is_server or self.scaling is None:
            return False
        target = self.target or TargetSpec()
        return target.type == "asg" and not (target.production_asg or target.nonprod_asg)

    def with_updates(self, **changes: Any) -> "DesiredConfig":
        """Return a re-validated copy with *changes* applied."""
        data = self.model_dump()
        data.update(changes)
        # Platform-derived defaults follow the new platform unless given
        if "compute_platform" in changes:
            if "deployment_config" not in changes:
                data["deployment_config"] = None
            if "appspec_location" not in changes:
                data["appspec_location"] = None
        return DesiredConfig.model_validate(data)


def load_intent(path: Path, seed: Optional[Dict[str, Any]] = None) -> DesiredConfig:
    """Load a YAML intent file, layered over an optional descriptor seed."""
    try:
        raw = yaml.safe_load(Path(path).read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError("intent", str(path), f"readable YAML ({exc})") from exc

    if not isinstance(raw, dict):
        raise ValidationError("intent", str(path), "a YAML mapping at the top level")

    data = dict(seed or {})
    if "compute_platform" in raw and raw["compute_platform"] != data.get("compute_platform"):
        # Platform-derived defaults follow the new platform
        for derived in ("deployment_config", "appspec_location"):
            data.pop(derived, None)
    data.update(raw)
    try:
        return DesiredConfig.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "intent"
        raise ValidationError(location, str(path), first["msg"], errors=exc.error_count()) from exc
