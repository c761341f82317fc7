"""Pydantic models for desired and observed resources, plan actions and results."""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ResourceKind(str, Enum):
    """The fixed set of resource kinds the engine manages."""

    SERVICE_ROLE = "ServiceRole"
    INSTANCE_PROFILE = "InstanceProfile"
    ARTIFACT_BUCKET = "ArtifactBucket"
    LAUNCH_TEMPLATE = "LaunchTemplate"
    LOAD_BALANCER = "LoadBalancer"
    TARGET_GROUP = "TargetGroup"
    SCALING_GROUP = "ScalingGroup"
    DEPLOYMENT_APPLICATION = "DeploymentApplication"
    DEPLOYMENT_GROUP = "DeploymentGroup"
    BUILD_PROJECT = "BuildProject"
    PIPELINE = "Pipeline"


class ComputePlatform(str, Enum):
    SERVER = "Server"
    LAMBDA = "Lambda"
    ECS = "ECS"


# Attributes that cannot be changed on an existing resource. A mismatch on
# any of these yields a Conflict instead of an Update.
IMMUTABLE_FIELDS: Dict[ResourceKind, Tuple[str, ...]] = {
    ResourceKind.DEPLOYMENT_APPLICATION: ("compute_platform",),
    ResourceKind.TARGET_GROUP: ("protocol", "port", "vpc_id", "target_type"),
    ResourceKind.LOAD_BALANCER: ("scheme", "type"),
}


class ResourceKey(BaseModel):
    """Identity of a resource: its kind and deterministic name."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.name}"


class DesiredState(BaseModel):
    """Attributes that must hold for one resource after provisioning."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: Tuple[ResourceKey, ...] = ()
    environment: Optional[str] = None
    branch: Optional[str] = None
    purpose: Optional[str] = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(kind=self.kind, name=self.name)

    @model_validator(mode="after")
    def check_capacity_bounds(self):
        if self.kind == ResourceKind.SCALING_GROUP:
            lo = self.attributes.get("min_size")
            hi = self.attributes.get("max_size")
            want = self.attributes.get("desired_capacity")
            if None in (lo, hi, want) or not (lo <= want <= hi):
                raise ValueError(
                    f"scaling group {self.name} needs min <= desired <= max, "
                    f"got min={lo} desired={want} max={hi}"
                )
        return self


class ObservedState(BaseModel):
    """What the provider reports for an existing resource."""

    kind: ResourceKind
    name: str
    provider_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(kind=self.kind, name=self.name)


class FieldChange(BaseModel):
    """Observed and desired value of one attribute."""

    observed: Any = None
    desired: Any = None


class ActionType(str, Enum):
    CREATE = "Create"
    KEEP = "Keep"
    UPDATE = "Update"
    CONFLICT = "Conflict"
    REPLACE = "Replace"


INVENTORY_UNAVAILABLE = "inventory unavailable"


class Action(BaseModel):
    """The planned change for one resource."""

    type: ActionType
    key: ResourceKey
    desired: DesiredState
    observed: Optional[ObservedState] = None
    changes: Dict[str, FieldChange] = Field(default_factory=dict)
    reason: Optional[str] = None
    resolvable: bool = True

    @classmethod
    def create(cls, desired: DesiredState) -> "Action":
        return cls(type=ActionType.CREATE, key=desired.key, desired=desired)

    @classmethod
    def keep(cls, desired: DesiredState, observed: ObservedState) -> "Action":
        return cls(type=ActionType.KEEP, key=desired.key, desired=desired, observed=observed)

    @classmethod
    def update(
        cls, desired: DesiredState, observed: ObservedState, changes: Dict[str, FieldChange]
    ) -> "Action":
        return cls(
            type=ActionType.UPDATE,
            key=desired.key,
            desired=desired,
            observed=observed,
            changes=changes,
        )

    @classmethod
    def conflict(
        cls,
        desired: DesiredState,
        observed: Optional[ObservedState],
        reason: str,
        changes: Optional[Dict[str, FieldChange]] = None,
        resolvable: bool = True,
    ) -> "Action":
        return cls(
            type=ActionType.CONFLICT,
            key=desired.key,
            desired=desired,
            observed=observed,
            changes=changes or {},
            reason=reason,
            resolvable=resolvable,
        )

    @classmethod
    def replace(cls, desired: DesiredState, observed: ObservedState) -> "Action":
        return cls(
            type=ActionType.REPLACE,
            key=desired.key,
            desired=desired,
            observed=observed,
            reason="delete and recreate",
        )


class Resolution(str, Enum):
    KEEP_EXISTING = "KeepExisting"
    DELETE_AND_RECREATE = "DeleteAndRecreate"


class ResolutionRequest(BaseModel):
    """A conflict handed to the caller for a decision."""

    kind: ResourceKind
    name: str
    observed_summary: Dict[str, Any]
    desired_summary: Dict[str, Any]
    reason: str


class Outcome(str, Enum):
    CREATED = "created"
    ADOPTED = "adopted"
    UPDATED = "updated"
    KEPT = "kept"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProvisionResult(BaseModel):
    """Per-resource outcome of an apply run."""

    kind: ResourceKind
    name: str
    outcome: Outcome
    provider_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.outcome in (Outcome.FAILED, Outcome.SKIPPED)


class DeletionResult(BaseModel):
    """Per-resource outcome of a teardown run."""

    kind: ResourceKind
    name: str
    deleted: bool
    error: Optional[str] = None


class BoundNames(BaseModel):
    """Resource names bound by a successful run, persisted per project."""

    project_name: str
    region: str
    application_name: str
    compute_platform: ComputePlatform
    deployment_config: str
    service_role_name: str
    instance_profile_name: Optional[str] = None
    target_type: Optional[str] = None
    target_value: Optional[str] = None
    artifact_bucket: str
    appspec_location: str
    branches: List[str] = Field(default_factory=list)
