"""Per-kind provider handlers.

Usage::

    from awscd.handlers import build_handlers
    handlers = build_handlers(ctx)
    observed = handlers[ResourceKind.SCALING_GROUP].fetch("shop-production-asg")
"""

from typing import Dict, List, Type

from ..config import RunContext
from ..models import ResourceKind
from .autoscaling import ScalingGroupHandler
from .base import ResourceHandler, classify_error
from .codebuild import BuildProjectHandler
from .codedeploy import DeploymentApplicationHandler, DeploymentGroupHandler
from .codepipeline import PipelineHandler
from .ec2 import LaunchTemplateHandler
from .elb import LoadBalancerHandler, TargetGroupHandler
from .iam import InstanceProfileHandler, ServiceRoleHandler
from .s3 import ArtifactBucketHandler

# One handler per resource kind, in provisioning order.
ALL_HANDLERS: List[Type[ResourceHandler]] = [
    ServiceRoleHandler,
    InstanceProfileHandler,
    ArtifactBucketHandler,
    LaunchTemplateHandler,
    TargetGroupHandler,
    LoadBalancerHandler,
    ScalingGroupHandler,
    DeploymentApplicationHandler,
    DeploymentGroupHandler,
    BuildProjectHandler,
    PipelineHandler,
]

# Mapping from kind to handler class for quick lookup.
_HANDLER_MAP: Dict[ResourceKind, Type[ResourceHandler]] = {cls.kind: cls for cls in ALL_HANDLERS}

HandlerRegistry = Dict[ResourceKind, ResourceHandler]


def build_handlers(ctx: RunContext) -> HandlerRegistry:
    """Instantiate every handler against *ctx*."""
    return {kind: cls(ctx) for kind, cls in _HANDLER_MAP.items()}


__all__ = [
    "ALL_HANDLERS",
    "HandlerRegistry",
    "ResourceHandler",
    "build_handlers",
    "classify_error",
]
