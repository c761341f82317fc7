"""Expand a DesiredConfig into the fixed resource topology.

Each resource gets its deterministic name, the attributes its handler
needs and explicit ``depends_on`` edges. One scaling target fans out into
a production and a non-production scaling group sharing one launch
template.
"""

from typing import Dict, List, Optional

from .desired import DesiredConfig, TargetSpec
from .envvars import parameter_path
from .handlers.iam import inline_policies, managed_policies, trust_policy
from .models import ComputePlatform, DesiredState, ResourceKey, ResourceKind
from .naming import (
    ENVIRONMENTS,
    NONPROD_TIER,
    PIPELINE_ROLE_PURPOSES,
    PRODUCTION_TIER,
    SERVICE_ROLE_PURPOSES,
    environment_for_branch,
    resource_name,
    scaling_tier,
)

K = ResourceKind


def _key(kind: ResourceKind, name: str) -> ResourceKey:
    return ResourceKey(kind=kind, name=name)


def _role(config: DesiredConfig, purpose: str) -> DesiredState:
    name = resource_name(config.project_name, K.SERVICE_ROLE, purpose=purpose)
    return DesiredState(
        kind=K.SERVICE_ROLE,
        name=name,
        purpose=purpose,
        attributes={
            "trust_service": trust_policy(purpose)["Statement"][0]["Principal"]["Service"],
            "managed_policies": managed_policies(purpose, config.compute_platform),
            "inline_policies": inline_policies(
                purpose, config.project_name, config.artifact_bucket, config.region
            ),
        },
    )


def scaling_group_names(config: DesiredConfig) -> Dict[str, Optional[str]]:
    """Scaling group each tier deploys to, created or pre-existing."""
    target = config.target or TargetSpec()
    if config.creates_scaling_groups:
        return {
            PRODUCTION_TIER: resource_name(config.project_name, K.SCALING_GROUP, environment="production"),
            NONPROD_TIER: resource_name(config.project_name, K.SCALING_GROUP, environment="development"),
        }
    # A single existing group serves every environment unless both are given.
    production = target.production_asg or target.nonprod_asg
    nonprod = target.nonprod_asg or target.production_asg
    return {PRODUCTION_TIER: production, NONPROD_TIER: nonprod}


def build_desired_states(config: DesiredConfig) -> List[DesiredState]:
    """Return every desired resource for *config*, in no particular order."""
    p = config.project_name
    states: List[DesiredState] = []

    roles = {purpose: _role(config, purpose) for purpose in SERVICE_ROLE_PURPOSES}
    codedeploy_role = roles["codedeploy"]
    if config.is_server:
        states.append(roles["ec2"])
    states.append(codedeploy_role)

    # Instance profile only matters for Server targets.
    profile_name = None
    if config.is_server:
        profile_name = resource_name(p, K.INSTANCE_PROFILE)
        states.append(
            DesiredState(
                kind=K.INSTANCE_PROFILE,
                name=profile_name,
                attributes={"role": roles["ec2"].name},
                depends_on=(roles["ec2"].key,),
            )
        )

    bucket = DesiredState(kind=K.ARTIFACT_BUCKET, name=config.artifact_bucket)
    states.append(bucket)

    # Scaling infrastructure
    asg_keys: Dict[str, ResourceKey] = {}
    if config.creates_scaling_groups:
        states.extend(_scaling_states(config, profile_name, asg_keys))

    app = DesiredState(
        kind=K.DEPLOYMENT_APPLICATION,
        name=resource_name(p, K.DEPLOYMENT_APPLICATION),
        attributes={"compute_platform": config.compute_platform.value},
    )
    states.append(app)

    groups = {}
    asg_names = scaling_group_names(config)
    target = config.target or TargetSpec()
    for environment in ENVIRONMENTS:
        tier = scaling_tier(environment)
        depends = [app.key, codedeploy_role.key]
        auto_scaling_groups: List[str] = []
        tag_filters: List[Dict[str, str]] = []
        if config.is_server and (config.target is not None or config.creates_scaling_groups):
            if target.type == "asg" and asg_names[tier]:
                auto_scaling_groups = [asg_names[tier]]
                if tier in asg_keys:
                    depends.append(asg_keys[tier])
            elif target.type == "tags" and target.tag_value:
                tag_filters = [{"Key": target.tag_key, "Value": target.tag_value, "Type": "KEY_AND_VALUE"}]
        group = DesiredState(
            kind=K.DEPLOYMENT_GROUP,
            name=resource_name(p, K.DEPLOYMENT_GROUP, environment=environment),
            environment=environment,
            attributes={
                "application": app.name,
                "compute_platform": config.compute_platform.value,
                "deployment_config": config.deployment_config,
                "service_role": codedeploy_role.name,
                "auto_scaling_groups": auto_scaling_groups,
                "ec2_tag_filters": tag_filters,
            },
            depends_on=tuple(depends),
        )
        groups[environment] = group
        states.append(group)

    if config.pipeline is not None:
        states.extend(_pipeline_states(config, bucket, app, groups))

    return states


def _scaling_states(
    config: DesiredConfig, profile_name: str, asg_keys: Dict[str, ResourceKey]
) -> List[DesiredState]:
    p = config.project_name
    scaling = config.scaling
    spec = scaling.launch_template
    states: List[DesiredState] = []

    template = DesiredState(
        kind=K.LAUNCH_TEMPLATE,
        name=resource_name(p, K.LAUNCH_TEMPLATE),
        attributes={
            "ami_id": spec.ami_id,
            "instance_type": spec.instance_type,
            "security_group_ids": sorted(spec.security_group_ids),
            "key_name": spec.key_name,
            "instance_profile": profile_name,
        },
        depends_on=(_key(K.INSTANCE_PROFILE, profile_name),),
    )
    states.append(template)

    lb_spec = scaling.load_balancer
    tg_keys: Dict[str, ResourceKey] = {}
    if lb_spec is not None:
        for environment in ("production", "development"):
            tier = scaling_tier(environment)
            tg = DesiredState(
                kind=K.TARGET_GROUP,
                name=resource_name(p, K.TARGET_GROUP, environment=environment),
                environment=environment,
                attributes={
                    "protocol": "HTTP",
                    "port": lb_spec.app_port,
                    "vpc_id": lb_spec.vpc_id,
                    "target_type": "instance",
                    "health_check_path": lb_spec.health_check_path,
                },
            )
            tg_keys[tier] = tg.key
            states.append(tg)

        states.append(
            DesiredState(
                kind=K.LOAD_BALANCER,
                name=resource_name(p, K.LOAD_BALANCER),
                attributes={
                    "scheme": lb_spec.scheme,
                    "type": "application",
                    "subnets": sorted(scaling.subnets),
                    "security_group_ids": sorted(lb_spec.security_group_ids),
                    "listener_target_group": tg_keys[PRODUCTION_TIER].name,
                },
                depends_on=tuple(tg_keys[t] for t in (PRODUCTION_TIER, NONPROD_TIER)),
            )
        )

    for environment, capacity in (("production", scaling.production), ("development", scaling.nonprod)):
        tier = scaling_tier(environment)
        depends = [template.key]
        target_groups: List[str] = []
        if tier in tg_keys:
            depends.append(tg_keys[tier])
            target_groups.append(tg_keys[tier].name)
        group = DesiredState(
            kind=K.SCALING_GROUP,
            name=resource_name(p, K.SCALING_GROUP, environment=environment),
            environment=environment,
            attributes={
                "tier": tier,
                "launch_template": template.name,
                "min_size": capacity.min_size,
                "max_size": capacity.max_size,
                "desired_capacity": capacity.desired_capacity,
                "subnets": sorted(scaling.subnets),
                "target_groups": target_groups,
            },
            depends_on=tuple(depends),
        )
        asg_keys[tier] = group.key
        states.append(group)

    return states


def _pipeline_states(
    config: DesiredConfig,
    bucket: DesiredState,
    app: DesiredState,
    groups: Dict[str, DesiredState],
) -> List[DesiredState]:
    p = config.project_name
    pipeline = config.pipeline
    roles = {purpose: _role(config, purpose) for purpose in PIPELINE_ROLE_PURPOSES}
    states: List[DesiredState] = list(roles.values())

    for branch in pipeline.branches:
        environment = environment_for_branch(branch)
        variables = [
            {"name": "ENVIRONMENT", "value": environment, "type": "PLAINTEXT"},
            {"name": "BRANCH", "value": branch, "type": "PLAINTEXT"},
        ]
        for key in config.build_env.keys_for(environment):
            variables.append(
                {
                    "name": key,
                    "value": parameter_path(p, environment, key, build=True),
                    "type": "PARAMETER_STORE",
                }
            )
        build = DesiredState(
            kind=K.BUILD_PROJECT,
            name=resource_name(p, K.BUILD_PROJECT, branch=branch),
            branch=branch,
            environment=environment,
            attributes={
                "service_role": roles["codebuild"].name,
                "image": pipeline.image,
                "compute_type": pipeline.compute_type,
                "buildspec": pipeline.buildspec,
                "environment_variables": variables,
            },
            depends_on=(roles["codebuild"].key, bucket.key),
        )
        states.append(build)

        group = groups[environment]
        states.append(
            DesiredState(
                kind=K.PIPELINE,
                name=resource_name(p, K.PIPELINE, branch=branch),
                branch=branch,
                environment=environment,
                attributes={
                    "service_role": roles["codepipeline"].name,
                    "artifact_bucket": bucket.name,
                    "connection_arn": pipeline.connection_arn,
                    "repository": pipeline.repository,
                    "branch": branch,
                    "build_project": build.name,
                    "application": app.name,
                    "deployment_group": group.name,
                },
                depends_on=(roles["codepipeline"].key, bucket.key, build.key, group.key),
            )
        )
    return states


# Config fields that determine an immutable attribute. Keeping an existing
# resource rewrites the field so every dependent plans against the real value.
CONFIG_BINDINGS = {
    (K.DEPLOYMENT_APPLICATION, "compute_platform"): ("compute_platform",),
    (K.TARGET_GROUP, "port"): ("scaling", "load_balancer", "app_port"),
    (K.TARGET_GROUP, "vpc_id"): ("scaling", "load_balancer", "vpc_id"),
    (K.LOAD_BALANCER, "scheme"): ("scaling", "load_balancer", "scheme"),
}


def rebind_config(
    config: DesiredConfig, kind: ResourceKind, attribute: str, value
) -> Optional[DesiredConfig]:
    """Return *config* with the field behind ``(kind, attribute)`` set to *value*.

    Returns ``None`` when no config field determines the attribute.
    """
    path = CONFIG_BINDINGS.get((kind, attribute))
    if path is None:
        return None
    if path == ("compute_platform",):
        return config.with_updates(compute_platform=ComputePlatform(value))

    data = config.model_dump()
    node = data
    for part in path[:-1]:
        if node.get(part) is None:
            return None
        node = node[part]
    node[path[-1]] = value
    return DesiredConfig.model_validate(data)
