"""Project descriptor: the bound resource names, committed with the project.

The descriptor is a flat ``KEY=value`` file (values shell-quoted) at
``<root>/.codedeploy/config``. It holds names only, never provider ids or
secrets, so a run against a recreated account still resolves.
"""

import os
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .config import AgentConfig
from .desired import DesiredConfig, TargetSpec
from .errors import PersistenceError
from .logging import get_logger
from .models import BoundNames, ComputePlatform, ResourceKind
from .naming import NONPROD_TIER, PRODUCTION_TIER, resource_name
from .topology import scaling_group_names

logger = get_logger(__name__)

# Descriptor key -> BoundNames field, in file order.
DESCRIPTOR_KEYS = {
    "PROJECT_NAME": "project_name",
    "AWS_REGION": "region",
    "CD_APPLICATION_NAME": "application_name",
    "CD_COMPUTE_PLATFORM": "compute_platform",
    "CD_DEPLOYMENT_CONFIG": "deployment_config",
    "CD_SERVICE_ROLE_NAME": "service_role_name",
    "CD_INSTANCE_PROFILE_NAME": "instance_profile_name",
    "CD_TARGET_TYPE": "target_type",
    "CD_TARGET_VALUE": "target_value",
    "CD_S3_BUCKET": "artifact_bucket",
    "CD_APPSPEC_LOCATION": "appspec_location",
    "CD_BRANCHES": "branches",
}


def bound_names(config: DesiredConfig) -> BoundNames:
    """The names a successful apply of *config* binds."""
    p = config.project_name
    target_type = None
    target_value = None
    if config.is_server:
        target = config.target or TargetSpec()
        if target.type == "tags" and target.tag_value:
            target_type, target_value = "tags", f"{target.tag_key}={target.tag_value}"
        elif config.target is not None or config.creates_scaling_groups:
            names = scaling_group_names(config)
            values = [n for n in dict.fromkeys((names[PRODUCTION_TIER], names[NONPROD_TIER])) if n]
            if values:
                target_type, target_value = "asg", ",".join(values)

    return BoundNames(
        project_name=p,
        region=config.region,
        application_name=resource_name(p, ResourceKind.DEPLOYMENT_APPLICATION),
        compute_platform=config.compute_platform,
        deployment_config=config.deployment_config,
        service_role_name=resource_name(p, ResourceKind.SERVICE_ROLE, purpose="codedeploy"),
        instance_profile_name=resource_name(p, ResourceKind.INSTANCE_PROFILE) if config.is_server else None,
        target_type=target_type,
        target_value=target_value,
        artifact_bucket=config.artifact_bucket,
        appspec_location=config.appspec_location,
        branches=list(config.pipeline.branches) if config.pipeline else [],
    )


def desired_seed(names: BoundNames) -> Dict[str, Any]:
    """Config fields a new run can take from a previous run's descriptor."""
    seed: Dict[str, Any] = {
        "project_name": names.project_name,
        "region": names.region,
        "compute_platform": names.compute_platform.value,
        "deployment_config": names.deployment_config,
        "artifact_bucket": names.artifact_bucket,
        "appspec_location": names.appspec_location,
    }
    created = {
        resource_name(names.project_name, ResourceKind.SCALING_GROUP, environment="production"),
        resource_name(names.project_name, ResourceKind.SCALING_GROUP, environment="development"),
    }
    if names.target_type == "tags" and names.target_value and "=" in names.target_value:
        key, _, value = names.target_value.partition("=")
        seed["target"] = {"type": "tags", "tag_key": key, "tag_value": value}
    elif names.target_type == "asg" and names.target_value:
        groups = names.target_value.split(",")
        # Engine-created groups come back from the scaling section instead.
        if not set(groups) <= created:
            seed["target"] = {
                "type": "asg",
                "production_asg": groups[0],
                "nonprod_asg": groups[-1],
            }
    return seed


class ConfigPersistence:
    """Saves and finds the project descriptor."""

    def __init__(self, config: AgentConfig):
        self.dir_name = config.descriptor_dir
        self.file_name = config.descriptor_file

    def path_for(self, root: Path) -> Path:
        return Path(root) / self.dir_name / self.file_name

    def save(self, root: Path, names: BoundNames) -> Path:
        """Atomically replace the descriptor under *root*.

        Raises:
            PersistenceError: If the descriptor cannot be written
        """
        path = self.path_for(root)
        data = names.model_dump(mode="json")
        lines = ["# awscd project descriptor (resource names only, safe to commit)"]
        for key, field in DESCRIPTOR_KEYS.items():
            value = data.get(field)
            if isinstance(value, list):
                value = ",".join(value)
            lines.append(f"{key}={shlex.quote('' if value is None else str(value))}")
        content = "\n".join(lines) + "\n"

        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.file_name}.", dir=path.parent)
            with os.fdopen(fd, "w") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(str(path), "save", str(exc)) from exc

        logger.info("Descriptor saved", path=str(path), project=names.project_name)
        return path

    def find(self, start_dir: Path) -> Optional[Path]:
        """Walk upward from *start_dir* to the nearest descriptor."""
        current = Path(start_dir).resolve()
        for directory in (current, *current.parents):
            candidate = self.path_for(directory)
            if candidate.is_file():
                return candidate
        return None

    def load(self, start_dir: Path) -> Optional[Tuple[Path, BoundNames]]:
        """Return ``(project_root, names)`` for the nearest descriptor, if any.

        Raises:
            PersistenceError: If a descriptor exists but cannot be parsed
        """
        path = self.find(start_dir)
        if path is None:
            return None

        try:
            text = path.read_text()
        except OSError as exc:
            raise PersistenceError(str(path), "load", str(exc)) from exc

        values: Dict[str, str] = {}
        for number, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                tokens = shlex.split(line)
            except ValueError as exc:
                raise PersistenceError(str(path), "load", f"line {number}: {exc}") from exc
            if len(tokens) != 1 or "=" not in tokens[0]:
                raise PersistenceError(str(path), "load", f"line {number}: expected KEY=value")
            key, _, value = tokens[0].partition("=")
            values[key] = value

        data: Dict[str, Any] = {}
        for key, field in DESCRIPTOR_KEYS.items():
            value = values.get(key, "")
            if field == "branches":
                data[field] = [b for b in value.split(",") if b]
            elif value != "":
                data[field] = value
        try:
            data["compute_platform"] = ComputePlatform(data.get("compute_platform", "Server"))
            names = BoundNames.model_validate(data)
        except ValueError as exc:
            raise PersistenceError(str(path), "load", str(exc)) from exc

        root = path.parent.parent
        logger.debug("Descriptor loaded", path=str(path), project=names.project_name)
        return root, names

    def delete(self, root: Path) -> bool:
        """Remove the descriptor directory under *root*. Returns True if removed."""
        directory = Path(root) / self.dir_name
        if not directory.exists():
            return False
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            raise PersistenceError(str(directory), "delete", str(exc)) from exc
        logger.info("Descriptor removed", path=str(directory))
        return True
