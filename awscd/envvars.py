"""Layered environment variables and their Parameter Store home.

Values resolve per environment from two layers: project-wide defaults and
per-environment overrides. Resolved values are written under
``/<project>/<environment>/<KEY>`` (runtime) and
``/<project>/<environment>/build/<KEY>`` (build time).
"""

import re
from typing import Dict, Iterable, List

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field, field_validator

from .config import RunContext
from .errors import TransientError
from .logging import get_logger

logger = get_logger(__name__)

ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _clean(values: Dict[str, str], scope: str) -> Dict[str, str]:
    if not isinstance(values, dict):
        raise ValueError(f"{scope} must be a mapping of KEY: value")
    cleaned: Dict[str, str] = {}
    for key, value in values.items():
        if not key or not ENV_KEY_RE.match(key):
            raise ValueError(f"invalid environment variable key {key!r} in {scope}")
        # Empty values are treated as "not defined in this layer"
        if value is None or str(value) == "":
            continue
        cleaned[key] = str(value)
    return cleaned


class EnvVarLayers(BaseModel):
    """Default values plus per-environment overrides."""

    defaults: Dict[str, str] = Field(default_factory=dict)
    overrides: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    @field_validator("defaults", mode="before")
    @classmethod
    def validate_defaults(cls, v):
        return _clean(v or {}, "defaults")

    @field_validator("overrides", mode="before")
    @classmethod
    def validate_overrides(cls, v):
        if v is not None and not isinstance(v, dict):
            raise ValueError("overrides must be a mapping of environment to variables")
        return {env: _clean(values or {}, env) for env, values in (v or {}).items()}

    def resolve(self, environment: str) -> Dict[str, str]:
        """Return the variables for *environment*; an override beats a default."""
        resolved = dict(self.defaults)
        resolved.update(self.overrides.get(environment, {}))
        return dict(sorted(resolved.items()))

    def keys_for(self, environment: str) -> List[str]:
        return list(self.resolve(environment))


def parameter_path(project_name: str, environment: str, key: str = "", build: bool = False) -> str:
    """Return the Parameter Store path for a variable (or its prefix)."""
    base = f"/{project_name}/{environment}"
    if build:
        base += "/build"
    return f"{base}/{key}" if key else base


class ParameterStore:
    """Writes and reads resolved variables in SSM Parameter Store."""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self._client = ctx.client("ssm")

    def publish(self, environment: str, values: Dict[str, str], build: bool = False) -> int:
        """Write *values* as SecureString parameters. Returns the count written."""
        for key, value in sorted(values.items()):
            name = parameter_path(self.ctx.project_name, environment, key, build=build)
            try:
                self._client.put_parameter(
                    Name=name, Value=value, Type="SecureString", Overwrite=True
                )
            except (ClientError, BotoCoreError) as exc:
                raise TransientError("ssm:PutParameter", str(exc), name=name) from exc

        logger.info(
            "Environment variables published",
            environment=environment,
            scope="build" if build else "runtime",
            count=len(values),
        )
        return len(values)

    def read(self, environment: str) -> Dict[str, Dict[str, str]]:
        """Return ``{"build": {...}, "runtime": {...}}`` for *environment*."""
        build_prefix = parameter_path(self.ctx.project_name, environment, build=True)
        runtime_prefix = parameter_path(self.ctx.project_name, environment)

        build = self._read_path(build_prefix, recursive=False)
        runtime = self._read_path(runtime_prefix, recursive=False)
        return {"build": build, "runtime": runtime}

    def _read_path(self, path: str, recursive: bool) -> Dict[str, str]:
        values: Dict[str, str] = {}
        kwargs = {"Path": path, "Recursive": recursive, "WithDecryption": True}
        try:
            while True:
                resp = self._client.get_parameters_by_path(**kwargs)
                for param in resp.get("Parameters", []):
                    key = param["Name"].rsplit("/", 1)[-1]
                    values[key] = param.get("Value", "")
                token = resp.get("NextToken")
                if not token:
                    break
                kwargs["NextToken"] = token
        except (ClientError, BotoCoreError) as exc:
            raise TransientError("ssm:GetParametersByPath", str(exc), path=path) from exc
        return dict(sorted(values.items()))

    def publish_layers(
        self, runtime: EnvVarLayers, build: EnvVarLayers, environments: Iterable[str]
    ) -> Dict[str, int]:
        """Resolve and publish both layers for every environment.

        Returns the number of parameters written per environment.
        """
        written: Dict[str, int] = {}
        for environment in environments:
            count = 0
            runtime_values = runtime.resolve(environment)
            build_values = build.resolve(environment)
            if runtime_values:
                count += self.publish(environment, runtime_values)
            if build_values:
                count += self.publish(environment, build_values, build=True)
            written[environment] = count
        return written
