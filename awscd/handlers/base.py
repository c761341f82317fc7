"""Abstract base class for per-kind resource handlers."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..config import RunContext
from ..errors import AlreadyExistsError, TransientError
from ..logging import get_logger
from ..models import DesiredState, FieldChange, ObservedState, ResourceKey, ResourceKind

logger = get_logger(__name__)

# Provider error codes that mean "the named resource does not exist".
NOT_FOUND_CODES = frozenset(
    {
        "NoSuchEntity",
        "NoSuchBucket",
        "404",
        "NotFound",
        "InvalidLaunchTemplateName.NotFoundException",
        "InvalidLaunchTemplateId.NotFound",
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "ListenerNotFound",
        "ValidationError.NotFound",
        "ApplicationDoesNotExistException",
        "DeploymentGroupDoesNotExistException",
        "ResourceNotFoundException",
        "PipelineNotFoundException",
    }
)

# Provider error codes that mean "a resource with this name already exists".
ALREADY_EXISTS_CODES = frozenset(
    {
        "EntityAlreadyExists",
        "BucketAlreadyOwnedByYou",
        "ApplicationAlreadyExistsException",
        "DeploymentGroupAlreadyExistsException",
        "InvalidLaunchTemplateName.AlreadyExistsException",
        "AlreadyExists",
        "DuplicateLoadBalancerName",
        "DuplicateTargetGroupName",
        "ResourceAlreadyExistsException",
        "PipelineNameInUseException",
    }
)

Bound = Mapping[ResourceKey, ObservedState]


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def classify_error(operation: str, exc: Exception, kind: str = "", name: str = ""):
    """Map a botocore exception to ``None`` (not found) or an awscd error.

    Returns ``None`` when the error means the resource is absent. Otherwise
    returns the exception the caller should raise.
    """
    if isinstance(exc, ClientError):
        code = error_code(exc)
        if code in NOT_FOUND_CODES:
            return None
        if code in ALREADY_EXISTS_CODES:
            return AlreadyExistsError(kind or operation, name, code=code)
        message = exc.response.get("Error", {}).get("Message", str(exc))
        return TransientError(operation, message, code=code)
    return TransientError(operation, str(exc))


class ResourceHandler(ABC):
    """Base class that all resource handlers inherit from.

    A handler owns every provider call for one :class:`ResourceKind`:
    lookup by deterministic name, create, in-place update, delete, and a
    prefix scan for teardown. ``fetch`` and ``scan`` are read-only and
    return ``None`` / an empty list for absent resources.
    """

    kind: ResourceKind
    service_name: str = ""
    # Desired attributes compared against observed ones when planning.
    compared_fields: tuple = ()

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx
        self.client = ctx.client(self.service_name)

    @abstractmethod
    def fetch(self, name: str) -> Optional[ObservedState]:
        """Return the observed state of *name*, or ``None`` if absent."""
        ...

    @abstractmethod
    def create(self, desired: DesiredState, bound: Bound) -> ObservedState:
        """Create the resource. Raises AlreadyExistsError on a name clash."""
        ...

    def update(self, desired: DesiredState, observed: ObservedState, bound: Bound) -> ObservedState:
        """Apply mutable attribute changes in place."""
        return observed

    @abstractmethod
    def delete(self, observed: ObservedState) -> None:
        """Delete the resource; an already-absent resource is not an error."""
        ...

    @abstractmethod
    def scan(self, prefix: str) -> List[ObservedState]:
        """Return every resource of this kind whose name starts with *prefix*."""
        ...

    def diff(self, desired: DesiredState, observed: ObservedState) -> Dict[str, FieldChange]:
        """Return the compared fields whose observed value differs."""
        changes: Dict[str, FieldChange] = {}
        for field in self.compared_fields:
            if field not in desired.attributes:
                continue
            want = desired.attributes[field]
            have = observed.attributes.get(field)
            if _normalize(want) != _normalize(have):
                changes[field] = FieldChange(observed=have, desired=want)
        return changes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _call(self, method: str, missing_ok: bool = False, label: str = "", **kwargs) -> Any:
        """Invoke a client method and classify provider errors.

        With ``missing_ok`` a not-found error returns ``None``; otherwise it
        is raised as a TransientError like any other failure.
        """
        operation = f"{self.service_name}:{method}"
        try:
            return getattr(self.client, method)(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            error = classify_error(operation, exc, kind=self.kind.value, name=label)
            if error is None:
                if missing_ok:
                    return None
                raise TransientError(operation, "resource not found", code="NotFound", name=label) from exc
            raise error from exc

    def _paginate(self, method: str, result_key: str, **kwargs) -> List[Dict[str, Any]]:
        """Collect *result_key* items across every page of *method*."""
        operation = f"{self.service_name}:{method}"
        items: List[Dict[str, Any]] = []
        try:
            paginator = self.client.get_paginator(method)
            for page in paginator.paginate(**kwargs):
                items.extend(page.get(result_key, []))
        except (ClientError, BotoCoreError) as exc:
            error = classify_error(operation, exc, kind=self.kind.value)
            if error is None:
                return items
            raise error from exc
        return items

    def _project_tags(self, **extra: str) -> Dict[str, str]:
        tags = {"Project": self.ctx.project_name}
        tags.update(extra)
        return tags

    @staticmethod
    def _tag_list(tags: Dict[str, str], key: str = "Key", value: str = "Value") -> List[Dict[str, str]]:
        return [{key: k, value: v} for k, v in sorted(tags.items())]

    @staticmethod
    def _safe_tags(tag_list, key: str = "Key", value: str = "Value") -> Dict[str, str]:
        """Convert the provider's tag list format to a ``{Key: Value}`` dict."""
        if not tag_list:
            return {}
        return {t.get(key, ""): t.get(value, "") for t in tag_list if key in t}

    @staticmethod
    def _bound_id(bound: Bound, kind: ResourceKind, name: str) -> str:
        """Return the provider id of a dependency bound earlier in the run."""
        observed = bound.get(ResourceKey(kind=kind, name=name))
        if observed is None or not observed.provider_id:
            raise TransientError(
                "resolve-dependency", f"{kind.value} {name} is not available", name=name
            )
        return observed.provider_id

    def _observed(self, name: str, provider_id: Optional[str], tags=None, **attributes) -> ObservedState:
        return ObservedState(
            kind=self.kind,
            name=name,
            provider_id=provider_id,
            attributes=attributes,
            tags=tags or {},
        )

    def _log_write(self, action: str, name: str, **context) -> None:
        logger.info("Provider write", kind=self.kind.value, name=name, action=action, **context)


def _normalize(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return sorted((_normalize(v) for v in value), key=repr)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in sorted(value.items())}
    return value
