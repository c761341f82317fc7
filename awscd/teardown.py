"""
Teardown for awscd

Scans everything carrying the project's name prefix, presents it as a
manifest, and deletes it in the reverse of the provisioning order with
settle-waits where the provider finishes asynchronously.

The executor is a small state machine::

    Scanned -> Confirmed -> Deleting -> Done
    Scanned | Confirmed -> Aborted
    Deleting -> Aborted (settle-wait timeout)
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import AgentConfig
from .errors import AwsCdError, TeardownStateError, TimeoutError
from .handlers import HandlerRegistry
from .inventory import ResourceInventory
from .logging import get_logger
from .models import BoundNames, DeletionResult, ObservedState, ResourceKind
from .naming import provision_tier
from .persistence import ConfigPersistence
from .waiters import poll_until

logger = get_logger(__name__)

K = ResourceKind


class TeardownState(str, Enum):
    SCANNED = "Scanned"
    CONFIRMED = "Confirmed"
    DELETING = "Deleting"
    DONE = "Done"
    ABORTED = "Aborted"


def deletion_order_key(observed: ObservedState):
    """Sort key placing dependents before the resources they depend on."""
    tier = provision_tier(observed.kind, observed.attributes.get("purpose"))
    return (-tier, observed.kind.value, observed.name)


@dataclass
class TeardownManifest:
    """Everything a teardown would delete, in deletion order."""

    project_name: str
    resources: List[ObservedState] = field(default_factory=list)
    scan_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def buckets(self) -> List[ObservedState]:
        return [r for r in self.resources if r.kind == K.ARTIFACT_BUCKET]

    @property
    def is_empty(self) -> bool:
        return not self.resources

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for resource in self.resources:
            counts[resource.kind.value] = counts.get(resource.kind.value, 0) + 1
        return counts


class TeardownPlanner:
    """Builds a :class:`TeardownManifest` from a prefix scan.

    The scan does not depend on the descriptor, so resources from partial
    or manual runs are still found. A descriptor, when given, only adds the
    artifact bucket if its name does not carry the prefix.
    """

    def __init__(self, inventory: ResourceInventory):
        self.inventory = inventory

    def scan(self, project_name: str, names: Optional[BoundNames] = None) -> TeardownManifest:
        prefix = f"{project_name}-"
        found = self.inventory.scan(prefix)

        resources: List[ObservedState] = []
        for observed in found.values():
            resources.extend(observed)

        if names is not None and not names.artifact_bucket.startswith(prefix):
            bucket = self.inventory.fetch(K.ARTIFACT_BUCKET, names.artifact_bucket)
            if bucket is not None:
                resources.append(bucket)

        resources.sort(key=deletion_order_key)
        manifest = TeardownManifest(
            project_name=project_name,
            resources=resources,
            scan_errors={k.value: v for k, v in self.inventory.scan_errors.items()},
        )
        logger.info("Teardown manifest built", project=project_name, **manifest.counts())
        return manifest


ResultCallback = Callable[[DeletionResult], None]


class TeardownExecutor:
    """Deletes a confirmed manifest.

    The artifact bucket and the local descriptor each need their own
    confirmation on top of the manifest confirmation; without it they are
    left in place.
    """

    def __init__(
        self,
        manifest: TeardownManifest,
        handlers: HandlerRegistry,
        config: AgentConfig,
        persistence: Optional[ConfigPersistence] = None,
        on_result: Optional[ResultCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.manifest = manifest
        self.handlers = handlers
        self.config = config
        self.persistence = persistence
        self.on_result = on_result
        self.sleep = sleep

        self.state = TeardownState.SCANNED
        self.delete_bucket = False
        self.descriptor_root: Optional[Path] = None
        self.results: List[DeletionResult] = []

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def confirm(self) -> None:
        self._require(TeardownState.SCANNED, "confirm")
        self.state = TeardownState.CONFIRMED

    def confirm_bucket_deletion(self) -> None:
        self._require_pending("confirm bucket deletion")
        self.delete_bucket = True

    def confirm_descriptor_deletion(self, root: Path) -> None:
        self._require_pending("confirm descriptor deletion")
        if self.persistence is None:
            raise TeardownStateError(self.state.value, "delete the descriptor without persistence")
        self.descriptor_root = Path(root)

    def abort(self) -> None:
        self._require_pending("abort")
        self.state = TeardownState.ABORTED
        logger.info("Teardown aborted", project=self.manifest.project_name)

    def _require(self, expected: TeardownState, attempted: str) -> None:
        if self.state != expected:
            raise TeardownStateError(self.state.value, attempted)

    def _require_pending(self, attempted: str) -> None:
        if self.state not in (TeardownState.SCANNED, TeardownState.CONFIRMED):
            raise TeardownStateError(self.state.value, attempted)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self) -> List[DeletionResult]:
        """Delete every manifest resource, dependents first.

        A resource that fails to delete is reported and the run continues.
        A settle-wait timeout aborts the run.

        Raises:
            TeardownStateError: If the manifest has not been confirmed
            TimeoutError: If a settle-wait exceeds its bound
        """
        self._require(TeardownState.CONFIRMED, "execute")
        self.state = TeardownState.DELETING
        self.results = []

        try:
            for observed in self.manifest.resources:
                if observed.kind == K.ARTIFACT_BUCKET and not self.delete_bucket:
                    logger.info("Artifact bucket retained", name=observed.name)
                    continue
                self._delete(observed)
        except TimeoutError:
            self.state = TeardownState.ABORTED
            raise

        if self.descriptor_root is not None:
            self.persistence.delete(self.descriptor_root)

        self.state = TeardownState.DONE
        return list(self.results)

    def _delete(self, observed: ObservedState) -> None:
        handler = self.handlers[observed.kind]
        try:
            if observed.kind == K.SCALING_GROUP:
                self._delete_scaling_group(observed)
            elif observed.kind == K.LOAD_BALANCER:
                handler.delete(observed)
                self._wait_gone(observed, self.config.load_balancer_delete_timeout_seconds)
            else:
                handler.delete(observed)
        except TimeoutError:
            self._record(DeletionResult(kind=observed.kind, name=observed.name, deleted=False, error="timed out"))
            raise
        except AwsCdError as exc:
            self._record(DeletionResult(kind=observed.kind, name=observed.name, deleted=False, error=str(exc)))
            return
        self._record(DeletionResult(kind=observed.kind, name=observed.name, deleted=True))

    def _delete_scaling_group(self, observed: ObservedState) -> None:
        handler = self.handlers[K.SCALING_GROUP]
        handler.drain(observed)

        def drained() -> bool:
            current = handler.fetch(observed.name)
            return current is None or current.attributes.get("instance_count", 0) == 0

        poll_until(
            drained,
            timeout=self.config.scaling_drain_timeout_seconds,
            interval=self.config.poll_interval_seconds,
            operation=f"drain scaling group {observed.name}",
            sleep=self.sleep,
        )
        handler.delete(observed)
        self._wait_gone(observed, self.config.scaling_drain_timeout_seconds)

    def _wait_gone(self, observed: ObservedState, timeout: float) -> None:
        handler = self.handlers[observed.kind]
        poll_until(
            lambda: handler.fetch(observed.name) is None,
            timeout=timeout,
            interval=self.config.poll_interval_seconds,
            operation=f"wait for {observed.kind.value} {observed.name} to be deleted",
            sleep=self.sleep,
        )

    def _record(self, result: DeletionResult) -> None:
        self.results.append(result)
        log = logger.info if result.deleted else logger.error
        log("Resource deleted", kind=result.kind.value, name=result.name, deleted=result.deleted, error=result.error)
        if self.on_result is not None:
            self.on_result(result)
