"""
Provisioner for awscd

Executes a resolved plan strictly in dependency order. Every create is
create-or-adopt; a failed resource skips everything that depends on it
while independent branches carry on.
"""

import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config import AgentConfig
from .errors import AlreadyExistsError, AwsCdError, PlanRejectedError, TimeoutError, TransientError
from .handlers import HandlerRegistry
from .logging import get_logger, time_operation
from .models import (
    Action,
    ActionType,
    ObservedState,
    Outcome,
    ProvisionResult,
    ResourceKey,
)
from .planner import Plan
from .waiters import poll_until

logger = get_logger(__name__)

ResultCallback = Callable[[ProvisionResult], None]


class Provisioner:
    """Applies a :class:`~awscd.planner.Plan` through the handler registry.

    The provisioner is the only component that writes to the provider
    during a run. Results accumulate on ``results`` so a run interrupted by
    a settle-wait timeout still reports what it did.
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        config: AgentConfig,
        on_result: Optional[ResultCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.handlers = handlers
        self.config = config
        self.on_result = on_result
        self.sleep = sleep
        self.results: List[ProvisionResult] = []
        self.bound: Dict[ResourceKey, ObservedState] = {}

    def apply(self, plan: Plan) -> List[ProvisionResult]:
        """Execute every action of *plan*.

        Raises:
            PlanRejectedError: If the plan still contains conflicts
            TimeoutError: If a delete-then-recreate settle-wait runs out
        """
        unresolved = [str(a.key) for a in plan.conflicts]
        if unresolved:
            raise PlanRejectedError(unresolved)

        self.results = []
        self.bound = {}
        failed: Set[ResourceKey] = set()

        # Replaced resources are deleted dependents-first before anything is
        # recreated.
        delete_errors: Dict[ResourceKey, str] = {}
        for action in reversed([a for a in plan.actions if a.type == ActionType.REPLACE]):
            try:
                self._delete_and_wait(action)
            except TimeoutError:
                raise
            except AwsCdError as exc:
                delete_errors[action.key] = str(exc)

        for action in plan.actions:
            key = action.key
            blocked = sorted(str(d) for d in plan.graph.dependencies_of(key) if d in failed)
            if blocked:
                result = self._result(action, Outcome.SKIPPED, error=f"dependency failed: {', '.join(blocked)}")
            elif key in delete_errors:
                result = self._result(action, Outcome.FAILED, error=delete_errors[key])
            else:
                try:
                    with time_operation(logger, "provision", kind=key.kind.value, name=key.name):
                        outcome, observed = self._execute(action)
                    self.bound[key] = observed
                    result = self._result(action, outcome, provider_id=observed.provider_id)
                except TimeoutError:
                    raise
                except AwsCdError as exc:
                    result = self._result(action, Outcome.FAILED, error=str(exc))

            if result.failed:
                failed.add(key)
            self._record(result)

        return list(self.results)

    def _execute(self, action: Action) -> Tuple[Outcome, ObservedState]:
        handler = self.handlers[action.key.kind]
        desired = action.desired

        # Never trust the plan's view of existence: it may be stale.
        current = handler.fetch(desired.name)

        if action.type == ActionType.REPLACE or current is None:
            return self._create_or_adopt(action)
        if action.type == ActionType.CREATE:
            logger.info("Adopting existing resource", kind=desired.kind.value, name=desired.name)
            return Outcome.ADOPTED, current

        changes = handler.diff(desired, current)
        if not changes:
            return Outcome.KEPT, current
        return Outcome.UPDATED, handler.update(desired, current, self.bound)

    def _create_or_adopt(self, action: Action) -> Tuple[Outcome, ObservedState]:
        handler = self.handlers[action.key.kind]
        desired = action.desired
        try:
            observed = handler.create(desired, self.bound)
        except AlreadyExistsError:
            observed = handler.fetch(desired.name)
            if observed is None:
                raise TransientError(
                    f"{handler.service_name}:create",
                    "provider reported the resource exists but it cannot be read",
                    name=desired.name,
                ) from None
            return Outcome.ADOPTED, observed
        if observed is None:
            raise TransientError(
                f"{handler.service_name}:create", "created resource cannot be read back", name=desired.name
            )
        return Outcome.CREATED, observed

    def _delete_and_wait(self, action: Action) -> None:
        handler = self.handlers[action.key.kind]
        observed = handler.fetch(action.key.name)
        if observed is None:
            return
        handler.delete(observed)
        poll_until(
            lambda: handler.fetch(action.key.name) is None,
            timeout=self.config.resource_gone_timeout_seconds,
            interval=self.config.poll_interval_seconds,
            operation=f"wait for {action.key} to be deleted",
            sleep=self.sleep,
        )
        logger.info("Resource deleted for replacement", kind=action.key.kind.value, name=action.key.name)

    @staticmethod
    def _result(
        action: Action, outcome: Outcome, provider_id: Optional[str] = None, error: Optional[str] = None
    ) -> ProvisionResult:
        return ProvisionResult(
            kind=action.key.kind,
            name=action.key.name,
            outcome=outcome,
            provider_id=provider_id,
            error=error,
        )

    def _record(self, result: ProvisionResult) -> None:
        self.results.append(result)
        log = logger.error if result.failed else logger.info
        log(
            "Resource provisioned",
            kind=result.kind.value,
            name=result.name,
            outcome=result.outcome.value,
            error=result.error,
        )
        if self.on_result is not None:
            self.on_result(result)


def succeeded(results: List[ProvisionResult]) -> bool:
    """True when every result reached a non-failure outcome."""
    return not any(r.failed for r in results)
