"""
Reconciliation Planner for awscd

Compares the desired topology against the inventory and decides, per
resource, whether to create, keep, update or flag a conflict. Conflicts are
returned as data; the caller supplies resolutions and asks for a new plan.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from .desired import DesiredConfig
from .errors import CascadeConfirmationRequired, ConflictError, TransientError, ValidationError
from .graph import ResourceGraph
from .inventory import ResourceInventory
from .logging import get_logger
from .models import (
    IMMUTABLE_FIELDS,
    INVENTORY_UNAVAILABLE,
    Action,
    ActionType,
    DesiredState,
    FieldChange,
    ObservedState,
    Resolution,
    ResolutionRequest,
    ResourceKey,
    ResourceKind,
)
from .topology import build_desired_states, rebind_config

logger = get_logger(__name__)


def parse_resource_key(value: Union[str, ResourceKey]) -> ResourceKey:
    """Parse ``Kind:name`` (e.g. ``DeploymentApplication:shop-app``)."""
    if isinstance(value, ResourceKey):
        return value
    kind, sep, name = value.partition(":")
    if not sep or not name or kind not in {k.value for k in ResourceKind}:
        raise ValidationError("resource", value, "Kind:name with a known kind")
    return ResourceKey(kind=ResourceKind(kind), name=name)


@dataclass
class Plan:
    """Ordered actions for one desired configuration."""

    config: DesiredConfig
    graph: ResourceGraph
    actions: List[Action]
    # Immutable attributes pinned to observed values by KeepExisting.
    pins: Dict[ResourceKey, Dict[str, Any]] = field(default_factory=dict)
    replacements: Set[ResourceKey] = field(default_factory=set)

    def action_for(self, key: ResourceKey) -> Action:
        for action in self.actions:
            if action.key == key:
                return action
        raise KeyError(str(key))

    @property
    def conflicts(self) -> List[Action]:
        return [a for a in self.actions if a.type == ActionType.CONFLICT]

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def resolution_requests(self) -> List[ResolutionRequest]:
        """One request per conflict the caller is able to resolve."""
        requests = []
        for action in self.conflicts:
            if not action.resolvable:
                continue
            requests.append(
                ResolutionRequest(
                    kind=action.key.kind,
                    name=action.key.name,
                    observed_summary={f: c.observed for f, c in action.changes.items()},
                    desired_summary={f: c.desired for f, c in action.changes.items()},
                    reason=action.reason or "",
                )
            )
        return requests

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {t.value: 0 for t in ActionType}
        for action in self.actions:
            counts[action.type.value] += 1
        return counts


class ReconciliationPlanner:
    """Produces a :class:`Plan` from a config and the live inventory.

    The inventory is queried fresh on every call; observed state is never
    cached between planning and apply.
    """

    def __init__(self, inventory: ResourceInventory):
        self.inventory = inventory

    def plan(
        self,
        config: DesiredConfig,
        pins: Optional[Mapping[ResourceKey, Dict[str, Any]]] = None,
        replacements: Optional[Set[ResourceKey]] = None,
    ) -> Plan:
        pins = {k: dict(v) for k, v in (pins or {}).items()}
        replacements = set(replacements or ())

        states = [self._pinned(desired, pins) for desired in build_desired_states(config)]
        graph = ResourceGraph(states)

        actions: List[Action] = []
        for key in graph.topological_order():
            desired = graph.get(key)
            try:
                observed = self.inventory.fetch(key.kind, key.name)
            except TransientError as exc:
                logger.warning("Inventory unavailable", kind=key.kind.value, name=key.name, error=str(exc))
                actions.append(
                    Action.conflict(desired, None, f"{INVENTORY_UNAVAILABLE}: {exc}", resolvable=False)
                )
                continue

            if observed is not None and key in replacements:
                actions.append(Action.replace(desired, observed))
            else:
                actions.append(self._decide(desired, observed))

        plan = Plan(config=config, graph=graph, actions=actions, pins=pins, replacements=replacements)
        logger.info("Plan computed", project=config.project_name, **plan.summary())
        return plan

    @staticmethod
    def _pinned(desired: DesiredState, pins: Mapping[ResourceKey, Dict[str, Any]]) -> DesiredState:
        pinned = pins.get(desired.key)
        if not pinned:
            return desired
        attributes = dict(desired.attributes)
        attributes.update(pinned)
        return desired.model_copy(update={"attributes": attributes})

    def _decide(self, desired: DesiredState, observed: Optional[ObservedState]) -> Action:
        if observed is None:
            return Action.create(desired)

        immutable: Dict[str, FieldChange] = {}
        for attr in IMMUTABLE_FIELDS.get(desired.kind, ()):
            if attr not in desired.attributes:
                continue
            have = observed.attributes.get(attr)
            if have != desired.attributes[attr]:
                immutable[attr] = FieldChange(observed=have, desired=desired.attributes[attr])
        if immutable:
            reason = "immutable field(s) differ: " + ", ".join(sorted(immutable))
            return Action.conflict(desired, observed, reason, changes=immutable)

        changes = self.inventory.handlers[desired.kind].diff(desired, observed)
        if changes:
            return Action.update(desired, observed, changes)
        return Action.keep(desired, observed)

    def resolve(
        self,
        plan: Plan,
        resolutions: Mapping[Union[str, ResourceKey], Resolution],
        confirm_cascade: bool = False,
    ) -> Plan:
        """Apply caller resolutions and return a freshly computed plan.

        ``KeepExisting`` rewrites the desired value to the observed one (via
        the config where a config field determines it) so dependents plan
        against the real value. ``DeleteAndRecreate`` turns the conflict
        into a Replace; if dependents of the resource currently exist they
        are replaced too, which requires ``confirm_cascade``.

        Raises:
            ConflictError: If a resolution targets something that is not a
                resolvable conflict
            CascadeConfirmationRequired: If recreating would orphan existing
                dependents and ``confirm_cascade`` is false
        """
        config = plan.config
        pins = {k: dict(v) for k, v in plan.pins.items()}
        replacements = set(plan.replacements)

        for raw_key, resolution in resolutions.items():
            key = parse_resource_key(raw_key)
            try:
                action = plan.action_for(key)
            except KeyError:
                raise ConflictError(key.kind.value, key.name, "resource is not part of the plan") from None
            if action.type != ActionType.CONFLICT:
                raise ConflictError(key.kind.value, key.name, f"action is {action.type.value}, not a conflict")
            if not action.resolvable:
                raise ConflictError(key.kind.value, key.name, action.reason or INVENTORY_UNAVAILABLE)

            resolution = Resolution(resolution)
            if resolution == Resolution.KEEP_EXISTING:
                for attr, change in action.changes.items():
                    rebound = rebind_config(config, key.kind, attr, change.observed)
                    if rebound is not None:
                        config = rebound
                    else:
                        pins.setdefault(key, {})[attr] = change.observed
                logger.info("Conflict resolved", kind=key.kind.value, name=key.name, resolution=resolution.value)
                continue

            existing = sorted(
                (dep for dep in plan.graph.dependents_of(key) if self._exists(plan, dep)),
                key=str,
            )
            if existing and not confirm_cascade:
                raise CascadeConfirmationRequired(key.kind.value, key.name, [str(d) for d in existing])
            replacements.add(key)
            replacements.update(existing)
            logger.info(
                "Conflict resolved",
                kind=key.kind.value,
                name=key.name,
                resolution=resolution.value,
                cascade=[str(d) for d in existing],
            )

        return self.plan(config, pins=pins, replacements=replacements)

    @staticmethod
    def _exists(plan: Plan, key: ResourceKey) -> bool:
        action = plan.action_for(key)
        return action.observed is not None
