"""Read-only view of what currently exists in the account.

Absence is a normal value (``None``); provider failures surface as
:class:`~awscd.errors.TransientError`. Nothing here mutates the provider.
"""

from typing import Dict, List, Optional

from .errors import TransientError
from .handlers import HandlerRegistry
from .logging import get_logger
from .models import ObservedState, ResourceKind

logger = get_logger(__name__)


class ResourceInventory:
    """Looks resources up by deterministic name through the handler registry."""

    def __init__(self, handlers: HandlerRegistry):
        self.handlers = handlers
        self.scan_errors: Dict[ResourceKind, str] = {}

    def fetch(self, kind: ResourceKind, name: str) -> Optional[ObservedState]:
        """Return the observed state of ``(kind, name)``, or ``None`` if absent.

        Raises:
            TransientError: If the provider could not answer
        """
        observed = self.handlers[kind].fetch(name)
        logger.debug("Inventory fetch", kind=kind.value, name=name, exists=observed is not None)
        return observed

    def scan(self, prefix: str) -> Dict[ResourceKind, List[ObservedState]]:
        """Enumerate every managed resource whose name starts with *prefix*.

        A kind whose scan fails is returned empty and recorded in
        ``scan_errors``; the other kinds are still enumerated.
        """
        found: Dict[ResourceKind, List[ObservedState]] = {}
        self.scan_errors = {}
        for kind, handler in self.handlers.items():
            try:
                found[kind] = sorted(handler.scan(prefix), key=lambda o: o.name)
            except TransientError as exc:
                logger.warning("Inventory scan failed", kind=kind.value, error=str(exc))
                self.scan_errors[kind] = str(exc)
                found[kind] = []
        total = sum(len(v) for v in found.values())
        logger.info("Inventory scan complete", prefix=prefix, resources=total)
        return found
