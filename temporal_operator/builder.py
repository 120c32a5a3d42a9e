"""Builder abstraction consumed by the reconciliation engine.

A builder describes one desired resource. `build` returns the skeleton that
identifies the resource and `update` fills in the desired fields. Optional
capabilities are expressed as mixins and detected with `isinstance`:

* `DependentBuilder`: the resource must not be applied before the listed
  resources exist and are ready,
* `Comparer`: custom equality to avoid spurious writes,
* `StatusReporter`: custom readiness of the live object.

"""

from typing import Callable, List, Tuple

from temporal_operator.models import ResourceIdentity, Status


class Builder:
    def build(self) -> dict:
        """Return the skeleton of the resource (apiVersion, kind, metadata)."""
        raise NotImplementedError

    def update(self, manifest: dict) -> bool:
        """Mutate `manifest` in-place to the desired state.

        Return `True` on error.

        """
        raise NotImplementedError

    def enabled(self) -> bool:
        return True


class DependentBuilder:
    def dependencies(self) -> List[ResourceIdentity]:
        raise NotImplementedError


class Comparer:
    def equal(self, a: dict, b: dict) -> bool:
        raise NotImplementedError


class StatusReporter:
    def report_status(self, manifest: dict) -> Tuple[Status, bool]:
        raise NotImplementedError


class ResourceSet:
    """All builders of one owner plus the factories used for pruning."""

    def resource_builders(self) -> List[Builder]:
        raise NotImplementedError

    def resource_factories(self) -> List[Callable[[], Builder]]:
        raise NotImplementedError


def dependency_count(builder: Builder) -> int:
    if isinstance(builder, DependentBuilder):
        return len(builder.dependencies())
    return 0
