"""Index of desired resources and the orphans to prune."""

from collections import defaultdict
from typing import Callable, Dict, List, Set, Tuple

from temporal_operator.builder import Builder
from temporal_operator.discovery import DiscoveryCache
from temporal_operator.models import ResourceIdentity

# A factory returns a builder for one resource type of one owner. The pruner
# uses the factories to enumerate every resource the operator *could* manage.
BuilderFactory = Callable[[], Builder]


class DesiredState:
    def __init__(self):
        self.index: Dict[str, Set[str]] = defaultdict(set)

    def add(self, identity: ResourceIdentity) -> None:
        self.index[str(identity.gvk)].add(identity.key)

    def has(self, identity: ResourceIdentity) -> bool:
        return identity.key in self.index.get(str(identity.gvk), set())


async def compute_prune_targets(
    discovery: DiscoveryCache,
    builders: List[Builder],
    factories: List[BuilderFactory],
) -> Tuple[List[ResourceIdentity], bool]:
    """Return the resources that `factories` could produce but `builders` do not.

    Disabled builders still count as desired. The engine deletes those itself
    and they must not show up twice.

    """
    desired = DesiredState()
    for builder in builders:
        desired.add(ResourceIdentity.from_manifest(builder.build()))

    targets: List[ResourceIdentity] = []
    seen: Set[ResourceIdentity] = set()
    for factory in factories:
        candidate = ResourceIdentity.from_manifest(factory().build())
        if candidate in seen or desired.has(candidate):
            continue

        supported, err = await discovery.is_gvk_supported(candidate.gvk)
        if err:
            return [], True
        if not supported:
            continue

        seen.add(candidate)
        targets.append(candidate)
    return targets, False
