from functools import partial
from typing import Callable, List

from temporal_operator.builder import Builder, ResourceSet
from temporal_operator.models import TemporalCluster
from temporal_operator.resources import (
    SERVICES,
    AdminToolsDeploymentBuilder,
    ConfigMapBuilder,
    DeploymentBuilder,
    FrontendServiceBuilder,
    HeadlessServiceBuilder,
    PeerAuthenticationBuilder,
    ServiceAccountBuilder,
    ServiceMonitorBuilder,
    UIDeploymentBuilder,
    UIServiceBuilder,
)

# Builders that exist once per Temporal service.
SERVICE_BUILDERS = (
    ServiceAccountBuilder,
    DeploymentBuilder,
    HeadlessServiceBuilder,
    ServiceMonitorBuilder,
)


class TemporalClusterResources(ResourceSet):
    """The resources of one `TemporalCluster` apart from its migration Jobs."""

    def __init__(self, cluster: TemporalCluster):
        self.cluster = cluster

    def istio_enabled(self) -> bool:
        mtls = self.cluster.spec.mTLS
        return mtls is not None and mtls.provider == "istio"

    def resource_builders(self) -> List[Builder]:
        cluster = self.cluster
        builders: List[Builder] = [
            ConfigMapBuilder(cluster),
            FrontendServiceBuilder(cluster),
        ]

        for service in SERVICES:
            if service not in cluster.spec.services:
                continue
            builders += [cls(cluster, service) for cls in SERVICE_BUILDERS]
            if self.istio_enabled():
                builders.append(PeerAuthenticationBuilder(cluster, service))

        # The engine deletes these if they are disabled.
        builders += [
            UIDeploymentBuilder(cluster),
            UIServiceBuilder(cluster),
            AdminToolsDeploymentBuilder(cluster),
        ]
        return builders

    def resource_factories(self) -> List[Callable[[], Builder]]:
        """Return a factory for every resource the cluster could own.

        The pruner deletes the resources of these factories that are not part
        of `resource_builders`, eg the Istio resources after mTLS was turned
        off or the resources of a service removed from the spec.

        """
        cluster = self.cluster
        factories: List[Callable[[], Builder]] = [
            partial(ConfigMapBuilder, cluster),
            partial(FrontendServiceBuilder, cluster),
        ]
        for service in SERVICES:
            for cls in SERVICE_BUILDERS + (PeerAuthenticationBuilder,):
                factories.append(partial(cls, cluster, service))

        factories += [
            partial(UIDeploymentBuilder, cluster),
            partial(UIServiceBuilder, cluster),
            partial(AdminToolsDeploymentBuilder, cluster),
        ]
        return factories
