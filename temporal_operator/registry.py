"""Explicit mapping from resource kinds to their REST coordinates.

The reconciler must know the plural name and scope of every kind it touches
in order to construct URLs and empty manifests. Kinds are registered up front
instead of being looked up by reflection.

"""

import logging
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict

from temporal_operator.models import GroupVersionKind, ResourceIdentity

# Convenience.
logit = logging.getLogger("app")


class KindInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    gvk: GroupVersionKind
    plural: str
    namespaced: bool = True


class KindRegistry:
    def __init__(self):
        self.kinds: Dict[GroupVersionKind, KindInfo] = {}

    def register(self, info: KindInfo) -> None:
        self.kinds[info.gvk] = info

    def lookup(self, gvk: GroupVersionKind) -> Tuple[KindInfo, bool]:
        try:
            return self.kinds[gvk], False
        except KeyError:
            logit.error("unknown resource kind", {"gvk": str(gvk)})
            return KindInfo(gvk=gvk, plural=""), True

    def empty(self, identity: ResourceIdentity) -> dict:
        """Return the skeleton manifest of `identity` without any spec."""
        metadata = {"name": identity.name}
        if identity.namespace:
            metadata["namespace"] = identity.namespace
        return {
            "apiVersion": identity.gvk.apiVersion,
            "kind": identity.gvk.kind,
            "metadata": metadata,
        }

    def collection_url(self, gvk: GroupVersionKind, namespace: str = "") -> str:
        info, err = self.lookup(gvk)
        if err:
            raise KeyError(f"unregistered kind {gvk}")

        # Core resources live under `/api`, everything else under `/apis`.
        if gvk.group == "":
            base = f"/api/{gvk.version}"
        else:
            base = f"/apis/{gvk.group}/{gvk.version}"

        if info.namespaced and namespace:
            return f"{base}/namespaces/{namespace}/{info.plural}"
        return f"{base}/{info.plural}"

    def resource_url(self, identity: ResourceIdentity) -> str:
        url = self.collection_url(identity.gvk, identity.namespace)
        return f"{url}/{identity.name}"

    def status_url(self, identity: ResourceIdentity) -> str:
        return self.resource_url(identity) + "/status"


def default_registry() -> KindRegistry:
    """Return a registry with every kind the operator manages."""
    # (group, version, kind, plural, namespaced)
    kinds = [
        ("", "v1", "ConfigMap", "configmaps", True),
        ("", "v1", "Secret", "secrets", True),
        ("", "v1", "Service", "services", True),
        ("", "v1", "ServiceAccount", "serviceaccounts", True),
        ("", "v1", "Event", "events", True),
        ("", "v1", "Namespace", "namespaces", False),
        ("apps", "v1", "Deployment", "deployments", True),
        ("batch", "v1", "Job", "jobs", True),
        ("networking.k8s.io", "v1", "Ingress", "ingresses", True),
        ("cert-manager.io", "v1", "Certificate", "certificates", True),
        ("cert-manager.io", "v1", "Issuer", "issuers", True),
        (
            "security.istio.io",
            "v1beta1",
            "PeerAuthentication",
            "peerauthentications",
            True,
        ),
        ("networking.istio.io", "v1beta1", "DestinationRule", "destinationrules", True),
        ("monitoring.coreos.com", "v1", "ServiceMonitor", "servicemonitors", True),
        ("temporal.io", "v1beta1", "TemporalCluster", "temporalclusters", True),
    ]

    registry = KindRegistry()
    for group, version, kind, plural, namespaced in kinds:
        gvk = GroupVersionKind(group=group, version=version, kind=kind)
        registry.register(KindInfo(gvk=gvk, plural=plural, namespaced=namespaced))
    return registry
