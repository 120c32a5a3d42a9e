"""Cache which resource types the API server supports.

Optional integrations like cert-manager, Istio or the Prometheus operator
install their own CRDs. The operator must not try to create those resources in
clusters that lack the CRDs. The answer never changes during the lifetime of
the process, so the cache never expires.

"""

import asyncio
import logging
from typing import Dict, Tuple

from pydantic import BaseModel
from square.dtypes import K8sConfig

import temporal_operator.k8s
from temporal_operator.models import GroupVersionKind

# Convenience.
logit = logging.getLogger("app")


def guess_plural(kind: str) -> str:
    """Return the plural resource name of `kind`, eg `Ingress` -> `ingresses`."""
    singular = kind.lower()
    if singular.endswith(("s", "x", "ch", "sh")):
        return singular + "es"
    if singular.endswith("y") and len(singular) > 1 and singular[-2] not in "aeiou":
        return singular[:-1] + "ies"
    return singular + "s"


class DiscoveryCache:
    """Thread the supported GVKs of one cluster through all reconciles."""

    def __init__(self, k8scfg: K8sConfig):
        self.k8scfg = k8scfg
        self.cache: Dict[GroupVersionKind, bool] = {}
        self.locks: Dict[GroupVersionKind, asyncio.Lock] = {}

    def get(self, gvk: GroupVersionKind) -> Tuple[bool, bool]:
        """Return `(supported, found)` without contacting the API server."""
        if gvk in self.cache:
            return self.cache[gvk], True
        return False, False

    def set(self, gvk: GroupVersionKind, supported: bool) -> None:
        self.cache[gvk] = supported

    async def is_gvk_supported(self, gvk: GroupVersionKind) -> Tuple[bool, bool]:
        supported, found = self.get(gvk)
        if found:
            return supported, False

        # Misses of different GVKs never wait for each other.
        lock = self.locks.setdefault(gvk, asyncio.Lock())
        async with lock:
            # Another task may have filled the entry while we waited.
            supported, found = self.get(gvk)
            if found:
                return supported, False

            supported, err = await self.query(gvk)
            if err:
                return False, True
            self.set(gvk, supported)

        logit.debug("discovered GVK", {"gvk": str(gvk), "supported": supported})
        return supported, False

    async def query(self, gvk: GroupVersionKind) -> Tuple[bool, bool]:
        """Ask the API server if it serves the resource behind `gvk`."""
        if gvk.group == "":
            url = f"/api/{gvk.version}"
        else:
            url = f"/apis/{gvk.group}/{gvk.version}"

        resp, code, err = await temporal_operator.k8s.get(self.k8scfg, url)
        if err:
            return False, True

        # The entire group version does not exist.
        if code == 404:
            return False, False

        plural = guess_plural(gvk.kind)
        for resource in resp.get("resources", []):
            if resource.get("name") == plural:
                return True, False
        return False, False

    async def is_resource_supported(self, manifest: dict) -> Tuple[bool, bool]:
        return await self.is_gvk_supported(GroupVersionKind.from_manifest(manifest))

    async def are_kinds_supported(self, *gvks: GroupVersionKind) -> Tuple[bool, bool]:
        """Return `True` only if the API server serves all `gvks`."""
        for gvk in gvks:
            supported, err = await self.is_gvk_supported(gvk)
            if err:
                return False, True
            if not supported:
                return False, False
        return True, False


class AvailableAPIs(BaseModel):
    cert_manager: bool = False
    istio: bool = False
    prometheus_operator: bool = False


# Kinds that must all be available to enable the optional integrations.
CERT_MANAGER_KINDS = (
    GroupVersionKind(group="cert-manager.io", version="v1", kind="Issuer"),
    GroupVersionKind(group="cert-manager.io", version="v1", kind="Certificate"),
)
ISTIO_KINDS = (
    GroupVersionKind(
        group="security.istio.io", version="v1beta1", kind="PeerAuthentication"
    ),
    GroupVersionKind(
        group="networking.istio.io", version="v1beta1", kind="DestinationRule"
    ),
)
PROMETHEUS_KINDS = (
    GroupVersionKind(
        group="monitoring.coreos.com", version="v1", kind="ServiceMonitor"
    ),
)


async def find_available_apis(cache: DiscoveryCache) -> Tuple[AvailableAPIs, bool]:
    """Determine which optional integrations the cluster offers."""
    checks = [
        ("cert_manager", "cert-manager", CERT_MANAGER_KINDS),
        ("istio", "istio", ISTIO_KINDS),
        ("prometheus_operator", "prometheus-operator", PROMETHEUS_KINDS),
    ]

    apis = AvailableAPIs()
    for field, name, kinds in checks:
        ok, err = await cache.are_kinds_supported(*kinds)
        if err:
            return AvailableAPIs(), True
        setattr(apis, field, ok)

        if ok:
            logit.info(f"{name} API detected")
        else:
            logit.info(f"{name} API not found")
    return apis, False
