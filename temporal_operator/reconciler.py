"""Drive a list of builders to their desired state.

One pass resolves every builder against the live cluster, orders them by the
number of their dependencies and then creates, updates or deletes the
resources one after the other. The pass stops early if a dependency is not
ready yet and asks the caller to try again later.

The engine never retries on its own. Any error other than a missing object
aborts the pass and the caller decides when to run it again.

"""

import copy
import logging
from typing import Callable, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict
from square.dtypes import K8sConfig

import temporal_operator.k8s
import temporal_operator.state
import temporal_operator.status
from temporal_operator.builder import (
    Builder,
    Comparer,
    DependentBuilder,
    ResourceSet,
    StatusReporter,
    dependency_count,
)
from temporal_operator.discovery import DiscoveryCache
from temporal_operator.events import EventRecorder, log_and_record_operation_result
from temporal_operator.models import (
    GroupVersionKind,
    OperationResult,
    ResourceIdentity,
    Status,
)
from temporal_operator.registry import KindRegistry

# Seconds to wait before the next attempt if a dependency is not ready.
DEPENDENCY_REQUEUE = 5.0

# Convenience.
logit = logging.getLogger("app")

EqualFun = Callable[[dict, dict], bool]


class ResolvedResource(BaseModel):
    """A builder together with the live version of its resource."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    builder: Builder
    identity: ResourceIdentity
    manifest: dict
    live: dict = {}
    found: bool = False


class BuildersReconciler:
    def __init__(
        self,
        k8scfg: K8sConfig,
        registry: KindRegistry,
        discovery: DiscoveryCache,
        recorder: EventRecorder,
        comparers: Dict[GroupVersionKind, EqualFun] | None = None,
    ):
        self.k8scfg = k8scfg
        self.registry = registry
        self.discovery = discovery
        self.recorder = recorder
        self.comparers = comparers or {}

    async def resolve(
        self, builders: List[Builder]
    ) -> Tuple[List[ResolvedResource], bool]:
        """Fetch the live version of every supported resource in `builders`."""
        out: List[ResolvedResource] = []
        for builder in builders:
            manifest = builder.build()
            identity = ResourceIdentity.from_manifest(manifest)

            # Every kind must be known to the registry.
            _, err = self.registry.lookup(identity.gvk)
            if err:
                return [], True

            supported, err = await self.discovery.is_gvk_supported(identity.gvk)
            if err:
                return [], True
            if not supported:
                logit.debug("skip unsupported resource", {"gvk": str(identity.gvk)})
                continue

            url = self.registry.resource_url(identity)
            live, code, err = await temporal_operator.k8s.get(self.k8scfg, url)
            if err:
                return [], True

            found = code != 404
            out.append(
                ResolvedResource(
                    builder=builder,
                    identity=identity,
                    manifest=manifest,
                    live=live if found else {},
                    found=found,
                )
            )
        return out, False

    async def dependencies_ready(self, builder: Builder) -> Tuple[bool, bool]:
        """Return `True` if all dependencies of `builder` exist and are ready."""
        if not isinstance(builder, DependentBuilder):
            return True, False

        for dep in builder.dependencies():
            _, err = self.registry.lookup(dep.gvk)
            if err:
                return False, True

            url = self.registry.resource_url(dep)
            live, code, err = await temporal_operator.k8s.get(self.k8scfg, url)
            if err:
                return False, True
            if code == 404:
                logit.info("dependency not found", {"dependency": str(dep)})
                return False, False

            ready, msg = temporal_operator.status.is_current(live)
            if not ready:
                meta = {"dependency": str(dep), "reason": msg}
                logit.info("dependency not ready", meta)
                return False, False
        return True, False

    def equal(self, builder: Builder, gvk: GroupVersionKind, a: dict, b: dict) -> bool:
        if isinstance(builder, Comparer):
            return builder.equal(a, b)
        if gvk in self.comparers:
            return self.comparers[gvk](a, b)
        return a == b

    async def create_or_update(
        self, owner: dict, res: ResolvedResource
    ) -> Tuple[dict, OperationResult, bool]:
        """Write the desired state of `res` to K8s if necessary."""
        builder, identity = res.builder, res.identity

        if not res.found:
            obj = self.registry.empty(identity)
            obj["metadata"].update(copy.deepcopy(res.manifest.get("metadata", {})))
            if builder.update(obj):
                logit.error("cannot build resource", {"resource": str(identity)})
                return {}, OperationResult.NONE, True

            url = self.registry.collection_url(identity.gvk, identity.namespace)
            resp, _, err = await temporal_operator.k8s.post(self.k8scfg, url, obj)
            await log_and_record_operation_result(
                self.recorder, owner, obj, OperationResult.CREATED, err
            )
            return resp, OperationResult.CREATED, err

        # Mutate a copy of the live object and only write it back if the
        # builder changed something.
        snapshot = res.live
        obj = copy.deepcopy(snapshot)
        if builder.update(obj):
            logit.error("cannot build resource", {"resource": str(identity)})
            return {}, OperationResult.NONE, True

        if self.equal(builder, identity.gvk, snapshot, obj):
            return snapshot, OperationResult.NONE, False

        url = self.registry.resource_url(identity)
        resp, _, err = await temporal_operator.k8s.put(self.k8scfg, url, obj)
        await log_and_record_operation_result(
            self.recorder, owner, obj, OperationResult.UPDATED, err
        )
        return resp, OperationResult.UPDATED, err

    async def delete(self, owner: dict, identity: ResourceIdentity) -> bool:
        url = self.registry.resource_url(identity)
        _, code, err = await temporal_operator.k8s.delete(self.k8scfg, url)
        if code == 404:
            return False

        manifest = self.registry.empty(identity)
        await log_and_record_operation_result(
            self.recorder, owner, manifest, OperationResult.DELETED, err
        )
        return err

    async def reconcile(
        self, owner: dict, builders: List[Builder]
    ) -> Tuple[List[Status], float, bool]:
        """Apply `builders` and return the status of every managed resource.

        Returns `(statuses, requeue_after, err)`. A positive `requeue_after`
        means a dependency was not ready and the statuses are incomplete.

        """
        resolved, err = await self.resolve(builders)
        if err:
            return [], 0.0, True

        # Resources with more dependencies run later. This is a heuristic and
        # not a topological sort. The sort is stable.
        resolved.sort(key=lambda _: dependency_count(_.builder))

        statuses: List[Status] = []
        for res in resolved:
            builder = res.builder

            if not builder.enabled():
                if res.found and await self.delete(owner, res.identity):
                    return [], 0.0, True
                continue

            ready, err = await self.dependencies_ready(builder)
            if err:
                return [], 0.0, True
            if not ready:
                return statuses, DEPENDENCY_REQUEUE, False

            live, _, err = await self.create_or_update(owner, res)
            if err:
                return [], 0.0, True

            if isinstance(builder, StatusReporter):
                status, err = builder.report_status(live)
                if err:
                    return [], 0.0, True
            else:
                status = temporal_operator.status.compute_status(live)
            statuses.append(status)

        return statuses, 0.0, False

    async def prune(self, owner: dict, targets: List[ResourceIdentity]) -> bool:
        """Delete all `targets` that still exist."""
        for identity in targets:
            _, err = self.registry.lookup(identity.gvk)
            if err:
                return True

            url = self.registry.resource_url(identity)
            _, code, err = await temporal_operator.k8s.get(self.k8scfg, url)
            if err:
                return True
            if code == 404:
                continue

            logit.info("prune orphaned resource", {"resource": str(identity)})
            if await self.delete(owner, identity):
                return True
        return False

    async def reconcile_resources(
        self, owner: dict, resource_set: ResourceSet
    ) -> Tuple[List[Status], float, bool]:
        """Reconcile all builders of `resource_set` and prune the orphans.

        Pruning only happens after a complete pass without requeue.

        """
        builders = resource_set.resource_builders()
        statuses, requeue, err = await self.reconcile(owner, builders)
        if err or requeue > 0:
            return statuses, requeue, err

        targets, err = await temporal_operator.state.compute_prune_targets(
            self.discovery, builders, resource_set.resource_factories()
        )
        if err:
            return [], 0.0, True

        if await self.prune(owner, targets):
            return [], 0.0, True
        return statuses, 0.0, False
