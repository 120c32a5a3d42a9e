"""Reconcile one `TemporalCluster` object.

A pass fetches the cluster, persists the defaults of all unset fields,
validates the version and the optional integrations, runs the schema
migration Jobs and finally reconciles the resources of the cluster. The
outcome of every pass ends up in the status subresource of the cluster.

"""

import copy
import logging
from datetime import UTC, datetime
from typing import List, Tuple

import pydantic
from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion, Version
from square.dtypes import K8sConfig

import temporal_operator.k8s
from temporal_operator.defaults import (
    BROKEN_VERSIONS,
    DEFAULT_VERSION,
    SUPPORTED_VERSIONS,
)
from temporal_operator.discovery import AvailableAPIs, DiscoveryCache
from temporal_operator.events import EventRecorder
from temporal_operator.jobs import JobsReconciler
from temporal_operator.models import (
    GroupVersionKind,
    K8sCondition,
    ResourceIdentity,
    ServiceStatus,
    Status,
    TemporalCluster,
    default_services,
)
from temporal_operator.persistence import (
    SchemaScriptsConfigMapBuilder,
    persistence_jobs,
    schema_job_factory,
)
from temporal_operator.reconciler import BuildersReconciler, EqualFun
from temporal_operator.registry import KindRegistry
from temporal_operator.resources import SERVICES, service_versions, status_version
from temporal_operator.resourceset import TemporalClusterResources
from temporal_operator.status import (
    get_condition,
    is_cluster_ready,
    observed_version_matches_desired_version,
    remove_condition,
    set_condition,
)

# Seconds to wait before the next attempt after a failed pass.
ERROR_REQUEUE = 2.0

# Seconds between passes while the services roll out.
ROLLOUT_REQUEUE = 10.0

TEMPORAL_CLUSTER = GroupVersionKind(
    group="temporal.io", version="v1beta1", kind="TemporalCluster"
)

# Condition types.
READY = "Ready"
RECONCILE_SUCCESS = "ReconcileSuccess"
RECONCILE_ERROR = "ReconcileError"

# Convenience.
logit = logging.getLogger("app")


def now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def apply_defaults(cluster: TemporalCluster) -> None:
    """Fill the fields of `cluster` that K8s does not default for us."""
    spec = cluster.spec
    if not spec.version:
        spec.version = DEFAULT_VERSION

    defaults = default_services()
    for name, service in spec.services.items():
        if name not in defaults:
            continue
        service.port = service.port or defaults[name].port
        service.membershipPort = service.membershipPort or defaults[name].membershipPort
        service.httpPort = service.httpPort or defaults[name].httpPort


def spec_changed(cluster: TemporalCluster, raw: dict) -> bool:
    """Return `True` if the spec of `cluster` differs from the stored one."""
    return raw.get("spec") != cluster.spec.model_dump(mode="json", exclude_none=True)


def validate_version(version: str) -> Tuple[str, bool]:
    try:
        parsed = Version(version)
    except InvalidVersion:
        return f"invalid version {version}", True

    if parsed not in SpecifierSet(SUPPORTED_VERSIONS):
        return f"version {version} is outside of {SUPPORTED_VERSIONS}", True
    if str(parsed) in BROKEN_VERSIONS:
        return f"version {version} has known defects", True
    return "", False


def validate_integrations(
    cluster: TemporalCluster, apis: AvailableAPIs
) -> Tuple[str, bool]:
    """Verify that K8s serves the APIs the optional features of `cluster` need."""
    spec = cluster.spec
    if spec.mTLS is not None:
        if spec.mTLS.provider == "istio" and not apis.istio:
            return "mTLS provider istio requires the Istio API", True
        if spec.mTLS.provider == "cert-manager" and not apis.cert_manager:
            return "mTLS provider cert-manager requires the cert-manager API", True
        if spec.mTLS.provider not in ("istio", "cert-manager"):
            return f"unknown mTLS provider {spec.mTLS.provider}", True

    metrics = spec.metrics
    if metrics is not None and metrics.serviceMonitor:
        if not apis.prometheus_operator:
            return "ServiceMonitors require the Prometheus operator API", True
    return "", False


def make_condition(
    cluster: TemporalCluster, ctype: str, status: str, reason: str, message: str = ""
) -> K8sCondition:
    return K8sCondition(
        type=ctype,
        status=status,
        reason=reason,
        message=message,
        observedGeneration=cluster.metadata.generation,
        lastTransitionTime=now(),
    )


def update_service_statuses(cluster: TemporalCluster, statuses: List[Status]):
    """Derive the service status and the cluster version from `statuses`."""
    deployments = service_versions(statuses)

    services: List[ServiceStatus] = []
    for name in SERVICES:
        if name not in cluster.spec.services:
            continue
        status = deployments.get(name)
        if status is None:
            services.append(ServiceStatus(name=name))
        else:
            version = status_version(status)
            ready = status.ready
            services.append(ServiceStatus(name=name, version=version, ready=ready))
    cluster.status.services = services

    # The cluster runs the new version once every service runs it.
    versions = {_.version for _ in services}
    if is_cluster_ready(cluster) and versions == {cluster.spec.version}:
        cluster.status.version = cluster.spec.version


def update_ready_condition(cluster: TemporalCluster) -> bool:
    """Set the `Ready` condition and return `True` if the cluster is ready."""
    ready = is_cluster_ready(cluster)
    ready = ready and observed_version_matches_desired_version(cluster)
    if ready:
        cond = make_condition(cluster, READY, "True", "ServicesReady")
    else:
        pending = sorted(_.name for _ in cluster.status.services if not _.ready)
        message = "waiting for services: " + ", ".join(pending) if pending else ""
        cond = make_condition(cluster, READY, "False", "ServicesNotReady", message)
    set_condition(cluster, cond)
    return ready


class ClusterController:
    def __init__(
        self,
        k8scfg: K8sConfig,
        registry: KindRegistry,
        discovery: DiscoveryCache,
        recorder: EventRecorder,
        apis: AvailableAPIs | None = None,
        comparers: dict[GroupVersionKind, EqualFun] | None = None,
    ):
        self.k8scfg = k8scfg
        self.registry = registry
        self.recorder = recorder
        self.apis = apis or AvailableAPIs()
        self.engine = BuildersReconciler(
            k8scfg, registry, discovery, recorder, comparers
        )
        self.jobs = JobsReconciler(k8scfg, registry)

    def identity(self, namespace: str, name: str) -> ResourceIdentity:
        return ResourceIdentity(gvk=TEMPORAL_CLUSTER, namespace=namespace, name=name)

    async def fetch(self, namespace: str, name: str) -> Tuple[dict, bool, bool]:
        """Return `(manifest, found, err)` of the cluster."""
        url = self.registry.resource_url(self.identity(namespace, name))
        raw, code, err = await temporal_operator.k8s.get(self.k8scfg, url)
        if err:
            return {}, False, True
        return raw, code != 404, False

    async def write_spec(self, raw: dict, cluster: TemporalCluster) -> bool:
        manifest = copy.deepcopy(raw)
        manifest["spec"] = cluster.spec.model_dump(mode="json", exclude_none=True)

        identity = ResourceIdentity.from_manifest(manifest)
        url = self.registry.resource_url(identity)
        _, _, err = await temporal_operator.k8s.put(self.k8scfg, url, manifest)
        return err

    async def write_status(self, raw: dict, cluster: TemporalCluster) -> bool:
        status = cluster.status.model_dump(mode="json", exclude_none=True)
        if raw.get("status") == status:
            return False

        manifest = copy.deepcopy(raw)
        manifest["status"] = status

        identity = ResourceIdentity.from_manifest(manifest)
        url = self.registry.status_url(identity)
        _, _, err = await temporal_operator.k8s.put(self.k8scfg, url, manifest)
        if err:
            logit.error("cannot update cluster status", {"cluster": str(identity)})
        return err

    async def fail(self, raw: dict, cluster: TemporalCluster, reason: str, msg: str):
        """Record the failed pass in the cluster status and as an event."""
        meta = {"namespace": cluster.metadata.namespace, "name": cluster.metadata.name}
        logit.error(msg, meta | {"reason": reason})

        remove_condition(cluster, RECONCILE_SUCCESS)
        cond = make_condition(cluster, RECONCILE_ERROR, "True", reason, msg)
        set_condition(cluster, cond)
        await self.recorder.record(raw, "Warning", reason, msg)
        await self.write_status(raw, cluster)

    async def reconcile_persistence(
        self, raw: dict, cluster: TemporalCluster
    ) -> Tuple[float, bool]:
        """Deploy the schema scripts and run the migration Jobs in order."""
        scripts = [SchemaScriptsConfigMapBuilder(cluster)]
        _, requeue, err = await self.engine.reconcile(raw, scripts)
        if err or requeue > 0:
            return requeue, err

        jobs = persistence_jobs(cluster)
        return await self.jobs.run_jobs(cluster, schema_job_factory, jobs)

    async def reconcile(self, namespace: str, name: str) -> Tuple[float, bool]:
        """Run one pass for the cluster and return `(requeue_after, err)`."""
        meta = {"namespace": namespace, "name": name}

        raw, found, err = await self.fetch(namespace, name)
        if err:
            return ERROR_REQUEUE, True
        if not found:
            logit.info("cluster does not exist anymore", meta)
            return 0.0, False

        try:
            cluster = TemporalCluster.model_validate(raw)
        except pydantic.ValidationError as e:
            logit.error("invalid cluster manifest", meta | {"reason": str(e)})
            await self.recorder.record(raw, "Warning", "InvalidSpec", str(e))
            return 0.0, True

        if cluster.metadata.deletionTimestamp:
            logit.info("cluster is terminating", meta)
            return 0.0, False

        # Persist the defaults and wait for the resulting watch event.
        apply_defaults(cluster)
        if spec_changed(cluster, raw):
            logit.info("persisting cluster defaults", meta)
            if await self.write_spec(raw, cluster):
                return ERROR_REQUEUE, True
            return 0.0, False

        # Retrying cannot fix an invalid spec. Only a new spec can.
        for msg, err in (
            validate_version(cluster.spec.version),
            validate_integrations(cluster, self.apis),
        ):
            if err:
                await self.fail(raw, cluster, "InvalidSpec", msg)
                return 0.0, True

        ready = get_condition(cluster, READY)
        if ready is None or ready.observedGeneration != cluster.metadata.generation:
            cond = make_condition(cluster, READY, "Unknown", "Progressing")
            set_condition(cluster, cond)

        requeue, err = await self.reconcile_persistence(raw, cluster)
        if err:
            msg = "cannot reconcile persistence"
            await self.fail(raw, cluster, "PersistenceError", msg)
            return ERROR_REQUEUE, True
        if requeue > 0:
            if await self.write_status(raw, cluster):
                return ERROR_REQUEUE, True
            return requeue, False

        resource_set = TemporalClusterResources(cluster)
        engine = self.engine
        statuses, requeue, err = await engine.reconcile_resources(raw, resource_set)
        if err:
            msg = "cannot reconcile resources"
            await self.fail(raw, cluster, "ResourcesError", msg)
            return ERROR_REQUEUE, True

        update_service_statuses(cluster, statuses)
        ready = update_ready_condition(cluster)
        if requeue == 0 and not ready:
            requeue = ROLLOUT_REQUEUE
        remove_condition(cluster, RECONCILE_ERROR)
        cond = make_condition(cluster, RECONCILE_SUCCESS, "True", "ReconcileSuccess")
        set_condition(cluster, cond)

        if await self.write_status(raw, cluster):
            return ERROR_REQUEUE, True
        logit.info("cluster reconciled", meta | {"requeue": requeue})
        return requeue, False
