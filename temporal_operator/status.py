"""Decide whether a live resource has finished rolling out."""

from typing import Tuple

from temporal_operator.models import (
    GroupVersionKind,
    K8sCondition,
    Status,
    TemporalCluster,
)


def _conditions(manifest: dict) -> dict:
    conditions = manifest.get("status", {}).get("conditions", []) or []
    return {_.get("type"): _ for _ in conditions if isinstance(_, dict)}


def _condition_true(manifest: dict, name: str) -> bool:
    return _conditions(manifest).get(name, {}).get("status") == "True"


def _deployment(manifest: dict) -> Tuple[bool, str]:
    spec, status = manifest.get("spec", {}), manifest.get("status", {})
    replicas = spec.get("replicas", 1)

    conditions = _conditions(manifest)
    progressing = conditions.get("Progressing", {})
    if progressing.get("reason") == "ProgressDeadlineExceeded":
        return False, "progress deadline exceeded"

    if status.get("updatedReplicas", 0) < replicas:
        return False, "updated replicas"
    if status.get("replicas", 0) > status.get("updatedReplicas", 0):
        return False, "pending termination"
    if status.get("availableReplicas", 0) < replicas:
        return False, "available replicas"
    if status.get("readyReplicas", 0) < replicas:
        return False, "ready replicas"
    return True, ""


def _statefulset(manifest: dict) -> Tuple[bool, str]:
    spec, status = manifest.get("spec", {}), manifest.get("status", {})
    replicas = spec.get("replicas", 1)
    if status.get("readyReplicas", 0) < replicas:
        return False, "ready replicas"
    if status.get("currentRevision") != status.get("updateRevision"):
        return False, "revision"
    return True, ""


def _daemonset(manifest: dict) -> Tuple[bool, str]:
    status = manifest.get("status", {})
    desired = status.get("desiredNumberScheduled", 0)
    if status.get("updatedNumberScheduled", 0) < desired:
        return False, "updated pods"
    if status.get("numberReady", 0) < desired:
        return False, "ready pods"
    return True, ""


def _job(manifest: dict) -> Tuple[bool, str]:
    status = manifest.get("status", {})
    conditions = _conditions(manifest)
    if conditions.get("Failed", {}).get("status") == "True":
        return False, "job failed"
    if conditions.get("Complete", {}).get("status") == "True":
        return True, ""
    if status.get("startTime"):
        return True, ""
    return False, "job not started"


def _pod(manifest: dict) -> Tuple[bool, str]:
    phase = manifest.get("status", {}).get("phase", "")
    if phase == "Succeeded":
        return True, ""
    if phase == "Running" and _condition_true(manifest, "Ready"):
        return True, ""
    return False, f"pod phase {phase}"


def _pvc(manifest: dict) -> Tuple[bool, str]:
    phase = manifest.get("status", {}).get("phase", "")
    return phase == "Bound", f"claim phase {phase}"


def _service(manifest: dict) -> Tuple[bool, str]:
    if manifest.get("spec", {}).get("type") != "LoadBalancer":
        return True, ""
    ingress = manifest.get("status", {}).get("loadBalancer", {}).get("ingress")
    return bool(ingress), "load balancer has no ingress"


def _generic(manifest: dict) -> Tuple[bool, str]:
    conditions = _conditions(manifest)
    for name in ("Reconciling", "Stalled"):
        if conditions.get(name, {}).get("status") == "True":
            return False, name.lower()
    ready = conditions.get("Ready")
    if ready is not None and ready.get("status") != "True":
        return False, ready.get("message", "not ready")
    return True, ""


# Kind specific readiness checks. Everything else uses `_generic`.
CHECKS = {
    "Deployment": _deployment,
    "StatefulSet": _statefulset,
    "DaemonSet": _daemonset,
    "Job": _job,
    "Pod": _pod,
    "PersistentVolumeClaim": _pvc,
    "Service": _service,
}


def is_current(manifest: dict) -> Tuple[bool, str]:
    """Return `(True, "")` if the live `manifest` has finished rolling out.

    Otherwise the second element is a short human readable reason.

    """
    meta = manifest.get("metadata", {})
    if meta.get("deletionTimestamp"):
        return False, "terminating"

    # The controller has not yet seen the latest spec.
    observed = manifest.get("status", {}).get("observedGeneration")
    if observed is not None and observed < meta.get("generation", 0):
        return False, "stale observed generation"

    check = CHECKS.get(manifest.get("kind", ""), _generic)
    ready, msg = check(manifest)
    return ready, "" if ready else msg


def compute_status(manifest: dict) -> Status:
    meta = manifest.get("metadata", {})
    ready, _ = is_current(manifest)
    return Status(
        gvk=GroupVersionKind.from_manifest(manifest),
        name=meta.get("name", ""),
        namespace=meta.get("namespace", ""),
        labels=meta.get("labels", {}) or {},
        ready=ready,
    )


def observed_version_matches_desired_version(cluster: TemporalCluster) -> bool:
    return cluster.status.version == cluster.spec.version


def is_cluster_ready(cluster: TemporalCluster) -> bool:
    """Return `True` if every service reports ready."""
    if len(cluster.status.services) == 0:
        return False
    return all(_.ready for _ in cluster.status.services)


def get_condition(cluster: TemporalCluster, name: str) -> K8sCondition | None:
    for cond in cluster.status.conditions:
        if cond.type == name:
            return cond
    return None


def set_condition(cluster: TemporalCluster, cond: K8sCondition) -> None:
    """Insert or replace `cond` and only bump its transition time on change."""
    existing = get_condition(cluster, cond.type)
    if existing is None:
        cluster.status.conditions.append(cond)
        return

    if existing.status == cond.status and existing.lastTransitionTime:
        cond.lastTransitionTime = existing.lastTransitionTime
    idx = cluster.status.conditions.index(existing)
    cluster.status.conditions[idx] = cond


def remove_condition(cluster: TemporalCluster, name: str) -> None:
    conditions = cluster.status.conditions
    cluster.status.conditions = [_ for _ in conditions if _.type != name]
