from typing import Dict, List, Tuple

from temporal_operator.models import K8sEnvVar, TemporalCluster

# Convenience: the labels that select the Pods of one service.
LABEL_NAME = "app.kubernetes.io/name"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_VERSION = "app.kubernetes.io/version"
LABEL_PART_OF = "app.kubernetes.io/part-of"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
MANAGED_BY = "temporal-operator"

# Version to install if the cluster does not specify one.
DEFAULT_VERSION = "1.17.4"

# Temporal versions the operator can install.
SUPPORTED_VERSIONS = ">=1.14.0,<1.25.0"

# Releases with known defects that must not be installed.
BROKEN_VERSIONS = ("1.21.0", "1.21.1", "1.24.0")


def selector_labels(cluster: TemporalCluster, component: str) -> Dict[str, str]:
    return {
        LABEL_NAME: cluster.metadata.name,
        LABEL_COMPONENT: component,
        LABEL_PART_OF: "temporal",
    }


def resource_labels(
    cluster: TemporalCluster, component: str, version: str
) -> Dict[str, str]:
    """Return the labels of all resources that belong to `component`.

    The user supplied labels of the `cluster` are inherited but cannot
    override the selector labels.

    """
    labels = dict(cluster.metadata.labels)
    labels.update(selector_labels(cluster, component))
    labels[LABEL_VERSION] = version
    labels[LABEL_MANAGED_BY] = MANAGED_BY
    return labels


def pod_fieldref_envs() -> List[K8sEnvVar]:
    """Return default env vars that are sourced from the Pod itself."""
    kv: List[Tuple[str, str]] = [
        ("POD_NAME", "metadata.name"),
        ("POD_NAMESPACE", "metadata.namespace"),
        ("POD_IP", "status.podIP"),
    ]

    env_vars = []
    for name, value in kv:
        env_vars.append(
            K8sEnvVar(
                name=name,
                valueFrom=dict(fieldRef=dict(apiVersion="v1", fieldPath=value)),
            )
        )
    return env_vars


def pod_security_context() -> dict:
    """Return a generic container security context."""
    ctx = dict(
        allowPrivilegeEscalation=False,
        capabilities=dict(drop=["ALL"]),
        privileged=False,
        runAsNonRoot=True,
        runAsUser=1000,
    )

    return ctx


def topology_spread(label_selectors: Dict[str, str]) -> List[dict]:
    """Return a generic topology spread."""
    out = []
    topology_keys = ("topology.kubernetes.io/zone", "kubernetes.io/hostname")
    for key in topology_keys:
        constraint = dict(
            labelSelector=dict(matchLabels=label_selectors.copy()),
            maxSkew=1,
            topologyKey=key,
            whenUnsatisfiable="ScheduleAnyway",
        )
        out.append(constraint)
    return out
