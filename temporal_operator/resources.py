"""Builders for the resources that make up a Temporal cluster."""

import logging
from typing import Dict, List, Tuple
from urllib.parse import urlparse

import yaml

import temporal_operator.defaults
import temporal_operator.status
from temporal_operator.builder import Builder, DependentBuilder, StatusReporter
from temporal_operator.defaults import LABEL_VERSION, resource_labels, selector_labels
from temporal_operator.manifest_utilities import (
    merge,
    set_metadata,
    set_owner_reference,
)
from temporal_operator.models import (
    DatastoreSpec,
    GroupVersionKind,
    K8sEnvVar,
    K8sServicePort,
    ResourceIdentity,
    ServiceSpec,
    Status,
    TemporalCluster,
    default_services,
)
from temporal_operator.persistence import password_env_vars

# Convenience.
logit = logging.getLogger("app")

# The four Temporal services in the order in which they are deployed.
SERVICES = ("frontend", "history", "matching", "worker")

CONFIG_FILE = "config_template.yaml"
CONFIG_MOUNT_PATH = "/etc/temporal/config"

DEPLOYMENT = GroupVersionKind(group="apps", version="v1", kind="Deployment")

# Port of the Prometheus endpoint of the Temporal services.
METRICS_PORT = 9090


class ClusterBuilder(Builder):
    """Common base of all builders that belong to one `TemporalCluster`."""

    kind = GroupVersionKind(group="", version="v1", kind="ConfigMap")
    suffix = ""
    component = ""

    def __init__(self, cluster: TemporalCluster):
        self.cluster = cluster

    def name(self) -> str:
        return self.cluster.child_name(self.suffix)

    def labels(self) -> Dict[str, str]:
        version = self.cluster.spec.version
        return resource_labels(self.cluster, self.component or self.suffix, version)

    def build(self) -> dict:
        return {
            "apiVersion": self.kind.apiVersion,
            "kind": self.kind.kind,
            "metadata": {
                "name": self.name(),
                "namespace": self.cluster.metadata.namespace,
            },
        }

    def identity(self) -> ResourceIdentity:
        return ResourceIdentity.from_manifest(self.build())

    def update(self, manifest: dict) -> bool:
        spec, err = self.desired()
        if err:
            return True

        set_metadata(manifest, self.labels(), self.cluster.metadata.annotations)
        set_owner_reference(self.cluster, manifest)
        for key, value in spec.items():
            manifest[key] = merge(manifest.get(key), value)
        return False

    def desired(self) -> Tuple[dict, bool]:
        """Return the top level fields the builder owns, eg `{"spec": ...}`."""
        raise NotImplementedError


# ----------------------------------------------------------------------
# Server Configuration.
# ----------------------------------------------------------------------


def datastore_config(store: DatastoreSpec) -> dict:
    """Return the section of the server config for one datastore."""
    password = "{{ .Env.%s }}" % store.password_env_var()

    if store.sql is not None:
        return {
            "sql": {
                "pluginName": store.sql.pluginName,
                "databaseName": store.sql.databaseName,
                "connectAddr": store.sql.connectAddr,
                "connectProtocol": store.sql.connectProtocol,
                "connectAttributes": dict(store.sql.connectAttributes),
                "user": store.sql.user,
                "password": password,
            }
        }

    if store.cassandra is not None:
        out = {
            "hosts": str.join(",", store.cassandra.hosts),
            "port": store.cassandra.port,
            "keyspace": store.cassandra.keyspace,
            "user": store.cassandra.user,
            "password": password,
        }
        if store.cassandra.datacenter:
            out["datacenter"] = store.cassandra.datacenter
        return {"cassandra": out}

    assert store.elasticsearch is not None
    es = store.elasticsearch
    url = urlparse(es.url)
    indices = {"visibility": es.indices.visibility}
    if es.indices.secondaryVisibility:
        indices["secondary_visibility"] = es.indices.secondaryVisibility
    return {
        "elasticsearch": {
            "version": es.version,
            "url": {"scheme": url.scheme, "host": url.netloc},
            "username": es.username,
            "password": password,
            "indices": indices,
        }
    }


def metrics_enabled(cluster: TemporalCluster) -> bool:
    return cluster.spec.metrics is not None and cluster.spec.metrics.enabled


def server_config(cluster: TemporalCluster) -> dict:
    """Return the Temporal server configuration of `cluster`."""
    persistence = cluster.spec.persistence
    frontend = cluster.spec.services["frontend"]
    frontend_addr = f"{cluster.child_name('frontend')}:{frontend.port}"

    stores = {_.name: datastore_config(_) for _ in persistence.datastores()}
    persistence_cfg = {
        "numHistoryShards": cluster.spec.numHistoryShards,
        "defaultStore": persistence.defaultStore.name,
        "visibilityStore": persistence.visibilityStore.name,
        "datastores": stores,
    }
    if persistence.advancedVisibilityStore is not None:
        name = persistence.advancedVisibilityStore.name
        persistence_cfg["advancedVisibilityStore"] = name

    services = {}
    for name, spec in cluster.spec.services.items():
        rpc = {
            "grpcPort": spec.port,
            "membershipPort": spec.membershipPort,
            "bindOnIP": "0.0.0.0",
        }
        if spec.httpPort:
            rpc["httpPort"] = spec.httpPort
        services[name] = {"rpc": rpc}

    global_cfg: dict = {
        "membership": {
            "maxJoinDuration": "30s",
            "broadcastAddress": '{{ default .Env.POD_IP "0.0.0.0" }}',
        },
    }
    if metrics_enabled(cluster):
        listen = f"0.0.0.0:{METRICS_PORT}"
        global_cfg["metrics"] = {"prometheus": {"listenAddress": listen}}

    return {
        "log": {"stdout": True, "level": "info"},
        "persistence": persistence_cfg,
        "global": global_cfg,
        "services": services,
        "clusterMetadata": {
            "enableGlobalNamespace": False,
            "failoverVersionIncrement": 10,
            "masterClusterName": "active",
            "currentClusterName": "active",
            "clusterInformation": {
                "active": {
                    "enabled": True,
                    "initialFailoverVersion": 1,
                    "rpcName": "frontend",
                    "rpcAddress": frontend_addr,
                }
            },
        },
        "publicClient": {"hostPort": frontend_addr},
    }


class ConfigMapBuilder(ClusterBuilder):
    suffix = "config"

    def desired(self) -> Tuple[dict, bool]:
        if "frontend" not in self.cluster.spec.services:
            logit.error("no frontend service", {"cluster": self.cluster.metadata.name})
            return {}, True

        text = yaml.safe_dump(server_config(self.cluster), sort_keys=False)
        return {"data": {CONFIG_FILE: text}}, False


# ----------------------------------------------------------------------
# Temporal Services.
# ----------------------------------------------------------------------


class ServiceBuilder(ClusterBuilder):
    """Base class for builders of one of the Temporal services."""

    def __init__(self, cluster: TemporalCluster, service: str):
        super().__init__(cluster)
        self.service = service
        self.suffix = service
        self.component = service

    def spec(self) -> ServiceSpec:
        default = default_services().get(self.service)
        return self.cluster.spec.services.get(self.service, default or ServiceSpec())


class ServiceAccountBuilder(ServiceBuilder):
    kind = GroupVersionKind(group="", version="v1", kind="ServiceAccount")

    def desired(self) -> Tuple[dict, bool]:
        return {}, False


class HeadlessServiceBuilder(ServiceBuilder):
    """Service that resolves to the Pod IPs for the membership ring."""

    kind = GroupVersionKind(group="", version="v1", kind="Service")

    def name(self) -> str:
        return self.cluster.child_name(f"{self.service}-headless")

    def desired(self) -> Tuple[dict, bool]:
        spec = self.spec()
        ports = [
            K8sServicePort(
                name="rpc", port=spec.port, targetPort=spec.port, appProtocol="tcp"
            ),
            K8sServicePort(
                name="membership",
                port=spec.membershipPort,
                targetPort=spec.membershipPort,
                appProtocol="tcp",
            ),
        ]
        if metrics_enabled(self.cluster):
            ports.append(
                K8sServicePort(
                    name="metrics", port=METRICS_PORT, targetPort=METRICS_PORT
                )
            )
        return {
            "spec": {
                "type": "ClusterIP",
                "clusterIP": "None",
                "publishNotReadyAddresses": True,
                "selector": selector_labels(self.cluster, self.service),
                "ports": [_.model_dump(exclude_defaults=True) for _ in ports],
            }
        }, False


class FrontendServiceBuilder(ClusterBuilder):
    kind = GroupVersionKind(group="", version="v1", kind="Service")
    suffix = "frontend"

    def desired(self) -> Tuple[dict, bool]:
        spec = self.cluster.spec.services.get("frontend")
        if spec is None:
            return {}, True

        ports = [
            K8sServicePort(
                name="grpc-rpc",
                port=spec.port,
                targetPort=spec.port,
                appProtocol="grpc",
            )
        ]
        if spec.httpPort:
            ports.append(
                K8sServicePort(
                    name="http", port=spec.httpPort, targetPort=spec.httpPort
                )
            )
        return {
            "spec": {
                "type": "ClusterIP",
                "selector": selector_labels(self.cluster, "frontend"),
                "ports": [_.model_dump(exclude_defaults=True) for _ in ports],
            }
        }, False


class DeploymentBuilder(ServiceBuilder, DependentBuilder, StatusReporter):
    """Deployment of one Temporal service.

    The Pods read the server configuration from the cluster ConfigMap, which
    must therefore exist first.

    """

    kind = DEPLOYMENT

    def dependencies(self) -> List[ResourceIdentity]:
        return [ConfigMapBuilder(self.cluster).identity()]

    def image(self) -> str:
        return f"{self.cluster.spec.image}:{self.cluster.spec.version}"

    def container(self) -> dict:
        spec = self.spec()
        ports = [
            {"name": "rpc", "containerPort": spec.port, "protocol": "TCP"},
            {
                "name": "membership",
                "containerPort": spec.membershipPort,
                "protocol": "TCP",
            },
        ]
        if spec.httpPort:
            ports.append(
                {"name": "http", "containerPort": spec.httpPort, "protocol": "TCP"}
            )
        if metrics_enabled(self.cluster):
            ports.append(
                {"name": "metrics", "containerPort": METRICS_PORT, "protocol": "TCP"}
            )

        env = [K8sEnvVar(name="SERVICES", value=self.service)]
        env += temporal_operator.defaults.pod_fieldref_envs()
        env += password_env_vars(self.cluster)

        return {
            "name": "service",
            "image": self.image(),
            "imagePullPolicy": "IfNotPresent",
            "env": [_.model_dump(exclude_defaults=True) for _ in env],
            "ports": ports,
            "securityContext": temporal_operator.defaults.pod_security_context(),
            "volumeMounts": [
                {
                    "name": "config",
                    "mountPath": f"{CONFIG_MOUNT_PATH}/{CONFIG_FILE}",
                    "subPath": CONFIG_FILE,
                }
            ],
        }

    def desired(self) -> Tuple[dict, bool]:
        selector = selector_labels(self.cluster, self.service)
        return {
            "spec": {
                "replicas": self.spec().replicas,
                "selector": {"matchLabels": selector},
                "template": {
                    "metadata": {"labels": self.labels()},
                    "spec": {
                        "serviceAccountName": self.name(),
                        "containers": [self.container()],
                        "volumes": [
                            {
                                "name": "config",
                                "configMap": {
                                    "name": ConfigMapBuilder(self.cluster).name()
                                },
                            }
                        ],
                        "topologySpreadConstraints": (
                            temporal_operator.defaults.topology_spread(selector)
                        ),
                    },
                },
            }
        }, False

    def report_status(self, manifest: dict) -> Tuple[Status, bool]:
        """Ready once the rollout completed with the desired image."""
        status = temporal_operator.status.compute_status(manifest)
        try:
            containers = manifest["spec"]["template"]["spec"]["containers"]
        except KeyError:
            logit.error("invalid Deployment manifest", {"deployment": status.name})
            return status, True

        images = {_.get("image") for _ in containers}
        status.ready = status.ready and self.image() in images
        return status, False


# ----------------------------------------------------------------------
# Optional Components.
# ----------------------------------------------------------------------


class UIDeploymentBuilder(ClusterBuilder, DependentBuilder):
    kind = DEPLOYMENT
    suffix = "ui"

    def enabled(self) -> bool:
        return self.cluster.spec.ui is not None and self.cluster.spec.ui.enabled

    def labels(self) -> Dict[str, str]:
        ui = self.cluster.spec.ui
        version = ui.version if ui else ""
        return resource_labels(self.cluster, "ui", version)

    def dependencies(self) -> List[ResourceIdentity]:
        return [
            ConfigMapBuilder(self.cluster).identity(),
            DeploymentBuilder(self.cluster, "frontend").identity(),
        ]

    def desired(self) -> Tuple[dict, bool]:
        ui = self.cluster.spec.ui
        if ui is None:
            return {}, True

        frontend = self.cluster.spec.services["frontend"]
        address = f"{self.cluster.child_name('frontend')}:{frontend.port}"
        selector = selector_labels(self.cluster, "ui")
        container = {
            "name": "ui",
            "image": f"{ui.image}:{ui.version}",
            "imagePullPolicy": "IfNotPresent",
            "env": [{"name": "TEMPORAL_ADDRESS", "value": address}],
            "ports": [{"name": "http", "containerPort": 8080, "protocol": "TCP"}],
            "securityContext": temporal_operator.defaults.pod_security_context(),
        }
        return {
            "spec": {
                "replicas": ui.replicas,
                "selector": {"matchLabels": selector},
                "template": {
                    "metadata": {"labels": self.labels()},
                    "spec": {"containers": [container]},
                },
            }
        }, False


class UIServiceBuilder(ClusterBuilder):
    kind = GroupVersionKind(group="", version="v1", kind="Service")
    suffix = "ui"

    def enabled(self) -> bool:
        return self.cluster.spec.ui is not None and self.cluster.spec.ui.enabled

    def desired(self) -> Tuple[dict, bool]:
        port = K8sServicePort(name="http", port=8080, targetPort=8080)
        return {
            "spec": {
                "type": "ClusterIP",
                "selector": selector_labels(self.cluster, "ui"),
                "ports": [port.model_dump(exclude_defaults=True)],
            }
        }, False


class AdminToolsDeploymentBuilder(ClusterBuilder, DependentBuilder):
    kind = DEPLOYMENT
    suffix = "admintools"

    def enabled(self) -> bool:
        admin = self.cluster.spec.adminTools
        return admin is not None and admin.enabled

    def dependencies(self) -> List[ResourceIdentity]:
        return [
            ConfigMapBuilder(self.cluster).identity(),
            DeploymentBuilder(self.cluster, "frontend").identity(),
        ]

    def desired(self) -> Tuple[dict, bool]:
        admin = self.cluster.spec.adminTools
        image = admin.image if admin else "temporalio/admin-tools"
        frontend = self.cluster.spec.services["frontend"]
        address = f"{self.cluster.child_name('frontend')}:{frontend.port}"
        selector = selector_labels(self.cluster, "admintools")

        container = {
            "name": "admintools",
            "image": f"{image}:{self.cluster.spec.version}",
            "imagePullPolicy": "IfNotPresent",
            "env": [{"name": "TEMPORAL_CLI_ADDRESS", "value": address}],
            # Keep the container alive for interactive use.
            "command": ["tail", "-f", "/dev/null"],
        }
        return {
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": selector},
                "template": {
                    "metadata": {"labels": self.labels()},
                    "spec": {"containers": [container]},
                },
            }
        }, False


class PeerAuthenticationBuilder(ServiceBuilder):
    """Enforce Istio mTLS for the Pods of one service."""

    kind = GroupVersionKind(
        group="security.istio.io", version="v1beta1", kind="PeerAuthentication"
    )

    def desired(self) -> Tuple[dict, bool]:
        return {
            "spec": {
                "selector": {
                    "matchLabels": selector_labels(self.cluster, self.service)
                },
                "mtls": {"mode": "STRICT"},
            }
        }, False


class ServiceMonitorBuilder(ServiceBuilder):
    kind = GroupVersionKind(
        group="monitoring.coreos.com", version="v1", kind="ServiceMonitor"
    )

    def enabled(self) -> bool:
        metrics = self.cluster.spec.metrics
        return metrics is not None and metrics.enabled and metrics.serviceMonitor

    def desired(self) -> Tuple[dict, bool]:
        return {
            "spec": {
                "selector": {
                    "matchLabels": selector_labels(self.cluster, self.service)
                },
                "endpoints": [{"port": "metrics", "interval": "30s"}],
            }
        }, False


def service_versions(statuses: List[Status]) -> Dict[str, Status]:
    """Return the Deployment status of every Temporal service by service name."""
    out = {}
    for status in statuses:
        component = status.labels.get(temporal_operator.defaults.LABEL_COMPONENT)
        if status.gvk == DEPLOYMENT and component in SERVICES:
            out[component] = status
    return out


def status_version(status: Status) -> str:
    return status.labels.get(LABEL_VERSION, "")
