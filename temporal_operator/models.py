from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

# ----------------------------------------------------------------------
# Resource Identity
# ----------------------------------------------------------------------


class GroupVersionKind(BaseModel):
    """The triple that identifies a resource type, eg `apps/v1 Deployment`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    group: str = ""
    version: str
    kind: str

    @property
    def apiVersion(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    @classmethod
    def from_manifest(cls, manifest: dict) -> "GroupVersionKind":
        return cls.from_api_version(manifest["apiVersion"], manifest["kind"])

    def __str__(self) -> str:
        return f"{self.apiVersion}, Kind={self.kind}"


class ResourceIdentity(BaseModel):
    """Unique key of a resource inside one cluster."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    gvk: GroupVersionKind
    namespace: str = ""
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}.{self.name}"

    @classmethod
    def from_manifest(cls, manifest: dict) -> "ResourceIdentity":
        meta = manifest.get("metadata", {})
        return cls(
            gvk=GroupVersionKind.from_manifest(manifest),
            namespace=meta.get("namespace", ""),
            name=meta["name"],
        )

    def __str__(self) -> str:
        return f"{self.gvk.kind} {self.namespace}/{self.name}"


class Status(BaseModel):
    """Observed readiness of one managed resource.

    This is never stored. The engine recomputes it on every pass from the live
    manifest.

    """

    model_config = ConfigDict(extra="forbid")

    gvk: GroupVersionKind
    name: str
    namespace: str = ""
    labels: Dict[str, str] = {}
    ready: bool = False


class OperationResult(str, Enum):
    NONE = "unchanged"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------


class K8sMetadata(BaseModel):
    name: str = ""
    namespace: str = ""
    uid: str = ""
    generation: int = 0
    resourceVersion: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}
    deletionTimestamp: Any = None


class K8sCondition(BaseModel):
    type: str
    status: str = "Unknown"
    reason: str = ""
    message: str = ""
    observedGeneration: int = 0
    lastTransitionTime: str = ""


class K8sEnvVar(BaseModel):
    name: str
    value: str = ""
    valueFrom: Any = None


class K8sServicePort(BaseModel):
    name: str = ""
    port: int = 0
    targetPort: int = 0
    protocol: str = "TCP"
    appProtocol: str = ""


class SecretKeyRef(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    key: str


# ----------------------------------------------------------------------
# TemporalCluster Spec.
# ----------------------------------------------------------------------


class ServiceSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    replicas: int = 1
    port: int = 0
    membershipPort: int = 0
    httpPort: int = 0


def default_services() -> Dict[str, ServiceSpec]:
    """Default ports of the four Temporal services."""
    return {
        "frontend": ServiceSpec(port=7233, membershipPort=6933, httpPort=7243),
        "history": ServiceSpec(port=7234, membershipPort=6934),
        "matching": ServiceSpec(port=7235, membershipPort=6935),
        "worker": ServiceSpec(port=7239, membershipPort=6939),
    }


class SQLSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user: str
    pluginName: str
    databaseName: str
    connectAddr: str
    connectProtocol: str = "tcp"
    connectAttributes: Dict[str, str] = {}


class CassandraSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hosts: List[str]
    port: int = 9042
    user: str = ""
    keyspace: str
    datacenter: str = ""


class ElasticsearchIndices(BaseModel):
    model_config = ConfigDict(extra="forbid")

    visibility: str = "temporal_visibility_v1"
    secondaryVisibility: str = ""


class ElasticsearchSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str = "v7"
    url: str
    username: str = ""
    indices: ElasticsearchIndices = ElasticsearchIndices()


class DatastoreType(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    CASSANDRA = "cassandra"
    ELASTICSEARCH = "elasticsearch"
    UNKNOWN = "unknown"


class DatastoreSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    sql: SQLSpec | None = None
    cassandra: CassandraSpec | None = None
    elasticsearch: ElasticsearchSpec | None = None
    passwordSecretRef: SecretKeyRef | None = None

    def datastore_type(self) -> DatastoreType:
        if self.sql is not None:
            if self.sql.pluginName in ("postgres", "postgres12"):
                return DatastoreType.POSTGRESQL
            if self.sql.pluginName in ("mysql", "mysql8"):
                return DatastoreType.MYSQL
            return DatastoreType.UNKNOWN
        if self.cassandra is not None:
            return DatastoreType.CASSANDRA
        if self.elasticsearch is not None:
            return DatastoreType.ELASTICSEARCH
        return DatastoreType.UNKNOWN

    def password_env_var(self) -> str:
        """Name of the env var that carries the store password in Pods."""
        name = self.name.upper().replace("-", "_")
        return f"TEMPORAL_{name}_DATASTORE_PASSWORD"


class PersistenceSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    defaultStore: DatastoreSpec
    visibilityStore: DatastoreSpec
    advancedVisibilityStore: DatastoreSpec | None = None

    def datastores(self) -> List[DatastoreSpec]:
        out = [self.defaultStore, self.visibilityStore]
        if self.advancedVisibilityStore is not None:
            out.append(self.advancedVisibilityStore)
        return out


class UISpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    image: str = "temporalio/ui"
    version: str = "2.21.3"
    replicas: int = 1


class AdminToolsSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    image: str = "temporalio/admin-tools"


class MTLSSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Either "istio" or "cert-manager".
    provider: str


class MetricsSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    serviceMonitor: bool = False


class TemporalClusterSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Empty until the controller applies the default version.
    version: str = ""
    image: str = "temporalio/server"
    numHistoryShards: int = 1
    services: Dict[str, ServiceSpec] = Field(default_factory=default_services)
    persistence: PersistenceSpec
    ui: UISpec | None = None
    adminTools: AdminToolsSpec | None = None
    mTLS: MTLSSpec | None = None
    metrics: MetricsSpec | None = None
    jobTtlSecondsAfterFinished: int | None = None


# ----------------------------------------------------------------------
# TemporalCluster Status.
# ----------------------------------------------------------------------


class ServiceStatus(BaseModel):
    name: str
    version: str = ""
    ready: bool = False


class DatastoreStatus(BaseModel):
    created: bool = False
    setup: bool = False
    type: str = ""
    schemaVersion: str | None = None


class PersistenceStatus(BaseModel):
    defaultStore: DatastoreStatus = DatastoreStatus()
    visibilityStore: DatastoreStatus = DatastoreStatus()
    advancedVisibilityStore: DatastoreStatus | None = None


class TemporalClusterStatus(BaseModel):
    version: str = ""
    services: List[ServiceStatus] = []
    persistence: PersistenceStatus = PersistenceStatus()
    conditions: List[K8sCondition] = []

    def add_service_status(self, status: ServiceStatus) -> None:
        """Insert or replace the status of the service with the same name."""
        for idx, existing in enumerate(self.services):
            if existing.name == status.name:
                self.services[idx] = status
                return
        self.services.append(status)


class TemporalCluster(BaseModel):
    """The owner object of everything the operator creates."""

    apiVersion: str = "temporal.io/v1beta1"
    kind: str = "TemporalCluster"
    metadata: K8sMetadata
    spec: TemporalClusterSpec
    status: TemporalClusterStatus = TemporalClusterStatus()

    def child_name(self, suffix: str) -> str:
        return f"{self.metadata.name}-{suffix}"

    def manifest(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


# ----------------------------------------------------------------------
# Operator Internal Models.
# ----------------------------------------------------------------------


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kubeconfig: Path
    kubecontext: str

    loglevel: str = "info"
    host: str = "0.0.0.0"
    port: int = 5001

    # Only watch `TemporalCluster` objects in this namespace. Empty means all.
    watch_namespace: str = ""

    # Upper limit of simultaneous reconciles across different owners.
    max_concurrent_reconciles: int = 4


class ReconcileReport(BaseModel):
    """Outcome of the most recent reconcile of one owner."""

    model_config = ConfigDict(extra="forbid")

    namespace: str
    name: str
    requeueAfter: float = 0
    error: bool = False
    timestamp: str = ""


class Database(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Last reconcile report keyed by `{namespace}/{name}` of the owner.
    clusters: Dict[str, ReconcileReport] = {}


def owner_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_owner_key(key: str) -> Tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name
