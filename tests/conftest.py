import copy
import json
from pathlib import Path
from typing import Dict, List, Tuple

import httpx
import pytest
from httpx import AsyncClient
from square.dtypes import K8sConfig

import temporal_operator.logstreams
from temporal_operator.builder import Builder, DependentBuilder
from temporal_operator.discovery import DiscoveryCache
from temporal_operator.events import EventRecorder
from temporal_operator.models import (
    GroupVersionKind,
    ResourceIdentity,
    ServerConfig,
    TemporalCluster,
)
from temporal_operator.registry import KindRegistry, default_registry


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    temporal_operator.logstreams.setup("DEBUG")


def get_server_config():
    return ServerConfig(
        kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
        kubecontext="kind-kind",
        host="0.0.0.0",
        port=5001,
        loglevel="info",
    )


class FakeCluster:
    """In-memory K8s API server for `respx`.

    It stores every object under its resource URL, serves the API discovery
    endpoints listed in `resources` and records all calls. Tests may force a
    status code for any `(method, path)` via `failures`.

    """

    def __init__(self):
        self.objects: Dict[str, dict] = {}
        self.events: List[dict] = []
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], int] = {}
        self.rv = 0

        # Status that newly created objects of a kind start with.
        self.initial_status: Dict[str, dict] = {}

        self.resources: Dict[str, List[str]] = {
            "/api/v1": [
                "configmaps",
                "secrets",
                "services",
                "serviceaccounts",
                "events",
                "namespaces",
            ],
            "/apis/apps/v1": ["deployments"],
            "/apis/batch/v1": ["jobs"],
            "/apis/temporal.io/v1beta1": ["temporalclusters"],
        }

    def next_rv(self) -> str:
        self.rv += 1
        return str(self.rv)

    def add(self, path: str, manifest: dict) -> dict:
        """Store `manifest` under `path` like K8s would after a POST."""
        obj = copy.deepcopy(manifest)
        if obj.get("kind") in self.initial_status:
            obj["status"] = copy.deepcopy(self.initial_status[obj["kind"]])
        meta = obj.setdefault("metadata", {})
        meta.setdefault("uid", f"uid-{meta['name']}")
        meta.setdefault("generation", 1)
        meta["resourceVersion"] = self.next_rv()
        self.objects[path] = obj
        return copy.deepcopy(obj)

    def writes(self) -> List[Tuple[str, str]]:
        """Return all mutating calls except the event records."""
        return [
            (method, path)
            for method, path in self.calls
            if method != "GET" and not path.endswith("/events")
        ]

    def paths(self, fragment: str) -> List[str]:
        return sorted(_ for _ in self.objects if fragment in _)

    def set_status(self, path: str, status: dict) -> None:
        self.objects[path]["status"] = copy.deepcopy(status)
        self.objects[path]["metadata"]["resourceVersion"] = self.next_rv()

    def complete_jobs(self) -> None:
        for path in self.paths("/jobs/"):
            self.set_status(path, {"succeeded": 1})

    def rollout_deployments(self) -> None:
        """Pretend every Deployment finished its rollout."""
        for path in self.paths("/deployments/"):
            obj = self.objects[path]
            replicas = obj.get("spec", {}).get("replicas", 1)
            self.set_status(
                path,
                {
                    "observedGeneration": obj["metadata"]["generation"],
                    "replicas": replicas,
                    "updatedReplicas": replicas,
                    "readyReplicas": replicas,
                    "availableReplicas": replicas,
                },
            )

    def response(self, code: int, body: dict | None = None) -> httpx.Response:
        if body is None:
            body = {"kind": "Status", "code": code}
        return httpx.Response(code, json=body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        if (method, path) in self.failures:
            return self.response(self.failures[(method, path)])

        # API discovery, eg `/api/v1` or `/apis/apps/v1`.
        parts = path.strip("/").split("/")
        if method == "GET" and len(parts) == (2 if parts[0] == "api" else 3):
            if path not in self.resources:
                return self.response(404)
            names = [{"name": _} for _ in self.resources[path]]
            return self.response(200, {"resources": names})

        body = json.loads(request.content) if request.content else {}
        subresource = path.endswith("/status")
        path = path.removesuffix("/status")

        if method == "GET":
            if path not in self.objects:
                return self.response(404)
            return self.response(200, copy.deepcopy(self.objects[path]))

        if method == "POST":
            if path.endswith("/events"):
                self.events.append(body)
                return self.response(201, body)
            key = f"{path}/{body['metadata']['name']}"
            if key in self.objects:
                return self.response(409)
            return self.response(201, self.add(key, body))

        if method == "PUT":
            live = self.objects.get(path)
            if live is None:
                return self.response(404)
            rv = body.get("metadata", {}).get("resourceVersion")
            if rv != live["metadata"]["resourceVersion"]:
                return self.response(409)

            if subresource:
                new = copy.deepcopy(live)
                new["status"] = body.get("status", {})
            else:
                new = copy.deepcopy(body)
                new.pop("status", None)
                if "status" in live:
                    new["status"] = copy.deepcopy(live["status"])
                generation = live["metadata"].get("generation", 1)
                if body.get("spec") != live.get("spec"):
                    generation += 1
                new["metadata"]["generation"] = generation
            new["metadata"]["resourceVersion"] = self.next_rv()
            self.objects[path] = new
            return self.response(200, copy.deepcopy(new))

        if method == "DELETE":
            if self.objects.pop(path, None) is None:
                return self.response(404)
            return self.response(200, {"kind": "Status", "status": "Success"})
        return self.response(405)


class ConfigMap(Builder):
    """Minimal builder for a ConfigMap in the `default` namespace."""

    kind = GroupVersionKind(version="v1", kind="ConfigMap")

    def __init__(self, name: str, data: dict | None = None, on: bool = True):
        self.name = name
        self.data = data or {"key": "value"}
        self.on = on

    def build(self) -> dict:
        return {
            "apiVersion": self.kind.apiVersion,
            "kind": self.kind.kind,
            "metadata": {"name": self.name, "namespace": "default"},
        }

    def identity(self) -> ResourceIdentity:
        return ResourceIdentity.from_manifest(self.build())

    def update(self, manifest: dict) -> bool:
        manifest["data"] = dict(self.data)
        return False

    def enabled(self) -> bool:
        return self.on


class Service(ConfigMap, DependentBuilder):
    kind = GroupVersionKind(version="v1", kind="Service")

    def __init__(self, name: str, deps: List[ResourceIdentity], on: bool = True):
        super().__init__(name, on=on)
        self.deps = deps

    def update(self, manifest: dict) -> bool:
        manifest["spec"] = {"type": "ClusterIP", "ports": [{"port": 80}]}
        return False

    def dependencies(self) -> List[ResourceIdentity]:
        return self.deps


class Monitor(ConfigMap):
    """Builder for a kind the API server does not serve by default."""

    kind = GroupVersionKind(
        group="monitoring.coreos.com", version="v1", kind="ServiceMonitor"
    )


def make_owner(name: str = "demo", namespace: str = "default") -> dict:
    return {
        "apiVersion": "temporal.io/v1beta1",
        "kind": "TemporalCluster",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
    }


def make_cluster_manifest(name: str = "demo", namespace: str = "default") -> dict:
    """Return a `TemporalCluster` with all defaults already applied."""
    def sql_store(store: str, database: str) -> dict:
        return {
            "name": store,
            "sql": {
                "user": "temporal",
                "pluginName": "postgres12",
                "databaseName": database,
                "connectAddr": "postgres.db.svc:5432",
            },
            "passwordSecretRef": {"name": "postgres", "key": "password"},
        }

    cluster = TemporalCluster.model_validate(
        {
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "version": "1.22.4",
                "persistence": {
                    "defaultStore": sql_store("default", "temporal"),
                    "visibilityStore": sql_store("visibility", "temporal_visibility"),
                },
            },
        }
    )
    manifest = cluster.manifest()
    del manifest["status"]
    manifest["metadata"] = {"name": name, "namespace": namespace}
    return manifest


@pytest.fixture
async def k8scfg(respx_mock):
    """Return an async test client."""
    async with AsyncClient(base_url="https://k8s.local") as client:
        yield K8sConfig(client=client)


@pytest.fixture
def fake(respx_mock) -> FakeCluster:
    """Route all requests to a fresh `FakeCluster`."""
    server = FakeCluster()
    respx_mock.route(host="k8s.local").mock(side_effect=server)
    return server


@pytest.fixture
def registry() -> KindRegistry:
    return default_registry()


@pytest.fixture
def discovery(k8scfg: K8sConfig) -> DiscoveryCache:
    return DiscoveryCache(k8scfg)


@pytest.fixture
def recorder(k8scfg: K8sConfig) -> EventRecorder:
    return EventRecorder(k8scfg)


@pytest.fixture
def cluster_manifest() -> dict:
    return make_cluster_manifest()


@pytest.fixture
def cluster(cluster_manifest: dict) -> TemporalCluster:
    manifest = copy.deepcopy(cluster_manifest)
    manifest["metadata"]["uid"] = "uid-demo"
    manifest["metadata"]["generation"] = 1
    return TemporalCluster.model_validate(manifest)
