from pathlib import Path
from typing import cast
from unittest import mock

import pytest
from fastapi.testclient import TestClient

import temporal_operator.api
from temporal_operator.models import Database, ReconcileReport, ServerConfig


@pytest.fixture
def client():
    # Do not enter the context manager to skip the lifespan and its K8s watch.
    with mock.patch.dict("os.environ", values={}, clear=True):
        app = temporal_operator.api.make_app()
    yield TestClient(app)


class TestConfiguration:
    def test_compile_server_config_ok(self):
        # All variables are optional, most notably inside a Pod.
        with mock.patch.dict("os.environ", values={}, clear=True):
            cfg, err = temporal_operator.api.compile_server_config()
            assert not err
            assert cfg == ServerConfig(
                kubeconfig=Path(""),
                kubecontext="",
                host="0.0.0.0",
                port=5001,
                loglevel="info",
                watch_namespace="",
                max_concurrent_reconciles=4,
            )

        # Explicit values for everything.
        new_env = {
            "KUBECONFIG": "/tmp/kind-kubeconf.yaml",
            "KUBECONTEXT": "kind-kind",
            "TCO_LOGLEVEL": "error",
            "TCO_HOST": "1.2.3.4",
            "TCO_PORT": "1234",
            "TCO_WATCH_NAMESPACE": "temporal",
            "TCO_MAX_CONCURRENT_RECONCILES": "8",
        }
        with mock.patch.dict("os.environ", values=new_env, clear=True):
            cfg, err = temporal_operator.api.compile_server_config()
            assert not err
            assert cfg == ServerConfig(
                kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
                kubecontext="kind-kind",
                host="1.2.3.4",
                port=1234,
                loglevel="error",
                watch_namespace="temporal",
                max_concurrent_reconciles=8,
            )

    @pytest.mark.parametrize(
        "new_env",
        [
            {"TCO_PORT": "not-a-number"},
            {"TCO_MAX_CONCURRENT_RECONCILES": "0"},
            {"TCO_MAX_CONCURRENT_RECONCILES": "-1"},
        ],
    )
    def test_compile_server_config_err(self, new_env):
        with mock.patch.dict("os.environ", values=new_env, clear=True):
            _, err = temporal_operator.api.compile_server_config()
            assert err

    def test_make_app(self):
        with mock.patch.dict("os.environ", values={}, clear=True):
            app = temporal_operator.api.make_app()
        extra = cast(dict, app.extra)  # type: ignore
        assert set(extra) == {"config", "db", "ready"}
        assert extra["ready"] is False

        # Expect hard abort if the environment is invalid.
        with mock.patch.dict("os.environ", values={"TCO_PORT": "x"}, clear=True):
            with pytest.raises(RuntimeError):
                temporal_operator.api.make_app()


class TestBasicEndpoints:
    def test_get_healthz(self, client: TestClient):
        response = client.get("/healthz")
        assert response.status_code == 200

    def test_get_readyz(self, client: TestClient):
        # Not ready until the lifespan has started the watch.
        response = client.get("/readyz")
        assert response.status_code == 503

        client.app.extra["ready"] = True  # type: ignore
        response = client.get("/readyz")
        assert response.status_code == 200


class TestClusterEndpoints:
    def test_get_clusters(self, client: TestClient):
        response = client.get("/v1/clusters")
        assert response.status_code == 200
        assert response.json() == []

        db: Database = client.app.extra["db"]  # type: ignore
        for name in ("b", "a"):
            db.clusters[f"default/{name}"] = ReconcileReport(
                namespace="default", name=name, requeueAfter=10
            )

        response = client.get("/v1/clusters")
        assert response.status_code == 200
        assert [_["name"] for _ in response.json()] == ["a", "b"]

        response = client.get("/v1/clusters/default/a")
        assert response.status_code == 200
        report = ReconcileReport.model_validate(response.json())
        assert report.requeueAfter == 10
        assert report.error is False

    def test_get_cluster_not_found(self, client: TestClient):
        response = client.get("/v1/clusters/default/missing")
        assert response.status_code == 404
        assert response.json() == {"detail": "Cluster not found"}
