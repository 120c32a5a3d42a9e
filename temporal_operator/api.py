import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Tuple

from fastapi import FastAPI
from starlette.types import ASGIApp

import temporal_operator.k8s
import temporal_operator.routers.basic as basic
import temporal_operator.routers.clusters as clusters
from temporal_operator.controller import TEMPORAL_CLUSTER, ClusterController
from temporal_operator.discovery import DiscoveryCache, find_available_apis
from temporal_operator.events import EventRecorder
from temporal_operator.models import Database, ServerConfig
from temporal_operator.registry import default_registry
from temporal_operator.watch import WorkQueue, setup_cluster_watch

# Convenience.
logit = logging.getLogger("app")


# ----------------------------------------------------------------------
# Setup Server.
# ----------------------------------------------------------------------
def compile_server_config() -> Tuple[ServerConfig, bool]:
    try:
        cfg = ServerConfig(
            kubeconfig=Path(os.getenv("KUBECONFIG", "")),
            kubecontext=os.getenv("KUBECONTEXT", ""),
            loglevel=os.getenv("TCO_LOGLEVEL", "info"),
            host=os.getenv("TCO_HOST", "0.0.0.0"),
            port=int(os.getenv("TCO_PORT", "5001")),
            watch_namespace=os.getenv("TCO_WATCH_NAMESPACE", ""),
            max_concurrent_reconciles=int(
                os.getenv("TCO_MAX_CONCURRENT_RECONCILES", "4")
            ),
        )
        assert cfg.max_concurrent_reconciles > 0, "TCO_MAX_CONCURRENT_RECONCILES"
        return cfg, False
    except (AssertionError, KeyError, ValueError) as e:
        logit.error("invalid environment variables", {"names": tuple(e.args)})
        return ServerConfig(kubeconfig=Path(""), kubecontext="", port=-1), True


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: ServerConfig = app.extra["config"]
    db: Database = app.extra["db"]

    # The watch owns its client and closes it when it stops.
    k8scfg, err1 = temporal_operator.k8s.create_cluster_config(
        cfg.kubeconfig, cfg.kubecontext
    )
    watchcfg, err2 = temporal_operator.k8s.create_cluster_config(
        cfg.kubeconfig, cfg.kubecontext
    )
    assert not (err1 or err2)

    async with k8scfg.client:
        registry = default_registry()
        discovery = DiscoveryCache(k8scfg)
        apis, err = await find_available_apis(discovery)
        assert not err

        recorder = EventRecorder(k8scfg)
        controller = ClusterController(k8scfg, registry, discovery, recorder, apis)
        queue = WorkQueue(controller.reconcile, db, cfg.max_concurrent_reconciles)
        path = registry.collection_url(TEMPORAL_CLUSTER, cfg.watch_namespace)

        tasks = [
            asyncio.create_task(queue.run()),
            asyncio.create_task(setup_cluster_watch(cfg, watchcfg, path, queue)),
        ]
        app.extra["ready"] = True
        logit.info("server startup complete")
        yield

        app.extra["ready"] = False
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await queue.stop()
    logit.info("server shutdown complete")


def make_app() -> ASGIApp:
    """Return a fully configured FastAPI instance."""
    cfg, err = compile_server_config()
    if err:
        raise RuntimeError("could not meet preconditions to start server")

    app = FastAPI(
        title="Temporal Operator",
        summary="",
        description="",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.extra["config"] = cfg
    app.extra["db"] = Database()
    app.extra["ready"] = False

    # Install the web server routes.
    app.include_router(clusters.router, prefix="/v1", tags=["Clusters"])
    app.include_router(basic.router, prefix="", tags=["Basic"])
    return app
