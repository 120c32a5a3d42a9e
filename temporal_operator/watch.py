"""Turn `TemporalCluster` changes into reconcile requests.

`ClusterWatch` lists the clusters once to learn the latest resource version
and then tails the K8s watch endpoint from there. A background task feeds the
events into a local queue which the async iterator drains. The task restarts
the watch whenever K8s closes it or answers with 410 (Gone), and only stops
on `asyncio.CancelledError`.

`WorkQueue` consumes the owner keys. It never runs two reconciles of the same
owner at the same time, collapses duplicate requests and schedules the
requeues the controller asks for.

"""

import asyncio
import json
import logging
import random
from datetime import UTC, datetime
from typing import Awaitable, Callable, Dict, List, Set, Tuple

from square.dtypes import K8sConfig

import temporal_operator.k8s
from temporal_operator.controller import ERROR_REQUEUE
from temporal_operator.models import (
    Database,
    ReconcileReport,
    ServerConfig,
    owner_key,
    split_owner_key,
)

# Convenience.
logit = logging.getLogger("watch")

ReconcileFun = Callable[[str, str], Awaitable[Tuple[float, bool]]]


class ClusterWatch:
    """Iterate over the change events of one K8s resource collection.

    Usage:

    k8scfg, err = temporal_operator.k8s.create_cluster_config(path, context)
    assert not err
    path = "/apis/temporal.io/v1beta1/temporalclusters"
    async with ClusterWatch(k8scfg, path) as watch:
        async for data in watch:
            print(data["type"], data["object"]["metadata"]["name"])

    """

    def __init__(self, k8scfg: K8sConfig, path: str, rv: int = -1, timeout: int = 5):
        self.k8scfg = k8scfg
        self.list_path = path
        self.timeout = timeout
        self.last_rv = rv
        self.queue: asyncio.Queue = asyncio.Queue()

        # Current knowledge as `{UID: manifest}`.
        self.state: Dict[str, dict] = {}

        self.watch_path = f"{path}?watch=true&timeoutSeconds={timeout}"
        self.tasks = self.start_tasks()

    def start_tasks(self):
        return [asyncio.create_task(self.background_runner())]

    def stop_tasks(self):
        for task in self.tasks:
            task.cancel()

    def __aiter__(self):
        return self

    async def __anext__(self):
        event = await self.queue.get()

        # The background task has stopped.
        if event in ("__EXCEPTION__", "__CANCELLED__"):
            self.tasks[0].result()
            raise StopAsyncIteration
        return event

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self.stop_tasks()

    def log_meta(self) -> dict:
        return {"component": "k8s-watch", "path": self.list_path}

    def construct_watch_path(self, rv: int) -> str:
        return f"{self.watch_path}&resourceVersion={rv}"

    async def list_resource(self) -> Tuple[int, bool]:
        """Sync the state with the current manifests and return their version."""
        ret, _, err = await temporal_operator.k8s.get(self.k8scfg, self.list_path)
        if err:
            return -1, True

        await self.reset_state(ret.get("items", []))
        try:
            return int(ret["metadata"]["resourceVersion"]), False
        except (KeyError, ValueError):
            logit.error("list response without resource version", self.log_meta())
            return -1, True

    async def reset_state(self, manifests: List[dict]) -> None:
        """Emit the synthetic events that turn the state into `manifests`."""
        new_state = {_["metadata"]["uid"]: _ for _ in manifests}

        for uid in set(self.state) - set(new_state):
            obj = self.state.pop(uid)
            await self.queue.put({"type": "DELETED", "object": obj})

        for uid, obj in new_state.items():
            if uid not in self.state:
                await self.queue.put({"type": "ADDED", "object": obj})
            elif self.state[uid] != obj:
                await self.queue.put({"type": "MODIFIED", "object": obj})
            self.state[uid] = obj

    async def update_state(self, line: dict) -> None:
        event, obj = line["type"], line["object"]
        uid = obj["metadata"]["uid"]
        self.last_rv = int(obj["metadata"]["resourceVersion"])

        if event == "DELETED":
            if self.state.pop(uid, None) is None:
                return
        else:
            # Normalise the event with respect to what we have seen.
            line["type"] = "MODIFIED" if uid in self.state else "ADDED"
            self.state[uid] = obj
        await self.queue.put(line)

    async def parse_line(self, line_raw: str) -> bool:
        """Process one line of the watch stream and return `True` on error."""
        meta = self.log_meta()

        # K8s closes the stream from time to time.
        if len(line_raw) == 0:
            logit.info("watch connection closed", meta)
            return False

        try:
            line = json.loads(line_raw)
        except json.JSONDecodeError:
            logit.error("K8s sent corrupt JSON payload", meta)
            return True

        event, obj = line.get("type", ""), line.get("object", {})
        if event in ("ADDED", "MODIFIED", "DELETED"):
            await self.update_state(line)
            return False

        # A 410 (Gone) means we must list again.
        logit.info("received error from K8s", meta | {"msg": obj})
        if event == "ERROR" and obj.get("code") == 410:
            self.last_rv = -1
            return False
        return True

    async def read_k8s_stream(self) -> bool:
        """Consume the watch stream until it closes. Return `True` on error."""
        if self.last_rv < 0:
            rv, err = await self.list_resource()
            if err:
                return True
            self.last_rv = rv

        url = self.construct_watch_path(self.last_rv)
        try:
            async with self.k8scfg.client.stream("GET", url) as stream:
                if stream.status_code != 200:
                    logit.warning("cannot start watch", self.log_meta())
                    return True

                async for line_raw in stream.aiter_lines():
                    await self.parse_line(line_raw)
        except temporal_operator.k8s.WEB_EXCEPTIONS:
            logit.exception("watch aborted due to a web exception", self.log_meta())
            return True
        return False

    async def background_runner(self) -> None:
        meta = self.log_meta()
        try:
            while True:
                logit.info("connect", meta)
                if await self.read_k8s_stream():
                    await asyncio.sleep(5 + random.uniform(-2, 2))
        except asyncio.CancelledError:
            logit.info("background task was cancelled", meta)
            await self.queue.put("__CANCELLED__")
        except Exception as err:
            logit.exception("unhandled exception", meta)
            await self.queue.put("__EXCEPTION__")
            raise err


class WorkQueue:
    def __init__(self, reconcile: ReconcileFun, db: Database, max_concurrent: int = 4):
        self.reconcile = reconcile
        self.db = db
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.queue: asyncio.Queue = asyncio.Queue()

        # Keys waiting in the queue, being reconciled, and the ones that
        # changed during their reconcile.
        self.pending: Set[str] = set()
        self.active: Set[str] = set()
        self.dirty: Set[str] = set()

        self.timers: Dict[str, asyncio.TimerHandle] = {}
        self.tasks: Set[asyncio.Task] = set()

    def add(self, key: str) -> None:
        if key in self.active:
            self.dirty.add(key)
            return
        if key in self.pending:
            return
        self.pending.add(key)
        self.queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add `key` after `delay` seconds unless a newer requeue replaces it."""
        timer = self.timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self.timers[key] = loop.call_later(delay, self.fire, key)

    def fire(self, key: str) -> None:
        self.timers.pop(key, None)
        self.add(key)

    def forget(self, key: str) -> None:
        """Drop all scheduled work and the report of a deleted owner."""
        timer = self.timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self.db.clusters.pop(key, None)

    async def process(self, key: str) -> None:
        namespace, name = split_owner_key(key)
        try:
            async with self.semaphore:
                requeue, err = await self.reconcile(namespace, name)
        except Exception:
            logit.exception("reconcile crashed", {"key": key})
            requeue, err = ERROR_REQUEUE, True
        finally:
            self.active.discard(key)

        self.db.clusters[key] = ReconcileReport(
            namespace=namespace,
            name=name,
            requeueAfter=requeue,
            error=err,
            timestamp=datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

        # A change during the reconcile beats any requeue.
        if key in self.dirty:
            self.dirty.discard(key)
            self.add(key)
        elif requeue > 0:
            self.add_after(key, requeue)

    def on_done(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logit.error("reconcile crashed", {"reason": repr(task.exception())})

    async def run(self) -> None:
        """Start one reconcile task for every key that arrives in the queue."""
        while True:
            key = await self.queue.get()
            self.pending.discard(key)
            self.active.add(key)

            task = asyncio.create_task(self.process(key))
            self.tasks.add(task)
            task.add_done_callback(self.on_done)

    async def stop(self) -> None:
        for timer in self.timers.values():
            timer.cancel()
        self.timers.clear()

        tasks = list(self.tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def track_cluster(queue: WorkQueue, data: dict) -> bool:
    """Forward one watch event to the work `queue`."""
    try:
        evt, manifest = data["type"], data["object"]
        meta = manifest["metadata"]
        key = owner_key(meta.get("namespace", ""), meta["name"])
    except KeyError:
        return True

    if evt in {"ADDED", "MODIFIED"}:
        queue.add(key)
    elif evt == "DELETED":
        queue.forget(key)
    else:
        return True
    return False


async def setup_cluster_watch(
    cfg: ServerConfig, k8scfg: K8sConfig, path: str, queue: WorkQueue
):
    """Feed all cluster events into `queue` until cancelled."""
    logit.info("watch started", {"path": path, "namespace": cfg.watch_namespace})

    # Ask K8s to close the watch every ~2min.
    try:
        timeout = 120 + int(random.uniform(-10, 10))
        watch = ClusterWatch(k8scfg, path, timeout=timeout)
        async with k8scfg.client, watch:
            async for data in watch:
                track_cluster(queue, data)
    except asyncio.CancelledError:
        logit.info("watch cancelled")
