import asyncio
import json
from unittest import mock

import pytest
from httpx import Response
from square.dtypes import K8sConfig

import temporal_operator.watch
from temporal_operator.controller import ERROR_REQUEUE
from temporal_operator.models import Database, ReconcileReport
from temporal_operator.watch import ClusterWatch, WorkQueue, track_cluster

PATH = "/apis/temporal.io/v1beta1/temporalclusters"
URL = f"https://k8s.local{PATH}"


def event(evt: str, uid: str, rv: int, name: str = "demo") -> dict:
    meta = {"name": name, "namespace": "default", "uid": uid}
    meta["resourceVersion"] = str(rv)
    return {"type": evt, "object": {"metadata": meta}}


class TestClusterWatch:
    @pytest.fixture(autouse=True)
    def no_background_task(self):
        # Tests drive the watch manually.
        with mock.patch.object(ClusterWatch, "start_tasks") as m:
            m.return_value = [mock.AsyncMock()]
            yield

    async def test_ctor(self, k8scfg: K8sConfig):
        watch = ClusterWatch(k8scfg, PATH)
        assert watch.last_rv == -1
        assert watch.state == {}
        assert watch.queue.qsize() == 0
        assert watch.list_path == PATH
        assert watch.watch_path == f"{PATH}?watch=true&timeoutSeconds=5"
        assert watch.construct_watch_path(10) == (
            f"{PATH}?watch=true&timeoutSeconds=5&resourceVersion=10"
        )
        assert len(watch.tasks) == 1

    async def test_context_manager(self, k8scfg: K8sConfig):
        async with ClusterWatch(k8scfg, PATH) as watch:
            assert not watch.tasks[0].cancel.called
        watch.tasks[0].cancel.assert_called_once()

    @pytest.mark.parametrize("sentinel", ["__CANCELLED__", "__EXCEPTION__"])
    async def test_iterator(self, sentinel: str, k8scfg: K8sConfig):
        watch = ClusterWatch(k8scfg, PATH)
        await watch.queue.put("line")
        await watch.queue.put(sentinel)

        # The iterator must stop at the sentinel.
        assert [_ async for _ in watch] == ["line"]

    async def test_list_resource(self, respx_mock, k8scfg: K8sConfig):
        obj = event("ADDED", "1", 3)["object"]
        respx_mock.get(URL).return_value = Response(
            200, json={"metadata": {"resourceVersion": "5"}, "items": [obj]}
        )

        watch = ClusterWatch(k8scfg, PATH)
        assert await watch.list_resource() == (5, False)
        assert watch.state == {"1": obj}
        assert watch.queue.qsize() == 1
        assert (await watch.queue.get())["type"] == "ADDED"

    @pytest.mark.parametrize(
        "status, body",
        [(500, {}), (200, {"items": []}), (200, {"metadata": {}, "items": []})],
    )
    async def test_list_resource_err(
        self, status: int, body: dict, respx_mock, k8scfg: K8sConfig
    ):
        respx_mock.get(URL).return_value = Response(status, json=body)

        watch = ClusterWatch(k8scfg, PATH)
        assert await watch.list_resource() == (-1, True)
        assert watch.last_rv == -1

    async def test_reset_state(self, k8scfg: K8sConfig):
        """Listing must emit the events that bring the state up to date."""
        keep, modify, gone = (event("ADDED", _, 1)["object"] for _ in "123")

        watch = ClusterWatch(k8scfg, PATH)
        watch.state = {"1": keep, "2": modify, "3": gone}

        new = event("ADDED", "4", 2)["object"]
        modified = event("ADDED", "2", 3)["object"]
        await watch.reset_state([keep, modified, new])
        assert watch.state == {"1": keep, "2": modified, "4": new}

        events = [watch.queue.get_nowait() for _ in range(watch.queue.qsize())]
        assert [(_["type"], _["object"]["metadata"]["uid"]) for _ in events] == [
            ("DELETED", "3"),
            ("MODIFIED", "2"),
            ("ADDED", "4"),
        ]

    async def test_update_state(self, k8scfg: K8sConfig):
        watch = ClusterWatch(k8scfg, PATH)

        # Add a new object.
        line = event("ADDED", "1", 1)
        await watch.update_state(line)
        assert watch.last_rv == 1
        assert watch.state == {"1": line["object"]}
        assert (await watch.queue.get())["type"] == "ADDED"

        # A second ADDED event for a known object is a modification.
        line = event("ADDED", "1", 2)
        await watch.update_state(line)
        assert watch.last_rv == 2
        assert (await watch.queue.get())["type"] == "MODIFIED"

        # Delete the object.
        await watch.update_state(event("DELETED", "1", 3))
        assert watch.last_rv == 3
        assert watch.state == {}
        assert (await watch.queue.get())["type"] == "DELETED"

        # Deleting an unknown object is silently ignored.
        await watch.update_state(event("DELETED", "1", 4))
        assert watch.last_rv == 4
        assert watch.queue.qsize() == 0

    async def test_parse_line_ok(self, k8scfg: K8sConfig):
        watch = ClusterWatch(k8scfg, PATH)

        # Empty lines mean K8s closed the connection.
        assert await watch.parse_line("") is False
        assert watch.last_rv == -1

        line = event("ADDED", "1", 30)
        assert await watch.parse_line(json.dumps(line)) is False
        assert watch.last_rv == 30
        assert watch.state == {"1": line["object"]}
        assert watch.queue.qsize() == 1

    @pytest.mark.parametrize("is_410", [True, False])
    async def test_parse_line_k8s_err(self, is_410: bool, k8scfg: K8sConfig):
        """Only 410 (Gone) is expected and restarts the watch with a LIST."""
        line = {
            "type": "ERROR",
            "object": {
                "apiVersion": "v1",
                "code": 410 if is_410 else 420,
                "kind": "Status",
                "message": "too old resource version: 11498 (39652)",
                "reason": "Expired",
                "status": "Failure",
            },
        }

        watch = ClusterWatch(k8scfg, PATH)
        watch.last_rv = 10

        assert await watch.parse_line(json.dumps(line)) is not is_410
        assert watch.last_rv == (-1 if is_410 else 10)
        assert watch.queue.qsize() == 0

    async def test_parse_line_json_err(self, k8scfg: K8sConfig):
        watch = ClusterWatch(k8scfg, PATH)
        assert await watch.parse_line("{invalid json]") is True
        assert watch.last_rv == -1
        assert watch.state == {}
        assert watch.queue.qsize() == 0

    @pytest.mark.parametrize("initial_rv", [10, -1])
    @mock.patch.object(ClusterWatch, "parse_line")
    @mock.patch.object(ClusterWatch, "list_resource")
    async def test_read_k8s_stream(
        self, m_list, m_parse, initial_rv: int, respx_mock, k8scfg: K8sConfig
    ):
        watch = ClusterWatch(k8scfg, PATH, rv=initial_rv)
        m_list.return_value = (10, False)

        url = f"https://k8s.local{watch.construct_watch_path(10)}"
        respx_mock.get(url).return_value = Response(200, text="line1\nline2")

        # Must list first if the resource version is unknown.
        assert await watch.read_k8s_stream() is False
        assert m_list.call_count == (1 if initial_rv < 0 else 0)
        assert watch.last_rv == 10
        assert [_.args for _ in m_parse.call_args_list] == [("line1",), ("line2",)]

    @mock.patch.object(ClusterWatch, "parse_line")
    async def test_read_k8s_stream_watch_err(
        self, m_parse, respx_mock, k8scfg: K8sConfig
    ):
        watch = ClusterWatch(k8scfg, PATH, rv=10)

        url = f"https://k8s.local{watch.construct_watch_path(10)}"
        respx_mock.get(url).return_value = Response(403, text="forbidden")

        assert await watch.read_k8s_stream() is True
        assert m_parse.call_count == 0

    async def test_read_k8s_stream_list_err(self, respx_mock, k8scfg: K8sConfig):
        respx_mock.get(URL).return_value = Response(500, json={})

        watch = ClusterWatch(k8scfg, PATH)
        assert await watch.read_k8s_stream() is True
        assert watch.last_rv == -1
        assert watch.queue.qsize() == 0

    @mock.patch.object(temporal_operator.watch.random, "uniform")
    @mock.patch.object(temporal_operator.watch.asyncio, "sleep")
    @mock.patch.object(ClusterWatch, "read_k8s_stream")
    async def test_background_runner_loop(
        self, m_read, m_sleep, m_uniform, k8scfg: K8sConfig
    ):
        """Runner must back off after an error and emit `__CANCELLED__`."""
        m_uniform.return_value = 0
        m_read.side_effect = [False, True, asyncio.CancelledError]

        watch = ClusterWatch(k8scfg, PATH)
        await watch.background_runner()
        m_sleep.assert_called_once_with(5)
        assert m_read.call_count == 3
        assert watch.queue.get_nowait() == "__CANCELLED__"

    @mock.patch.object(ClusterWatch, "read_k8s_stream")
    async def test_background_runner_exception(self, m_read, k8scfg: K8sConfig):
        m_read.side_effect = ValueError("boom")

        watch = ClusterWatch(k8scfg, PATH)
        with pytest.raises(ValueError):
            await watch.background_runner()
        assert watch.queue.get_nowait() == "__EXCEPTION__"


class TestWorkQueue:
    async def test_add(self):
        queue = WorkQueue(mock.AsyncMock(), Database())

        # Duplicate requests collapse into one.
        queue.add("default/demo")
        queue.add("default/demo")
        assert queue.pending == {"default/demo"}
        assert queue.queue.qsize() == 1

        # Requests for an active key mark it dirty instead.
        queue.active.add("default/other")
        queue.add("default/other")
        assert queue.dirty == {"default/other"}
        assert queue.queue.qsize() == 1

    async def test_process(self):
        reconcile = mock.AsyncMock(return_value=(0, False))
        db = Database()
        queue = WorkQueue(reconcile, db)

        queue.active.add("default/demo")
        await queue.process("default/demo")
        reconcile.assert_called_once_with("default", "demo")
        assert queue.active == set()
        assert queue.timers == {}
        assert queue.queue.qsize() == 0

        report = db.clusters["default/demo"]
        assert isinstance(report, ReconcileReport)
        assert (report.namespace, report.name) == ("default", "demo")
        assert (report.requeueAfter, report.error) == (0, False)
        assert report.timestamp.endswith("Z")

    async def test_process_requeue(self):
        reconcile = mock.AsyncMock(return_value=(10, True))
        db = Database()
        queue = WorkQueue(reconcile, db)

        await queue.process("default/demo")
        assert set(queue.timers) == {"default/demo"}
        assert queue.queue.qsize() == 0
        assert db.clusters["default/demo"].error is True

        # A newer requeue replaces the old one.
        old = queue.timers["default/demo"]
        queue.add_after("default/demo", 20)
        assert old.cancelled()
        assert len(queue.timers) == 1

        # Firing the timer queues the key.
        queue.fire("default/demo")
        assert queue.timers == {}
        assert queue.pending == {"default/demo"}
        await queue.stop()

    async def test_process_dirty(self):
        """A change during the reconcile beats the requeue."""
        queue = WorkQueue(mock.AsyncMock(return_value=(10, False)), Database())
        queue.active.add("default/demo")
        queue.add("default/demo")

        await queue.process("default/demo")
        assert queue.dirty == set()
        assert queue.timers == {}
        assert queue.pending == {"default/demo"}

    async def test_process_crash(self):
        """A crashing reconcile counts as an error and is retried."""
        reconcile = mock.AsyncMock(side_effect=RuntimeError("boom"))
        db = Database()
        queue = WorkQueue(reconcile, db)

        queue.active.add("default/demo")
        await queue.process("default/demo")
        assert queue.active == set()
        assert set(queue.timers) == {"default/demo"}

        report = db.clusters["default/demo"]
        assert (report.requeueAfter, report.error) == (ERROR_REQUEUE, True)

        # A change during the crashed reconcile is not lost.
        queue.active.add("default/demo")
        queue.add("default/demo")
        await queue.process("default/demo")
        assert queue.dirty == set()
        assert queue.pending == {"default/demo"}
        await queue.stop()

    async def test_process_cancelled(self):
        reconcile = mock.AsyncMock(side_effect=asyncio.CancelledError)
        db = Database()
        queue = WorkQueue(reconcile, db)

        queue.active.add("default/demo")
        with pytest.raises(asyncio.CancelledError):
            await queue.process("default/demo")
        assert queue.active == set()
        assert queue.timers == {}
        assert db.clusters == {}

    async def test_forget(self):
        db = Database()
        db.clusters["default/demo"] = ReconcileReport(namespace="default", name="demo")
        queue = WorkQueue(mock.AsyncMock(), db)
        queue.add_after("default/demo", 10)
        timer = queue.timers["default/demo"]

        queue.forget("default/demo")
        assert timer.cancelled()
        assert queue.timers == {}
        assert db.clusters == {}

        # Forgetting an unknown key is harmless.
        queue.forget("default/demo")

    async def test_run(self):
        done = asyncio.Event()

        async def reconcile(namespace: str, name: str):
            done.set()
            return 0, False

        db = Database()
        queue = WorkQueue(reconcile, db, max_concurrent=1)
        queue.add("default/demo")

        task = asyncio.create_task(queue.run())
        await asyncio.wait_for(done.wait(), timeout=1)
        while queue.tasks:
            await asyncio.sleep(0)

        assert queue.pending == set()
        assert queue.active == set()
        assert "default/demo" in db.clusters

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await queue.stop()


class TestTrackCluster:
    def test_track_cluster(self):
        queue = mock.MagicMock()

        for evt in ("ADDED", "MODIFIED"):
            assert track_cluster(queue, event(evt, "1", 1)) is False
        assert queue.add.call_args_list == [mock.call("default/demo")] * 2

        assert track_cluster(queue, event("DELETED", "1", 2)) is False
        queue.forget.assert_called_once_with("default/demo")

    def test_track_cluster_err(self):
        queue = mock.MagicMock()
        assert track_cluster(queue, {"type": "ADDED"}) is True
        assert track_cluster(queue, event("BOOKMARK", "1", 1)) is True
        assert track_cluster(queue, {"object": {"metadata": {}}}) is True
        assert not queue.add.called
        assert not queue.forget.called
