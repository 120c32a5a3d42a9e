import logging
from datetime import UTC, datetime

from square.dtypes import K8sConfig

import temporal_operator.k8s
from temporal_operator.models import OperationResult

# Convenience.
logit = logging.getLogger("app")

COMPONENT = "temporal-operator"

# Event reasons for the operations of the reconciler.
REASONS = {
    OperationResult.CREATED: "ResourceCreate",
    OperationResult.UPDATED: "ResourceUpdate",
    OperationResult.DELETED: "ResourceDelete",
}

# Verbs to use in event messages, eg "Created resource ...".
VERBS = {
    OperationResult.CREATED: "Created",
    OperationResult.UPDATED: "Updated",
    OperationResult.DELETED: "Deleted",
}


class EventRecorder:
    """Attach Kubernetes events to owner objects.

    Events are informational only. A failure to record one is logged but never
    affects the reconcile.

    """

    def __init__(self, k8scfg: K8sConfig):
        self.k8scfg = k8scfg

    def make_event(self, owner: dict, etype: str, reason: str, message: str) -> dict:
        meta = owner.get("metadata", {})
        namespace = meta.get("namespace", "default")
        now = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{meta.get('name', 'unknown')}.",
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": owner.get("apiVersion", ""),
                "kind": owner.get("kind", ""),
                "name": meta.get("name", ""),
                "namespace": namespace,
                "uid": meta.get("uid", ""),
                "resourceVersion": meta.get("resourceVersion", ""),
            },
            "type": etype,
            "reason": reason,
            "message": message,
            "source": {"component": COMPONENT},
            "reportingComponent": COMPONENT,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

    async def record(self, owner: dict, etype: str, reason: str, message: str):
        event = self.make_event(owner, etype, reason, message)
        namespace = event["metadata"]["namespace"]
        url = f"/api/v1/namespaces/{namespace}/events"
        _, _, err = await temporal_operator.k8s.post(self.k8scfg, url, event)
        if err:
            logit.warning("cannot record event", {"reason": reason, "msg": message})


async def log_and_record_operation_result(
    recorder: EventRecorder,
    owner: dict,
    manifest: dict,
    result: OperationResult,
    err: bool,
):
    """Log the outcome of a write and attach it as an event to `owner`."""
    if result == OperationResult.NONE:
        return

    meta = manifest.get("metadata", {})
    name, kind = meta.get("name", ""), manifest.get("kind", "")
    reason = REASONS[result]
    log_meta = {"resource": name, "kind": kind, "operation": result.value}

    if err:
        message = f"Error during {result.value} of resource {name} of type {kind}"
        logit.error(message, log_meta)
        await recorder.record(owner, "Warning", reason + "Error", message)
    else:
        message = f"{VERBS[result]} resource {name} of type {kind}"
        logit.info(message, log_meta)
        await recorder.record(owner, "Normal", reason + "Success", message)
