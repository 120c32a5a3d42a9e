from typing import Dict

from temporal_operator.models import TemporalCluster


def owner_reference(cluster: TemporalCluster) -> dict:
    return {
        "apiVersion": cluster.apiVersion,
        "kind": cluster.kind,
        "name": cluster.metadata.name,
        "uid": cluster.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def set_owner_reference(cluster: TemporalCluster, manifest: dict) -> None:
    """Make `cluster` the controlling owner of `manifest`.

    Existing references to other owners survive but only `cluster` remains
    the controller.

    """
    meta = manifest.setdefault("metadata", {})
    uid = cluster.metadata.uid
    refs = [_ for _ in meta.get("ownerReferences", []) if _.get("uid") != uid]
    for ref in refs:
        ref.pop("controller", None)
    refs.append(owner_reference(cluster))
    meta["ownerReferences"] = refs


def merge(live, desired):
    """Return `desired` merged into the `live` value.

    Dicts are merged recursively to preserve the fields K8s populates with
    defaults. Lists of named dicts (containers, env vars, ports, volumes...)
    are matched by name and only contain the desired items afterwards. All
    other values are replaced.

    """
    if isinstance(live, dict) and isinstance(desired, dict):
        out = dict(live)
        for key, value in desired.items():
            out[key] = merge(live.get(key), value)
        return out

    if isinstance(live, list) and isinstance(desired, list):
        if all(isinstance(_, dict) and "name" in _ for _ in desired):
            existing = {_.get("name"): _ for _ in live if isinstance(_, dict)}
            return [merge(existing.get(_["name"]), _) for _ in desired]
    return desired


def set_metadata(manifest: dict, labels: Dict[str, str], annotations: Dict[str, str]):
    """Upsert `labels` and `annotations` into `manifest` without removing others."""
    meta = manifest.setdefault("metadata", {})
    meta["labels"] = meta.get("labels", {}) | labels
    if annotations:
        meta["annotations"] = meta.get("annotations", {}) | annotations
