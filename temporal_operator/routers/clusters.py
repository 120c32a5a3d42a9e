from typing import List

from fastapi import APIRouter, HTTPException, Request, status

from temporal_operator.models import Database, ReconcileReport, owner_key

router = APIRouter()


@router.get("/clusters")
def get_clusters(request: Request) -> List[ReconcileReport]:
    """Return the outcome of the last reconcile of every cluster."""
    db: Database = request.app.extra["db"]
    return [db.clusters[key] for key in sorted(db.clusters)]


@router.get("/clusters/{namespace}/{name}")
def get_cluster(namespace: str, name: str, request: Request) -> ReconcileReport:
    db: Database = request.app.extra["db"]
    try:
        return db.clusters[owner_key(namespace, name)]
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Cluster not found"
        )
