import logging

from fastapi import APIRouter, HTTPException, Request, status

# Convenience.
logit = logging.getLogger("app")
router = APIRouter()


# ----------------------------------------------------------------------
# Basic Routes.
# ----------------------------------------------------------------------


@router.get("/healthz")
def get_healthz() -> int:
    """Health check endpoint. Always returns 200."""
    return status.HTTP_200_OK


@router.get("/readyz")
def get_readyz(request: Request) -> int:
    """Return 200 once the watch and the work queue are running."""
    if not request.app.extra.get("ready", False):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Not ready"
        )
    return status.HTTP_200_OK
