"""Liveness and readiness probes. Both are public."""

from fastapi import APIRouter, Depends

from quire.api.deps import get_session_store
from quire.errors import ApiErrorCode
from quire.responses import error_json, success_response

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Liveness: 200 while the process serves requests. Touches nothing else."""
    return success_response({"status": "ok"})


@router.get("/health/ready")
def readiness_check(store=Depends(get_session_store)):
    """Readiness: the session store must answer a ping."""
    if not store.ping():
        return error_json(ApiErrorCode.E_STORE_UNAVAILABLE, "Session store unavailable", 503)
    return success_response({"status": "ready"})
