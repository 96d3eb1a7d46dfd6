import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from gmail_link.deps import get_state_cache
from gmail_link.services.state import OAuthStateCache

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

@router.get("/healthz", summary="Liveness probe; also sweeps expired OAuth states")
def healthz(states: OAuthStateCache = Depends(get_state_cache)):
    ts = datetime.now(timezone.utc).isoformat(timespec="seconds")
    try:
        swept = states.sweep_expired()
    except SQLAlchemyError:
        logger.exception("token store unavailable")
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "timestamp": ts, "issues": ["Token store unavailable"]},
        )
    return {"status": "ok", "timestamp": ts, "swept_states": swept}
