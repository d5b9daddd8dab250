"""System API: health check and supervisor state."""

from fastapi import APIRouter, Depends

from papertrader.api.deps import get_context
from papertrader.engine.context import AppContext

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check(ctx: AppContext = Depends(get_context)):
    db_ok = ctx.check_database()
    return {"status": "ok" if db_ok else "degraded", "database": db_ok}


@router.get("/state")
def system_state(ctx: AppContext = Depends(get_context)):
    return ctx.refresh_state().to_dict()
