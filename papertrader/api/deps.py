"""Shared API dependencies."""

from fastapi import Depends, HTTPException, Request, status
from sqlmodel import Session

from papertrader.engine.context import AppContext


def get_context(request: Request) -> AppContext:
    """The AppContext built at startup."""
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return ctx


def get_db(ctx: AppContext = Depends(get_context)) -> Session:
    """Yield a session bound to the context's database."""
    if ctx.db_engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )
    with Session(ctx.db_engine) as session:
        yield session
