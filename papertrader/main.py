"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from papertrader.config import settings
from papertrader.database import create_db_and_tables
from papertrader.engine.errors import (
    InsufficientHolding,
    InstrumentUnknown,
    InvalidPrice,
    InvalidQuantity,
)
from papertrader.utils.logging import setup_logging
from papertrader.api import scheduler, simulation, system, tokens

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    ctx = getattr(app.state, "context", None)
    if ctx is None:
        from papertrader.engine.context import build_context

        create_db_and_tables()
        ctx = build_context()
        app.state.context = ctx
    ctx.load()

    if settings.auto_start_scheduler:
        ctx.start_scheduler()
    ctx.enable_telegram(asyncio.get_running_loop())

    yield

    await ctx.shutdown()


def _invalid_input(request: Request, exc: InvalidQuantity | InvalidPrice):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _insufficient_holding(request: Request, exc: InsufficientHolding):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "instrument": exc.instrument,
            "requested": exc.requested,
            "holding": exc.holding,
        },
    )


def _unknown_instrument(request: Request, exc: InstrumentUnknown):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def create_app(context=None) -> FastAPI:
    """Build the app. Passing a context skips database setup in the lifespan."""
    application = FastAPI(
        title="Token Paper Trader",
        description="Paper-trading ledger and strategy scheduler for pump.fun tokens",
        version="0.1.0",
        lifespan=lifespan,
    )
    if context is not None:
        application.state.context = context

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(InvalidQuantity, _invalid_input)
    application.add_exception_handler(InvalidPrice, _invalid_input)
    application.add_exception_handler(InsufficientHolding, _insufficient_holding)
    application.add_exception_handler(InstrumentUnknown, _unknown_instrument)

    # Mount routers
    application.include_router(system.router)
    application.include_router(scheduler.router)
    application.include_router(simulation.router)
    application.include_router(tokens.router)
    return application


app = create_app()
