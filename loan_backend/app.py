"""
FastAPI application entry point for the loan tracker backend.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from loan_backend.bootstrap import HealthState, build_db_client, connect_store
from loan_backend.config import Settings, get_settings
from loan_backend.db import DbClient
from loan_backend.routes import health_router, router
from loan_backend.sync import SyncService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    logger.info("Starting server in %s mode", settings.app_env)
    app.state.health.mark_connecting()
    connect = run_in_threadpool(connect_store, app.state.db, app.state.health)
    task = None
    if settings.connect_in_background:
        # Requests are served (health reports "Connecting") while this runs.
        task = asyncio.create_task(connect)
    else:
        await connect
    app.state.bootstrap_task = task
    yield
    if task is not None:
        await task


def create_app(
    db: Optional[DbClient] = None, settings: Optional[Settings] = None
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Loan Tracker Backend (FastAPI)", version="0.1.0", lifespan=lifespan
    )
    app.state.settings = settings
    app.state.db = db if db is not None else build_db_client(settings)
    app.state.sync = SyncService(app.state.db)
    app.state.health = HealthState()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > settings.max_body_bytes:
            return JSONResponse(
                status_code=413, content={"error": "Request body too large"}
            )
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def malformed_body(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Malformed JSON body"})

    app.include_router(health_router)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
