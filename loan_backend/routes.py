"""
HTTP routes for the loan tracker API.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from loan_backend.bootstrap import HealthState
from loan_backend.config import Settings
from loan_backend.dependencies import (
    get_app_settings,
    get_health_state,
    get_sync_service,
)
from loan_backend.schemas import (
    BudgetUpdate,
    HealthResponse,
    RankProfitUpdate,
    SnapshotResponse,
    SuccessResponse,
)
from loan_backend.sync import BatchValidationError, SyncService, parse_object

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal Server Error"

router = APIRouter()
health_router = APIRouter()


def _client_error(exc: BatchValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


def _server_error(operation: str) -> JSONResponse:
    # Must be called from an except block so the traceback is logged.
    logger.exception("Error in %s", operation)
    return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})


@health_router.get("/health", response_model=HealthResponse)
def health(
    health_state: HealthState = Depends(get_health_state),
    settings: Settings = Depends(get_app_settings),
):
    return health_state.as_dict(settings.app_env)


@router.get("/data", response_model=SnapshotResponse)
def get_data(sync: SyncService = Depends(get_sync_service)):
    try:
        return sync.get_snapshot()
    except Exception:
        return _server_error("GET /api/data")


@router.post("/users", response_model=SuccessResponse)
def post_users(
    payload: Any = Body(None), sync: SyncService = Depends(get_sync_service)
):
    try:
        sync.apply_users(payload)
    except BatchValidationError as exc:
        return _client_error(exc)
    except Exception:
        return _server_error("POST /api/users")
    return SuccessResponse()


@router.post("/loans", response_model=SuccessResponse)
def post_loans(
    payload: Any = Body(None), sync: SyncService = Depends(get_sync_service)
):
    try:
        sync.apply_loans(payload)
    except BatchValidationError as exc:
        return _client_error(exc)
    except Exception:
        return _server_error("POST /api/loans")
    return SuccessResponse()


@router.post("/notifications", response_model=SuccessResponse)
def post_notifications(
    payload: Any = Body(None), sync: SyncService = Depends(get_sync_service)
):
    try:
        sync.apply_notifications(payload)
    except BatchValidationError as exc:
        return _client_error(exc)
    except Exception:
        return _server_error("POST /api/notifications")
    return SuccessResponse()


@router.post("/budget", response_model=SuccessResponse)
def post_budget(
    payload: Any = Body(None), sync: SyncService = Depends(get_sync_service)
):
    try:
        update = parse_object(payload, BudgetUpdate)
        sync.set_budget(update.budget)
    except BatchValidationError as exc:
        return _client_error(exc)
    except Exception:
        return _server_error("POST /api/budget")
    return SuccessResponse()


@router.post("/rankProfit", response_model=SuccessResponse)
def post_rank_profit(
    payload: Any = Body(None), sync: SyncService = Depends(get_sync_service)
):
    try:
        update = parse_object(payload, RankProfitUpdate)
        sync.set_rank_profit(update.rankProfit)
    except BatchValidationError as exc:
        return _client_error(exc)
    except Exception:
        return _server_error("POST /api/rankProfit")
    return SuccessResponse()


@router.delete("/users/{user_id}", response_model=SuccessResponse)
def delete_user(user_id: str, sync: SyncService = Depends(get_sync_service)):
    try:
        sync.delete_user(user_id)
    except Exception:
        return _server_error("DELETE /api/users")
    return SuccessResponse()


@router.get("/logs", response_model=list[dict])
def get_logs(sync: SyncService = Depends(get_sync_service)):
    try:
        return sync.list_logs()
    except Exception:
        return _server_error("GET /api/logs")


@router.post("/logs", response_model=SuccessResponse)
def post_log(
    payload: Any = Body(None), sync: SyncService = Depends(get_sync_service)
):
    try:
        sync.append_log(payload)
    except BatchValidationError as exc:
        return _client_error(exc)
    except Exception:
        return _server_error("POST /api/logs")
    return SuccessResponse()
