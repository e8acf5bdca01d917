"""
Dependency wiring for the FastAPI app.

The store client, sync service and health state are created by
``create_app`` and live on ``app.state`` so each app instance owns its own.
"""

from __future__ import annotations

from fastapi import Request

from loan_backend.bootstrap import HealthState
from loan_backend.config import Settings
from loan_backend.sync import SyncService


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync


def get_health_state(request: Request) -> HealthState:
    return request.app.state.health


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
