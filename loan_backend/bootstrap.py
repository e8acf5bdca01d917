"""
Startup wiring: connect to the store once and seed the settings singleton.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from loan_backend.config import Settings
from loan_backend.db import DbClient, InMemoryDbClient, SqlDbClient, default_settings

logger = logging.getLogger(__name__)


class ConnectionState(enum.IntEnum):
    DISCONNECTED = 0
    CONNECTED = 1
    CONNECTING = 2
    DISCONNECTING = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


@dataclass
class HealthState:
    """Connection status reported by ``GET /health``; owned by one app instance."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    last_error: Optional[str] = "Database connection has not been established"

    def mark_connecting(self) -> None:
        self.state = ConnectionState.CONNECTING
        self.last_error = None

    def mark_connected(self) -> None:
        self.state = ConnectionState.CONNECTED
        self.last_error = None

    def mark_failed(self, error: str) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.last_error = error

    def as_dict(self, env: str) -> dict:
        return {
            "status": "OK",
            "database": self.state.label,
            "dbCode": int(self.state),
            "error": self.last_error if self.state != ConnectionState.CONNECTED else None,
            "env": env,
        }


def build_db_client(settings: Settings) -> DbClient:
    """Pick the store implementation from settings."""
    if settings.use_in_memory_backends:
        return InMemoryDbClient()
    if settings.mongodb_uri:
        from loan_backend.mongo import MongoDbClient

        return MongoDbClient(
            settings.mongodb_uri,
            settings.mongodb_database,
            connect_timeout_ms=settings.connect_timeout_ms,
        )
    if settings.database_url:
        return SqlDbClient(
            settings.database_url, connect_timeout_ms=settings.connect_timeout_ms
        )
    logger.warning("No MONGODB_URI or DATABASE_URL configured; using in-memory store")
    return InMemoryDbClient()


def connect_store(db: DbClient, health: HealthState) -> bool:
    """
    Make a single connection attempt and seed default settings.

    Failures are recorded on ``health`` instead of raised; the service keeps
    running and individual requests fail until the store is reachable.
    """
    logger.info("Attempting to connect to the document store...")
    health.mark_connecting()
    try:
        db.ping()
        if db.ensure_system_settings(default_settings()):
            logger.info("Initialized system settings")
    except Exception as exc:
        health.mark_failed(str(exc) or exc.__class__.__name__)
        logger.exception("Document store connection failed")
        return False
    health.mark_connected()
    logger.info("Connected to the document store")
    return True
