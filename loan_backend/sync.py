"""
Batched synchronization between the client and the document store.

The client reads the whole dataset with :meth:`SyncService.get_snapshot` and
pushes changes back as arrays of partial records. Entries of a batch are
applied one after another; there is no rollback when a later entry fails.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from loan_backend.db import (
    LOG_LIMIT,
    SNAPSHOT_NOTIFICATION_LIMIT,
    DbClient,
    default_settings,
)
from loan_backend.schemas import (
    LogEntry,
    LoanRecord,
    NotificationRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Store-managed keys a client may echo back from a snapshot.
_READ_ONLY_KEYS = ("_id", "__v", "updatedAt")


class BatchValidationError(ValueError):
    """The request body does not have the shape the endpoint expects."""


def parse_batch(payload: Any, model: Type[ModelT], label: str) -> list[ModelT]:
    """Validate a whole batch before any of it is written."""
    if not isinstance(payload, list):
        raise BatchValidationError(f"Expected an array of {label}")
    entries = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise BatchValidationError(f"{label}[{index}] must be an object")
        try:
            entries.append(model.model_validate(item))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            )
            raise BatchValidationError(f"Invalid {label}[{index}]: {problems}") from exc
    return entries


def parse_object(payload: Any, model: Type[ModelT]) -> ModelT:
    if not isinstance(payload, dict):
        raise BatchValidationError("Expected a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
        raise BatchValidationError(f"Invalid or missing field(s): {fields}") from exc


def _writable(entry: BaseModel) -> dict:
    fields = entry.to_fields()
    for key in _READ_ONLY_KEYS:
        fields.pop(key, None)
    return fields


def _with_id(record: dict) -> dict:
    if not record.get("id"):
        record = {**record, "id": str(record.get("_id", ""))}
    return record


class SyncService:
    """Implements the snapshot read and the batched upserts on top of a DbClient."""

    def __init__(self, db: DbClient):
        self.db = db

    def get_snapshot(self) -> dict:
        users = self.db.list_users()
        loans = self.db.list_loans()
        notifications = self.db.list_notifications(limit=SNAPSHOT_NOTIFICATION_LIMIT)
        settings = self.db.get_system_settings() or {}
        defaults = default_settings()
        return {
            "users": [_with_id(u) for u in users],
            "loans": [_with_id(l) for l in loans],
            "notifications": [_with_id(n) for n in notifications],
            "budget": settings.get("budget", defaults["budget"]),
            "rankProfit": settings.get("rankProfit", defaults["rankProfit"]),
        }

    def apply_users(self, payload: Any) -> int:
        entries = parse_batch(payload, UserRecord, "users")
        for entry in entries:
            fields = _writable(entry)
            if not fields.get("id"):
                fields.pop("id", None)
            existing = self._match_user(fields.get("id"), fields["phone"])
            self.db.save_user(fields, existing=existing)
        return len(entries)

    def _match_user(self, user_id: Optional[str], phone: str) -> Optional[dict]:
        """Look up by id first, then by phone; an id match wins over a phone match."""
        if user_id:
            existing = self.db.find_user_by_id(user_id)
            if existing:
                return existing
        return self.db.find_user_by_phone(phone)

    def apply_loans(self, payload: Any) -> int:
        entries = parse_batch(payload, LoanRecord, "loans")
        for entry in entries:
            fields = _writable(entry)
            self.db.upsert_loan(fields.pop("id"), fields)
        return len(entries)

    def apply_notifications(self, payload: Any) -> int:
        entries = parse_batch(payload, NotificationRecord, "notifications")
        for entry in entries:
            fields = _writable(entry)
            self.db.upsert_notification(fields.pop("id"), fields)
        return len(entries)

    def set_budget(self, value) -> dict:
        return self.db.update_system_settings({"budget": value})

    def set_rank_profit(self, value) -> dict:
        return self.db.update_system_settings({"rankProfit": value})

    def delete_user(self, user_id: str) -> dict:
        """
        Remove a user together with their notifications and loans.

        ``user_id`` may be the application id or the internal identifier.
        Dependents are matched on both the path value and the resolved
        application id, and are removed before the user record.
        """
        owner_keys = {user_id}
        user = self.db.find_user_by_key(user_id)
        if user and user.get("id"):
            owner_keys.add(user["id"])

        notifications = loans = 0
        for key in sorted(owner_keys):
            notifications += self.db.delete_notifications_for_user(key)
            loans += self.db.delete_loans_for_user(key)
        users = self.db.delete_user(user_id)
        logger.info(
            "Deleted user %s (users=%d, loans=%d, notifications=%d)",
            user_id,
            users,
            loans,
            notifications,
        )
        return {"users": users, "loans": loans, "notifications": notifications}

    def list_logs(self) -> list[dict]:
        return [_with_id(entry) for entry in self.db.list_logs(limit=LOG_LIMIT)]

    def append_log(self, payload: Any) -> dict:
        entry = parse_object(payload, LogEntry)
        logger.info("Recording log: %s by %s", entry.action, entry.user)
        return self.db.append_log(_writable(entry))
