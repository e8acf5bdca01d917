"""
MongoDB implementation of the document store.
"""

from __future__ import annotations

import logging
from typing import Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo import errors as mongo_errors

from loan_backend.db import (
    LOAN_DEFAULTS,
    LOG_LIMIT,
    NOTIFICATION_DEFAULTS,
    SETTINGS_KEY,
    SNAPSHOT_NOTIFICATION_LIMIT,
    USER_DEFAULTS,
    DuplicateKeyError,
    StoreError,
    default_settings,
    new_doc_id,
    next_updated_at,
)

logger = logging.getLogger(__name__)

INDEXES = {
    "users": [
        {"keys": [("phone", ASCENDING)], "unique": True},
        {"keys": [("id", ASCENDING)]},
    ],
    "loans": [
        {"keys": [("id", ASCENDING)], "unique": True},
        {"keys": [("userId", ASCENDING)]},
        {"keys": [("updatedAt", DESCENDING)]},
    ],
    "notifications": [
        {"keys": [("id", ASCENDING)], "unique": True},
        {"keys": [("userId", ASCENDING)]},
        {"keys": [("time", DESCENDING)]},
    ],
    "logs": [
        {"keys": [("time", DESCENDING)]},
    ],
}

# IndexOptionsConflict / IndexKeySpecsConflict: an index on the same keys
# already exists under another name or with other options.
EXISTING_INDEX_CODES = (85, 86)


def _to_doc(raw: Optional[dict]) -> Optional[dict]:
    if raw is None:
        return None
    doc = dict(raw)
    doc["_id"] = str(doc["_id"])
    return doc


def _internal_id(value: str):
    return ObjectId(value) if ObjectId.is_valid(value) else value


def _update_doc(fields: dict, defaults: dict) -> dict:
    update = {"$set": fields}
    # $set and $setOnInsert must not touch the same path; neither may be empty.
    on_insert = {k: v for k, v in defaults.items() if k not in fields}
    if on_insert:
        update["$setOnInsert"] = on_insert
    return update


class MongoDbClient:
    """pymongo-backed document store."""

    def __init__(
        self, uri: str, database: str = "loan_tracker", *, connect_timeout_ms: int = 5000
    ):
        if not uri:
            raise ValueError("MONGODB_URI is required for MongoDbClient")
        self.client = MongoClient(uri, serverSelectionTimeoutMS=connect_timeout_ms)
        self.db = self.client[database]
        self.users = self.db["users"]
        self.loans = self.db["loans"]
        self.notifications = self.db["notifications"]
        self.settings = self.db["systemsettings"]
        self.logs = self.db["logs"]
        self._indexes_ready = False

    def ping(self) -> None:
        try:
            self.client.admin.command("ping")
        except mongo_errors.PyMongoError as exc:
            raise StoreError(str(exc)) from exc
        if not self._indexes_ready:
            self.ensure_indexes()

    def ensure_indexes(self) -> None:
        """Create the lookup indexes. Safe to run multiple times."""
        for collection_name, indexes in INDEXES.items():
            collection = self.db[collection_name]
            for index_def in indexes:
                options = {k: v for k, v in index_def.items() if k != "keys"}
                try:
                    collection.create_index(index_def["keys"], **options)
                except mongo_errors.OperationFailure as exc:
                    if exc.code not in EXISTING_INDEX_CODES:
                        raise StoreError(str(exc)) from exc
                    logger.info(
                        "Keeping existing index on %s %s: %s",
                        collection_name,
                        index_def["keys"],
                        exc,
                    )
        self._indexes_ready = True

    # Users

    def list_users(self) -> list[dict]:
        return [_to_doc(u) for u in self.users.find()]

    def find_user_by_id(self, user_id: str) -> Optional[dict]:
        return _to_doc(self.users.find_one({"id": user_id}))

    def find_user_by_phone(self, phone: str) -> Optional[dict]:
        return _to_doc(self.users.find_one({"phone": phone}))

    def find_user_by_key(self, key: str) -> Optional[dict]:
        found = self.find_user_by_id(key)
        if found is None and ObjectId.is_valid(key):
            found = _to_doc(self.users.find_one({"_id": ObjectId(key)}))
        return found

    def save_user(self, fields: dict, *, existing: Optional[dict] = None) -> dict:
        try:
            if existing:
                update = {
                    **fields,
                    "updatedAt": next_updated_at(existing.get("updatedAt")),
                }
                raw = self.users.find_one_and_update(
                    {"_id": _internal_id(existing["_id"])},
                    {"$set": update},
                    return_document=ReturnDocument.AFTER,
                )
                if raw is not None:
                    return _to_doc(raw)
            doc_id = new_doc_id()
            record = {**USER_DEFAULTS, **fields, "updatedAt": next_updated_at()}
            record.setdefault("id", doc_id)
            self.users.insert_one(record)
            return _to_doc(record)
        except mongo_errors.DuplicateKeyError as exc:
            raise DuplicateKeyError(str(exc)) from exc

    def delete_user(self, user_id: str) -> int:
        query = {"id": user_id}
        if ObjectId.is_valid(user_id):
            query = {"$or": [{"id": user_id}, {"_id": ObjectId(user_id)}]}
        return self.users.delete_one(query).deleted_count

    # Loans

    def list_loans(self) -> list[dict]:
        return [_to_doc(l) for l in self.loans.find().sort("updatedAt", DESCENDING)]

    def upsert_loan(self, loan_id: str, fields: dict) -> dict:
        return self._upsert_by_id(self.loans, loan_id, fields, LOAN_DEFAULTS)

    def delete_loans_for_user(self, user_id: str) -> int:
        return self.loans.delete_many({"userId": user_id}).deleted_count

    # Notifications

    def list_notifications(
        self, limit: int = SNAPSHOT_NOTIFICATION_LIMIT
    ) -> list[dict]:
        cursor = self.notifications.find().sort("time", DESCENDING).limit(limit)
        return [_to_doc(n) for n in cursor]

    def upsert_notification(self, notification_id: str, fields: dict) -> dict:
        return self._upsert_by_id(
            self.notifications, notification_id, fields, NOTIFICATION_DEFAULTS
        )

    def delete_notifications_for_user(self, user_id: str) -> int:
        return self.notifications.delete_many({"userId": user_id}).deleted_count

    def _upsert_by_id(self, collection, record_id: str, fields: dict, defaults: dict) -> dict:
        current = collection.find_one({"id": record_id}, {"updatedAt": 1})
        update = {
            **fields,
            "id": record_id,
            "updatedAt": next_updated_at((current or {}).get("updatedAt")),
        }
        try:
            raw = collection.find_one_and_update(
                {"id": record_id},
                _update_doc(update, defaults),
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except mongo_errors.DuplicateKeyError as exc:
            raise DuplicateKeyError(str(exc)) from exc
        return _to_doc(raw)

    # System settings

    def get_system_settings(self) -> Optional[dict]:
        found = self.settings.find_one({"_id": SETTINGS_KEY}, {"_id": 0})
        if found is None:
            found = self.settings.find_one({"_id": {"$ne": SETTINGS_KEY}}, {"_id": 0})
        return found

    def ensure_system_settings(self, defaults: dict) -> bool:
        """
        Create the ``"global"`` settings document if missing. A settings
        document written under a generated ``_id`` by an earlier deployment
        supplies the initial values.
        """
        initial = dict(defaults)
        legacy = self.settings.find_one({"_id": {"$ne": SETTINGS_KEY}})
        if legacy:
            initial.update(
                {k: legacy[k] for k in ("budget", "rankProfit") if k in legacy}
            )
        result = self.settings.update_one(
            {"_id": SETTINGS_KEY}, {"$setOnInsert": initial}, upsert=True
        )
        return result.upserted_id is not None

    def update_system_settings(self, fields: dict) -> dict:
        self.ensure_system_settings(default_settings())
        raw = self.settings.find_one_and_update(
            {"_id": SETTINGS_KEY},
            _update_doc(fields, default_settings()),
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return dict(raw)

    # Logs

    def list_logs(self, limit: int = LOG_LIMIT) -> list[dict]:
        cursor = self.logs.find().sort("time", DESCENDING).limit(limit)
        return [_to_doc(entry) for entry in cursor]

    def append_log(self, entry: dict) -> dict:
        record = {**entry, "id": new_doc_id()}
        self.logs.insert_one(record)
        return _to_doc(record)
