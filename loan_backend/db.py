"""
Document store abstraction for the loan tracker.

Each entity (users, loans, notifications, system settings, logs) is kept as a
JSON document. Records handed back to callers are plain dicts that always
carry the application ``id`` plus the store-internal identifier under
``_id``.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    String,
    create_engine,
    or_,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

DEFAULT_BUDGET = 30_000_000
DEFAULT_RANK_PROFIT = 0
SETTINGS_KEY = "global"

SNAPSHOT_NOTIFICATION_LIMIT = 200
LOG_LIMIT = 100

USER_DEFAULTS = {
    "balance": 0,
    "totalLimit": 0,
    "rank": "standard",
    "rankProgress": 0,
    "isLoggedIn": False,
    "isAdmin": False,
    "pendingUpgradeRank": None,
    "lastLoanSeq": 0,
}
LOAN_DEFAULTS = {"fine": 0}
NOTIFICATION_DEFAULTS = {"read": False}


class StoreError(Exception):
    """Raised when the document store rejects or fails an operation."""


class DuplicateKeyError(StoreError):
    """A unique key (user phone, loan id, ...) is already taken by another record."""


def now_ms() -> int:
    return int(time.time() * 1000)


_stamp_lock = threading.Lock()
_last_stamp = 0


def next_updated_at(previous: Optional[int] = None) -> int:
    """
    Return a write timestamp strictly greater than ``previous`` and than any
    timestamp handed out earlier by this process.
    """
    global _last_stamp
    with _stamp_lock:
        stamp = max(now_ms(), _last_stamp + 1)
        if previous is not None and stamp <= previous:
            stamp = previous + 1
        _last_stamp = stamp
        return stamp


def new_doc_id() -> str:
    return uuid.uuid4().hex


def default_settings() -> dict:
    return {"budget": DEFAULT_BUDGET, "rankProfit": DEFAULT_RANK_PROFIT}


class DbClient(Protocol):
    """Interface for document store access."""

    def ping(self) -> None:
        ...

    def list_users(self) -> list[dict]:
        ...

    def find_user_by_id(self, user_id: str) -> Optional[dict]:
        ...

    def find_user_by_phone(self, phone: str) -> Optional[dict]:
        ...

    def find_user_by_key(self, key: str) -> Optional[dict]:
        ...

    def save_user(self, fields: dict, *, existing: Optional[dict] = None) -> dict:
        ...

    def delete_user(self, user_id: str) -> int:
        ...

    def list_loans(self) -> list[dict]:
        ...

    def upsert_loan(self, loan_id: str, fields: dict) -> dict:
        ...

    def delete_loans_for_user(self, user_id: str) -> int:
        ...

    def list_notifications(
        self, limit: int = SNAPSHOT_NOTIFICATION_LIMIT
    ) -> list[dict]:
        ...

    def upsert_notification(self, notification_id: str, fields: dict) -> dict:
        ...

    def delete_notifications_for_user(self, user_id: str) -> int:
        ...

    def get_system_settings(self) -> Optional[dict]:
        ...

    def ensure_system_settings(self, defaults: dict) -> bool:
        ...

    def update_system_settings(self, fields: dict) -> dict:
        ...

    def list_logs(self, limit: int = LOG_LIMIT) -> list[dict]:
        ...

    def append_log(self, entry: dict) -> dict:
        ...


def _time_key(record: dict) -> str:
    return record.get("time") or ""


class InMemoryDbClient:
    """Simple in-memory document store for development and tests."""

    def __init__(self):
        self.users: Dict[str, dict] = {}
        self.loans: Dict[str, dict] = {}
        self.notifications: Dict[str, dict] = {}
        self.settings: Optional[dict] = None
        self.logs: list[dict] = []
        self._lock = threading.RLock()

    def ping(self) -> None:
        return None

    # Users

    def list_users(self) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(u) for u in self.users.values()]

    def find_user_by_id(self, user_id: str) -> Optional[dict]:
        with self._lock:
            for user in self.users.values():
                if user.get("id") == user_id:
                    return copy.deepcopy(user)
        return None

    def find_user_by_phone(self, phone: str) -> Optional[dict]:
        with self._lock:
            for user in self.users.values():
                if user.get("phone") == phone:
                    return copy.deepcopy(user)
        return None

    def find_user_by_key(self, key: str) -> Optional[dict]:
        """Match the application id first, then the internal identifier."""
        with self._lock:
            found = self.find_user_by_id(key)
            if found is None and key in self.users:
                found = copy.deepcopy(self.users[key])
            return found

    def save_user(self, fields: dict, *, existing: Optional[dict] = None) -> dict:
        with self._lock:
            doc_id = existing["_id"] if existing else new_doc_id()
            for key in ("phone", "id"):
                value = fields.get(key)
                for other_id, other in self.users.items():
                    if other_id != doc_id and value and other.get(key) == value:
                        raise DuplicateKeyError(f"user {key} {value!r} already taken")

            current = self.users.get(doc_id)
            if current is None:
                record = {**USER_DEFAULTS, **fields, "_id": doc_id}
                record["updatedAt"] = next_updated_at()
            else:
                record = {**current, **fields, "_id": doc_id}
                record["updatedAt"] = next_updated_at(current.get("updatedAt"))
            record.setdefault("id", doc_id)
            self.users[doc_id] = record
            return copy.deepcopy(record)

    def delete_user(self, user_id: str) -> int:
        with self._lock:
            for doc_id, user in self.users.items():
                if doc_id == user_id or user.get("id") == user_id:
                    del self.users[doc_id]
                    return 1
        return 0

    # Loans

    def list_loans(self) -> list[dict]:
        with self._lock:
            loans = [copy.deepcopy(l) for l in self.loans.values()]
        return sorted(loans, key=lambda l: l.get("updatedAt") or 0, reverse=True)

    def upsert_loan(self, loan_id: str, fields: dict) -> dict:
        with self._lock:
            record = _upsert_by_id(self.loans, loan_id, fields, LOAN_DEFAULTS)
            return copy.deepcopy(record)

    def delete_loans_for_user(self, user_id: str) -> int:
        with self._lock:
            return _delete_where_user(self.loans, user_id)

    # Notifications

    def list_notifications(
        self, limit: int = SNAPSHOT_NOTIFICATION_LIMIT
    ) -> list[dict]:
        with self._lock:
            items = [copy.deepcopy(n) for n in self.notifications.values()]
        items.sort(key=_time_key, reverse=True)
        return items[:limit]

    def upsert_notification(self, notification_id: str, fields: dict) -> dict:
        with self._lock:
            record = _upsert_by_id(
                self.notifications, notification_id, fields, NOTIFICATION_DEFAULTS
            )
            return copy.deepcopy(record)

    def delete_notifications_for_user(self, user_id: str) -> int:
        with self._lock:
            return _delete_where_user(self.notifications, user_id)

    # System settings

    def get_system_settings(self) -> Optional[dict]:
        with self._lock:
            return dict(self.settings) if self.settings is not None else None

    def ensure_system_settings(self, defaults: dict) -> bool:
        with self._lock:
            if self.settings is not None:
                return False
            self.settings = dict(defaults)
            return True

    def update_system_settings(self, fields: dict) -> dict:
        with self._lock:
            self.ensure_system_settings(default_settings())
            self.settings.update(fields)
            return dict(self.settings)

    # Logs

    def list_logs(self, limit: int = LOG_LIMIT) -> list[dict]:
        with self._lock:
            logs = [dict(entry) for entry in self.logs]
        logs.sort(key=_time_key, reverse=True)
        return logs[:limit]

    def append_log(self, entry: dict) -> dict:
        doc_id = new_doc_id()
        record = {**entry, "id": doc_id, "_id": doc_id}
        with self._lock:
            self.logs.append(record)
        return dict(record)


def _upsert_by_id(
    collection: Dict[str, dict], record_id: str, fields: dict, defaults: dict
) -> dict:
    for doc_id, current in collection.items():
        if current.get("id") == record_id:
            record = {**current, **fields, "id": record_id, "_id": doc_id}
            record["updatedAt"] = next_updated_at(current.get("updatedAt"))
            collection[doc_id] = record
            return record
    doc_id = new_doc_id()
    record = {**defaults, **fields, "id": record_id, "_id": doc_id}
    record["updatedAt"] = next_updated_at()
    collection[doc_id] = record
    return record


def _delete_where_user(collection: Dict[str, dict], user_id: str) -> int:
    doomed = [k for k, v in collection.items() if v.get("userId") == user_id]
    for key in doomed:
        del collection[key]
    return len(doomed)


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).

    Each record is stored as a JSON document; the fields used for matching and
    ordering are mirrored into indexed columns.
    """

    def __init__(self, database_url: str, *, connect_timeout_ms: int = 5000):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        connect_args = {}
        if database_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, connect_timeout_ms // 1000)
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
            connect_args=connect_args,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        self._schema_ready = False

    def _ensure_schema(self) -> None:
        if not self._schema_ready:
            Base.metadata.create_all(self.engine)
            self._schema_ready = True

    def _session(self) -> Session:
        self._ensure_schema()
        return self.Session()

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise DuplicateKeyError(str(exc.orig)) from exc

    def ping(self) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        self._ensure_schema()

    # Users

    def list_users(self) -> list[dict]:
        with self._session() as session:
            rows = session.execute(select(UserRow)).scalars().all()
            return [_row_to_doc(row) for row in rows]

    def find_user_by_id(self, user_id: str) -> Optional[dict]:
        with self._session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.id == user_id)
            ).scalar_one_or_none()
            return _row_to_doc(row) if row else None

    def find_user_by_phone(self, phone: str) -> Optional[dict]:
        with self._session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.phone == phone)
            ).scalar_one_or_none()
            return _row_to_doc(row) if row else None

    def find_user_by_key(self, key: str) -> Optional[dict]:
        found = self.find_user_by_id(key)
        if found is None:
            with self._session() as session:
                row = session.get(UserRow, key)
                found = _row_to_doc(row) if row else None
        return found

    def save_user(self, fields: dict, *, existing: Optional[dict] = None) -> dict:
        with self._session() as session:
            row = session.get(UserRow, existing["_id"]) if existing else None
            if row:
                data = {**row.data, **fields}
                data["updatedAt"] = next_updated_at(row.updated_at)
            else:
                row = UserRow(doc_id=new_doc_id())
                session.add(row)
                data = {**USER_DEFAULTS, **fields}
                data["updatedAt"] = next_updated_at()
            data.setdefault("id", row.doc_id)
            row.id = data["id"]
            row.phone = data.get("phone")
            row.updated_at = data["updatedAt"]
            row.data = data
            self._commit(session)
            return _row_to_doc(row)

    def delete_user(self, user_id: str) -> int:
        with self._session() as session:
            row = session.execute(
                select(UserRow)
                .where(or_(UserRow.id == user_id, UserRow.doc_id == user_id))
                .limit(1)
            ).scalar_one_or_none()
            if not row:
                return 0
            session.delete(row)
            session.commit()
            return 1

    # Loans

    def list_loans(self) -> list[dict]:
        with self._session() as session:
            rows = (
                session.execute(select(LoanRow).order_by(LoanRow.updated_at.desc()))
                .scalars()
                .all()
            )
            return [_row_to_doc(row) for row in rows]

    def upsert_loan(self, loan_id: str, fields: dict) -> dict:
        with self._session() as session:
            row = session.execute(
                select(LoanRow).where(LoanRow.id == loan_id)
            ).scalar_one_or_none()
            row = _upsert_row(session, LoanRow, row, loan_id, fields, LOAN_DEFAULTS)
            row.user_id = row.data.get("userId")
            self._commit(session)
            return _row_to_doc(row)

    def delete_loans_for_user(self, user_id: str) -> int:
        with self._session() as session:
            deleted = (
                session.query(LoanRow)
                .filter(LoanRow.user_id == user_id)
                .delete(synchronize_session=False)
            )
            session.commit()
            return deleted or 0

    # Notifications

    def list_notifications(
        self, limit: int = SNAPSHOT_NOTIFICATION_LIMIT
    ) -> list[dict]:
        with self._session() as session:
            rows = (
                session.execute(
                    select(NotificationRow)
                    .order_by(NotificationRow.time.desc().nulls_last())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [_row_to_doc(row) for row in rows]

    def upsert_notification(self, notification_id: str, fields: dict) -> dict:
        with self._session() as session:
            row = session.execute(
                select(NotificationRow).where(NotificationRow.id == notification_id)
            ).scalar_one_or_none()
            row = _upsert_row(
                session,
                NotificationRow,
                row,
                notification_id,
                fields,
                NOTIFICATION_DEFAULTS,
            )
            row.user_id = row.data.get("userId")
            row.time = row.data.get("time")
            self._commit(session)
            return _row_to_doc(row)

    def delete_notifications_for_user(self, user_id: str) -> int:
        with self._session() as session:
            deleted = (
                session.query(NotificationRow)
                .filter(NotificationRow.user_id == user_id)
                .delete(synchronize_session=False)
            )
            session.commit()
            return deleted or 0

    # System settings

    def get_system_settings(self) -> Optional[dict]:
        with self._session() as session:
            row = session.get(SettingsRow, SETTINGS_KEY)
            return _settings_to_doc(row) if row else None

    def ensure_system_settings(self, defaults: dict) -> bool:
        with self._session() as session:
            if session.get(SettingsRow, SETTINGS_KEY):
                return False
            session.add(SettingsRow(key=SETTINGS_KEY, data=dict(defaults)))
            try:
                session.commit()
            except IntegrityError:
                # Another writer created the singleton first.
                session.rollback()
                return False
            return True

    def update_system_settings(self, fields: dict) -> dict:
        self.ensure_system_settings(default_settings())
        with self._session() as session:
            row = session.get(SettingsRow, SETTINGS_KEY)
            row.data = {**row.data, **fields}
            session.commit()
            return _settings_to_doc(row)

    # Logs

    def list_logs(self, limit: int = LOG_LIMIT) -> list[dict]:
        with self._session() as session:
            rows = (
                session.execute(
                    select(LogRow).order_by(LogRow.time.desc().nulls_last()).limit(limit)
                )
                .scalars()
                .all()
            )
            return [_row_to_doc(row) for row in rows]

    def append_log(self, entry: dict) -> dict:
        doc_id = new_doc_id()
        with self._session() as session:
            row = LogRow(
                doc_id=doc_id,
                time=entry.get("time"),
                data={**entry, "id": doc_id},
            )
            session.add(row)
            session.commit()
            return _row_to_doc(row)


def _row_to_doc(row) -> dict:
    return {**(row.data or {}), "_id": row.doc_id}


def _settings_to_doc(row: "SettingsRow") -> dict:
    return {**default_settings(), **(row.data or {})}


def _upsert_row(session: Session, model, row, record_id: str, fields: dict, defaults: dict):
    if row:
        data = {**row.data, **fields, "id": record_id}
        data["updatedAt"] = next_updated_at(row.updated_at)
    else:
        row = model(doc_id=new_doc_id(), id=record_id)
        session.add(row)
        data = {**defaults, **fields, "id": record_id}
        data["updatedAt"] = next_updated_at()
    row.updated_at = data["updatedAt"]
    row.data = data
    return row


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    doc_id = Column(String, primary_key=True)
    id = Column(String, nullable=True, unique=True, index=True)
    phone = Column(String, nullable=True, unique=True, index=True)
    data = Column("document", JSON, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class LoanRow(Base):
    __tablename__ = "loans"

    doc_id = Column(String, primary_key=True)
    id = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    data = Column("document", JSON, nullable=False)
    updated_at = Column(BigInteger, nullable=False, index=True)


class NotificationRow(Base):
    __tablename__ = "notifications"

    doc_id = Column(String, primary_key=True)
    id = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    time = Column(String, nullable=True, index=True)
    data = Column("document", JSON, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class SettingsRow(Base):
    __tablename__ = "system_settings"

    key = Column(String, primary_key=True)
    data = Column("document", JSON, nullable=False)


class LogRow(Base):
    __tablename__ = "logs"

    doc_id = Column(String, primary_key=True)
    time = Column(String, nullable=True, index=True)
    data = Column("document", JSON, nullable=False)
