import os
import unittest
from unittest.mock import patch

from loan_backend.bootstrap import (
    ConnectionState,
    HealthState,
    build_db_client,
    connect_store,
)
from loan_backend.config import Settings
from loan_backend.db import InMemoryDbClient, SqlDbClient, StoreError


class FlakyDbClient(InMemoryDbClient):
    def ping(self) -> None:
        raise StoreError("server selection timed out")


@patch.dict(os.environ, {}, clear=True)
class BuildDbClientTests(unittest.TestCase):
    def test_defaults_to_in_memory(self):
        db = build_db_client(Settings(_env_file=None))
        self.assertIsInstance(db, InMemoryDbClient)

    def test_database_url_selects_sql(self):
        db = build_db_client(
            Settings(_env_file=None, database_url="sqlite+pysqlite:///:memory:")
        )
        self.assertIsInstance(db, SqlDbClient)

    @patch("loan_backend.mongo.MongoClient")
    def test_mongodb_uri_takes_precedence(self, mongo_client_cls):
        from loan_backend.mongo import MongoDbClient

        db = build_db_client(
            Settings(
                _env_file=None,
                mongodb_uri="mongodb://db:27017",
                database_url="sqlite+pysqlite:///:memory:",
            )
        )
        self.assertIsInstance(db, MongoDbClient)

    def test_in_memory_toggle_wins(self):
        db = build_db_client(
            Settings(
                _env_file=None,
                use_in_memory_backends=True,
                database_url="sqlite+pysqlite:///:memory:",
            )
        )
        self.assertIsInstance(db, InMemoryDbClient)


class ConnectStoreTests(unittest.TestCase):
    def test_success_seeds_settings(self):
        db = InMemoryDbClient()
        health = HealthState()
        self.assertTrue(connect_store(db, health))
        self.assertEqual(health.state, ConnectionState.CONNECTED)
        self.assertEqual(db.get_system_settings()["budget"], 30000000)

    def test_existing_settings_are_kept(self):
        db = InMemoryDbClient()
        db.update_system_settings({"budget": 5})
        connect_store(db, HealthState())
        self.assertEqual(db.get_system_settings()["budget"], 5)

    def test_failure_is_recorded_not_raised(self):
        health = HealthState()
        self.assertFalse(connect_store(FlakyDbClient(), health))
        report = health.as_dict("production")
        self.assertEqual(report["database"], "Disconnected")
        self.assertEqual(report["dbCode"], 0)
        self.assertEqual(report["error"], "server selection timed out")
        self.assertEqual(report["env"], "production")


if __name__ == "__main__":
    unittest.main()
