import unittest
from unittest.mock import MagicMock, patch

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo import errors as mongo_errors

from loan_backend.db import DuplicateKeyError, StoreError
from loan_backend.mongo import MongoDbClient


class MongoDbClientTests(unittest.TestCase):
    def setUp(self):
        patcher = patch("loan_backend.mongo.MongoClient")
        self.mongo_client_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.db = MongoDbClient(
            "mongodb://localhost:27017", "loans_test", connect_timeout_ms=1234
        )

    def test_client_uses_connect_timeout(self):
        self.mongo_client_cls.assert_called_once_with(
            "mongodb://localhost:27017", serverSelectionTimeoutMS=1234
        )

    def test_ping_failure_raises_store_error(self):
        self.db.client.admin.command.side_effect = (
            mongo_errors.ServerSelectionTimeoutError("timed out")
        )
        with self.assertRaises(StoreError):
            self.db.ping()

    def test_ping_creates_indexes_once(self):
        self.db.ping()
        self.db.ping()
        phone_index = [
            call
            for call in self.db.db["users"].create_index.call_args_list
            if call.args[0] == [("phone", ASCENDING)]
        ]
        self.assertEqual(len(phone_index), 1)
        self.assertTrue(phone_index[0].kwargs["unique"])
        self.assertNotIn("name", phone_index[0].kwargs)

    def test_existing_index_under_other_name_is_kept(self):
        self.db.db["users"].create_index.side_effect = mongo_errors.OperationFailure(
            "Index already exists with a different name", code=85
        )
        with self.assertLogs("loan_backend.mongo", level="INFO"):
            self.db.ping()
        self.assertTrue(self.db._indexes_ready)

    def test_other_index_failure_raises_store_error(self):
        self.db.db["users"].create_index.side_effect = mongo_errors.OperationFailure(
            "not authorized", code=13
        )
        with self.assertRaises(StoreError):
            self.db.ping()
        self.assertFalse(self.db._indexes_ready)

    def test_upsert_loan_sets_defaults_only_on_insert(self):
        self.db.loans = MagicMock()
        self.db.loans.find_one.return_value = {"updatedAt": 10}
        self.db.loans.find_one_and_update.return_value = {
            "_id": ObjectId(),
            "id": "L1",
            "amount": 5,
        }

        record = self.db.upsert_loan("L1", {"amount": 5})

        args, kwargs = self.db.loans.find_one_and_update.call_args
        self.assertEqual(args[0], {"id": "L1"})
        self.assertEqual(args[1]["$set"]["amount"], 5)
        self.assertGreater(args[1]["$set"]["updatedAt"], 10)
        self.assertEqual(args[1]["$setOnInsert"], {"fine": 0})
        self.assertTrue(kwargs["upsert"])
        self.assertEqual(kwargs["return_document"], ReturnDocument.AFTER)
        self.assertIsInstance(record["_id"], str)

    def test_duplicate_key_is_translated(self):
        self.db.users = MagicMock()
        self.db.users.insert_one.side_effect = mongo_errors.DuplicateKeyError("dup")
        with self.assertRaises(DuplicateKeyError):
            self.db.save_user({"phone": "0901"})

    def test_delete_user_matches_internal_id(self):
        self.db.users = MagicMock()
        self.db.users.delete_one.return_value.deleted_count = 1
        oid = ObjectId()

        self.assertEqual(self.db.delete_user(str(oid)), 1)
        self.db.users.delete_one.assert_called_once_with(
            {"$or": [{"id": str(oid)}, {"_id": oid}]}
        )

    def test_delete_user_by_application_id(self):
        self.db.users = MagicMock()
        self.db.delete_user("client-7")
        self.db.users.delete_one.assert_called_once_with({"id": "client-7"})

    def test_ensure_settings_reports_creation(self):
        self.db.settings = MagicMock()
        self.db.settings.find_one.return_value = None
        self.db.settings.update_one.return_value.upserted_id = "global"
        self.assertTrue(self.db.ensure_system_settings({"budget": 1, "rankProfit": 0}))
        self.db.settings.update_one.assert_called_once_with(
            {"_id": "global"},
            {"$setOnInsert": {"budget": 1, "rankProfit": 0}},
            upsert=True,
        )

    def test_ensure_settings_adopts_legacy_document(self):
        self.db.settings = MagicMock()
        self.db.settings.find_one.return_value = {
            "_id": ObjectId(),
            "budget": 12345,
            "rankProfit": 7,
        }
        self.db.settings.update_one.return_value.upserted_id = "global"

        self.assertTrue(self.db.ensure_system_settings({"budget": 1, "rankProfit": 0}))
        self.db.settings.find_one.assert_called_once_with({"_id": {"$ne": "global"}})
        self.db.settings.update_one.assert_called_once_with(
            {"_id": "global"},
            {"$setOnInsert": {"budget": 12345, "rankProfit": 7}},
            upsert=True,
        )

    def test_settings_read_falls_back_to_legacy_document(self):
        self.db.settings = MagicMock()
        self.db.settings.find_one.side_effect = [None, {"budget": 500, "rankProfit": 3}]
        self.assertEqual(
            self.db.get_system_settings(), {"budget": 500, "rankProfit": 3}
        )
        self.db.settings.find_one.assert_called_with(
            {"_id": {"$ne": "global"}}, {"_id": 0}
        )


if __name__ == "__main__":
    unittest.main()
