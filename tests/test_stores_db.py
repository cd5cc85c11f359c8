import os
import sys
import tempfile
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from recordbase.db import Database
from recordbase.errors import InvalidIdentifierError, ReadFailure, UsernameTakenError
from recordbase.stores_db import DbGenericRecordStore, DbUserStore


class TestDbGenericRecordStore(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(f"sqlite:///{os.path.join(self.tmp.name, 'test.db')}")
        self.store = DbGenericRecordStore(self.db)
        self.store.create_table("tasks", {"title": "TEXT", "status": "TEXT"})

    def tearDown(self) -> None:
        self.db.close()
        self.tmp.cleanup()

    def test_insert_assigns_increasing_ids(self) -> None:
        first = self.store.insert("tasks", {"title": "a", "status": "open"})
        second = self.store.insert("tasks", {"title": "b", "status": "done"})
        self.assertEqual(first, {"id": 1, "title": "a", "status": "open"})
        self.assertGreater(second["id"], first["id"])

    def test_get_and_missing(self) -> None:
        created = self.store.insert("tasks", {"title": "a"})
        self.assertEqual(self.store.get("tasks", created["id"])["title"], "a")
        self.assertIsNone(self.store.get("tasks", 999))

    def test_list_is_identity_descending(self) -> None:
        for title in ("a", "b", "c"):
            self.store.insert("tasks", {"title": title})
        self.assertEqual([r["title"] for r in self.store.list("tasks")], ["c", "b", "a"])

    def test_find_by_criteria(self) -> None:
        self.store.insert("tasks", {"title": "a", "status": "open"})
        self.store.insert("tasks", {"title": "b", "status": "done"})
        rows = self.store.find("tasks", {"status": "done"})
        self.assertEqual([r["title"] for r in rows], ["b"])
        self.assertEqual(len(self.store.find("tasks")), 2)

    def test_update_and_delete(self) -> None:
        created = self.store.insert("tasks", {"title": "a", "status": "open"})
        updated = self.store.update("tasks", created["id"], {"status": "done"})
        self.assertEqual(updated["status"], "done")
        self.assertIsNone(self.store.update("tasks", 999, {"status": "done"}))
        self.assertEqual(self.store.delete("tasks", created["id"]), {"id": created["id"], "deleted": True})
        self.assertEqual(self.store.delete("tasks", created["id"]), {"id": created["id"], "deleted": False})

    def test_read_from_missing_table_raises_read_failure(self) -> None:
        with self.assertRaises(ReadFailure) as ctx:
            self.store.list("nothing_here")
        self.assertIsNotNone(ctx.exception.__cause__)

    def test_identifiers_are_validated(self) -> None:
        with self.assertRaises(InvalidIdentifierError):
            self.store.insert('tasks"; drop table tasks; --', {"title": "x"})
        with self.assertRaises(InvalidIdentifierError):
            self.store.insert("tasks", {"Title Case": "x"})

    def test_values_are_bound_not_interpolated(self) -> None:
        created = self.store.insert("tasks", {"title": "x'); DROP TABLE tasks; --"})
        self.assertEqual(self.store.get("tasks", created["id"])["title"], "x'); DROP TABLE tasks; --")

    def test_list_tables_and_bound_handle(self) -> None:
        self.store.create_table("projects", {"name": "TEXT"})
        self.assertEqual(self.store.list_tables(), ["projects", "tasks"])
        projects = self.store.bind("projects")
        created = projects.insert({"name": "p1"})
        self.assertEqual(projects.get(created["id"])["name"], "p1")
        self.assertEqual(self.store.bind(None).list_tables(), ["projects", "tasks"])


class TestDbUserStore(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(f"sqlite:///{os.path.join(self.tmp.name, 'test.db')}")
        self.users = DbUserStore(self.db)
        self.users.ensure_table()

    def tearDown(self) -> None:
        self.db.close()
        self.tmp.cleanup()

    def test_create_and_lookup(self) -> None:
        user_id = self.users.create("ada", "hash")
        row = self.users.get_by_username("ada")
        self.assertEqual(row["id"], user_id)
        self.assertEqual(row["password"], "hash")
        self.assertIsNone(self.users.get_by_username("nobody"))

    def test_duplicate_username(self) -> None:
        self.users.create("ada", "hash")
        with self.assertRaises(UsernameTakenError):
            self.users.create("ada", "other")

    def test_ensure_table_is_idempotent(self) -> None:
        self.users.ensure_table()
        self.users.create("ada", "hash")
        self.users.ensure_table()
        self.assertIsNotNone(self.users.get_by_username("ada"))


if __name__ == "__main__":
    unittest.main()
