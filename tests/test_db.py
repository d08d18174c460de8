"""
SQLite storage layer: transaction boundaries.
"""

import sqlite3
import tempfile
import unittest

from support import open_db


class TestTransaction(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db = open_db(self._tmp.name)
        with self.db.transaction() as conn:
            conn.execute("CREATE TABLE parent (id INTEGER PRIMARY KEY)")
            conn.execute(
                "CREATE TABLE child (parent_id INTEGER "
                "REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED)"
            )

    def tearDown(self):
        self.db.close()
        self._tmp.cleanup()

    def count(self, table):
        return self.db.connection().execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def test_nested_block_joins_outer(self):
        with self.db.transaction() as outer:
            outer.execute("INSERT INTO parent (id) VALUES (1)")
            with self.db.transaction() as inner:
                self.assertIs(inner, outer)
                inner.execute("INSERT INTO child (parent_id) VALUES (1)")
        self.assertEqual(self.count("child"), 1)

    def test_failed_commit_is_rolled_back(self):
        # deferred foreign keys are checked at COMMIT
        with self.assertRaises(sqlite3.IntegrityError):
            with self.db.transaction() as conn:
                conn.execute("INSERT INTO child (parent_id) VALUES (42)")

        conn = self.db.connection()
        self.assertFalse(conn.in_transaction)
        self.assertEqual(self.count("child"), 0)

        with self.db.transaction() as conn:
            conn.execute("INSERT INTO parent (id) VALUES (7)")
        self.assertFalse(conn.in_transaction)
        self.assertEqual(self.count("parent"), 1)


if __name__ == "__main__":
    unittest.main()
