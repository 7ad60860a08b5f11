import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fileserve import storage
from fileserve.errors import InvalidInputError, StorageFaultError


class TimestampTests(unittest.TestCase):
    def test_format_is_fixed_width_utc(self):
        value = datetime(2024, 3, 5, 7, 8, 9, tzinfo=timezone.utc)
        self.assertEqual(storage.format_timestamp(value), "2024-03-05T07:08:09.000000Z")

    def test_naive_datetimes_are_read_as_utc(self):
        naive = datetime(2024, 3, 5, 7, 8, 9)
        aware = naive.replace(tzinfo=timezone.utc)
        self.assertEqual(storage.format_timestamp(naive), storage.format_timestamp(aware))

    def test_offsets_are_normalised(self):
        plus_two = timezone(timedelta(hours=2))
        value = datetime(2024, 3, 5, 9, 0, 0, tzinfo=plus_two)
        self.assertEqual(storage.format_timestamp(value), "2024-03-05T07:00:00.000000Z")

    def test_formatted_values_sort_in_time_order(self):
        earlier = datetime(2024, 1, 1, 23, 59, 59, 999999, tzinfo=timezone.utc)
        later = earlier + timedelta(microseconds=1)
        self.assertLess(storage.format_timestamp(earlier), storage.format_timestamp(later))

    def test_parse_accepts_trailing_z(self):
        parsed = storage.parse_timestamp("2030-01-01T00:00:00Z")
        self.assertEqual(parsed, datetime(2030, 1, 1, tzinfo=timezone.utc))

    def test_parse_rejects_garbage(self):
        with self.assertRaises(InvalidInputError):
            storage.parse_timestamp("next tuesday")
        with self.assertRaises(InvalidInputError):
            storage.parse_timestamp(12345)
        for out_of_range in ["9999-12-31T23:59:59-01:00", "0001-01-01T00:00:00+01:00"]:
            with self.subTest(value=out_of_range):
                with self.assertRaises(InvalidInputError):
                    storage.parse_timestamp(out_of_range)


class StorageLifecycleTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.storage_dir.name) / "data" / "test.db"
        self.pool = storage.init_storage(self.db_path, pool_size=2, timeout=5)

    def tearDown(self):
        storage.close_storage()
        self.storage_dir.cleanup()

    def test_schema_matches_persisted_layout(self):
        with storage.get_db() as conn:
            file_columns = [row["name"] for row in conn.execute("PRAGMA table_info(file)")]
            share_columns = [row["name"] for row in conn.execute("PRAGMA table_info(share)")]
            foreign_keys = conn.execute("PRAGMA foreign_key_list(share)").fetchall()

        self.assertEqual(file_columns, ["id", "abs_path", "name", "size_bytes", "created_at"])
        self.assertEqual(
            share_columns,
            [
                "slug",
                "file_id",
                "expires_at",
                "max_downloads",
                "dl_count",
                "password_hash",
                "created_at",
            ],
        )
        self.assertEqual(len(foreign_keys), 1)
        self.assertEqual(foreign_keys[0]["table"], "file")
        self.assertEqual(foreign_keys[0]["on_delete"], "CASCADE")

    def test_connections_enforce_foreign_keys(self):
        with storage.get_db() as conn:
            enabled = conn.execute("PRAGMA foreign_keys").fetchone()[0]
        self.assertEqual(enabled, 1)

        with self.assertRaises(sqlite3.IntegrityError):
            with storage.get_db() as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    "INSERT INTO share (slug, file_id, created_at) VALUES (?, ?, ?)",
                    ("orphan00", "missing", "2024-01-01T00:00:00.000000Z"),
                )

    def test_connections_are_reused(self):
        with storage.get_db() as first:
            first_id = id(first)
        with storage.get_db() as second:
            second_id = id(second)
        self.assertEqual(first_id, second_id)

    def test_failed_block_rolls_back(self):
        with self.assertRaises(RuntimeError):
            with storage.get_db() as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    "INSERT INTO file (id, abs_path, name, size_bytes, created_at) VALUES (?, ?, ?, ?, ?)",
                    ("f1", "/tmp/x", "x", 1, "2024-01-01T00:00:00.000000Z"),
                )
                raise RuntimeError("boom")

        with storage.get_db() as conn:
            count = conn.execute("SELECT COUNT(*) FROM file").fetchone()[0]
        self.assertEqual(count, 0)

    def test_sql_errors_become_storage_faults(self):
        with self.assertRaises(StorageFaultError):
            with storage.get_db() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_ping(self):
        self.assertTrue(storage.ping())

    def test_closed_storage_refuses_work(self):
        storage.close_storage()
        with self.assertRaises(StorageFaultError):
            with storage.get_db():
                pass
        # A second close is harmless.
        storage.close_storage()


if __name__ == "__main__":
    unittest.main()
