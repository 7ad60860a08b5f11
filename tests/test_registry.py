import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from fileserve import registry, shares, storage
from fileserve.errors import FileTooLargeError, InvalidInputError, NotFoundError


class FileRegistryTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name).resolve()
        storage.init_storage(self.root / "data" / "test.db", pool_size=4, timeout=10)
        self.sample = self.root / "files" / "demo.bin"
        self.sample.parent.mkdir(parents=True)
        self.sample.write_bytes(b"0123456789")

    def tearDown(self):
        storage.close_storage()
        self.storage_dir.cleanup()

    def _count_rows(self) -> int:
        with storage.get_db() as conn:
            return conn.execute("SELECT COUNT(*) FROM file").fetchone()[0]

    def test_register_captures_metadata(self):
        entry = registry.register_or_get_file(str(self.sample))

        self.assertEqual(entry.abs_path, str(self.sample))
        self.assertEqual(entry.name, "demo.bin")
        self.assertEqual(entry.size_bytes, 10)
        self.assertTrue(entry.created_at.endswith("Z"))
        self.assertEqual(registry.get_file(entry.id), entry)

    def test_register_is_idempotent(self):
        first = registry.register_or_get_file(str(self.sample))
        second = registry.register_or_get_file(str(self.sample))

        self.assertEqual(first.id, second.id)
        self.assertEqual(self._count_rows(), 1)

    def test_relative_segments_and_symlinks_share_one_entry(self):
        dotted = self.root / "files" / ".." / "files" / "demo.bin"
        link = self.root / "link.bin"
        os.symlink(self.sample, link)

        original = registry.register_or_get_file(str(self.sample))
        via_dots = registry.register_or_get_file(str(dotted))
        via_link = registry.register_or_get_file(str(link))

        self.assertEqual(original.id, via_dots.id)
        self.assertEqual(original.id, via_link.id)
        self.assertEqual(self._count_rows(), 1)

    def test_existing_entry_is_returned_unchanged(self):
        first = registry.register_or_get_file(str(self.sample))
        self.sample.write_bytes(b"much longer content now")
        second = registry.register_or_get_file(str(self.sample))

        self.assertEqual(second, first)
        self.assertEqual(second.size_bytes, 10)

    def test_missing_path_is_not_found(self):
        with self.assertRaises(NotFoundError):
            registry.register_or_get_file(str(self.root / "nope.bin"))
        self.assertEqual(self._count_rows(), 0)

    def test_invalid_paths_are_rejected(self):
        for bad in ["", "   ", "bad\x00path", None, 42]:
            with self.subTest(path=bad):
                with self.assertRaises(InvalidInputError):
                    registry.register_or_get_file(bad)

    def test_directories_are_rejected(self):
        with self.assertRaises(InvalidInputError):
            registry.register_or_get_file(str(self.root / "files"))

    def test_oversized_files_are_rejected(self):
        with mock.patch.object(registry, "MAX_FILE_SIZE_BYTES", 5):
            with self.assertRaises(FileTooLargeError):
                registry.register_or_get_file(str(self.sample))
        self.assertEqual(self._count_rows(), 0)

    def test_get_by_path(self):
        self.assertIsNone(registry.get_file_by_path(str(self.sample)))
        entry = registry.register_or_get_file(str(self.sample))

        self.assertEqual(registry.get_file_by_path(str(self.sample)), entry)
        self.assertEqual(
            registry.get_file_by_path(str(self.root / "files" / ".." / "files" / "demo.bin")),
            entry,
        )

    def test_get_by_path_finds_entries_whose_file_is_gone(self):
        entry = registry.register_or_get_file(str(self.sample))
        self.sample.unlink()

        self.assertEqual(registry.get_file_by_path(str(self.sample)), entry)

    def test_list_files_newest_first(self):
        other = self.root / "files" / "other.bin"
        other.write_bytes(b"x")
        first = registry.register_or_get_file(str(self.sample))
        second = registry.register_or_get_file(str(other))

        self.assertEqual([entry.id for entry in registry.list_files()], [second.id, first.id])

    def test_delete_cascades_to_shares(self):
        entry = registry.register_or_get_file(str(self.sample))
        share = shares.create_share(entry.id)

        self.assertTrue(registry.delete_file(entry.id))
        self.assertIsNone(shares.get_share(share.slug))
        self.assertIsNone(registry.get_file(entry.id))
        self.assertFalse(registry.delete_file(entry.id))

    def test_delete_unknown_id_returns_false(self):
        self.assertFalse(registry.delete_file("does-not-exist"))

    def test_insert_race_returns_the_winner(self):
        winner = registry.register_or_get_file(str(self.sample))
        real_select = registry._select_by_path
        calls = {"count": 0}

        def stale_first_lookup(conn, abs_path):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return real_select(conn, abs_path)

        with mock.patch.object(registry, "_select_by_path", side_effect=stale_first_lookup):
            loser = registry.register_or_get_file(str(self.sample))

        self.assertEqual(loser.id, winner.id)
        self.assertEqual(self._count_rows(), 1)

    def test_concurrent_registration_creates_one_row(self):
        results = []
        errors = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            try:
                results.append(registry.register_or_get_file(str(self.sample)).id)
            except Exception as error:  # pragma: no cover - surfaced below
                errors.append(error)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(set(results)), 1)
        self.assertEqual(self._count_rows(), 1)


if __name__ == "__main__":
    unittest.main()
