import tempfile
import unittest
from pathlib import Path

from bluebridge.envelope import BadRequest
from bluebridge.uploads import ChunkedUploads, sanitize_filename


class FakeClock:
    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class SanitizeFilenameTests(unittest.TestCase):
    def test_strips_directories_and_unsafe_characters(self):
        self.assertEqual(sanitize_filename("../../etc/passwd"), "passwd")
        self.assertEqual(sanitize_filename("my photo?.png"), "my photo_.png")
        self.assertEqual(sanitize_filename(None), "attachment")
        self.assertEqual(sanitize_filename("..."), "attachment")


class ChunkedUploadsTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.uploads = ChunkedUploads(self.tmp.name, ttl_ms=1000, now_func=self.clock)

    def tearDown(self):
        self.tmp.cleanup()

    def test_chunks_assemble_in_order(self):
        self.assertEqual(self.uploads.append("u1", 0, b"hello ", "note.txt"), 6)
        self.assertEqual(self.uploads.append("u1", 6, b"world"), 11)
        path = self.uploads.finish("u1")
        self.assertEqual(path.read_bytes(), b"hello world")
        self.assertEqual(path.name, "note.txt")
        self.assertTrue(path.is_relative_to(Path(self.tmp.name)))
        self.assertIsNone(self.uploads.size_of("u1"))

    def test_out_of_order_chunk_is_rejected(self):
        self.uploads.append("u1", 0, b"abc")
        with self.assertRaises(BadRequest):
            self.uploads.append("u1", 10, b"def")
        self.assertEqual(self.uploads.size_of("u1"), 3)

    def test_unknown_upload_must_start_at_zero(self):
        with self.assertRaises(BadRequest):
            self.uploads.append("u2", 5, b"abc")
        with self.assertRaises(BadRequest):
            self.uploads.finish("u2")

    def test_idle_uploads_expire(self):
        self.uploads.append("u1", 0, b"abc")
        self.clock.now += 1000
        self.uploads.expire()
        self.assertIsNone(self.uploads.size_of("u1"))

    def test_new_path_is_unique_per_call(self):
        first = self.uploads.new_path("a.png")
        second = self.uploads.new_path("a.png")
        self.assertNotEqual(first, second)
        self.assertEqual(first.name, "a.png")

    def test_discard_path_removes_upload_directory(self):
        path = self.uploads.new_path("a.png")
        path.write_bytes(b"abc")
        self.uploads.discard_path(path)
        self.assertFalse(path.parent.exists())

    def test_discard_path_ignores_foreign_files(self):
        with tempfile.TemporaryDirectory() as other:
            foreign = Path(other) / "keep" / "a.png"
            foreign.parent.mkdir()
            foreign.write_bytes(b"abc")
            with self.assertLogs("bluebridge.uploads", "WARNING"):
                self.uploads.discard_path(foreign)
            self.assertTrue(foreign.exists())


if __name__ == "__main__":
    unittest.main()
