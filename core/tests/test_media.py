import tempfile
import unittest
from pathlib import Path

from dmsync import rooms
from dmsync.auth import SessionContext
from dmsync.blobs import FileObjectStorage, InMemoryObjectStorage, ObjectExists, StorageError
from dmsync.errors import UploadError
from dmsync.media import MediaAttachmentPipeline
from dmsync.models import Profile
from dmsync.store import InMemoryStore
from dmsync.sync import ConversationSync


ALICE = SessionContext("alice", "alice@x.com")
ROOM = rooms.room_id("alice", "bob")


class BrokenStorage(InMemoryObjectStorage):
    async def put(self, path, data):
        raise StorageError("bucket unavailable")


class MediaPipelineTests(unittest.IsolatedAsyncioTestCase):
    async def test_upload_scopes_path_by_room_and_author(self):
        storage = InMemoryObjectStorage("https://cdn.example/media")
        pipeline = MediaAttachmentPipeline(storage)

        ref = await pipeline.upload(ROOM, "alice", b"\x89PNG", "photo.PNG")

        prefix, room_segment, author_segment, filename = ref.path.split("/")
        self.assertEqual(prefix, "chat_images")
        self.assertEqual(room_segment, "alice%3Abob")
        self.assertEqual(author_segment, "alice")
        self.assertTrue(filename.endswith(".png"))
        self.assertEqual(storage.get(ref.path), b"\x89PNG")
        self.assertTrue(ref.url.startswith("https://cdn.example/media/chat_images/"))

    async def test_two_uploads_never_share_a_path(self):
        pipeline = MediaAttachmentPipeline(InMemoryObjectStorage())
        first = await pipeline.upload(ROOM, "alice", b"a", "same.jpg")
        second = await pipeline.upload(ROOM, "alice", b"b", "same.jpg")
        self.assertNotEqual(first.path, second.path)

    async def test_odd_names_get_no_extension(self):
        pipeline = MediaAttachmentPipeline(InMemoryObjectStorage(), prefix="/uploads/")
        ref = await pipeline.upload(ROOM, "alice", b"a", "../../etc/passwd")
        self.assertTrue(ref.path.startswith("uploads/"))
        self.assertNotIn("..", ref.path)

    async def test_storage_failure_raises_upload_error(self):
        pipeline = MediaAttachmentPipeline(BrokenStorage())
        with self.assertLogs("dmsync.media", level="WARNING"):
            with self.assertRaises(UploadError) as ctx:
                await pipeline.upload(ROOM, "alice", b"a", "a.png")
        self.assertIsInstance(ctx.exception.cause, StorageError)

    async def test_empty_payload_is_refused(self):
        with self.assertRaises(UploadError):
            await MediaAttachmentPipeline(InMemoryObjectStorage()).upload(ROOM, "alice", b"", "a.png")

    async def test_send_image_posts_attachment_only_message(self):
        store = InMemoryStore()
        await store.insert_profile(Profile("alice", "aaaaaaa"))
        sync = ConversationSync(store)
        storage = InMemoryObjectStorage()
        pipeline = MediaAttachmentPipeline(storage)
        view = await sync.open(ALICE, ROOM)
        await view.wait_live()

        message = await pipeline.send_image(sync, ALICE, view, b"img", "cat.jpg")
        await view.settle()

        self.assertIsNone(message.text)
        self.assertEqual(len(storage), 1)
        self.assertEqual(view.messages[0].message.attachment_url, message.attachment_url)
        await sync.close_all()

    async def test_failed_upload_sends_nothing(self):
        store = InMemoryStore()
        sync = ConversationSync(store)
        view = await sync.open(ALICE, ROOM)
        await view.wait_live()

        with self.assertLogs("dmsync.media", level="WARNING"):
            with self.assertRaises(UploadError):
                await MediaAttachmentPipeline(BrokenStorage()).send_image(sync, ALICE, view, b"img", "cat.jpg")
        await view.settle()

        self.assertEqual(len(view), 0)
        await sync.close_all()


class ObjectStorageTests(unittest.IsolatedAsyncioTestCase):
    async def test_in_memory_objects_are_write_once(self):
        storage = InMemoryObjectStorage()
        await storage.put("a/b.png", b"1")
        with self.assertRaises(ObjectExists):
            await storage.put("a/b.png", b"2")
        self.assertEqual(storage.get("a/b.png"), b"1")

    async def test_invalid_paths_are_refused(self):
        storage = InMemoryObjectStorage()
        for path in ("", "/abs.png", "a/../b.png", "a//b.png"):
            with self.assertRaises(StorageError):
                await storage.put(path, b"1")

    async def test_file_storage_writes_below_root(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = FileObjectStorage(tmpdir, "http://127.0.0.1:8080/media/")
            await storage.put("chat_images/r/a.png", b"data")

            self.assertEqual((Path(tmpdir) / "chat_images/r/a.png").read_bytes(), b"data")
            self.assertEqual(storage.resolve("chat_images/r/a.png"), Path(tmpdir) / "chat_images/r/a.png")
            self.assertIsNone(storage.resolve("../outside"))
            self.assertIsNone(storage.resolve("chat_images/missing.png"))
            self.assertEqual(
                storage.public_url("chat_images/r/a.png"), "http://127.0.0.1:8080/media/chat_images/r/a.png"
            )
            with self.assertRaises(ObjectExists):
                await storage.put("chat_images/r/a.png", b"again")


if __name__ == "__main__":
    unittest.main()
