import asyncio
import tempfile
import unittest

from aiohttp.test_utils import TestClient, TestServer

from dmsync import shortid
from dmsync.blobs import InMemoryObjectStorage
from dmsync.config import SyncConfig
from dmsync.errors import Transient
from dmsync.http_api import RUNTIME_KEY, create_app
from dmsync.runtime import Runtime
from dmsync.store import InMemoryStore


class OutageStore(InMemoryStore):
    """Serves reads normally until ``down`` is set, then fails them as transient."""

    def __init__(self):
        super().__init__()
        self.down = False

    def _check(self):
        if self.down:
            raise Transient("db down")

    async def get_profile(self, user_id):
        self._check()
        return await super().get_profile(user_id)

    async def find_profile_by_short_id(self, short_id):
        self._check()
        return await super().find_profile_by_short_id(short_id)

    async def get_friendship(self, owner_id, peer_id):
        self._check()
        return await super().get_friendship(owner_id, peer_id)

    async def list_friendships(self, owner_id, status="accepted"):
        self._check()
        return await super().list_friendships(owner_id, status)


class HttpApiTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.media_dir = tempfile.TemporaryDirectory()
        self.app = create_app(
            config=SyncConfig(public_base_url="http://127.0.0.1:8080/media"),
            media_dir=self.media_dir.name,
        )
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()
        self.media_dir.cleanup()

    async def _start(self, user_id: str, email: str | None = None) -> dict:
        resp = await self.client.post("/v1/session/start", json={"auth_token": user_id, "email": email})
        self.assertEqual(resp.status, 200)
        return await resp.json()

    def _auth(self, session: dict) -> dict:
        return {"Authorization": f"Bearer {session['session_token']}"}

    async def test_healthz(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_session_start_provisions_profile_once(self):
        first = await self._start("alice", "alice@x.com")
        second = await self._start("alice", "alice@x.com")

        self.assertEqual(first["profile"]["short_id"], shortid.derive("alice@x.com"))
        self.assertEqual(first["profile"], second["profile"])
        self.assertNotEqual(first["session_token"], second["session_token"])

        resp = await self.client.get("/v1/profile", headers=self._auth(first))
        self.assertEqual((await resp.json())["profile"]["id"], "alice")

    async def test_session_start_validation(self):
        resp = await self.client.post("/v1/session/start", data=b"not json")
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/v1/session/start", json={"auth_token": 5})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/v1/session/start", json={"auth_token": "  "})
        self.assertEqual(resp.status, 401)

    async def test_requests_without_session_are_unauthorized(self):
        for method, path in (
            ("GET", "/v1/profile"),
            ("GET", "/v1/friends"),
            ("POST", "/v1/friends"),
            ("POST", "/v1/messages"),
            ("POST", "/v1/media"),
        ):
            with self.subTest(path=path):
                resp = await self.client.request(method, path, headers={"Authorization": "Bearer nope"})
                self.assertEqual(resp.status, 401)
                self.assertEqual((await resp.json())["code"], "unauthorized")

    async def test_search_and_friendship_flow(self):
        alice = await self._start("alice", "alice@x.com")
        bob = await self._start("bob", "bob@y.com")

        resp = await self.client.get(
            "/v1/profiles/search", params={"short_id": bob["profile"]["short_id"]}, headers=self._auth(alice)
        )
        self.assertEqual((await resp.json())["profile"]["id"], "bob")
        resp = await self.client.get(
            "/v1/profiles/search", params={"short_id": alice["profile"]["short_id"]}, headers=self._auth(alice)
        )
        self.assertIsNone((await resp.json())["profile"])
        resp = await self.client.get("/v1/profiles/search", headers=self._auth(alice))
        self.assertEqual(resp.status, 400)

        resp = await self.client.post("/v1/friends", json={"peer_id": "bob"}, headers=self._auth(alice))
        self.assertEqual(resp.status, 200)
        resp = await self.client.post("/v1/friends", json={"peer_id": "bob"}, headers=self._auth(alice))
        self.assertEqual(resp.status, 409)
        self.assertEqual((await resp.json())["code"], "already_friends")
        resp = await self.client.post("/v1/friends", json={"peer_id": "alice"}, headers=self._auth(alice))
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/v1/friends", json={"peer_id": "ghost"}, headers=self._auth(alice))
        self.assertEqual(resp.status, 404)
        resp = await self.client.post("/v1/friends", json={}, headers=self._auth(alice))
        self.assertEqual(resp.status, 400)

        resp = await self.client.get("/v1/friends", headers=self._auth(bob))
        self.assertEqual([p["id"] for p in (await resp.json())["friends"]], ["alice"])

    async def test_message_send_errors(self):
        alice = await self._start("alice", "alice@x.com")

        resp = await self.client.post("/v1/messages", json={"peer_id": "bob", "text": "  "}, headers=self._auth(alice))
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "empty_message")

        resp = await self.client.post("/v1/messages", json={"peer_id": "bob", "text": 3}, headers=self._auth(alice))
        self.assertEqual(resp.status, 400)

        first = await self.client.post(
            "/v1/messages", json={"peer_id": "bob", "text": "hi", "client_msg_id": "c1"}, headers=self._auth(alice)
        )
        again = await self.client.post(
            "/v1/messages", json={"peer_id": "bob", "text": "hi", "client_msg_id": "c1"}, headers=self._auth(alice)
        )
        self.assertEqual((await first.json())["message"]["id"], (await again.json())["message"]["id"])

    async def test_media_upload_and_fetch(self):
        alice = await self._start("alice", "alice@x.com")

        resp = await self.client.post(
            "/v1/media", params={"peer_id": "bob", "name": "cat.png"}, data=b"\x89PNG", headers=self._auth(alice)
        )
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertTrue(body["path"].startswith("chat_images/"))

        media_path = body["url"][len("http://127.0.0.1:8080") :]
        fetched = await self.client.get(media_path)
        self.assertEqual(fetched.status, 200)
        self.assertEqual(await fetched.read(), b"\x89PNG")

        resp = await self.client.post("/v1/media", params={"peer_id": "bob"}, data=b"", headers=self._auth(alice))
        self.assertEqual(resp.status, 502)
        self.assertEqual((await resp.json())["code"], "upload_failed")

        missing = await self.client.get("/media/chat_images/nothing.png")
        self.assertEqual(missing.status, 404)


class BackendOutageTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = OutageStore()
        runtime = Runtime(store=self.store, storage=InMemoryObjectStorage(), config=SyncConfig(read_retry_attempts=1))
        self.server = TestServer(create_app(runtime=runtime))
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_transient_reads_are_service_unavailable(self):
        resp = await self.client.post("/v1/session/start", json={"auth_token": "alice", "email": "alice@x.com"})
        self.assertEqual(resp.status, 200)
        headers = {"Authorization": f"Bearer {(await resp.json())['session_token']}"}
        self.store.down = True

        for method, path, kwargs in (
            ("GET", "/v1/profile", {}),
            ("GET", "/v1/profiles/search", {"params": {"short_id": "bbbbbbb"}}),
            ("GET", "/v1/friends", {}),
            ("POST", "/v1/friends", {"json": {"peer_id": "bob"}}),
        ):
            with self.subTest(path=path, method=method):
                resp = await self.client.request(method, path, headers=headers, **kwargs)
                self.assertEqual(resp.status, 503)
                self.assertEqual((await resp.json())["code"], "unavailable")


class WebSocketTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app()
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _start(self, user_id: str, email: str) -> dict:
        resp = await self.client.post("/v1/session/start", json={"auth_token": user_id, "email": email})
        return await resp.json()

    async def _resume(self, session: dict):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json(
            {"v": 1, "t": "session.resume", "id": "r1", "body": {"session_token": session["session_token"]}}
        )
        ready = await ws.receive_json(timeout=2)
        return ws, ready

    async def test_resume_with_bad_token_is_refused(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "session.resume", "id": "r1", "body": {"session_token": "bogus"}})
        frame = await ws.receive_json(timeout=2)
        self.assertEqual(frame["t"], "error")
        self.assertEqual(frame["body"]["code"], "unauthorized")
        await ws.close()

    async def test_room_snapshot_then_live_messages(self):
        alice = await self._start("alice", "alice@x.com")
        bob = await self._start("bob", "bob@y.com")
        await self.client.post(
            "/v1/messages",
            json={"peer_id": "bob", "text": "earlier"},
            headers={"Authorization": f"Bearer {alice['session_token']}"},
        )

        ws, ready = await self._resume(alice)
        self.assertEqual(ready["t"], "session.ready")
        self.assertEqual(ready["body"]["user_id"], "alice")

        await ws.send_json({"v": 1, "t": "room.open", "id": "o1", "body": {"peer_id": "bob"}})
        snapshot = await ws.receive_json(timeout=2)
        self.assertEqual(snapshot["t"], "room.snapshot")
        self.assertEqual(snapshot["body"]["room_id"], "alice:bob")
        self.assertEqual([m["text"] for m in snapshot["body"]["messages"]], ["earlier"])

        await self.client.post(
            "/v1/messages",
            json={"peer_id": "alice", "text": "live"},
            headers={"Authorization": f"Bearer {bob['session_token']}"},
        )
        live = await ws.receive_json(timeout=2)
        self.assertEqual(live["t"], "room.message")
        self.assertEqual(live["body"]["text"], "live")
        self.assertEqual(live["body"]["author"]["id"], "bob")

        await ws.send_json({"v": 1, "t": "ping", "id": "p1"})
        pong = await ws.receive_json(timeout=2)
        self.assertEqual(pong, {"v": 1, "t": "pong", "id": "p1"})

        await ws.send_json({"v": 1, "t": "room.close", "id": "c1", "body": {"peer_id": "bob"}})
        closed = await ws.receive_json(timeout=2)
        self.assertEqual(closed["t"], "room.closed")
        self.assertEqual(self.app[RUNTIME_KEY].sync.open_views, [])

        await ws.send_json({"v": 1, "t": "nope", "id": "x"})
        error = await ws.receive_json(timeout=2)
        self.assertEqual(error["body"]["code"], "invalid_request")
        await ws.close()

    async def test_disconnect_closes_views(self):
        alice = await self._start("alice", "alice@x.com")
        ws, _ = await self._resume(alice)
        await ws.send_json({"v": 1, "t": "room.open", "id": "o1", "body": {"peer_id": "bob"}})
        await ws.receive_json(timeout=2)
        self.assertEqual(len(self.app[RUNTIME_KEY].sync.open_views), 1)

        await ws.close()
        for _ in range(50):
            if not self.app[RUNTIME_KEY].sync.open_views:
                break
            await asyncio.sleep(0.01)

        self.assertEqual(self.app[RUNTIME_KEY].sync.open_views, [])


if __name__ == "__main__":
    unittest.main()
