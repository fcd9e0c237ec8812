import asyncio
import tempfile
import time
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from contractmatch.config import Settings
from contractmatch.models import CONVERSATIONS, ParticipantKind
from contractmatch.web import RUNTIME_KEY, create_app

from tests.store_util import FakeClock, RecordingStore, add_profile
from tests.ws_receive_util import assert_no_app_messages, collect_frames, recv_json_until


class WebTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = RecordingStore(now_func=self.clock)
        await add_profile(self.store, "userA", ParticipantKind.REALTOR, "Alice", "Agent")
        await add_profile(self.store, "userB", ParticipantKind.CONTRACTOR, "Bob", "Builder")
        await add_profile(self.store, "userC", ParticipantKind.REALTOR, "Carol", "Keys")
        settings = Settings(
            blob_dir=self.tmpdir.name,
            public_base_url="http://blobs.test/blobs",
            ping_interval_s=3600,
        )
        self.app = create_app(settings, store=self.store)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()
        self.tmpdir.cleanup()

    async def _start_session(self, user_id: str, role: str) -> str:
        resp = await self.client.post("/v1/session/start", json={"user_id": user_id, "role": role})
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        return body["session_token"]

    def _auth(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    async def _open(self, token: str, peer_id: str, peer_role: str) -> dict:
        resp = await self.client.post(
            "/v1/conversations", json={"peer_id": peer_id, "peer_role": peer_role}, headers=self._auth(token)
        )
        self.assertEqual(resp.status, 200)
        return await resp.json()

    async def _send(self, token: str, conv_id: str, content: str):
        self.clock.advance()
        return await self.client.post(
            f"/v1/conversations/{conv_id}/messages", json={"content": content}, headers=self._auth(token)
        )


class HttpRoutesTests(WebTestCase):
    async def test_health(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_session_start_validation(self):
        resp = await self.client.post("/v1/session/start", json={"user_id": "ghost", "role": "realtor"})
        self.assertEqual(resp.status, 401)
        self.assertEqual((await resp.json())["code"], "unauthorized")

        resp = await self.client.post("/v1/session/start", json={"user_id": "userA", "role": "landlord"})
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")

        resp = await self.client.post("/v1/session/start", data=b"not json")
        self.assertEqual(resp.status, 400)

    async def test_requests_without_session_are_rejected(self):
        resp = await self.client.get("/v1/conversations")
        self.assertEqual(resp.status, 401)

        token = await self._start_session("userA", "realtor")
        resp = await self.client.post("/v1/session/logout", headers=self._auth(token))
        self.assertEqual(resp.status, 200)
        resp = await self.client.get("/v1/conversations", headers=self._auth(token))
        self.assertEqual(resp.status, 401)

    async def test_conversation_flow(self):
        alice = await self._start_session("userA", "realtor")
        bob = await self._start_session("userB", "contractor")

        opened = await self._open(alice, "userB", "contractor")
        self.assertEqual(opened["conv_id"], "userA__userB")
        self.assertEqual((await self._open(bob, "userA", "realtor"))["conv_id"], "userA__userB")

        resp = await self._send(alice, "userA__userB", "Can you quote the roof?")
        self.assertEqual(resp.status, 200)
        sent = await resp.json()
        self.assertTrue(sent["msg_id"])
        self.assertFalse(sent["summary_stale"])

        resp = await self.client.get("/v1/conversations/userA__userB/messages", headers=self._auth(bob))
        self.assertEqual(resp.status, 200)
        self.assertEqual(resp.headers["Cache-Control"], "no-store")
        messages = (await resp.json())["messages"]
        self.assertEqual([(m["sender_id"], m["content"]) for m in messages], [("userA", "Can you quote the roof?")])

        resp = await self.client.get("/v1/conversations", headers=self._auth(bob))
        items = (await resp.json())["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["unread"], 1)
        self.assertEqual(items[0]["counterpart"]["name"], "Alice Agent")
        self.assertEqual(items[0]["last_message"]["content"], "Can you quote the roof?")

        resp = await self.client.post("/v1/conversations/userA__userB/read", headers=self._auth(bob))
        self.assertEqual(resp.status, 200)
        resp = await self.client.get("/v1/conversations", headers=self._auth(bob))
        self.assertEqual((await resp.json())["items"][0]["unread"], 0)

    async def test_conversation_list_orders_by_activity(self):
        alice = await self._start_session("userA", "realtor")
        await self._open(alice, "userB", "contractor")
        self.clock.advance()
        await self._open(alice, "userC", "realtor")
        await self._send(alice, "userA__userB", "bump")

        resp = await self.client.get("/v1/conversations", headers=self._auth(alice))
        items = (await resp.json())["items"]

        self.assertEqual([i["counterpart"]["id"] for i in items], ["userB", "userC"])

    async def test_send_validation_and_membership(self):
        alice = await self._start_session("userA", "realtor")
        carol = await self._start_session("userC", "realtor")
        await self._open(alice, "userB", "contractor")

        resp = await self._send(alice, "userA__userB", "   ")
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")

        resp = await self._send(carol, "userA__userB", "let me in")
        self.assertEqual(resp.status, 403)
        resp = await self.client.get("/v1/conversations/userA__userB/messages", headers=self._auth(carol))
        self.assertEqual(resp.status, 403)

        resp = await self._send(alice, "missing__thread", "hello?")
        self.assertEqual(resp.status, 404)

        resp = await self.client.post(
            "/v1/conversations", json={"peer_id": "userA", "peer_role": "realtor"}, headers=self._auth(alice)
        )
        self.assertEqual(resp.status, 400)
        resp = await self.client.post(
            "/v1/conversations", json={"peer_id": "ghost", "peer_role": "realtor"}, headers=self._auth(alice)
        )
        self.assertEqual(resp.status, 404)

    async def test_store_outage_maps_to_503(self):
        alice = await self._start_session("userA", "realtor")
        await self._open(alice, "userB", "contractor")
        self.store.fail_get.add(CONVERSATIONS)

        resp = await self.client.get("/v1/conversations/userA__userB/messages", headers=self._auth(alice))

        self.assertEqual(resp.status, 503)
        self.assertEqual((await resp.json())["code"], "store_unavailable")

    async def test_profile_routes(self):
        bob = await self._start_session("userB", "contractor")

        resp = await self.client.patch(
            "/v1/profile", json={"company": "Bob & Sons", "specialties": ["Roofing"]}, headers=self._auth(bob)
        )
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["company"], "Bob & Sons")

        resp = await self.client.patch("/v1/profile", json={"role": "realtor"}, headers=self._auth(bob))
        self.assertEqual(resp.status, 400)
        resp = await self.client.patch("/v1/profile", json={"ref": "userA", "company": "x"}, headers=self._auth(bob))
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")

        resp = await self.client.post("/v1/profile/photo", data=b"jpeg-bytes", headers=self._auth(bob))
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["photo_url"], "http://blobs.test/blobs/profilePhotos/userB")
        resp = await self.client.get("/blobs/profilePhotos/userB")
        self.assertEqual(await resp.read(), b"jpeg-bytes")

        resp = await self.client.get("/v1/profile", headers=self._auth(bob))
        profile = await resp.json()
        self.assertEqual(profile["displayName"], "Bob Builder")
        self.assertEqual(profile["specialties"], ["Roofing"])

        resp = await self.client.get("/v1/profiles/realtor/userA", headers=self._auth(bob))
        self.assertEqual((await resp.json())["firstName"], "Alice")
        resp = await self.client.get("/v1/profiles/contractor/userA", headers=self._auth(bob))
        self.assertEqual(resp.status, 404)

    async def test_connection_routes(self):
        alice = await self._start_session("userA", "realtor")
        bob = await self._start_session("userB", "contractor")

        resp = await self.client.post(
            "/v1/connections/request", json={"user_id": "userB", "role": "contractor"}, headers=self._auth(alice)
        )
        self.assertEqual((await resp.json())["pendingSent"], ["userB"])

        resp = await self.client.post(
            "/v1/connections/accept", json={"user_id": "userA", "role": "realtor"}, headers=self._auth(bob)
        )
        self.assertEqual((await resp.json())["connections"], ["userA"])

        resp = await self.client.post(
            "/v1/connections/accept", json={"user_id": "userC", "role": "realtor"}, headers=self._auth(bob)
        )
        self.assertEqual(resp.status, 400)
        resp = await self.client.post(
            "/v1/connections/poke", json={"user_id": "userA", "role": "realtor"}, headers=self._auth(bob)
        )
        self.assertEqual(resp.status, 404)

    async def test_feed_routes(self):
        alice = await self._start_session("userA", "realtor")
        bob = await self._start_session("userB", "contractor")

        resp = await self.client.post(
            "/v1/posts", json={"content": "Kitchen remodel done", "type": "project-showcase"}, headers=self._auth(bob)
        )
        self.assertEqual(resp.status, 201)
        post_id = (await resp.json())["post_id"]

        resp = await self.client.post("/v1/posts", json={"content": ""}, headers=self._auth(bob))
        self.assertEqual(resp.status, 400)

        resp = await self.client.post(f"/v1/posts/{post_id}/like", headers=self._auth(alice))
        self.assertEqual((await resp.json())["likes"], ["userA"])

        resp = await self.client.post(
            f"/v1/posts/{post_id}/comments", json={"content": "Looks great"}, headers=self._auth(alice)
        )
        self.assertEqual([c["content"] for c in (await resp.json())["comments"]], ["Looks great"])

        resp = await self.client.get("/v1/posts?limit=5", headers=self._auth(alice))
        items = (await resp.json())["items"]
        self.assertEqual([i["post_id"] for i in items], [post_id])

        resp = await self.client.post("/v1/posts/nope/like", headers=self._auth(alice))
        self.assertEqual(resp.status, 404)


class WebSocketTests(WebTestCase):
    async def _connect(self, token: str):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "session.start", "id": "start1", "body": {"session_token": token}})
        ready = await ws.receive_json()
        return ws, ready

    def _deadline(self, seconds: float = 2.0) -> float:
        return asyncio.get_running_loop().time() + seconds

    async def test_invalid_session_token(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "session.start", "id": "s", "body": {"session_token": "bogus"}})

        frame = await ws.receive_json()
        await ws.close()

        self.assertEqual(frame["t"], "error")
        self.assertEqual(frame["body"]["code"], "unauthorized")

    async def test_ready_then_conversation_list(self):
        alice = await self._start_session("userA", "realtor")
        await self._open(alice, "userB", "contractor")

        ws, ready = await self._connect(alice)
        frame = await recv_json_until(
            ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "conv.list" and p["body"]["items"]
        )
        await ws.close()

        self.assertEqual(ready["t"], "session.ready")
        self.assertEqual(ready["id"], "start1")
        self.assertEqual(ready["body"]["user_id"], "userA")
        self.assertEqual(frame["body"]["items"][0]["counterpart"]["id"], "userB")
        self.assertFalse(frame["body"]["stale"])

    async def test_select_send_and_receive(self):
        alice = await self._start_session("userA", "realtor")
        bob = await self._start_session("userB", "contractor")
        conv_id = (await self._open(alice, "userB", "contractor"))["conv_id"]

        ws, _ = await self._connect(alice)
        await ws.send_json({"v": 1, "t": "conv.select", "id": "sel", "body": {"conv_id": conv_id}})
        await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "conv.selected")

        await ws.send_json({"v": 1, "t": "msg.send", "id": "m1", "body": {"content": "hi Bob"}})
        frames = await collect_frames(ws, deadline=self._deadline(), types=("msg.sent", "msg.append"))
        self.assertEqual(frames["msg.sent"]["id"], "m1")
        appended = frames["msg.append"]["body"]
        self.assertEqual(appended["conv_id"], conv_id)
        self.assertEqual([m["content"] for m in appended["messages"]], ["hi Bob"])

        resp = await self._send(bob, conv_id, "hi Alice")
        self.assertEqual(resp.status, 200)
        frame = await recv_json_until(
            ws,
            deadline=self._deadline(),
            predicate=lambda p: p.get("t") == "msg.append" and p["body"]["messages"][0]["sender_id"] == "userB",
        )
        await ws.close()

        self.assertEqual(frame["body"]["messages"][0]["content"], "hi Alice")

    async def test_select_rejects_foreign_conversation(self):
        alice = await self._start_session("userA", "realtor")
        carol = await self._start_session("userC", "realtor")
        conv_id = (await self._open(alice, "userB", "contractor"))["conv_id"]

        ws, _ = await self._connect(carol)
        await ws.send_json({"v": 1, "t": "conv.select", "id": "sel", "body": {"conv_id": conv_id}})
        frame = await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "error")

        self.assertEqual(frame["id"], "sel")
        self.assertEqual(frame["body"]["code"], "forbidden")

        await ws.send_json({"v": 1, "t": "msg.send", "id": "m1", "body": {"content": "sneaky"}})
        frame = await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "error")
        self.assertEqual(frame["body"]["code"], "invalid_request")
        await ws.close()

    async def test_deselect_stops_message_frames(self):
        alice = await self._start_session("userA", "realtor")
        bob = await self._start_session("userB", "contractor")
        conv_id = (await self._open(alice, "userB", "contractor"))["conv_id"]

        ws, _ = await self._connect(alice)
        await ws.send_json({"v": 1, "t": "conv.select", "id": "sel", "body": {"conv_id": conv_id}})
        await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "conv.selected")
        await ws.send_json({"v": 1, "t": "conv.deselect", "id": "des", "body": {}})
        await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "conv.deselected")

        # only the conversation list moves once nothing is selected
        await self._send(bob, conv_id, "anyone?")
        await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "conv.list")
        await ws.send_json({"v": 1, "t": "ping", "id": "p1", "body": {}})
        pong = await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") != "conv.list")
        self.assertEqual(pong["t"], "pong")
        await assert_no_app_messages(ws, timeout=0.1)
        await ws.close()

    async def test_sessions_closed_with_socket(self):
        alice = await self._start_session("userA", "realtor")
        await self._open(alice, "userB", "contractor")
        ws, _ = await self._connect(alice)
        await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "conv.list")

        await ws.close()
        runtime = self.app[RUNTIME_KEY]
        for _ in range(50):
            if runtime.store.hub.count() == 0:
                break
            await asyncio.sleep(0.01)

        self.assertEqual(runtime.store.hub.count(), 0)

    async def test_logout_ends_open_socket(self):
        alice = await self._start_session("userA", "realtor")
        bob = await self._start_session("userB", "contractor")
        conv_id = (await self._open(alice, "userB", "contractor"))["conv_id"]
        ws, _ = await self._connect(alice)
        await recv_json_until(
            ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "conv.list" and p["body"]["items"]
        )

        resp = await self.client.post("/v1/session/logout", headers=self._auth(alice))
        self.assertEqual(resp.status, 200)
        resp = await self._send(bob, conv_id, "still there?")
        self.assertEqual(resp.status, 200)

        ended = await ws.receive_json(timeout=2.0)
        self.assertEqual(ended["t"], "session.ended")
        self.assertEqual(ended["body"]["redirect_to"], "/login")
        closing = await ws.receive(timeout=2.0)
        self.assertEqual(closing.type, WSMsgType.CLOSE)
        self.assertEqual(ws.close_code, 1008)
        self.assertEqual(self.app[RUNTIME_KEY].store.hub.count(), 0)

    async def test_expired_session_ends_open_socket(self):
        alice = await self._start_session("userA", "realtor")
        runtime = self.app[RUNTIME_KEY]
        runtime.sessions.get(alice).expires_at_ms = int(time.time() * 1000) + 200

        ws, ready = await self._connect(alice)
        self.assertEqual(ready["t"], "session.ready")
        ended = await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "session.ended")
        await ws.close()

        self.assertEqual(ended["body"]["redirect_to"], "/login")
        resp = await self.client.get("/v1/conversations", headers=self._auth(alice))
        self.assertEqual(resp.status, 401)

    async def test_non_object_body_is_rejected(self):
        alice = await self._start_session("userA", "realtor")
        ws, _ = await self._connect(alice)

        await ws.send_json({"v": 1, "t": "conv.select", "id": "bad", "body": "oops"})
        frame = await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "error")
        self.assertEqual(frame["id"], "bad")
        self.assertEqual(frame["body"]["code"], "invalid_request")

        await ws.send_json({"v": 1, "t": "ping", "id": "p1", "body": None})
        pong = await recv_json_until(ws, deadline=self._deadline(), predicate=lambda p: p.get("t") == "pong")
        self.assertEqual(pong["id"], "p1")
        await ws.close()

        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "session.start", "id": "s", "body": [alice]})
        frame = await ws.receive_json(timeout=2.0)
        await ws.close()

        self.assertEqual(frame["t"], "error")
        self.assertEqual(frame["body"]["code"], "invalid_request")


if __name__ == "__main__":
    unittest.main()
