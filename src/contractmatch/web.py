from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Set

from aiohttp import WSMsgType, web
from loguru import logger

from .auth import AuthUser, InMemoryAuthProvider, RoleHint
from .blobs import BlobStore, LocalBlobStore
from .composer import Composer, ComposerState
from .config import Settings
from .conversations import get_or_create_conversation
from .errors import AuthRequired, BlobError, DocumentNotFound, StoreError
from .feed import FeedService
from .messaging import ConversationRow, MessagingView
from .models import CONVERSATIONS, Conversation, Message, ParticipantKind, ProfileRef, messages_collection
from .profiles import ProfileService
from .resolver import UNKNOWN, ParticipantResolver
from .sessions import Session, SessionStore, SQLiteSessionStore
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteDocumentStore
from .store import BaseDocumentStore, Filter, InMemoryDocumentStore, Order

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class Runtime:
    def __init__(
        self,
        *,
        settings: Settings,
        store: BaseDocumentStore,
        sessions: SessionStore,
        blobs: BlobStore,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.blobs = blobs
        self.backend = backend
        self.profiles = ProfileService(store, blobs)
        self.feed = FeedService(store)
        # session token -> auth providers of the sockets opened with it
        self._live: Dict[str, Set[InMemoryAuthProvider]] = {}

    def attach(self, session: Session, auth: InMemoryAuthProvider) -> None:
        self._live.setdefault(session.session_token, set()).add(auth)

    def detach(self, session: Session, auth: InMemoryAuthProvider) -> None:
        providers = self._live.get(session.session_token)
        if providers is None:
            return
        providers.discard(auth)
        if not providers:
            del self._live[session.session_token]

    def end_session(self, session: Session) -> None:
        """Invalidate the session and sign out every socket still using it."""
        self.sessions.invalidate(session)
        providers = self._live.pop(session.session_token, set())
        if providers:
            logger.info(f"Session for {session.user_id} ended with {len(providers)} open socket(s)")
        for auth in providers:
            auth.sign_out()


RUNTIME_KEY = web.AppKey("runtime", Runtime)


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized(message: str = "invalid session_token") -> web.Response:
    return _error("unauthorized", message, 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _forbidden(message: str = "not a participant") -> web.Response:
    return _error("forbidden", message, 403)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except DocumentNotFound as exc:
        return _not_found(str(exc))
    except (StoreError, BlobError) as exc:
        logger.error(f"{request.method} {request.path} failed: {exc}")
        return _error("store_unavailable", "storage operation failed", 503)


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get(session_token)


async def _json_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _profile_ref(user_id: Any, role: Any) -> ProfileRef | None:
    if not isinstance(user_id, str) or not user_id:
        return None
    try:
        return ProfileRef(user_id, ParticipantKind.parse(role))
    except ValueError:
        return None


async def _load_conversation(runtime: Runtime, conv_id: str) -> Conversation | None:
    doc = await runtime.store.get(CONVERSATIONS, conv_id)
    if doc is None:
        return None
    try:
        return Conversation.from_doc(conv_id, doc.data)
    except ValueError:
        logger.warning(f"Conversation {conv_id} is malformed")
        return None


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    ref = _profile_ref(body.get("user_id"), body.get("role"))
    if ref is None:
        return _invalid_request("user_id and role required")
    if await runtime.profiles.get(ref) is None:
        return _unauthorized("unknown profile")
    session = runtime.sessions.create(ref)
    logger.info(f"Session started for {ref.uid} ({ref.kind.value})")
    return _with_no_store(
        web.json_response(
            {
                "session_token": session.session_token,
                "expires_at": session.expires_at_ms,
                "user_id": ref.uid,
                "role": ref.kind.value,
            }
        )
    )


async def handle_session_logout(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    runtime.end_session(session)
    return web.json_response({"status": "ok"})


async def handle_conversations_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    uid = session.user_id
    docs = await runtime.store.query(
        CONVERSATIONS,
        [Filter("participants", "array-contains", uid)],
        [Order("lastMessage.timestamp", descending=True)],
    ).get()
    conversations: List[Conversation] = []
    for doc in docs:
        try:
            conversations.append(Conversation.from_doc(doc.id, doc.data))
        except ValueError:
            logger.warning(f"Skipping malformed conversation {doc.id}")
    resolved = await ParticipantResolver(runtime.store).resolve(c.counterpart_ref(uid) for c in conversations)
    items = []
    for conversation in conversations:
        counterpart = resolved.get(conversation.counterpart(uid))
        if counterpart is None or counterpart is UNKNOWN:
            continue
        row = ConversationRow(conversation, counterpart, conversation.unread_for(uid))
        items.append(row.to_api_dict(uid))
    return _with_no_store(web.json_response({"items": items}))


async def handle_conversation_open(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    peer = _profile_ref(body.get("peer_id"), body.get("peer_role"))
    if peer is None:
        return _invalid_request("peer_id and peer_role required")
    if peer.uid == session.user_id:
        return _invalid_request("cannot open a conversation with yourself")
    if await runtime.profiles.get(peer) is None:
        return _not_found("unknown peer profile")
    conversation = await get_or_create_conversation(runtime.store, session.profile, peer)
    return web.json_response(conversation.to_api_dict(session.user_id))


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    conv_id = request.match_info["conv_id"]
    conversation = await _load_conversation(runtime, conv_id)
    if conversation is None:
        return _not_found("unknown conversation")
    if session.user_id not in conversation.participants:
        return _forbidden()
    docs = await runtime.store.query(messages_collection(conv_id), ordering=[Order("timestamp")]).get()
    messages = [Message.from_doc(conv_id, doc.id, doc.seq, doc.data).to_api_dict() for doc in docs]
    return _with_no_store(web.json_response({"conv_id": conv_id, "messages": messages}))


async def handle_message_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    conv_id = request.match_info["conv_id"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    content = body.get("content")
    if not isinstance(content, str) or not content.strip():
        return _invalid_request("content required")
    conversation = await _load_conversation(runtime, conv_id)
    if conversation is None:
        return _not_found("unknown conversation")
    if session.user_id not in conversation.participants:
        return _forbidden()
    composer = Composer(runtime.store)
    msg_id = await composer.send(conv_id, session.user_id, content, participants=conversation.participants)
    if composer.state is ComposerState.FAILED or msg_id is None:
        return _error("store_unavailable", "message not sent", 503)
    return web.json_response({"conv_id": conv_id, "msg_id": msg_id, "summary_stale": composer.summary_stale})


async def handle_mark_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    conv_id = request.match_info["conv_id"]
    conversation = await _load_conversation(runtime, conv_id)
    if conversation is None:
        return _not_found("unknown conversation")
    if session.user_id not in conversation.participants:
        return _forbidden()
    await runtime.store.update(CONVERSATIONS, conv_id, {f"unreadCount.{session.user_id}": 0})
    return web.json_response({"status": "ok"})


async def handle_profile_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    identity = await runtime.profiles.require(session.profile)
    return _with_no_store(web.json_response(identity.to_api_dict()))


async def handle_profile_update(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    try:
        identity = await runtime.profiles.update(session.profile, body)
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response(identity.to_api_dict())


async def handle_profile_photo(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    data = await request.read()
    if not data:
        return _invalid_request("photo body required")
    photo_url = await runtime.profiles.upload_photo(session.profile, data)
    return web.json_response({"photo_url": photo_url})


async def handle_profile_view(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    if _authenticate_request(request) is None:
        return _unauthorized()
    ref = _profile_ref(request.match_info["uid"], request.match_info["role"])
    if ref is None:
        return _invalid_request("unknown role")
    identity = await runtime.profiles.get(ref)
    if identity is None:
        return _not_found("unknown profile")
    return web.json_response(identity.to_api_dict())


async def handle_connection(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    other = _profile_ref(body.get("user_id"), body.get("role"))
    if other is None:
        return _invalid_request("user_id and role required")
    action = request.match_info["action"]
    try:
        if action == "request":
            identity = await runtime.profiles.request_connection(session.profile, other)
        elif action == "accept":
            identity = await runtime.profiles.accept_connection(session.profile, other)
        elif action == "decline":
            identity = await runtime.profiles.decline_connection(session.profile, other)
        else:
            return _not_found("unknown connection action")
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response(identity.to_api_dict())


async def handle_posts_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    if _authenticate_request(request) is None:
        return _unauthorized()
    limit_raw = request.query.get("limit")
    limit = None
    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError:
            return _invalid_request("limit must be an integer")
    posts = await runtime.feed.list_posts(limit)
    return _with_no_store(web.json_response({"items": [post.to_api_dict() for post in posts]}))


async def handle_post_create(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    content = body.get("content")
    images = body.get("images") or []
    if not isinstance(content, str) or not isinstance(images, list) or any(not isinstance(i, str) for i in images):
        return _invalid_request("content and images must be strings")
    try:
        post = await runtime.feed.create_post(session.user_id, content, str(body.get("type") or "general"), images)
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response(post.to_api_dict(), status=201)


async def handle_post_like(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    post = await runtime.feed.toggle_like(request.match_info["post_id"], session.user_id)
    return web.json_response(post.to_api_dict())


async def handle_post_comment(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    content = body.get("content")
    if not isinstance(content, str):
        return _invalid_request("content required")
    try:
        post = await runtime.feed.add_comment(request.match_info["post_id"], session.user_id, content)
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response(post.to_api_dict())


def create_app(
    settings: Settings | None = None,
    *,
    store: BaseDocumentStore | None = None,
    blobs: BlobStore | None = None,
) -> web.Application:
    settings = settings or Settings()
    backend: SQLiteBackend | None = None
    if store is None and settings.db_path is not None:
        backend = SQLiteBackend(settings.db_path)
        store = SQLiteDocumentStore(backend)
        sessions: SessionStore = SQLiteSessionStore(backend, settings.session_ttl_ms)
    else:
        store = store or InMemoryDocumentStore()
        sessions = SessionStore(settings.session_ttl_ms)

    if blobs is None:
        blobs = LocalBlobStore(settings.blob_dir, settings.public_base_url)

    runtime = Runtime(settings=settings, store=store, sessions=sessions, blobs=blobs, backend=backend)
    app = web.Application(middlewares=[error_middleware])
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_post("/v1/session/logout", handle_session_logout)
    app.router.add_get("/v1/conversations", handle_conversations_list)
    app.router.add_post("/v1/conversations", handle_conversation_open)
    app.router.add_get("/v1/conversations/{conv_id}/messages", handle_messages_list)
    app.router.add_post("/v1/conversations/{conv_id}/messages", handle_message_send)
    app.router.add_post("/v1/conversations/{conv_id}/read", handle_mark_read)
    app.router.add_get("/v1/profile", handle_profile_get)
    app.router.add_patch("/v1/profile", handle_profile_update)
    app.router.add_post("/v1/profile/photo", handle_profile_photo)
    app.router.add_get("/v1/profiles/{role}/{uid}", handle_profile_view)
    app.router.add_post("/v1/connections/{action}", handle_connection)
    app.router.add_get("/v1/posts", handle_posts_list)
    app.router.add_post("/v1/posts", handle_post_create)
    app.router.add_post("/v1/posts/{post_id}/like", handle_post_like)
    app.router.add_post("/v1/posts/{post_id}/comments", handle_post_comment)
    app.router.add_get("/v1/ws", websocket_handler)
    if isinstance(blobs, LocalBlobStore):
        Path(blobs.root).mkdir(parents=True, exist_ok=True)
        app.router.add_static("/blobs", blobs.root)

    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _frame(t: str, body: Dict[str, Any], *, request_id: Any = None) -> Dict[str, Any]:
    return {"v": 1, "t": t, "id": request_id, "body": body}


def _error_frame(code: str, message: str, *, request_id: Any = None) -> Dict[str, Any]:
    return _frame("error", {"code": code, "message": message}, request_id=request_id)


# queued after the final frame of an ended session; the writer closes on it
_SESSION_ENDED = object()


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws = web.WebSocketResponse(heartbeat=runtime.settings.ping_interval_s)
    await ws.prepare(request)

    outbound: asyncio.Queue[Any] = asyncio.Queue(maxsize=1000)
    view: MessagingView | None = None
    session: Session | None = None
    auth: InMemoryAuthProvider | None = None
    expiry: asyncio.TimerHandle | None = None
    closed = False

    async def close_socket(code: int, message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=code, message=message.encode("utf-8"))

    def enqueue(frame: Any) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.ensure_future(close_socket(1011, "backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                if frame is _SESSION_ENDED:
                    await close_socket(1008, "session ended")
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not isinstance(payload, dict) or payload.get("v") != 1 or payload.get("t") != "session.start":
            await ws.send_json(_error_frame("invalid_request", "first frame must start session"))
            await ws.close()
            return ws
        start_body = payload.get("body")
        if not isinstance(start_body, dict):
            await ws.send_json(
                _error_frame("invalid_request", "body must be an object", request_id=payload.get("id"))
            )
            await ws.close()
            return ws
        token = start_body.get("session_token")
        session = runtime.sessions.get(token) if isinstance(token, str) else None
        if session is None:
            await ws.send_json(_error_frame("unauthorized", "invalid session_token", request_id=payload.get("id")))
            await ws.close()
            return ws

        uid = session.user_id
        role_hint = RoleHint()
        role_hint.remember(uid, session.profile.kind)
        auth = InMemoryAuthProvider(AuthUser(uid))
        view = MessagingView(runtime.store, auth, role_hint)

        def forward(kind: str, data: Any) -> None:
            if kind == "rows":
                items = [row.to_api_dict(uid) for row in data]
                enqueue(_frame("conv.list", {"items": items, "stale": view.stale}))
            elif kind == "messages" and data:
                enqueue(
                    _frame(
                        "msg.append",
                        {"conv_id": data[0].conv_id, "messages": [m.to_api_dict() for m in data]},
                    )
                )
            elif kind == "redirect":
                enqueue(_frame("session.ended", {"redirect_to": data}))
                enqueue(_SESSION_ENDED)

        enqueue(_frame("session.ready", {"user_id": uid}, request_id=payload.get("id")))
        view.add_listener(forward)
        runtime.attach(session, auth)
        loop = asyncio.get_running_loop()
        expiry = loop.call_later(
            max(0.0, (session.expires_at_ms - time.time() * 1000) / 1000), runtime.end_session, session
        )
        view.start()

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                if runtime.sessions.get(session.session_token) is None:
                    runtime.end_session(session)
                    continue
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version"))
                    continue
                try:
                    await _dispatch(runtime, view, uid, frame, enqueue)
                except AuthRequired:
                    enqueue(_error_frame("unauthorized", "session ended", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        if expiry is not None:
            expiry.cancel()
        if session is not None and auth is not None:
            runtime.detach(session, auth)
        if view is not None:
            view.stop()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws


async def _dispatch(
    runtime: Runtime,
    view: MessagingView,
    uid: str,
    frame: Dict[str, Any],
    enqueue: Callable[[Dict[str, Any]], None],
) -> None:
    frame_type = frame.get("t")
    request_id = frame.get("id")
    body = frame.get("body")
    if body is None:
        body = {}
    if not isinstance(body, dict):
        enqueue(_error_frame("invalid_request", "body must be an object", request_id=request_id))
        return

    if frame_type == "ping":
        enqueue(_frame("pong", {}, request_id=request_id))
    elif frame_type == "conv.select":
        conv_id = body.get("conv_id")
        if not isinstance(conv_id, str) or not conv_id:
            enqueue(_error_frame("invalid_request", "conv_id required", request_id=request_id))
            return
        try:
            conversation = await _load_conversation(runtime, conv_id)
        except StoreError as exc:
            logger.warning(f"conv.select {conv_id} failed: {exc}")
            enqueue(_error_frame("store_unavailable", "storage operation failed", request_id=request_id))
            return
        if conversation is None:
            enqueue(_error_frame("not_found", "unknown conversation", request_id=request_id))
            return
        if uid not in conversation.participants:
            enqueue(_error_frame("forbidden", "not a participant", request_id=request_id))
            return
        view.select(conv_id)
        enqueue(_frame("conv.selected", {"conv_id": conv_id}, request_id=request_id))
    elif frame_type == "conv.deselect":
        view.deselect()
        enqueue(_frame("conv.deselected", {}, request_id=request_id))
    elif frame_type == "msg.send":
        content = body.get("content")
        if view.selected is None:
            enqueue(_error_frame("invalid_request", "no conversation selected", request_id=request_id))
            return
        if not isinstance(content, str) or not content.strip():
            enqueue(_error_frame("invalid_request", "content required", request_id=request_id))
            return
        msg_id = await view.send(content)
        if msg_id is None:
            enqueue(_error_frame("send_failed", view.notice or "message not sent", request_id=request_id))
            return
        enqueue(_frame("msg.sent", {"conv_id": view.selected, "msg_id": msg_id}, request_id=request_id))
    else:
        enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
