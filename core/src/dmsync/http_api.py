from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from aiohttp import WSMsgType, web

from . import rooms
from .auth import AuthSession, TokenSession, user_id_from_auth_token
from .blobs import FileObjectStorage
from .config import SyncConfig
from .errors import (
    AlreadyFriends,
    Conflict,
    CannotBefriendSelf,
    EmptyMessage,
    PartialFailure,
    ProvisioningFailed,
    Rejected,
    Transient,
    UnknownPeer,
    UploadError,
    ViewClosed,
)
from .models import ChatMessage
from .runtime import Runtime, build_runtime
from .sync import ConversationView


logger = logging.getLogger(__name__)

RUNTIME_KEY = web.AppKey("runtime", Runtime)


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _unavailable(message: str) -> web.Response:
    return _error("unavailable", message, 503)


def _authenticate_request(request: web.Request) -> TokenSession | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get(session_token)


async def _json_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    auth_token = body.get("auth_token")
    email = body.get("email")
    if not isinstance(auth_token, str) or (email is not None and not isinstance(email, str)):
        return _invalid_request("auth_token required")
    user_id = user_id_from_auth_token(auth_token)
    if user_id is None:
        return _unauthorized()

    auth = AuthSession(user_id=user_id, email=email or None)
    try:
        profile = await runtime.provisioner.ensure_profile(auth.context())
    except ProvisioningFailed as exc:
        return _error("provisioning_failed", str(exc), 503)
    except Transient as exc:
        return _unavailable(str(exc))
    session = runtime.sessions.create(auth)
    return web.json_response(
        {
            "session_token": session.session_token,
            "expires_at": session.expires_at_ms,
            "profile": profile.to_api_dict(),
        }
    )


async def handle_profile(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        profile = await runtime.provisioner.get_profile(session.auth.user_id)
    except Transient as exc:
        return _unavailable(str(exc))
    if profile is None:
        return _error("not_found", "profile not found", 404)
    return web.json_response({"profile": profile.to_api_dict()})


async def handle_search(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    short_id = request.query.get("short_id", "")
    if not short_id.strip():
        return _invalid_request("short_id required")
    try:
        profile = await runtime.friends.search(session.auth.context(), short_id)
    except Transient as exc:
        return _unavailable(str(exc))
    return web.json_response({"profile": profile.to_api_dict() if profile is not None else None})


async def handle_friends_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        friends = await runtime.friends.list_friends(session.auth.context())
    except Transient as exc:
        return _unavailable(str(exc))
    return web.json_response({"friends": [profile.to_api_dict() for profile in friends]})


async def handle_friend_add(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    peer_id = body.get("peer_id")
    if not isinstance(peer_id, str) or not peer_id:
        return _invalid_request("peer_id required")
    try:
        await runtime.friends.add_friend(session.auth.context(), peer_id)
    except AlreadyFriends as exc:
        return _error("already_friends", str(exc), 409)
    except UnknownPeer as exc:
        return _error("unknown_peer", str(exc), 404)
    except CannotBefriendSelf as exc:
        return _invalid_request(str(exc))
    except PartialFailure as exc:
        return _error("partial_failure", str(exc), 502)
    except Transient as exc:
        return _unavailable(str(exc))
    return web.json_response({"status": "ok"})


async def handle_message_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    peer_id = body.get("peer_id")
    text = body.get("text")
    attachment_url = body.get("attachment_url")
    client_msg_id = body.get("client_msg_id")
    if not isinstance(peer_id, str) or not peer_id:
        return _invalid_request("peer_id required")
    if any(value is not None and not isinstance(value, str) for value in (text, attachment_url, client_msg_id)):
        return _invalid_request("text, attachment_url and client_msg_id must be strings")
    ctx = session.auth.context()
    try:
        message = await runtime.sync.post(
            ctx,
            rooms.room_id(ctx.user_id, peer_id),
            text=text,
            attachment_url=attachment_url,
            client_msg_id=client_msg_id,
        )
    except EmptyMessage as exc:
        return _error("empty_message", str(exc), 400)
    except Conflict as exc:
        return _error("conflict", str(exc), 409)
    except Rejected as exc:
        return _error("rejected", str(exc), 403)
    except Transient as exc:
        return _unavailable(str(exc))
    return web.json_response({"message": message.to_api_dict()})


async def handle_media_upload(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    peer_id = request.query.get("peer_id", "")
    name = request.query.get("name", "")
    if not peer_id:
        return _invalid_request("peer_id required")
    payload = await request.read()
    room = rooms.room_id(session.auth.user_id, peer_id)
    try:
        ref = await runtime.media.upload(room, session.auth.user_id, payload, name)
    except UploadError as exc:
        return _error("upload_failed", str(exc), 502)
    return web.json_response({"path": ref.path, "url": ref.url})


async def handle_media_get(request: web.Request) -> web.StreamResponse:
    runtime = request.app[RUNTIME_KEY]
    storage = runtime.storage
    if not isinstance(storage, FileObjectStorage):
        raise web.HTTPNotFound()
    target = storage.resolve(request.match_info["path"])
    if target is None:
        raise web.HTTPNotFound()
    return web.FileResponse(target)


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _message_frame(entry: ChatMessage) -> dict[str, Any]:
    return {"v": 1, "t": "room.message", "body": entry.to_api_dict()}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    outbound: asyncio.Queue[dict | None] = asyncio.Queue()
    views: Dict[str, ConversationView] = {}

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("websocket writer stopped: peer went away")

    async def open_room(ctx, peer_id: str, request_id: str | None) -> None:
        room = rooms.room_id(ctx.user_id, peer_id)
        if room in views:
            await runtime.sync.close(views.pop(room))
        view = await runtime.sync.open(ctx, room)
        views[room] = view
        try:
            await view.wait_live()
        except (Transient, Rejected, ViewClosed) as exc:
            views.pop(room, None)
            await runtime.sync.close(view)
            outbound.put_nowait(_error_frame("open_failed", str(exc), request_id=request_id))
            return
        snapshot = [entry.to_api_dict() for entry in view.messages]
        view.add_listener(lambda entry: outbound.put_nowait(_message_frame(entry)))
        outbound.put_nowait(
            {"v": 1, "t": "room.snapshot", "id": request_id, "body": {"room_id": room, "messages": snapshot}}
        )

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
        if not isinstance(payload, dict):
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        request_id = payload.get("id")
        if payload.get("v") != 1 or payload.get("t") != "session.resume":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must resume a session", request_id=request_id)
            )
            await ws.close()
            return ws
        body = payload.get("body") if isinstance(payload.get("body"), dict) else {}
        session = runtime.sessions.get(str(body.get("session_token") or ""))
        if session is None:
            await ws.send_json(_error_frame("unauthorized", "invalid session_token", request_id=request_id))
            await ws.close()
            return ws
        ctx = session.auth.context()
        logger.info("websocket session resumed for %s", ctx.user_id)
        outbound.put_nowait({"v": 1, "t": "session.ready", "id": request_id, "body": {"user_id": ctx.user_id}})

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                    break
                await ws.close(code=1003, message=b"unsupported frame type")
                break
            try:
                frame = msg.json()
            except ValueError:
                outbound.put_nowait(_error_frame("invalid_request", "malformed json"))
                continue
            if not isinstance(frame, dict):
                outbound.put_nowait(_error_frame("invalid_request", "frame must be an object"))
                continue
            request_id = frame.get("id")
            if frame.get("v") != 1:
                outbound.put_nowait(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                continue
            frame_type = frame.get("t")
            body = frame.get("body") if isinstance(frame.get("body"), dict) else {}
            peer_id = body.get("peer_id")

            if frame_type == "ping":
                outbound.put_nowait({"v": 1, "t": "pong", "id": request_id})
            elif frame_type == "room.open":
                if not isinstance(peer_id, str) or not peer_id:
                    outbound.put_nowait(_error_frame("invalid_request", "peer_id required", request_id=request_id))
                    continue
                await open_room(ctx, peer_id, request_id)
            elif frame_type == "room.close":
                if not isinstance(peer_id, str) or not peer_id:
                    outbound.put_nowait(_error_frame("invalid_request", "peer_id required", request_id=request_id))
                    continue
                view = views.pop(rooms.room_id(ctx.user_id, peer_id), None)
                if view is not None:
                    await runtime.sync.close(view)
                outbound.put_nowait({"v": 1, "t": "room.closed", "id": request_id, "body": {"peer_id": peer_id}})
            else:
                outbound.put_nowait(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
    finally:
        for view in list(views.values()):
            await runtime.sync.close(view)
        if views:
            logger.info("websocket closed; released %d views", len(views))
        views.clear()
        outbound.put_nowait(None)
        try:
            await asyncio.wait_for(writer_task, timeout=1.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            writer_task.cancel()
            await asyncio.gather(writer_task, return_exceptions=True)

    return ws


def create_app(
    *,
    config: SyncConfig | None = None,
    db_path: str | None = None,
    media_dir: str | None = None,
    runtime: Runtime | None = None,
) -> web.Application:
    runtime = runtime or build_runtime(config, db_path=db_path, media_dir=media_dir)
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_get("/v1/profile", handle_profile)
    app.router.add_get("/v1/profiles/search", handle_search)
    app.router.add_get("/v1/friends", handle_friends_list)
    app.router.add_post("/v1/friends", handle_friend_add)
    app.router.add_post("/v1/messages", handle_message_send)
    app.router.add_post("/v1/media", handle_media_upload)
    app.router.add_get("/media/{path:.+}", handle_media_get)
    app.router.add_get("/v1/ws", websocket_handler)

    async def shutdown_runtime(_: web.Application) -> None:
        await runtime.shutdown()

    app.on_cleanup.append(shutdown_runtime)
    return app
