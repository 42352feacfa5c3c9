"""dmsync command line: serve the HTTP app or replay JSON frames offline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, Iterable, TextIO

from aiohttp import web

from . import rooms, shortid
from .auth import SessionContext
from .config import configure_logging, load_config
from .errors import AddFriendError, BackendError, ProvisioningFailed, SendError
from .http_api import create_app
from .models import ChatMessage
from .runtime import Runtime, build_runtime
from .sync import ConversationView


logger = logging.getLogger(__name__)


class InvalidFrame(ValueError):
    """A simulation frame that names no session or lacks a required field."""


class _Simulation:
    """Applies frames to an in-memory runtime and writes one JSON line per result."""

    def __init__(self, runtime: Runtime, output: TextIO) -> None:
        self._runtime = runtime
        self._output = output
        self._contexts: Dict[str, SessionContext] = {}
        self._views: Dict[tuple[str, str], ConversationView] = {}

    def _emit(self, message: dict) -> None:
        self._output.write(json.dumps(message, sort_keys=True) + "\n")

    def _context(self, user_id: str) -> SessionContext:
        ctx = self._contexts.get(user_id)
        if ctx is None:
            raise InvalidFrame(f"user {user_id!r} has not started a session")
        return ctx

    @staticmethod
    def _peer(frame: dict) -> str:
        peer_id = frame.get("peer_id")
        if not isinstance(peer_id, str) or not peer_id:
            raise InvalidFrame(f"{frame.get('t')} frame requires peer_id")
        return peer_id

    async def _settle(self) -> None:
        for view in list(self._views.values()):
            await view.settle()

    async def apply(self, frame: dict) -> None:
        """Apply one frame; malformed frames become error lines, unknown types raise."""

        if not isinstance(frame, dict):
            self._emit({"t": "error", "user_id": None, "code": "invalid_frame", "message": "frame must be an object"})
            return
        try:
            await self._dispatch(frame)
        except InvalidFrame as exc:
            self._emit({"t": "error", "user_id": frame.get("user_id"), "code": "invalid_frame", "message": str(exc)})

    async def _dispatch(self, frame: dict) -> None:
        frame_type = frame.get("t")
        user_id = frame.get("user_id")
        if frame_type == "session.start":
            if not isinstance(user_id, str) or not user_id:
                raise InvalidFrame("session.start frame requires user_id")
            ctx = SessionContext(user_id=user_id, seed=frame.get("email"))
            self._contexts[user_id] = ctx
            try:
                profile = await self._runtime.provisioner.ensure_profile(ctx)
            except ProvisioningFailed as exc:
                self._emit({"t": "error", "user_id": user_id, "code": "provisioning_failed", "message": str(exc)})
                return
            self._emit({"t": "profile", "user_id": user_id, "profile": profile.to_api_dict()})
        elif frame_type == "profile.search":
            found = await self._runtime.friends.search(self._context(user_id), frame.get("short_id", ""))
            self._emit(
                {"t": "search", "user_id": user_id, "profile": found.to_api_dict() if found is not None else None}
            )
        elif frame_type == "friend.add":
            try:
                await self._runtime.friends.add_friend(self._context(user_id), self._peer(frame))
            except AddFriendError as exc:
                self._emit({"t": "error", "user_id": user_id, "code": type(exc).__name__, "message": str(exc)})
                return
            self._emit({"t": "friend.added", "user_id": user_id, "peer_id": self._peer(frame)})
        elif frame_type == "friends.list":
            friends = await self._runtime.friends.list_friends(self._context(user_id))
            self._emit({"t": "friends", "user_id": user_id, "friends": [p.to_api_dict() for p in friends]})
        elif frame_type == "room.open":
            await self._open(user_id, self._peer(frame))
        elif frame_type == "message.send":
            ctx = self._context(user_id)
            try:
                message = await self._runtime.sync.post(
                    ctx,
                    rooms.room_id(user_id, self._peer(frame)),
                    text=frame.get("text"),
                    attachment_url=frame.get("attachment_url"),
                    client_msg_id=frame.get("client_msg_id"),
                )
            except (SendError, BackendError) as exc:
                self._emit({"t": "error", "user_id": user_id, "code": type(exc).__name__, "message": str(exc)})
                return
            self._emit({"t": "sent", "user_id": user_id, "message": message.to_api_dict()})
            await self._settle()
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")

    async def _open(self, user_id: str, peer_id: str) -> None:
        ctx = self._context(user_id)
        previous = self._views.pop((user_id, peer_id), None)
        if previous is not None:
            await self._runtime.sync.close(previous)
        view = await self._runtime.sync.open_with(ctx, peer_id)
        await view.wait_live()
        self._views[(user_id, peer_id)] = view
        room = view.room_id

        def on_message(entry: ChatMessage) -> None:
            self._emit({"t": "room.message", "user_id": user_id, "room_id": room, "message": entry.to_api_dict()})

        view.add_listener(on_message)
        self._emit(
            {
                "t": "room.snapshot",
                "user_id": user_id,
                "room_id": room,
                "messages": [entry.to_api_dict() for entry in view.messages],
            }
        )


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through an in-memory runtime and emit results."""

    async def _run() -> None:
        runtime = build_runtime()
        simulation = _Simulation(runtime, output)
        try:
            for frame in frames:
                await simulation.apply(frame)
        finally:
            await runtime.shutdown()

    asyncio.run(_run())


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config()
    configure_logging(config.log_level)
    app = create_app(config=config, db_path=args.db, media_dir=args.media_dir)
    logger.info("serving on %s:%s", args.host, args.port)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = argparse.ArgumentParser(prog="dmsync", description="Direct-message sync engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--media-dir", type=str, default=None, help="Directory for uploaded attachments")

    simulate_parser = subparsers.add_parser("simulate", help="Replay JSON frames against an in-memory runtime")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    room_parser = subparsers.add_parser("room-id", help="Print the room id shared by two users")
    room_parser.add_argument("a")
    room_parser.add_argument("b")

    short_parser = subparsers.add_parser("short-id", help="Print the short id derived from a seed")
    short_parser.add_argument("seed")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output)
    if args.command == "serve":
        return _run_serve(args)
    if args.command == "room-id":
        output.write(rooms.room_id(args.a, args.b) + "\n")
        return 0
    output.write(shortid.derive(args.seed) + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
