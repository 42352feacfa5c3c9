from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from .shortid import UNASSIGNED_SHORT_ID


SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies dmsync migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure(in_memory=db_path == ":memory:")
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self, *, in_memory: bool) -> None:
        cursor = self._conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                short_id TEXT NOT NULL,
                display_name TEXT,
                avatar_url TEXT,
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        # The unassigned sentinel may be shared by any number of anonymous profiles.
        self._conn.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS profiles_short_id_key
            ON profiles (short_id) WHERE short_id <> '{UNASSIGNED_SHORT_ID}'
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                created_at_ms INTEGER NOT NULL,
                author_id TEXT NOT NULL,
                room_id TEXT NOT NULL,
                text TEXT,
                attachment_url TEXT,
                client_msg_id TEXT,
                CHECK (text IS NOT NULL OR attachment_url IS NOT NULL)
            )
            """
        )
        self._conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS messages_client_msg_id_key
            ON messages (room_id, client_msg_id) WHERE client_msg_id IS NOT NULL
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_room_order ON messages (room_id, created_at_ms, id)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS friendships (
                owner_id TEXT NOT NULL REFERENCES profiles (id),
                peer_id TEXT NOT NULL REFERENCES profiles (id),
                status TEXT NOT NULL CHECK (status IN ('pending', 'accepted', 'blocked')),
                created_at_ms INTEGER NOT NULL,
                PRIMARY KEY (owner_id, peer_id)
            )
            """
        )
