"""
realtime/registry.py — In-memory connection table.

Three indexes over the live connections of this process:

    user_id         → {sid, ...}
    conversation_id → {sid, ...}     (a "room")
    sid             → Connection

Concurrency: mutations are serialised per affected key. Each user id and
each room id has its own lock; a short global guard only protects the lock
tables and the sid index. Readers get snapshots (lists), never live sets, so
fan-out can iterate while other threads keep mutating.

Lock entries live only while somebody holds or waits on them, so the lock
tables shrink back as users and rooms go away.

The table is owned by one Gateway and assumes a single process owns all
connections.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Hashable, Iterator


@dataclass
class Connection:
    sid: str
    user_id: int
    username: str
    rooms: set[int] = field(default_factory=set)


class KeyedLocks:
    """One lock per key, created on demand and dropped when the last holder leaves."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._holders[key] -= 1
                if not self._holders[key]:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ConnectionRegistry:

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._user_locks = KeyedLocks()
        self._room_locks = KeyedLocks()
        self._presence_locks = KeyedLocks()
        self._by_user: dict[int, set[str]] = {}
        self._by_room: dict[int, set[str]] = {}
        self._by_sid: dict[str, Connection] = {}

    def presence_lock(self, user_id: int):
        """
        Serialises a user's online/offline transitions. The gateway holds it
        across add()/remove() and the presence write that follows, so a
        connect and a disconnect for the same user cannot reorder their
        writes.
        """
        return self._presence_locks.hold(user_id)

    # ── Connections ────────────────────────────────────────────────────────

    def add(self, sid: str, user_id: int, username: str) -> tuple[Connection, bool]:
        """Registers a connection. Returns (connection, is_first_for_user)."""
        connection = Connection(sid=sid, user_id=user_id, username=username)
        with self._user_locks.hold(user_id):
            sids = self._by_user.setdefault(user_id, set())
            is_first = not sids
            sids.add(sid)
            with self._guard:
                self._by_sid[sid] = connection
        return connection, is_first

    def remove(self, sid: str) -> tuple[Connection | None, bool]:
        """
        Unregisters a connection and leaves all its rooms.
        Returns (connection, is_last_for_user); (None, False) for an unknown sid.
        """
        with self._guard:
            connection = self._by_sid.pop(sid, None)
        if connection is None:
            return None, False

        for room_id in list(connection.rooms):
            self._discard_from_room(room_id, sid)

        with self._user_locks.hold(connection.user_id):
            sids = self._by_user.get(connection.user_id, set())
            sids.discard(sid)
            is_last = not sids
            if is_last:
                self._by_user.pop(connection.user_id, None)
        return connection, is_last

    def get(self, sid: str) -> Connection | None:
        with self._guard:
            return self._by_sid.get(sid)

    # ── Rooms ──────────────────────────────────────────────────────────────

    def join(self, sid: str, room_id: int) -> bool:
        connection = self.get(sid)
        if connection is None:
            return False
        with self._room_locks.hold(room_id):
            self._by_room.setdefault(room_id, set()).add(sid)
            connection.rooms.add(room_id)
        return True

    def leave(self, sid: str, room_id: int) -> None:
        connection = self.get(sid)
        if connection is not None:
            connection.rooms.discard(room_id)
        self._discard_from_room(room_id, sid)

    def _discard_from_room(self, room_id: int, sid: str) -> None:
        with self._room_locks.hold(room_id):
            sids = self._by_room.get(room_id)
            if sids is None:
                return
            sids.discard(sid)
            if not sids:
                del self._by_room[room_id]

    # ── Snapshots ──────────────────────────────────────────────────────────

    def sids_for_user(self, user_id: int) -> list[str]:
        with self._user_locks.hold(user_id):
            return sorted(self._by_user.get(user_id, ()))

    def sids_in_room(self, room_id: int) -> list[str]:
        with self._room_locks.hold(room_id):
            return sorted(self._by_room.get(room_id, ()))

    def is_online(self, user_id: int) -> bool:
        return bool(self.sids_for_user(user_id))

    def online_user_ids(self) -> list[int]:
        with self._guard:
            return sorted({c.user_id for c in self._by_sid.values()})

    def lock_count(self) -> int:
        """Live per-key lock entries; zero when nothing is in flight."""
        return len(self._user_locks) + len(self._room_locks) + len(self._presence_locks)

    def __len__(self) -> int:
        with self._guard:
            return len(self._by_sid)
