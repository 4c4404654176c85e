"""
client/reconciliation.py — Local message timeline with optimistic sends.

Two indexes over the same entries:

    order   : [key, key, ...]        display order
    by_key  : {key: TimelineEntry}   lookup

A key is either a temporary id ("temp-…", assigned on send) or the
server-confirmed message id. confirm() swaps one for the other in a single
locked step: the temporary key leaves the lookup table, the real one
enters it, and the ordered list is rewritten in place so the entry keeps
its position. There is no moment at which both keys, or neither, resolve.

Messages arriving over the real-time channel are de-duplicated by id, so a
replay after reconnect never appends the same message twice.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Hashable

TEMP_PREFIX = "temp-"


@dataclass
class TimelineEntry:
    key: Hashable
    message: dict
    pending: bool = False
    failed_reason: str | None = None
    extra: dict = field(default_factory=dict)


def new_temp_id() -> str:
    return f"{TEMP_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(key: Hashable) -> bool:
    return isinstance(key, str) and key.startswith(TEMP_PREFIX)


class MessageTimeline:

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._order: list[Hashable] = []
        self._by_key: dict[Hashable, TimelineEntry] = {}

    # ── Optimistic send ────────────────────────────────────────────────────

    def add_optimistic(self, message: dict, temp_id: str | None = None) -> str:
        """Shows an outbound message immediately under a temporary id."""
        temp_id = temp_id or new_temp_id()
        with self._lock:
            if temp_id in self._by_key:
                raise ValueError(f"Temporary id {temp_id!r} is already in use.")
            entry = TimelineEntry(key=temp_id, message={**message, "id": temp_id}, pending=True)
            self._by_key[temp_id] = entry
            self._order.append(temp_id)
        return temp_id

    def confirm(self, temp_id: str, real_id: Hashable, server_message: dict | None = None) -> bool:
        """
        Replaces a provisional entry with the confirmed one, in place.

        If the real id is already present (it arrived over the socket before
        the acknowledgement), that entry moves into the provisional slot and
        the provisional entry is dropped.
        Returns True when the timeline changed.
        """
        with self._lock:
            entry = self._by_key.get(temp_id)
            if entry is None:
                return False

            position = self._order.index(temp_id)
            del self._by_key[temp_id]

            if real_id in self._by_key:
                self._order.remove(real_id)
                position = self._order.index(temp_id)
                self._order[position] = real_id
                return True

            message = {**entry.message, **(server_message or {}), "id": real_id}
            self._by_key[real_id] = TimelineEntry(key=real_id, message=message)
            self._order[position] = real_id
            return True

    def fail(self, temp_id: str, reason: str | None = None) -> bool:
        """Removes a provisional entry after a failed send. Neighbours are untouched."""
        with self._lock:
            entry = self._by_key.pop(temp_id, None)
            if entry is None:
                return False
            self._order.remove(temp_id)
            entry.failed_reason = reason
            return True

    # ── Server-originated messages ─────────────────────────────────────────

    def receive(self, message: dict) -> bool:
        """Appends a message from the server unless its id is already known."""
        real_id = message.get("id")
        if real_id is None:
            return False
        with self._lock:
            if real_id in self._by_key:
                return False
            self._by_key[real_id] = TimelineEntry(key=real_id, message=dict(message))
            self._order.append(real_id)
            return True

    def update(self, message: dict) -> bool:
        with self._lock:
            entry = self._by_key.get(message.get("id"))
            if entry is None:
                return False
            entry.message = {**entry.message, **message}
            return True

    def remove(self, key: Hashable) -> bool:
        with self._lock:
            if self._by_key.pop(key, None) is None:
                return False
            self._order.remove(key)
            return True

    # ── Reads ──────────────────────────────────────────────────────────────

    def ids(self) -> list[Hashable]:
        with self._lock:
            return list(self._order)

    def messages(self) -> list[dict]:
        with self._lock:
            return [self._by_key[k].message for k in self._order]

    def get(self, key: Hashable) -> dict | None:
        with self._lock:
            entry = self._by_key.get(key)
            return entry.message if entry is not None else None

    def pending_ids(self) -> list[str]:
        with self._lock:
            return [k for k in self._order if self._by_key[k].pending]

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._by_key

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)
