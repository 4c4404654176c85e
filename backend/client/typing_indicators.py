"""
client/typing_indicators.py — Who is typing where, with a 3-second expiry.

An indicator disappears after TYPING_TIMEOUT_SECONDS without a renewal,
even if the "stopped typing" event never arrives.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

TYPING_TIMEOUT_SECONDS = 3.0


class TypingTracker:

    def __init__(
            self,
            timeout: float = TYPING_TIMEOUT_SECONDS,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()
        # conversation_id -> user_id -> (username, last renewed)
        self._typing: dict[int, dict[int, tuple[str, float]]] = {}

    def set(self, conversation_id: int, user_id: int, username: str, is_typing: bool) -> None:
        with self._lock:
            users = self._typing.setdefault(conversation_id, {})
            if is_typing:
                users[user_id] = (username, self._clock())
            else:
                users.pop(user_id, None)
            if not users:
                self._typing.pop(conversation_id, None)

    def active(self, conversation_id: int) -> list[tuple[int, str]]:
        """(user_id, username) pairs still typing, expired ones pruned."""
        now = self._clock()
        with self._lock:
            users = self._typing.get(conversation_id, {})
            for user_id in [u for u, (_, at) in users.items() if now - at >= self._timeout]:
                del users[user_id]
            if not users:
                self._typing.pop(conversation_id, None)
            return sorted((user_id, name) for user_id, (name, _) in users.items())

    def clear(self) -> None:
        with self._lock:
            self._typing.clear()
