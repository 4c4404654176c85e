"""
client/realtime.py — Reconnecting real-time client.

Wraps python-socketio's Client and wires server events into a
MessageTimeline and a TypingTracker. The access token is presented at
connection time (auth={"token": ...}) and re-read on every reconnect, so a
refreshed token is picked up without rebuilding the client.

Reconnection is bounded: ReconnectPolicy (5 attempts, 1 s doubling to a
5 s cap). When the attempts are used up the client reports FAILED instead
of retrying forever.
"""

from __future__ import annotations

import enum
import functools
import logging
import threading
from dataclasses import dataclass
from typing import Callable

import socketio
from socketio.exceptions import SocketIOError

from backend.client.reconciliation import MessageTimeline
from backend.client.typing_indicators import TypingTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconnectPolicy:
    attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the 1-based `attempt`-th reconnection."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def delays(self) -> list[float]:
        return [self.delay_for(n) for n in range(1, self.attempts + 1)]

    def exhausted(self, failures: int) -> bool:
        return failures >= self.attempts


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    RECONNECTING = "reconnecting"
    FAILED       = "failed"


class RealtimeClient:

    def __init__(
            self,
            url: str,
            token_provider: Callable[[], str],
            timeline: MessageTimeline | None = None,
            typing: TypingTracker | None = None,
            policy: ReconnectPolicy | None = None,
            sio: socketio.Client | None = None,
    ) -> None:
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self.timeline = timeline or MessageTimeline()
        self.typing = typing or TypingTracker()
        self._token_provider = token_provider
        self._lock = threading.Lock()
        self._failures = 0
        self.state = ConnectionState.DISCONNECTED
        self.last_error: dict | None = None
        self.presence: dict[int, str] = {}
        self.statuses: dict[object, dict[int, str]] = {}

        self.sio = sio or socketio.Client(
            reconnection=True,
            reconnection_attempts=self.policy.attempts,
            reconnection_delay=self.policy.initial_delay,
            reconnection_delay_max=self.policy.max_delay,
            randomization_factor=0,
        )
        self._register_handlers()

    # ── Connection ─────────────────────────────────────────────────────────

    def _auth(self) -> dict:
        return {"token": self._token_provider()}

    def connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self.sio.connect(self.url, auth=self._auth, transports=["websocket", "polling"])

    def disconnect(self) -> None:
        self.sio.disconnect()
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self.state = state

    # ── Outbound ───────────────────────────────────────────────────────────

    def send_message(
            self,
            conversation_id: int,
            content: str,
            message_type: str = "text",
            reply_to: int | None = None,
            metadata: dict | None = None,
    ) -> str:
        """Displays the message at once under a temporary id; the ack swaps in the real id."""
        temp_id = self.timeline.add_optimistic({
            "conversation_id": conversation_id,
            "content": content,
            "message_type": message_type,
            "reply_to_id": reply_to,
            "metadata": metadata,
        })
        payload = {"conversationId": conversation_id, "content": content, "type": message_type}
        if reply_to is not None:
            payload["replyTo"] = reply_to
        if metadata is not None:
            payload["metadata"] = metadata

        try:
            self.sio.emit(
                "message.send",
                payload,
                callback=functools.partial(self._on_send_ack, temp_id),
            )
        except SocketIOError as exc:
            self.timeline.fail(temp_id, reason=str(exc))
            raise
        return temp_id

    def set_typing(self, conversation_id: int, is_typing: bool) -> None:
        self.sio.emit("typing.set", {"conversationId": conversation_id, "isTyping": is_typing})

    def mark_delivered(self, message_id: int) -> None:
        self.sio.emit("message.delivered", {"messageId": message_id})

    def mark_read(self, message_id: int) -> None:
        self.sio.emit("message.read", {"messageId": message_id})

    def set_presence(self, status: str) -> None:
        self.sio.emit("presence.set", {"status": status})

    def join_conversation(self, conversation_id: int) -> None:
        self.sio.emit("conversation.join", {"conversationId": conversation_id})

    def _on_send_ack(self, temp_id: str, ack: dict | None = None) -> None:
        if ack and ack.get("success"):
            self.timeline.confirm(temp_id, ack["messageId"], ack.get("message"))
            return
        self.last_error = (ack or {}).get("error")
        reason = (self.last_error or {}).get("code", "SEND_FAILED")
        logger.info("Send %s rejected: %s", temp_id, reason)
        self.timeline.fail(temp_id, reason=reason)

    # ── Inbound ────────────────────────────────────────────────────────────

    def _register_handlers(self) -> None:
        self.sio.on("connect", self._on_connect)
        self.sio.on("connect_error", self._on_connect_error)
        self.sio.on("disconnect", self._on_disconnect)
        self.sio.on("message.received", self._on_message_received)
        self.sio.on("message.updated", self._on_message_updated)
        self.sio.on("message.deleted", self._on_message_deleted)
        self.sio.on("message.status.changed", self._on_status_changed)
        self.sio.on("typing.changed", self._on_typing_changed)
        self.sio.on("presence.changed", self._on_presence_changed)

    def _on_connect(self) -> None:
        with self._lock:
            self._failures = 0
            self.state = ConnectionState.CONNECTED

    def _on_connect_error(self, data=None) -> None:
        with self._lock:
            self._failures += 1
            self.last_error = data if isinstance(data, dict) else {"message": str(data)}
            self.state = (
                ConnectionState.FAILED
                if self.policy.exhausted(self._failures)
                else ConnectionState.RECONNECTING
            )
        logger.warning("Real-time connection attempt %d failed", self._failures)

    def _on_disconnect(self, reason=None) -> None:
        with self._lock:
            if self.state != ConnectionState.FAILED:
                self.state = ConnectionState.RECONNECTING
        self.typing.clear()

    def _on_message_received(self, message: dict) -> None:
        self.timeline.receive(message)

    def _on_message_updated(self, message: dict) -> None:
        self.timeline.update(message)

    def _on_message_deleted(self, data: dict) -> None:
        self.timeline.remove(data.get("messageId"))

    def _on_status_changed(self, data: dict) -> None:
        with self._lock:
            self.statuses.setdefault(data.get("messageId"), {})[data.get("by")] = data.get("status")

    def _on_typing_changed(self, data: dict) -> None:
        self.typing.set(
            data["conversationId"],
            data["userId"],
            data.get("username", ""),
            bool(data.get("isTyping")),
        )

    def _on_presence_changed(self, data: dict) -> None:
        with self._lock:
            self.presence[data["userId"]] = data["status"]
