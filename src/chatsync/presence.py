from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

EVENT_TYPING_START = "typingStart"
EVENT_TYPING_STOP = "typingStop"

TypingKey = Tuple[str, str]
Emit = Callable[[str, Dict[str, Any]], Any]
TypingListener = Callable[[str, str, bool], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TypingConfig:
    quiet_period_seconds: float = 1.0
    remote_timeout_seconds: float = 5.0
    sweeper_interval_seconds: float = 0.25


class TypingCoordinator:
    """Ephemeral "is typing" signals, scoped by (conversation, counterpart).

    Local keystrokes collapse into one start/stop pair per pause: the first
    keystroke emits ``typingStart`` and only the quiet-period expiry (or an
    explicit ``stop_typing``) emits ``typingStop``. Remote flags clear on a
    ``typingStop`` event or after ``remote_timeout_seconds`` without one.
    """

    def __init__(self, emit: Emit, config: TypingConfig | None = None, *, now_func=_now_ms) -> None:
        self.config = config or TypingConfig()
        self._emit = emit
        self._now = now_func
        self._local: Dict[TypingKey, int] = {}
        self._remote: Dict[TypingKey, int] = {}
        self._listeners: List[TypingListener] = []
        self._sweeper_task: asyncio.Task | None = None

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.sweeper_interval_seconds)
                self.expire()
        except asyncio.CancelledError:
            return

    def add_listener(self, listener: TypingListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TypingListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def start_typing(self, conversation_id: str, counterpart: str) -> None:
        """Record a local keystroke; call on every keystroke."""

        key = (conversation_id, counterpart)
        if key not in self._local:
            self._emit(EVENT_TYPING_START, {"conversationId": conversation_id, "receiverEmail": counterpart})
        self._local[key] = self._now() + int(self.config.quiet_period_seconds * 1000)

    def stop_typing(self, conversation_id: str, counterpart: str) -> None:
        if self._local.pop((conversation_id, counterpart), None) is None:
            return
        self._emit(EVENT_TYPING_STOP, {"conversationId": conversation_id, "receiverEmail": counterpart})

    def is_locally_typing(self, conversation_id: str, counterpart: str) -> bool:
        return (conversation_id, counterpart) in self._local

    def observe_remote_start(self, conversation_id: str, counterpart: str) -> None:
        key = (conversation_id, counterpart)
        was_typing = key in self._remote
        self._remote[key] = self._now() + int(self.config.remote_timeout_seconds * 1000)
        if not was_typing:
            self._notify(conversation_id, counterpart, True)

    def observe_remote_stop(self, conversation_id: str, counterpart: str) -> None:
        if self._remote.pop((conversation_id, counterpart), None) is None:
            return
        self._notify(conversation_id, counterpart, False)

    def is_typing(self, conversation_id: str, counterpart: str) -> bool:
        return (conversation_id, counterpart) in self._remote

    def typing_in(self, conversation_id: str) -> List[str]:
        return sorted(counterpart for conv_id, counterpart in self._remote if conv_id == conversation_id)

    def expire(self) -> None:
        now_ms = self._now()
        for key, deadline in list(self._local.items()):
            if deadline <= now_ms:
                self.stop_typing(*key)
        for key, deadline in list(self._remote.items()):
            if deadline <= now_ms:
                logger.debug("remote typing for %s timed out", key)
                self.observe_remote_stop(*key)

    def clear(self) -> None:
        self._local.clear()
        self._remote.clear()

    def _notify(self, conversation_id: str, counterpart: str, typing: bool) -> None:
        for listener in list(self._listeners):
            listener(conversation_id, counterpart, typing)
