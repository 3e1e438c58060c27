"""Streaming session phase machine and lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class StreamPhase(str, Enum):
    """Finite state machine for one request/response exchange."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (StreamPhase.SENDING, StreamPhase.STREAMING)

    @property
    def is_terminal(self) -> bool:
        return self in (StreamPhase.COMPLETE, StreamPhase.ERROR, StreamPhase.CANCELLED)


_ALLOWED_TRANSITIONS: dict[StreamPhase, frozenset[StreamPhase]] = {
    StreamPhase.IDLE: frozenset({StreamPhase.SENDING}),
    StreamPhase.SENDING: frozenset(
        {StreamPhase.STREAMING, StreamPhase.ERROR, StreamPhase.CANCELLED}
    ),
    StreamPhase.STREAMING: frozenset(
        {StreamPhase.COMPLETE, StreamPhase.ERROR, StreamPhase.CANCELLED}
    ),
    StreamPhase.COMPLETE: frozenset({StreamPhase.IDLE, StreamPhase.SENDING}),
    StreamPhase.ERROR: frozenset({StreamPhase.IDLE, StreamPhase.SENDING}),
    StreamPhase.CANCELLED: frozenset({StreamPhase.IDLE, StreamPhase.SENDING}),
}


def can_transition(current: StreamPhase, new_phase: StreamPhase) -> bool:
    return new_phase in _ALLOWED_TRANSITIONS[current]


class StateManager:
    """Manage phase transitions with async lock semantics.

    Reads of ``phase`` are lock-free; every write goes through the lock so
    two submissions racing on the same event loop cannot both enter
    ``sending``.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._phase = StreamPhase.IDLE

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    async def get_state(self) -> StreamPhase:
        async with self._lock:
            return self._phase

    async def transition_to(self, new_phase: StreamPhase) -> bool:
        """Move to ``new_phase`` when the transition table allows it."""
        async with self._lock:
            return self._apply(new_phase)

    async def transition_if(
        self, expected_phase: StreamPhase, new_phase: StreamPhase
    ) -> bool:
        """Transition only when the current phase matches ``expected_phase``."""
        async with self._lock:
            if self._phase != expected_phase:
                return False
            return self._apply(new_phase)

    async def begin_send(self) -> bool:
        """Enter ``sending`` unless an exchange is already in flight."""
        async with self._lock:
            if self._phase.is_active:
                return False
            return self._apply(StreamPhase.SENDING)

    async def can_send_message(self) -> bool:
        async with self._lock:
            return not self._phase.is_active

    def _apply(self, new_phase: StreamPhase) -> bool:
        if not can_transition(self._phase, new_phase):
            LOGGER.warning(
                "session.phase.rejected",
                extra={
                    "event": "session.phase.rejected",
                    "from_state": self._phase.value,
                    "to_state": new_phase.value,
                },
            )
            return False
        LOGGER.debug(
            "session.phase",
            extra={
                "event": "session.phase",
                "from_state": self._phase.value,
                "to_state": new_phase.value,
            },
        )
        self._phase = new_phase
        return True
