"""Challenge/response handshake confirming synchronised contact with the link."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from .bus import LinkSubscriberRegistry
from .core import SatelliteLinkClient
from .errors import LinkTimeoutError
from .messages import (
    ChecksumPong,
    CommandState,
    LinkMessage,
    LinkMessageType,
    ProgressChannel,
)

LOGGER = logging.getLogger(__name__)

CHALLENGE_WORDS = (
    "ALBUM",
    "BANTU",
    "COMET",
    "DOETH",
    "EARTH",
    "FORCE",
    "GALAX",
    "HEXAD",
    "INGOT",
    "JUMBO",
)

HandshakeProgress = Callable[[CommandState, Optional[ProgressChannel]], Awaitable[None]]


class HandshakeState(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_RESPONSE = "awaiting_first_response"
    SYNCHRONIZING = "synchronizing"
    SYNCHRONIZED = "synchronized"
    FAILED = "failed"


class HandshakeSession:
    """One handshake attempt sequence on behalf of a single command.

    A challenge word is sent every ``retry_interval`` seconds, word *n* on
    attempt *n*, until the link echoes the most recently sent word. Any
    message from the link counts as contact, even when it does not echo the
    word. The attempt bound is clamped to the number of challenge words.
    """

    def __init__(
        self,
        command_id: str,
        link: SatelliteLinkClient,
        registry: LinkSubscriberRegistry,
        *,
        max_attempts: int = 10,
        retry_interval: float = 1.0,
        words: Sequence[str] = CHALLENGE_WORDS,
    ) -> None:
        if not words:
            raise ValueError("At least one challenge word is required")
        if retry_interval <= 0:
            raise ValueError("The handshake retry interval must be positive")
        self.command_id = command_id
        self._link = link
        self._registry = registry
        self._words = tuple(words)
        self._retry_interval = retry_interval
        self.max_attempts = max(1, min(max_attempts, len(self._words)))
        self.state = HandshakeState.IDLE
        self.attempts = 0
        self.contact_acknowledged = False
        self._expected: Optional[str] = None

    async def run(self, progress: HandshakeProgress) -> str:
        """Run the handshake until synchronised.

        Returns:
            The echoed word concatenated with the expected word.

        Raises:
            LinkTimeoutError: Attempts ran out before synchronisation.
        """
        if self.state != HandshakeState.IDLE:
            raise RuntimeError("Handshake sessions cannot be reused")

        loop = asyncio.get_running_loop()
        inbox: "asyncio.Queue[LinkMessage]" = asyncio.Queue()
        listener = inbox.put_nowait
        self._registry.subscribe(self.command_id, listener)

        try:
            await progress(CommandState.UPLINKING_TO_SYSTEM, None)
            self._send_challenge()
            await progress(CommandState.TRANSMITTED_TO_SYSTEM, None)
            self.state = HandshakeState.AWAITING_FIRST_RESPONSE

            deadline = loop.time() + self._retry_interval
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    if self.attempts >= self.max_attempts:
                        self.state = HandshakeState.FAILED
                        LOGGER.warning(
                            "Handshake for command %s failed after %d attempts (contact=%s)",
                            self.command_id,
                            self.attempts,
                            self.contact_acknowledged,
                        )
                        raise LinkTimeoutError(
                            acknowledged=self.contact_acknowledged,
                            attempts=self.attempts,
                            command_id=self.command_id,
                        )
                    self._send_challenge()
                    deadline += self._retry_interval
                    continue

                try:
                    message = await asyncio.wait_for(inbox.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue

                result = await self._receive(message, progress)
                if result is not None:
                    return result
        finally:
            self._registry.unsubscribe(self.command_id, listener)

    def _send_challenge(self) -> None:
        self._expected = self._words[self.attempts]
        self.attempts += 1
        LOGGER.debug(
            "Handshake %s: attempt %d/%d with %s",
            self.command_id,
            self.attempts,
            self.max_attempts,
            self._expected,
        )
        self._link.send(
            {"type": LinkMessageType.CHECKSUM_PING.value, "word": self._expected}
        )

    async def _receive(
        self, message: LinkMessage, progress: HandshakeProgress
    ) -> Optional[str]:
        if not self.contact_acknowledged:
            self.contact_acknowledged = True
            self.state = HandshakeState.SYNCHRONIZING
            await progress(CommandState.ACKED_BY_SYSTEM, None)

        if not isinstance(message, ChecksumPong):
            return None

        await progress(
            CommandState.DOWNLINKING_FROM_SYSTEM,
            ProgressChannel(current=self.attempts, max=self.max_attempts),
        )

        if message.word is not None and message.word == self._expected:
            self.state = HandshakeState.SYNCHRONIZED
            LOGGER.info(
                "Handshake for command %s synchronised on attempt %d",
                self.command_id,
                self.attempts,
            )
            return f"{message.word}{self._expected}"
        return None
