"""Per-command lifecycle bookkeeping.

Handlers own the transitions of their commands; the tracker only validates
what flows through the update bus. A command is in flight from its first
``preparing_on_gateway`` update until it reaches ``completed`` or
``failed``. Terminal ids are remembered in a bounded history so late or
duplicated traffic for a finished command is rejected rather than forwarded.
Commands that never finish, such as the long running safemode, are evicted
from the in-flight table once it grows past its limit, least recently
updated first.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Optional

from .errors import InvalidTransitionError, TerminalStateError
from .messages import CommandState, CommandUpdate

LOGGER = logging.getLogger(__name__)


class CommandStateTracker:
    """Validates command updates against the lifecycle ordering."""

    DEFAULT_HISTORY_LIMIT = 256
    DEFAULT_INFLIGHT_LIMIT = 1024

    def __init__(
        self,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        inflight_limit: int = DEFAULT_INFLIGHT_LIMIT,
    ) -> None:
        self._inflight: "OrderedDict[str, CommandState]" = OrderedDict()
        self._terminal: "OrderedDict[str, CommandState]" = OrderedDict()
        self._history_limit = history_limit
        self._inflight_limit = max(1, inflight_limit)

    def is_inflight(self, command_id: str) -> bool:
        return command_id in self._inflight

    def is_terminal(self, command_id: str) -> bool:
        return command_id in self._terminal

    def state_of(self, command_id: str) -> Optional[CommandState]:
        return self._inflight.get(command_id) or self._terminal.get(command_id)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def apply(self, update: CommandUpdate) -> bool:
        """Record the transition carried by ``update``.

        Returns True when the update moved the command into a terminal state.

        Raises:
            TerminalStateError: The command already completed or failed.
            InvalidTransitionError: The update would move the command
                backwards through its lifecycle.
        """
        command_id = update.command_id
        new_state = update.state

        finished = self._terminal.get(command_id)
        if finished is not None:
            raise TerminalStateError(
                f"Command {command_id} already {finished.value}; "
                f"rejecting transition to {new_state.value}",
                code="terminal_state",
                command_id=command_id,
            )

        current = self._inflight.get(command_id)
        if (
            current is not None
            and not new_state.is_terminal
            and new_state.rank < current.rank
        ):
            raise InvalidTransitionError(
                f"Command {command_id} cannot move from {current.value} "
                f"back to {new_state.value}",
                code="invalid_transition",
                command_id=command_id,
            )

        if new_state.is_terminal:
            self._inflight.pop(command_id, None)
            self._remember_terminal(command_id, new_state)
            return True

        if current != new_state:
            LOGGER.debug(
                "Command %s: %s -> %s",
                command_id,
                current.value if current else "(new)",
                new_state.value,
            )
        self._inflight[command_id] = new_state
        self._inflight.move_to_end(command_id)
        while len(self._inflight) > self._inflight_limit:
            evicted, state = self._inflight.popitem(last=False)
            LOGGER.warning(
                "Dropping command %s from in-flight tracking while %s", evicted, state.value
            )
        return False

    def forget(self, command_id: str) -> None:
        """Drop a command that never reached link-side handling."""
        self._inflight.pop(command_id, None)

    def _remember_terminal(self, command_id: str, state: CommandState) -> None:
        self._terminal[command_id] = state
        self._terminal.move_to_end(command_id)
        while len(self._terminal) > self._history_limit:
            self._terminal.popitem(last=False)
