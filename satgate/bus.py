"""Typed update channel shared by the dispatcher and its handlers."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .core import ControlSystemClient
from .errors import InvalidTransitionError, TerminalStateError
from .logging import log_traffic
from .messages import (
    CommandState,
    CommandUpdate,
    GatewayEvent,
    GatewayUpdate,
    LinkMessage,
    MeasurementsUpdate,
    PassthroughUpdate,
    ProgressChannel,
)
from .state_machine import CommandStateTracker

LOGGER = logging.getLogger(__name__)

LinkSubscriber = Callable[[LinkMessage], None]


class LinkSubscriberRegistry:
    """Maps command ids to the listeners consuming link traffic on their behalf.

    Downlink transfers and handshakes register here for the lifetime of
    their command; every entry for an id is dropped when that command
    reaches a terminal state.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[LinkSubscriber]] = {}

    def subscribe(self, command_id: str, subscriber: LinkSubscriber) -> None:
        entries = self._subscribers.setdefault(command_id, [])
        if subscriber in entries:
            raise ValueError(f"Subscriber already registered for {command_id}")
        entries.append(subscriber)

    def unsubscribe(self, command_id: str, subscriber: LinkSubscriber) -> None:
        entries = self._subscribers.get(command_id)
        if not entries:
            return
        if subscriber in entries:
            entries.remove(subscriber)
        if not entries:
            del self._subscribers[command_id]

    def release(self, command_id: str) -> int:
        return len(self._subscribers.pop(command_id, []))

    def has_subscribers(self, command_id: str) -> bool:
        return bool(self._subscribers.get(command_id))

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._subscribers.values())

    def deliver_to(self, command_id: str, message: LinkMessage) -> bool:
        entries = list(self._subscribers.get(command_id, ()))
        for subscriber in entries:
            self._invoke(command_id, subscriber, message)
        return bool(entries)

    def broadcast(self, message: LinkMessage) -> None:
        for command_id, entries in list(self._subscribers.items()):
            for subscriber in list(entries):
                self._invoke(command_id, subscriber, message)

    @staticmethod
    def _invoke(command_id: str, subscriber: LinkSubscriber, message: LinkMessage) -> None:
        try:
            subscriber(message)
        except Exception:
            LOGGER.exception("Link subscriber for command %s raised", command_id)


class UpdateBus:
    """Routes gateway updates to mission control.

    Command updates are validated by the :class:`CommandStateTracker` before
    they leave the gateway; rejected updates are logged and dropped.
    """

    def __init__(
        self,
        control: ControlSystemClient,
        *,
        tracker: Optional[CommandStateTracker] = None,
        registry: Optional[LinkSubscriberRegistry] = None,
    ) -> None:
        self._control = control
        self.tracker = tracker or CommandStateTracker()
        self.registry = registry or LinkSubscriberRegistry()

    async def publish(self, update: GatewayUpdate) -> bool:
        """Forward ``update`` to mission control.

        Returns False when the update was rejected or could not be sent.
        """
        log_traffic("event", update.to_dict())

        if isinstance(update, CommandUpdate):
            try:
                terminal = self.tracker.apply(update)
            except (TerminalStateError, InvalidTransitionError) as exc:
                LOGGER.warning("Dropping command update: %s", exc)
                return False
            if terminal:
                released = self.registry.release(update.command_id)
                if released:
                    LOGGER.debug(
                        "Released %d link subscriber(s) for command %s",
                        released,
                        update.command_id,
                    )

        try:
            await self._transmit(update)
        except Exception:
            LOGGER.exception("Failed to transmit %s to mission control", type(update).__name__)
            return False
        return True

    async def command_update(
        self,
        command_id: str,
        state: CommandState,
        *,
        progress_1: Optional[ProgressChannel] = None,
        progress_2: Optional[ProgressChannel] = None,
        status: Optional[str] = None,
        payload: Any = None,
        errors: Optional[List[str]] = None,
    ) -> bool:
        return await self.publish(
            CommandUpdate(
                command_id=command_id,
                state=state,
                progress_1=progress_1,
                progress_2=progress_2,
                status=status,
                payload=payload,
                errors=errors,
            )
        )

    async def fail(self, command_id: str, errors: List[str]) -> bool:
        return await self.command_update(command_id, CommandState.FAILED, errors=errors)

    async def event(
        self, event_type: str, level: str, message: str, *, debug: Any = None
    ) -> bool:
        return await self.publish(
            GatewayEvent(event_type=event_type, level=level, message=message, debug=debug)
        )

    async def _transmit(self, update: GatewayUpdate) -> None:
        if isinstance(update, CommandUpdate):
            await self._control.transmit_command_update(
                update.command_id, update.state.value, update.command_fields()
            )
        elif isinstance(update, MeasurementsUpdate):
            await self._control.transmit_metrics(update.measurements)
        elif isinstance(update, GatewayEvent):
            await self._control.transmit_events([update.as_event()])
        elif isinstance(update, PassthroughUpdate):
            await self._control.transmit(update.to_dict())
        else:  # pragma: no cover - exhaustive over GatewayUpdate
            raise TypeError(f"Unsupported update type: {type(update).__name__}")
