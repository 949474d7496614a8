"""Simulated ground-station hardware.

Each task implements :class:`~satgate.tasks.ProgressTask` by advancing a
fixed list of phases on a fixed tick. Tick lengths come from the
``[hardware]`` configuration section.
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from typing import Callable, Optional

from .config import HardwareConfig
from .tasks import ProgressCallback

PREP_PHASES = (
    "actuator power cycle",
    "gimballing hardware",
    "hardware clearance check",
    "radio power cycle",
    "digesting tle",
    "computing pass angles",
    "translating pass trajectory",
    "calibrating radio oscillator",
    "refining radio frequency",
    "finishing pass prep",
)

AWAITING_ACK = "awaiting satellite ack"

BROADCAST_PHASES = (
    "checking for sideband traffic",
    "broadcasting callsign and net clear",
    "initiating carrier frequency",
    AWAITING_ACK,
)


class _SimulatedTask:
    name = "task"

    def __init__(self) -> None:
        self._cancel_requested = False

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> None:
        self._cancel_requested = True

    async def _tick(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if self._cancel_requested:
            raise asyncio.CancelledError()


class GroundHardwarePrep(_SimulatedTask):
    """Power-cycles and calibrates the ground hardware for a pass.

    Progress is the percentage of phases completed, labelled with the phase.
    """

    name = "ground hardware prep"

    def __init__(self, tick_seconds: float = 1.7) -> None:
        super().__init__()
        self._tick_seconds = tick_seconds

    async def run(self, progress: ProgressCallback) -> None:
        last_index = len(PREP_PHASES) - 1
        for index, phase in enumerate(PREP_PHASES):
            await self._tick(self._tick_seconds)
            await progress(math.floor(index / last_index * 100), phase)
        await self._tick(self._tick_seconds)
        await progress(100, "done")


class AntennaOrientation(_SimulatedTask):
    """Rotates the antenna towards the pass start.

    Progress is reported in degrees rotated; the label is the degrees still
    remaining, so callers can show both sides of the rotation.
    """

    name = "antenna orientation"

    def __init__(
        self,
        tick_seconds: float = 0.2,
        *,
        step_degrees: int = 3,
        max_degrees: int = 268,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__()
        self._tick_seconds = tick_seconds
        self._step = step_degrees
        self.target_degrees = (rng or random).randint(0, max_degrees)

    async def run(self, progress: ProgressCallback) -> int:
        target = self.target_degrees
        done = 0
        while done < target:
            await self._tick(self._tick_seconds)
            done = min(done + self._step, target)
            await progress(done, target - done)
        await self._tick(self._tick_seconds)
        await progress(target, 0)
        return target


class CarrierBroadcast(_SimulatedTask):
    """Broadcasts the carrier until the satellite should be listening.

    The broadcast never fails; once ``max_wait_seconds`` has elapsed it
    reports 100% and completes.
    """

    name = "carrier broadcast"

    def __init__(self, tick_seconds: float = 1.0, max_wait_seconds: float = 6.0) -> None:
        super().__init__()
        self._tick_seconds = tick_seconds
        self._max_wait = max_wait_seconds

    async def run(self, progress: ProgressCallback) -> None:
        if self._tick_seconds > 0:
            steps = math.ceil(self._max_wait / self._tick_seconds)
        else:
            steps = 0
        for index in range(steps):
            await self._tick(self._tick_seconds)
            phase = BROADCAST_PHASES[index] if index < len(BROADCAST_PHASES) else AWAITING_ACK
            await progress((index + 1) * 10, phase)
        await self._tick(self._tick_seconds)
        await progress(100, AWAITING_ACK)


class ChecksumValidation(_SimulatedTask):
    """Computes the validity token confirming the pass set-up."""

    name = "checksum validation"

    def __init__(
        self,
        latency_seconds: float = 1.5,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self._latency = latency_seconds
        self._rng = rng or random.Random()
        self._clock = clock

    async def run(self, progress: ProgressCallback) -> str:
        await progress(0, "calculating checksum")
        await self._tick(self._latency)
        await progress(100, "resolved check value")
        now_ms = self._clock() * 1000
        return f"VALID::{self._rng.random() * now_ms:.4f}"


class GroundStation:
    """Builds fresh hardware tasks for each ``connect`` command."""

    def __init__(
        self, config: Optional[HardwareConfig] = None, *, rng: Optional[random.Random] = None
    ) -> None:
        self._config = config or HardwareConfig()
        self._rng = rng

    def prep_ground_hardware(self) -> GroundHardwarePrep:
        return GroundHardwarePrep(self._config.prep_tick_seconds)

    def orient_antenna(self) -> AntennaOrientation:
        return AntennaOrientation(
            self._config.orient_tick_seconds,
            step_degrees=self._config.orient_step_degrees,
            max_degrees=self._config.orient_max_degrees,
            rng=self._rng,
        )

    def broadcast_carrier(self) -> CarrierBroadcast:
        return CarrierBroadcast(
            self._config.broadcast_tick_seconds,
            self._config.broadcast_max_wait_seconds,
        )

    def validate_checksum(self) -> ChecksumValidation:
        return ChecksumValidation(self._config.checksum_latency_seconds, rng=self._rng)
