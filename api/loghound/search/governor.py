from __future__ import annotations
import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from loghound import config
from loghound.obs.logging_setup import get_logger

logger = get_logger(__name__)


class RegionGate:
    """Concurrency slots and submission spacing for one region.

    Slots are granted strictly first-requested-first-granted. A slot
    released while waiters exist is handed directly to the oldest waiter.
    """

    def __init__(
        self,
        region: str,
        capacity: int,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("region capacity must be at least 1")
        self.region = region
        self.capacity = capacity
        self.min_interval = min_interval
        self._clock = clock
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._next_submit_at = 0.0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire_slot(self) -> None:
        if self._active < self.capacity and not self._waiters:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # granted and cancelled in the same tick: hand the slot on
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._active <= 0:
            raise RuntimeError(f"release without acquire in region {self.region}")
        self._active -= 1

    def reserve_submission(self) -> float:
        """Book the next submission time; returns how long the caller must wait."""
        now = self._clock()
        at = max(now, self._next_submit_at)
        self._next_submit_at = at + self.min_interval
        return at - now

    async def pace(self) -> None:
        delay = self.reserve_submission()
        if delay > 0:
            await asyncio.sleep(delay)


class RateGovernor:
    """Per-region concurrency cap plus submission-rate limiter."""

    def __init__(
        self,
        capacity: int = config.REGION_CONCURRENCY_CAP,
        min_interval: float = config.SUBMIT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.min_interval = min_interval
        self._clock = clock
        self._gates: Dict[str, RegionGate] = {}

    def gate(self, region: str) -> RegionGate:
        gate = self._gates.get(region)
        if gate is None:
            gate = RegionGate(region, self.capacity, self.min_interval, self._clock)
            self._gates[region] = gate
        return gate

    async def acquire(self, region: str) -> None:
        """Wait for a free slot, then for the region's submission spacing."""
        gate = self.gate(region)
        await gate.acquire_slot()
        try:
            await gate.pace()
        except asyncio.CancelledError:
            gate.release()
            raise
        logger.debug("Slot granted", region=region, active=gate.active, waiting=gate.waiting)

    async def pace(self, region: str) -> None:
        """Respect submission spacing for a resubmission that already holds a slot."""
        await self.gate(region).pace()

    def release(self, region: str) -> None:
        self.gate(region).release()

    def in_flight(self, region: Optional[str] = None) -> Dict[str, int]:
        """Active slot counts, for one region or all known regions."""
        if region is not None:
            gate = self._gates.get(region)
            return {region: gate.active if gate else 0}
        return {name: gate.active for name, gate in self._gates.items()}
