"""Bounded readiness polling shared by the datastore and services stages."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog

from deploykit.domain.errors import ProviderError, ReadinessTimeoutError, RunCancelled
from deploykit.domain.models.resources import Readiness


logger = structlog.get_logger(__name__)


class PollState(str, Enum):
    """Lifecycle of one readiness wait."""

    APPLYING = "applying"
    WAITING_READY = "waiting_ready"
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


POLL_TRANSITIONS: dict[PollState, set[PollState]] = {
    PollState.APPLYING: {PollState.WAITING_READY, PollState.CANCELLED},
    PollState.WAITING_READY: {PollState.READY, PollState.TIMED_OUT, PollState.CANCELLED},
    PollState.READY: set(),
    PollState.TIMED_OUT: set(),
    PollState.CANCELLED: set(),
}


class InvalidPollTransitionError(Exception):
    """Raised when a poller is driven out of order."""


Probe = Callable[[], Awaitable[Readiness]]


class ReadinessPoller:
    """Polls a probe at a fixed interval until ready, timed out or cancelled.

    The probe is evaluated once more exactly at the deadline, so a wait that
    never succeeds fails no earlier than ``timeout`` and no later than
    ``timeout + interval``. Each probe is bounded by the time left plus half an
    interval and abandoned as soon as the cancel event is set; a probe that
    overruns its budget is recorded as not ready.
    """

    def __init__(
        self,
        resource: str,
        *,
        interval: float,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
        stage: str | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        self._resource = resource
        self._interval = interval
        self._timeout = timeout
        self._cancel_event = cancel_event or asyncio.Event()
        self._stage = stage
        self._state = PollState.APPLYING
        self._last: Readiness | None = None
        self._attempts = 0

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def last_observation(self) -> Readiness | None:
        return self._last

    def _transition_to(self, new_state: PollState) -> None:
        if new_state not in POLL_TRANSITIONS[self._state]:
            raise InvalidPollTransitionError(
                f"Cannot transition from {self._state.value} to {new_state.value}"
            )
        self._state = new_state

    def mark_applied(self) -> None:
        """Record that the resource's manifests have been applied."""
        self._transition_to(PollState.WAITING_READY)

    async def wait(self, probe: Probe) -> Readiness:
        """Block until the probe reports ready. Raises on timeout or cancellation."""
        if self._state == PollState.APPLYING:
            self.mark_applied()

        started = time.monotonic()
        while True:
            if self._cancel_event.is_set():
                self._cancelled()

            elapsed = time.monotonic() - started
            # A probe may overrun the deadline by at most half an interval.
            budget = max(self._timeout - elapsed, 0.0) + self._interval / 2
            self._last = await self._observe(probe, budget)
            if self._last.ready:
                self._transition_to(PollState.READY)
                logger.info(
                    "resource_ready",
                    resource=self._resource,
                    attempts=self._attempts,
                    elapsed=round(time.monotonic() - started, 3),
                )
                return self._last

            elapsed = time.monotonic() - started
            if elapsed >= self._timeout:
                self._transition_to(PollState.TIMED_OUT)
                logger.warning(
                    "resource_readiness_timed_out",
                    resource=self._resource,
                    attempts=self._attempts,
                    last_state=self._last.detail,
                )
                raise ReadinessTimeoutError(
                    f"Timed out after {self._timeout}s waiting for readiness",
                    stage=self._stage,
                    resource=self._resource,
                    last_state=self._last.detail or "not ready",
                )

            await self._sleep(min(self._interval, self._timeout - elapsed))

    def _cancelled(self) -> None:
        self._transition_to(PollState.CANCELLED)
        raise RunCancelled(f"Cancelled while waiting for {self._resource}")

    async def _observe(self, probe: Probe, budget: float) -> Readiness:
        """Run one probe, racing it against the budget and the cancel event."""
        self._attempts += 1
        probe_task = asyncio.ensure_future(probe())
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {probe_task, cancel_task},
                timeout=budget,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (probe_task, cancel_task):
                if not task.done():
                    task.cancel()

        if probe_task in done:
            try:
                return probe_task.result()
            except ProviderError as e:
                # A failed read is an observation, not a verdict.
                logger.debug("readiness_probe_error", resource=self._resource, error=str(e))
                return Readiness(ready=False, detail=f"probe error: {e}")
        if cancel_task in done:
            self._cancelled()
        logger.debug("readiness_probe_timed_out", resource=self._resource, budget=round(budget, 3))
        return Readiness(ready=False, detail="probe timed out")

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
