"""Unit tests for the bounded readiness poller."""

from __future__ import annotations

import asyncio
import time

import pytest

from deploykit.domain.errors import ProviderError, ReadinessTimeoutError, RunCancelled
from deploykit.domain.models.resources import Readiness
from deploykit.domain.services.readiness import (
    InvalidPollTransitionError,
    PollState,
    ReadinessPoller,
)


def never_ready(detail: str = "CrashLoopBackOff"):
    async def _probe() -> Readiness:
        return Readiness(ready=False, detail=detail)

    return _probe


class TestReadinessPoller:
    @pytest.mark.asyncio
    async def test_ready_on_first_probe(self) -> None:
        poller = ReadinessPoller("db", interval=0.01, timeout=1.0)

        async def probe() -> Readiness:
            return Readiness(ready=True, detail="1/1")

        observed = await poller.wait(probe)
        assert observed.ready
        assert poller.state == PollState.READY
        assert poller.attempts == 1

    @pytest.mark.asyncio
    async def test_becomes_ready_after_retries(self) -> None:
        poller = ReadinessPoller("db", interval=0.01, timeout=1.0)
        answers = iter([False, False, True])

        async def probe() -> Readiness:
            return Readiness(ready=next(answers))

        await poller.wait(probe)
        assert poller.attempts == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("timeout", "interval"), [(0.2, 0.1), (0.15, 0.05), (0.0, 0.05)])
    async def test_timeout_boundary(self, timeout: float, interval: float) -> None:
        poller = ReadinessPoller("db", interval=interval, timeout=timeout, stage="datastore")
        started = time.monotonic()
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await poller.wait(never_ready())
        elapsed = time.monotonic() - started

        assert timeout <= elapsed < timeout + interval
        assert poller.state == PollState.TIMED_OUT
        assert exc_info.value.last_state == "CrashLoopBackOff"
        assert exc_info.value.resource == "db"
        assert exc_info.value.stage == "datastore"

    @pytest.mark.asyncio
    async def test_probe_errors_count_as_not_ready(self) -> None:
        poller = ReadinessPoller("db", interval=0.01, timeout=0.05)

        async def probe() -> Readiness:
            raise ProviderError("connection refused")

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await poller.wait(probe)
        assert "connection refused" in (exc_info.value.last_state or "")

    @pytest.mark.asyncio
    async def test_cancellation_stops_the_wait(self) -> None:
        cancel = asyncio.Event()
        poller = ReadinessPoller("db", interval=10.0, timeout=60.0, cancel_event=cancel)
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        started = time.monotonic()
        with pytest.raises(RunCancelled):
            await poller.wait(never_ready())
        assert time.monotonic() - started < 1.0
        assert poller.state == PollState.CANCELLED

    @pytest.mark.asyncio
    async def test_slow_probe_cannot_stretch_the_deadline(self) -> None:
        poller = ReadinessPoller("db", interval=0.1, timeout=0.2)

        async def probe() -> Readiness:
            await asyncio.sleep(1.0)
            return Readiness(ready=True)

        started = time.monotonic()
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await poller.wait(probe)
        elapsed = time.monotonic() - started

        assert 0.2 <= elapsed < 0.3
        assert exc_info.value.last_state == "probe timed out"
        assert poller.state == PollState.TIMED_OUT

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_an_in_flight_probe(self) -> None:
        cancel = asyncio.Event()
        poller = ReadinessPoller("db", interval=1.0, timeout=10.0, cancel_event=cancel)
        probe_cancelled = asyncio.Event()

        async def probe() -> Readiness:
            try:
                await asyncio.sleep(1.5)
            except asyncio.CancelledError:
                probe_cancelled.set()
                raise
            return Readiness(ready=True)

        asyncio.get_running_loop().call_later(0.05, cancel.set)
        started = time.monotonic()
        with pytest.raises(RunCancelled):
            await poller.wait(probe)
        assert time.monotonic() - started < 0.5
        assert poller.state == PollState.CANCELLED

        await asyncio.sleep(0.01)
        assert probe_cancelled.is_set()

    @pytest.mark.asyncio
    async def test_slow_probe_that_answers_in_budget_is_used(self) -> None:
        poller = ReadinessPoller("db", interval=0.1, timeout=1.0)

        async def probe() -> Readiness:
            await asyncio.sleep(0.05)
            return Readiness(ready=True, detail="1/1")

        observed = await poller.wait(probe)
        assert observed.detail == "1/1"
        assert poller.attempts == 1

    @pytest.mark.asyncio
    async def test_terminal_state_cannot_restart(self) -> None:
        poller = ReadinessPoller("db", interval=0.01, timeout=0.0)
        with pytest.raises(ReadinessTimeoutError):
            await poller.wait(never_ready())
        with pytest.raises(InvalidPollTransitionError):
            await poller.wait(never_ready())

    def test_invalid_interval(self) -> None:
        with pytest.raises(ValueError):
            ReadinessPoller("db", interval=0, timeout=1)
