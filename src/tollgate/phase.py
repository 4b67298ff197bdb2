"""Session phase tracking.

``AppState`` is the single source of truth for what the session is doing.
Each transition replaces the current :class:`Phase`, stops the periodic tick
owned by the previous phase and notifies subscribers synchronously.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Literal

from tollgate.log_utils import log_event

logger = logging.getLogger(__name__)

PhaseName = Literal["idle", "sending", "thinking", "prompting", "asking"]
PhaseListener = Callable[["Phase"], None]

DEFAULT_TICK_INTERVAL = 0.5


@dataclass(frozen=True)
class Phase:
    name: PhaseName = "idle"
    label: str | None = None
    remaining: int | None = None
    started_at: float | None = None


class AppState:
    """Phase state machine with an elapsed-time tick for the timed phases."""

    def __init__(
        self,
        *,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._phase = Phase()
        self._listeners: list[PhaseListener] = []
        self._tick_interval = tick_interval
        self._clock = clock
        self._tick_handle: asyncio.TimerHandle | None = None

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def is_busy(self) -> bool:
        return self._phase.name != "idle"

    @property
    def elapsed_seconds(self) -> int | None:
        started = self._phase.started_at
        if started is None:
            return None
        return max(0, int(self._clock() - started))

    def subscribe(self, listener: PhaseListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def sending(self) -> None:
        """Query submitted; waiting for the first backend event."""
        self._enter(Phase("sending", started_at=self._clock()), ticking=True)

    def thinking(self) -> None:
        """Backend is working. Repeated calls keep the running clock."""
        if self._phase.name == "thinking":
            return
        self._enter(Phase("thinking", started_at=self._clock()), ticking=True)

    def prompting(self, label: str, remaining: int | None = None) -> None:
        """An approval is displayed; the countdown is owned by the caller."""
        self._enter(Phase("prompting", label=label, remaining=remaining), ticking=False)

    def asking(self, label: str) -> None:
        """A question is displayed. The elapsed clock survives label changes."""
        started = self._phase.started_at if self._phase.name == "asking" else None
        self._enter(Phase("asking", label=label, started_at=started or self._clock()), ticking=True)

    def idle(self) -> None:
        self._enter(Phase(), ticking=False)

    def close(self) -> None:
        self._stop_tick()

    def _enter(self, phase: Phase, *, ticking: bool) -> None:
        self._stop_tick()
        previous = self._phase
        self._phase = phase
        if previous.name != phase.name:
            log_event(logger, "phase.changed", level=logging.DEBUG, previous=previous.name, phase=phase.name)
        if ticking:
            self._schedule_tick()
        self._notify()

    def _schedule_tick(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop, no elapsed-time refresh.
            return
        self._tick_handle = loop.call_later(self._tick_interval, self._tick)

    def _tick(self) -> None:
        self._tick_handle = None
        self._schedule_tick()
        self._notify()

    def _stop_tick(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._phase)
