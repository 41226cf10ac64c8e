"""
Timed playback of a reset/grounding protocol.

States: select -> running -> complete, plus an explicit close() escape that
is allowed from any phase. All mutation happens through this object on one
logical thread (timer ticks and user input share it).

Per-step deadlines are absolute (monotonic clock); the one-second countdown
is only a display value. Natural expiry chains deadlines off the previous
one so long sessions do not drift; skip re-arms from "now".

Rendering code subscribes to transition events instead of being called
from inside the state machine.
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from schemas import DEFAULT_STEP_SECONDS, ProtocolStep, ResetProtocol

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    select = "select"
    running = "running"
    complete = "complete"
    closed = "closed"


@dataclass(frozen=True)
class ProtocolRunState:
    phase: Phase
    step_index: int
    time_remaining: int


@dataclass(frozen=True)
class TransitionEvent:
    kind: str  # "step_started" | "completed" | "closed"
    step_index: int
    step: Optional[ProtocolStep] = None


Listener = Callable[[TransitionEvent], None]


class ProtocolRuntime:
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        default_step_seconds: int = DEFAULT_STEP_SECONDS,
    ):
        self.clock = clock
        self.default_step_seconds = default_step_seconds

        self.phase = Phase.select
        self.trigger = None
        self.steps: List[ProtocolStep] = []
        self.step_index = 0
        self.trust_anchor: Optional[str] = None
        self.intervention_message: Optional[str] = None

        self._deadline: Optional[float] = None
        self._paused_remaining: Optional[float] = None
        self._ticket = 0
        self._pending: Optional[int] = None
        self._listeners: List[Listener] = []

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.monotonic) -> "ProtocolRuntime":
        return cls(clock=clock, default_step_seconds=settings.default_step_seconds)

    # ---------- Subscriptions ----------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, step: Optional[ProtocolStep] = None) -> None:
        event = TransitionEvent(kind=kind, step_index=self.step_index, step=step)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # a broken haptic/animation sink must not stall the protocol
                logger.exception("protocol listener failed on %s", kind)

    # ---------- Select phase ----------

    def choose_trigger(self, trigger) -> None:
        if self.phase is Phase.select:
            self.trigger = trigger

    def request_steps(self) -> int:
        """
        Mark a step fetch as in flight and return its ticket. Only the most
        recent ticket can be delivered; a newer request or close() voids it.
        """
        self._ticket += 1
        self._pending = self._ticket if self.phase is Phase.select else None
        return self._ticket

    def cancel_request(self) -> None:
        self._pending = None

    def deliver(self, ticket: int, protocol: Any) -> bool:
        """
        Hand the fetched protocol to the runtime. Stale or cancelled tickets
        are dropped silently. Returns True when playback started.
        """
        if ticket != self._pending or self.phase is not Phase.select:
            logger.debug("protocol delivery dropped | ticket=%s | pending=%s", ticket, self._pending)
            return False
        self._pending = None

        if isinstance(protocol, ResetProtocol):
            if protocol.intervention or not protocol.steps:
                self.intervention_message = protocol.message
                return False
            self.start(protocol.steps, trust_anchor=protocol.trust_anchor)
            return True

        self.start(protocol)
        return True

    def start(self, steps: Iterable[Any], trust_anchor: Optional[str] = None) -> None:
        if self.phase is not Phase.select:
            return

        normalized = [self._normalize_step(step) for step in steps]
        if not normalized:
            raise ValueError("protocol needs at least one step")

        self.steps = normalized
        self.trust_anchor = trust_anchor
        self.step_index = 0
        self._paused_remaining = None
        self._pending = None
        self._deadline = self.clock() + self.steps[0].duration_seconds
        self.phase = Phase.running
        self._emit("step_started", self.steps[0])

    def _normalize_step(self, step: Any) -> ProtocolStep:
        if isinstance(step, ProtocolStep):
            data = step.model_dump()
        else:
            data = dict(step)
        return ProtocolStep.model_validate(data, context={"default_step_seconds": self.default_step_seconds})

    # ---------- Running phase ----------

    @property
    def current_step(self) -> Optional[ProtocolStep]:
        if self.phase is Phase.running:
            return self.steps[self.step_index]
        return None

    @property
    def paused(self) -> bool:
        return self._paused_remaining is not None

    def tick(self, now: Optional[float] = None) -> bool:
        """
        Timer callback. Advances once for every step deadline that has
        passed (a long background pause can cover several steps).
        """
        if self.phase is not Phase.running or self.paused:
            return False
        now = self.clock() if now is None else now

        advanced = False
        while self.phase is Phase.running and self._deadline is not None and now >= self._deadline:
            advanced = self._advance(self.step_index, base=self._deadline) or advanced
        return advanced

    def skip(self) -> bool:
        if self.phase is not Phase.running:
            return False
        return self._advance(self.step_index, base=self.clock())

    def advance(self, expected_index: int) -> bool:
        """Advance once from ``expected_index``; repeated calls are no-ops."""
        return self._advance(expected_index, base=self.clock())

    def _advance(self, expected_index: int, base: float) -> bool:
        if self.phase is not Phase.running or expected_index != self.step_index:
            return False

        if self.step_index + 1 < len(self.steps):
            self.step_index += 1
            duration = self.steps[self.step_index].duration_seconds
            if self.paused:
                self._paused_remaining = float(duration)
                self._deadline = None
            else:
                self._deadline = base + duration
            self._emit("step_started", self.steps[self.step_index])
        else:
            self.phase = Phase.complete
            self._deadline = None
            self._paused_remaining = None
            self._emit("completed")
        return True

    def pause(self) -> None:
        if self.phase is not Phase.running or self.paused:
            return
        self._paused_remaining = max(0.0, self._deadline - self.clock())
        self._deadline = None

    def resume(self) -> None:
        if self.phase is not Phase.running or not self.paused:
            return
        self._deadline = self.clock() + self._paused_remaining
        self._paused_remaining = None

    # ---------- Escape hatch ----------

    def close(self) -> None:
        if self.phase is Phase.closed:
            return
        self._pending = None
        self._deadline = None
        self._paused_remaining = None
        self.phase = Phase.closed
        self._emit("closed")

    @property
    def is_terminal(self) -> bool:
        return self.phase in (Phase.complete, Phase.closed)

    # ---------- Read-only views ----------

    def _remaining(self, now: Optional[float] = None) -> float:
        if self.phase is not Phase.running:
            return 0.0
        if self.paused:
            return self._paused_remaining
        now = self.clock() if now is None else now
        return max(0.0, self._deadline - now)

    def time_remaining(self, now: Optional[float] = None) -> int:
        """Whole seconds left in the current step, for display."""
        return int(math.ceil(self._remaining(now)))

    def step_progress(self, now: Optional[float] = None) -> float:
        if self.phase is Phase.complete:
            return 1.0
        step = self.current_step
        if step is None:
            return 0.0
        return min(1.0, max(0.0, 1.0 - self._remaining(now) / step.duration_seconds))

    def overall_progress(self, now: Optional[float] = None) -> float:
        if self.phase is Phase.complete:
            return 1.0
        if self.phase is not Phase.running:
            return 0.0
        total = sum(s.duration_seconds for s in self.steps)
        done = sum(s.duration_seconds for s in self.steps[: self.step_index])
        done += self.steps[self.step_index].duration_seconds - self._remaining(now)
        return min(1.0, max(0.0, done / total))

    def snapshot(self, now: Optional[float] = None) -> ProtocolRunState:
        return ProtocolRunState(
            phase=self.phase,
            step_index=self.step_index,
            time_remaining=self.time_remaining(now),
        )


def run_protocol(
    runtime: ProtocolRuntime,
    sleep: Callable[[float], None] = time.sleep,
    on_tick: Optional[Callable[[ProtocolRunState], None]] = None,
    interval: float = 1.0,
) -> ProtocolRunState:
    """
    One-second driver. Returns when the protocol completes, is closed, or is
    paused (the caller resumes and calls again).
    """
    while runtime.phase is Phase.running and not runtime.paused:
        runtime.tick()
        if on_tick is not None:
            on_tick(runtime.snapshot())
        if runtime.phase is not Phase.running:
            break
        sleep(interval)
    return runtime.snapshot()
