"""The OrchestrationRun aggregate and the cancellation primitives around it.

All writes to a run go through ``OrchestrationRun.transition`` and
``OrchestrationRun.record_attempt``, both serialized by one asyncio.Lock.
Transition listeners are called while the lock is held, so a reporter
sees transitions in the order they were applied and never sees a state
go backwards. Listeners must not block.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from stackready.exceptions import InvalidTransitionError
from stackready.models import (
    PortConflict,
    ProbeOutcome,
    Reason,
    RunCondition,
    RunStatus,
    ServiceDescriptor,
    ServiceState,
)

logger = logging.getLogger(__name__)

_ALLOWED = {
    ServiceState.PENDING: {ServiceState.STARTING, ServiceState.BLOCKED, ServiceState.TIMED_OUT},
    ServiceState.STARTING: {ServiceState.CHECKING, ServiceState.UNHEALTHY, ServiceState.TIMED_OUT},
    ServiceState.CHECKING: {ServiceState.HEALTHY, ServiceState.UNHEALTHY, ServiceState.TIMED_OUT},
}

_PREFLIGHT_CONDITIONS = {
    RunCondition.CYCLE_DETECTED,
    RunCondition.PORT_CONFLICT,
    RunCondition.RUNTIME_UNAVAILABLE,
}


class TransitionListener(Protocol):
    def on_transition(
        self,
        service: str,
        old: ServiceState,
        new: ServiceState,
        *,
        reason: Reason | None = None,
        detail: str = "",
    ) -> None: ...


@dataclass
class ServiceRecord:
    """Mutable per-service entry of a run."""

    descriptor: ServiceDescriptor
    state: ServiceState = ServiceState.PENDING
    reason: Reason | None = None
    detail: str = ""
    attempts: int = 0
    blocked_by: list[str] = field(default_factory=list)
    entered_checking: datetime | None = None
    resolved_at: datetime | None = None
    resolved: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def name(self) -> str:
        return self.descriptor.name


class OrchestrationRun:
    """State of every service for one readiness run."""

    def __init__(self, services: list[ServiceDescriptor]):
        self.records: dict[str, ServiceRecord] = {s.name: ServiceRecord(s) for s in services}
        self.condition: RunCondition | None = None
        self.port_conflicts: list[PortConflict] = []
        self.cycle: list[str] = []
        self.runtime_error: str = ""
        self.started_at = datetime.now(UTC)
        self.finished_at: datetime | None = None
        self._listeners: list[TransitionListener] = []
        self._lock = asyncio.Lock()

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def __getitem__(self, name: str) -> ServiceRecord:
        return self.records[name]

    def state(self, name: str) -> ServiceState:
        return self.records[name].state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def transition(
        self,
        name: str,
        new: ServiceState,
        *,
        reason: Reason | None = None,
        detail: str = "",
        blocked_by: list[str] | None = None,
    ) -> None:
        async with self._lock:
            record = self.records[name]
            old = record.state
            if new not in _ALLOWED.get(old, ()):
                raise InvalidTransitionError(name, old.value, new.value)

            record.state = new
            now = datetime.now(UTC)
            if new is ServiceState.CHECKING:
                record.entered_checking = now
            if reason is not None:
                record.reason = reason
            if detail:
                record.detail = detail
            if blocked_by:
                record.blocked_by = sorted(blocked_by)
            if new.is_terminal:
                record.resolved_at = now
                record.resolved.set()

            logger.info("%s: %s -> %s", name, old.value, new.value)
            for listener in self._listeners:
                listener.on_transition(name, old, new, reason=reason, detail=detail)

    async def record_attempt(self, name: str, outcome: ProbeOutcome) -> int:
        """Count a probe attempt and remember its failure reason, if any."""
        async with self._lock:
            record = self.records[name]
            record.attempts += 1
            if not outcome.healthy:
                record.reason = outcome.reason
                record.detail = outcome.detail
            return record.attempts

    def abort(self, condition: RunCondition) -> None:
        """Mark the run as aborted before any service was started."""
        self.condition = condition
        self.finish()

    def finish(self) -> None:
        if self.finished_at is None:
            self.finished_at = datetime.now(UTC)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def elapsed(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def status(self) -> RunStatus:
        states = [r.state for r in self.records.values()]
        if self.condition in _PREFLIGHT_CONDITIONS:
            return RunStatus.FAILED
        if all(s is ServiceState.HEALTHY for s in states):
            return RunStatus.READY
        if any(s is ServiceState.HEALTHY for s in states):
            return RunStatus.DEGRADED
        return RunStatus.FAILED


class CancellationToken:
    """Shared cancel signal for the global deadline and operator interrupts.

    The first reason given wins; later calls are ignored.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: RunCondition | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: RunCondition = RunCondition.CANCELLED) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Run cancelled: %s", reason.value)

    def cancel_after(self, seconds: float, reason: RunCondition = RunCondition.GLOBAL_TIMEOUT) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel, reason)

    def dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait(self) -> None:
        await self._event.wait()


class Ticker:
    """Interval waits bound to a cancellation token."""

    def __init__(self, token: CancellationToken):
        self.token = token

    async def sleep(self, seconds: float) -> bool:
        """Wait *seconds*; return False early if the token fires."""
        if self.token.cancelled:
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self.token.wait(), timeout=seconds)
        except TimeoutError:
            return True
        return False
