"""Poller/retry engine.

One task per service. A task waits until every dependency has resolved,
becomes BLOCKED if any of them is not HEALTHY, otherwise starts the
service and probes it every ``poll_interval`` until it is HEALTHY,
UNHEALTHY or TIMED_OUT:

    PENDING -> STARTING -> CHECKING -> HEALTHY | UNHEALTHY | TIMED_OUT
    PENDING -> BLOCKED

Failures inside the grace period are recorded but not final. A failure
is only final when its probe *started* after the grace period ended.

Every wait (probe, start, poll sleep) is raced against one shared
CancellationToken, which fires on the global deadline, on an operator
interrupt, or on the first failure when fail-fast is on. A service still
in flight when the token fires becomes TIMED_OUT.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from stackready.core.run_state import CancellationToken, OrchestrationRun, Ticker
from stackready.exceptions import StartError
from stackready.models import Reason, RunCondition, ServiceState
from stackready.services.probes import ProbeRegistry
from stackready.services.starter import NoopStarter, ServiceStarter

logger = logging.getLogger(__name__)

_CANCEL_DETAILS = {
    RunCondition.GLOBAL_TIMEOUT: "global deadline reached",
    RunCondition.CANCELLED: "run cancelled by operator",
    RunCondition.FAIL_FAST: "run stopped after another service failed",
}


class PollerEngine:
    """Drives every service of an OrchestrationRun to a terminal state."""

    def __init__(
        self,
        run: OrchestrationRun,
        registry: ProbeRegistry,
        *,
        starter: ServiceStarter | None = None,
        token: CancellationToken | None = None,
        fail_fast: bool = False,
    ):
        self.run = run
        self.registry = registry
        self.starter = starter or NoopStarter()
        self.token = token or CancellationToken()
        self.ticker = Ticker(self.token)
        self.fail_fast = fail_fast

    async def drive(self, levels: list[list[str]], global_timeout: float) -> None:
        """Run every service in *levels* to completion within *global_timeout*."""
        self.token.cancel_after(global_timeout, RunCondition.GLOBAL_TIMEOUT)
        tasks = [
            asyncio.create_task(self._drive_service(name), name=f"poll:{name}")
            for level in levels
            for name in level
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.token.dispose()
            if self.token.reason is not None and self.run.condition is None:
                self.run.condition = self.token.reason
            self.run.finish()

    # ------------------------------------------------------------------
    # Per-service state machine
    # ------------------------------------------------------------------

    async def _drive_service(self, name: str) -> None:
        record = self.run[name]
        service = record.descriptor

        if service.depends_on:
            await asyncio.gather(*(self.run[dep].resolved.wait() for dep in service.depends_on))
            failed = sorted(
                dep for dep in service.depends_on if self.run.state(dep) is not ServiceState.HEALTHY
            )
            if failed:
                await self.run.transition(
                    name,
                    ServiceState.BLOCKED,
                    blocked_by=failed,
                    detail=f"dependency not healthy: {', '.join(failed)}",
                )
                return

        if self.token.cancelled:
            await self._cancelled(name)
            return

        await self.run.transition(name, ServiceState.STARTING)
        try:
            completed, _ = await self._until_cancelled(self.starter.start(service))
        except StartError as e:
            await self.run.transition(
                name, ServiceState.UNHEALTHY, reason=Reason.UNKNOWN, detail=f"start failed: {e}"
            )
            self._failed(name)
            return
        if not completed:
            await self._cancelled(name)
            return

        await self.run.transition(name, ServiceState.CHECKING)
        await self._check(name)

    async def _check(self, name: str) -> None:
        service = self.run[name].descriptor
        loop = asyncio.get_running_loop()
        began = loop.time()
        grace_ends = began + service.grace_period
        deadline = began + service.timeout

        while True:
            attempt_began = loop.time()
            remaining = deadline - attempt_began
            if remaining <= 0:
                await self._service_timed_out(name)
                return

            completed, outcome = await self._until_cancelled(
                self.registry.probe(service.check, min(service.probe_timeout, remaining))
            )
            if not completed:
                await self._cancelled(name)
                return

            attempts = await self.run.record_attempt(name, outcome)
            if outcome.healthy:
                await self.run.transition(name, ServiceState.HEALTHY, detail=outcome.detail)
                return

            if loop.time() >= deadline:
                await self._service_timed_out(name)
                return
            if attempt_began >= grace_ends:
                await self.run.transition(
                    name, ServiceState.UNHEALTHY, reason=outcome.reason, detail=outcome.detail
                )
                self._failed(name)
                return

            logger.debug(
                "%s probe %d failed inside grace period: %s %s",
                name, attempts, outcome.reason.value, outcome.detail,
            )
            pause = min(service.poll_interval, max(deadline - loop.time(), 0))
            if not await self.ticker.sleep(pause):
                await self._cancelled(name)
                return

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _until_cancelled(self, work: Awaitable[Any]) -> tuple[bool, Any]:
        """Await *work* unless the token fires first.

        Returns ``(True, result)`` when *work* finished, ``(False, None)``
        when the token fired; *work* is then cancelled and awaited so no
        task outlives the run.
        """
        work_task = asyncio.ensure_future(work)
        stop_task = asyncio.ensure_future(self.token.wait())
        try:
            done, _ = await asyncio.wait({work_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work_task.cancel()
            await asyncio.gather(work_task, return_exceptions=True)
            raise
        finally:
            stop_task.cancel()

        if work_task in done:
            return True, work_task.result()
        work_task.cancel()
        await asyncio.gather(work_task, return_exceptions=True)
        return False, None

    async def _cancelled(self, name: str) -> None:
        detail = _CANCEL_DETAILS.get(self.token.reason, "run cancelled")
        last = self.run[name].detail
        if last and self.run[name].attempts:
            detail = f"{detail}; last probe: {last}"
        await self.run.transition(name, ServiceState.TIMED_OUT, reason=Reason.TIMEOUT, detail=detail)

    async def _service_timed_out(self, name: str) -> None:
        record = self.run[name]
        detail = f"not healthy within {record.descriptor.timeout:g}s"
        if record.detail:
            detail = f"{detail}; last probe: {record.detail}"
        await self.run.transition(name, ServiceState.TIMED_OUT, reason=Reason.TIMEOUT, detail=detail)
        self._failed(name)

    def _failed(self, name: str) -> None:
        if self.fail_fast and not self.token.cancelled:
            logger.info("Fail-fast: stopping the run after %s failed", name)
            self.token.cancel(RunCondition.FAIL_FAST)
