"""Progress reporters.

The engine calls ``on_transition`` while holding the run lock, so it only
enqueues; a consumer task renders. ``InteractiveReporter`` keeps one
colored status line per service and redraws them in place on a terminal.
``JsonLinesReporter`` writes one JSON object per line for CI.
"""

import asyncio
import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TextIO

from stackready.models import Reason, RunStatus, ServiceState
from stackready.services.diagnostics import Report


# ANSI color codes
class Color:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'
    GRAY = '\033[90m'


CURSOR_UP = '\033[{n}A'
CLEAR_LINE = '\033[2K\r'


@dataclass(frozen=True)
class TransitionEvent:
    service: str
    old: ServiceState
    new: ServiceState
    reason: Reason | None = None
    detail: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class ProgressReporter(ABC):
    """Shared queue plumbing; subclasses decide how things look."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stdout
        self._queue: asyncio.Queue[TransitionEvent | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def begin(self, services: list[str], profile: str | None = None) -> None:
        """Render the initial view and start consuming transitions."""
        self.render_begin(services, profile)
        self._task = asyncio.create_task(self._consume(), name="progress-reporter")

    def on_transition(
        self,
        service: str,
        old: ServiceState,
        new: ServiceState,
        *,
        reason: Reason | None = None,
        detail: str = "",
    ) -> None:
        self._queue.put_nowait(TransitionEvent(service, old, new, reason, detail))

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                break
            self.render_transition(event)

    async def aclose(self) -> None:
        """Drain pending transitions and stop the consumer."""
        if self._task is None:
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None

    def write(self, text: str = "") -> None:
        self.stream.write(text + "\n")
        self.stream.flush()

    def render_begin(self, services: list[str], profile: str | None) -> None:
        pass

    @abstractmethod
    def render_transition(self, event: TransitionEvent) -> None: ...

    @abstractmethod
    def render_report(self, report: Report) -> None: ...


# ---------------------------------------------------------------------------
# Interactive
# ---------------------------------------------------------------------------


class InteractiveReporter(ProgressReporter):
    """Human-readable, colored, one line per service."""

    def __init__(
        self,
        stream: TextIO | None = None,
        color_enabled: bool = True,
        live: bool | None = None,
    ):
        super().__init__(stream)
        self.color_enabled = color_enabled
        if live is None:
            live = hasattr(self.stream, "isatty") and self.stream.isatty()
        self.live = live
        self._order: list[str] = []
        self._lines: dict[str, str] = {}
        self._width = 12

    def _colorize(self, text: str, color: str) -> str:
        """Apply color to text if colors are enabled."""
        if not self.color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    def status_text(self, state: ServiceState, reason: Reason | None = None) -> str:
        if state is ServiceState.PENDING:
            return self._colorize("Pending", Color.GRAY)
        if state is ServiceState.STARTING:
            return self._colorize("Starting...", Color.YELLOW)
        if state is ServiceState.CHECKING:
            return self._colorize("Checking...", Color.YELLOW)
        if state is ServiceState.HEALTHY:
            return self._colorize("Healthy ✓", Color.GREEN)
        if state is ServiceState.BLOCKED:
            return self._colorize("Blocked (dependency failed)", Color.BLUE)
        label = "Timed out ✗" if state is ServiceState.TIMED_OUT else "Unhealthy ✗"
        if reason is not None:
            label += f" ({reason.value})"
        return self._colorize(label, Color.RED)

    def _line(self, service: str, status: str) -> str:
        return f"  {service + ':':<{self._width}} {status}"

    def render_begin(self, services: list[str], profile: str | None) -> None:
        self._order = list(services)
        self._width = max([len(s) + 1 for s in services] + [12])
        heading = "Verifying services are healthy"
        if profile:
            heading += f" (profile: {profile})"
        self.write(self._colorize(heading + "...", Color.BLUE))
        self.write()
        for service in self._order:
            self._lines[service] = self._line(service, self.status_text(ServiceState.PENDING))
            self.write(self._lines[service])

    def render_transition(self, event: TransitionEvent) -> None:
        line = self._line(event.service, self.status_text(event.new, event.reason))
        self._lines[event.service] = line
        if not self.live or event.service not in self._order:
            self.write(line)
            return
        # Redraw the whole block so every service keeps its own line.
        self.stream.write(CURSOR_UP.format(n=len(self._order)))
        for service in self._order:
            self.stream.write(CLEAR_LINE + self._lines[service] + "\n")
        self.stream.flush()

    def render_report(self, report: Report) -> None:
        self.write()
        if report.runtime_error:
            self.write(self._colorize("✗ Container runtime unavailable - nothing was started:", Color.RED + Color.BOLD))
            self.write(f"  {self._colorize('•', Color.RED)} {report.runtime_error}")
            self.write()
        if report.port_conflicts:
            self.write(self._colorize("✗ Port conflicts detected - nothing was started:", Color.RED + Color.BOLD))
            for conflict in report.port_conflicts:
                self.write(f"  {self._colorize('•', Color.RED)} {conflict.describe()}")
            self.write(self._colorize("  Stop the processes above or change the ports in .env", Color.YELLOW))
            self.write()
        if report.cycle:
            self.write(self._colorize(
                f"✗ Dependency cycle between: {', '.join(report.cycle)} - nothing was started",
                Color.RED + Color.BOLD,
            ))
            self.write()

        for entry in report.failed:
            self.write(self._colorize(f"✗ {entry.name} ({entry.kind}): {entry.state.value}", Color.RED + Color.BOLD))
            if entry.reason_description:
                self.write(f"    {entry.reason_description}")
            if entry.detail:
                self.write(self._colorize(f"    {entry.detail}", Color.GRAY))
            self.write(self._colorize(f"  Troubleshooting suggestions for {entry.name}:", Color.YELLOW))
            for line in entry.guidance:
                self.write(self._colorize(f"    - {line}", Color.YELLOW))
            self.write()

        for entry in report.blocked:
            causes = ", ".join(entry.root_causes or entry.blocked_by)
            self.write(self._colorize(f"• {entry.name} was blocked by: {causes}", Color.BLUE))
        if report.blocked:
            self.write()

        if report.status is RunStatus.READY:
            self.write(self._colorize("━" * 47, Color.GREEN + Color.BOLD))
            self.write(self._colorize("SUCCESS! Environment ready for development.", Color.GREEN + Color.BOLD))
            self.write(self._colorize("━" * 47, Color.GREEN + Color.BOLD))
            for entry in report.services:
                if entry.access:
                    self.write(f"  {self._colorize(f'{entry.name}:'.ljust(self._width), Color.CYAN)} {entry.access}")
            self.write(self._colorize(f"\n  All services healthy in {report.elapsed:.1f}s", Color.GRAY))
            return

        if report.troubleshooting:
            self.write(self._colorize("General troubleshooting:", Color.YELLOW))
            for line in report.troubleshooting:
                self.write(self._colorize(f"  - {line}", Color.YELLOW))
            self.write()
        label = "degraded" if report.status is RunStatus.DEGRADED else "failed"
        suffix = f" ({report.condition.value})" if report.condition else ""
        self.write(self._colorize(
            f"✗ Health verification {label}{suffix} after {report.elapsed:.1f}s", Color.RED + Color.BOLD
        ))


# ---------------------------------------------------------------------------
# Machine-readable
# ---------------------------------------------------------------------------


class JsonLinesReporter(ProgressReporter):
    """One JSON record per line: ``transition`` events, then a ``report``."""

    def _emit(self, record: dict) -> None:
        self.write(json.dumps(record, default=str))

    def render_begin(self, services: list[str], profile: str | None) -> None:
        self._emit({
            "event": "begin",
            "services": services,
            "profile": profile,
            "timestamp": datetime.now(UTC).isoformat(),
        })

    def render_transition(self, event: TransitionEvent) -> None:
        self._emit({
            "event": "transition",
            "service": event.service,
            "from": event.old.value,
            "to": event.new.value,
            "reason": event.reason.value if event.reason else None,
            "detail": event.detail,
            "timestamp": event.timestamp.isoformat(),
        })

    def render_report(self, report: Report) -> None:
        self._emit({"event": "report", **report.to_dict()})


def create_reporter(output_format: str, stream: TextIO | None = None, color_enabled: bool = True) -> ProgressReporter:
    """Pick a reporter for ``auto`` / ``interactive`` / ``json`` output."""
    stream = stream or sys.stdout
    if output_format == "auto":
        output_format = "interactive" if stream.isatty() else "json"
    if output_format == "json":
        return JsonLinesReporter(stream)
    return InteractiveReporter(stream, color_enabled=color_enabled)
