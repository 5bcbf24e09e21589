"""Diagnostics aggregator: the final per-service report of a run.

``summarize`` is a pure function of a finished OrchestrationRun. It always
covers every service and separates services that failed themselves from
services that were blocked by a failed dependency, so the root cause is
read first.
"""

from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urlsplit, urlunsplit

from stackready.core.run_state import OrchestrationRun, ServiceRecord
from stackready.models import (
    CommandCheck,
    HttpCheck,
    PortConflict,
    Reason,
    RunCondition,
    RunStatus,
    ServiceDescriptor,
    ServiceState,
    TcpCheck,
)

KIND_GUIDANCE = {
    "database": [
        "Check database logs: docker compose logs {name}",
        "Verify DATABASE_PASSWORD in .env",
        "Check if database port {port} is available",
        "Verify the database schema was initialized (check init.sql)",
        "Try a manual connection: psql {target}",
    ],
    "cache": [
        "Check cache logs: docker compose logs {name}",
        "Verify cache port {port} is available",
        "Check that the backend can connect to the cache",
        "Verify REDIS_HOST / REDIS_PORT / REDIS_PASSWORD in .env",
    ],
    "api": [
        "Check backend logs: docker compose logs {name}",
        "Verify the backend can connect to its database and cache",
        "Check if backend port {port} is available",
        "Ensure .env variables are set correctly",
        "Check the health endpoint manually: curl {target}",
    ],
    "ui": [
        "Check frontend logs: docker compose logs {name}",
        "Verify the frontend can reach the backend API",
        "Check if frontend port {port} is available",
        "Ensure VITE_API_URL is set correctly in .env",
        "Check for build errors in the logs",
    ],
}

GENERIC_GUIDANCE = [
    "Check service logs: docker compose logs {name}",
    "Verify the container is running: docker compose ps {name}",
    "Check the service configuration in .env",
]

REASON_HINTS = {
    Reason.SERVICE_DOWN: [
        "{name} is not running or not accepting connections",
        "Try restarting it: docker compose restart {name}",
    ],
    Reason.TIMEOUT: [
        "{name} did not answer in time; it may be overloaded or still starting",
        "Consider raising PROBE_TIMEOUT, GRACE_PERIOD or HEALTH_CHECK_TIMEOUT",
    ],
    Reason.DNS_FAILURE: [
        "The hostname of {name} could not be resolved; check the host in .env",
        "For Docker, ensure the service name matches docker-compose.yml",
    ],
    Reason.NETWORK_UNREACHABLE: [
        "Verify network configuration and firewall rules for {name}",
        "Ensure {name} and its clients are on the same Docker network",
    ],
    Reason.CONNECTION_RESET: [
        "{name} closed the connection; check credentials and its logs for authentication errors",
    ],
    Reason.PROTOCOL_ERROR: [
        "{name} answered, but not with the expected result; inspect its health output",
    ],
    Reason.UNKNOWN: [
        "Unexpected error while checking {name}; see the detail above and its logs",
    ],
}

GENERAL_TROUBLESHOOTING = [
    "Stop and restart: make down && make dev",
    "Check Docker resources: docker system df",
    "View all logs: docker compose logs",
    "Check container status: docker compose ps",
]

_FAILED_STATES = (ServiceState.UNHEALTHY, ServiceState.TIMED_OUT)


@dataclass
class ServiceReport:
    name: str
    kind: str
    state: ServiceState
    reason: Reason | None = None
    detail: str = ""
    attempts: int = 0
    blocked_by: list[str] = field(default_factory=list)
    root_causes: list[str] = field(default_factory=list)
    guidance: list[str] = field(default_factory=list)
    access: str | None = None
    entered_checking: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def root_cause(self) -> bool:
        """True when this service failed by itself rather than being blocked."""
        return self.state in _FAILED_STATES

    @property
    def reason_description(self) -> str | None:
        return self.reason.description if self.reason else None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind,
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "reason_description": self.reason_description,
            "detail": self.detail,
            "attempts": self.attempts,
            "root_cause": self.root_cause,
            "blocked_by": self.blocked_by,
            "root_causes": self.root_causes,
            "guidance": self.guidance,
            "access": self.access,
            "entered_checking": self.entered_checking.isoformat() if self.entered_checking else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class Report:
    status: RunStatus
    condition: RunCondition | None
    elapsed: float
    services: list[ServiceReport]
    port_conflicts: list[PortConflict] = field(default_factory=list)
    cycle: list[str] = field(default_factory=list)
    runtime_error: str = ""
    troubleshooting: list[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.status is RunStatus.READY

    def by_state(self, *states: ServiceState) -> list[ServiceReport]:
        return [s for s in self.services if s.state in states]

    @property
    def failed(self) -> list[ServiceReport]:
        return self.by_state(*_FAILED_STATES)

    @property
    def blocked(self) -> list[ServiceReport]:
        return self.by_state(ServiceState.BLOCKED)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "condition": self.condition.value if self.condition else None,
            "elapsed_seconds": round(self.elapsed, 3),
            "services": [s.to_dict() for s in self.services],
            "port_conflicts": [c.to_dict() for c in self.port_conflicts],
            "cycle": self.cycle,
            "runtime_error": self.runtime_error or None,
            "troubleshooting": self.troubleshooting,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def mask_password(url: str) -> str:
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":****@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


def _target(service: ServiceDescriptor) -> str:
    check = service.check
    if isinstance(check, HttpCheck):
        return check.url
    if isinstance(check, TcpCheck):
        return f"{check.host}:{check.port}"
    if isinstance(check, CommandCheck):
        return mask_password(check.target)
    return ""


def _fill(lines: list[str], service: ServiceDescriptor) -> list[str]:
    values = {
        "name": service.name,
        "port": service.ports[0] if service.ports else "?",
        "target": _target(service),
    }
    return [line.format(**values) for line in lines]


def guidance_for(service: ServiceDescriptor, reason: Reason | None) -> list[str]:
    """Reason-specific hints followed by the troubleshooting table for the kind."""
    lines = list(REASON_HINTS.get(reason, [])) if reason else []
    lines.extend(KIND_GUIDANCE.get(service.kind, GENERIC_GUIDANCE))
    return _fill(lines, service)


def _root_causes(run: OrchestrationRun, name: str) -> list[str]:
    roots: set[str] = set()
    stack = list(run[name].blocked_by)
    seen: set[str] = set()
    while stack:
        dep = stack.pop()
        if dep in seen:
            continue
        seen.add(dep)
        record = run[dep]
        if record.state is ServiceState.BLOCKED:
            stack.extend(record.blocked_by)
        else:
            roots.add(dep)
    return sorted(roots)


def _service_report(run: OrchestrationRun, record: ServiceRecord) -> ServiceReport:
    service = record.descriptor
    entry = ServiceReport(
        name=service.name,
        kind=service.kind,
        state=record.state,
        reason=record.reason if record.state is not ServiceState.HEALTHY else None,
        detail=record.detail,
        attempts=record.attempts,
        blocked_by=list(record.blocked_by),
        entered_checking=record.entered_checking,
        resolved_at=record.resolved_at,
    )

    if record.state is ServiceState.HEALTHY:
        entry.access = _target(service)
    elif record.state in _FAILED_STATES:
        entry.guidance = guidance_for(service, record.reason)
    elif record.state is ServiceState.BLOCKED:
        entry.root_causes = _root_causes(run, service.name)
        entry.guidance = [
            f"Not started: fix {', '.join(entry.root_causes or entry.blocked_by)} first, "
            f"then re-run; {service.name} depends on it"
        ]
    elif service.name in run.cycle:
        entry.guidance = [
            f"Break the dependency cycle between {', '.join(run.cycle)} "
            "in the service definitions"
        ]
    elif run.condition is RunCondition.RUNTIME_UNAVAILABLE:
        entry.guidance = ["Not started: start Docker (the container runtime) and re-run"]
    elif run.condition is RunCondition.PORT_CONFLICT:
        entry.guidance = ["Not started: resolve the port conflicts listed below first"]
    return entry


def _order(entry: ServiceReport) -> int:
    if entry.root_cause:
        return 0
    if entry.state is ServiceState.BLOCKED:
        return 1
    if entry.state is ServiceState.HEALTHY:
        return 3
    return 2


def summarize(run: OrchestrationRun) -> Report:
    """Build the report for every service of *run*."""
    services = sorted(
        (_service_report(run, record) for record in run.records.values()), key=_order
    )
    status = run.status
    return Report(
        status=status,
        condition=run.condition,
        elapsed=run.elapsed,
        services=services,
        port_conflicts=list(run.port_conflicts),
        cycle=list(run.cycle),
        runtime_error=run.runtime_error,
        troubleshooting=[] if status is RunStatus.READY else list(GENERAL_TROUBLESHOOTING),
    )
