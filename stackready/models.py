"""Domain types shared by the resolver, poller, reporters and diagnostics."""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, field_validator, model_validator


# ---------------------------------------------------------------------------
# States and reasons
# ---------------------------------------------------------------------------


class ServiceState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    CHECKING = "checking"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {ServiceState.HEALTHY, ServiceState.UNHEALTHY, ServiceState.TIMED_OUT, ServiceState.BLOCKED}
)


class Reason(str, Enum):
    """Why a probe (or a whole service) did not come up healthy."""

    SERVICE_DOWN = "service_down"
    TIMEOUT = "timeout"
    DNS_FAILURE = "dns_failure"
    NETWORK_UNREACHABLE = "network_unreachable"
    CONNECTION_RESET = "connection_reset"
    PROTOCOL_ERROR = "protocol_error"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        return REASON_DESCRIPTIONS[self]


REASON_DESCRIPTIONS = {
    Reason.SERVICE_DOWN: "Connection refused - service is not accepting connections",
    Reason.TIMEOUT: "Connection timeout - service did not respond in time",
    Reason.DNS_FAILURE: "DNS resolution failed - hostname could not be resolved",
    Reason.NETWORK_UNREACHABLE: "Network unreachable - routing or network configuration issue",
    Reason.CONNECTION_RESET: "Connection reset - service closed the connection unexpectedly",
    Reason.PROTOCOL_ERROR: "Service answered, but not with the expected success signal",
    Reason.UNKNOWN: "Unknown connection error",
}


class RunStatus(str, Enum):
    READY = "ready"
    DEGRADED = "degraded"
    FAILED = "failed"


class RunCondition(str, Enum):
    """Run-level condition that ended (or aborted) an orchestration run."""

    CYCLE_DETECTED = "cycle_detected"
    PORT_CONFLICT = "port_conflict"
    RUNTIME_UNAVAILABLE = "runtime_unavailable"
    GLOBAL_TIMEOUT = "global_timeout"
    CANCELLED = "cancelled"
    FAIL_FAST = "fail_fast"


# ---------------------------------------------------------------------------
# Health check specifications
# ---------------------------------------------------------------------------


class TcpCheck(BaseModel):
    """Plain TCP reachability of host:port."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tcp"] = "tcp"
    host: str = "localhost"
    port: int = Field(gt=0, lt=65536)


class HttpCheck(BaseModel):
    """GET *url* and expect a status code inside *expected_status* (inclusive)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["http"] = "http"
    url: str
    expected_status: tuple[int, int] = (200, 299)

    @field_validator("expected_status")
    @classmethod
    def _ordered_range(cls, value: tuple[int, int]) -> tuple[int, int]:
        low, high = value
        if low > high:
            raise ValueError(f"expected_status range is inverted: {low} > {high}")
        return value

    def accepts(self, status_code: int) -> bool:
        low, high = self.expected_status
        return low <= status_code <= high


class CommandCheck(BaseModel):
    """A round-trip command against the service, e.g. ``SELECT 1`` or ``PING``.

    *probe* selects the registered command probe (``postgres-query``,
    ``redis-ping``, ``exec``); *target* is the probe-specific address
    (a DSN, a redis URL or a command line). *required_tables* is used by
    ``postgres-query``: every listed table must exist in the public schema.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["command"] = "command"
    probe: str
    target: str
    required_tables: tuple[str, ...] = ()


HealthCheckSpec = Annotated[Union[TcpCheck, HttpCheck, CommandCheck], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Service descriptor
# ---------------------------------------------------------------------------


class ServiceDescriptor(BaseModel):
    """Static description of one supervised service; immutable for a run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    kind: str = "generic"
    depends_on: frozenset[str] = frozenset()
    check: HealthCheckSpec
    ports: tuple[int, ...] = ()
    probe_timeout: PositiveFloat = 5.0
    grace_period: float = Field(default=10.0, ge=0)
    poll_interval: PositiveFloat = 2.0
    timeout: PositiveFloat = 60.0

    @model_validator(mode="after")
    def _ports_in_range(self) -> "ServiceDescriptor":
        for port in self.ports:
            if not 0 < port < 65536:
                raise ValueError(f"port {port} of service '{self.name}' is out of range")
        return self


# ---------------------------------------------------------------------------
# Probe outcome and port conflicts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProbeOutcome:
    healthy: bool
    reason: Reason | None = None
    detail: str = ""

    @classmethod
    def ok(cls, detail: str = "") -> "ProbeOutcome":
        return cls(True, None, detail)

    @classmethod
    def failed(cls, reason: Reason, detail: str = "") -> "ProbeOutcome":
        return cls(False, reason, detail)


@dataclass(frozen=True)
class PortConflict:
    """A required host port that cannot be bound."""

    port: int
    service: str
    pid: int | None = None
    process_name: str | None = None
    note: str = ""
    occupied: bool = True

    def describe(self) -> str:
        if not self.occupied:
            return f"Port {self.port} ({self.service}) is {self.note}"
        if self.pid is not None:
            owner = f"{self.process_name or 'unknown'} (pid {self.pid})"
        else:
            owner = self.process_name or "an unidentified process"
        text = f"Port {self.port} ({self.service}) is in use by {owner}"
        if self.note:
            text += f" - {self.note}"
        return text

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "service": self.service,
            "pid": self.pid,
            "process_name": self.process_name,
            "note": self.note,
            "occupied": self.occupied,
        }
