"""Shared fixtures for the readiness orchestrator tests.

Provides factory fixtures for service descriptors, a registry whose
probes follow a per-service script, and a fake OS process table. Nothing
here touches the network.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure project root is importable (run.py lives there)
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from stackready.models import ProbeOutcome, Reason, ServiceDescriptor, TcpCheck
from stackready.services.ports import ProcessInfo
from stackready.services.probes import ProbeRegistry

_ENV_VARS = [
    "HEALTH_CHECK_TIMEOUT", "HEALTH_CHECK_INTERVAL", "PROBE_TIMEOUT", "GRACE_PERIOD",
    "SERVICE_TIMEOUT", "PROFILE", "SERVICES_FILE", "FAIL_FAST", "CHECK_PORTS",
    "OUTPUT_FORMAT", "LOG_LEVEL", "LOG_FORMAT", "DATABASE_PASSWORD", "REDIS_PASSWORD",
    "DATABASE_REQUIRED_TABLES",
]


# ---------------------------------------------------------------------------
# Descriptor factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_service():
    """Build a fast-timing descriptor whose TCP check host is the service name.

    The scripted registry keys on that host, so each service can be given
    its own sequence of probe outcomes.
    """
    def _make(name: str, depends_on=(), **overrides) -> ServiceDescriptor:
        fields = {
            "name": name,
            "depends_on": frozenset(depends_on),
            "check": TcpCheck(host=name, port=1),
            "probe_timeout": 0.5,
            "grace_period": 0,
            "poll_interval": 0.01,
            "timeout": 5,
        }
        fields.update(overrides)
        return ServiceDescriptor(**fields)

    return _make


# ---------------------------------------------------------------------------
# Scripted probes
# ---------------------------------------------------------------------------

HEALTHY = ProbeOutcome.ok("up")
DOWN = ProbeOutcome.failed(Reason.SERVICE_DOWN, "connection refused")


class ScriptedProbes:
    """TCP probe replacement driven by a per-host script.

    A script entry is either a list of outcomes (the last one repeats) or
    the string ``"hang"`` for a probe that never answers.
    """

    def __init__(self):
        self.scripts: dict[str, object] = {}
        self.calls: dict[str, int] = {}

    def script(self, host: str, *outcomes) -> None:
        self.scripts[host] = list(outcomes)

    def hang(self, host: str) -> None:
        self.scripts[host] = "hang"

    async def __call__(self, check: TcpCheck, timeout: float) -> ProbeOutcome:
        self.calls[check.host] = self.calls.get(check.host, 0) + 1
        script = self.scripts.get(check.host, [HEALTHY])
        if script == "hang":
            await asyncio.sleep(3600)
        index = min(self.calls[check.host], len(script)) - 1
        return script[index]


@pytest.fixture
def probes():
    return ScriptedProbes()


@pytest.fixture
def registry(probes):
    """ProbeRegistry whose ``tcp`` probe follows the ``probes`` scripts."""
    reg = ProbeRegistry()
    reg.register("tcp", probes)
    return reg


# ---------------------------------------------------------------------------
# Process table
# ---------------------------------------------------------------------------

class FakeProcessTable:
    def __init__(self, owners: dict[int, ProcessInfo] | None = None):
        self.owners = owners or {}
        self.lookups: list[int] = []

    def owner_of(self, port: int) -> ProcessInfo | None:
        self.lookups.append(port)
        return self.owners.get(port)


@pytest.fixture
def process_table():
    return FakeProcessTable()


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run in an empty directory (no .env) without orchestrator env vars."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path
