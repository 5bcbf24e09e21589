"""Start collaborators: how a service is brought up before it is checked.

The orchestrator never restarts a service; ``start`` is called at most
once per service per run. ``check_runtime`` runs once before anything is
started.
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from stackready.exceptions import RuntimeUnavailableError, StartError
from stackready.models import ServiceDescriptor

logger = logging.getLogger(__name__)


class ServiceStarter(Protocol):
    async def check_runtime(self) -> None: ...

    async def start(self, service: ServiceDescriptor) -> None: ...


class NoopStarter:
    """For stacks already started elsewhere; only verifies readiness."""

    async def check_runtime(self) -> None:
        return None

    async def start(self, service: ServiceDescriptor) -> None:
        return None


async def _run(cmd: list[str]) -> tuple[int, str]:
    """Run *cmd*; return its exit status and the last stderr line."""
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    lines = stderr.decode("utf-8", errors="replace").strip().splitlines() if stderr else []
    return process.returncode, lines[-1] if lines else "no output"


class ComposeStarter:
    """Start one compose service in detached mode."""

    def __init__(self, compose_file: str | Path, profile: str | None = None):
        self.compose_file = str(compose_file)
        self.profile = profile

    def command(self, service: ServiceDescriptor) -> list[str]:
        cmd = ["docker", "compose", "-f", self.compose_file]
        if self.profile:
            cmd.extend(["--profile", self.profile])
        cmd.extend(["up", "-d", "--no-deps", service.name])
        return cmd

    async def check_runtime(self) -> None:
        """Make sure the Docker daemon answers and the compose plugin exists."""
        checks = [
            (["docker", "info"], "Docker daemon is not running. Please start Docker and try again"),
            (["docker", "compose", "version"], "Docker Compose is not installed"),
        ]
        for cmd, problem in checks:
            try:
                returncode, tail = await _run(cmd)
            except FileNotFoundError as e:
                raise RuntimeUnavailableError("docker is not installed or not on PATH") from e
            if returncode != 0:
                raise RuntimeUnavailableError(f"{problem} ({' '.join(cmd)}: {tail})")
        logger.info("Container runtime available")

    async def start(self, service: ServiceDescriptor) -> None:
        cmd = self.command(service)
        logger.info("Starting %s: %s", service.name, " ".join(cmd))
        try:
            returncode, tail = await _run(cmd)
        except FileNotFoundError as e:
            raise StartError("docker is not installed or not on PATH") from e

        if returncode != 0:
            raise StartError(f"docker compose exited {returncode}: {tail}")
