"""Port conflict pre-flight.

Each required port is bound and released once; a port that cannot be
bound is looked up in the OS process table to name its owner. All ports
are checked before anything is reported.
"""

import logging
import platform
import socket
import subprocess
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import psutil

from stackready.exceptions import PortConflictError
from stackready.models import PortConflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str | None


class ProcessTable(Protocol):
    def owner_of(self, port: int) -> ProcessInfo | None: ...


class PsutilProcessTable:
    """Linux and Windows: read listening sockets through psutil."""

    def owner_of(self, port: int) -> ProcessInfo | None:
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            logger.debug("Not allowed to list sockets while looking up port %d", port)
            return None

        for conn in connections:
            if not conn.laddr or conn.laddr.port != port or conn.pid is None:
                continue
            if conn.status not in (psutil.CONN_LISTEN, psutil.CONN_NONE):
                continue
            try:
                name = psutil.Process(conn.pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                name = None
            return ProcessInfo(conn.pid, name)
        return None


class LsofProcessTable:
    """macOS: psutil needs root for the socket table there, lsof does not."""

    def owner_of(self, port: int) -> ProcessInfo | None:
        try:
            result = subprocess.run(
                ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-Fpc"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0:
            return None
        return parse_lsof_fields(result.stdout)


def parse_lsof_fields(output: str) -> ProcessInfo | None:
    """Parse ``lsof -F pc`` output: ``p<pid>`` then ``c<command>`` lines."""
    pid = None
    name = None
    for line in output.splitlines():
        if line.startswith("p") and pid is None:
            try:
                pid = int(line[1:])
            except ValueError:
                continue
        elif line.startswith("c") and pid is not None and name is None:
            name = line[1:]
    if pid is None:
        return None
    return ProcessInfo(pid, name)


def default_process_table() -> ProcessTable:
    if platform.system() == "Darwin":
        return LsofProcessTable()
    return PsutilProcessTable()


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    """Bind and immediately release *port*."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
            return True
    except OSError:
        return False


class PortConflictDetector:
    def __init__(
        self,
        process_table: ProcessTable | None = None,
        host: str = "0.0.0.0",
        probe=is_port_available,
    ):
        self.process_table = process_table or default_process_table()
        self.host = host
        self._is_available = probe

    def scan(self, requests: Iterable[tuple[str, int]]) -> list[PortConflict]:
        """Check every (service, port) pair and return all conflicts.

        A port requested by more than one service is reported for each
        requester even when nothing is bound to it yet.
        """
        by_port: dict[int, list[str]] = defaultdict(list)
        for service, port in requests:
            if service not in by_port[port]:
                by_port[port].append(service)

        conflicts: list[PortConflict] = []
        for port in sorted(by_port):
            services = by_port[port]
            shared_note = ""
            if len(services) > 1:
                shared_note = f"requested by {', '.join(services)}"

            if self._is_available(port, self.host):
                if shared_note:
                    conflicts.extend(
                        PortConflict(port=port, service=s, note=shared_note, occupied=False)
                        for s in services
                    )
                continue

            owner = self.process_table.owner_of(port)
            for service in services:
                conflicts.append(
                    PortConflict(
                        port=port,
                        service=service,
                        pid=owner.pid if owner else None,
                        process_name=owner.name if owner else None,
                        note=shared_note,
                    )
                )

        for conflict in conflicts:
            logger.warning(conflict.describe())
        return conflicts

    def ensure_free(self, requests: Iterable[tuple[str, int]]) -> None:
        """Raise PortConflictError listing every conflict, if there is any."""
        conflicts = self.scan(requests)
        if conflicts:
            raise PortConflictError(conflicts)
