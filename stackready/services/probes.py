"""Health check registry.

Turns a service's check specification into one pass/fail ``ProbeOutcome``.
Transport and OS errors are mapped onto the ``Reason`` taxonomy by
inspecting the exception (and its cause chain) the way the backend's
error discrimination maps Node error codes:

    ECONNREFUSED              -> SERVICE_DOWN
    ETIMEDOUT / timeouts      -> TIMEOUT
    name resolution failures  -> DNS_FAILURE
    ENETUNREACH, EHOSTUNREACH -> NETWORK_UNREACHABLE
    ECONNRESET                -> CONNECTION_RESET
    anything else             -> UNKNOWN

A probe that reaches the service but gets the wrong answer (HTTP status
outside the expected range, ``SELECT 1`` not returning 1, the wrong
database or missing tables, ``PING`` not answered) is a PROTOCOL_ERROR.

New probe kinds are registered on a ``ProbeRegistry``; the poller only
depends on ``ProbeRegistry.probe``.
"""

import asyncio
import errno
import logging
import re
import shlex
import socket
from collections.abc import Awaitable, Callable
from urllib.parse import unquote, urlsplit

import asyncpg
import httpx
import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import AuthenticationError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from stackready.exceptions import ConfigurationError
from stackready.models import CommandCheck, HttpCheck, ProbeOutcome, Reason, TcpCheck

logger = logging.getLogger(__name__)

ProbeFunc = Callable[..., Awaitable[ProbeOutcome]]

_ERRNO_REASONS = {
    errno.ECONNREFUSED: Reason.SERVICE_DOWN,
    errno.ETIMEDOUT: Reason.TIMEOUT,
    errno.ENETUNREACH: Reason.NETWORK_UNREACHABLE,
    errno.EHOSTUNREACH: Reason.NETWORK_UNREACHABLE,
    errno.ECONNRESET: Reason.CONNECTION_RESET,
}

# asyncio reports every failed address of a multi-address host in one
# OSError without errno: "Multiple exceptions: [Errno 111] ..., [Errno 111] ..."
_ERRNO_IN_MESSAGE = re.compile(r"\[Errno (-?\d+)\]")


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _classify_one(exc: BaseException) -> Reason | None:
    if isinstance(exc, socket.gaierror):
        return Reason.DNS_FAILURE
    if isinstance(exc, ConnectionRefusedError):
        return Reason.SERVICE_DOWN
    if isinstance(exc, ConnectionResetError):
        return Reason.CONNECTION_RESET
    if isinstance(exc, (TimeoutError, httpx.TimeoutException, RedisTimeoutError)):
        return Reason.TIMEOUT
    if isinstance(exc, OSError) and exc.errno in _ERRNO_REASONS:
        return _ERRNO_REASONS[exc.errno]
    if isinstance(exc, BaseExceptionGroup):
        for inner in exc.exceptions:
            reason = classify_error(inner)
            if reason is not Reason.UNKNOWN:
                return reason
    return _reason_from_message(exc)


def _reason_from_message(exc: BaseException) -> Reason | None:
    """Reason for the known errno codes embedded in the message, when they agree."""
    codes = {int(code) for code in _ERRNO_IN_MESSAGE.findall(str(exc))}
    reasons = {_ERRNO_REASONS[code] for code in codes if code in _ERRNO_REASONS}
    if len(reasons) == 1:
        return reasons.pop()
    return None


def classify_error(exc: BaseException) -> Reason:
    """Map a transport/OS exception onto a Reason."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        reason = _classify_one(current)
        if reason is not None:
            return reason
        current = current.__cause__ or current.__context__

    if "timed out" in str(exc).lower() or "timeout" in str(exc).lower():
        return Reason.TIMEOUT
    return Reason.UNKNOWN


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


# ---------------------------------------------------------------------------
# Built-in probes
# ---------------------------------------------------------------------------


async def probe_tcp(check: TcpCheck, timeout: float) -> ProbeOutcome:
    """Open (and immediately close) a TCP connection."""
    _reader, writer = await asyncio.open_connection(check.host, check.port)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return ProbeOutcome.ok(f"{check.host}:{check.port} accepts connections")


async def probe_http(check: HttpCheck, timeout: float) -> ProbeOutcome:
    """GET the URL and compare the status with the expected range."""
    async with httpx.AsyncClient(timeout=timeout, verify=False) as client:
        response = await client.get(check.url)
    if check.accepts(response.status_code):
        return ProbeOutcome.ok(f"HTTP {response.status_code}")
    low, high = check.expected_status
    return ProbeOutcome.failed(
        Reason.PROTOCOL_ERROR,
        f"{check.url} returned HTTP {response.status_code} (expected {low}-{high})",
    )


def _database_name(dsn: str) -> str:
    return unquote(urlsplit(dsn).path.lstrip("/"))


async def probe_postgres_query(check: CommandCheck, timeout: float) -> ProbeOutcome:
    """Run ``SELECT 1`` against the DSN in *target*.

    Also confirms the connection landed in the database named by the DSN
    and, when *required_tables* is set, that the schema was initialized.
    """
    try:
        conn = await asyncpg.connect(check.target, timeout=timeout)
    except asyncpg.PostgresError as e:
        return ProbeOutcome.failed(Reason.PROTOCOL_ERROR, _describe(e))
    try:
        value = await conn.fetchval("SELECT 1")
        if value != 1:
            return ProbeOutcome.failed(Reason.PROTOCOL_ERROR, f"SELECT 1 returned {value!r}")

        expected = _database_name(check.target)
        current = await conn.fetchval("SELECT current_database()")
        if expected and current != expected:
            return ProbeOutcome.failed(
                Reason.PROTOCOL_ERROR, f"connected to database {current!r}, expected {expected!r}"
            )

        if check.required_tables:
            rows = await conn.fetch(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = 'public' AND table_name = ANY($1::text[])",
                list(check.required_tables),
            )
            found = {row["table_name"] for row in rows}
            missing = [t for t in check.required_tables if t not in found]
            if missing:
                return ProbeOutcome.failed(
                    Reason.PROTOCOL_ERROR,
                    f"schema not initialized: missing table(s) {', '.join(missing)}",
                )
    except asyncpg.PostgresError as e:
        return ProbeOutcome.failed(Reason.PROTOCOL_ERROR, _describe(e))
    finally:
        await conn.close()

    if check.required_tables:
        return ProbeOutcome.ok(f"SELECT 1 ok, {len(check.required_tables)} table(s) present")
    return ProbeOutcome.ok("SELECT 1 ok")


async def probe_redis_ping(check: CommandCheck, timeout: float) -> ProbeOutcome:
    """Send ``PING`` to the redis URL in *target*."""
    client = redis.from_url(
        check.target,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        retry=Retry(NoBackoff(), 0),  # one attempt; the poller retries
    )
    try:
        pong = await client.ping()
    except (ResponseError, AuthenticationError) as e:
        return ProbeOutcome.failed(Reason.PROTOCOL_ERROR, _describe(e))
    finally:
        await client.aclose()

    if pong is not True and pong not in (b"PONG", "PONG"):
        return ProbeOutcome.failed(Reason.PROTOCOL_ERROR, f"PING returned {pong!r}")
    return ProbeOutcome.ok("PONG")


async def probe_exec(check: CommandCheck, timeout: float) -> ProbeOutcome:
    """Run the command line in *target*; exit status 0 means healthy."""
    argv = shlex.split(check.target)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return ProbeOutcome.failed(Reason.UNKNOWN, f"command not found: {argv[0]}")

    try:
        _stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    if process.returncode == 0:
        return ProbeOutcome.ok(f"{argv[0]} exited 0")
    tail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-1:] if stderr else []
    message = f"{argv[0]} exited {process.returncode}"
    if tail:
        message += f": {tail[0]}"
    return ProbeOutcome.failed(Reason.PROTOCOL_ERROR, message)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProbeRegistry:
    """Maps check types (and command probe kinds) to probe functions."""

    def __init__(self) -> None:
        self._checks: dict[str, ProbeFunc] = {}
        self._commands: dict[str, ProbeFunc] = {}

    def register(self, check_type: str, func: ProbeFunc) -> None:
        self._checks[check_type] = func

    def register_command(self, probe_kind: str, func: ProbeFunc) -> None:
        self._commands[probe_kind] = func

    @property
    def command_kinds(self) -> list[str]:
        return sorted(self._commands)

    def _resolve(self, check) -> ProbeFunc:
        if isinstance(check, CommandCheck):
            func = self._commands.get(check.probe)
            if func is None:
                raise ConfigurationError(
                    f"No command probe registered for '{check.probe}' "
                    f"(available: {', '.join(self.command_kinds) or 'none'})"
                )
            return func
        func = self._checks.get(check.type)
        if func is None:
            raise ConfigurationError(f"No probe registered for check type '{check.type}'")
        return func

    def validate(self, check) -> None:
        """Raise ConfigurationError when *check* has no registered probe."""
        self._resolve(check)

    async def probe(self, check, timeout: float) -> ProbeOutcome:
        """Run one attempt of *check*, bounded by *timeout* seconds.

        Never raises for probe failures; they come back as an unhealthy
        outcome carrying the classified reason.
        """
        func = self._resolve(check)
        try:
            return await asyncio.wait_for(func(check, timeout), timeout=timeout)
        except TimeoutError:
            return ProbeOutcome.failed(Reason.TIMEOUT, f"no answer within {timeout:g}s")
        except Exception as e:
            reason = classify_error(e)
            logger.debug("Probe %s failed: %s (%s)", check.type, reason.value, e)
            return ProbeOutcome.failed(reason, _describe(e))


def default_registry() -> ProbeRegistry:
    registry = ProbeRegistry()
    registry.register("tcp", probe_tcp)
    registry.register("http", probe_http)
    registry.register_command("postgres-query", probe_postgres_query)
    registry.register_command("redis-ping", probe_redis_ping)
    registry.register_command("exec", probe_exec)
    return registry
