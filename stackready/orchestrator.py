"""The single "verify readiness" operation.

Pre-flight (container runtime, port conflicts, dependency cycles) runs
before anything is started and aborts the run with a complete list of
problems. Otherwise the poller drives every service to a terminal state
and the diagnostics aggregator builds the final report.
"""

import logging

from stackready.catalog import default_catalog, load_catalog
from stackready.config import Settings
from stackready.core.poller import PollerEngine
from stackready.core.run_state import CancellationToken, OrchestrationRun
from stackready.core.topology import resolve_levels
from stackready.exceptions import CycleDetectedError, PortConflictError, RuntimeUnavailableError
from stackready.models import RunCondition, ServiceDescriptor
from stackready.services.diagnostics import Report, summarize
from stackready.services.ports import PortConflictDetector
from stackready.services.probes import ProbeRegistry, default_registry
from stackready.services.reporter import ProgressReporter
from stackready.services.starter import ComposeStarter, NoopStarter, ServiceStarter

logger = logging.getLogger(__name__)


async def verify_readiness(
    services: list[ServiceDescriptor],
    *,
    global_timeout: float = 120.0,
    registry: ProbeRegistry | None = None,
    starter: ServiceStarter | None = None,
    reporter: ProgressReporter | None = None,
    check_ports: bool = False,
    port_detector: PortConflictDetector | None = None,
    token: CancellationToken | None = None,
    fail_fast: bool = False,
    profile: str | None = None,
) -> Report:
    """Bring *services* up in dependency order and report their readiness.

    Raises ConfigurationError for descriptors no probe can handle; every
    other problem ends up in the returned Report.
    """
    registry = registry or default_registry()
    for service in services:
        registry.validate(service.check)

    run = OrchestrationRun(services)

    if starter is not None:
        try:
            await starter.check_runtime()
        except RuntimeUnavailableError as e:
            logger.warning(str(e))
            run.runtime_error = str(e)

    if check_ports:
        detector = port_detector or PortConflictDetector()
        try:
            detector.ensure_free(
                (service.name, port) for service in services for port in service.ports
            )
        except PortConflictError as e:
            run.port_conflicts = e.conflicts

    levels: list[list[str]] = []
    try:
        levels = resolve_levels(services)
    except CycleDetectedError as e:
        logger.warning(str(e))
        run.cycle = e.members

    if run.runtime_error or run.port_conflicts or run.cycle:
        if run.runtime_error:
            condition = RunCondition.RUNTIME_UNAVAILABLE
        elif run.port_conflicts:
            condition = RunCondition.PORT_CONFLICT
        else:
            condition = RunCondition.CYCLE_DETECTED
        logger.warning("Pre-flight failed (%s); no service was started", condition.value)
        run.abort(condition)
        report = summarize(run)
        if reporter is not None:
            reporter.render_report(report)
        return report

    if reporter is not None:
        run.add_listener(reporter)
        reporter.begin([name for level in levels for name in level], profile)

    engine = PollerEngine(run, registry, starter=starter, token=token, fail_fast=fail_fast)
    try:
        await engine.drive(levels, global_timeout)
    finally:
        if reporter is not None:
            await reporter.aclose()

    report = summarize(run)
    logger.info("Run finished: %s in %.1fs", report.status.value, report.elapsed)
    if reporter is not None:
        reporter.render_report(report)
    return report


def select_services(settings: Settings) -> tuple[list[ServiceDescriptor], str | None]:
    """Services of the configured profile, from the services file or the built-in stack."""
    if settings.services_file:
        catalog = load_catalog(settings.services_file, settings)
    else:
        catalog = default_catalog(settings)
    profile = settings.profile if catalog.profiles else None
    return catalog.select(profile), profile


async def verify_stack(
    settings: Settings,
    *,
    start: bool = False,
    reporter: ProgressReporter | None = None,
    token: CancellationToken | None = None,
    registry: ProbeRegistry | None = None,
) -> Report:
    """Run ``verify_readiness`` for the stack described by *settings*.

    With *start* each service is started through docker compose, and the
    port pre-flight runs unless CHECK_PORTS says otherwise.
    """
    services, profile = select_services(settings)
    starter: ServiceStarter
    if start:
        starter = ComposeStarter(settings.compose_file, profile)
    else:
        starter = NoopStarter()
    check_ports = start if settings.check_ports is None else settings.check_ports

    return await verify_readiness(
        services,
        global_timeout=settings.health_check_timeout,
        registry=registry,
        starter=starter,
        reporter=reporter,
        check_ports=check_ports,
        token=token,
        fail_fast=settings.fail_fast,
        profile=profile,
    )
