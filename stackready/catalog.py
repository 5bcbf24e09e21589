"""Service catalog, profiles and services-file loading.

The built-in catalog mirrors the docker-compose stack: postgres and redis
at the bottom, the backend API on top of both, and the frontend on top of
the backend. A JSON services file can replace it::

    {
      "profiles": {"core": ["db", "api"]},
      "services": [
        {"name": "db", "kind": "database", "ports": [5432],
         "check": {"type": "tcp", "host": "localhost", "port": 5432}},
        {"name": "api", "kind": "api", "depends_on": ["db"],
         "check": {"type": "http", "url": "http://localhost:8080/health"}}
      ]
    }

Timing fields left out of a file entry fall back to the settings.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from stackready.config import Settings
from stackready.exceptions import ConfigurationError
from stackready.models import CommandCheck, HttpCheck, ServiceDescriptor

logger = logging.getLogger(__name__)

DEFAULT_PROFILES = {
    "minimal": ["postgres", "backend"],
    "full": ["postgres", "redis", "backend", "frontend"],
}


@dataclass
class Catalog:
    services: dict[str, ServiceDescriptor]
    profiles: dict[str, list[str]] = field(default_factory=dict)

    def select(self, profile: str | None) -> list[ServiceDescriptor]:
        """Return the services of *profile* (all services when None).

        Dependencies on services excluded by the profile are dropped, so
        the minimal backend does not wait for a cache it never gets.
        """
        if profile is None:
            names = list(self.services)
        elif profile in self.profiles:
            names = self.profiles[profile]
        else:
            available = ", ".join(sorted(self.profiles)) or "none"
            raise ConfigurationError(f"Unknown profile '{profile}' (available: {available})")

        selected = set(names)
        result = []
        for name in names:
            descriptor = self.services[name]
            dropped = descriptor.depends_on - selected
            if dropped:
                logger.debug(
                    "Profile %s excludes %s; dropping from %s dependencies",
                    profile, ", ".join(sorted(dropped)), name,
                )
                descriptor = descriptor.model_copy(
                    update={"depends_on": descriptor.depends_on & selected}
                )
            result.append(descriptor)
        return result


def _timing_defaults(settings: Settings) -> dict:
    return {
        "probe_timeout": settings.probe_timeout,
        "grace_period": settings.grace_period,
        "poll_interval": settings.health_check_interval,
        "timeout": settings.service_timeout,
    }


def default_catalog(settings: Settings) -> Catalog:
    """The postgres / redis / backend / frontend development stack."""
    timing = _timing_defaults(settings)
    services = [
        ServiceDescriptor(
            name="postgres",
            kind="database",
            ports=(settings.database_port,),
            check=CommandCheck(
                probe="postgres-query",
                target=settings.database_dsn,
                required_tables=settings.required_tables,
            ),
            **timing,
        ),
        ServiceDescriptor(
            name="redis",
            kind="cache",
            ports=(settings.redis_port,),
            check=CommandCheck(probe="redis-ping", target=settings.redis_url),
            **timing,
        ),
        ServiceDescriptor(
            name="backend",
            kind="api",
            depends_on=frozenset({"postgres", "redis"}),
            ports=(settings.backend_port,),
            check=HttpCheck(url=f"http://localhost:{settings.backend_port}/health/ready"),
            **timing,
        ),
        ServiceDescriptor(
            name="frontend",
            kind="ui",
            depends_on=frozenset({"backend"}),
            ports=(settings.frontend_port,),
            check=HttpCheck(url=f"http://localhost:{settings.frontend_port}/"),
            **timing,
        ),
    ]
    return build_catalog(services, DEFAULT_PROFILES)


def build_catalog(
    services: list[ServiceDescriptor], profiles: dict[str, list[str]] | None = None
) -> Catalog:
    """Index *services* by name and check names, dependencies and profiles."""
    by_name: dict[str, ServiceDescriptor] = {}
    for descriptor in services:
        if descriptor.name in by_name:
            raise ConfigurationError(f"Duplicate service name '{descriptor.name}'")
        by_name[descriptor.name] = descriptor

    for descriptor in by_name.values():
        unknown = descriptor.depends_on - by_name.keys()
        if unknown:
            raise ConfigurationError(
                f"Service '{descriptor.name}' depends on unknown service(s): "
                f"{', '.join(sorted(unknown))}"
            )

    profiles = dict(profiles or {})
    for profile, names in profiles.items():
        unknown = [n for n in names if n not in by_name]
        if unknown:
            raise ConfigurationError(
                f"Profile '{profile}' names unknown service(s): {', '.join(unknown)}"
            )
    return Catalog(services=by_name, profiles=profiles)


def load_catalog(path: str | Path, settings: Settings) -> Catalog:
    """Load a JSON services file."""
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Services file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Services file {path} is not valid JSON: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("services"), list):
        raise ConfigurationError(f"Services file {path} must contain a 'services' list")

    timing = _timing_defaults(settings)
    services = []
    for index, entry in enumerate(raw["services"]):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{path}: services[{index}] must be an object")
        try:
            services.append(ServiceDescriptor.model_validate({**timing, **entry}))
        except ValidationError as e:
            label = entry.get("name", f"services[{index}]")
            raise ConfigurationError(f"{path}: invalid service '{label}': {e}") from e

    profiles = raw.get("profiles") or {}
    if not isinstance(profiles, dict):
        raise ConfigurationError(f"{path}: 'profiles' must map profile names to service lists")
    logger.info("Loaded %d service(s) from %s", len(services), path)
    return build_catalog(services, profiles)
