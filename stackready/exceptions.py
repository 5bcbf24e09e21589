"""Run-level exceptions for stackready."""

from stackready.models import PortConflict


class StackReadyError(Exception):
    """Base exception for orchestration errors."""

    pass


class ConfigurationError(StackReadyError):
    """Raised when settings, profiles or service descriptors are invalid."""

    pass


class CycleDetectedError(StackReadyError):
    """Raised when the dependency graph contains at least one cycle."""

    def __init__(self, members: list[str]):
        self.members = sorted(members)
        super().__init__(f"Dependency cycle detected between: {', '.join(self.members)}")


class PortConflictError(StackReadyError):
    """Raised when required host ports are already occupied."""

    def __init__(self, conflicts: list[PortConflict]):
        self.conflicts = list(conflicts)
        ports = ", ".join(str(c.port) for c in self.conflicts)
        super().__init__(f"{len(self.conflicts)} port conflict(s): {ports}")


class InvalidTransitionError(StackReadyError):
    """Raised when a service would leave a terminal state."""

    def __init__(self, service: str, old: str, new: str):
        self.service = service
        super().__init__(f"Service '{service}' cannot move from {old} to {new}")


class StartError(StackReadyError):
    """Raised by a starter when the container runtime refuses to start a service."""

    pass


class RuntimeUnavailableError(StackReadyError):
    """Raised when the container runtime needed to start services is not usable."""

    pass
