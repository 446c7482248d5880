"""
Error taxonomy shared by the model, graph builder, apply engine and collaborators.
"""
from typing import List, Optional


class StackError(Exception):
    """Base class for every error raised by stackgraph."""


# ------------------------------------------------------------------ structural
# Raised before any resource is touched; the whole apply is aborted.

class InvalidAttribute(StackError):
    def __init__(self, resource_id: str, attribute: str, reason: str):
        self.resource_id = resource_id
        self.attribute = attribute
        self.reason = reason
        super().__init__(f"{resource_id}.{attribute}: {reason}")


class DuplicateId(StackError):
    def __init__(self, resource_id: str, message: Optional[str] = None):
        self.resource_id = resource_id
        super().__init__(message or f"resource id '{resource_id}' is declared more than once")


class DuplicateExportName(DuplicateId):
    def __init__(self, name: str, owners: List[str]):
        self.name = name
        self.owners = owners
        super().__init__(
            owners[-1],
            f"export name '{name}' is used by more than one output: {', '.join(owners)}",
        )


class CyclicDependency(StackError):
    def __init__(self, path: List[str]):
        self.path = path
        super().__init__("dependency cycle: " + " -> ".join(path))

    @property
    def members(self) -> List[str]:
        """Distinct resource ids on the cycle, in cycle order."""
        return self.path[:-1] if len(self.path) > 1 and self.path[0] == self.path[-1] else list(self.path)


class StackFileError(StackError):
    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"{path}: {reason}")


# ------------------------------------------------------------------ apply time

class UnresolvedReference(StackError):
    """A dependency was read before it reached the applied state.

    The graph builder orders dependencies first, so this always points at a
    bug in the builder or the engine, never at user input.
    """

    def __init__(self, resource_id: str, reference: str, reason: str):
        self.resource_id = resource_id
        self.reference = reference
        super().__init__(f"{resource_id}: cannot resolve '{reference}' ({reason})")


class ApplyFailure(StackError):
    def __init__(self, resource_id: str, cause: BaseException):
        self.resource_id = resource_id
        self.cause = cause
        super().__init__(f"{resource_id}: {cause}")


class SecurityViolationDetected(StackError):
    def __init__(self, resource_id: str, source: str, destination: str, port: int, protocol: str,
                 targets: List[str]):
        self.resource_id = resource_id
        self.source = source
        self.destination = destination
        self.port = port
        self.protocol = protocol
        self.targets = targets
        super().__init__(
            f"{resource_id}: {len(targets)} registered target(s) unreachable, "
            f"{source} -> {destination} {protocol}/{port} is denied"
        )


class OutputUnresolved(StackError):
    def __init__(self, output_id: str, source_id: str):
        self.output_id = output_id
        self.source_id = source_id
        super().__init__(f"output '{output_id}' cannot be resolved: '{source_id}' was not applied")


class InvalidTransition(StackError):
    def __init__(self, target_id: str, current: str, requested: str):
        self.target_id = target_id
        super().__init__(f"target '{target_id}' cannot move from {current} to {requested}")


# ------------------------------------------------------------------ external

class SecretUnavailable(StackError):
    def __init__(self, secret_ref: str, reason: str):
        self.secret_ref = secret_ref
        super().__init__(f"secret '{secret_ref}' unavailable: {reason}")


class IncompleteCredentials(StackError):
    def __init__(self, secret_ref: str, missing: List[str]):
        self.secret_ref = secret_ref
        self.missing = missing
        super().__init__(f"secret '{secret_ref}' is missing: {', '.join(missing)}")
