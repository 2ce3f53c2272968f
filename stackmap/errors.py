"""
Exception hierarchy.

Configuration errors are raised before anything touches the runtime or the
state file. Runtime errors are raised by providers while a plan executes and
are contained to the failing resource's dependents.
"""
from typing import List, Optional


class StackmapError(Exception):
    """Base class for all stackmap errors."""


# --------------------------------------------------------- configuration
class ConfigurationError(StackmapError):
    """Declarations cannot be turned into a plan."""


class DeclarationError(ConfigurationError):
    """A declaration file cannot be read or parsed."""

    def __init__(self, filepath: str, reason: str):
        self.filepath = filepath
        super().__init__(f"Failed to parse {filepath}: {reason}")


class DuplicateResourceError(ConfigurationError):
    def __init__(self, address: str, first_file: str, second_file: str):
        self.address = address
        super().__init__(
            f"Resource '{address}' is declared twice ({first_file or '?'} and {second_file or '?'})"
        )


class UnsupportedResourceError(ConfigurationError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Resource type of '{address}' is not supported")


class UnresolvedReferenceError(ConfigurationError):
    def __init__(self, source: str, target: str, reason: str = "no such resource"):
        self.source = source
        self.target = target
        super().__init__(f"'{source}' references '{target}': {reason}")


class CycleError(ConfigurationError):
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__("Dependency cycle: " + " -> ".join(cycle + cycle[:1]))


class PlanError(ConfigurationError):
    """No valid order exists for the computed changes."""


# --------------------------------------------------------- runtime
class ProviderError(StackmapError):
    """Raised by a runtime/provider while applying a single resource."""

    def __init__(self, message: str, address: Optional[str] = None):
        self.address = address
        super().__init__(message)


class TransientRuntimeError(ProviderError):
    """Worth retrying: daemon unreachable, timeouts, registry hiccups."""


class FatalRuntimeError(ProviderError):
    """Retrying will not help."""


class InterpolationError(FatalRuntimeError):
    """An attribute references an output that is not available."""


# --------------------------------------------------------- state
class StateError(StackmapError):
    """The state snapshot cannot be read or written."""


class StateLockError(StateError):
    def __init__(self, path: str, holder: str = ""):
        self.path = path
        self.holder = holder
        detail = f" (held by pid {holder})" if holder else ""
        super().__init__(f"State lock {path} is already held{detail}")
