"""Exception hierarchy for reloadkit.

All errors raised by the runtime derive from :class:`ReloadKitError` and
carry the identifier of the component they concern, when there is one.
"""

from __future__ import annotations

from typing import Sequence


class ReloadKitError(Exception):
    """Base exception for component runtime errors."""

    def __init__(self, message: str, identifier: str | None = None):
        self.identifier = identifier
        super().__init__(message)


class CycleError(ReloadKitError):
    """Raised when resolving an identifier would create a dependency cycle.

    Raised before anything is executed or mutated.
    """

    def __init__(self, identifier: str, chain: Sequence[str]):
        self.chain = tuple(chain)
        cycle = " -> ".join([*self.chain, identifier])
        super().__init__(f"Circular dependency detected: {cycle}", identifier)


class LoadError(ReloadKitError):
    """Raised when a component's load phase or mount hooks fail.

    By the time the caller sees this error, everything the failed start
    created has already been disposed.
    """

    pass


class HookRegistrationError(ReloadKitError):
    """Raised when hook, effect or import APIs are used outside a valid scope."""

    pass


class ReferenceStateError(ReloadKitError):
    """Raised when an operation does not fit a node's state or ref count."""

    def __init__(
        self,
        message: str,
        identifier: str | None = None,
        ref_count: int | None = None,
    ):
        self.ref_count = ref_count
        super().__init__(message, identifier)


class ReloadRollbackError(ReloadKitError):
    """Raised when a replacement instance failed to reach ``STARTED``.

    The original instance is still running when this is raised.
    """

    pass


class ConfigError(ReloadKitError):
    """Raised when a configuration file cannot be read or parsed."""

    pass
