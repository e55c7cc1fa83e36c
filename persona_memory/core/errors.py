"""
Errors raised by the memory tiers.

Validation and not-found errors reach the caller of the specific operation.
Upstream completion-service failures never use these. They are logged and absorbed,
by the tier itself or by the background runner for Tier 3 passes.
"""


class MemoryServiceError(Exception):
    """Base class for memory subsystem errors."""


class MemoryValidationError(MemoryServiceError, ValueError):
    """Rejected input. Raised before any state is touched."""


class NotFoundError(MemoryServiceError, LookupError):
    """The conversation, project, persona, episode or key does not exist."""

    def __init__(self, kind: str, ident):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} {ident!r} not found")
